from __future__ import annotations

SEVERITY_RANK = {"info": 0, "low": 1, "medium": 2, "high": 3, "critical": 4}

# Ascending order, used for one-step downgrade/upgrade
SEVERITY_LEVELS = ["info", "low", "medium", "high", "critical"]


def severity_at_least(severity: str, threshold: str) -> bool:
    """Return True if *severity* meets or exceeds *threshold*."""
    return SEVERITY_RANK[severity] >= SEVERITY_RANK[threshold]


def is_severity_regression(current: str, baseline: str) -> bool:
    return SEVERITY_RANK[current] > SEVERITY_RANK[baseline]


def lower_severity(severity: str) -> str:
    index = SEVERITY_LEVELS.index(severity)
    return SEVERITY_LEVELS[index - 1] if index > 0 else severity


def higher_severity(severity: str) -> str:
    index = SEVERITY_LEVELS.index(severity)
    return SEVERITY_LEVELS[index + 1] if index < len(SEVERITY_LEVELS) - 1 else severity
