from __future__ import annotations

import logging

from .models import PolicyConfig, RegressionPolicy, Thresholds

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "startup"
CUSTOM_PROFILE = "custom"

_PROFILES: dict[str, PolicyConfig] = {
    # Lenient on existing issues, strict on new critical/high
    "startup": PolicyConfig(
        profile="startup",
        thresholds=Thresholds(
            fail_on_severity="critical",
            warn_on_severity="high",
            min_confidence_for_fail=0.7,
            min_confidence_for_warn=0.5,
            min_confidence_critical=0.5,
            max_findings=0,
            max_critical=0,
            max_high=0,
        ),
        regression=RegressionPolicy(
            fail_on_new_high_critical=True,
            fail_on_severity_regression=False,
            fail_on_net_increase=False,
            warn_on_new_findings=True,
        ),
    ),
    "strict": PolicyConfig(
        profile="strict",
        thresholds=Thresholds(
            fail_on_severity="high",
            warn_on_severity="medium",
            min_confidence_for_fail=0.6,
            min_confidence_for_warn=0.4,
            min_confidence_critical=0.4,
            max_findings=0,
            max_critical=0,
            max_high=0,
        ),
        regression=RegressionPolicy(
            fail_on_new_high_critical=True,
            fail_on_severity_regression=True,
            fail_on_net_increase=False,
            warn_on_new_findings=True,
        ),
    ),
    "compliance-lite": PolicyConfig(
        profile="compliance-lite",
        thresholds=Thresholds(
            fail_on_severity="high",
            warn_on_severity="medium",
            min_confidence_for_fail=0.8,
            min_confidence_for_warn=0.6,
            min_confidence_critical=0.6,
            max_findings=50,
            max_critical=0,
            max_high=5,
        ),
        regression=RegressionPolicy(
            fail_on_new_high_critical=True,
            fail_on_severity_regression=True,
            fail_on_net_increase=True,
            warn_on_new_findings=True,
        ),
    ),
}

PROFILE_NAMES = list(_PROFILES)

PROFILE_DESCRIPTIONS = {
    "startup": "Balanced for early-stage projects. Fails on critical, warns on high.",
    "strict": "Production-ready. Fails on high/critical, warns on medium.",
    "compliance-lite": "Compliance-focused. Count limits and higher confidence thresholds.",
}


def get_profile(name: str | None) -> PolicyConfig:
    """Return a built-in profile. Unknown or missing names fall back to startup."""
    if name == CUSTOM_PROFILE:
        return PolicyConfig(profile=CUSTOM_PROFILE)
    if name in _PROFILES:
        return _PROFILES[name]
    if name is not None:
        logger.warning("unknown policy profile %r, using %r", name, DEFAULT_PROFILE)
    return _PROFILES[DEFAULT_PROFILE]
