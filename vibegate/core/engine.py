from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from .documents import check_choice, check_type, check_unit_interval, load_mapping
from .errors import PolicyLoadError, ValidationIssue
from .models import CATEGORIES, SEVERITIES, Finding, Override, PolicyConfig, Thresholds, Verdict
from .profiles import get_profile
from .severity import higher_severity, lower_severity, severity_at_least
from .waivers import match_path_pattern, match_rule_id

logger = logging.getLogger(__name__)

STATUS_RANK = {"pass": 0, "warn": 1, "fail": 2}

OVERRIDE_ACTIONS = ("ignore", "downgrade", "upgrade", "warn-only", "fail")

_THRESHOLD_KEYS = {
    "failOnSeverity": "fail_on_severity",
    "warnOnSeverity": "warn_on_severity",
    "minConfidenceForFail": "min_confidence_for_fail",
    "minConfidenceForWarn": "min_confidence_for_warn",
    "minConfidenceCritical": "min_confidence_critical",
    "maxFindings": "max_findings",
    "maxCritical": "max_critical",
    "maxHigh": "max_high",
}

_REGRESSION_KEYS = {
    "failOnNewHighCritical": "fail_on_new_high_critical",
    "failOnSeverityRegression": "fail_on_severity_regression",
    "failOnNetIncrease": "fail_on_net_increase",
    "warnOnNewFindings": "warn_on_new_findings",
    "failOnProtectionRemoved": "fail_on_protection_removed",
    "warnOnProtectionRemoved": "warn_on_protection_removed",
}

_OVERRIDE_KEYS = {"ruleId", "category", "pathPattern", "action", "severity", "comment"}


@dataclass(frozen=True)
class ProcessedFinding:
    """A finding with override effects applied."""
    finding: Finding
    severity: str
    ignored: bool = False
    forced: str | None = None


# --- policy loading ---

def load_policy(path: Path) -> PolicyConfig:
    doc = load_mapping(path, PolicyLoadError)
    # a vibegate config file nests the policy under "policy"
    if isinstance(doc.get("policy"), dict):
        doc = doc["policy"]
    return policy_from_dict(doc, source=str(path))


def policy_from_dict(doc: dict, source: str = "<policy>") -> PolicyConfig:
    """Validate a policy document and merge it over its selected profile."""
    issues = validate_policy(doc)
    if issues:
        raise PolicyLoadError(source, issues)

    base = get_profile(doc.get("profile"))
    thresholds = replace(base.thresholds, **{
        _THRESHOLD_KEYS[k]: v for k, v in (doc.get("thresholds") or {}).items()
    })
    regression = replace(base.regression, **{
        _REGRESSION_KEYS[k]: v for k, v in (doc.get("regression") or {}).items()
    })
    overrides = tuple(
        Override(
            action=o["action"],
            rule_id=o.get("ruleId"),
            category=o.get("category"),
            path_pattern=o.get("pathPattern"),
            severity=o.get("severity"),
            comment=o.get("comment"),
        )
        for o in doc.get("overrides") or []
    )
    return PolicyConfig(
        profile=base.profile,
        thresholds=thresholds,
        overrides=base.overrides + overrides,
        regression=regression,
    )


def validate_policy(doc: dict) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    check_type(doc, "profile", str, issues, "policy")

    thresholds = doc.get("thresholds")
    if thresholds is not None:
        if not isinstance(thresholds, dict):
            issues.append(ValidationIssue("policy.thresholds", "expected a mapping"))
        else:
            issues.extend(_validate_thresholds(thresholds))

    regression = doc.get("regression")
    if regression is not None:
        if not isinstance(regression, dict):
            issues.append(ValidationIssue("policy.regression", "expected a mapping"))
        else:
            for key in regression:
                if key not in _REGRESSION_KEYS:
                    issues.append(ValidationIssue(f"policy.regression.{key}", "unknown key"))
                else:
                    check_type(regression, key, bool, issues, "policy.regression")

    overrides = doc.get("overrides")
    if overrides is not None:
        if not isinstance(overrides, list):
            issues.append(ValidationIssue("policy.overrides", "expected a list"))
        else:
            for i, override in enumerate(overrides):
                issues.extend(_validate_override(override, f"policy.overrides[{i}]"))
    return issues


def _validate_thresholds(thresholds: dict) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    path = "policy.thresholds"
    for key in thresholds:
        if key not in _THRESHOLD_KEYS:
            issues.append(ValidationIssue(f"{path}.{key}", "unknown key"))

    for key in ("failOnSeverity", "warnOnSeverity"):
        check_type(thresholds, key, str, issues, path)
        check_choice(thresholds, key, SEVERITIES, issues, path)
    for key in ("minConfidenceForFail", "minConfidenceForWarn", "minConfidenceCritical"):
        check_type(thresholds, key, (int, float), issues, path)
        check_unit_interval(thresholds, key, issues, path)
    for key in ("maxFindings", "maxCritical", "maxHigh"):
        check_type(thresholds, key, int, issues, path)
        value = thresholds.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value < 0:
            issues.append(ValidationIssue(f"{path}.{key}", f"must be >= 0, got {value}"))
    return issues


def _validate_override(override: object, path: str) -> list[ValidationIssue]:
    if not isinstance(override, dict):
        return [ValidationIssue(path, f"expected dict, got {type(override).__name__}")]

    issues: list[ValidationIssue] = []
    for key in override:
        if key not in _OVERRIDE_KEYS:
            issues.append(ValidationIssue(f"{path}.{key}", "unknown key"))
    check_type(override, "action", str, issues, path, required=True)
    check_choice(override, "action", OVERRIDE_ACTIONS, issues, path)
    for key in ("ruleId", "category", "pathPattern", "severity", "comment"):
        check_type(override, key, str, issues, path)
    check_choice(override, "category", CATEGORIES, issues, path)
    check_choice(override, "severity", SEVERITIES, issues, path)
    if not override.get("ruleId") and not override.get("category"):
        issues.append(ValidationIssue(path, "override must specify ruleId or category"))
    return issues


# --- evaluation ---

def apply_overrides(finding: Finding, overrides: tuple[Override, ...]) -> ProcessedFinding:
    """Apply the first matching override, if any."""
    for override in overrides:
        if override.rule_id:
            matches = match_rule_id(finding.rule_id, override.rule_id)
        else:
            matches = override.category is not None and finding.category == override.category
        if matches and override.path_pattern:
            matches = match_path_pattern([e.file for e in finding.evidence], override.path_pattern)
        if not matches:
            continue

        if override.action == "ignore":
            return ProcessedFinding(finding, finding.severity, ignored=True)
        if override.action == "downgrade":
            return ProcessedFinding(finding, override.severity or lower_severity(finding.severity))
        if override.action == "upgrade":
            return ProcessedFinding(finding, override.severity or higher_severity(finding.severity))
        if override.action == "warn-only":
            return ProcessedFinding(finding, finding.severity, forced="warn")
        return ProcessedFinding(finding, finding.severity, forced="fail")

    return ProcessedFinding(finding, finding.severity)


def evaluate(findings: list[Finding], policy: PolicyConfig) -> Verdict:
    """Evaluate findings against thresholds, quotas and overrides.

    Confidence floors:
    - below min_confidence_for_fail a finding cannot cause a fail
    - below min_confidence_for_warn it cannot cause a warn and is not counted
    - a critical also needs min_confidence_critical to count toward quotas

    Quota limits of 0 mean no counted finding at or above fail severity is
    allowed in that bucket, not "unlimited".
    """
    t = policy.thresholds
    processed = [apply_overrides(f, policy.overrides) for f in findings]
    active = [p for p in processed if not p.ignored]

    reasons: list[str] = []
    quota_status = _evaluate_quotas(active, t, reasons)
    severity_status = _evaluate_severities(active, t, reasons)

    status = max(quota_status, severity_status, key=STATUS_RANK.__getitem__)
    logger.debug(
        "policy %s: %d finding(s), %d ignored, status=%s",
        policy.profile, len(findings), len(processed) - len(active), status,
    )
    return Verdict(status=status, reasons=tuple(reasons))


def _fail_eligible(p: ProcessedFinding, t: Thresholds) -> bool:
    return p.finding.confidence >= t.min_confidence_for_fail


def _warn_eligible(p: ProcessedFinding, t: Thresholds) -> bool:
    return p.finding.confidence >= t.min_confidence_for_warn


def _counted(p: ProcessedFinding, t: Thresholds) -> bool:
    if not _warn_eligible(p, t):
        return False
    return p.severity != "critical" or p.finding.confidence >= t.min_confidence_critical


def _evaluate_quotas(active: list[ProcessedFinding], t: Thresholds, reasons: list[str]) -> str:
    counted = [p for p in active if _counted(p, t)]
    buckets = [
        ("Total", counted, t.max_findings),
        ("Critical", [p for p in counted if p.severity == "critical"], t.max_critical),
        ("High", [p for p in counted if p.severity == "high"], t.max_high),
    ]

    status = "pass"
    for label, bucket, limit in buckets:
        if limit > 0:
            if len(bucket) > limit:
                status = "fail"
                reasons.append(f"{label} findings ({len(bucket)}) exceeds maximum ({limit})")
            continue

        gating = [
            p for p in bucket
            if p.forced != "warn"
            and _fail_eligible(p, t)
            and severity_at_least(p.severity, t.fail_on_severity)
        ]
        if gating:
            status = "fail"
            reasons.append(
                f"{label} findings at or above {t.fail_on_severity} ({len(gating)}) exceeds maximum (0): "
                + ", ".join(p.finding.id for p in gating)
            )
    return status


def _evaluate_severities(active: list[ProcessedFinding], t: Thresholds, reasons: list[str]) -> str:
    fail_ids: list[str] = []
    warn_ids: list[str] = []

    for p in active:
        if p.forced == "fail":
            fail_ids.append(p.finding.id)
        elif p.forced == "warn":
            warn_ids.append(p.finding.id)
        elif _fail_eligible(p, t) and severity_at_least(p.severity, t.fail_on_severity):
            fail_ids.append(p.finding.id)
        elif _warn_eligible(p, t) and severity_at_least(p.severity, t.warn_on_severity):
            warn_ids.append(p.finding.id)

    if fail_ids:
        reasons.append(f"{len(fail_ids)} finding(s) meet fail criteria: {', '.join(fail_ids)}")
        return "fail"
    if warn_ids:
        reasons.append(f"{len(warn_ids)} finding(s) meet warn criteria: {', '.join(warn_ids)}")
        return "warn"
    return "pass"


def merge_verdicts(*verdicts: Verdict) -> Verdict:
    """Combine verdicts: fail beats warn beats pass; reasons are concatenated."""
    status = "pass"
    reasons: list[str] = []
    for verdict in verdicts:
        if STATUS_RANK[verdict.status] > STATUS_RANK[status]:
            status = verdict.status
        reasons.extend(verdict.reasons)
    return Verdict(status=status, reasons=tuple(reasons))


def exit_code(verdict: Verdict) -> int:
    return 1 if verdict.would_block else 0


def policy_to_dict(policy: PolicyConfig) -> dict:
    """Camel-case view of a resolved policy for reports."""
    thresholds = {camel: getattr(policy.thresholds, snake) for camel, snake in _THRESHOLD_KEYS.items()}
    regression = {camel: getattr(policy.regression, snake) for camel, snake in _REGRESSION_KEYS.items()}
    overrides = [
        {k: v for k, v in (
            ("ruleId", o.rule_id), ("category", o.category), ("pathPattern", o.path_pattern),
            ("action", o.action), ("severity", o.severity), ("comment", o.comment),
        ) if v is not None}
        for o in policy.overrides
    ]
    return {"profile": policy.profile, "thresholds": thresholds, "overrides": overrides, "regression": regression}

