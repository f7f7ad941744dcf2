"""Run-to-run regression between a baseline scan and the current scan.

Findings are matched by fingerprint only. Severity is not part of the
fingerprint, so a persisting finding can only get worse when its rule's own
weighting changed between runs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import Finding, RegressionPolicy, RouteSnapshot, Verdict
from .severity import is_severity_regression, severity_at_least

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeverityRegression:
    current: Finding
    baseline: Finding


@dataclass(frozen=True)
class ProtectionRegression:
    route_id: str
    route_path: str
    protection: str


@dataclass
class RegressionDiff:
    new: list[Finding] = field(default_factory=list)
    resolved: list[Finding] = field(default_factory=list)
    persisting: list[Finding] = field(default_factory=list)
    severity_regressions: list[SeverityRegression] = field(default_factory=list)
    current_count: int = 0
    baseline_count: int = 0
    protection_removed: list[ProtectionRegression] = field(default_factory=list)

    @property
    def net_change(self) -> int:
        return self.current_count - self.baseline_count


def _index(findings: list[Finding]) -> dict[str, Finding]:
    index: dict[str, Finding] = {}
    for f in findings:
        index.setdefault(f.fingerprint, f)
    return index


def diff(current: list[Finding], baseline: list[Finding]) -> RegressionDiff:
    current_index = _index(current)
    baseline_index = _index(baseline)
    result = RegressionDiff(current_count=len(current), baseline_count=len(baseline))

    for fp, finding in current_index.items():
        previous = baseline_index.get(fp)
        if previous is None:
            result.new.append(finding)
            continue
        result.persisting.append(finding)
        if is_severity_regression(finding.severity, previous.severity):
            result.severity_regressions.append(SeverityRegression(current=finding, baseline=previous))

    result.resolved = [f for fp, f in baseline_index.items() if fp not in current_index]
    logger.debug(
        "regression diff: %d new, %d resolved, %d persisting",
        len(result.new), len(result.resolved), len(result.persisting),
    )
    return result


def diff_protection(current: list[RouteSnapshot], baseline: list[RouteSnapshot]) -> list[ProtectionRegression]:
    """Routes that were protected in the baseline and lost that protection.

    Routes missing from the current scan are treated as removed, not regressed.
    """
    current_by_id = {r.route_id: r for r in current}
    regressions: list[ProtectionRegression] = []
    for before in baseline:
        after = current_by_id.get(before.route_id)
        if after is None:
            continue
        if before.middleware_covered and not after.middleware_covered:
            regressions.append(ProtectionRegression(before.route_id, before.route_path, "middleware"))
        if before.auth_protected and not after.auth_protected:
            regressions.append(ProtectionRegression(before.route_id, before.route_path, "auth"))
    return regressions


def evaluate_regression(result: RegressionDiff, policy: RegressionPolicy) -> Verdict:
    """Apply the regression policy. Every matching rule contributes a reason."""
    fail_reasons: list[str] = []
    warn_reasons: list[str] = []

    if policy.fail_on_new_high_critical:
        new_high = [f for f in result.new if severity_at_least(f.severity, "high")]
        if new_high:
            fail_reasons.append(
                f"{len(new_high)} new high/critical finding(s): " + ", ".join(f.id for f in new_high)
            )

    if policy.fail_on_severity_regression and result.severity_regressions:
        details = ", ".join(
            f"{r.current.rule_id} {r.baseline.severity}->{r.current.severity}"
            for r in result.severity_regressions
        )
        fail_reasons.append(f"{len(result.severity_regressions)} severity regression(s): {details}")

    if policy.fail_on_net_increase and result.current_count > result.baseline_count:
        fail_reasons.append(
            f"Net increase of {result.net_change} finding(s) "
            f"({result.baseline_count} -> {result.current_count})"
        )

    if result.protection_removed:
        routes = ", ".join(f"{r.route_path} ({r.protection})" for r in result.protection_removed)
        message = f"{len(result.protection_removed)} route protection(s) removed: {routes}"
        if policy.fail_on_protection_removed:
            fail_reasons.append(message)
        elif policy.warn_on_protection_removed:
            warn_reasons.append(message)

    if policy.warn_on_new_findings and result.new:
        warn_reasons.append(
            f"{len(result.new)} new finding(s): " + ", ".join(f.id for f in result.new)
        )

    if fail_reasons:
        status = "fail"
    elif warn_reasons:
        status = "warn"
    else:
        status = "pass"
    return Verdict(status=status, reasons=tuple(fail_reasons + warn_reasons))
