from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

SEVERITIES = ("critical", "high", "medium", "low", "info")

CATEGORIES = (
    "auth", "validation", "middleware", "secrets", "injection", "privacy",
    "config", "network", "crypto", "uploads", "hallucinations", "abuse",
    "correlation", "authorization", "lifecycle", "supply-chain", "other",
)

CLAIM_TYPES = (
    "AUTH_ENFORCED", "INPUT_VALIDATED", "CSRF_ENABLED",
    "RATE_LIMITED", "ENCRYPTED_AT_REST", "OTHER",
)
CLAIM_SOURCES = ("comment", "identifier", "import", "doc", "ui", "config")
CLAIM_SCOPES = ("route", "module", "global")
CLAIM_STRENGTHS = ("weak", "medium", "strong")


@dataclass(frozen=True)
class EvidenceItem:
    file: str
    start_line: int
    end_line: int
    label: str
    snippet: str = ""


@dataclass(frozen=True)
class Finding:
    id: str
    rule_id: str
    severity: str
    confidence: float
    category: str
    title: str
    description: str
    evidence: tuple[EvidenceItem, ...]
    remediation: str
    fingerprint: str
    claim: IntentClaim | None = None
    proof: str | None = None


@dataclass(frozen=True)
class ClaimLocation:
    file: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class IntentClaim:
    id: str
    type: str
    source: str
    text_evidence: str
    location: ClaimLocation
    scope: str
    strength: str


@dataclass(frozen=True)
class RouteInfo:
    """A logical endpoint derived from a handler file.

    ``guards`` maps a structural protection kind (``auth``, ``validation``,
    ``csrf``, ``rate_limit``, ``encryption``) to the line it was seen on.
    """
    route_id: str
    route_path: str
    source_file: str
    http_methods: frozenset[str]
    start_line: int = 1
    guards: dict[str, int] = field(default_factory=dict, compare=False)
    readable: bool = True


@dataclass(frozen=True)
class MiddlewareInfo:
    source_file: str
    matcher_patterns: tuple[str, ...]
    start_line: int = 1
    guards: dict[str, int] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class CoverageGap:
    file: str
    reason: str


@dataclass(frozen=True)
class ProofTraceStep:
    """One claim paired with corroborating evidence, or ``evidence=None`` when absent."""
    claim: IntentClaim
    proven: bool
    label: str
    evidence: EvidenceItem | None = None


@dataclass(frozen=True)
class ProofTrace:
    route_id: str
    steps: tuple[ProofTraceStep, ...]
    proven: bool


@dataclass(frozen=True)
class CategoryCoverage:
    proven: int = 0
    unproven: int = 0

    @property
    def total(self) -> int:
        return self.proven + self.unproven

    @property
    def coverage_percent(self) -> float:
        return _percent(self.proven, self.total)


@dataclass(frozen=True)
class CoverageMetrics:
    total_claims: int
    proven_claims: int
    unproven_claims: int
    by_category: dict[str, CategoryCoverage] = field(default_factory=dict)

    @property
    def coverage_percent(self) -> float:
        return _percent(self.proven_claims, self.total_claims)


@dataclass(frozen=True)
class RouteCoverage:
    total_routes: int
    auth_coverage: float
    middleware_coverage: float
    uncovered_route_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class WaiverMatch:
    fingerprint: str | None = None
    rule_id: str | None = None
    path_pattern: str | None = None


@dataclass(frozen=True)
class Waiver:
    id: str
    match: WaiverMatch
    reason: str
    created_by: str
    created_at: datetime
    expires_at: datetime | None = None
    ticket_ref: str | None = None


@dataclass(frozen=True)
class Thresholds:
    fail_on_severity: str = "high"
    warn_on_severity: str = "medium"
    min_confidence_for_fail: float = 0.7
    min_confidence_for_warn: float = 0.5
    min_confidence_critical: float = 0.5
    max_findings: int = 0
    max_critical: int = 0
    max_high: int = 0


@dataclass(frozen=True)
class Override:
    action: str
    rule_id: str | None = None
    category: str | None = None
    path_pattern: str | None = None
    severity: str | None = None
    comment: str | None = None


@dataclass(frozen=True)
class RegressionPolicy:
    fail_on_new_high_critical: bool = True
    fail_on_severity_regression: bool = False
    fail_on_net_increase: bool = False
    warn_on_new_findings: bool = True
    fail_on_protection_removed: bool = False
    warn_on_protection_removed: bool = True


@dataclass(frozen=True)
class PolicyConfig:
    profile: str
    thresholds: Thresholds = field(default_factory=Thresholds)
    overrides: tuple[Override, ...] = ()
    regression: RegressionPolicy = field(default_factory=RegressionPolicy)


@dataclass(frozen=True)
class Verdict:
    status: str
    reasons: tuple[str, ...] = ()

    @property
    def would_block(self) -> bool:
        return self.status == "fail"


@dataclass(frozen=True)
class RouteSnapshot:
    """Per-route protection state persisted in a scan artifact."""
    route_id: str
    route_path: str
    source_file: str
    http_methods: tuple[str, ...]
    middleware_covered: bool
    auth_protected: bool


def _percent(part: int, whole: int) -> float:
    if whole == 0:
        return 100.0
    return round(100.0 * part / whole, 1)
