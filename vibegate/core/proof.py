"""Correlate mined intent claims with structural evidence per route.

Claim scoping:
- route:  the claim sits in the route's handler file
- module: the claim sits in the route's module, approximated as the same
          file (no import graph is built)
- global: applies to every route
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .models import (
    CategoryCoverage,
    CoverageMetrics,
    EvidenceItem,
    IntentClaim,
    MiddlewareInfo,
    ProofTrace,
    ProofTraceStep,
    RouteCoverage,
    RouteInfo,
)
from .routes import STATE_CHANGING_METHODS, covering_middleware

logger = logging.getLogger(__name__)

# Handler-level guard kind that corroborates each claim type
_CLAIM_GUARDS = {
    "AUTH_ENFORCED": "auth",
    "INPUT_VALIDATED": "validation",
    "CSRF_ENABLED": "csrf",
    "RATE_LIMITED": "rate_limit",
    "ENCRYPTED_AT_REST": "encryption",
}

# Claim types a covering middleware can prove, and the guard it must carry
# (None: coverage alone is proof)
_MIDDLEWARE_PROOF = {
    "AUTH_ENFORCED": None,
    "CSRF_ENABLED": "csrf",
    "RATE_LIMITED": "rate_limit",
}


@dataclass(frozen=True)
class UnprovenClaim:
    claim: IntentClaim
    route: RouteInfo
    reason: str


def find_claims_for_route(route: RouteInfo, claims: list[IntentClaim]) -> list[IntentClaim]:
    return [c for c in claims if _claim_in_scope(c, route)]


def _claim_in_scope(claim: IntentClaim, route: RouteInfo) -> bool:
    if claim.scope == "global":
        return True
    # route and module scope both resolve to the handler file
    return claim.location.file == route.source_file


def build_proof_trace(
    route: RouteInfo, claims: list[IntentClaim], middleware_map: list[MiddlewareInfo],
) -> ProofTrace:
    steps = tuple(
        _prove_claim(claim, route, middleware_map)
        for claim in find_claims_for_route(route, claims)
    )
    return ProofTrace(
        route_id=route.route_id,
        steps=steps,
        proven=all(step.proven for step in steps),
    )


def _prove_claim(claim: IntentClaim, route: RouteInfo, middleware_map: list[MiddlewareInfo]) -> ProofTraceStep:
    if not route.readable:
        return ProofTraceStep(
            claim=claim, proven=False,
            label=f"handler {route.source_file} could not be read",
        )

    guard = _CLAIM_GUARDS.get(claim.type)
    if guard and guard in route.guards:
        line = route.guards[guard]
        return ProofTraceStep(
            claim=claim, proven=True,
            label=f"{guard} check found in handler",
            evidence=EvidenceItem(
                file=route.source_file, start_line=line, end_line=line,
                label=f"{guard} check in handler",
            ),
        )

    if claim.type in _MIDDLEWARE_PROOF:
        mw = covering_middleware(route, middleware_map)
        required = _MIDDLEWARE_PROOF[claim.type]
        if mw is not None and (required is None or required in mw.guards):
            line = mw.guards.get(required, mw.start_line) if required else mw.start_line
            return ProofTraceStep(
                claim=claim, proven=True,
                label="route covered by middleware",
                evidence=EvidenceItem(
                    file=mw.source_file, start_line=line, end_line=line,
                    label="covered by middleware",
                    snippet=f"matcher: {list(mw.matcher_patterns)}",
                ),
            )

    kind = guard or "structural"
    return ProofTraceStep(
        claim=claim, proven=False,
        label=f"no {kind} evidence found for {route.route_path}",
    )


def build_all_proof_traces(
    routes: list[RouteInfo],
    claims: list[IntentClaim],
    middleware_map: list[MiddlewareInfo],
    max_workers: int | None = None,
) -> list[ProofTrace]:
    """Build one trace per route, in route order.

    Requires the complete route model and claim set. Routes are independent,
    so with max_workers > 1 they are traced on a thread pool.
    """
    if max_workers is None or max_workers <= 1 or len(routes) <= 1:
        return [build_proof_trace(r, claims, middleware_map) for r in routes]

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(lambda r: build_proof_trace(r, claims, middleware_map), routes))


def calculate_coverage(traces: list[ProofTrace]) -> CoverageMetrics:
    proven = 0
    unproven = 0
    by_category: dict[str, list[int]] = {}

    for trace in traces:
        for step in trace.steps:
            counts = by_category.setdefault(step.claim.type, [0, 0])
            if step.proven:
                proven += 1
                counts[0] += 1
            else:
                unproven += 1
                counts[1] += 1

    return CoverageMetrics(
        total_claims=proven + unproven,
        proven_claims=proven,
        unproven_claims=unproven,
        by_category={
            category: CategoryCoverage(proven=p, unproven=u)
            for category, (p, u) in sorted(by_category.items())
        },
    )


def find_unproven_claims(
    routes: list[RouteInfo], claims: list[IntentClaim], middleware_map: list[MiddlewareInfo],
) -> list[UnprovenClaim]:
    """Claims in scope for some route that no structural evidence corroborates.

    A claim in scope for several routes is reported once per route.
    """
    unproven: list[UnprovenClaim] = []
    for route in routes:
        trace = build_proof_trace(route, claims, middleware_map)
        for step in trace.steps:
            if not step.proven:
                unproven.append(UnprovenClaim(claim=step.claim, route=route, reason=step.label))
    logger.debug("%d unproven claim(s) across %d route(s)", len(unproven), len(routes))
    return unproven


def calculate_route_coverage(
    routes: list[RouteInfo], middleware_map: list[MiddlewareInfo],
) -> RouteCoverage:
    """Route-level ratios in [0, 1]; an empty denominator counts as fully covered."""
    covered = {r.route_id for r in routes if covering_middleware(r, middleware_map) is not None}
    state_changing = [r for r in routes if r.http_methods & STATE_CHANGING_METHODS]
    auth_covered = [r for r in state_changing if is_route_protected(r, middleware_map)]

    return RouteCoverage(
        total_routes=len(routes),
        auth_coverage=_ratio(len(auth_covered), len(state_changing)),
        middleware_coverage=_ratio(len(covered), len(routes)),
        uncovered_route_ids=tuple(r.route_id for r in routes if r.route_id not in covered),
    )


def is_route_protected(route: RouteInfo, middleware_map: list[MiddlewareInfo]) -> bool:
    """True if the route has an in-handler auth check or a covering middleware."""
    if not route.readable:
        return False
    return "auth" in route.guards or covering_middleware(route, middleware_map) is not None


def _ratio(part: int, whole: int) -> float:
    return 1.0 if whole == 0 else round(part / whole, 2)
