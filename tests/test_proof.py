from pathlib import Path

import pytest

from vibegate.core.context import ScanContext
from vibegate.core.models import ClaimLocation, IntentClaim, MiddlewareInfo, RouteInfo
from vibegate.core.proof import (
    build_all_proof_traces,
    build_proof_trace,
    calculate_coverage,
    calculate_route_coverage,
    find_claims_for_route,
    find_unproven_claims,
    is_route_protected,
)
from vibegate.core.routes import build_route_model, route_id
from vibegate.scanners.intent import mine_intent_claims

FIXTURES = Path(__file__).parent / "fixtures"

DASHBOARD_MW = MiddlewareInfo(source_file="middleware.ts", matcher_patterns=("/dashboard/:path*",), start_line=3)


def _route(path, file=None, methods=("POST",), guards=None, readable=True):
    return RouteInfo(
        route_id=route_id(path, set(methods)),
        route_path=path,
        source_file=file or f"app{path}/route.ts",
        http_methods=frozenset(methods),
        start_line=4,
        guards=guards or {},
        readable=readable,
    )


def _claim(claim_type="AUTH_ENFORCED", file="app/api/admin/users/route.ts", scope="route", line=3):
    return IntentClaim(
        id=f"{claim_type}-{file}-{line}",
        type=claim_type,
        source="comment",
        text_evidence="requires auth",
        location=ClaimLocation(file=file, start_line=line, end_line=line),
        scope=scope,
        strength="strong",
    )


# --- scoping ---

def test_claims_scoped_to_route_file_or_global():
    route = _route("/api/admin/users")
    local = _claim()
    module = _claim(scope="module", line=1)
    elsewhere = _claim(file="app/api/other/route.ts")
    global_claim = _claim(file="middleware.ts", scope="global")
    assert find_claims_for_route(route, [local, module, elsewhere, global_claim]) == [local, module, global_claim]


def test_module_scope_does_not_reach_other_files():
    route = _route("/api/admin/users")
    assert find_claims_for_route(route, [_claim(file="lib/auth.ts", scope="module")]) == []


# --- traces ---

def test_auth_claim_on_uncovered_route_is_unproven():
    route = _route("/api/admin/users")
    trace = build_proof_trace(route, [_claim()], [DASHBOARD_MW])
    assert trace.route_id == route.route_id
    assert trace.proven is False
    [step] = trace.steps
    assert step.proven is False
    assert step.evidence is None
    assert step.label == "no auth evidence found for /api/admin/users"


def test_auth_claim_proven_by_handler_guard():
    route = _route("/api/admin/users", guards={"auth": 6})
    [step] = build_proof_trace(route, [_claim()], []).steps
    assert step.proven is True
    assert step.evidence.file == route.source_file
    assert step.evidence.start_line == 6


def test_auth_claim_proven_by_covering_middleware():
    route = _route("/dashboard/settings", file="app/dashboard/settings/route.ts")
    claim = _claim(file="app/dashboard/settings/route.ts")
    [step] = build_proof_trace(route, [claim], [DASHBOARD_MW]).steps
    assert step.proven is True
    assert step.evidence.file == "middleware.ts"
    assert step.evidence.start_line == 3
    assert "/dashboard/:path*" in step.evidence.snippet


def test_validation_claim_not_proven_by_middleware():
    route = _route("/dashboard/settings", file="app/dashboard/settings/route.ts")
    claim = _claim("INPUT_VALIDATED", file="app/dashboard/settings/route.ts")
    [step] = build_proof_trace(route, [claim], [DASHBOARD_MW]).steps
    assert step.proven is False


def test_rate_limit_claim_needs_limiter_in_middleware():
    route = _route("/dashboard/settings", file="app/dashboard/settings/route.ts")
    claim = _claim("RATE_LIMITED", file="app/dashboard/settings/route.ts")
    limited = MiddlewareInfo(
        source_file="middleware.ts", matcher_patterns=("/dashboard/:path*",), guards={"rate_limit": 9},
    )
    assert build_proof_trace(route, [claim], [DASHBOARD_MW]).proven is False
    [step] = build_proof_trace(route, [claim], [limited]).steps
    assert step.proven is True
    assert step.evidence.start_line == 9


def test_other_claims_are_never_proven():
    route = _route("/api/admin/users", guards={"auth": 1, "validation": 2})
    trace = build_proof_trace(route, [_claim("OTHER")], [])
    assert trace.proven is False


def test_unreadable_route_proves_nothing():
    route = _route("/api/admin/users", guards={"auth": 1}, readable=False)
    [step] = build_proof_trace(route, [_claim()], []).steps
    assert step.proven is False
    assert "could not be read" in step.label


def test_route_without_claims_is_trivially_proven():
    trace = build_proof_trace(_route("/api/health"), [], [])
    assert trace.steps == ()
    assert trace.proven is True


def test_parallel_traces_match_sequential_order():
    routes = [_route(f"/api/r{i}") for i in range(8)]
    claims = [_claim(file=r.source_file) for r in routes[::2]]
    sequential = build_all_proof_traces(routes, claims, [DASHBOARD_MW])
    parallel = build_all_proof_traces(routes, claims, [DASHBOARD_MW], max_workers=4)
    assert parallel == sequential
    assert [t.route_id for t in parallel] == [r.route_id for r in routes]


# --- coverage ---

def test_coverage_counts_steps():
    routes = [
        _route("/api/a", guards={"auth": 1}),
        _route("/api/b"),
    ]
    claims = [_claim(file=routes[0].source_file), _claim(file=routes[1].source_file)]
    metrics = calculate_coverage(build_all_proof_traces(routes, claims, []))
    assert metrics.total_claims == 2
    assert metrics.proven_claims == 1
    assert metrics.unproven_claims == 1
    assert metrics.coverage_percent == 50.0
    assert metrics.by_category["AUTH_ENFORCED"].proven == 1
    assert metrics.by_category["AUTH_ENFORCED"].unproven == 1


def test_empty_coverage_is_full():
    metrics = calculate_coverage([])
    assert metrics.total_claims == 0
    assert metrics.coverage_percent == 100.0


@pytest.mark.parametrize("n_proven,n_unproven", [(0, 3), (3, 0), (2, 5)])
def test_coverage_bounds(n_proven, n_unproven):
    routes = [_route(f"/api/p{i}", guards={"auth": 1}) for i in range(n_proven)]
    routes += [_route(f"/api/u{i}") for i in range(n_unproven)]
    claims = [_claim(file=r.source_file) for r in routes]
    metrics = calculate_coverage(build_all_proof_traces(routes, claims, []))
    assert metrics.proven_claims <= metrics.total_claims
    assert metrics.proven_claims + metrics.unproven_claims == metrics.total_claims
    assert 0.0 <= metrics.coverage_percent <= 100.0


def test_find_unproven_claims_reports_route_and_reason():
    route = _route("/api/admin/users")
    [unproven] = find_unproven_claims([route], [_claim()], [DASHBOARD_MW])
    assert unproven.route == route
    assert unproven.reason == "no auth evidence found for /api/admin/users"


def test_global_claim_reported_once_per_unproven_route():
    routes = [_route("/api/a"), _route("/api/b", guards={"auth": 2}), _route("/api/c")]
    claim = _claim(file="middleware.ts", scope="global")
    unproven = find_unproven_claims(routes, [claim], [])
    assert [u.route.route_path for u in unproven] == ["/api/a", "/api/c"]


# --- route coverage ---

def test_route_coverage_ratios():
    routes = [
        _route("/dashboard/a", file="app/dashboard/a/route.ts"),
        _route("/api/b", guards={"auth": 1}),
        _route("/api/c"),
        _route("/api/d", methods=("GET",)),
    ]
    coverage = calculate_route_coverage(routes, [DASHBOARD_MW])
    assert coverage.total_routes == 4
    assert coverage.middleware_coverage == 0.25
    assert coverage.auth_coverage == 0.67
    assert coverage.uncovered_route_ids == tuple(r.route_id for r in routes[1:])


def test_route_coverage_empty():
    coverage = calculate_route_coverage([], [])
    assert coverage.total_routes == 0
    assert coverage.auth_coverage == 1.0
    assert coverage.middleware_coverage == 1.0


def test_is_route_protected():
    assert is_route_protected(_route("/api/a", guards={"auth": 1}), [])
    assert is_route_protected(_route("/dashboard/a"), [DASHBOARD_MW])
    assert not is_route_protected(_route("/api/a"), [DASHBOARD_MW])


# --- fixture ---

def test_fixture_claim_coverage():
    ctx = ScanContext.collect(FIXTURES / "nextapp")
    model = build_route_model(ctx)
    claims = mine_intent_claims(ctx)
    metrics = calculate_coverage(build_all_proof_traces(model.routes, claims, model.middleware))
    assert metrics.total_claims == 5
    assert metrics.proven_claims == 3
    assert metrics.by_category["INPUT_VALIDATED"].proven == 3
    assert metrics.by_category["AUTH_ENFORCED"].unproven == 1
    assert metrics.by_category["RATE_LIMITED"].unproven == 1
