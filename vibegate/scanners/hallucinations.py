"""Hallucinations pack: protections the code claims but does not implement.

VC-HALL-010: a comment claims a protection that no structural evidence proves.
VC-HALL-011: a route signals that it relies on middleware, but no middleware
matcher covers it.
"""
from __future__ import annotations

import re

from ..core.context import ScanContext
from ..core.fingerprint import make_finding
from ..core.models import EvidenceItem, Finding, IntentClaim, RouteInfo
from ..core.proof import find_unproven_claims
from ..core.routes import covering_middleware
from .intent import prepare_context

COMMENT_CLAIM_RULE_ID = "VC-HALL-010"
MIDDLEWARE_ASSUMED_RULE_ID = "VC-HALL-011"

_CLAIM_NAMES = {
    "AUTH_ENFORCED": "authentication",
    "INPUT_VALIDATED": "input validation",
    "CSRF_ENABLED": "CSRF protection",
    "RATE_LIMITED": "rate limiting",
    "ENCRYPTED_AT_REST": "encryption at rest",
}

_CLAIM_REMEDIATION = {
    "AUTH_ENFORCED": (
        "Add an authentication check using getServerSession(), auth() or similar before "
        "performing operations, or update the comment if the claim is incorrect."
    ),
    "INPUT_VALIDATED": (
        "Validate the request body with Zod, Yup or Joi and use the validated result, "
        "or update the comment if validation is not needed."
    ),
}
_DEFAULT_REMEDIATION = (
    "Make the implementation match the security claim, or update the comment to reflect "
    "actual behavior."
)

_MIDDLEWARE_SIGNALS = [
    re.compile(r"middleware.*protect", re.IGNORECASE),
    re.compile(r"protected\s*by\s*middleware", re.IGNORECASE),
    re.compile(r"middleware\s*handles?\s*auth", re.IGNORECASE),
    re.compile(r"auth\s*(?:is\s*)?(?:handled\s*)?(?:by|in)\s*middleware", re.IGNORECASE),
    re.compile(r"\b(?:withMiddleware|requireMiddleware|middlewareProtected)\b"),
]


def claim_name(claim_type: str) -> str:
    return _CLAIM_NAMES.get(claim_type, claim_type.lower().replace("_", " "))


def scan_comment_claims_unproven(ctx: ScanContext) -> list[Finding]:
    prepare_context(ctx)
    model = ctx.route_model
    comment_claims = [c for c in ctx.claims if c.source == "comment"]

    findings: list[Finding] = []
    for unproven in find_unproven_claims(model.routes, comment_claims, model.middleware):
        claim, route = unproven.claim, unproven.route
        methods = ",".join(sorted(route.http_methods))
        findings.append(make_finding(
            rule_id=COMMENT_CLAIM_RULE_ID,
            severity="medium",
            confidence=0.75,
            category="hallucinations",
            title=f"Comment claims {claim_name(claim.type)} but implementation doesn't prove it",
            description=(
                f"A comment claims that {claim_name(claim.type)} is in place for the "
                f"{methods} {route.route_path} endpoint, but static analysis couldn't verify "
                f"this claim ({unproven.reason}). This could be a documentation issue or "
                f"missing implementation."
            ),
            evidence=[
                EvidenceItem(
                    file=claim.location.file,
                    start_line=claim.location.start_line,
                    end_line=claim.location.end_line,
                    label="Security claim in comment",
                    snippet=claim.text_evidence,
                ),
                EvidenceItem(
                    file=route.source_file,
                    start_line=route.start_line,
                    end_line=route.start_line,
                    label="Associated route without proof",
                    snippet=f"{methods} {route.route_path}",
                ),
            ],
            remediation=_CLAIM_REMEDIATION.get(claim.type, _DEFAULT_REMEDIATION),
            symbol=claim.type,
            route=route.route_path,
            claim=claim,
            proof=unproven.reason,
        ))
    return findings


def scan_middleware_assumed(ctx: ScanContext) -> list[Finding]:
    prepare_context(ctx)
    model = ctx.route_model
    if not model.middleware:
        return []

    matchers = [p for mw in model.middleware for p in mw.matcher_patterns]
    primary = model.middleware[0]
    findings: list[Finding] = []

    for route in model.routes:
        if not route.readable or covering_middleware(route, model.middleware) is not None:
            continue
        signal = _middleware_expectation(ctx, route, ctx.claims)
        if signal is None:
            continue

        reason, signal_evidence = signal
        methods = ",".join(sorted(route.http_methods))
        findings.append(make_finding(
            rule_id=MIDDLEWARE_ASSUMED_RULE_ID,
            severity="high",
            confidence=0.7,
            category="hallucinations",
            title=f"Route {methods} {route.route_path} expects middleware but is not covered",
            description=(
                f"The route {route.route_path} shows signals that it expects middleware "
                f"protection, but the middleware matcher in {primary.source_file} does not "
                f"cover this path. {reason}. This could leave the route unprotected."
            ),
            evidence=[
                EvidenceItem(
                    file=route.source_file,
                    start_line=route.start_line,
                    end_line=route.start_line,
                    label="Route expecting middleware protection",
                    snippet=f"{methods} {route.route_path}",
                ),
                signal_evidence,
                EvidenceItem(
                    file=primary.source_file,
                    start_line=primary.start_line,
                    end_line=primary.start_line,
                    label="Current middleware matcher (does not cover this route)",
                    snippet=f"matcher: {matchers}",
                ),
            ],
            remediation=(
                f"Update the middleware matcher to include this route. Current matchers: "
                f"{matchers}. Consider adding {_suggest_matcher(route.route_path)!r} or add an "
                f"explicit auth check in the handler."
            ),
            route=route.route_path,
        ))
    return findings


def _middleware_expectation(
    ctx: ScanContext, route: RouteInfo, claims: list[IntentClaim],
) -> tuple[str, EvidenceItem] | None:
    """Return (reason, evidence) if the route appears to rely on middleware."""
    text = ctx.read_text(route.source_file) or ""
    for pattern in _MIDDLEWARE_SIGNALS:
        match = pattern.search(text)
        if match:
            line = text.count("\n", 0, match.start()) + 1
            return "Code pattern suggests middleware protection expected", EvidenceItem(
                file=route.source_file, start_line=line, end_line=line,
                label="Signal expecting middleware", snippet=match.group(0),
            )

    # auth is claimed next to the handler but the handler never checks it
    if "auth" in route.guards:
        return None
    for claim in claims:
        if (
            claim.type == "AUTH_ENFORCED"
            and claim.source == "comment"
            and claim.location.file == route.source_file
        ):
            return "Auth claimed in comment but not in handler", EvidenceItem(
                file=claim.location.file,
                start_line=claim.location.start_line,
                end_line=claim.location.end_line,
                label="Signal expecting middleware",
                snippet=claim.text_evidence,
            )
    return None


def _suggest_matcher(route_path: str) -> str:
    if route_path.startswith("/api/"):
        return "/api/:path*"
    return f"{route_path.rstrip('/')}/:path*"
