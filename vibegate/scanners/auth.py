"""Auth pack.

VC-AUTH-001: a state-changing route handler writes to a database but has no
in-handler auth check and no covering middleware.
"""
from __future__ import annotations

import re

from ..core.context import ScanContext
from ..core.fingerprint import make_finding
from ..core.models import EvidenceItem, Finding
from ..core.proof import is_route_protected
from ..core.routes import STATE_CHANGING_METHODS, strip_comments
from .intent import prepare_context

RULE_ID = "VC-AUTH-001"

_WRITE_SINKS = [
    re.compile(r"\b(?:prisma|db)\.\w+\.(create|createMany|update|updateMany|upsert|delete|deleteMany)\s*\("),
    re.compile(r"\b(INSERT\s+INTO|UPDATE\s+\w+\s+SET|DELETE\s+FROM|DROP\s+TABLE|TRUNCATE)\b", re.IGNORECASE),
    re.compile(r"\.(insertOne|insertMany|updateOne|updateMany|deleteOne|deleteMany|findOneAndDelete)\s*\("),
]
_CRITICAL_OPS = re.compile(r"delete|drop|truncate", re.IGNORECASE)

_MAX_SINK_EVIDENCE = 2


def scan_unprotected_routes(ctx: ScanContext) -> list[Finding]:
    prepare_context(ctx)
    model = ctx.route_model
    findings: list[Finding] = []

    for route in model.routes:
        methods = sorted(route.http_methods & STATE_CHANGING_METHODS)
        if not methods or not route.readable:
            continue
        if is_route_protected(route, model.middleware):
            continue

        code = strip_comments(ctx.read_text(route.source_file) or "")
        sinks = _find_write_sinks(code)
        if not sinks:
            continue

        method_label = "/".join(methods)
        severity = "critical" if any(_CRITICAL_OPS.search(op) for _, op, _ in sinks) else "high"
        operations = ", ".join(op for _, op, _ in sinks)

        evidence = [EvidenceItem(
            file=route.source_file,
            start_line=route.start_line,
            end_line=route.start_line,
            label=f"Unprotected {method_label} handler",
            snippet=f"{method_label} {route.route_path}",
        )]
        for line, op, snippet in sinks[:_MAX_SINK_EVIDENCE]:
            evidence.append(EvidenceItem(
                file=route.source_file, start_line=line, end_line=line,
                label=f"{op} operation without auth check", snippet=snippet,
            ))

        findings.append(make_finding(
            rule_id=RULE_ID,
            severity=severity,
            confidence=0.88,
            category="auth",
            title=f"Unprotected {method_label} route: {route.route_path}",
            description=(
                f"The route {route.route_path} exports a {method_label} handler that performs "
                f"database writes ({operations}) without any authentication check, and no "
                f"middleware matcher covers it. Anyone can invoke it directly."
            ),
            evidence=evidence,
            remediation=(
                f"Add authentication to the {method_label} handler: check for a valid session "
                f"with getServerSession(), auth() or similar before writing, or extend the "
                f"middleware matcher to cover {route.route_path}."
            ),
            symbol=method_label,
            route=route.route_path,
        ))
    return findings


def _find_write_sinks(code: str) -> list[tuple[int, str, str]]:
    """(line, operation, snippet) for each write sink, in source order."""
    sinks: list[tuple[int, str, str]] = []
    for pattern in _WRITE_SINKS:
        for match in pattern.finditer(code):
            line = code.count("\n", 0, match.start()) + 1
            snippet = code.splitlines()[line - 1].strip()
            sinks.append((line, match.group(1), snippet))
    return sorted(sinks)
