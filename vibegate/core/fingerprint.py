"""Deterministic identity for findings.

The fingerprint covers (rule id, file, symbol, route, start line). Moving a
finding to a different line changes its identity, so a line-shifting edit
shows up as one resolved and one new finding in regression diffs.
"""
from __future__ import annotations

import hashlib

from .models import EvidenceItem, Finding, IntentClaim

FINGERPRINT_LENGTH = 16


def short_hash(text: str, length: int) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def fingerprint(
    rule_id: str,
    file: str,
    symbol: str | None = None,
    route: str | None = None,
    start_line: int | None = None,
) -> str:
    parts = (
        rule_id,
        file,
        symbol or "",
        route or "",
        str(start_line) if start_line is not None else "",
    )
    return short_hash("::".join(parts), FINGERPRINT_LENGTH)


def finding_id(
    rule_id: str,
    file: str,
    symbol: str | None = None,
    route: str | None = None,
    start_line: int | None = None,
) -> str:
    fp = fingerprint(rule_id, file, symbol, route, start_line)
    return f"{rule_id.lower()}-{fp[:8]}"


def make_finding(
    *,
    rule_id: str,
    severity: str,
    confidence: float,
    category: str,
    title: str,
    description: str,
    evidence: list[EvidenceItem],
    remediation: str,
    symbol: str | None = None,
    route: str | None = None,
    claim: IntentClaim | None = None,
    proof: str | None = None,
) -> Finding:
    """Build a Finding whose id and fingerprint derive from its primary evidence."""
    if not evidence:
        raise ValueError(f"{rule_id}: a finding needs at least one evidence item")

    primary = evidence[0]
    fp = fingerprint(rule_id, primary.file, symbol, route, primary.start_line)
    return Finding(
        id=f"{rule_id.lower()}-{fp[:8]}",
        rule_id=rule_id,
        severity=severity,
        confidence=confidence,
        category=category,
        title=title,
        description=description,
        evidence=tuple(evidence),
        remediation=remediation,
        fingerprint=fp,
        claim=claim,
        proof=proof,
    )
