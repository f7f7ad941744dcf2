"""Scan artifact: the persisted JSON record of one scan."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .documents import check_choice, check_type, check_unit_interval, format_timestamp, load_mapping, parse_timestamp
from .errors import ArtifactLoadError, ValidationIssue
from .models import (
    CATEGORIES,
    CLAIM_SCOPES,
    CLAIM_SOURCES,
    CLAIM_STRENGTHS,
    CLAIM_TYPES,
    SEVERITIES,
    ClaimLocation,
    CoverageGap,
    CoverageMetrics,
    EvidenceItem,
    Finding,
    IntentClaim,
    RouteCoverage,
    RouteSnapshot,
)

ARTIFACT_VERSION = "0.1"

RULE_ID_PATTERN = re.compile(r"^VC-[A-Z]+-\d{3}$")


@dataclass
class ScanArtifact:
    generated_at: datetime
    findings: list[Finding]
    repo_name: str | None = None
    tool_version: str | None = None
    routes: list[RouteSnapshot] = field(default_factory=list)
    coverage: dict = field(default_factory=dict)
    gaps: list[CoverageGap] = field(default_factory=list)


# --- loading ---

def load_artifact(path: Path) -> ScanArtifact:
    doc = load_mapping(path, ArtifactLoadError)
    return artifact_from_dict(doc, source=str(path))


def artifact_from_dict(doc: dict, source: str = "<artifact>") -> ScanArtifact:
    issues = validate_artifact(doc)
    if issues:
        raise ArtifactLoadError(source, issues)

    repo = doc.get("repo") or {}
    tool = doc.get("tool") or {}
    return ScanArtifact(
        generated_at=parse_timestamp(doc["generatedAt"]),
        findings=[finding_from_dict(f) for f in doc["findings"]],
        repo_name=repo.get("name"),
        tool_version=tool.get("version"),
        routes=[
            RouteSnapshot(
                route_id=r["routeId"],
                route_path=r["routePath"],
                source_file=r["sourceFile"],
                http_methods=tuple(r.get("httpMethods") or ()),
                middleware_covered=r["middlewareCovered"],
                auth_protected=r["authProtected"],
            )
            for r in doc.get("routes") or []
        ],
        coverage=doc.get("coverage") or {},
        gaps=[CoverageGap(file=g["file"], reason=g["reason"]) for g in doc.get("gaps") or []],
    )


def validate_artifact(doc: dict) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if doc.get("version") != ARTIFACT_VERSION:
        issues.append(ValidationIssue("version", f"expected {ARTIFACT_VERSION!r}, got {doc.get('version')!r}"))
    if parse_timestamp(doc.get("generatedAt")) is None:
        issues.append(ValidationIssue("generatedAt", "required ISO-8601 timestamp"))
    for key in ("repo", "tool", "coverage"):
        check_type(doc, key, dict, issues, "$")

    findings = doc.get("findings")
    if not isinstance(findings, list):
        issues.append(ValidationIssue("findings", "expected a list"))
    else:
        for i, finding in enumerate(findings):
            issues.extend(validate_finding(finding, f"findings[{i}]"))

    routes = doc.get("routes")
    if routes is not None:
        if not isinstance(routes, list):
            issues.append(ValidationIssue("routes", "expected a list"))
        else:
            for i, route in enumerate(routes):
                issues.extend(_validate_route(route, f"routes[{i}]"))

    gaps = doc.get("gaps")
    if gaps is not None:
        if not isinstance(gaps, list):
            issues.append(ValidationIssue("gaps", "expected a list"))
        else:
            for i, gap in enumerate(gaps):
                if not isinstance(gap, dict):
                    issues.append(ValidationIssue(f"gaps[{i}]", "expected dict"))
                    continue
                check_type(gap, "file", str, issues, f"gaps[{i}]", required=True)
                check_type(gap, "reason", str, issues, f"gaps[{i}]", required=True)
    return issues


def validate_finding(finding: object, path: str) -> list[ValidationIssue]:
    if not isinstance(finding, dict):
        return [ValidationIssue(path, f"expected dict, got {type(finding).__name__}")]

    issues: list[ValidationIssue] = []
    for key in ("id", "ruleId", "severity", "category", "title", "description", "fingerprint"):
        check_type(finding, key, str, issues, path, required=True)
    check_type(finding, "confidence", (int, float), issues, path, required=True)
    check_unit_interval(finding, "confidence", issues, path)
    check_choice(finding, "severity", SEVERITIES, issues, path)
    check_choice(finding, "category", CATEGORIES, issues, path)

    rule_id = finding.get("ruleId")
    if isinstance(rule_id, str) and not RULE_ID_PATTERN.match(rule_id):
        issues.append(ValidationIssue(f"{path}.ruleId", f"{rule_id!r} does not match VC-<UPPERCASE>-<3 digits>"))

    remediation = finding.get("remediation")
    if isinstance(remediation, dict):
        check_type(remediation, "recommendedFix", str, issues, f"{path}.remediation", required=True)
    elif not isinstance(remediation, str):
        issues.append(ValidationIssue(f"{path}.remediation", "required"))

    evidence = finding.get("evidence")
    if not isinstance(evidence, list) or not evidence:
        issues.append(ValidationIssue(f"{path}.evidence", "expected a non-empty list"))
    else:
        for i, item in enumerate(evidence):
            issues.extend(_validate_evidence(item, f"{path}.evidence[{i}]"))

    claim = finding.get("claim")
    if claim is not None:
        issues.extend(_validate_claim(claim, f"{path}.claim"))

    proof = finding.get("proof")
    if proof is not None and not (isinstance(proof, dict) and isinstance(proof.get("summary"), str)):
        issues.append(ValidationIssue(f"{path}.proof", "expected a mapping with a 'summary' string"))
    return issues


def _validate_evidence(item: object, path: str) -> list[ValidationIssue]:
    if not isinstance(item, dict):
        return [ValidationIssue(path, f"expected dict, got {type(item).__name__}")]
    issues: list[ValidationIssue] = []
    check_type(item, "file", str, issues, path, required=True)
    check_type(item, "label", str, issues, path, required=True)
    check_type(item, "snippet", str, issues, path)
    issues.extend(_validate_line_range(item, path))
    return issues


def _validate_line_range(item: dict, path: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    check_type(item, "startLine", int, issues, path, required=True)
    check_type(item, "endLine", int, issues, path, required=True)
    start, end = item.get("startLine"), item.get("endLine")
    if _is_int(start) and start < 1:
        issues.append(ValidationIssue(f"{path}.startLine", f"must be >= 1, got {start}"))
    if _is_int(start) and _is_int(end) and start > end:
        issues.append(ValidationIssue(path, f"startLine ({start}) is after endLine ({end})"))
    return issues


def _validate_claim(claim: object, path: str) -> list[ValidationIssue]:
    if not isinstance(claim, dict):
        return [ValidationIssue(path, f"expected dict, got {type(claim).__name__}")]
    issues: list[ValidationIssue] = []
    for key, choices in (
        ("type", CLAIM_TYPES), ("source", CLAIM_SOURCES),
        ("scope", CLAIM_SCOPES), ("strength", CLAIM_STRENGTHS),
    ):
        check_type(claim, key, str, issues, path, required=True)
        check_choice(claim, key, choices, issues, path)
    check_type(claim, "textEvidence", str, issues, path, required=True)
    check_type(claim, "id", str, issues, path)

    location = claim.get("location")
    if not isinstance(location, dict):
        issues.append(ValidationIssue(f"{path}.location", "required mapping"))
    else:
        check_type(location, "file", str, issues, f"{path}.location", required=True)
        issues.extend(_validate_line_range(location, f"{path}.location"))
    return issues


def _validate_route(route: object, path: str) -> list[ValidationIssue]:
    if not isinstance(route, dict):
        return [ValidationIssue(path, f"expected dict, got {type(route).__name__}")]
    issues: list[ValidationIssue] = []
    for key in ("routeId", "routePath", "sourceFile"):
        check_type(route, key, str, issues, path, required=True)
    for key in ("middlewareCovered", "authProtected"):
        check_type(route, key, bool, issues, path, required=True)
    check_type(route, "httpMethods", list, issues, path)
    return issues


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# --- conversion ---

def finding_from_dict(doc: dict) -> Finding:
    remediation = doc["remediation"]
    claim = doc.get("claim")
    proof = doc.get("proof")
    return Finding(
        id=doc["id"],
        rule_id=doc["ruleId"],
        severity=doc["severity"],
        confidence=float(doc["confidence"]),
        category=doc["category"],
        title=doc["title"],
        description=doc["description"],
        evidence=tuple(
            EvidenceItem(
                file=e["file"],
                start_line=e["startLine"],
                end_line=e["endLine"],
                label=e["label"],
                snippet=e.get("snippet") or "",
            )
            for e in doc["evidence"]
        ),
        remediation=remediation["recommendedFix"] if isinstance(remediation, dict) else remediation,
        fingerprint=doc["fingerprint"],
        claim=claim_from_dict(claim) if claim else None,
        proof=proof["summary"] if proof else None,
    )


def claim_from_dict(doc: dict) -> IntentClaim:
    location = doc["location"]
    return IntentClaim(
        id=doc.get("id") or "",
        type=doc["type"],
        source=doc["source"],
        text_evidence=doc["textEvidence"],
        location=ClaimLocation(
            file=location["file"],
            start_line=location["startLine"],
            end_line=location["endLine"],
        ),
        scope=doc["scope"],
        strength=doc["strength"],
    )


def claim_to_dict(claim: IntentClaim) -> dict:
    return {
        "id": claim.id,
        "type": claim.type,
        "source": claim.source,
        "textEvidence": claim.text_evidence,
        "location": {
            "file": claim.location.file,
            "startLine": claim.location.start_line,
            "endLine": claim.location.end_line,
        },
        "scope": claim.scope,
        "strength": claim.strength,
    }


def finding_to_dict(finding: Finding) -> dict:
    evidence = []
    for e in finding.evidence:
        item = {"file": e.file, "startLine": e.start_line, "endLine": e.end_line}
        if e.snippet:
            item["snippet"] = e.snippet
        item["label"] = e.label
        evidence.append(item)

    doc = {
        "id": finding.id,
        "ruleId": finding.rule_id,
        "severity": finding.severity,
        "confidence": finding.confidence,
        "category": finding.category,
        "title": finding.title,
        "description": finding.description,
        "evidence": evidence,
    }
    if finding.claim is not None:
        doc["claim"] = claim_to_dict(finding.claim)
    if finding.proof is not None:
        doc["proof"] = {"summary": finding.proof}
    doc["remediation"] = {"recommendedFix": finding.remediation}
    doc["fingerprint"] = finding.fingerprint
    return doc


def coverage_to_dict(claims: CoverageMetrics, routes: RouteCoverage) -> dict:
    return {
        "claims": {
            "totalClaims": claims.total_claims,
            "provenClaims": claims.proven_claims,
            "unprovenClaims": claims.unproven_claims,
            "coveragePercent": claims.coverage_percent,
            "byCategory": {
                category: {"proven": c.proven, "unproven": c.unproven, "coveragePercent": c.coverage_percent}
                for category, c in claims.by_category.items()
            },
        },
        "routes": {
            "totalRoutes": routes.total_routes,
            "authCoverage": routes.auth_coverage,
            "middlewareCoverage": routes.middleware_coverage,
            "uncoveredRouteIds": list(routes.uncovered_route_ids),
        },
    }


def artifact_to_dict(artifact: ScanArtifact) -> dict:
    doc: dict = {
        "version": ARTIFACT_VERSION,
        "generatedAt": format_timestamp(artifact.generated_at),
    }
    if artifact.tool_version:
        doc["tool"] = {"name": "vibegate", "version": artifact.tool_version}
    if artifact.repo_name:
        doc["repo"] = {"name": artifact.repo_name}
    doc["findings"] = [finding_to_dict(f) for f in artifact.findings]
    doc["routes"] = [
        {
            "routeId": r.route_id,
            "routePath": r.route_path,
            "sourceFile": r.source_file,
            "httpMethods": list(r.http_methods),
            "middlewareCovered": r.middleware_covered,
            "authProtected": r.auth_protected,
        }
        for r in artifact.routes
    ]
    doc["coverage"] = artifact.coverage
    doc["gaps"] = [{"file": g.file, "reason": g.reason} for g in artifact.gaps]
    return doc


def dump_artifact(path: Path, artifact: ScanArtifact) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(artifact_to_dict(artifact), f, indent=2)
        f.write("\n")
