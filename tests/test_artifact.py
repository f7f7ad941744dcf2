import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from vibegate.core.artifact import (
    ScanArtifact,
    artifact_from_dict,
    artifact_to_dict,
    dump_artifact,
    finding_from_dict,
    finding_to_dict,
    load_artifact,
    validate_finding,
)
from vibegate.core.context import ScanContext
from vibegate.core.errors import ArtifactLoadError
from vibegate.core.models import CoverageGap, RouteSnapshot
from vibegate.scanners import run_scanners

FIXTURES = Path(__file__).parent / "fixtures"

GENERATED = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _finding_doc(**overrides):
    doc = {
        "id": "vc-auth-001-0a1b2c3d",
        "ruleId": "VC-AUTH-001",
        "severity": "high",
        "confidence": 0.88,
        "category": "auth",
        "title": "Unprotected POST route",
        "description": "d",
        "evidence": [{"file": "app/api/x/route.ts", "startLine": 3, "endLine": 4, "label": "handler"}],
        "remediation": {"recommendedFix": "add auth"},
        "fingerprint": "0a1b2c3d4e5f6a7b",
    }
    doc.update(overrides)
    return doc


def _artifact_doc(findings):
    return {"version": "0.1", "generatedAt": "2025-06-01T12:00:00Z", "findings": findings}


# --- findings ---

def test_scanned_findings_survive_serialization():
    findings = run_scanners(ScanContext.collect(FIXTURES / "nextapp"))
    for finding in findings:
        doc = json.loads(json.dumps(finding_to_dict(finding)))
        assert validate_finding(doc, "f") == []
        assert finding_from_dict(doc) == finding


def test_finding_keys_are_camel_case():
    doc = finding_to_dict(finding_from_dict(_finding_doc()))
    assert list(doc) == [
        "id", "ruleId", "severity", "confidence", "category", "title",
        "description", "evidence", "remediation", "fingerprint",
    ]
    assert doc["evidence"][0] == {"file": "app/api/x/route.ts", "startLine": 3, "endLine": 4, "label": "handler"}


def test_plain_string_remediation_accepted():
    finding = finding_from_dict(_finding_doc(remediation="add auth"))
    assert finding.remediation == "add auth"


@pytest.mark.parametrize("overrides,issue_path", [
    ({"ruleId": "AUTH-1"}, "f.ruleId"),
    ({"severity": "urgent"}, "f.severity"),
    ({"confidence": 1.2}, "f.confidence"),
    ({"category": "misc"}, "f.category"),
    ({"evidence": []}, "f.evidence"),
    ({"evidence": [{"file": "a.ts", "startLine": 5, "endLine": 4, "label": "x"}]}, "f.evidence[0]"),
    ({"evidence": [{"file": "a.ts", "startLine": 0, "endLine": 4, "label": "x"}]}, "f.evidence[0].startLine"),
    ({"remediation": None}, "f.remediation"),
    ({"claim": {"type": "MAGIC"}}, "f.claim.type"),
    ({"proof": "yes"}, "f.proof"),
])
def test_invalid_findings(overrides, issue_path):
    issues = validate_finding(_finding_doc(**overrides), "f")
    assert issue_path in {i.path for i in issues}


def test_missing_fields_reported():
    doc = _finding_doc()
    del doc["fingerprint"]
    del doc["title"]
    paths = {i.path for i in validate_finding(doc, "f")}
    assert {"f.fingerprint", "f.title"} <= paths


# --- artifacts ---

def test_artifact_round_trip(tmp_path):
    artifact = ScanArtifact(
        generated_at=GENERATED,
        findings=run_scanners(ScanContext.collect(FIXTURES / "nextapp")),
        repo_name="nextapp",
        tool_version="0.1.0",
        routes=[RouteSnapshot("abc", "/api/x", "app/api/x/route.ts", ("POST",), True, False)],
        coverage={"claims": {"totalClaims": 0}},
        gaps=[CoverageGap("app/api/bin/route.ts", "not valid UTF-8")],
    )
    path = tmp_path / "artifact.json"
    dump_artifact(path, artifact)
    assert load_artifact(path) == artifact


def test_artifact_rejects_bad_version_and_findings():
    doc = _artifact_doc([_finding_doc(severity="urgent")])
    doc["version"] = "9"
    with pytest.raises(ArtifactLoadError) as exc_info:
        artifact_from_dict(doc)
    paths = {i.path for i in exc_info.value.issues}
    assert {"version", "findings[0].severity"} <= paths


def test_artifact_requires_timestamp():
    doc = _artifact_doc([])
    doc["generatedAt"] = "last tuesday"
    with pytest.raises(ArtifactLoadError, match="generatedAt"):
        artifact_from_dict(doc)


def test_artifact_routes_validated():
    doc = _artifact_doc([])
    doc["routes"] = [{"routeId": "r", "routePath": "/x", "sourceFile": "x.ts", "middlewareCovered": "yes"}]
    with pytest.raises(ArtifactLoadError) as exc_info:
        artifact_from_dict(doc)
    paths = {i.path for i in exc_info.value.issues}
    assert {"routes[0].middlewareCovered", "routes[0].authProtected"} <= paths


def test_load_artifact_rejects_invalid_json(tmp_path):
    path = tmp_path / "artifact.json"
    path.write_text("{not json")
    with pytest.raises(ArtifactLoadError):
        load_artifact(path)


def test_minimal_artifact():
    artifact = artifact_from_dict(_artifact_doc([_finding_doc()]))
    assert artifact.generated_at == GENERATED
    assert artifact.routes == []
    assert artifact.findings[0].evidence[0].snippet == ""
    assert artifact_to_dict(artifact)["findings"][0]["remediation"] == {"recommendedFix": "add auth"}
