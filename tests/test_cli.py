"""Integration tests for CLI behavior and output stability."""
import json
from pathlib import Path
from unittest.mock import patch

import yaml

from vibegate import __version__
from vibegate.__main__ import main
from vibegate.core.artifact import load_artifact

FIXTURES = Path(__file__).parent / "fixtures"
APP = FIXTURES / "nextapp"
WAIVERS = FIXTURES / "waivers.yaml"


def _run_main(*args: str) -> int:
    with patch("sys.argv", ["vibegate", *args]):
        return main()


def _scan_to(tmp_path, name="artifact.json") -> Path:
    out = tmp_path / name
    assert _run_main("scan", str(APP), "--out", str(out)) == 0
    return out


def _empty_baseline(tmp_path) -> Path:
    path = tmp_path / "baseline.json"
    path.write_text(json.dumps({"version": "0.1", "generatedAt": "2025-01-01T00:00:00Z", "findings": []}))
    return path


# --- scan ---

def test_scan_writes_artifact(tmp_path, capsys):
    out = _scan_to(tmp_path)
    artifact = load_artifact(out)
    assert [f.rule_id for f in artifact.findings] == ["VC-AUTH-001", "VC-HALL-011", "VC-HALL-010", "VC-HALL-010"]
    assert artifact.repo_name == "nextapp"
    assert artifact.tool_version == __version__
    routes = {r.route_path: r for r in artifact.routes}
    assert routes["/api/account/settings"].middleware_covered is True
    assert routes["/api/admin/users"].middleware_covered is False
    assert routes["/api/admin/users"].auth_protected is False
    assert artifact.coverage["routes"]["middlewareCoverage"] == 0.25
    assert artifact.coverage["claims"]["totalClaims"] == 5

    output = capsys.readouterr().out
    assert "[CRITICAL] VC-AUTH-001: Unprotected DELETE route: /api/admin/users" in output
    assert "4 finding(s) across 4 route(s)." in output


def test_scan_json_output(capsys):
    assert _run_main("scan", str(APP), "--json") == 0
    doc = json.loads(capsys.readouterr().out)
    assert doc["version"] == "0.1"
    assert doc["tool"] == {"name": "vibegate", "version": __version__}
    assert len(doc["findings"]) == 4
    assert all(f["ruleId"].startswith("VC-") for f in doc["findings"])


def test_scan_single_pack(capsys):
    assert _run_main("scan", str(APP), "--pack", "auth", "--json") == 0
    doc = json.loads(capsys.readouterr().out)
    assert [f["ruleId"] for f in doc["findings"]] == ["VC-AUTH-001"]


def test_scan_missing_directory(tmp_path, capsys):
    assert _run_main("scan", str(tmp_path / "nope")) == 1
    assert "is not a directory" in capsys.readouterr().err


def test_scan_reports_unreadable_files(tmp_path, capsys):
    route = tmp_path / "app" / "api" / "bin" / "route.ts"
    route.parent.mkdir(parents=True)
    route.write_bytes(b"\xff\xfe\x00")
    assert _run_main("scan", str(tmp_path)) == 0
    assert "warning: not analyzed: app/api/bin/route.ts" in capsys.readouterr().err


# --- evaluate ---

def test_evaluate_fails_on_critical(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    capsys.readouterr()
    assert _run_main("evaluate", str(artifact)) == 1
    output = capsys.readouterr().out
    assert output.startswith("Verdict: FAIL (profile: startup)")


def test_evaluate_with_waivers_warns(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    code = _run_main(
        "evaluate", str(artifact), "--waivers", str(WAIVERS), "--now", "2025-06-01T00:00:00Z",
    )
    assert code == 0
    captured = capsys.readouterr()
    assert "Verdict: WARN" in captured.out
    assert "2 finding(s) evaluated, 2 waived" in captured.out
    assert "stale waiver" not in captured.err


def test_evaluate_strict_profile_fails_after_waivers(tmp_path):
    artifact = _scan_to(tmp_path)
    code = _run_main(
        "evaluate", str(artifact), "--profile", "strict",
        "--waivers", str(WAIVERS), "--now", "2025-06-01T00:00:00Z",
    )
    assert code == 1


def test_expired_waiver_reported_and_no_longer_applies(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    code = _run_main(
        "evaluate", str(artifact), "--waivers", str(WAIVERS), "--now", "2026-01-15T00:00:00Z",
    )
    assert code == 1
    assert "warning: stale waiver w-admin-auth (expired)" in capsys.readouterr().err


def test_evaluate_json_output(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    capsys.readouterr()
    _run_main(
        "evaluate", str(artifact), "--waivers", str(WAIVERS), "--now", "2025-06-01T00:00:00Z", "--json",
    )
    doc = json.loads(capsys.readouterr().out)
    assert doc["verdict"]["status"] == "warn"
    assert doc["policy"]["profile"] == "startup"
    assert sorted(w["waiverId"] for w in doc["waived"]) == ["w-admin-auth", "w-legacy"]
    assert doc["staleWaivers"] == []
    assert "regression" not in doc


def test_evaluate_baseline_new_high_fails(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    capsys.readouterr()
    code = _run_main(
        "evaluate", str(artifact), "--baseline", str(_empty_baseline(tmp_path)),
        "--waivers", str(WAIVERS), "--now", "2025-06-01T00:00:00Z", "--json",
    )
    assert code == 1
    doc = json.loads(capsys.readouterr().out)
    assert len(doc["regression"]["new"]) == 2
    assert any(r.startswith("1 new high/critical finding(s)") for r in doc["verdict"]["reasons"])


def test_evaluate_against_identical_baseline(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    capsys.readouterr()
    _run_main(
        "evaluate", str(artifact), "--baseline", str(artifact),
        "--waivers", str(WAIVERS), "--now", "2025-06-01T00:00:00Z", "--json",
    )
    doc = json.loads(capsys.readouterr().out)
    assert doc["regression"]["new"] == []
    assert doc["regression"]["netChange"] == 0
    assert doc["verdict"]["status"] == "warn"


def test_evaluate_with_policy_file(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    capsys.readouterr()
    code = _run_main("evaluate", str(artifact), "--policy", str(FIXTURES / "policy_strict.yaml"))
    assert code == 1
    assert "(profile: strict)" in capsys.readouterr().out


def test_invalid_policy_fails_closed(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    policy = tmp_path / "policy.yaml"
    policy.write_text(yaml.safe_dump({"thresholds": {"failOnSeverity": "urgent"}}))
    assert _run_main("evaluate", str(artifact), "--policy", str(policy)) == 1
    assert "error:" in capsys.readouterr().err


def test_missing_artifact_fails_closed(tmp_path, capsys):
    assert _run_main("evaluate", str(tmp_path / "missing.json")) == 1
    assert "cannot read file" in capsys.readouterr().err


def test_invalid_now_rejected(tmp_path, capsys):
    artifact = _scan_to(tmp_path)
    assert _run_main("evaluate", str(artifact), "--now", "soon") == 1
    assert "invalid --now timestamp" in capsys.readouterr().err


# --- waivers ---

def test_waiver_add_list_remove(tmp_path, capsys):
    path = tmp_path / "waivers.yaml"
    assert _run_main(
        "waivers", "add", "--file", str(path), "--rule-id", "VC-HALL-*",
        "--path-pattern", "app/internal/**", "--reason", "internal only", "--by", "alice",
        "--expires", "2030-01-01T00:00:00Z", "--ticket", "SEC-1", "--now", "2025-06-01T00:00:00Z",
    ) == 0
    doc = yaml.safe_load(path.read_text())
    assert doc["version"] == "0.1"
    [entry] = doc["waivers"]
    assert entry["match"] == {"ruleId": "VC-HALL-*", "pathPattern": "app/internal/**"}
    assert entry["ticketRef"] == "SEC-1"
    waiver_id = entry["id"]
    capsys.readouterr()

    assert _run_main("waivers", "list", "--file", str(path)) == 0
    listing = capsys.readouterr().out
    assert waiver_id in listing
    assert "VC-HALL-* @ app/internal/**" in listing

    assert _run_main("waivers", "remove", "--file", str(path), waiver_id) == 0
    assert yaml.safe_load(path.read_text())["waivers"] == []


def test_waiver_remove_unknown_id(tmp_path, capsys):
    path = tmp_path / "waivers.yaml"
    path.write_text(WAIVERS.read_text())
    assert _run_main("waivers", "remove", "--file", str(path), "w-nope") == 1
    assert "no waiver with id" in capsys.readouterr().err


def test_waiver_list_marks_expired(capsys):
    assert _run_main("waivers", "list", "--file", str(WAIVERS), "--now", "2026-01-15T00:00:00Z") == 0
    listing = capsys.readouterr().out
    assert "w-admin-auth  VC-AUTH-* @ app/api/admin/**  by sec-team  [expired]" in listing


def test_waiver_list_rejects_invalid_file(tmp_path, capsys):
    path = tmp_path / "waivers.yaml"
    path.write_text(yaml.safe_dump({"version": "0.1", "waivers": [{"id": "x"}]}))
    assert _run_main("waivers", "list", "--file", str(path)) == 1
    assert "validation failed" in capsys.readouterr().err
