import pytest

from vibegate.core.fingerprint import finding_id, fingerprint, make_finding, short_hash
from vibegate.core.models import EvidenceItem


def _evidence(file="app/api/users/route.ts", line=5):
    return EvidenceItem(file=file, start_line=line, end_line=line, label="handler")


def _finding(**overrides):
    kwargs = dict(
        rule_id="VC-AUTH-001",
        severity="high",
        confidence=0.9,
        category="auth",
        title="Unprotected route",
        description="desc",
        evidence=[_evidence()],
        remediation="add auth",
        symbol="POST",
        route="/api/users",
    )
    kwargs.update(overrides)
    return make_finding(**kwargs)


# --- fingerprint ---

def test_fingerprint_is_deterministic():
    a = fingerprint("VC-AUTH-001", "app/api/users/route.ts", "POST", "/api/users", 5)
    b = fingerprint("VC-AUTH-001", "app/api/users/route.ts", "POST", "/api/users", 5)
    assert a == b
    assert len(a) == 16
    int(a, 16)


@pytest.mark.parametrize("changed", [
    ("VC-AUTH-002", "app/api/users/route.ts", "POST", "/api/users", 5),
    ("VC-AUTH-001", "app/api/other/route.ts", "POST", "/api/users", 5),
    ("VC-AUTH-001", "app/api/users/route.ts", "PUT", "/api/users", 5),
    ("VC-AUTH-001", "app/api/users/route.ts", "POST", "/api/other", 5),
    ("VC-AUTH-001", "app/api/users/route.ts", "POST", "/api/users", 6),
])
def test_fingerprint_changes_with_any_input(changed):
    base = fingerprint("VC-AUTH-001", "app/api/users/route.ts", "POST", "/api/users", 5)
    assert fingerprint(*changed) != base


def test_missing_symbol_and_route_hash_as_empty():
    assert fingerprint("VC-AUTH-001", "a.ts") == fingerprint("VC-AUTH-001", "a.ts", "", "", None)


def test_finding_id_format():
    fid = finding_id("VC-HALL-010", "a.ts", start_line=3)
    fp = fingerprint("VC-HALL-010", "a.ts", start_line=3)
    assert fid == f"vc-hall-010-{fp[:8]}"


def test_short_hash_length():
    assert len(short_hash("/api/users:POST", 12)) == 12


# --- make_finding ---

def test_make_finding_derives_identity_from_primary_evidence():
    f = _finding()
    assert f.fingerprint == fingerprint("VC-AUTH-001", "app/api/users/route.ts", "POST", "/api/users", 5)
    assert f.id == f"vc-auth-001-{f.fingerprint[:8]}"
    assert f.evidence == (_evidence(),)


def test_make_finding_ignores_severity_and_confidence():
    assert _finding(severity="low", confidence=0.1).fingerprint == _finding().fingerprint


def test_make_finding_line_shift_changes_identity():
    moved = _finding(evidence=[_evidence(line=6)])
    assert moved.fingerprint != _finding().fingerprint


def test_make_finding_requires_evidence():
    with pytest.raises(ValueError, match="at least one evidence"):
        _finding(evidence=[])
