from __future__ import annotations

import functools
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

import yaml

from .documents import check_type, format_timestamp, load_mapping, parse_timestamp
from .errors import ValidationIssue, WaiverLoadError
from .models import Finding, Waiver, WaiverMatch

logger = logging.getLogger(__name__)

WAIVER_FILE_VERSION = "0.1"


@dataclass(frozen=True)
class WaivedFinding:
    finding: Finding
    waiver: Waiver


@dataclass
class WaiverResolution:
    kept: list[Finding] = field(default_factory=list)
    waived: list[WaivedFinding] = field(default_factory=list)
    stale: list[Waiver] = field(default_factory=list)


# --- matching ---

def match_rule_id(rule_id: str, pattern: str) -> bool:
    """Exact match, or prefix match when *pattern* ends with '*' (e.g. "VC-AUTH-*")."""
    if pattern.endswith("*"):
        return rule_id.startswith(pattern[:-1])
    return rule_id == pattern


def match_path_pattern(evidence_paths: list[str], pattern: str) -> bool:
    """True if any evidence path matches the glob.

    '*' and '?' stay within one path segment; '**' spans any number of them.
    """
    regex = glob_to_regex(pattern)
    return any(regex.match(p.replace("\\", "/")) for p in evidence_paths)


@functools.lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    segments = pattern.strip("/").split("/")
    out: list[str] = []
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if segment == "**":
            out.append(".*" if last else "(?:[^/]+/)*")
            continue
        out.append(_segment_regex(segment) + ("" if last else "/"))
    return re.compile("^" + "".join(out) + "$")


def _segment_regex(segment: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(segment):
        ch = segment[i]
        if ch == "*":
            while i + 1 < len(segment) and segment[i + 1] == "*":
                i += 1
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[" and "]" in segment[i + 2:]:
            end = segment.index("]", i + 2)
            body = segment[i + 1:end]
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append("[" + body.replace("\\", "\\\\").replace("/", "") + "]")
            i = end
        elif ch == "{" and "}" in segment[i:]:
            end = segment.index("}", i)
            options = segment[i + 1:end].split(",")
            out.append("(?:" + "|".join(_segment_regex(o) for o in options) + ")")
            i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


def waiver_matches(waiver: Waiver, finding: Finding) -> bool:
    match = waiver.match
    if match.fingerprint and match.fingerprint == finding.fingerprint:
        return True

    if match.rule_id and match_rule_id(finding.rule_id, match.rule_id):
        if match.path_pattern:
            return match_path_pattern([e.file for e in finding.evidence], match.path_pattern)
        return True

    return False


def is_waiver_active(waiver: Waiver, now: datetime) -> bool:
    return waiver.expires_at is None or waiver.expires_at >= now


def resolve(findings: list[Finding], waivers: list[Waiver], now: datetime) -> WaiverResolution:
    """Split findings into kept and waived; report expired or unused waivers as stale.

    A finding is waived by the first active waiver that matches it.
    """
    active = [w for w in waivers if is_waiver_active(w, now)]
    used: set[str] = set()
    result = WaiverResolution()

    for finding in findings:
        waiver = next((w for w in active if waiver_matches(w, finding)), None)
        if waiver is None:
            result.kept.append(finding)
            continue
        used.add(waiver.id)
        result.waived.append(WaivedFinding(finding=finding, waiver=waiver))
        logger.debug("finding %s waived by %s", finding.id, waiver.id)

    seen: set[str] = set()
    for waiver in waivers:
        if waiver.id in used or waiver.id in seen:
            continue
        seen.add(waiver.id)
        result.stale.append(waiver)

    return result


# --- waiver file ---

def load_waivers(path: Path) -> list[Waiver]:
    """Load and validate a waiver file. Any issue rejects the whole file."""
    doc = load_mapping(path, WaiverLoadError)
    issues = validate_waiver_file(doc)
    if issues:
        raise WaiverLoadError(str(path), issues)
    return [_waiver_from_dict(w) for w in doc["waivers"]]


def validate_waiver_file(doc: dict) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if doc.get("version") != WAIVER_FILE_VERSION:
        issues.append(ValidationIssue("version", f"expected {WAIVER_FILE_VERSION!r}, got {doc.get('version')!r}"))

    waivers = doc.get("waivers")
    if not isinstance(waivers, list):
        issues.append(ValidationIssue("waivers", "expected a list"))
        return issues

    ids: set[str] = set()
    for i, waiver in enumerate(waivers):
        path = f"waivers[{i}]"
        if not isinstance(waiver, dict):
            issues.append(ValidationIssue(path, f"expected dict, got {type(waiver).__name__}"))
            continue
        issues.extend(_validate_waiver(waiver, path))
        if isinstance(waiver.get("id"), str):
            if waiver["id"] in ids:
                issues.append(ValidationIssue(f"{path}.id", f"duplicate waiver id {waiver['id']!r}"))
            ids.add(waiver["id"])
    return issues


def _validate_waiver(waiver: dict, path: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    check_type(waiver, "id", str, issues, path, required=True)
    for key in ("reason", "createdBy"):
        check_type(waiver, key, str, issues, path, required=True)
        if isinstance(waiver.get(key), str) and not waiver[key].strip():
            issues.append(ValidationIssue(f"{path}.{key}", "must not be empty"))
    check_type(waiver, "ticketRef", str, issues, path)

    for key in ("createdAt", "expiresAt"):
        if key not in waiver or waiver[key] is None:
            if key == "createdAt":
                issues.append(ValidationIssue(f"{path}.{key}", "required"))
            continue
        if parse_timestamp(waiver[key]) is None:
            issues.append(ValidationIssue(f"{path}.{key}", f"invalid ISO-8601 timestamp {waiver[key]!r}"))

    match = waiver.get("match")
    if not isinstance(match, dict):
        issues.append(ValidationIssue(f"{path}.match", "required mapping"))
        return issues
    for key in ("fingerprint", "ruleId", "pathPattern"):
        check_type(match, key, str, issues, f"{path}.match")
    if not match.get("fingerprint") and not match.get("ruleId"):
        issues.append(ValidationIssue(f"{path}.match", "waiver must specify fingerprint or ruleId"))
    return issues


def _waiver_from_dict(doc: dict) -> Waiver:
    match = doc["match"]
    expires = doc.get("expiresAt")
    return Waiver(
        id=doc["id"],
        match=WaiverMatch(
            fingerprint=match.get("fingerprint"),
            rule_id=match.get("ruleId"),
            path_pattern=match.get("pathPattern"),
        ),
        reason=doc["reason"],
        created_by=doc["createdBy"],
        created_at=parse_timestamp(doc["createdAt"]),
        expires_at=parse_timestamp(expires) if expires is not None else None,
        ticket_ref=doc.get("ticketRef"),
    )


def waiver_to_dict(waiver: Waiver) -> dict:
    match = {
        "fingerprint": waiver.match.fingerprint,
        "ruleId": waiver.match.rule_id,
        "pathPattern": waiver.match.path_pattern,
    }
    doc = {
        "id": waiver.id,
        "match": {k: v for k, v in match.items() if v is not None},
        "reason": waiver.reason,
        "createdBy": waiver.created_by,
        "createdAt": format_timestamp(waiver.created_at),
    }
    if waiver.expires_at is not None:
        doc["expiresAt"] = format_timestamp(waiver.expires_at)
    if waiver.ticket_ref:
        doc["ticketRef"] = waiver.ticket_ref
    return doc


def dump_waivers(path: Path, waivers: list[Waiver]) -> None:
    doc = {"version": WAIVER_FILE_VERSION, "waivers": [waiver_to_dict(w) for w in waivers]}
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, sort_keys=False)


# --- authoring ---

def create_waiver(
    *,
    reason: str,
    created_by: str,
    created_at: datetime,
    fingerprint: str | None = None,
    rule_id: str | None = None,
    path_pattern: str | None = None,
    expires_at: datetime | None = None,
    ticket_ref: str | None = None,
) -> Waiver:
    if not fingerprint and not rule_id:
        raise ValueError("waiver must specify fingerprint or rule_id")
    return Waiver(
        id=f"w-{uuid.uuid4().hex[:12]}",
        match=WaiverMatch(fingerprint=fingerprint, rule_id=rule_id, path_pattern=path_pattern),
        reason=reason,
        created_by=created_by,
        created_at=created_at,
        expires_at=expires_at,
        ticket_ref=ticket_ref,
    )


def add_waiver(waivers: list[Waiver], waiver: Waiver) -> list[Waiver]:
    if any(w.id == waiver.id for w in waivers):
        waiver = replace(waiver, id=f"w-{uuid.uuid4().hex[:12]}")
    return [*waivers, waiver]


def remove_waiver(waivers: list[Waiver], waiver_id: str) -> list[Waiver]:
    return [w for w in waivers if w.id != waiver_id]
