"""Shared helpers for loading and validating YAML/JSON documents."""
from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .errors import DocumentLoadError, ValidationIssue


def load_mapping(path: Path, error_cls: type[DocumentLoadError]) -> dict:
    """Read *path* as YAML (JSON is a subset) and require a top-level mapping."""
    try:
        with open(path, encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except OSError as e:
        raise error_cls(str(path), [ValidationIssue("$", f"cannot read file: {e.strerror or e}")]) from e
    except yaml.YAMLError as e:
        raise error_cls(str(path), [ValidationIssue("$", f"invalid YAML/JSON: {e}")]) from e

    if not isinstance(doc, dict):
        raise error_cls(str(path), [ValidationIssue("$", "expected a mapping at top level")])
    return doc


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None if invalid."""
    # YAML resolves unquoted timestamps and dates itself
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def check_type(
    doc: dict, key: str, expected: type | tuple[type, ...], issues: list[ValidationIssue],
    path: str, required: bool = False,
) -> None:
    """Append an issue if doc[key] is missing (when required) or of the wrong type."""
    if key not in doc or doc[key] is None:
        if required:
            issues.append(ValidationIssue(f"{path}.{key}", "required"))
        return
    value = doc[key]
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool) and bool not in _as_tuple(expected):
        issues.append(ValidationIssue(f"{path}.{key}", f"expected {_type_names(expected)}, got bool"))
    elif not isinstance(value, expected):
        issues.append(ValidationIssue(
            f"{path}.{key}", f"expected {_type_names(expected)}, got {type(value).__name__}",
        ))


def check_choice(doc: dict, key: str, choices: tuple[str, ...], issues: list[ValidationIssue], path: str) -> None:
    if key in doc and doc[key] is not None and doc[key] not in choices:
        issues.append(ValidationIssue(f"{path}.{key}", f"unknown value {doc[key]!r} (valid: {', '.join(choices)})"))


def check_unit_interval(doc: dict, key: str, issues: list[ValidationIssue], path: str) -> None:
    value = doc.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and not 0 <= value <= 1:
        issues.append(ValidationIssue(f"{path}.{key}", f"must be between 0 and 1, got {value}"))


def _as_tuple(expected: type | tuple[type, ...]) -> tuple[type, ...]:
    return expected if isinstance(expected, tuple) else (expected,)


def _type_names(expected: type | tuple[type, ...]) -> str:
    return " or ".join(t.__name__ for t in _as_tuple(expected))
