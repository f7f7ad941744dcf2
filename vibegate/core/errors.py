from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class DocumentLoadError(Exception):
    """Raised when a document fails validation. Nothing from it is applied."""

    def __init__(self, source: str, issues: list[ValidationIssue]) -> None:
        self.source = source
        self.issues = list(issues)
        joined = "\n  ".join(str(i) for i in self.issues)
        super().__init__(f"{source}: validation failed:\n  {joined}")


class PolicyLoadError(DocumentLoadError):
    """Raised when a policy config is malformed."""


class WaiverLoadError(DocumentLoadError):
    """Raised when a waiver file is malformed."""


class ArtifactLoadError(DocumentLoadError):
    """Raised when a scan artifact is malformed."""
