from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from .models import CoverageGap, IntentClaim

if TYPE_CHECKING:
    from .routes import RouteModel

logger = logging.getLogger(__name__)

_SKIP_DIRS = {"node_modules", ".git", ".next", "dist", "build", "coverage", ".turbo", ".vercel"}
_SOURCE_SUFFIXES = {".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"}


class ScanContext:
    """Resolved source-file list for one repository plus a read helper.

    Reads that fail are recorded in ``gaps`` instead of raising, so a single
    unreadable file never aborts a scan.
    """

    def __init__(self, repo_root: Path, files: list[str]) -> None:
        self.repo_root = repo_root
        self.files = sorted(f.replace("\\", "/") for f in files)
        self.gaps: list[CoverageGap] = []
        # filled once per scan by the scanner registry, before any scanner runs
        self.route_model: RouteModel | None = None
        self.claims: list[IntentClaim] | None = None
        self._cache: dict[str, str | None] = {}

    @classmethod
    def collect(cls, repo_root: Path) -> ScanContext:
        """Walk *repo_root* and keep JavaScript/TypeScript sources."""
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(repo_root):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in filenames:
                if Path(name).suffix in _SOURCE_SUFFIXES:
                    rel = Path(dirpath, name).relative_to(repo_root)
                    files.append(rel.as_posix())
        return cls(repo_root, files)

    def read_text(self, rel_path: str) -> str | None:
        """Return the file contents, or None (and record a gap) if unreadable."""
        if rel_path in self._cache:
            return self._cache[rel_path]

        try:
            text = (self.repo_root / rel_path).read_text(encoding="utf-8")
        except UnicodeDecodeError:
            text = None
            self.record_gap(rel_path, "not valid UTF-8")
        except OSError as e:
            text = None
            self.record_gap(rel_path, e.strerror or str(e))

        self._cache[rel_path] = text
        return text

    def record_gap(self, rel_path: str, reason: str) -> None:
        logger.warning("not analyzed: %s: %s", rel_path, reason)
        self.gaps.append(CoverageGap(file=rel_path, reason=reason))
