"""Scanner registry.

A scanner is any callable ``scanner(ctx) -> list[Finding]``. Scanners are
grouped into named packs; ``run_scanners`` prepares the shared route model and
claim set before the first scanner runs.
"""
from __future__ import annotations

import logging
from typing import Callable

from ..core.context import ScanContext
from ..core.models import Finding
from ..core.severity import SEVERITY_RANK
from .auth import scan_unprotected_routes
from .hallucinations import scan_comment_claims_unproven, scan_middleware_assumed
from .intent import prepare_context

logger = logging.getLogger(__name__)

Scanner = Callable[[ScanContext], list[Finding]]

SCANNER_PACKS: dict[str, tuple[Scanner, ...]] = {
    "auth": (scan_unprotected_routes,),
    "hallucinations": (scan_comment_claims_unproven, scan_middleware_assumed),
}


def run_scanners(ctx: ScanContext, packs: list[str] | None = None) -> list[Finding]:
    """Run the selected packs (all by default) and return deduplicated, sorted findings.

    Raises KeyError for an unknown pack name.
    """
    selected = list(SCANNER_PACKS) if packs is None else packs
    unknown = [p for p in selected if p not in SCANNER_PACKS]
    if unknown:
        raise KeyError(f"unknown scanner pack(s): {', '.join(unknown)}")

    prepare_context(ctx)

    findings: list[Finding] = []
    seen: set[str] = set()
    for pack in selected:
        for scanner in SCANNER_PACKS[pack]:
            results = scanner(ctx)
            logger.debug("%s.%s: %d finding(s)", pack, scanner.__name__, len(results))
            for finding in results:
                if finding.fingerprint in seen:
                    continue
                seen.add(finding.fingerprint)
                findings.append(finding)

    findings.sort(key=lambda f: (-SEVERITY_RANK[f.severity], f.rule_id, f.fingerprint))
    return findings
