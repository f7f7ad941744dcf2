"""Entry point: python -m vibegate {scan,evaluate,waivers} ..."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from . import __version__
from .core.artifact import (
    ScanArtifact,
    artifact_to_dict,
    coverage_to_dict,
    dump_artifact,
    finding_to_dict,
    load_artifact,
)
from .core.context import ScanContext
from .core.documents import format_timestamp, parse_timestamp
from .core.engine import evaluate, exit_code, load_policy, merge_verdicts, policy_to_dict
from .core.errors import DocumentLoadError
from .core.models import RouteSnapshot
from .core.proof import build_all_proof_traces, calculate_coverage, calculate_route_coverage, is_route_protected
from .core.profiles import PROFILE_NAMES, get_profile
from .core.regression import diff, diff_protection, evaluate_regression
from .core.routes import covering_middleware
from .core.waivers import add_waiver, create_waiver, dump_waivers, load_waivers, remove_waiver, resolve, waiver_to_dict
from .scanners import SCANNER_PACKS, run_scanners

_SCHEMA_VERSION = "0.1"


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="vibegate",
        description="Evidence-backed security findings and deploy gating for web apps",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan a source tree and write a scan artifact")
    scan.add_argument("root", type=Path, help="Repository root to scan")
    scan.add_argument("--out", type=Path, help="Write the artifact JSON to this file")
    scan.add_argument(
        "--pack", action="append", choices=list(SCANNER_PACKS),
        help="Scanner pack to run (repeatable; default: all)",
    )
    scan.add_argument("--workers", type=int, default=4, help="Threads used to build proof traces (default: 4)")
    scan.add_argument("--json", action="store_true", dest="json_output", help="Print the artifact as JSON")

    ev = sub.add_parser("evaluate", help="Evaluate a scan artifact against a policy")
    ev.add_argument("artifact", type=Path, help="Scan artifact JSON")
    ev.add_argument("--baseline", type=Path, help="Baseline artifact for regression checks")
    policy_source = ev.add_mutually_exclusive_group()
    policy_source.add_argument("--profile", choices=PROFILE_NAMES, help="Built-in policy profile (default: startup)")
    policy_source.add_argument("--policy", type=Path, help="Path to a policy YAML file")
    ev.add_argument("--waivers", type=Path, help="Path to a waiver file")
    ev.add_argument("--now", help="Evaluation time as ISO-8601 (default: current UTC time)")
    ev.add_argument("--json", action="store_true", dest="json_output", help="Output the verdict as JSON")

    wv = sub.add_parser("waivers", help="Manage a waiver file")
    wv_sub = wv.add_subparsers(dest="waiver_command", required=True)
    wv_list = wv_sub.add_parser("list", help="List waivers")
    wv_list.add_argument("--file", type=Path, required=True)
    wv_list.add_argument("--now", help="Evaluation time as ISO-8601 (default: current UTC time)")
    wv_list.add_argument("--json", action="store_true", dest="json_output")
    wv_add = wv_sub.add_parser("add", help="Add a waiver")
    wv_add.add_argument("--file", type=Path, required=True)
    target = wv_add.add_mutually_exclusive_group(required=True)
    target.add_argument("--fingerprint")
    target.add_argument("--rule-id")
    wv_add.add_argument("--path-pattern", help="Glob over evidence file paths (with --rule-id)")
    wv_add.add_argument("--reason", required=True)
    wv_add.add_argument("--by", dest="created_by", required=True)
    wv_add.add_argument("--expires", help="Expiry as ISO-8601")
    wv_add.add_argument("--ticket", help="Ticket reference")
    wv_add.add_argument("--now", help="Creation time as ISO-8601 (default: current UTC time)")
    wv_remove = wv_sub.add_parser("remove", help="Remove a waiver by id")
    wv_remove.add_argument("--file", type=Path, required=True)
    wv_remove.add_argument("waiver_id")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "scan":
            return _scan(args)
        if args.command == "evaluate":
            return _evaluate(args)
        return _waivers(args)
    except (DocumentLoadError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


# --- scan ---

def _scan(args: argparse.Namespace) -> int:
    root = args.root
    if not root.is_dir():
        print(f"error: {root} is not a directory", file=sys.stderr)
        return 1

    ctx = ScanContext.collect(root)
    findings = run_scanners(ctx, args.pack)
    model = ctx.route_model

    traces = build_all_proof_traces(model.routes, ctx.claims, model.middleware, max_workers=args.workers)
    coverage = coverage_to_dict(
        calculate_coverage(traces),
        calculate_route_coverage(model.routes, model.middleware),
    )
    artifact = ScanArtifact(
        generated_at=datetime.now(timezone.utc),
        findings=findings,
        repo_name=root.resolve().name,
        tool_version=__version__,
        routes=[
            RouteSnapshot(
                route_id=r.route_id,
                route_path=r.route_path,
                source_file=r.source_file,
                http_methods=tuple(sorted(r.http_methods)),
                middleware_covered=covering_middleware(r, model.middleware) is not None,
                auth_protected=is_route_protected(r, model.middleware),
            )
            for r in model.routes
        ],
        coverage=coverage,
        gaps=list(ctx.gaps),
    )

    for gap in ctx.gaps:
        print(f"warning: not analyzed: {gap.file} ({gap.reason})", file=sys.stderr)

    if args.out:
        dump_artifact(args.out, artifact)

    if args.json_output:
        print(json.dumps(artifact_to_dict(artifact), indent=2))
    elif not findings:
        print(f"Scan complete. {len(model.routes)} route(s), no findings.")
    else:
        for finding in findings:
            print(f"[{finding.severity.upper()}] {finding.rule_id}: {finding.title}")
            for ev in finding.evidence:
                print(f"  - {ev.file}:{ev.start_line}  {ev.label}")
            print(f"  fingerprint: {finding.fingerprint}")
            print()
        print(f"{len(findings)} finding(s) across {len(model.routes)} route(s).")
    return 0


# --- evaluate ---

def _evaluate(args: argparse.Namespace) -> int:
    now = _parse_now(args.now)
    artifact = load_artifact(args.artifact)
    policy = load_policy(args.policy) if args.policy else get_profile(args.profile)
    waivers = load_waivers(args.waivers) if args.waivers else []

    resolution = resolve(artifact.findings, waivers, now)
    verdicts = [evaluate(resolution.kept, policy)]

    regression = None
    if args.baseline:
        baseline = load_artifact(args.baseline)
        baseline_kept = resolve(baseline.findings, waivers, now).kept
        regression = diff(resolution.kept, baseline_kept)
        regression.protection_removed = diff_protection(artifact.routes, baseline.routes)
        verdicts.append(evaluate_regression(regression, policy.regression))

    verdict = merge_verdicts(*verdicts)

    for waiver in resolution.stale:
        state = "expired" if waiver.expires_at is not None and waiver.expires_at < now else "unused"
        print(f"warning: stale waiver {waiver.id} ({state})", file=sys.stderr)

    if args.json_output:
        output: dict = {
            "meta": {"schema_version": _SCHEMA_VERSION, "tool_version": __version__, "evaluatedAt": format_timestamp(now)},
            "verdict": {"status": verdict.status, "reasons": list(verdict.reasons)},
            "policy": policy_to_dict(policy),
            "findings": [finding_to_dict(f) for f in resolution.kept],
            "waived": [{"findingId": w.finding.id, "waiverId": w.waiver.id} for w in resolution.waived],
            "staleWaivers": [w.id for w in resolution.stale],
        }
        if regression is not None:
            output["regression"] = {
                "new": [f.id for f in regression.new],
                "resolved": [f.id for f in regression.resolved],
                "persisting": [f.id for f in regression.persisting],
                "severityRegressions": [r.current.id for r in regression.severity_regressions],
                "netChange": regression.net_change,
                "protectionRemoved": [
                    {"routeId": r.route_id, "routePath": r.route_path, "protection": r.protection}
                    for r in regression.protection_removed
                ],
            }
        print(json.dumps(output, indent=2))
    else:
        print(f"Verdict: {verdict.status.upper()} (profile: {policy.profile})")
        for reason in verdict.reasons:
            print(f"  - {reason}")
        print(
            f"{len(resolution.kept)} finding(s) evaluated, {len(resolution.waived)} waived"
            + (f", {len(regression.new)} new since baseline" if regression is not None else "")
        )

    return exit_code(verdict)


# --- waivers ---

def _waivers(args: argparse.Namespace) -> int:
    path: Path = args.file

    if args.waiver_command == "list":
        now = _parse_now(args.now)
        waivers = load_waivers(path)
        if args.json_output:
            print(json.dumps([waiver_to_dict(w) for w in waivers], indent=2))
            return 0
        if not waivers:
            print("No waivers.")
        for w in waivers:
            target = w.match.fingerprint or w.match.rule_id
            if w.match.path_pattern:
                target += f" @ {w.match.path_pattern}"
            expired = w.expires_at is not None and w.expires_at < now
            print(f"{w.id}  {target}  by {w.created_by}{'  [expired]' if expired else ''}")
            print(f"  reason: {w.reason}")
        return 0

    if args.waiver_command == "add":
        waivers = load_waivers(path) if path.exists() else []
        expires = None
        if args.expires:
            expires = parse_timestamp(args.expires)
            if expires is None:
                raise ValueError(f"invalid --expires timestamp {args.expires!r}")
        waiver = create_waiver(
            reason=args.reason,
            created_by=args.created_by,
            created_at=_parse_now(args.now),
            fingerprint=args.fingerprint,
            rule_id=args.rule_id,
            path_pattern=args.path_pattern,
            expires_at=expires,
            ticket_ref=args.ticket,
        )
        waivers = add_waiver(waivers, waiver)
        dump_waivers(path, waivers)
        print(f"Added waiver {waivers[-1].id}")
        return 0

    waivers = load_waivers(path)
    remaining = remove_waiver(waivers, args.waiver_id)
    if len(remaining) == len(waivers):
        print(f"error: no waiver with id {args.waiver_id!r}", file=sys.stderr)
        return 1
    dump_waivers(path, remaining)
    print(f"Removed waiver {args.waiver_id}")
    return 0


def _parse_now(value: str | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    now = parse_timestamp(value)
    if now is None:
        raise ValueError(f"invalid --now timestamp {value!r}")
    return now


if __name__ == "__main__":
    sys.exit(main())
