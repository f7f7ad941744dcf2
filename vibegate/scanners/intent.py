"""Intent claim miner: what the code says about its own protections.

Sources:
- comments: free text such as "requires auth" or "validated with zod"
- imports: security libraries pulled into a file
- identifiers: function and variable names such as validateInput
No parsing beyond regular expressions; one claim per comment, import or name.
"""
from __future__ import annotations

import logging
import re

from ..core.context import ScanContext
from ..core.fingerprint import short_hash
from ..core.models import ClaimLocation, IntentClaim
from ..core.routes import build_route_model, iter_comments

logger = logging.getLogger(__name__)

# (pattern, claim type, strength); first match wins
_INTENT_PATTERNS: list[tuple[re.Pattern[str], str, str]] = [
    (re.compile(r"\b(?:auth|authenticate[ds]?|authori[sz]ed|protected|secured)\b", re.IGNORECASE), "AUTH_ENFORCED", "strong"),
    (re.compile(r"\brequires?\s*(?:auth|login|session)\b", re.IGNORECASE), "AUTH_ENFORCED", "strong"),
    (re.compile(r"\b(?:getServerSession|useSession|withAuth|requireAuth)\b"), "AUTH_ENFORCED", "medium"),
    (re.compile(r"\b(?:validat(?:e|ed|es|ion|or)|sanitiz(?:e|ed))\b", re.IGNORECASE), "INPUT_VALIDATED", "strong"),
    (re.compile(r"\b(?:schema|zod|yup|joi)\b", re.IGNORECASE), "INPUT_VALIDATED", "medium"),
    (re.compile(r"\b(?:csrf|xsrf|cross.?site)\b", re.IGNORECASE), "CSRF_ENABLED", "strong"),
    (re.compile(r"\b(?:rate.?limit\w*|throttl\w*|limit.?rate)\b", re.IGNORECASE), "RATE_LIMITED", "strong"),
    (re.compile(r"\b(?:encrypt\w*|cipher|aes)\b", re.IGNORECASE), "ENCRYPTED_AT_REST", "medium"),
]

# Identifiers are camelCase, so word boundaries inside names do not apply
_IDENTIFIER_PATTERNS: list[tuple[re.Pattern[str], str, str]] = [
    (re.compile(r"^(?:require|check|ensure|verify|with)(?:Auth|Session|User|Login)", re.IGNORECASE), "AUTH_ENFORCED", "medium"),
    (re.compile(r"^(?:validate|sanitize)\w+|\w+Schema$", re.IGNORECASE), "INPUT_VALIDATED", "medium"),
    (re.compile(r"csrf", re.IGNORECASE), "CSRF_ENABLED", "medium"),
    (re.compile(r"rate_?limit|limiter$", re.IGNORECASE), "RATE_LIMITED", "medium"),
    (re.compile(r"^encrypt", re.IGNORECASE), "ENCRYPTED_AT_REST", "medium"),
]

_SECURITY_IMPORTS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^next-auth"), "AUTH_ENFORCED"),
    (re.compile(r"^@auth/"), "AUTH_ENFORCED"),
    (re.compile(r"^@clerk/"), "AUTH_ENFORCED"),
    (re.compile(r"^passport"), "AUTH_ENFORCED"),
    (re.compile(r"^(?:zod|yup|joi)$"), "INPUT_VALIDATED"),
    (re.compile(r"^(?:csurf|@edge-csrf/\w+)$"), "CSRF_ENABLED"),
    (re.compile(r"^(?:express-rate-limit|rate-limiter-flexible|@upstash/ratelimit)$"), "RATE_LIMITED"),
]

_IMPORT = re.compile(r"""^\s*import\b[^;'"]*?['"]([^'"]+)['"]""", re.MULTILINE)
_FUNCTION_DECL = re.compile(r"\bfunction\s+([A-Za-z_$][\w$]*)\s*\(")
_VARIABLE_DECL = re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=")

_MAX_EVIDENCE = 100


def mine_intent_claims(ctx: ScanContext) -> list[IntentClaim]:
    """Mine claims from every readable source file, deduplicated by id."""
    claims: list[IntentClaim] = []
    seen: set[str] = set()
    for rel_path in ctx.files:
        text = ctx.read_text(rel_path)
        if text is None:
            continue
        for claim in mine_file(rel_path, text):
            if claim.id not in seen:
                seen.add(claim.id)
                claims.append(claim)
    logger.debug("mined %d intent claim(s) from %d file(s)", len(claims), len(ctx.files))
    return claims


def mine_file(rel_path: str, text: str) -> list[IntentClaim]:
    return [
        *_from_comments(rel_path, text),
        *_from_imports(rel_path, text),
        *_from_identifiers(rel_path, text),
    ]


def prepare_context(ctx: ScanContext) -> ScanContext:
    """Build the route model and claim set once; scanners read them from ctx."""
    if ctx.route_model is None:
        ctx.route_model = build_route_model(ctx)
    if ctx.claims is None:
        ctx.claims = mine_intent_claims(ctx)
    return ctx


def comment_scope(text: str) -> str:
    lowered = text.lower()
    if "@file" in lowered or "this file" in lowered or "this module" in lowered:
        return "module"
    if "this route" in lowered or "this endpoint" in lowered or "this handler" in lowered:
        return "route"
    if "all routes" in lowered or "every request" in lowered or "globally" in lowered:
        return "global"
    return "route"


def claim_id(claim_type: str, file: str, line: int, evidence: str) -> str:
    return short_hash(f"{claim_type}:{file}:{line}:{evidence[:50]}".lower(), 12)


def _from_comments(rel_path: str, text: str) -> list[IntentClaim]:
    claims: list[IntentClaim] = []
    for match in iter_comments(text):
        comment = match.group(0)
        body = _comment_body(comment)
        for pattern, claim_type, strength in _INTENT_PATTERNS:
            if not pattern.search(body):
                continue
            start = _line_of(text, match.start())
            claims.append(_claim(
                claim_type, "comment", rel_path, start, start + comment.count("\n"),
                _truncate(body), comment_scope(body), strength,
            ))
            break
    return claims


def _from_imports(rel_path: str, text: str) -> list[IntentClaim]:
    claims: list[IntentClaim] = []
    for match in _IMPORT.finditer(text):
        module = match.group(1)
        for pattern, claim_type in _SECURITY_IMPORTS:
            if pattern.search(module):
                line = _line_of(text, match.start(1))
                claims.append(_claim(
                    claim_type, "import", rel_path, line, line,
                    f'import from "{module}"', "module", "medium",
                ))
                break
    return claims


def _from_identifiers(rel_path: str, text: str) -> list[IntentClaim]:
    claims: list[IntentClaim] = []
    for decl, label in ((_FUNCTION_DECL, "function"), (_VARIABLE_DECL, "variable")):
        for match in decl.finditer(text):
            name = match.group(1)
            for pattern, claim_type, strength in _IDENTIFIER_PATTERNS:
                if pattern.search(name):
                    line = _line_of(text, match.start(1))
                    claims.append(_claim(
                        claim_type, "identifier", rel_path, line, line,
                        f"{label} {name}", "route", strength,
                    ))
                    break
    return claims


def _claim(
    claim_type: str, source: str, file: str, start: int, end: int,
    evidence: str, scope: str, strength: str,
) -> IntentClaim:
    return IntentClaim(
        id=claim_id(claim_type, file, start, evidence),
        type=claim_type,
        source=source,
        text_evidence=evidence,
        location=ClaimLocation(file=file, start_line=start, end_line=end),
        scope=scope,
        strength=strength,
    )


def _comment_body(comment: str) -> str:
    if comment.startswith("//"):
        return comment[2:].strip()
    body = comment[2:-2]
    lines = [line.strip().lstrip("*").strip() for line in body.splitlines()]
    return " ".join(line for line in lines if line)


def _truncate(text: str) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= _MAX_EVIDENCE:
        return cleaned
    return cleaned[:_MAX_EVIDENCE - 3] + "..."


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1
