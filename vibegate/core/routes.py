"""Route model: logical routes from handler files and middleware coverage.

Supports Next.js conventions:
- App Router handlers: app/**/route.{ts,tsx,js,jsx} (optionally under src/)
- Pages Router API handlers: pages/api/**
- Middleware: middleware.{ts,js} at the repo root or under src/
"""
from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from typing import Iterator

from .context import ScanContext
from .fingerprint import short_hash
from .models import CoverageGap, MiddlewareInfo, RouteInfo

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE", "ANY"})

# Pages Router handlers (and unreadable handlers) serve every method
ANY_METHOD = "ANY"

# Matcher used for a middleware with no config.matcher key: it runs everywhere
MATCH_ALL = "/:path*"

_SOURCE_EXT = re.compile(r"\.(?:ts|tsx|js|jsx|mjs|cjs)$")
_APP_HANDLER_FILE = re.compile(r"^route\.(?:ts|tsx|js|jsx)$")
_INDEX_FILES = {"route", "page", "index"}
_MIDDLEWARE_FILES = {"middleware.ts", "middleware.js"}

_METHOD_ALT = "|".join(HTTP_METHODS)
_EXPORTED_HANDLER = re.compile(
    rf"export\s+(?:async\s+)?function\s+({_METHOD_ALT})\b"
    rf"|export\s+(?:const|let|var)\s+({_METHOD_ALT})\s*="
)
_EXPORT_LIST = re.compile(r"export\s*\{([^}]*)\}")

_CONFIG_EXPORT = re.compile(r"export\s+const\s+config\s*=")
_MATCHER_CONFIG = re.compile(r"export\s+const\s+config\s*=\s*\{[^}]*?matcher\s*:\s*([^}]+)\}", re.DOTALL)
_MATCHER_ARRAY = re.compile(r"\[([^\]]*)\]", re.DOTALL)
_STRING_LITERAL = re.compile(r"""['"`]([^'"`]+)['"`]""")

_MATCHER_KEY = re.compile(r"\bmatcher\s*:")

# String literals are matched first so comment markers inside them are kept
_CODE_TOKEN = re.compile(
    r"""(?P<string>'(?:\\.|[^'\\\n])*'|"(?:\\.|[^"\\\n])*"|`(?:\\.|[^`\\])*`)"""
    r"|(?P<comment>/\*.*?\*/|(?<![:\\])//[^\n]*)",
    re.DOTALL,
)

# Structural protections recognized in handler and middleware bodies
_GUARD_PATTERNS: dict[str, re.Pattern[str]] = {
    "auth": re.compile(
        r"\b(?:getServerSession|requireAuth|withAuth|getToken|verifyToken|getAuth|currentUser"
        r"|requireUser|validateSession|getSession)\s*\("
        r"|\bauth\(\s*\)|\bjwt\.verify\s*\(|\bauth\.getUser\s*\("
    ),
    "validation": re.compile(
        r"(?<!JSON)(?<!Date)\.(?:safeParse|parse|parseAsync|safeParseAsync|validate|validateSync)\s*\("
    ),
    "csrf": re.compile(r"\b(?:verify|validate|check)?csrf\w*\s*\(|x-csrf-token|x-xsrf-token", re.IGNORECASE),
    "rate_limit": re.compile(r"\b(?:rate_?limit\w*|limiter)\s*[.(]|\bnew\s+Ratelimit\b", re.IGNORECASE),
    "encryption": re.compile(r"\bcreateCipheriv\s*\(|\bencrypt\w*\s*\(|\bcrypto\.subtle\.encrypt\b", re.IGNORECASE),
}


@dataclass
class RouteModel:
    """Complete route and middleware index for a repository.

    Proof traces may only be built once this exists: claim scoping refers to
    routes and middleware discovered across all files.
    """
    routes: list[RouteInfo]
    middleware: list[MiddlewareInfo]
    gaps: list[CoverageGap] = field(default_factory=list)


def build_route_model(ctx: ScanContext) -> RouteModel:
    routes = build_route_map(ctx)
    middleware = build_middleware_map(ctx)
    return RouteModel(routes=routes, middleware=middleware, gaps=list(ctx.gaps))


# --- path mapping ---

def file_path_to_route_path(path: str) -> str:
    """Map a handler file path to its canonical route path.

    e.g. "app/(admin)/api/users/[id]/route.ts" -> "/api/users/:id"

    Canonical paths (leading "/", no file extension) map to themselves.
    """
    normalized = path.replace("\\", "/")
    segments = [s for s in normalized.split("/") if s]

    if normalized.startswith("/") and not (segments and _SOURCE_EXT.search(segments[-1])):
        return _join_route_segments(segments)

    root = _routing_root(segments)
    if root is None:
        return "/"

    rest = segments[root + 1:]
    if rest and _SOURCE_EXT.search(rest[-1]):
        name = _SOURCE_EXT.sub("", rest[-1])
        if name in _INDEX_FILES:
            rest = rest[:-1]
        else:
            rest = rest[:-1] + [name]
    return _join_route_segments(rest)


def _routing_root(segments: list[str]) -> int | None:
    for i, segment in enumerate(segments):
        if segment in ("app", "pages"):
            return i
    return None


def _join_route_segments(segments: list[str]) -> str:
    parts: list[str] = []
    for segment in segments:
        # Route groups and parallel-route slots never appear in the URL
        if segment.startswith("(") and segment.endswith(")"):
            continue
        if segment.startswith("@"):
            continue
        parts.append(_dynamic_segment(segment))
    return "/" + "/".join(parts)


def _dynamic_segment(segment: str) -> str:
    if segment.startswith("[[...") and segment.endswith("]]"):
        return f":{segment[5:-2]}*"
    if segment.startswith("[...") and segment.endswith("]"):
        return f":{segment[4:-1]}*"
    if segment.startswith("[") and segment.endswith("]"):
        return f":{segment[1:-1]}"
    return segment


# --- route map ---

def is_route_handler_file(rel_path: str) -> bool:
    segments = rel_path.replace("\\", "/").split("/")
    root = _routing_root(segments)
    if root is None:
        return False
    if segments[root] == "app":
        return bool(_APP_HANDLER_FILE.match(segments[-1]))
    # pages router: only pages/api/** is server-side
    rest = segments[root + 1:]
    return (
        len(rest) >= 2
        and rest[0] == "api"
        and bool(_SOURCE_EXT.search(rest[-1]))
        and not rest[-1].startswith("_")
    )


def build_route_map(ctx: ScanContext) -> list[RouteInfo]:
    """Emit one RouteInfo per distinct (route path, HTTP methods)."""
    routes: list[RouteInfo] = []
    seen: set[tuple[str, frozenset[str]]] = set()

    for rel_path in ctx.files:
        if not is_route_handler_file(rel_path):
            continue

        route_path = file_path_to_route_path(rel_path)
        text = ctx.read_text(rel_path)

        if text is None:
            route = RouteInfo(
                route_id=route_id(route_path, {ANY_METHOD}),
                route_path=route_path,
                source_file=rel_path,
                http_methods=frozenset({ANY_METHOD}),
                readable=False,
            )
        else:
            code = strip_comments(text)
            methods, start_line = _handler_methods(rel_path, code)
            if not methods:
                logger.debug("no exported handlers in %s", rel_path)
                continue
            route = RouteInfo(
                route_id=route_id(route_path, methods),
                route_path=route_path,
                source_file=rel_path,
                http_methods=frozenset(methods),
                start_line=start_line,
                guards=find_guards(code),
            )

        key = (route.route_path, route.http_methods)
        if key in seen:
            logger.debug("duplicate route %s %s in %s", sorted(route.http_methods), route_path, rel_path)
            continue
        seen.add(key)
        routes.append(route)

    return routes


def route_id(route_path: str, methods: set[str] | frozenset[str]) -> str:
    return short_hash(f"{route_path}:{','.join(sorted(methods))}", 12)


def _handler_methods(rel_path: str, code: str) -> tuple[set[str], int]:
    """Return (methods, line of first handler) for a handler file."""
    segments = rel_path.split("/")
    if segments[_routing_root(segments) or 0] == "pages":
        match = re.search(r"export\s+default\b", code)
        return {ANY_METHOD}, _line_of(code, match.start()) if match else 1

    methods: set[str] = set()
    first: int | None = None
    for match in _EXPORTED_HANDLER.finditer(code):
        methods.add(match.group(1) or match.group(2))
        first = first if first is not None else match.start()

    # export { handler as GET, handler as POST }
    for match in _EXPORT_LIST.finditer(code):
        for item in match.group(1).split(","):
            name = item.strip().split()[-1] if item.strip() else ""
            if name in HTTP_METHODS:
                methods.add(name)
                first = first if first is not None else match.start()

    return methods, _line_of(code, first) if first is not None else 1


# --- middleware map ---

def is_middleware_file(rel_path: str) -> bool:
    segments = rel_path.replace("\\", "/").split("/")
    if segments[-1] not in _MIDDLEWARE_FILES:
        return False
    return len(segments) == 1 or (len(segments) == 2 and segments[0] == "src")


def build_middleware_map(ctx: ScanContext) -> list[MiddlewareInfo]:
    middleware: list[MiddlewareInfo] = []
    for rel_path in ctx.files:
        if not is_middleware_file(rel_path):
            continue
        text = ctx.read_text(rel_path)
        if text is None:
            continue

        code = strip_comments(text)
        config = _CONFIG_EXPORT.search(code)
        patterns = parse_matcher_config(code)
        if not patterns:
            if config and _MATCHER_KEY.search(code, config.end()):
                # a matcher we cannot read covers nothing
                ctx.record_gap(rel_path, "config.matcher could not be parsed; no route treated as covered")
                patterns = []
            else:
                patterns = [MATCH_ALL]
        middleware.append(MiddlewareInfo(
            source_file=rel_path,
            matcher_patterns=tuple(patterns),
            start_line=_line_of(code, config.start()) if config else 1,
            guards=find_guards(code),
        ))
    return middleware


def parse_matcher_config(code: str) -> list[str] | None:
    """Extract config.matcher string(s) in declaration order, or None if absent."""
    config = _MATCHER_CONFIG.search(code)
    if not config:
        return None

    matcher_part = config.group(1)
    array = _MATCHER_ARRAY.search(matcher_part)
    if array:
        return _STRING_LITERAL.findall(array.group(1))

    single = _STRING_LITERAL.search(matcher_part)
    return [single.group(1)] if single else None


# --- coverage ---

def is_route_covered_by_middleware(route: RouteInfo, middleware_map: list[MiddlewareInfo]) -> bool:
    """True iff the route path matches any matcher of any middleware.

    Unreadable routes are never considered covered.
    """
    return covering_middleware(route, middleware_map) is not None


def covering_middleware(route: RouteInfo, middleware_map: list[MiddlewareInfo]) -> MiddlewareInfo | None:
    if not route.readable:
        return None
    for mw in middleware_map:
        for pattern in mw.matcher_patterns:
            if matcher_matches(pattern, route.route_path):
                return mw
    return None


def matcher_matches(matcher: str, route_path: str) -> bool:
    try:
        return matcher_to_regex(matcher).match(route_path) is not None
    except (re.error, ValueError):
        prefix = re.sub(r"/:\w+\*$", "", matcher)
        return route_path.startswith(prefix)


@functools.lru_cache(maxsize=512)
def matcher_to_regex(matcher: str) -> re.Pattern[str]:
    """Translate a Next.js middleware matcher into an anchored regex.

    :name* zero or more segments, :name+ one or more, :name? optional,
    :name exactly one; (...) groups are raw regex; a bare * is any text.
    """
    param = re.compile(r"/:(\w+)([*+?]?)")
    param_regex = {"*": r"(?:/.*)?", "+": r"/.+", "?": r"(?:/[^/]+)?", "": r"/[^/]+"}

    out: list[str] = []
    i = 0
    while i < len(matcher):
        m = param.match(matcher, i)
        if m:
            out.append(param_regex[m.group(2)])
            i = m.end()
            continue

        ch = matcher[i]
        if ch == "(":
            end = _closing_paren(matcher, i)
            inner = matcher[i + 1:end]
            out.append(f"({inner})" if inner.startswith("?") else f"(?:{inner})")
            i = end + 1
            continue

        out.append(".*" if ch == "*" else re.escape(ch))
        i += 1

    return re.compile("^" + "".join(out) + "$")


def _closing_paren(text: str, start: int) -> int:
    depth = 0
    i = start
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ValueError(f"unbalanced group in matcher {text!r}")


# --- source helpers ---

def iter_comments(text: str) -> Iterator[re.Match[str]]:
    """Yield comment matches, skipping comment markers inside string literals."""
    for match in _CODE_TOKEN.finditer(text):
        if match.group("comment") is not None:
            yield match


def strip_comments(text: str) -> str:
    """Blank out comments, keeping newlines so line numbers stay valid."""
    def blank(match: re.Match[str]) -> str:
        if match.group("comment") is None:
            return match.group(0)
        return re.sub(r"[^\n]", " ", match.group(0))

    return _CODE_TOKEN.sub(blank, text)


def find_guards(code: str) -> dict[str, int]:
    guards: dict[str, int] = {}
    for kind, pattern in _GUARD_PATTERNS.items():
        match = pattern.search(code)
        if match:
            guards[kind] = _line_of(code, match.start())
    return guards


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1
