from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .util import log_event, setup_json_logger

_LOG = setup_json_logger("opsctl.routes")

ROUTE_FILENAMES = ("route.ts", "route.js")
HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")
DYNAMIC_DIRECTIVE = "export const dynamic = 'force-dynamic'"

_HAS_DYNAMIC = re.compile(r"^\s*export\s+const\s+dynamic\b", re.MULTILINE)
_USE_PROLOGUE = re.compile(r"""^\s*(['"])use (server|client)\1;?\s*$""")


@dataclass(frozen=True)
class Route:
    path: str
    file: Path
    methods: tuple[str, ...]


def extract_methods(text: str) -> tuple[str, ...]:
    found = []
    for method in HTTP_METHODS:
        if re.search(rf"export\s+async\s+function\s+{method}\b", text, re.IGNORECASE):
            found.append(method)
    return tuple(found)


def discover_routes(api_dir: Path) -> list[Route]:
    if not api_dir.is_dir():
        log_event(_LOG, "routes.discover.missing", api_dir=str(api_dir))
        return []
    routes: list[Route] = []
    for p in sorted(api_dir.rglob("*"), key=lambda x: x.as_posix()):
        if not p.is_file() or p.name not in ROUTE_FILENAMES:
            continue
        rel = p.parent.relative_to(api_dir).as_posix()
        url_path = "/" if rel == "." else f"/{rel}"
        text = p.read_text(encoding="utf-8")
        routes.append(Route(path=url_path, file=p, methods=extract_methods(text)))
    routes.sort(key=lambda r: r.path)
    log_event(_LOG, "routes.discover", api_dir=str(api_dir), count=len(routes))
    return routes


def has_directive(text: str) -> bool:
    return _HAS_DYNAMIC.search(text) is not None


def add_directive(text: str) -> str:
    """Return `text` with the dynamic directive prepended.

    A leading 'use server' / 'use client' prologue must remain the first
    statement, so the directive goes right after it.
    """
    if has_directive(text):
        return text
    lines = text.splitlines(keepends=True)
    if lines and _USE_PROLOGUE.match(lines[0]):
        head = lines[0] if lines[0].endswith("\n") else lines[0] + "\n"
        return head + DYNAMIC_DIRECTIVE + "\n\n" + "".join(lines[1:])
    return DYNAMIC_DIRECTIVE + "\n\n" + text


def ensure_dynamic(path: Path, *, check_only: bool = False) -> bool:
    """Returns True when the file needed (or would need) the directive."""
    text = path.read_text(encoding="utf-8")
    if has_directive(text):
        return False
    if not check_only:
        path.write_text(add_directive(text), encoding="utf-8")
    return True


def apply_boilerplate(api_dir: Path, *, check_only: bool = False) -> dict:
    changed: list[str] = []
    unchanged: list[str] = []
    for route in discover_routes(api_dir):
        rel = route.file.relative_to(api_dir).as_posix()
        if ensure_dynamic(route.file, check_only=check_only):
            changed.append(rel)
        else:
            unchanged.append(rel)
    log_event(
        _LOG,
        "routes.boilerplate",
        check_only=check_only,
        changed=len(changed),
        unchanged=len(unchanged),
    )
    return {
        "api_dir": str(api_dir),
        "changed": changed,
        "check_only": check_only,
        "unchanged": unchanged,
    }
