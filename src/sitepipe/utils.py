from __future__ import annotations

"""Small helpers for glob-style path patterns."""

import functools
import os
import re
from pathlib import Path
from typing import Iterable, List

_BRACE = re.compile(r"\{([^{}]*)\}")
_MAGIC = "*?["


def expand_braces(pattern: str) -> List[str]:
    """`a/*.{scss,sass}` -> [`a/*.scss`, `a/*.sass`]."""
    m = _BRACE.search(pattern)
    if not m:
        return [pattern]
    head, tail = pattern[: m.start()], pattern[m.end() :]
    out: List[str] = []
    for alt in m.group(1).split(","):
        out.extend(expand_braces(head + alt + tail))
    return out


def normalize(path: str | Path) -> str:
    s = Path(path).as_posix()
    if s.startswith("./"):
        s = s[2:]
    return s


@functools.lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    # `*` and `?` stay within one path segment, `**` crosses segments
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1 : j]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out))


def _match_one(path: str, pattern: str) -> bool:
    return _compile(pattern).fullmatch(path) is not None


def matches(path: str | Path, pattern: str) -> bool:
    """True if `path` matches the glob `pattern` (`**` and `{a,b}` supported).

    A pattern without glob characters also matches everything beneath it, so a
    bare directory such as `src/` watches the whole tree.
    """
    p = normalize(path)
    for pat in expand_braces(pattern):
        pat = normalize(pat)
        if not any(ch in pat for ch in _MAGIC):
            base = pat.rstrip("/")
            if p == base or p.startswith(base + "/"):
                return True
            continue
        if _match_one(p, pat):
            return True
    return False


def matches_any(path: str | Path, patterns: Iterable[str]) -> bool:
    return any(matches(path, pat) for pat in patterns)


def static_base(pattern: str) -> Path:
    """Longest leading directory of `pattern` without glob characters."""
    parts: List[str] = []
    for part in Path(pattern).parts:
        if any(ch in part for ch in _MAGIC) or "{" in part:
            return Path(*parts) if parts else Path(".")
        parts.append(part)
    # no glob characters: a directory watches itself, a file its parent
    p = Path(*parts) if parts else Path(".")
    return p if pattern.endswith("/") or p.is_dir() else p.parent


def expand_globs(patterns: Iterable[str], root: Path | None = None) -> List[Path]:
    """Expand patterns into existing paths (files and directories), sorted."""
    root = Path(root or ".")
    found: set[Path] = set()
    for pattern in patterns:
        for pat in expand_braces(pattern):
            if not any(ch in pat for ch in _MAGIC):
                p = root / pat
                if p.exists():
                    found.add(p)
                continue
            base = root / static_base(pat)
            if not base.is_dir():
                continue
            full = normalize(root / pat)
            for dirpath, dirnames, filenames in os.walk(base):
                for name in dirnames + filenames:
                    p = Path(dirpath) / name
                    if _match_one(normalize(p), full):
                        found.add(p)
    return sorted(found)
