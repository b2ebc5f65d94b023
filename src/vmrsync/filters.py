"""Glob matching for cloaking rules and baseline files."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Iterable


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i = 0
    length = len(pattern)
    while i < length:
        char = pattern[i]
        if char == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(char))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out), re.DOTALL)


def matches(path: str, pattern: str) -> bool:
    """Return ``True`` if ``path`` (posix, repository relative) matches ``pattern``.

    Patterns follow gitignore conventions: a pattern without a slash matches any path
    component, a trailing slash restricts the match to directories, and a pattern that
    matches a directory also matches everything below it.
    """

    pattern = pattern.strip().lstrip("/")
    directory_only = pattern.endswith("/")
    pattern = pattern.rstrip("/")
    if not pattern:
        return False

    regex = _compile(pattern)
    parts = PurePosixPath(path).parts
    if "/" not in pattern:
        candidates: Iterable[str] = parts[:-1] if directory_only else parts
    else:
        prefixes = ["/".join(parts[:index]) for index in range(1, len(parts) + 1)]
        candidates = prefixes[:-1] if directory_only else prefixes
    return any(regex.fullmatch(candidate) for candidate in candidates)


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches(path, pattern) for pattern in patterns)


def is_included(path: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    """Apply include/exclude cloaking rules; an empty include list keeps everything."""

    include = tuple(include)
    if include and not matches_any(path, include):
        return False
    return not matches_any(path, exclude)


@dataclass(frozen=True, slots=True)
class BaselineFilters:
    """Patterns read from a baseline file, split by scope."""

    global_patterns: tuple[str, ...] = ()
    scoped_patterns: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def for_mapping(self, name: str) -> tuple[str, ...]:
        """Patterns applying to ``name``'s subtree (VMR-relative), plus the global ones."""

        return self.scoped_patterns.get(name, ()) + self.global_patterns

    def for_base(self) -> tuple[str, ...]:
        return self.global_patterns


def parse_baseline(text: str, *, src_dir: str = "src") -> BaselineFilters:
    """Parse baseline text.

    Lines starting with ``*`` are global; lines starting with ``<src_dir>/<name>`` are scoped
    to that mapping. ``#`` starts a trailing comment and blank lines are ignored.
    """

    global_patterns: list[str] = []
    scoped: dict[str, list[str]] = {}
    prefix = f"{src_dir.strip('/')}/"

    for raw_line in text.splitlines():
        comment = raw_line.find("#")
        line = (raw_line[:comment] if comment >= 0 else raw_line).strip()
        if not line:
            continue
        if line.startswith("*"):
            global_patterns.append(line)
        elif line.startswith(prefix):
            name = line[len(prefix) :].split("/", 1)[0]
            if name:
                scoped.setdefault(name, []).append(line)

    return BaselineFilters(
        global_patterns=tuple(global_patterns),
        scoped_patterns={name: tuple(patterns) for name, patterns in scoped.items()},
    )


def load_baseline(path: Path | None, *, src_dir: str = "src") -> BaselineFilters:
    if path is None:
        return BaselineFilters()
    return parse_baseline(Path(path).read_text(encoding="utf-8"), src_dir=src_dir)
