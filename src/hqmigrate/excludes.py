from __future__ import annotations

import fnmatch
from collections.abc import Iterable

from .config import IGNORE_DIR_PATTERNS, IGNORE_EXACT_FILES, IGNORE_EXTENSION_PATTERNS
from .text_utils import normalize_relpath


class IgnoreRules:
    """Decides which relative paths are invisible to inventories and diffs.

    Patterns are evaluated in a fixed precedence:

    1. ``dir/`` patterns match that directory and everything beneath it.
    2. ``*.ext`` patterns match by suffix at any depth.
    3. Other wildcard patterns are matched against the whole relative path.
    4. Bare names match only at the tree root (``agents.md`` is ignored,
       ``docs/agents.md`` is not).
    """

    def __init__(
        self,
        dir_patterns: Iterable[str] = IGNORE_DIR_PATTERNS,
        extension_patterns: Iterable[str] = IGNORE_EXTENSION_PATTERNS,
        exact_names: Iterable[str] = IGNORE_EXACT_FILES,
    ) -> None:
        self._dirs: list[str] = []
        self._suffixes: list[str] = []
        self._globs: list[str] = []
        self._exact: set[str] = set()
        for pattern in dir_patterns:
            self.add(pattern if pattern.endswith("/") else f"{pattern}/")
        for pattern in extension_patterns:
            self.add(pattern)
        for name in exact_names:
            self.add(name)

    def add(self, pattern: str) -> None:
        line = normalize_relpath(pattern.strip())
        if not line or line.startswith("#"):
            return
        if line.endswith("/"):
            self._dirs.append(line.lstrip("/"))
        elif line.startswith("*.") and not any(ch in line[2:] for ch in "*?[/"):
            self._suffixes.append(line[1:])
        elif any(ch in line for ch in "*?["):
            self._globs.append(line.lstrip("/"))
        else:
            self._exact.add(line.lstrip("/"))

    def extend(self, patterns: Iterable[str]) -> None:
        for pattern in patterns:
            self.add(pattern)

    def is_ignored(self, relpath: str, is_dir: bool = False) -> bool:
        target = normalize_relpath(relpath).rstrip("/")
        if not target:
            return False

        for pattern in self._dirs:
            if target == pattern.rstrip("/") or target.startswith(pattern):
                return True

        if not is_dir:
            for suffix in self._suffixes:
                if target.endswith(suffix):
                    return True

        for pattern in self._globs:
            if fnmatch.fnmatchcase(target, pattern):
                return True

        return target in self._exact


def default_ignore_rules(extra: Iterable[str] = ()) -> IgnoreRules:
    rules = IgnoreRules()
    rules.extend(extra)
    return rules
