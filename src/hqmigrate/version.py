"""Installed-version detection.

The `.hq-version` marker is authoritative. When it is missing or invalid the
version is inferred: an exact `## vX.Y.Z` heading in `CHANGELOG.md` wins,
otherwise the highest floor among the structural clues that match.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import CHANGELOG_FILE, VERSION_MARKER

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"
METHOD_FILE = "file"
METHOD_INFERENCE = "inference"

_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?$")
_CHANGELOG_RE = re.compile(r"^##\s+v?(\d+\.\d+\.\d+)", re.MULTILINE)


class InferenceFilesystem(Protocol):
    def file_exists(self, path: str) -> bool: ...

    def is_symlink(self, path: str) -> bool: ...

    def read_file(self, path: str) -> str | None: ...

    def list_dir(self, path: str) -> list[str]: ...


class LocalFilesystem:
    """`InferenceFilesystem` over a real installation root."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()

    def _path(self, relpath: str) -> Path:
        return self.root / relpath.rstrip("/")

    def file_exists(self, path: str) -> bool:
        return os.path.lexists(self._path(path))

    def is_symlink(self, path: str) -> bool:
        return self._path(path).is_symlink()

    def read_file(self, path: str) -> str | None:
        candidate = self._path(path)
        if not candidate.is_file():
            return None
        try:
            return candidate.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    def list_dir(self, path: str) -> list[str]:
        candidate = self._path(path)
        if not candidate.is_dir():
            return []
        return sorted(os.listdir(candidate))


@dataclass(frozen=True)
class VersionClue:
    id: str
    description: str
    version_floor: str
    check: Callable[[InferenceFilesystem], bool]


@dataclass(frozen=True)
class VersionResult:
    version: str
    method: str
    clues: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_known(self) -> bool:
        return self.version != UNKNOWN_VERSION


def parse_version(content: str) -> str | None:
    """Return the trimmed semver from marker content, or None if invalid."""
    trimmed = content.strip()
    if _SEMVER_RE.match(trimmed):
        return trimmed
    return None


def parse_changelog_version(content: str) -> str | None:
    match = _CHANGELOG_RE.search(content)
    return match.group(1) if match else None


def version_tuple(version: str) -> tuple[int, int, int]:
    core = version.strip().lstrip("v").split("-", 1)[0].split("+", 1)[0]
    parts: list[int] = []
    for raw in core.split(".")[:3]:
        try:
            parts.append(int(raw))
        except ValueError:
            parts.append(0)
    while len(parts) < 3:
        parts.append(0)
    return (parts[0], parts[1], parts[2])


def compare_semver(a: str, b: str) -> int:
    left = version_tuple(a)
    right = version_tuple(b)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def _file_contains(path: str, needle: str) -> Callable[[InferenceFilesystem], bool]:
    def check(fs: InferenceFilesystem) -> bool:
        content = fs.read_file(path)
        return content is not None and needle in content

    return check


def _exists(path: str) -> Callable[[InferenceFilesystem], bool]:
    return lambda fs: fs.file_exists(path)


def _knowledge_has_symlink(fs: InferenceFilesystem) -> bool:
    return any(fs.is_symlink(f"knowledge/{name}") for name in fs.list_dir("knowledge/"))


def _registry_has_version(fs: InferenceFilesystem) -> bool:
    content = fs.read_file("workers/registry.yaml")
    return content is not None and re.search(r"^version:", content, re.M) is not None


def _dev_team_is_populated(fs: InferenceFilesystem) -> bool:
    return len(fs.list_dir("workers/dev-team/")) >= 10


VERSION_CLUES: tuple[VersionClue, ...] = (
    VersionClue(
        "setup-cli-checks",
        "/setup has CLI checks (gh, vercel)",
        "5.2.0",
        _file_contains(".claude/commands/setup.md", "vercel"),
    ),
    VersionClue(
        "knowledge-symlinks",
        "Knowledge dirs are symlinks to repos/",
        "5.2.0",
        _knowledge_has_symlink,
    ),
    VersionClue(
        "context-diet",
        "Context Diet in CLAUDE.md",
        "5.1.0",
        _file_contains(".claude/CLAUDE.md", "Context Diet"),
    ),
    VersionClue(
        "sample-worker",
        "workers/sample-worker/ exists",
        "5.0.0",
        _exists("workers/sample-worker"),
    ),
    VersionClue(
        "personal-interview",
        "/personal-interview command",
        "5.0.0",
        _exists(".claude/commands/personal-interview.md"),
    ),
    VersionClue(
        "registry-version",
        "workers/registry.yaml version field",
        "5.0.0",
        _registry_has_version,
    ),
    VersionClue(
        "learn-command",
        ".claude/commands/learn.md exists",
        "4.0.0",
        _exists(".claude/commands/learn.md"),
    ),
    VersionClue(
        "index-md-system",
        "INDEX.md system active",
        "4.0.0",
        _exists("knowledge/hq-core/index-md-spec.md"),
    ),
    VersionClue(
        "auto-handoff",
        "Auto-Handoff in CLAUDE.md",
        "3.3.0",
        _file_contains(".claude/CLAUDE.md", "Auto-Handoff"),
    ),
    VersionClue(
        "remember-command",
        "/remember command exists",
        "3.2.0",
        _exists(".claude/commands/remember.md"),
    ),
    VersionClue(
        "search-qmd",
        "/search uses qmd",
        "3.0.0",
        _file_contains(".claude/commands/search.md", "qmd"),
    ),
    VersionClue(
        "orchestrator",
        "workspace/orchestrator/ exists",
        "2.0.0",
        _exists("workspace/orchestrator"),
    ),
    VersionClue(
        "threads",
        "workspace/threads/ exists",
        "2.0.0",
        _exists("workspace/threads"),
    ),
    VersionClue(
        "dev-team-workers",
        "workers/dev-team/ has 10+ workers",
        "2.0.0",
        _dev_team_is_populated,
    ),
    VersionClue(
        "commands-dir",
        ".claude/commands/ exists",
        "1.0.0",
        _exists(".claude/commands"),
    ),
)


def infer_version(
    fs: InferenceFilesystem,
    clues: tuple[VersionClue, ...] = VERSION_CLUES,
) -> VersionResult:
    changelog = fs.read_file(CHANGELOG_FILE)
    if changelog:
        exact = parse_changelog_version(changelog)
        if exact:
            return VersionResult(
                version=exact,
                method=METHOD_INFERENCE,
                clues=(f"{CHANGELOG_FILE} exact version",),
            )

    highest: str | None = None
    matched: list[str] = []
    for clue in clues:
        try:
            hit = clue.check(fs)
        except OSError as exc:
            logger.debug("Skipping version clue %s: %s", clue.id, exc)
            continue
        if not hit:
            continue
        matched.append(clue.description)
        if highest is None or compare_semver(clue.version_floor, highest) > 0:
            highest = clue.version_floor

    if highest is None:
        return VersionResult(version=UNKNOWN_VERSION, method=METHOD_INFERENCE)
    return VersionResult(version=highest, method=METHOD_INFERENCE, clues=tuple(matched))


def detect_version(fs: InferenceFilesystem) -> VersionResult:
    marker = fs.read_file(VERSION_MARKER)
    if marker is not None:
        parsed = parse_version(marker)
        if parsed:
            return VersionResult(version=parsed, method=METHOD_FILE)
        logger.warning("Ignoring invalid %s content: %r", VERSION_MARKER, marker[:40])
    return infer_version(fs)
