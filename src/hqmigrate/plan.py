from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath

from .config import CHANGELOG_FILE, GITKEEP_NAME, VERSION_MARKER
from .models import DiffEntry, DiffResult, Impact, MergeStrategy
from .strategies import MergeStrategyConfig, path_matches, strategy_for

ROOT_GROUP = "(root)"

_IMPACT_ORDER = {Impact.HIGH: 0, Impact.MEDIUM: 1, Impact.LOW: 2}

HIGH_IMPACT_PATTERNS: tuple[tuple[str, str], ...] = (
    (
        ".claude/CLAUDE.md",
        "HEADS UP: This affects ALL Claude sessions. Your Learned Rules will be preserved.",
    ),
    (
        "workers/*/worker.yaml",
        "Worker behavior may change. Your custom instructions will be preserved.",
    ),
    (
        "workers/registry.yaml",
        "Worker discovery index updated. New workers added, your entries preserved.",
    ),
    (
        ".claude/commands/*.md",
        "Command behavior may change. Your custom Rules section will be preserved.",
    ),
    (
        "agents.md",
        "Personal profile -- NEVER overwritten. Structure-only comparison.",
    ),
)

REMOVE_RATIONALE = "Removed from template (will be archived to backup, not hard-deleted)"


class PlanAction(str, Enum):
    ADD = "ADD"
    UPDATE = "UPDATE"
    REMOVE = "REMOVE"
    MOVE = "MOVE"


@dataclass(frozen=True)
class PlanEntry:
    path: str
    action: PlanAction
    rationale: str
    is_high_impact: bool = False
    warning: str | None = None
    merge_strategy: MergeStrategy | None = None
    impact: Impact | None = None
    old_path: str | None = None
    new_path: str | None = None


@dataclass(frozen=True)
class PlanSummary:
    new_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    renamed_count: int = 0
    unchanged_count: int = 0
    local_only_count: int = 0
    special_files_count: int = 0

    @property
    def total_changes(self) -> int:
        # only additions and updates need review; the rest is tracked separately
        return self.new_count + self.modified_count


@dataclass(frozen=True)
class Plan:
    current_version: str
    latest_version: str
    timestamp: str
    entries: tuple[PlanEntry, ...]
    summary: PlanSummary
    warnings: tuple[str, ...] = ()
    directories_to_create: tuple[str, ...] = ()

    def by_action(self, action: PlanAction) -> list[PlanEntry]:
        return [entry for entry in self.entries if entry.action == action]

    @property
    def high_impact(self) -> list[PlanEntry]:
        return [entry for entry in self.entries if entry.is_high_impact]


def describe_new_file_purpose(path: str) -> str:
    if "worker" in path and path.endswith("worker.yaml"):
        return "New worker definition"
    if "worker" in path and "skills/" in path:
        return "New worker skill"
    if path.startswith(".claude/commands/"):
        return "New slash command"
    if path.startswith("knowledge/"):
        return "New knowledge base content"
    if path.endswith(GITKEEP_NAME):
        return "Directory placeholder"
    if path.startswith("workspace/"):
        return "Workspace structure"
    if path in {"MIGRATION.md", CHANGELOG_FILE}:
        return "Template documentation"
    if path == VERSION_MARKER:
        return "Version marker"

    suffix = PurePosixPath(path).suffix
    if suffix == ".md":
        return "Documentation"
    if suffix in {".yaml", ".yml"}:
        return "Configuration"
    if suffix == ".json":
        return "Data/config file"
    return "Template file"


def high_impact_warning(path: str) -> str | None:
    for pattern, warning in HIGH_IMPACT_PATTERNS:
        if path_matches(pattern, path):
            return warning
    return None


def is_high_impact(path: str) -> bool:
    return high_impact_warning(path) is not None


def parent_dir(path: str) -> str:
    idx = path.rfind("/")
    return path[:idx] if idx >= 0 else ROOT_GROUP


def sort_by_impact(entries: Iterable[PlanEntry]) -> list[PlanEntry]:
    return sorted(
        entries,
        key=lambda entry: (_IMPACT_ORDER.get(entry.impact or Impact.LOW, 2), entry.path),
    )


def group_by_directory(entries: Iterable[PlanEntry]) -> dict[str, list[PlanEntry]]:
    """Group entries by parent directory; groups and members sorted by name."""
    groups: dict[str, list[PlanEntry]] = {}
    for entry in entries:
        groups.setdefault(parent_dir(entry.path), []).append(entry)
    return {
        directory: sorted(groups[directory], key=lambda entry: entry.path)
        for directory in sorted(groups)
    }


def _ancestors(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: idx + 1]) for idx in range(len(parts))]


def directories_to_create(diff: DiffResult) -> list[str]:
    """Parent directories of incoming paths that hold nothing locally yet."""
    local_paths = [
        entry.path
        for entry in (*diff.unchanged, *diff.modified, *diff.local_only, *diff.deleted)
    ]
    local_paths.extend(entry.old_path for entry in diff.renamed if entry.old_path)
    existing: set[str] = set(local_paths)
    for path in local_paths:
        existing.update(_ancestors(path))

    incoming = [entry.path for entry in diff.new]
    incoming.extend(entry.new_path or entry.path for entry in diff.renamed)
    missing: set[str] = set()
    for path in incoming:
        missing.update(d for d in _ancestors(path) if d not in existing)
    return sorted(missing)


def _update_entry(
    entry: DiffEntry, lookup: Callable[[str], MergeStrategyConfig]
) -> PlanEntry:
    config = lookup(entry.path)
    return PlanEntry(
        path=entry.path,
        action=PlanAction.UPDATE,
        rationale=entry.diff_summary or entry.description or config.description,
        is_high_impact=is_high_impact(entry.path),
        warning=high_impact_warning(entry.path),
        merge_strategy=entry.merge_strategy or config.merge_strategy,
        impact=entry.impact or config.impact,
    )


def build_plan(
    diff: DiffResult,
    strategy_lookup: Callable[[str], MergeStrategyConfig] = strategy_for,
    *,
    current_version: str = "unknown",
    latest_version: str = "unknown",
    timestamp: str | None = None,
    extra_warnings: Sequence[str] = (),
) -> Plan:
    updates = sort_by_impact(_update_entry(entry, strategy_lookup) for entry in diff.modified)

    additions = [
        PlanEntry(
            path=entry.path,
            action=PlanAction.ADD,
            rationale=describe_new_file_purpose(entry.path),
            is_high_impact=is_high_impact(entry.path),
            warning=high_impact_warning(entry.path),
        )
        for entry in diff.new
    ]
    grouped_additions = [
        entry for group in group_by_directory(additions).values() for entry in group
    ]

    removals = [
        PlanEntry(path=entry.path, action=PlanAction.REMOVE, rationale=REMOVE_RATIONALE)
        for entry in sorted(diff.deleted, key=lambda e: e.path)
    ]

    moves = [
        PlanEntry(
            path=entry.new_path or entry.path,
            action=PlanAction.MOVE,
            rationale=f"Moved from {entry.old_path} to {entry.new_path or entry.path}",
            old_path=entry.old_path,
            new_path=entry.new_path or entry.path,
        )
        for entry in sorted(diff.renamed, key=lambda e: e.new_path or e.path)
    ]

    special = sum(
        1
        for entry in diff.modified
        if strategy_lookup(entry.path).merge_strategy != MergeStrategy.OVERWRITE
    )
    summary = PlanSummary(
        new_count=len(diff.new),
        modified_count=len(diff.modified),
        deleted_count=len(diff.deleted),
        renamed_count=len(diff.renamed),
        unchanged_count=len(diff.unchanged),
        local_only_count=len(diff.local_only),
        special_files_count=special,
    )

    return Plan(
        current_version=current_version,
        latest_version=latest_version,
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(timespec="seconds"),
        entries=tuple(updates + grouped_additions + removals + moves),
        summary=summary,
        warnings=tuple([*diff.warnings, *extra_warnings]),
        directories_to_create=tuple(directories_to_create(diff)),
    )
