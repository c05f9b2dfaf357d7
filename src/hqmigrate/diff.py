from __future__ import annotations

import difflib
import logging
from collections.abc import Collection, Mapping
from dataclasses import replace
from pathlib import Path

import yaml

from .config import RENAME_MIN_SIZE
from .deletion import apply_deletions
from .markdown import detect_markdown_section_changes
from .models import DiffCategory, DiffEntry, DiffResult, FileEntry, NodeType
from .strategies import MergeStrategyConfig, strategy_for
from .yaml_blocks import extract_root_yaml_keys

logger = logging.getLogger(__name__)


def entries_are_identical(template_entry: FileEntry, local_entry: FileEntry) -> bool:
    if template_entry.node_type != local_entry.node_type:
        return False
    if template_entry.node_type == NodeType.SYMLINK:
        return template_entry.symlink_target == local_entry.symlink_target
    if template_entry.is_gitkeep and local_entry.is_gitkeep:
        return True
    if template_entry.is_binary or local_entry.is_binary:
        return (
            template_entry.size == local_entry.size
            and template_entry.hash == local_entry.hash
        )
    return template_entry.hash == local_entry.hash


def is_likely_rename(new_entry: FileEntry, local_entry: FileEntry) -> bool:
    """Same content under a different path.

    A content match plus same extension is enough, even when the two paths
    share nothing else: a wrong guess only changes the label in the plan.
    """
    if not new_entry.hash or not local_entry.hash:
        return False
    if new_entry.hash != local_entry.hash:
        return False
    if new_entry.size < RENAME_MIN_SIZE:
        return False
    if new_entry.is_gitkeep or local_entry.is_gitkeep:
        return False
    return new_entry.extension == local_entry.extension


def _annotate_modified(path: str, config: MergeStrategyConfig) -> DiffEntry:
    return DiffEntry(
        path=path,
        category=DiffCategory.MODIFIED,
        is_special=config.is_special,
        merge_strategy=config.merge_strategy,
        impact=config.impact,
        description=config.description,
    )


def categorize(
    template_files: Mapping[str, FileEntry],
    local_files: Mapping[str, FileEntry],
    baseline_paths: Collection[str] | None = None,
) -> DiffResult:
    result = DiffResult()

    for path in sorted(template_files):
        template_entry = template_files[path]
        local_entry = local_files.get(path)
        if local_entry is None:
            result.new.append(DiffEntry(path=path, category=DiffCategory.NEW))
        elif entries_are_identical(template_entry, local_entry):
            result.unchanged.append(DiffEntry(path=path, category=DiffCategory.UNCHANGED))
        else:
            result.modified.append(_annotate_modified(path, strategy_for(path)))

    for path in sorted(local_files):
        if path not in template_files:
            result.local_only.append(DiffEntry(path=path, category=DiffCategory.LOCAL_ONLY))

    detect_renames(result, template_files, local_files)
    apply_deletions(result, template_files, baseline_paths)
    return result


def detect_renames(
    result: DiffResult,
    template_files: Mapping[str, FileEntry],
    local_files: Mapping[str, FileEntry],
) -> None:
    new_by_hash: dict[str, DiffEntry] = {}
    for entry in result.new:
        digest = template_files[entry.path].hash
        if digest and digest not in new_by_hash:
            new_by_hash[digest] = entry

    local_by_hash: dict[str, DiffEntry] = {}
    for entry in result.local_only:
        digest = local_files[entry.path].hash
        if digest and digest not in local_by_hash:
            local_by_hash[digest] = entry

    moved_new: set[str] = set()
    moved_local: set[str] = set()
    for digest, new_entry in new_by_hash.items():
        local_entry = local_by_hash.get(digest)
        if local_entry is None:
            continue
        if not is_likely_rename(
            template_files[new_entry.path], local_files[local_entry.path]
        ):
            continue
        moved_new.add(new_entry.path)
        moved_local.add(local_entry.path)
        result.renamed.append(
            DiffEntry(
                path=new_entry.path,
                category=DiffCategory.RENAMED,
                old_path=local_entry.path,
                new_path=new_entry.path,
                description=f"Moved from {local_entry.path} to {new_entry.path}",
            )
        )

    if moved_new:
        result.new = [e for e in result.new if e.path not in moved_new]
        result.local_only = [e for e in result.local_only if e.path not in moved_local]


def _read_text(root: Path, relpath: str) -> str | None:
    try:
        return (root / relpath).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Cannot read %s for diff summary: %s", relpath, exc)
        return None


def _yaml_root_keys(content: str) -> list[str]:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return extract_root_yaml_keys(content)
    if isinstance(data, dict):
        return [str(key) for key in data]
    return []


def _line_delta(template_text: str, local_text: str) -> tuple[int, int]:
    added = removed = 0
    matcher = difflib.SequenceMatcher(
        a=local_text.splitlines(), b=template_text.splitlines(), autojunk=False
    )
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in {"replace", "delete"}:
            removed += i2 - i1
        if tag in {"replace", "insert"}:
            added += j2 - j1
    return added, removed


def _describe_list(label: str, items: list[str]) -> str:
    return f"{label}: {', '.join(items)}"


def summarize_difference(
    template_entry: FileEntry,
    local_entry: FileEntry,
    template_text: str | None = None,
    local_text: str | None = None,
) -> str:
    """Advisory one-line description of how a MODIFIED path changed."""
    if template_entry.node_type != local_entry.node_type:
        return (
            f"Type changed: {local_entry.node_type.value} -> "
            f"{template_entry.node_type.value}"
        )
    if template_entry.node_type == NodeType.SYMLINK:
        return (
            f"Symlink target changed: {local_entry.symlink_target} -> "
            f"{template_entry.symlink_target}"
        )
    if template_entry.is_binary or local_entry.is_binary:
        delta = template_entry.size - local_entry.size
        return f"Binary file changed ({delta:+d} bytes)"
    if template_text is None or local_text is None:
        return "Content differs from template"

    path = template_entry.relpath
    parts: list[str] = []
    if path.endswith(".md"):
        added, removed = detect_markdown_section_changes(
            template_text.splitlines(), local_text.splitlines()
        )
        if added:
            parts.append(_describe_list("New sections", added))
        if removed:
            parts.append(_describe_list("Removed sections", removed))
    elif path.endswith((".yaml", ".yml")):
        template_keys = _yaml_root_keys(template_text)
        local_keys = _yaml_root_keys(local_text)
        added = [key for key in template_keys if key not in local_keys]
        removed = [key for key in local_keys if key not in template_keys]
        if added:
            parts.append(_describe_list("New keys", added))
        if removed:
            parts.append(_describe_list("Removed keys", removed))

    if not parts:
        added_lines, removed_lines = _line_delta(template_text, local_text)
        parts.append(f"+{added_lines} / -{removed_lines} lines")
    return "; ".join(parts)


def describe_modifications(
    result: DiffResult,
    template_root: Path,
    local_root: Path,
    template_files: Mapping[str, FileEntry],
    local_files: Mapping[str, FileEntry],
) -> None:
    described: list[DiffEntry] = []
    for entry in result.modified:
        template_entry = template_files[entry.path]
        local_entry = local_files[entry.path]
        template_text = local_text = None
        if (
            template_entry.node_type == NodeType.FILE
            and local_entry.node_type == NodeType.FILE
            and not (template_entry.is_binary or local_entry.is_binary)
        ):
            template_text = _read_text(template_root, entry.path)
            local_text = _read_text(local_root, entry.path)
        summary = summarize_difference(
            template_entry, local_entry, template_text, local_text
        )
        described.append(replace(entry, diff_summary=summary))
    result.modified = described
