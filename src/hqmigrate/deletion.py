from __future__ import annotations

from collections.abc import Collection, Mapping

from .models import DiffCategory, DiffEntry, DiffResult, FileEntry

NO_BASELINE_WARNING = (
    "No previous-template baseline available: files removed from the template "
    "cannot be detected, so no DELETED entries were computed."
)


def apply_deletions(
    result: DiffResult,
    template_files: Mapping[str, FileEntry],
    baseline_paths: Collection[str] | None,
) -> None:
    """Reclassify LOCAL_ONLY paths that the previous template shipped.

    A path the old template had and the new one dropped was removed
    upstream, not authored by the user. Without the old template the two
    cannot be told apart, so the pass is skipped and a warning is recorded.
    """
    if baseline_paths is None:
        if NO_BASELINE_WARNING not in result.warnings:
            result.warnings.append(NO_BASELINE_WARNING)
        return

    baseline = set(baseline_paths)
    kept: list[DiffEntry] = []
    for entry in result.local_only:
        if entry.path in baseline and entry.path not in template_files:
            result.deleted.append(
                DiffEntry(
                    path=entry.path,
                    category=DiffCategory.DELETED,
                    description="Removed from template",
                )
            )
            continue
        kept.append(entry)
    result.local_only = kept
