from __future__ import annotations

from pathlib import Path

from .models import MergeStrategy
from .plan import ROOT_GROUP, Plan, PlanAction, group_by_directory, sort_by_impact


def _summary_lines(plan: Plan) -> list[str]:
    summary = plan.summary
    lines = [
        "## Summary",
        "",
        "| Metric | Count |",
        "|--------|-------|",
        f"| Files to add | {summary.new_count} |",
        f"| Files to update | {summary.modified_count} |",
        f"| Files to remove | {summary.deleted_count} |",
        f"| Files to move/rename | {summary.renamed_count} |",
        f"| **Total changes** | **{summary.total_changes}** |",
        f"| Unchanged files | {summary.unchanged_count} |",
        f"| Your custom files (untouched) | {summary.local_only_count} |",
    ]
    if summary.special_files_count:
        lines += [
            "",
            f"**{summary.special_files_count} file(s) require smart merge** "
            "(user data preserved, template structure updated)",
        ]
    return lines


def _high_impact_lines(plan: Plan) -> list[str]:
    entries = plan.high_impact
    if not entries:
        return []
    lines = ["## [!] High-Impact Changes", ""]
    for entry in entries:
        strategy = (entry.merge_strategy or MergeStrategy.OVERWRITE).value
        lines.append(f"- **{entry.path}** -- {entry.warning or ''}")
        lines.append(f"  Action: {entry.action.value} | Strategy: {strategy}")
    return lines


def _update_lines(plan: Plan) -> list[str]:
    entries = plan.by_action(PlanAction.UPDATE)
    lines = [f"## Files to Update ({len(entries)})", ""]
    for entry in sort_by_impact(entries):
        marker = "[!] " if entry.is_high_impact else ""
        lines.append(f"- {marker}`{entry.path}` -- {entry.rationale}")
    return lines


def _add_lines(plan: Plan) -> list[str]:
    entries = plan.by_action(PlanAction.ADD)
    lines = [f"## Files to Add ({len(entries)})", ""]
    if not entries:
        lines.append("No new files.")
        return lines
    for directory, group in group_by_directory(entries).items():
        lines.append(f"**{directory}**" if directory == ROOT_GROUP else f"**{directory}/**")
        lines.extend(f"- `{entry.path}` -- {entry.rationale}" for entry in group)
        lines.append("")
    if lines[-1] == "":
        lines.pop()
    return lines


def _remove_lines(plan: Plan) -> list[str]:
    entries = plan.by_action(PlanAction.REMOVE)
    lines = [f"## Files to Remove ({len(entries)})", ""]
    if not entries:
        lines.append("No files to remove.")
    lines.extend(f"- `{entry.path}` -- {entry.rationale}" for entry in entries)
    return lines


def _move_lines(plan: Plan) -> list[str]:
    entries = plan.by_action(PlanAction.MOVE)
    lines = [f"## Structural Changes ({len(entries)})", ""]
    if not entries:
        lines.append("No files moved or renamed.")
    lines.extend(f"- `{entry.old_path}` -> `{entry.new_path}`" for entry in entries)
    return lines


def _directory_lines(plan: Plan) -> list[str]:
    lines = [f"## Directories to Create ({len(plan.directories_to_create)})", ""]
    if not plan.directories_to_create:
        lines.append("No new directories.")
    lines.extend(f"- `{directory}/`" for directory in plan.directories_to_create)
    return lines


def render_plan_markdown(plan: Plan) -> str:
    sections = [
        [
            f"# Migration Plan: v{plan.current_version} -> v{plan.latest_version}",
            "",
            f"Generated: {plan.timestamp}",
        ],
        _summary_lines(plan),
        _high_impact_lines(plan),
        _update_lines(plan),
        _add_lines(plan),
        _remove_lines(plan),
        _move_lines(plan),
        _directory_lines(plan),
    ]
    if plan.warnings:
        sections.append(["## Warnings", "", *(f"- {warning}" for warning in plan.warnings)])

    lines: list[str] = []
    for section in sections:
        if not section:
            continue
        if lines:
            lines.append("")
        lines.extend(section)
    return "\n".join(lines) + "\n"


def write_plan(plan: Plan, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_plan_markdown(plan), encoding="utf-8")
    return path
