"""Per-strategy merges that carry user content into a newer template file.

Every strategy either proves that the protected user text survived verbatim
or hands back the local content untouched with ``success=False``; a merge
never returns a result that silently drops user lines.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import yaml

from .markdown import (
    detect_markdown_section_changes,
    find_section,
    heading_level,
    nested_headings,
)
from .models import MergeStrategy
from .strategies import MergeStrategyConfig
from .text_utils import dominant_eol, eol_of, non_blank_lines, strip_eol
from .yaml_blocks import (
    extract_root_yaml_keys,
    extract_yaml_block,
    find_yaml_block,
    parse_root_list,
)

logger = logging.getLogger(__name__)

DEFAULT_SECTION = "## Learned Rules"
DEFAULT_RULES_SECTION = "## Rules"
DEFAULT_YAML_FIELD = "instructions"
DEFAULT_LIST_FIELD = "workers"

_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")
_TOP_RULE_RE = re.compile(r"^(?:[-*+]|\d+[.)])\s+")
_EMPTY_FLOW_RE = re.compile(r"\s*\[\s*\]")


@dataclass(frozen=True)
class MergeResult:
    merged: str
    success: bool
    rules_preserved: bool
    message: str
    lost_lines: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def _missing_lines(protected: str, merged: str) -> tuple[str, ...]:
    return tuple(line for line in non_blank_lines(protected) if line not in merged)


def _keep_local(local: str, message: str, lost: tuple[str, ...] = ()) -> MergeResult:
    logger.warning("%s", message)
    return MergeResult(
        merged=local,
        success=False,
        rules_preserved=True,
        message=message,
        lost_lines=lost,
    )


def _append_block(content: str, block: str) -> str:
    eol = dominant_eol(content)
    return f"{content.rstrip()}{eol}{eol}{block}{eol}"


def _splice(lines: list[str], start: int, end: int, block: str) -> str:
    # the replaced span keeps the line break that followed it in the template
    tail_eol = eol_of(lines[end - 1])
    return "".join(lines[:start]) + block + tail_eol + "".join(lines[end:])


def _parses(content: str) -> bool:
    try:
        yaml.safe_load(content)
    except yaml.YAMLError:
        return False
    return True


def merge_overwrite(template: str, local: str) -> MergeResult:
    return MergeResult(
        merged=template,
        success=True,
        rules_preserved=False,
        message="Replaced with template version",
    )


def merge_section(template: str, local: str, heading: str = DEFAULT_SECTION) -> MergeResult:
    """Carry the local ``heading`` section into the template.

    The template's own copy of the section is replaced; when the template has
    none the local section is appended at the end.
    """
    local_lines = local.splitlines(keepends=True)
    local_span = find_section(local_lines, heading)
    if local_span is None:
        return MergeResult(
            merged=template,
            success=True,
            rules_preserved=False,
            message=f"No user {heading!r} section found; template used as-is",
        )
    user_section = strip_eol(local_span.text(local_lines))

    template_lines = template.splitlines(keepends=True)
    template_span = find_section(template_lines, heading)
    if template_span is None:
        merged = _append_block(template, user_section)
    else:
        merged = _splice(template_lines, template_span.start, template_span.end, user_section)

    lost = _missing_lines(user_section, merged)
    if lost:
        return _keep_local(
            local,
            f"Merge failed: {len(lost)} line(s) would be lost. Keeping user version.",
            lost,
        )
    return MergeResult(
        merged=merged,
        success=True,
        rules_preserved=True,
        message=f"{heading} preserved verbatim",
    )


def _normalize_rule(line: str) -> str:
    text = _BULLET_RE.sub("", line).strip().rstrip(".;:")
    return " ".join(text.split()).casefold()


def _subsections(lines: list[str], nested: list[int]) -> list[tuple[str, str]]:
    """(heading, text) blocks for the shallowest nested headings of a section."""
    if not nested:
        return []
    top_level = heading_level(strip_eol(lines[nested[0]]))
    starts = [idx for idx in nested if heading_level(strip_eol(lines[idx])) <= top_level]
    blocks = []
    for pos, start in enumerate(starts):
        stop = starts[pos + 1] if pos + 1 < len(starts) else len(lines)
        blocks.append((strip_eol(lines[start]).rstrip(), "".join(lines[start:stop]).rstrip()))
    return blocks


def merge_rules_section(
    template: str, local: str, heading: str = DEFAULT_RULES_SECTION
) -> MergeResult:
    """Union the local and template rule lists under ``heading``.

    Local rules are kept exactly as written; template rule bullets from the
    top of the section whose normalized text is not already present locally
    are appended after them. Template subsections (``###`` and deeper) the
    local file lacks are carried over unchanged.
    """
    local_lines = local.splitlines(keepends=True)
    local_span = find_section(local_lines, heading)
    template_lines = template.splitlines(keepends=True)
    template_span = find_section(template_lines, heading)
    if local_span is None or template_span is None:
        return merge_section(template, local, heading)

    user_section = strip_eol(local_span.text(local_lines))
    user_lines = user_section.splitlines(keepends=True)
    user_nested = nested_headings(user_lines)
    section_lines = strip_eol(template_span.text(template_lines)).splitlines(keepends=True)
    template_nested = nested_headings(section_lines)

    known = {_normalize_rule(line) for line in user_lines[1:] if line.strip()}
    additions: list[str] = []
    for raw in section_lines[1 : template_nested[0] if template_nested else None]:
        line = strip_eol(raw)
        rule = _normalize_rule(line)
        if _TOP_RULE_RE.match(line) and rule and rule not in known:
            known.add(rule)
            additions.append(line.rstrip())

    eol = dominant_eol(local)
    top_end = user_nested[0] if user_nested else len(user_lines)
    top = "".join(user_lines[:top_end]).rstrip("\r\n")
    if additions:
        top = eol.join([top, *additions])
    blocks = [top]
    if user_nested:
        blocks.append("".join(user_lines[top_end:]).rstrip("\r\n"))
    user_headings = {strip_eol(user_lines[idx]).rstrip() for idx in user_nested}
    carried = [
        text
        for sub_heading, text in _subsections(section_lines, template_nested)
        if sub_heading not in user_headings
    ]
    blocks.extend(carried)
    combined = (eol * 2).join(blocks)
    merged = _splice(template_lines, template_span.start, template_span.end, combined)

    lost = _missing_lines(user_section, merged)
    if lost:
        return _keep_local(
            local,
            f"Rules merge failed: {len(lost)} line(s) would be lost. Keeping user version.",
            lost,
        )
    message = f"{heading} preserved"
    if additions:
        message += f"; {len(additions)} template rule(s) appended"
    if carried:
        message += f"; {len(carried)} template subsection(s) kept"
    return MergeResult(merged=merged, success=True, rules_preserved=True, message=message)


def merge_yaml(template: str, local: str, field: str = DEFAULT_YAML_FIELD) -> MergeResult:
    """Carry the local ``field`` block and any custom root keys into the template."""
    user_block = extract_yaml_block(local, field)
    if user_block is None:
        return MergeResult(
            merged=template,
            success=True,
            rules_preserved=False,
            message=f"No user {field!r} found; template used as-is",
        )

    template_lines = template.splitlines(keepends=True)
    span = find_yaml_block(template_lines, field)
    if span is None:
        merged = _append_block(template, user_block)
    else:
        merged = _splice(template_lines, span.start, span.end, user_block)

    protected = [user_block]
    template_keys = set(extract_root_yaml_keys(template))
    for key in extract_root_yaml_keys(local):
        if key in template_keys or key == field:
            continue
        block = extract_yaml_block(local, key)
        if block and block not in merged:
            merged = _append_block(merged, block)
            protected.append(block)

    lost = tuple(line for block in protected for line in _missing_lines(block, merged))
    if lost:
        return _keep_local(
            local,
            f"YAML merge failed: {len(lost)} line(s) would be lost. Keeping user version.",
            lost,
        )
    if _parses(local) and not _parses(merged):
        return _keep_local(local, "YAML merge produced an unparseable document. Keeping user version.")
    return MergeResult(
        merged=merged,
        success=True,
        rules_preserved=True,
        message=f"User {field} preserved",
    )


def merge_never_overwrite(template: str, local: str) -> MergeResult:
    added, _removed = detect_markdown_section_changes(
        template.splitlines(), local.splitlines()
    )
    warnings = tuple(
        f"Template has section {heading!r} not present locally (file left untouched)"
        for heading in added
    )
    return MergeResult(
        merged=local,
        success=True,
        rules_preserved=True,
        message="User file left untouched",
        warnings=warnings,
    )


def _reindent(text: str, old: str, new: str) -> str:
    if old == new:
        return text
    out: list[str] = []
    for line in text.splitlines(keepends=True):
        out.append(new + line[len(old) :] if line.startswith(old) else line)
    return "".join(out)


def _with_eol(text: str, eol: str) -> str:
    return eol.join(strip_eol(line) for line in text.splitlines()) + eol


def _open_block(header: str, eol: str) -> str:
    """Turn a trailing `key: []` or bare `key:` line into a block-sequence key."""
    lines = header.splitlines(keepends=True)
    lines[-1] = _EMPTY_FLOW_RE.sub("", strip_eol(lines[-1]), count=1) + eol
    return "".join(lines)


def merge_additive(template: str, local: str, field: str = DEFAULT_LIST_FIELD) -> MergeResult:
    """Append template list entries whose identity the local list lacks.

    Local entries are written back character for character. The text before
    the first entry is taken from the template only when it differs; an empty
    local list keeps its own header, with the key line opened as a block.
    """
    local_list = parse_root_list(local, field)
    if local_list is None:
        return _keep_local(local, f"No {field!r} list found in local file; left untouched")
    template_list = parse_root_list(template, field)
    if template_list is None or not template_list.entries:
        return MergeResult(
            merged=local,
            success=True,
            rules_preserved=True,
            message=f"Template has no {field!r} entries; local file kept",
        )

    known = local_list.identities
    new_entries = [
        entry
        for entry in template_list.entries
        if entry.identity and entry.identity not in known
    ]
    eol = dominant_eol(local)
    if local_list.entries:
        header_changed = template_list.header != local_list.header
        header = template_list.header if header_changed else local_list.header
        item_indent = local_list.item_indent
    else:
        header_changed = False
        header = _open_block(local_list.header, eol)
        item_indent = template_list.item_indent
    if not new_entries and not header_changed:
        return MergeResult(
            merged=local,
            success=True,
            rules_preserved=True,
            message="No new entries to add",
        )

    body = "".join(entry.text for entry in local_list.entries)
    if new_entries and body and not body.endswith(("\n", "\r")):
        body += eol
    appended = "".join(
        _with_eol(
            _reindent(entry.text.rstrip(), template_list.item_indent, item_indent),
            eol,
        )
        for entry in new_entries
    )
    merged = header + body + appended + local_list.trailer

    dropped = [entry.text for entry in local_list.entries if strip_eol(entry.text) not in merged]
    if dropped:
        return _keep_local(
            local,
            f"Additive merge would rewrite {len(dropped)} existing entr(y/ies). Keeping user version.",
            tuple(strip_eol(text) for text in dropped),
        )
    if _parses(local) and not _parses(merged):
        return _keep_local(local, "Additive merge produced an unparseable document. Keeping user version.")

    added_ids = ", ".join(entry.identity for entry in new_entries if entry.identity)
    parts = []
    if new_entries:
        parts.append(f"Added {len(new_entries)} new entr(y/ies): {added_ids}")
    if header_changed:
        parts.append("header updated from template")
    return MergeResult(
        merged=merged,
        success=True,
        rules_preserved=True,
        message="; ".join(parts),
    )


def merge(
    strategy: MergeStrategy,
    template: str,
    local: str,
    config: MergeStrategyConfig | None = None,
) -> MergeResult:
    sections = config.preserve_sections if config else ()
    fields = config.preserve_fields if config else ()

    match strategy:
        case MergeStrategy.OVERWRITE:
            return merge_overwrite(template, local)
        case MergeStrategy.SECTION_MERGE:
            result = merge_overwrite(template, local)
            for heading in sections or (DEFAULT_SECTION,):
                result = merge_section(result.merged, local, heading)
                if not result.success:
                    return result
            return result
        case MergeStrategy.YAML_MERGE:
            return merge_yaml(template, local, fields[0] if fields else DEFAULT_YAML_FIELD)
        case MergeStrategy.NEVER_OVERWRITE:
            return merge_never_overwrite(template, local)
        case MergeStrategy.PRESERVE_RULES_SECTION:
            return merge_rules_section(
                template, local, sections[0] if sections else DEFAULT_RULES_SECTION
            )
        case MergeStrategy.ADDITIVE_MERGE:
            return merge_additive(template, local, fields[0] if fields else DEFAULT_LIST_FIELD)
    raise ValueError(f"Unknown merge strategy: {strategy!r}")
