"""Line-level scanning of root-level YAML keys.

Merges splice text, they never re-serialize YAML: a parsed and dumped
document would lose the user's comments, quoting and block-scalar layout.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .markdown import SectionSpan
from .text_utils import strip_eol

_ROOT_KEY_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_-]*):(?:\s|$)")
_OPENS_BLOCK_RE = re.compile(r":\s*(?:[|>][-+0-9]*)?\s*(?:#.*)?$")
_ITEM_RE = re.compile(r"^(\s*)-(?:\s|$)")
_IDENTITY_RE = re.compile(r"^\s*-?\s*(id|name|worker|key):\s*['\"]?([^'\"#\s]+)")
_EMPTY_VALUE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*:\s*(?:\[\s*\])?\s*(?:#.*)?$")


def extract_root_yaml_keys(content: str) -> list[str]:
    keys: list[str] = []
    for line in content.splitlines():
        match = _ROOT_KEY_RE.match(line)
        if match:
            keys.append(match.group(1))
    return keys


def find_yaml_block(lines: list[str], key: str) -> SectionSpan | None:
    """Locate a root-level key and the indented block that belongs to it."""
    key_re = re.compile(rf"^{re.escape(key)}:(?:\s|$)")
    start: int | None = None
    for idx, raw in enumerate(lines):
        if key_re.match(strip_eol(raw)):
            start = idx
            break
    if start is None:
        return None

    if not _OPENS_BLOCK_RE.search(strip_eol(lines[start])):
        return SectionSpan(start=start, end=start + 1)

    end = start + 1
    sequence_at_root = False
    for idx in range(start + 1, len(lines)):
        line = strip_eol(lines[idx])
        if not line.strip():
            continue
        if line[0] in " \t":
            end = idx + 1
            continue
        if _ITEM_RE.match(line) and (sequence_at_root or end == start + 1):
            # `key:` followed by `- item` lines at column zero
            sequence_at_root = True
            end = idx + 1
            continue
        break
    return SectionSpan(start=start, end=end)


def extract_yaml_block(content: str, key: str) -> str | None:
    lines = content.splitlines(keepends=True)
    span = find_yaml_block(lines, key)
    if span is None:
        return None
    return strip_eol(span.text(lines))


@dataclass(frozen=True)
class ListEntry:
    identity: str | None
    text: str


@dataclass(frozen=True)
class ParsedList:
    """A root-level sequence split into header, entries and trailer text."""

    header: str
    entries: tuple[ListEntry, ...]
    trailer: str
    item_indent: str

    @property
    def identities(self) -> set[str]:
        return {entry.identity for entry in self.entries if entry.identity}


def _identity(block_lines: list[str]) -> str | None:
    for raw in block_lines:
        match = _IDENTITY_RE.match(strip_eol(raw))
        if match:
            return match.group(2)
    return None


def parse_root_list(content: str, key: str) -> ParsedList | None:
    """Split `content` around the items of the root-level sequence `key`.

    Each entry keeps its exact text (comments and blank lines included) so it
    can be written back untouched. An empty value (`key:` or `key: []`) gives
    a list with no entries whose header ends at the key line. Returns None
    when `key` holds anything else.
    """
    lines = content.splitlines(keepends=True)
    span = find_yaml_block(lines, key)
    if span is None:
        return None
    if span.end == span.start + 1:
        if not _EMPTY_VALUE_RE.match(strip_eol(lines[span.start])):
            return None
        return ParsedList(
            header="".join(lines[: span.end]),
            entries=(),
            trailer="".join(lines[span.end :]),
            item_indent="",
        )

    item_indent: str | None = None
    starts: list[int] = []
    for idx in range(span.start + 1, span.end):
        match = _ITEM_RE.match(strip_eol(lines[idx]))
        if not match:
            continue
        if item_indent is None:
            item_indent = match.group(1)
        if match.group(1) == item_indent:
            starts.append(idx)
    if item_indent is None or not starts:
        return None

    entries: list[ListEntry] = []
    for pos, first in enumerate(starts):
        last = starts[pos + 1] if pos + 1 < len(starts) else span.end
        block = lines[first:last]
        entries.append(ListEntry(identity=_identity(block), text="".join(block)))

    return ParsedList(
        header="".join(lines[: starts[0]]),
        entries=tuple(entries),
        trailer="".join(lines[span.end :]),
        item_indent=item_indent,
    )
