"""Heading-delimited section scanning for Markdown documents.

A section starts at a line equal to its heading and runs until the next
heading of the same or a higher level (fewer or equal `#`). Lines inside
fenced code blocks are never treated as headings, so a `# comment` in a
shell snippet does not end a section.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .text_utils import strip_eol

_HEADING_RE = re.compile(r"^(#{1,6})\s")
_FENCE_RE = re.compile(r"^\s{0,3}(```|~~~)")


class _ScanState(Enum):
    SEARCHING = "searching"
    IN_SECTION = "in_section"
    DONE = "done"


@dataclass(frozen=True)
class SectionSpan:
    """Line indexes `[start, end)` of a section, trailing blank lines excluded."""

    start: int
    end: int

    def text(self, lines: list[str]) -> str:
        return "".join(lines[self.start : self.end])


def heading_level(line: str) -> int:
    match = _HEADING_RE.match(line)
    return len(match.group(1)) if match else 0


def find_section(lines: list[str], heading: str) -> SectionSpan | None:
    """Locate `heading` in `lines` (as produced by `splitlines(keepends=True)`)."""
    target = heading.rstrip()
    level = heading_level(f"{target} ") or 1
    state = _ScanState.SEARCHING
    start = end = 0
    in_fence = False

    for idx, raw in enumerate(lines):
        line = strip_eol(raw)
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            if state == _ScanState.IN_SECTION:
                end = idx + 1
            continue

        if state == _ScanState.SEARCHING:
            if not in_fence and line.rstrip() == target:
                state = _ScanState.IN_SECTION
                start = idx
                end = idx + 1
            continue

        if state == _ScanState.IN_SECTION:
            line_level = 0 if in_fence else heading_level(line)
            if line_level and line_level <= level:
                state = _ScanState.DONE
                break
            if line.strip():
                end = idx + 1

    if state == _ScanState.SEARCHING:
        return None
    return SectionSpan(start=start, end=end)


def extract_section(content: str, heading: str) -> str | None:
    """Return the section text, heading included, with original line endings.

    The final line keeps no trailing line break so the result can be searched
    for verbatim inside another document.
    """
    lines = content.splitlines(keepends=True)
    span = find_section(lines, heading)
    if span is None:
        return None
    return strip_eol(span.text(lines))


def extract_headings(lines: list[str]) -> list[str]:
    headings: list[str] = []
    in_fence = False
    for raw in lines:
        line = strip_eol(raw)
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if not in_fence and line.startswith("#"):
            headings.append(line.rstrip())
    return headings


def detect_markdown_section_changes(
    template_lines: list[str], local_lines: list[str]
) -> tuple[list[str], list[str]]:
    template_headings = extract_headings(template_lines)
    local_headings = extract_headings(local_lines)
    added = [h for h in template_headings if h not in local_headings]
    removed = [h for h in local_headings if h not in template_headings]
    return added, removed


def nested_headings(lines: list[str]) -> list[int]:
    """Indexes of the headings inside a section, its own first line excluded."""
    found: list[int] = []
    in_fence = False
    for idx, raw in enumerate(lines[1:], start=1):
        line = strip_eol(raw)
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if not in_fence and heading_level(line):
            found.append(idx)
    return found
