from __future__ import annotations

import unicodedata

LINE_BREAKS = "\r\n"


def normalize_text(value: str) -> str:
    """Return UTF-8 safe text by collapsing surrogate-escaped bytes.

    Filesystem paths may contain undecodable bytes represented as lone surrogates.
    Normalize them to replacement characters and canonicalize to NFC so that the
    template and the installation produce the same key for the same name.
    """
    safe = value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    return unicodedata.normalize("NFC", safe)


def normalize_relpath(value: str) -> str:
    normalized = normalize_text(value).replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def strip_eol(line: str) -> str:
    return line.rstrip(LINE_BREAKS)


def eol_of(line: str) -> str:
    return line[len(strip_eol(line)) :]


def non_blank_lines(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.strip()]


def dominant_eol(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"
