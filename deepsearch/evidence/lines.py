"""Line-numbered text helpers shared by the extraction agent and the validator."""
from __future__ import annotations

import re

from deepsearch.models.evidence import LineRange, LineSelection

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_NUMBERED_LINE_RE = re.compile(r"^(\d+)\s+\|\s?(.*)$")


def split_lines(markdown: str) -> list[str]:
    return _LINE_SPLIT_RE.split(markdown)


def format_line_numbered(lines: list[str], offset: int = 0, total_lines: int | None = None) -> str:
    """Prefix each line with its 1-based number, zero-padded to the width of ``total_lines``."""
    width = len(str(total_lines if total_lines is not None else len(lines) + offset))
    return "\n".join(
        f"{str(index + 1 + offset).zfill(width)} | {line}" for index, line in enumerate(lines)
    )


def overlap(a: LineRange, b: LineRange) -> LineRange | None:
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    if end < start:
        return None
    return LineRange(start, end)


def clamp_range(start: int, end: int, line_count: int) -> LineRange | None:
    """Clamp a reported span into ``[1, line_count]``; spans with end < start are discarded."""
    if line_count <= 0:
        return None
    clamped_start = max(1, min(line_count, start))
    clamped_end = max(1, min(line_count, end))
    if clamped_end < clamped_start:
        return None
    return LineRange(clamped_start, clamped_end)


def selection_for_range(lines: list[str], span: LineRange) -> LineSelection | None:
    text = "\n".join(lines[span.start - 1 : span.end]).strip()
    if not text:
        return None
    return LineSelection(span.start, span.end, text)


def numbered_content_for_range(lines: list[str], span: LineRange) -> str:
    return format_line_numbered(lines[span.start - 1 : span.end], span.start - 1, len(lines))


def strip_line_numbers(numbered: str) -> str:
    stripped = []
    for line in _LINE_SPLIT_RE.split(numbered):
        match = _NUMBERED_LINE_RE.match(line)
        stripped.append(match.group(2) if match else line)
    return "\n".join(stripped).strip()


def derive_numbered_content(target: LineRange, contents_by_range: dict[str, str]) -> str | None:
    """Numbered text for ``target``, taken from an exact entry or cut out of a containing one."""
    exact = contents_by_range.get(target.key)
    if exact and exact.strip():
        return exact.strip("\n")
    for key, content in contents_by_range.items():
        start_raw, _, end_raw = key.partition(":")
        if not (start_raw.isdigit() and end_raw.isdigit()):
            continue
        if not LineRange(int(start_raw), int(end_raw)).contains(target):
            continue
        kept = []
        for line in _LINE_SPLIT_RE.split(content):
            match = _NUMBERED_LINE_RE.match(line)
            if match and target.start <= int(match.group(1)) <= target.end:
                kept.append(line)
        if kept:
            return "\n".join(kept)
    return None
