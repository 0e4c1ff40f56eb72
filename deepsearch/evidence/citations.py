"""Rewrites bracket citation markers in generated prose into reference links."""
from __future__ import annotations

import re

from deepsearch.models.evidence import Reference

MAX_RANGE_WIDTH = 8

# [3], [1, 2], [2-4], [1、2；3], [^3], optionally already linked as [3](uri).
# Link targets may hold one level of balanced parentheses, as in wiki URLs.
_MARKER_RE = re.compile(
    r"\[(?P<footnote>\^)?(?P<body>[\d\s,，、;；-]+)\]"
    r"(?:\((?P<link>(?:[^()\s]|\([^()\s]*\))*)\))?"
)
_TOKEN_SPLIT_RE = re.compile(r"[\s,，、;；]+")
_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")


def expand_citation_group(group: str) -> list[int]:
    ids: list[int] = []
    for token in _TOKEN_SPLIT_RE.split(group.strip()):
        if not token:
            continue
        range_match = _RANGE_RE.match(token)
        if range_match:
            start, end = int(range_match.group(1)), int(range_match.group(2))
            if start <= end and end - start <= MAX_RANGE_WIDTH:
                ids.extend(range(start, end + 1))
            continue
        if token.isdigit():
            ids.append(int(token))
    return ids


def linkify_citations(text: str, references: list[Reference]) -> str:
    """Replace citation markers with ``[id](uri)`` links.

    Unknown ids stay as plain ``[id]`` markers, and markers with no known id
    are left exactly as written. Running the function twice changes nothing.
    """
    uri_by_id = {r.ref_id: r.uri for r in references if r.uri}
    if not uri_by_id:
        return text

    def _replace(match: re.Match[str]) -> str:
        body = match.group("body")
        if match.group("footnote") and not body.strip().isdigit():
            return match.group(0)
        ids = expand_citation_group(body)
        if not any(ref_id in uri_by_id for ref_id in ids):
            return match.group(0)
        parts = [
            f"[{ref_id}]({uri_by_id[ref_id]})" if ref_id in uri_by_id else f"[{ref_id}]"
            for ref_id in ids
        ]
        return ", ".join(parts)

    return _MARKER_RE.sub(_replace, text)
