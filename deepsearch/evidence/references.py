from __future__ import annotations

import re
from dataclasses import dataclass

from deepsearch.models.evidence import Reference, SearchResult
from deepsearch.tools.web_utils import clamp_text, normalize_key

REFERENCE_URI_SCHEME = "deepsearch"
MAX_SELECTIONS_PER_RESULT = 3
MAX_REFERENCE_CHARS = 1200

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_REFERENCE_URI_RE = re.compile(
    rf"^{REFERENCE_URI_SCHEME}://project/(?P<project>[^/]+)/search/(?P<search>[^/]+)/ref/(?P<ref>\d+)$"
)


@dataclass(frozen=True, slots=True)
class ReferenceUri:
    project_id: str
    search_id: str
    ref_id: int


def build_reference_uri(project_id: str, search_id: str, ref_id: int) -> str:
    return f"{REFERENCE_URI_SCHEME}://project/{project_id}/search/{search_id}/ref/{ref_id}"


def parse_reference_uri(uri: str) -> ReferenceUri | None:
    match = _REFERENCE_URI_RE.match(uri.strip())
    if match is None:
        return None
    project_id, search_id = match.group("project"), match.group("search")
    if not SAFE_ID_RE.match(project_id) or not SAFE_ID_RE.match(search_id):
        return None
    ref_id = int(match.group("ref"))
    if ref_id < 1:
        return None
    return ReferenceUri(project_id=project_id, search_id=search_id, ref_id=ref_id)


def build_references(
    results: list[SearchResult],
    *,
    project_id: str | None,
    search_id: str | None,
) -> list[Reference]:
    """Turn validated results into sequentially numbered references.

    Each usable result contributes at most three selections. Near-identical
    references (same URL, viewpoint and text after normalization) are emitted once.
    """
    references: list[Reference] = []
    seen: set[tuple[str, str, str]] = set()

    for result in results:
        if result.broken or result.irrelevant:
            continue
        candidates = [
            (s.start, s.end, clamp_text(s.text.strip(), MAX_REFERENCE_CHARS))
            for s in result.selections
            if s.text.strip()
        ][:MAX_SELECTIONS_PER_RESULT]

        for start, end, text in candidates:
            dedupe_key = (result.url, normalize_key(result.viewpoint), normalize_key(text))
            if dedupe_key in seen:
                continue
            seen.add(dedupe_key)
            ref_id = len(references) + 1
            uri = build_reference_uri(project_id, search_id, ref_id) if project_id and search_id else ""
            references.append(
                Reference(
                    ref_id=ref_id,
                    uri=uri,
                    page_id=result.page_id or "",
                    url=result.url,
                    title=result.title,
                    viewpoint=result.viewpoint,
                    start_line=max(1, start),
                    end_line=max(1, end),
                    text=text,
                )
            )
    return references
