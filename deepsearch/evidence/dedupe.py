from __future__ import annotations

from dataclasses import replace

from deepsearch.models.evidence import (
    EXTRACT_FAILURE_VIEWPOINT,
    SEARCH_VIEWPOINT_FALLBACK,
    LineSelection,
    SearchResult,
)
from deepsearch.tools.web_utils import normalize_key

_PLACEHOLDER_KEYS = frozenset(
    normalize_key(viewpoint) for viewpoint in (SEARCH_VIEWPOINT_FALLBACK, EXTRACT_FAILURE_VIEWPOINT)
)


def merge_key(result: SearchResult) -> str:
    key = normalize_key(result.viewpoint)
    # Placeholder viewpoints carry no claim, so they only merge within one URL.
    if key in _PLACEHOLDER_KEYS:
        return f"{key}|{result.url}"
    return key


def score(result: SearchResult) -> int:
    """Usable evidence counts most, then selection count (capped), then summary text."""
    value = 0
    if result.has_usable_evidence:
        value += 10
    value += min(len(result.selections), 5)
    if result.content and result.content.strip():
        value += 1
    return value


def _union_selections(*groups: list[LineSelection]) -> list[LineSelection]:
    unique: dict[str, LineSelection] = {}
    for group in groups:
        for selection in group:
            unique.setdefault(selection.key, selection)
    return sorted(unique.values(), key=lambda s: (s.start, s.end))


def _settle_flags(result: SearchResult) -> SearchResult:
    if result.selections:
        return replace(result, broken=False, irrelevant=False, error=None)
    return result


def _merge_same_url(existing: SearchResult, incoming: SearchResult) -> SearchResult:
    merged = replace(
        existing,
        title=existing.title or incoming.title,
        content=existing.content or incoming.content,
        page_id=existing.page_id or incoming.page_id,
        line_count=existing.line_count if existing.line_count is not None else incoming.line_count,
        selections=_union_selections(existing.selections, incoming.selections),
        broken=existing.broken or incoming.broken,
        irrelevant=existing.irrelevant or incoming.irrelevant,
        error=existing.error or incoming.error,
    )
    return _settle_flags(merged)


def _merge_competing(existing: SearchResult, incoming: SearchResult) -> SearchResult:
    if score(incoming) > score(existing):
        winner, loser = incoming, existing
    else:
        winner, loser = existing, incoming
    merged = replace(
        winner,
        selections=list(winner.selections),
        title=winner.title or loser.title,
        page_id=winner.page_id or loser.page_id,
        line_count=winner.line_count if winner.line_count is not None else loser.line_count,
    )
    return _settle_flags(merged)


def dedupe_results(results: list[SearchResult]) -> list[SearchResult]:
    """Merge results that share a normalized viewpoint.

    Output keeps the order in which each viewpoint first appeared.
    """
    merged: dict[str, SearchResult] = {}
    for item in results:
        key = merge_key(item)
        existing = merged.get(key)
        if existing is None:
            merged[key] = _settle_flags(replace(item, selections=list(item.selections)))
        elif existing.url == item.url:
            merged[key] = _merge_same_url(existing, item)
        else:
            merged[key] = _merge_competing(existing, item)
    return list(merged.values())
