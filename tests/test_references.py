from __future__ import annotations

from deepsearch.evidence.citations import expand_citation_group, linkify_citations
from deepsearch.evidence.references import (
    MAX_REFERENCE_CHARS,
    build_reference_uri,
    build_references,
    parse_reference_uri,
)
from deepsearch.models.evidence import LineSelection, Reference, SearchResult


def _reference(ref_id: int) -> Reference:
    return Reference(
        ref_id=ref_id,
        uri=f"deepsearch://project/p_1/search/s_1/ref/{ref_id}",
        page_id="p_page",
        url=f"https://example.com/{ref_id}",
        title=None,
        viewpoint="v",
        start_line=1,
        end_line=2,
        text="t",
    )


def test_reference_uri_round_trip_and_rejections():
    uri = build_reference_uri("p_abc", "s_123-x", 4)
    assert uri == "deepsearch://project/p_abc/search/s_123-x/ref/4"

    parsed = parse_reference_uri(uri)
    assert (parsed.project_id, parsed.search_id, parsed.ref_id) == ("p_abc", "s_123-x", 4)

    assert parse_reference_uri("deepsearch://project/p_abc/search/s_1/ref/0") is None
    assert parse_reference_uri("deepsearch://project/p.abc/search/s_1/ref/1") is None
    assert parse_reference_uri("https://project/p_abc/search/s_1/ref/1") is None


def test_build_references_caps_selections_and_clips_text():
    result = SearchResult(
        url="https://a",
        viewpoint="claim",
        title="A",
        page_id="p_page",
        selections=[
            LineSelection(1, 2, "x" * 5000),
            LineSelection(3, 4, "second"),
            LineSelection(5, 6, "third"),
            LineSelection(7, 8, "fourth"),
        ],
    )

    references = build_references([result], project_id="p_1", search_id="s_1")

    assert [r.ref_id for r in references] == [1, 2, 3]
    assert len(references[0].text) <= MAX_REFERENCE_CHARS
    assert references[0].text.endswith("…")
    assert references[2].uri == "deepsearch://project/p_1/search/s_1/ref/3"


def test_build_references_skips_unusable_and_duplicate_rows():
    usable = SearchResult(url="https://a", viewpoint="Claim", selections=[LineSelection(1, 1, "Same text")])
    duplicate = SearchResult(url="https://a", viewpoint="claim ", selections=[LineSelection(2, 2, "same  TEXT")])
    broken = SearchResult(url="https://b", viewpoint="other", broken=True)

    references = build_references([usable, duplicate, broken], project_id=None, search_id="s_1")

    assert len(references) == 1
    assert references[0].uri == ""


def test_linkify_grouped_citations():
    references = [_reference(1), _reference(2), _reference(3)]

    linked = linkify_citations("See [1] and [2,3]", references)

    assert linked == (
        "See [1](deepsearch://project/p_1/search/s_1/ref/1) and "
        "[2](deepsearch://project/p_1/search/s_1/ref/2), [3](deepsearch://project/p_1/search/s_1/ref/3)"
    )


def test_linkify_is_idempotent_and_keeps_unknown_ids():
    references = [_reference(1), _reference(2)]
    text = "Claim [^2]. Range [1-3]. Unknown [9]. Mixed [1、9]."

    once = linkify_citations(text, references)
    twice = linkify_citations(once, references)

    assert once == twice
    assert "Claim [2](deepsearch://project/p_1/search/s_1/ref/2)." in once
    assert "Unknown [9]." in once
    assert "Mixed [1](deepsearch://project/p_1/search/s_1/ref/1), [9]." in once
    assert "[3]" in once


def test_linkify_recanonicalizes_stale_links():
    linked = linkify_citations("Old [1](https://stale.example)", [_reference(1)])

    assert linked == "Old [1](deepsearch://project/p_1/search/s_1/ref/1)"


def test_linkify_replaces_links_with_parentheses():
    text = "Raft [1](https://en.wikipedia.org/wiki/Raft_(algorithm)) (see also [2])."

    linked = linkify_citations(text, [_reference(1), _reference(2)])

    assert linked == (
        "Raft [1](deepsearch://project/p_1/search/s_1/ref/1) "
        "(see also [2](deepsearch://project/p_1/search/s_1/ref/2))."
    )


def test_expand_citation_group_limits_range_width():
    assert expand_citation_group("1, 2；4-6") == [1, 2, 4, 5, 6]
    assert expand_citation_group("1-20") == []
