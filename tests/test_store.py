from __future__ import annotations

import json

import pytest

from deepsearch.evidence.references import build_reference_uri
from deepsearch.models.evidence import ExtractionRecord, LineSelection, Reference
from deepsearch.services.store import (
    VIEWPOINT_UNAVAILABLE,
    EvidenceStore,
    build_project_id,
    parse_page_meta,
)


def _extraction(page_id: str, query: str, **overrides) -> ExtractionRecord:
    values = dict(
        page_id=page_id,
        search_id="s_1",
        query=query,
        url="https://x",
        viewpoint="x says a",
        broken=False,
        irrelevant=False,
        line_count=3,
        selections=[LineSelection(1, 1, "a")],
        raw_model_output="raw",
        extracted_at="2026-01-01T00:00:00+00:00",
    )
    values.update(overrides)
    return ExtractionRecord(**values)


def test_project_id_is_deterministic(tmp_path):
    assert build_project_id(tmp_path) == build_project_id(str(tmp_path))
    assert build_project_id(tmp_path).startswith("p_")
    assert len(build_project_id(tmp_path)) == 18


@pytest.mark.asyncio
async def test_page_round_trip(tmp_path):
    store = EvidenceStore(tmp_path)

    persisted = await store.save_page(search_id="s_1", query="q", url="https://x", markdown="a\nb\nc")
    cached = await store.find_cached_page_by_url("https://x")

    assert persisted.line_count == 3
    assert cached is not None
    assert cached.page_id == persisted.page_id
    assert cached.markdown == "a\nb\nc"
    assert cached.line_count == 3


@pytest.mark.asyncio
async def test_page_lookup_returns_latest_fetch(tmp_path):
    store = EvidenceStore(tmp_path)
    await store.save_page(
        search_id="s_1", query="q", url="https://x", markdown="old", fetched_at="2026-01-01T00:00:00+00:00"
    )
    newer = await store.save_page(
        search_id="s_2", query="q", url="HTTPS://X/", markdown="new", fetched_at="2026-02-01T00:00:00+00:00"
    )

    cached = await store.find_cached_page_by_url("https://x")

    assert cached.page_id == newer.page_id
    assert cached.markdown == "new"


@pytest.mark.asyncio
async def test_corrupt_or_blank_pages_are_misses(tmp_path):
    store = EvidenceStore(tmp_path)
    corrupt = await store.save_page(search_id="s_1", query="q", url="https://corrupt", markdown="text")
    blank = await store.save_page(search_id="s_1", query="q", url="https://blank", markdown="   ")
    (store.pages_dir / corrupt.page_id / "meta.json").write_text("{not json", encoding="utf-8")

    assert await store.find_cached_page_by_url("https://corrupt") is None
    assert await store.find_cached_page_by_url("https://blank") is None
    assert await store.find_cached_page_by_url("https://missing") is None
    assert blank.line_count == 1


@pytest.mark.asyncio
async def test_extraction_lookup_uses_normalized_query(tmp_path):
    store = EvidenceStore(tmp_path)
    page = await store.save_page(search_id="s_1", query="q", url="https://x", markdown="a\nb\nc")
    await store.save_extraction(_extraction(page.page_id, "Capital of  France"))

    hit = await store.find_cached_extraction_by_page_and_query(page.page_id, "  capital OF france ")

    assert hit is not None
    assert hit.selections == [LineSelection(1, 1, "a")]
    assert await store.find_cached_extraction_by_page_and_query(page.page_id, "other query") is None
    assert await store.find_cached_extraction_by_page_and_query("../escape", "capital of france") is None


@pytest.mark.asyncio
async def test_malformed_extraction_is_a_miss(tmp_path):
    store = EvidenceStore(tmp_path)
    page = await store.save_page(search_id="s_1", query="q", url="https://x", markdown="a")
    path = store.pages_dir / page.page_id / "extraction.json"
    path.write_text(json.dumps({"version": 2, "query": "q"}), encoding="utf-8")

    assert await store.find_cached_extraction_by_page_and_query(page.page_id, "q") is None


@pytest.mark.asyncio
async def test_finalize_and_resolve_reference(tmp_path):
    store = EvidenceStore(tmp_path)
    session = await store.create_search_session("what is x?")
    uri = build_reference_uri(store.project_id, session.search_id, 1)
    reference = Reference(
        ref_id=1,
        uri=uri,
        page_id="p_page",
        url="https://x",
        title="X",
        viewpoint="",
        start_line=2,
        end_line=3,
        text="b\nc",
    )

    completed = await store.finalize_search(
        session,
        prompt="prompt",
        conclusion_raw="X is b [1]",
        conclusion_linked=f"X is b [1]({uri})",
        references=[reference],
    )
    resolved = await store.resolve_reference(uri)

    assert completed.completed_at is not None
    assert resolved.query == "what is x?"
    assert resolved.text == "b\nc"
    assert resolved.viewpoint == VIEWPOINT_UNAVAILABLE
    record = json.loads((store.searches_dir / f"{session.search_id}.json").read_text(encoding="utf-8"))
    assert record["version"] == 1
    assert record["llm_conclusion_raw"] == "X is b [1]"


@pytest.mark.asyncio
async def test_resolve_reference_rejects_other_projects_and_unknown_ids(tmp_path):
    store = EvidenceStore(tmp_path)
    session = await store.create_search_session("q")

    assert await store.resolve_reference(build_reference_uri("p_other", session.search_id, 1)) is None
    assert await store.resolve_reference(build_reference_uri(store.project_id, session.search_id, 5)) is None
    assert await store.resolve_reference("not a uri") is None


def test_parse_page_meta_rejects_wrong_shapes():
    assert parse_page_meta({"version": 1}) is None
    assert parse_page_meta(["not", "a", "dict"]) is None
