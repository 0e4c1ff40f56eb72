from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from deepsearch.errors import EmptyQueryError, SearchCancelled
from deepsearch.models.evidence import ExtractOutcome, LineSelection, SearchHit
from deepsearch.pipeline import EMPTY_CONCLUSION, DeepSearchPipeline
from deepsearch.services.cancellation import CancelToken
from deepsearch.tools.search_provider import SearchResponse

URL = "https://docs.example/ra"


class FakeExtractor:
    def __init__(self, model=None, **kwargs):
        pass

    async def extract(self, query, lines):
        return ExtractOutcome(
            viewpoint="Raft elects a leader per term.",
            broken=False,
            irrelevant=False,
            selections=[LineSelection(2, 3, "Each term begins\nwith an election.")],
            raw_model_output="ok",
        )


async def _fetch(url: str) -> str:
    return "# Raft\nEach term begins\nwith an election.\nfooter"


def _pipeline(tmp_path, client, **kwargs) -> DeepSearchPipeline:
    search = AsyncMock(
        return_value=SearchResponse(
            results=[SearchHit(title="Raft docs", url=URL, content="leader election")], provider="tavily"
        )
    )
    return DeepSearchPipeline(
        tmp_path,
        client=client,
        model="test-model",
        search_fn=search,
        fetch_fn=_fetch,
        extractor_factory=FakeExtractor,
        **kwargs,
    )


def _script(turns):
    return [
        turns.tool(("search", {"query": "raft leader election"})),
        turns.tool(("extract", {"url": URL, "query": "raft leader election"})),
        turns.tool(
            (
                "finalize",
                {
                    "results": [
                        {
                            "url": URL,
                            "viewpoint": "Raft elects a leader per term.",
                            "selections": [{"start": 2, "end": 3}],
                        }
                    ],
                    "errors": [],
                },
            )
        ),
    ]


@pytest.mark.asyncio
async def test_run_builds_references_sources_and_prompt(scripted_client, turns, tmp_path):
    pipeline = _pipeline(tmp_path, scripted_client(_script(turns)))

    result = await pipeline.run("  How does Raft elect a leader? ")

    assert result.query == "How does Raft elect a leader?"
    assert result.project_id == pipeline.store.project_id
    assert len(result.references) == 1
    reference = result.references[0]
    assert reference.uri == f"deepsearch://project/{result.project_id}/search/{result.search_id}/ref/1"
    assert (reference.start_line, reference.end_line) == (2, 3)
    assert result.sources[0].reference_ids == [1]
    assert result.sources[0].title == "Raft docs"
    assert "[1] Raft docs" in result.prompt
    assert "Lines: 2-3" in result.prompt
    assert result.fatal is False


@pytest.mark.asyncio
async def test_complete_links_citations_and_persists_session(scripted_client, turns, tmp_path):
    pipeline = _pipeline(tmp_path, scripted_client(_script(turns)))
    result = await pipeline.run("How does Raft elect a leader?")

    linked = await pipeline.complete(result, "Each term starts with an election [1].")
    resolved = await pipeline.resolve_reference(result.references[0].uri)

    assert linked == f"Each term starts with an election [1]({result.references[0].uri})."
    assert resolved.query == "How does Raft elect a leader?"
    assert resolved.viewpoint == "Raft elects a leader per term."
    record = json.loads((pipeline.store.searches_dir / f"{result.search_id}.json").read_text(encoding="utf-8"))
    assert record["llm_conclusion_linked"] == linked
    assert record["completed_at"]


@pytest.mark.asyncio
async def test_complete_with_empty_conclusion_uses_placeholder(scripted_client, turns, tmp_path):
    pipeline = _pipeline(tmp_path, scripted_client(_script(turns)))
    result = await pipeline.run("q")

    assert await pipeline.complete(result, "   ") == EMPTY_CONCLUSION


@pytest.mark.asyncio
async def test_generate_answer_uses_reference_prompt(scripted_client, turns, tmp_path):
    client = scripted_client(_script(turns) + [turns.text("Raft holds an election each term [1].")])
    pipeline = _pipeline(tmp_path, client)
    result = await pipeline.run("How does Raft elect a leader?")

    answer = await pipeline.generate_answer(result)

    assert answer == "Raft holds an election each term [1]."
    answer_call = client.messages.calls[-1]
    assert answer_call["messages"][0]["content"] == result.prompt
    assert "tools" not in answer_call


@pytest.mark.asyncio
async def test_blank_query_is_rejected(scripted_client, tmp_path):
    pipeline = _pipeline(tmp_path, scripted_client([]))

    with pytest.raises(EmptyQueryError):
        await pipeline.run("   ")


@pytest.mark.asyncio
async def test_cancelled_run_raises(scripted_client, turns, tmp_path):
    token = CancelToken()
    token.cancel("user stopped")
    client = scripted_client(_script(turns))
    pipeline = _pipeline(tmp_path, client, cancel_token=token)

    with pytest.raises(SearchCancelled, match="user stopped"):
        await pipeline.run("q")

    assert client.messages.calls == []


@pytest.mark.asyncio
async def test_run_without_references_asks_for_explanation(scripted_client, turns, tmp_path):
    client = scripted_client(
        [
            turns.tool(("search", {"query": "q"})),
            turns.tool(("finalize", {"results": [], "errors": ["nothing relevant found"]})),
        ]
    )
    pipeline = _pipeline(tmp_path, client)

    result = await pipeline.run("q")

    assert result.references == []
    assert result.sources == []
    assert "No validated references are currently available." in result.prompt
    assert "1. nothing relevant found" in result.prompt
