from __future__ import annotations

import json
import re

import pytest

from deepsearch.agents.extract_agent import ExtractionAgent, compile_grep_pattern, grep_lines, read_line_block
from deepsearch.errors import ToolInputError
from deepsearch.models.evidence import LineSelection
from deepsearch.models.events import EventType
from deepsearch.models.schemas import GrepInput, ReadLinesInput

PAGE = ["# Title", "intro", "Paris is the capital of France.", "more", "end"]


def test_grep_returns_numbered_context():
    result = grep_lines(PAGE, GrepInput(pattern="CAPITAL", before=2, after=1))

    assert result["total"] == 1
    match = result["matches"][0]
    assert match["line"] == 3
    assert match["before"] == ["1 | # Title", "2 | intro"]
    assert match["after"] == ["4 | more"]


def test_grep_rejects_bad_patterns_and_flags():
    with pytest.raises(ToolInputError, match="Invalid regex pattern"):
        compile_grep_pattern("(unclosed")
    with pytest.raises(ToolInputError):
        compile_grep_pattern("x", "q")
    assert compile_grep_pattern("x", "gi").flags & re.IGNORECASE


def test_read_line_block_clamps_bounds():
    block = read_line_block(PAGE, ReadLinesInput(start=4, end=100))

    assert (block["start"], block["end"]) == (4, 5)
    assert block["lines"] == "4 | more\n5 | end"


@pytest.mark.asyncio
async def test_empty_input_is_broken_without_model_call(scripted_client):
    client = scripted_client([])
    agent = ExtractionAgent("test-model", client=client)

    outcome = await agent.extract("q", [])

    assert outcome.broken is True
    assert outcome.raw_model_output == "Empty markdown input."
    assert client.messages.calls == []


@pytest.mark.asyncio
async def test_extract_clamps_and_dedupes_reported_ranges(scripted_client, turns):
    client = scripted_client(
        [
            turns.tool(("grep", {"pattern": "capital"})),
            turns.tool(
                (
                    "write_extract_result",
                    {
                        "viewpoint": " Paris is the capital of France. ",
                        "selections": [
                            {"start": 3, "end": 3},
                            {"start": 4, "end": 99},
                            {"start": 3, "end": 3},
                            {"start": 5, "end": 2},
                        ],
                    },
                )
            ),
        ]
    )
    agent = ExtractionAgent("test-model", client=client)

    outcome = await agent.extract("capital of france", PAGE)

    assert outcome.broken is False
    assert outcome.viewpoint == "Paris is the capital of France."
    assert outcome.selections == [
        LineSelection(3, 3, "Paris is the capital of France."),
        LineSelection(4, 5, "more\nend"),
    ]
    grep_result = json.loads(client.messages.calls[1]["messages"][-1]["content"][0]["content"])
    assert grep_result["matches"][0]["line"] == 3
    assert len(agent.events.of_type(EventType.TOOL_COMPLETED)) == 2


@pytest.mark.asyncio
async def test_irrelevant_forces_empty_selections(scripted_client, turns):
    client = scripted_client(
        [
            turns.tool(
                (
                    "write_extract_result",
                    {"viewpoint": "Unrelated page.", "irrelevant": True, "selections": [{"start": 1, "end": 2}]},
                )
            )
        ]
    )

    outcome = await ExtractionAgent("test-model", client=client).extract("q", PAGE)

    assert outcome.irrelevant is True
    assert outcome.selections == []


@pytest.mark.asyncio
async def test_missing_final_call_reports_broken(scripted_client, turns):
    client = scripted_client([turns.text("I think line 3 is relevant.")])

    outcome = await ExtractionAgent("test-model", client=client).extract("q", PAGE)

    assert outcome.broken is True
    assert outcome.selections == []
    assert "write_extract_result" in outcome.error
    assert outcome.raw_model_output == "I think line 3 is relevant."


@pytest.mark.asyncio
async def test_invalid_grep_is_returned_as_tool_error(scripted_client, turns):
    client = scripted_client(
        [
            turns.tool(("grep", {"pattern": "(bad"})),
            turns.tool(("write_extract_result", {"viewpoint": "v", "broken": True})),
        ]
    )
    agent = ExtractionAgent("test-model", client=client)

    outcome = await agent.extract("q", PAGE)

    tool_result = client.messages.calls[1]["messages"][-1]["content"][0]
    assert tool_result["is_error"] is True
    assert "Invalid regex pattern for grep tool" in tool_result["content"]
    assert outcome.broken is True
    assert len(agent.events.of_type(EventType.TOOL_FAILED)) == 1


@pytest.mark.asyncio
async def test_second_final_call_is_rejected(scripted_client, turns):
    client = scripted_client(
        [
            turns.tool(
                ("write_extract_result", {"viewpoint": "first", "selections": [{"start": 1, "end": 1}]}),
                ("write_extract_result", {"viewpoint": "second"}),
            )
        ]
    )

    outcome = await ExtractionAgent("test-model", client=client).extract("q", PAGE)

    assert outcome.viewpoint == "first"
    assert outcome.selections == [LineSelection(1, 1, "# Title")]


@pytest.mark.asyncio
async def test_large_documents_show_only_a_preview(scripted_client, turns):
    lines = [f"line {n}" for n in range(1, 2501)]
    client = scripted_client([turns.tool(("write_extract_result", {"viewpoint": "v", "broken": True}))])

    await ExtractionAgent("test-model", client=client).extract("q", lines)

    prompt = client.messages.calls[0]["messages"][0]["content"]
    assert "Markdown is large (2500 lines)" in prompt
    assert "0200 | line 200" in prompt
    assert "0201 | line 201" not in prompt
