"""Tests for progress events, source summaries and the answer prompt."""
from deepsearch.evidence.sources import build_answer_prompt, build_sources, normalize_excerpts
from deepsearch.models.evidence import LineSelection, Reference, SearchResult
from deepsearch.models.events import EventLog, EventType
from deepsearch.services import streaming


def _reference(ref_id: int, url: str) -> Reference:
    return Reference(
        ref_id=ref_id,
        uri=f"deepsearch://project/p_1/search/s_1/ref/{ref_id}",
        page_id="p_page",
        url=url,
        title=None,
        viewpoint="v",
        start_line=3,
        end_line=4,
        text="quoted text",
    )


class TestEventLog:
    """The progress log assigns monotonic indices and never reuses them."""

    def test_append_assigns_indices(self):
        log = EventLog()
        first = log.append(streaming.run_started("search", "q"))
        second = log.append(streaming.tool_started("search", "search", "call_1", {"query": "q"}))

        assert (first.index, second.index) == (0, 1)
        assert len(log) == 2

    def test_since_returns_later_events_only(self):
        log = EventLog()
        for turn in range(3):
            log.append(streaming.model_turn("search", turn, tool_calls=[]))

        assert [e.data["turn"] for e in log.since(0)] == [1, 2]
        assert len(log.since(-1)) == 3

    def test_format_renders_event_stream_frame(self):
        log = EventLog()
        event = log.append(streaming.error("boom", fatal=True))

        assert event.event == EventType.ERROR
        assert event.format() == 'id: 0\nevent: error\ndata: {"message": "boom", "fatal": true}\n\n'


class TestSources:
    """Source summaries only cover URLs that produced references."""

    def test_sources_group_reference_ids_by_url(self):
        results = [
            SearchResult(
                url="https://a.example/x",
                viewpoint="claim",
                selections=[LineSelection(3, 4, "quoted text"), LineSelection(8, 9, "more")],
            ),
            SearchResult(url="https://b.example/y", viewpoint="other", broken=True),
        ]
        references = [_reference(1, "https://a.example/x"), _reference(2, "https://a.example/x")]

        sources = build_sources(results, references)

        assert len(sources) == 1
        assert sources[0].title == "a.example"
        assert sources[0].reference_ids == [1, 2]
        assert sources[0].excerpts == ["quoted text", "more"]

    def test_excerpts_are_limited(self):
        excerpts = normalize_excerpts(["x" * 2000] * 10)

        assert len(excerpts) == 3
        assert all(len(e) <= 900 for e in excerpts)


class TestAnswerPrompt:
    def test_prompt_lists_numbered_references(self):
        prompt = build_answer_prompt("q?", [_reference(1, "https://a.example/x")], [])

        assert "Question: q?" in prompt
        assert "[1] a.example\nURL: https://a.example/x\nLines: 3-4\nExcerpt:\nquoted text" in prompt

    def test_prompt_without_references_explains_errors(self):
        prompt = build_answer_prompt("q?", [], ["search failed", "extract failed"])

        assert "No validated references are currently available." in prompt
        assert "1. search failed\n2. extract failed" in prompt
