from __future__ import annotations

from typing import Any

from deepsearch.models.events import AgentEvent, EventType


def run_started(agent: str, query: str, **kwargs: Any) -> AgentEvent:
    return AgentEvent(event=EventType.RUN_STARTED, data={"agent": agent, "query": query, **kwargs})


def model_turn(agent: str, turn: int, *, tool_calls: list[str], text: str = "") -> AgentEvent:
    return AgentEvent(
        event=EventType.MODEL_TURN,
        data={"agent": agent, "turn": turn, "tool_calls": tool_calls, "text": text},
    )


def tool_started(agent: str, tool: str, call_id: str, tool_input: dict[str, Any]) -> AgentEvent:
    return AgentEvent(
        event=EventType.TOOL_STARTED,
        data={"agent": agent, "tool": tool, "call_id": call_id, "input": tool_input},
    )


def tool_completed(agent: str, tool: str, call_id: str, **kwargs: Any) -> AgentEvent:
    return AgentEvent(
        event=EventType.TOOL_COMPLETED,
        data={"agent": agent, "tool": tool, "call_id": call_id, **kwargs},
    )


def tool_failed(agent: str, tool: str, call_id: str, error: str) -> AgentEvent:
    return AgentEvent(
        event=EventType.TOOL_FAILED,
        data={"agent": agent, "tool": tool, "call_id": call_id, "error": error},
    )


def search_result(query: str, results: list[dict[str, Any]], *, provider: str, **kwargs: Any) -> AgentEvent:
    return AgentEvent(
        event=EventType.SEARCH_RESULT,
        data={"query": query, "results": results, "provider": provider, **kwargs},
    )


def extract_result(url: str, **kwargs: Any) -> AgentEvent:
    return AgentEvent(event=EventType.EXTRACT_RESULT, data={"url": url, **kwargs})


def finalize_recorded(call_count: int, result_count: int, error_count: int) -> AgentEvent:
    return AgentEvent(
        event=EventType.FINALIZE_RECORDED,
        data={
            "call_count": call_count,
            "result_count": result_count,
            "error_count": error_count,
        },
    )


def run_completed(agent: str, **kwargs: Any) -> AgentEvent:
    return AgentEvent(event=EventType.RUN_COMPLETED, data={"agent": agent, **kwargs})


def error(message: str, **kwargs: Any) -> AgentEvent:
    return AgentEvent(event=EventType.ERROR, data={"message": message, **kwargs})
