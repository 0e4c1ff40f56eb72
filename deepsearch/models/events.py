from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    MODEL_TURN = "model_turn"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    TOOL_FAILED = "tool_failed"
    SEARCH_RESULT = "search_result"
    EXTRACT_RESULT = "extract_result"
    FINALIZE_RECORDED = "finalize_recorded"
    RUN_COMPLETED = "run_completed"
    ERROR = "error"


@dataclass(slots=True)
class AgentEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)
    index: int = -1

    def format(self) -> str:
        return f"id: {self.index}\nevent: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"


class EventLog:
    """Append-only progress log. Indices are assigned on append and never reused."""

    def __init__(self) -> None:
        self._events: list[AgentEvent] = []

    def append(self, event: AgentEvent) -> AgentEvent:
        indexed = replace(event, index=len(self._events))
        self._events.append(indexed)
        return indexed

    def since(self, index: int) -> list[AgentEvent]:
        """Events with an index greater than ``index``."""
        return self._events[max(index + 1, 0):]

    def of_type(self, event_type: EventType) -> list[AgentEvent]:
        return [e for e in self._events if e.event == event_type]

    def __iter__(self) -> Iterator[AgentEvent]:
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)
