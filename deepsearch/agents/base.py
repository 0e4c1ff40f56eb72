from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from deepsearch.config import settings
from deepsearch.errors import SearchCancelled
from deepsearch.llm_client import MessageResponse, _block_field, client as llm_client, get_model
from deepsearch.models.events import AgentEvent, EventLog
from deepsearch.services import logger as log_service
from deepsearch.services import streaming
from deepsearch.services.cancellation import CancelToken


@dataclass(slots=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    terminal: bool = False

    def as_tool(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_model.model_json_schema(),
        }


@dataclass(slots=True)
class ToolOutcome:
    content: str
    is_error: bool = False


@dataclass(slots=True)
class AgentRun:
    text: str
    turns: int
    finished: bool


class BaseAgent:
    """Base agent that wraps the OpenRouter tool-use loop.

    Subclasses define `system_prompt`, `tool_specs`, and `handle_tool_call`.
    Tool calls issued in the same model turn run concurrently; the loop ends
    after the round in which a terminal tool succeeded, when the model stops
    calling tools, or when `max_turns` is reached.
    """

    name: str = "base"
    tool_specs: list[ToolSpec] = []

    def __init__(
        self,
        model: str | None = None,
        *,
        client: Any = None,
        cancel_token: CancelToken | None = None,
        events: EventLog | None = None,
        max_tokens: int | None = None,
    ):
        self.model = model or get_model()
        self.client = client
        self.cancel_token = cancel_token or CancelToken()
        self.events = events if events is not None else EventLog()
        self.max_tokens = max_tokens or settings.llm_max_tokens

    @property
    def system_prompt(self) -> str:
        raise NotImplementedError

    @property
    def tools(self) -> list[dict[str, Any]]:
        return [tool_spec.as_tool() for tool_spec in self.tool_specs]

    def emit(self, event: AgentEvent) -> AgentEvent:
        return self.events.append(event)

    async def handle_tool_call(self, tool_name: str, tool_input: BaseModel) -> ToolOutcome:
        """Execute a validated tool call. Must be overridden by subclasses that define tools."""
        raise NotImplementedError(f"Tool {tool_name} not handled")

    async def _call_model(self, messages: list[dict[str, Any]]) -> MessageResponse:
        active_client = self.client or llm_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": self.system_prompt,
            "messages": messages,
        }
        if self.tool_specs:
            kwargs["tools"] = self.tools

        t0 = time.monotonic()
        try:
            response = await self.cancel_token.guard(active_client.messages.create(**kwargs))
        except SearchCancelled:
            raise
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=self.name,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise

        usage = response.usage
        log_service.log_llm_call(
            model=self.model,
            caller=self.name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return response

    async def _dispatch(self, block: Any) -> tuple[dict[str, Any], bool]:
        tool_name = _block_field(block, "name") or ""
        call_id = _block_field(block, "id") or ""
        raw_input = _block_field(block, "input")
        if not isinstance(raw_input, dict):
            raw_input = {}
        tool_spec = next((s for s in self.tool_specs if s.name == tool_name), None)
        self.emit(streaming.tool_started(self.name, tool_name, call_id, raw_input))

        if tool_spec is None:
            outcome = ToolOutcome(f"Error: unknown tool {tool_name}", is_error=True)
        else:
            try:
                payload = tool_spec.input_model.model_validate(raw_input)
                outcome = await self.handle_tool_call(tool_spec.name, payload)
            except ValidationError as e:
                outcome = ToolOutcome(
                    f"Error: invalid input for {tool_spec.name}: {e.errors(include_url=False)}",
                    is_error=True,
                )
            except SearchCancelled:
                raise
            except Exception as e:
                logger.warning(f"{self.name}.tool_error tool={tool_name} error={e}")
                outcome = ToolOutcome(f"Error: {e}", is_error=True)

        if outcome.is_error:
            self.emit(streaming.tool_failed(self.name, tool_name, call_id, outcome.content))
        else:
            self.emit(streaming.tool_completed(self.name, tool_name, call_id))

        tool_result = {
            "type": "tool_result",
            "tool_use_id": call_id,
            "content": outcome.content,
            "is_error": outcome.is_error,
        }
        return tool_result, bool(tool_spec and tool_spec.terminal and not outcome.is_error)

    async def run_tools(self, user_message: str, *, max_turns: int) -> AgentRun:
        messages: list[dict[str, Any]] = [{"role": "user", "content": user_message}]

        for turn in range(1, max_turns + 1):
            self.cancel_token.raise_if_cancelled()
            response = await self._call_model(messages)

            tool_use_blocks = [b for b in response.content if _block_field(b, "type") == "tool_use"]
            text = "\n".join(
                _block_field(b, "text") or "" for b in response.content if _block_field(b, "type") == "text"
            ).strip()
            self.emit(
                streaming.model_turn(
                    self.name,
                    turn,
                    tool_calls=[_block_field(b, "name") or "" for b in tool_use_blocks],
                    text=text,
                )
            )

            if not tool_use_blocks:
                return AgentRun(text=text, turns=turn, finished=False)

            messages.append({"role": "assistant", "content": response.content})

            tasks = [asyncio.ensure_future(self._dispatch(b)) for b in tool_use_blocks]
            try:
                outcomes = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

            messages.append({"role": "user", "content": [result for result, _ in outcomes]})
            if any(terminal for _, terminal in outcomes):
                return AgentRun(text=text, turns=turn, finished=True)

        return AgentRun(text="Max turns reached.", turns=max_turns, finished=False)
