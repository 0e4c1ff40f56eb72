from __future__ import annotations

from typing import Any

import pytest

from deepsearch.llm_client import MessageResponse, TextBlock, ToolUseBlock, Usage


class ScriptedMessages:
    def __init__(self, responses: list[MessageResponse]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> MessageResponse:
        self.calls.append({**kwargs, "messages": list(kwargs["messages"])})
        if not self.responses:
            raise AssertionError("model called more times than scripted")
        return self.responses.pop(0)


class ScriptedClient:
    def __init__(self, responses: list[MessageResponse]):
        self.messages = ScriptedMessages(responses)


def tool_turn(*calls: tuple[str, dict[str, Any]], text: str = "") -> MessageResponse:
    content: list[Any] = []
    if text:
        content.append(TextBlock(type="text", text=text))
    for index, (name, tool_input) in enumerate(calls):
        content.append(ToolUseBlock(type="tool_use", id=f"call_{name}_{index}", name=name, input=tool_input))
    return MessageResponse(content=content, usage=Usage(input_tokens=10, output_tokens=5))


def text_turn(text: str) -> MessageResponse:
    return MessageResponse(content=[TextBlock(type="text", text=text)], usage=Usage())


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def turns():
    class _Turns:
        tool = staticmethod(tool_turn)
        text = staticmethod(text_turn)

    return _Turns
