from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger
from pydantic import BaseModel

from deepsearch.agents.base import BaseAgent, ToolOutcome, ToolSpec
from deepsearch.config import settings
from deepsearch.errors import FinalizeMissing, ToolInputError
from deepsearch.evidence.lines import clamp_range, format_line_numbered, selection_for_range
from deepsearch.llm_client import get_extract_model
from deepsearch.models.evidence import ExtractOutcome, LineSelection
from deepsearch.models.schemas import GrepInput, ReadLinesInput, WriteExtractResultInput
from deepsearch.services.prompt_store import render_prompt
from deepsearch.tools.web_utils import clamp_text

_GREP_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def compile_grep_pattern(pattern: str, flags: str = "i") -> re.Pattern[str]:
    value = 0
    for flag in flags:
        if flag == "g":
            # Every line is always scanned.
            continue
        if flag not in _GREP_FLAGS:
            raise ToolInputError(f"Invalid regex pattern for grep tool: unsupported flag '{flag}'")
        value |= _GREP_FLAGS[flag]
    try:
        return re.compile(pattern, value)
    except re.error as e:
        raise ToolInputError(f"Invalid regex pattern for grep tool: {e}") from e


def grep_lines(lines: list[str], payload: GrepInput) -> dict[str, Any]:
    regex = compile_grep_pattern(payload.pattern, payload.flags)
    matches: list[dict[str, Any]] = []
    for index, line in enumerate(lines):
        if not regex.search(line):
            continue
        start = max(0, index - payload.before)
        end = min(len(lines), index + payload.after + 1)
        matches.append(
            {
                "line": index + 1,
                "text": line,
                "before": [f"{n + 1} | {lines[n]}" for n in range(start, index)],
                "after": [f"{n + 1} | {lines[n]}" for n in range(index + 1, end)],
            }
        )
        if len(matches) >= payload.max_matches:
            break
    return {"matches": matches, "total": len(matches)}


def read_line_block(lines: list[str], payload: ReadLinesInput) -> dict[str, Any]:
    line_count = len(lines)
    start = max(1, min(line_count, payload.start))
    end = max(start, min(line_count, payload.end))
    return {
        "start": start,
        "end": end,
        "lines": format_line_numbered(lines[start - 1 : end], start - 1, line_count),
    }


class ExtractionAgent(BaseAgent):
    """Reads one page's markdown and reports the line spans that answer a query."""

    name = "extract"
    tool_specs = [
        ToolSpec(
            name="grep",
            description="Search the markdown line by line with a regular expression and return matches with context.",
            input_model=GrepInput,
        ),
        ToolSpec(
            name="read_lines",
            description="Read content by a specified inclusive line range.",
            input_model=ReadLinesInput,
        ),
        ToolSpec(
            name="write_extract_result",
            description="Submit the final extraction result. Call exactly once.",
            input_model=WriteExtractResultInput,
            terminal=True,
        ),
    ]

    def __init__(self, model: str | None = None, *, max_steps: int | None = None, **kwargs: Any):
        super().__init__(model or get_extract_model(), **kwargs)
        self.max_steps = max_steps or settings.extract_max_steps
        self._lines: list[str] = []
        self._result: WriteExtractResultInput | None = None

    @property
    def system_prompt(self) -> str:
        return render_prompt("extract_agent.system_prompt")

    async def handle_tool_call(self, tool_name: str, tool_input: BaseModel) -> ToolOutcome:
        if tool_name == "grep":
            return ToolOutcome(json.dumps(grep_lines(self._lines, tool_input), ensure_ascii=False))
        if tool_name == "read_lines":
            return ToolOutcome(json.dumps(read_line_block(self._lines, tool_input), ensure_ascii=False))
        if tool_name == "write_extract_result":
            if self._result is not None:
                return ToolOutcome("Error: extract result already recorded.", is_error=True)
            self._result = tool_input
            return ToolOutcome("Extract result recorded.")
        raise NotImplementedError(f"Tool {tool_name} not handled")

    def _user_prompt(self, query: str) -> str:
        line_count = len(self._lines)
        char_count = sum(len(line) + 1 for line in self._lines)
        too_large = (
            line_count > settings.extract_large_line_threshold
            or char_count > settings.extract_large_char_threshold
        )
        if too_large:
            preview_lines = self._lines[: settings.extract_preview_lines]
            size_note = render_prompt(
                "extract_agent.size_note_large",
                line_count=line_count,
                preview_lines=len(preview_lines),
            )
        else:
            preview_lines = self._lines
            size_note = render_prompt("extract_agent.size_note", line_count=line_count)
        preview = format_line_numbered(preview_lines, 0, line_count)
        return render_prompt("extract_agent.user_prompt", query=query, size_note=size_note, preview=preview)

    def _selections(self, result: WriteExtractResultInput) -> list[LineSelection]:
        if result.irrelevant:
            return []
        selections: list[LineSelection] = []
        seen: set[str] = set()
        for bounds in result.selections:
            span = clamp_range(bounds.start, bounds.end, len(self._lines))
            if span is None or span.key in seen:
                continue
            seen.add(span.key)
            selection = selection_for_range(self._lines, span)
            if selection is not None:
                selections.append(selection)
        return sorted(selections, key=lambda s: (s.start, s.end))

    def _require_result(self) -> WriteExtractResultInput:
        if self._result is None:
            raise FinalizeMissing("extract agent finished without calling write_extract_result.")
        return self._result

    async def extract(self, query: str, lines: list[str]) -> ExtractOutcome:
        """Run the agent over ``lines`` and return its validated conclusion."""
        self._lines = list(lines)
        self._result = None
        logger.info(f"extract.start query={clamp_text(query, 160)!r} lines={len(self._lines)}")

        if not self._lines:
            return ExtractOutcome(
                viewpoint="",
                broken=True,
                irrelevant=False,
                selections=[],
                raw_model_output="Empty markdown input.",
            )

        run = await self.run_tools(self._user_prompt(query), max_turns=self.max_steps)
        try:
            result = self._require_result()
        except FinalizeMissing as e:
            logger.warning(f"extract.no_result turns={run.turns} error={e}")
            return ExtractOutcome(
                viewpoint="",
                broken=True,
                irrelevant=False,
                selections=[],
                raw_model_output=run.text,
                error=str(e),
            )

        selections = self._selections(result)
        error = result.error.strip() if result.error and result.error.strip() else None
        logger.info(
            f"extract.done broken={result.broken} irrelevant={result.irrelevant} "
            f"selections={len(selections)} turns={run.turns}"
        )
        return ExtractOutcome(
            viewpoint=result.viewpoint.strip(),
            broken=result.broken,
            irrelevant=result.irrelevant,
            selections=selections,
            raw_model_output=run.text or result.model_dump_json(),
            error=error,
        )
