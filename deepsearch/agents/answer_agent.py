from __future__ import annotations

from deepsearch.agents.base import BaseAgent
from deepsearch.services.prompt_store import render_prompt


class AnswerAgent(BaseAgent):
    """Writes the cited answer from the numbered-reference prompt. No tools."""

    name = "answer"

    @property
    def system_prompt(self) -> str:
        return render_prompt("answer.system_prompt")

    async def answer(self, prompt: str) -> str:
        run = await self.run_tools(prompt, max_turns=1)
        return run.text
