"""Typed tool inputs for the agents and the Tavily response shape."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


# --- Orchestrator tools ---


class SearchInput(BaseModel):
    query: str = Field(min_length=1, description="Natural-language web search query.")


class ExtractInput(BaseModel):
    url: str = Field(min_length=1, description="Target page URL to fetch and extract from.")
    query: str = Field(min_length=1, description="User query used to locate relevant passages.")


class SelectionInput(BaseModel):
    start: int = Field(ge=1, description="Inclusive 1-based start line.")
    end: int = Field(ge=1, description="Inclusive 1-based end line.")
    text: str = Field(default="", description="Line-numbered text copied from the extract result.")


class FinalizeItem(BaseModel):
    url: str = Field(default="", description="Source URL. Omit only for global errors.")
    title: str | None = None
    viewpoint: str = Field(default="", description="Specific claim this evidence supports.")
    content: str = Field(default="", description="Short evidence summary aligned with the selections.")
    selections: list[SelectionInput] = Field(
        default_factory=list,
        description="Line selections copied from the extract result for the same URL.",
    )
    broken: bool = Field(default=False, description="URL is blocked, unavailable or corrupted.")
    irrelevant: bool = Field(default=False, description="URL is unrelated to the query.")
    error: str | None = Field(default=None, description="Per-URL error reason.")


class FinalizeInput(BaseModel):
    results: list[FinalizeItem] = Field(default_factory=list, description="Per-URL evidence items.")
    errors: list[str] = Field(
        default_factory=list,
        description="Global errors for failed search/extract attempts.",
    )


# --- Extraction agent tools ---


class GrepInput(BaseModel):
    pattern: str = Field(min_length=1, description="Python regular expression matched against each line.")
    flags: str = Field(default="i", description="Regex flag letters: i (ignore case), m, s.")
    before: int = Field(default=2, ge=0, le=8, description="Context lines before each match.")
    after: int = Field(default=2, ge=0, le=8, description="Context lines after each match.")
    max_matches: int = Field(default=20, ge=1, le=40, description="Maximum matches returned.")


class ReadLinesInput(BaseModel):
    start: int = Field(ge=1, description="Requested inclusive 1-based start line.")
    end: int = Field(ge=1, description="Requested inclusive 1-based end line.")


class LineBounds(BaseModel):
    start: int = Field(description="Inclusive 1-based start line.")
    end: int = Field(description="Inclusive 1-based end line.")


class WriteExtractResultInput(BaseModel):
    viewpoint: str = Field(min_length=1, description="One concise, evidence-grounded viewpoint.")
    broken: bool = Field(default=False, description="Page content is unavailable, corrupted or blocked.")
    irrelevant: bool = Field(default=False, description="Page is unrelated to the query.")
    selections: list[LineBounds] = Field(default_factory=list, description="Relevant inclusive line spans.")
    error: str | None = Field(default=None, description="Optional extraction error reason.")


# --- Tavily ---


class TavilyResult(BaseModel):
    title: str | None = None
    url: str | None = None
    content: str | None = None
    snippet: str | None = None
    description: str | None = None
    raw_content: str | None = None
    score: float = 0.0

    @field_validator("title", "url", "content", "snippet", "description", "raw_content", mode="before")
    @classmethod
    def _ignore_non_strings(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @field_validator("score", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return value


class TavilyResponse(BaseModel):
    results: list[TavilyResult] = Field(default_factory=list)
