"""On-disk record shapes of the evidence store. All files carry ``version: 1``."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

STORE_VERSION = 1


class StoredModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StoredSelection(StoredModel):
    start: int = Field(ge=1)
    end: int = Field(ge=1)
    text: str


class StoredPageMeta(StoredModel):
    version: Literal[1]
    project_id: str
    search_id: str
    page_id: str
    query: str
    url: str
    title: str | None = None
    fetched_at: str
    line_count: int = Field(ge=0)
    markdown_file: str


class StoredExtraction(StoredModel):
    version: Literal[1]
    project_id: str
    search_id: str
    page_id: str
    query: str
    url: str
    viewpoint: str
    broken: bool
    irrelevant: bool = False
    line_count: int = Field(ge=0)
    selections: list[StoredSelection]
    raw_model_output: str
    error: str | None = None
    extracted_at: str


class StoredReference(StoredModel):
    ref_id: int = Field(ge=1)
    uri: str
    page_id: str
    url: str
    title: str | None = None
    viewpoint: str | None = None
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    text: str


class StoredSearch(StoredModel):
    version: Literal[1]
    project_id: str
    search_id: str
    query: str
    created_at: str
    completed_at: str | None = None
    llm_prompt: str = ""
    llm_conclusion_raw: str = ""
    llm_conclusion_linked: str = ""
    references: list[StoredReference] = Field(default_factory=list)
