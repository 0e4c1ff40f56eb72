from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

SEARCH_VIEWPOINT_FALLBACK = (
    "Insufficient validated evidence from this source to form a reliable query-grounded viewpoint."
)
EXTRACT_FAILURE_VIEWPOINT = (
    "Extraction halted early; this source cannot yet provide a reliable, query-grounded viewpoint."
)


@dataclass(frozen=True, slots=True)
class LineRange:
    """Inclusive 1-based line span."""

    start: int
    end: int

    @property
    def key(self) -> str:
        return f"{self.start}:{self.end}"

    def contains(self, other: LineRange) -> bool:
        return other.start >= self.start and other.end <= self.end


@dataclass(frozen=True, slots=True)
class LineSelection:
    start: int
    end: int
    text: str

    @property
    def key(self) -> str:
        return f"{self.start}:{self.end}:{self.text}"

    @property
    def bounds(self) -> LineRange:
        return LineRange(self.start, self.end)

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "text": self.text}


@dataclass(slots=True)
class SearchHit:
    title: str
    url: str
    content: str
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "url": self.url, "content": self.content, "score": self.score}


@dataclass(slots=True)
class PageRecord:
    page_id: str
    search_id: str
    query: str
    url: str
    title: str | None
    fetched_at: str
    line_count: int
    markdown: str


@dataclass(slots=True)
class PersistedPage:
    page_id: str
    line_count: int


@dataclass(slots=True)
class ExtractionRecord:
    page_id: str
    search_id: str
    query: str
    url: str
    viewpoint: str
    broken: bool
    irrelevant: bool
    line_count: int
    selections: list[LineSelection]
    raw_model_output: str
    extracted_at: str
    error: str | None = None


@dataclass(slots=True)
class ExtractOutcome:
    """What the extraction agent concluded about one page."""

    viewpoint: str
    broken: bool
    irrelevant: bool
    selections: list[LineSelection]
    raw_model_output: str
    error: str | None = None


@dataclass(slots=True)
class SearchResult:
    """Per-URL evidence row flowing from the orchestrator to the reference builder."""

    url: str
    viewpoint: str = ""
    title: str | None = None
    content: str | None = None
    page_id: str | None = None
    line_count: int | None = None
    selections: list[LineSelection] = field(default_factory=list)
    broken: bool = False
    irrelevant: bool = False
    error: str | None = None

    @property
    def has_usable_evidence(self) -> bool:
        return (
            not self.broken
            and not self.irrelevant
            and not self.error
            and len(self.selections) > 0
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["selections"] = [s.to_dict() for s in self.selections]
        return payload


@dataclass(frozen=True, slots=True)
class Reference:
    ref_id: int
    uri: str
    page_id: str
    url: str
    title: str | None
    viewpoint: str
    start_line: int
    end_line: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Source:
    url: str
    title: str
    snippet: str
    excerpts: list[str]
    reference_ids: list[int]
    viewpoint: str | None = None
    content: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SearchSession:
    search_id: str
    query: str
    created_at: str
    completed_at: str | None = None
    references: list[Reference] = field(default_factory=list)


@dataclass(slots=True)
class ResolvedReference:
    project_id: str
    search_id: str
    ref_id: int
    uri: str
    query: str
    page_id: str
    url: str
    title: str | None
    viewpoint: str
    start_line: int
    end_line: int
    text: str
