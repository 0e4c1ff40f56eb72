from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from deepsearch.agents.base import BaseAgent, ToolOutcome, ToolSpec
from deepsearch.agents.extract_agent import ExtractionAgent
from deepsearch.config import settings
from deepsearch.errors import (
    ContentUnavailable,
    RepeatedCallBlocked,
    SearchCancelled,
    ToolBudgetExceeded,
)
from deepsearch.evidence.dedupe import dedupe_results
from deepsearch.evidence.lines import numbered_content_for_range, split_lines
from deepsearch.evidence.validator import ExtractedEvidence, validate_results
from deepsearch.models.evidence import (
    EXTRACT_FAILURE_VIEWPOINT,
    SEARCH_VIEWPOINT_FALLBACK,
    ExtractionRecord,
    ExtractOutcome,
    LineSelection,
    SearchResult,
)
from deepsearch.models.events import EventLog
from deepsearch.models.schemas import ExtractInput, FinalizeInput, FinalizeItem, SearchInput
from deepsearch.services import logger as log_service
from deepsearch.services import streaming
from deepsearch.services.cancellation import CancelToken
from deepsearch.services.prompt_store import render_prompt
from deepsearch.services.store import EvidenceStore
from deepsearch.tools import jina_reader, search_provider
from deepsearch.tools.web_utils import clamp_text, collapse_whitespace, normalize_key

ERROR_ROW_URL_PREFIX = "search://subagent-error/"
ERROR_ROW_TITLE = "Search subagent"

SearchFn = Callable[..., Awaitable[search_provider.SearchResponse]]
FetchFn = Callable[[str], Awaitable[str]]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass(slots=True)
class BudgetConfig:
    max_search_calls: int = 4
    max_extract_calls: int = 10
    max_repeat_search_query: int = 2
    max_repeat_extract_url: int = 2
    max_steps: int = 16
    search_max_results: int = 20

    @classmethod
    def from_settings(cls) -> BudgetConfig:
        return cls(
            max_search_calls=_clamp(settings.max_search_calls, 1, 20),
            max_extract_calls=_clamp(settings.max_extract_calls, 1, 40),
            max_repeat_search_query=_clamp(settings.max_repeat_search_query, 1, 10),
            max_repeat_extract_url=_clamp(settings.max_repeat_extract_url, 1, 10),
            max_steps=max(1, settings.orchestrator_max_steps),
            search_max_results=_clamp(settings.search_max_results, 1, 20),
        )


class RunState(str, Enum):
    EXPLORING = "exploring"
    FINALIZING = "finalizing"
    DONE = "done"
    FALLBACK = "fallback"


@dataclass(slots=True)
class ExtractedUrlMeta:
    title: str | None = None
    page_id: str | None = None
    line_count: int | None = None
    viewpoint: str | None = None
    broken: bool = False
    irrelevant: bool = False
    error: str | None = None

    def absorb(self, other: ExtractedUrlMeta) -> None:
        """First-seen values win; flags accumulate."""
        self.title = self.title or other.title
        self.page_id = self.page_id or other.page_id
        self.line_count = self.line_count if self.line_count is not None else other.line_count
        self.viewpoint = self.viewpoint or other.viewpoint
        self.broken = self.broken or other.broken
        self.irrelevant = self.irrelevant or other.irrelevant
        self.error = self.error or other.error


@dataclass(slots=True)
class OrchestratorOutcome:
    results: list[SearchResult]
    errors: list[str]
    fatal: bool
    state: RunState
    search_calls: int = 0
    extract_calls: int = 0
    events: EventLog = field(default_factory=EventLog)


def normalize_viewpoint(value: str | None, fallback: str = SEARCH_VIEWPOINT_FALLBACK) -> str:
    compact = collapse_whitespace(value or "")
    return compact or fallback


def _unique_trimmed(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        trimmed = value.strip()
        if trimmed:
            seen.setdefault(trimmed, None)
    return list(seen)


def normalize_finalize_items(items: list[FinalizeItem]) -> list[SearchResult]:
    """Turn finalize payload items into result rows.

    Items without a URL, or with neither selections nor a broken/irrelevant/error
    flag, are discarded. Selections with end < start are dropped.
    """
    results: list[SearchResult] = []
    for item in items:
        url = item.url.strip()
        if not url:
            continue
        selections = [
            LineSelection(s.start, s.end, s.text) for s in item.selections if s.end >= s.start
        ]
        error = item.error.strip() if item.error and item.error.strip() else None
        if not selections and not (item.broken or item.irrelevant or error):
            continue
        results.append(
            SearchResult(
                url=url,
                viewpoint=collapse_whitespace(item.viewpoint),
                title=item.title.strip() if item.title and item.title.strip() else None,
                content=item.content.strip() or None,
                selections=selections,
                broken=item.broken,
                irrelevant=item.irrelevant,
                error=error,
            )
        )
    return results


class SearchOrchestrator(BaseAgent):
    """Plans searches, dispatches per-URL extraction and assembles validated evidence."""

    name = "search"
    tool_specs = [
        ToolSpec(
            name="search",
            description="Search the web and return ranked candidate results.",
            input_model=SearchInput,
        ),
        ToolSpec(
            name="extract",
            description="Fetch markdown from a URL and extract passages relevant to the query.",
            input_model=ExtractInput,
        ),
        ToolSpec(
            name="finalize",
            description="Write the final payload with per-URL results and global errors. Call once when evidence collection is complete.",
            input_model=FinalizeInput,
            terminal=True,
        ),
    ]

    def __init__(
        self,
        search_id: str,
        *,
        store: EvidenceStore | None = None,
        budgets: BudgetConfig | None = None,
        model: str | None = None,
        extract_model: str | None = None,
        client: Any = None,
        search_fn: SearchFn | None = None,
        fetch_fn: FetchFn | None = None,
        extractor_factory: Callable[..., ExtractionAgent] | None = None,
        cancel_token: CancelToken | None = None,
        events: EventLog | None = None,
    ):
        super().__init__(model, client=client, cancel_token=cancel_token, events=events)
        self.search_id = search_id
        self.store = store
        self.budgets = budgets or BudgetConfig.from_settings()
        self.extract_model = extract_model
        self.search_fn = search_fn or search_provider.search
        self.fetch_fn = fetch_fn or jina_reader.fetch_markdown
        self.extractor_factory = extractor_factory or ExtractionAgent

        self.state = RunState.EXPLORING
        self.search_calls = 0
        self.search_failures = 0
        self.extract_calls = 0
        self.extract_failures = 0
        self.search_errors: list[str] = []
        self.extract_errors: list[str] = []
        self._search_counts: dict[str, int] = {}
        self._extract_counts: dict[str, int] = {}
        self._search_lookup: dict[str, str] = {}
        self.evidence_by_url: dict[str, ExtractedEvidence] = {}
        self.meta_by_url: dict[str, ExtractedUrlMeta] = {}
        self._finalize_calls = 0
        self._final_items: list[FinalizeItem] | None = None
        self._final_errors: list[str] = []

    @property
    def system_prompt(self) -> str:
        return render_prompt("orchestrator.system_prompt")

    def _runtime_prompt(self, query: str) -> str:
        return render_prompt(
            "orchestrator.runtime_prompt",
            query=query,
            max_search_calls=self.budgets.max_search_calls,
            max_extract_calls=self.budgets.max_extract_calls,
            max_repeat_search_query=self.budgets.max_repeat_search_query,
            max_repeat_extract_url=self.budgets.max_repeat_extract_url,
        )

    async def handle_tool_call(self, tool_name: str, tool_input: BaseModel) -> ToolOutcome:
        if tool_name == "search":
            return await self._search(tool_input)
        if tool_name == "extract":
            return await self._extract(tool_input)
        if tool_name == "finalize":
            return self._finalize(tool_input)
        raise NotImplementedError(f"Tool {tool_name} not handled")

    # --- search ---

    def _check_search_budget(self, query: str) -> None:
        self.search_calls += 1
        key = normalize_key(query)
        self._search_counts[key] = self._search_counts.get(key, 0) + 1
        if self.search_calls > self.budgets.max_search_calls:
            raise ToolBudgetExceeded("search", self.budgets.max_search_calls)
        if self._search_counts[key] > self.budgets.max_repeat_search_query:
            raise RepeatedCallBlocked("search", self.budgets.max_repeat_search_query, query)

    def _record_search_failure(self, message: str) -> ToolOutcome:
        self.search_failures += 1
        self.search_errors.append(message)
        return ToolOutcome(json.dumps({"results": [], "error": message}, ensure_ascii=False), is_error=True)

    async def _search(self, payload: SearchInput) -> ToolOutcome:
        try:
            self._check_search_budget(payload.query)
        except (ToolBudgetExceeded, RepeatedCallBlocked) as e:
            logger.warning(f"orchestrator.search.blocked query={payload.query!r} reason={e}")
            return self._record_search_failure(str(e))

        logger.info(f"orchestrator.search query={payload.query!r} max_results={self.budgets.search_max_results}")
        try:
            response = await self.cancel_token.guard(
                self.search_fn(
                    payload.query,
                    max_results=self.budgets.search_max_results,
                    search_depth=settings.search_depth,
                )
            )
        except SearchCancelled:
            raise
        except Exception as e:
            logger.error(f"orchestrator.search.error query={payload.query!r} error={clamp_text(str(e), 260)}")
            return self._record_search_failure(str(e))

        hits = []
        for hit in response.results:
            url = hit.url.strip()
            if not url:
                continue
            if hit.title:
                self._search_lookup.setdefault(url, hit.title)
            hits.append(hit.to_dict())
        self.emit(
            streaming.search_result(
                payload.query,
                hits,
                provider=response.provider,
                fallback_from=response.fallback_from,
            )
        )
        logger.info(
            f"orchestrator.search.results count={len(hits)} top={[h['url'] for h in hits[:3]]}"
        )
        return ToolOutcome(json.dumps({"results": hits}, ensure_ascii=False))

    # --- extract ---

    def _check_extract_budget(self, url: str) -> None:
        self.extract_calls += 1
        key = normalize_key(url)
        self._extract_counts[key] = self._extract_counts.get(key, 0) + 1
        if self.extract_calls > self.budgets.max_extract_calls:
            raise ToolBudgetExceeded("extract", self.budgets.max_extract_calls)
        if self._extract_counts[key] > self.budgets.max_repeat_extract_url:
            raise RepeatedCallBlocked("extract", self.budgets.max_repeat_extract_url, url)

    def _record_meta(self, url: str, meta: ExtractedUrlMeta) -> None:
        existing = self.meta_by_url.get(url)
        if existing is None:
            self.meta_by_url[url] = meta
        else:
            existing.absorb(meta)

    def _failed_extract(
        self,
        url: str,
        message: str,
        *,
        page_id: str | None = None,
        line_count: int = 0,
        raw_model_output: str = "",
        blocked: bool = False,
    ) -> ToolOutcome:
        self.extract_failures += 1
        self.extract_errors.append(message)
        title = self._search_lookup.get(url)
        # A guard rejects the call, not the URL: evidence from earlier calls stays intact.
        if not blocked:
            self._record_meta(
                url,
                ExtractedUrlMeta(
                    title=title,
                    page_id=page_id,
                    line_count=line_count,
                    viewpoint=EXTRACT_FAILURE_VIEWPOINT,
                    broken=True,
                    error=message,
                ),
            )
        self.emit(streaming.extract_result(url, broken=True, error=message))
        output = {
            "url": url,
            "title": title,
            "page_id": page_id,
            "line_count": line_count,
            "broken": True,
            "irrelevant": False,
            "viewpoint": EXTRACT_FAILURE_VIEWPOINT,
            "selections": [],
            "error": message,
            "raw_model_output": raw_model_output,
        }
        return ToolOutcome(json.dumps(output, ensure_ascii=False), is_error=True)

    async def _load_markdown(self, url: str) -> tuple[str, str | None, str | None]:
        """Markdown, page id and title for ``url``, from the page cache or a fresh fetch."""
        if self.store is not None and settings.page_cache_enabled:
            cached = await self.store.find_cached_page_by_url(url)
            if cached is not None:
                logger.info(f"orchestrator.extract.page_cache_hit url={url} page_id={cached.page_id}")
                return cached.markdown, cached.page_id, cached.title

        markdown = await self.cancel_token.guard(self.fetch_fn(url))
        if not markdown.strip():
            raise ContentUnavailable("Jina content unavailable.")
        return markdown, None, None

    async def _extract(self, payload: ExtractInput) -> ToolOutcome:
        url = payload.url.strip()
        try:
            self._check_extract_budget(url)
        except (ToolBudgetExceeded, RepeatedCallBlocked) as e:
            logger.warning(f"orchestrator.extract.blocked url={url} reason={e}")
            return self._failed_extract(url, str(e), blocked=True)

        stage = "fetch-markdown"
        page_id: str | None = None
        line_count = 0
        raw_model_output = ""
        title = self._search_lookup.get(url)
        logger.info(f"orchestrator.extract url={clamp_text(url, 220)} query={clamp_text(payload.query, 160)!r}")
        try:
            markdown, page_id, cached_title = await self._load_markdown(url)
            title = title or cached_title
            lines = split_lines(markdown)
            line_count = len(lines)

            if page_id is None and self.store is not None:
                stage = "save-page"
                persisted = await self.store.save_page(
                    search_id=self.search_id,
                    query=payload.query,
                    url=url,
                    title=title,
                    markdown=markdown,
                )
                page_id = persisted.page_id
                line_count = persisted.line_count

            stage = "extract-agent"
            outcome = await self._cached_extraction(page_id, payload.query)
            if outcome is None:
                extractor = self.extractor_factory(
                    self.extract_model,
                    client=self.client,
                    cancel_token=self.cancel_token,
                    events=self.events,
                )
                outcome = await extractor.extract(payload.query, lines)
                raw_model_output = outcome.raw_model_output

                if self.store is not None and page_id:
                    stage = "save-extraction"
                    await self.store.save_extraction(
                        ExtractionRecord(
                            page_id=page_id,
                            search_id=self.search_id,
                            query=payload.query,
                            url=url,
                            viewpoint=outcome.viewpoint,
                            broken=outcome.broken,
                            irrelevant=outcome.irrelevant,
                            line_count=line_count,
                            selections=outcome.selections,
                            raw_model_output=outcome.raw_model_output,
                            extracted_at=datetime.now(timezone.utc).isoformat(),
                            error=outcome.error,
                        )
                    )
            else:
                raw_model_output = outcome.raw_model_output
        except SearchCancelled:
            raise
        except Exception as e:
            message = f"{stage}: {e}"
            logger.error(f"orchestrator.extract.error url={clamp_text(url, 220)} error={clamp_text(message, 300)}")
            return self._failed_extract(
                url,
                message,
                page_id=page_id,
                line_count=line_count,
                raw_model_output=raw_model_output,
            )

        return self._accept_extraction(url, title, page_id, lines, outcome)

    async def _cached_extraction(self, page_id: str | None, query: str) -> ExtractOutcome | None:
        if self.store is None or not page_id:
            return None
        cached = await self.store.find_cached_extraction_by_page_and_query(page_id, query)
        if cached is None or cached.error:
            return None
        logger.info(f"orchestrator.extract.extraction_cache_hit page_id={page_id}")
        return ExtractOutcome(
            viewpoint=cached.viewpoint,
            broken=cached.broken,
            irrelevant=cached.irrelevant,
            selections=list(cached.selections),
            raw_model_output=cached.raw_model_output,
        )

    def _accept_extraction(
        self,
        url: str,
        title: str | None,
        page_id: str | None,
        lines: list[str],
        outcome: ExtractOutcome,
    ) -> ToolOutcome:
        viewpoint = normalize_viewpoint(outcome.viewpoint)
        self._record_meta(
            url,
            ExtractedUrlMeta(
                title=title,
                page_id=page_id,
                line_count=len(lines),
                viewpoint=viewpoint,
                broken=outcome.broken,
                irrelevant=outcome.irrelevant,
                error=outcome.error,
            ),
        )
        if outcome.error:
            # Reported by the agent itself; surfaced without counting as a failed call.
            self.extract_errors.append(outcome.error)
        if outcome.selections:
            self.evidence_by_url.setdefault(url, ExtractedEvidence()).add(outcome.selections, lines)

        self.emit(
            streaming.extract_result(
                url,
                page_id=page_id,
                broken=outcome.broken,
                irrelevant=outcome.irrelevant,
                selections=len(outcome.selections),
                error=outcome.error,
            )
        )
        logger.info(
            f"orchestrator.extract.done url={clamp_text(url, 220)} broken={outcome.broken} "
            f"irrelevant={outcome.irrelevant} selections={len(outcome.selections)}"
        )
        output = {
            "url": url,
            "title": title,
            "page_id": page_id,
            "line_count": len(lines),
            "broken": outcome.broken,
            "irrelevant": outcome.irrelevant,
            "viewpoint": viewpoint,
            "selections": [
                {
                    "start": s.start,
                    "end": s.end,
                    "text": numbered_content_for_range(lines, s.bounds),
                }
                for s in outcome.selections
            ],
            "error": outcome.error,
            "raw_model_output": clamp_text(outcome.raw_model_output, 2000),
        }
        return ToolOutcome(json.dumps(output, ensure_ascii=False))

    # --- finalize ---

    def _finalize(self, payload: FinalizeInput) -> ToolOutcome:
        self._finalize_calls += 1
        self.state = RunState.FINALIZING
        merged: dict[str, FinalizeItem] = {}
        for item in (self._final_items or []) + list(payload.results):
            merged[item.model_dump_json()] = item
        self._final_items = list(merged.values())
        self._final_errors = _unique_trimmed(self._final_errors + list(payload.errors))

        self.emit(
            streaming.finalize_recorded(
                self._finalize_calls, len(self._final_items), len(self._final_errors)
            )
        )
        logger.info(
            f"orchestrator.finalize call={self._finalize_calls} results={len(self._final_items)} "
            f"errors={len(self._final_errors)}"
        )
        return ToolOutcome(
            json.dumps(
                {
                    "recorded": True,
                    "call_count": self._finalize_calls,
                    "result_count": len(self._final_items),
                    "error_count": len(self._final_errors),
                }
            )
        )

    def _fallback_payload(self) -> tuple[list[SearchResult], list[str]]:
        """Rebuild a payload from what extraction actually returned."""
        results: list[SearchResult] = []
        for url in dict.fromkeys([*self.evidence_by_url, *self.meta_by_url]):
            evidence = self.evidence_by_url.get(url)
            meta = self.meta_by_url.get(url) or ExtractedUrlMeta()
            selections = list(evidence.selections) if evidence else []
            error = meta.error.strip() if meta.error and meta.error.strip() else None
            if not selections and not (meta.broken or meta.irrelevant or error):
                continue
            results.append(
                SearchResult(
                    url=url,
                    viewpoint=normalize_viewpoint(meta.viewpoint),
                    selections=selections,
                    broken=meta.broken,
                    irrelevant=meta.irrelevant,
                    error=error,
                )
            )
        if results:
            message = "search agent did not call finalize before finishing; used extract-history fallback."
        else:
            message = "search agent did not call finalize before finishing and no extract history was available."
        return results, [message]

    def _enrich(self, item: SearchResult) -> SearchResult:
        meta = self.meta_by_url.get(item.url) or ExtractedUrlMeta()
        enriched = replace(
            item,
            viewpoint=normalize_viewpoint(item.viewpoint, meta.viewpoint or SEARCH_VIEWPOINT_FALLBACK),
            title=item.title or meta.title or self._search_lookup.get(item.url),
            page_id=item.page_id or meta.page_id,
            line_count=item.line_count if item.line_count is not None else meta.line_count,
        )
        if not enriched.selections:
            enriched = replace(
                enriched,
                broken=enriched.broken or meta.broken,
                irrelevant=enriched.irrelevant or meta.irrelevant,
                error=enriched.error or meta.error,
            )
        return enriched

    @staticmethod
    def _error_rows(errors: list[str]) -> list[SearchResult]:
        return [
            SearchResult(
                url=f"{ERROR_ROW_URL_PREFIX}{index}",
                title=ERROR_ROW_TITLE,
                viewpoint=normalize_viewpoint(f"Subagent tool failure #{index} during evidence collection."),
                broken=True,
                error=error,
            )
            for index, error in enumerate(errors, 1)
        ]

    async def run(self, query: str) -> OrchestratorOutcome:
        self.emit(streaming.run_started(self.name, query, search_id=self.search_id))
        log_service.log_research_step(self.search_id, "orchestrator", "started", {"query": query})

        run = await self.run_tools(self._runtime_prompt(query), max_turns=self.budgets.max_steps)

        if self._final_items is not None:
            items = normalize_finalize_items(self._final_items)
            payload_errors = list(self._final_errors)
            self.state = RunState.DONE
        else:
            logger.warning(
                f"orchestrator.missing_finalize query={query!r} turns={run.turns} "
                f"search_calls={self.search_calls} extract_calls={self.extract_calls}"
            )
            items, payload_errors = self._fallback_payload()
            self.state = RunState.FALLBACK

        extracted_urls = set(self.evidence_by_url) | set(self.meta_by_url)
        report = validate_results(items, self.evidence_by_url, extracted_urls)
        validated = [self._enrich(item) for item in report.results]

        errors = [
            *payload_errors,
            *report.messages,
            *self.search_errors,
            *self.extract_errors,
        ]
        errors = [e.strip() for e in errors if e.strip()]
        results = dedupe_results(validated + self._error_rows(errors))

        has_usable_evidence = any(r.has_usable_evidence for r in results)
        all_search_failed = self.search_calls > 0 and self.search_failures == self.search_calls
        all_extract_failed = self.extract_calls > 0 and self.extract_failures == self.extract_calls
        fatal = (all_search_failed or all_extract_failed) and not has_usable_evidence
        if fatal:
            logger.warning(
                f"orchestrator.fatal_tool_failure query={query!r} all_search_failed={all_search_failed} "
                f"all_extract_failed={all_extract_failed} errors={[clamp_text(e, 180) for e in _unique_trimmed(errors)]}"
            )
            self.emit(streaming.error("All tool calls failed and no usable evidence was collected.", fatal=True))

        self.emit(
            streaming.run_completed(
                self.name,
                state=self.state.value,
                results=len(results),
                errors=len(errors),
                fatal=fatal,
            )
        )
        log_service.log_research_step(
            self.search_id,
            "orchestrator",
            "fatal" if fatal else self.state.value,
            {
                "results": len(results),
                "errors": len(errors),
                "search_calls": self.search_calls,
                "extract_calls": self.extract_calls,
            },
        )
        return OrchestratorOutcome(
            results=results,
            errors=errors,
            fatal=fatal,
            state=self.state,
            search_calls=self.search_calls,
            extract_calls=self.extract_calls,
            events=self.events,
        )
