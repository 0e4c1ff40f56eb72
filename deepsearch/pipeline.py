"""Entry point that runs one deep search end to end.

``run`` collects and validates evidence and returns numbered references plus
the prompt for the answer generator. ``complete`` links the citations of a
generated answer and persists the finished session.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from deepsearch.agents.answer_agent import AnswerAgent
from deepsearch.agents.orchestrator import BudgetConfig, FetchFn, SearchFn, SearchOrchestrator
from deepsearch.errors import EmptyQueryError
from deepsearch.evidence.citations import linkify_citations
from deepsearch.evidence.references import build_references
from deepsearch.evidence.sources import build_answer_prompt, build_sources
from deepsearch.models.evidence import Reference, ResolvedReference, SearchResult, SearchSession, Source
from deepsearch.models.events import EventLog
from deepsearch.services import logger as log_service
from deepsearch.services.cancellation import CancelToken
from deepsearch.services.store import EvidenceStore

EMPTY_CONCLUSION = "No conclusion generated."


@dataclass(slots=True)
class DeepSearchResult:
    query: str
    search_id: str
    project_id: str
    created_at: str
    sources: list[Source]
    references: list[Reference]
    results: list[SearchResult]
    errors: list[str]
    prompt: str
    fatal: bool = False
    events: EventLog = field(default_factory=EventLog)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "search_id": self.search_id,
            "project_id": self.project_id,
            "sources": [s.to_dict() for s in self.sources],
            "references": [r.to_dict() for r in self.references],
            "errors": list(self.errors),
            "fatal": self.fatal,
        }


class DeepSearchPipeline:
    def __init__(
        self,
        project_path: str | Path = ".",
        *,
        store: EvidenceStore | None = None,
        client: Any = None,
        model: str | None = None,
        extract_model: str | None = None,
        budgets: BudgetConfig | None = None,
        cancel_token: CancelToken | None = None,
        search_fn: SearchFn | None = None,
        fetch_fn: FetchFn | None = None,
        extractor_factory: Callable[..., Any] | None = None,
    ):
        self.store = store or EvidenceStore(project_path)
        self.client = client
        self.model = model
        self.extract_model = extract_model
        self.budgets = budgets
        self.cancel_token = cancel_token or CancelToken()
        self.search_fn = search_fn
        self.fetch_fn = fetch_fn
        self.extractor_factory = extractor_factory

    async def run(self, query: str) -> DeepSearchResult:
        query = query.strip()
        if not query:
            raise EmptyQueryError("query must not be empty.")

        session = await self.store.create_search_session(query)
        logger.info(f"deepsearch.start search_id={session.search_id} query={query!r}")

        orchestrator = SearchOrchestrator(
            session.search_id,
            store=self.store,
            budgets=self.budgets,
            model=self.model,
            extract_model=self.extract_model,
            client=self.client,
            search_fn=self.search_fn,
            fetch_fn=self.fetch_fn,
            extractor_factory=self.extractor_factory,
            cancel_token=self.cancel_token,
        )
        outcome = await orchestrator.run(query)

        references = build_references(
            outcome.results,
            project_id=self.store.project_id,
            search_id=session.search_id,
        )
        sources = build_sources(outcome.results, references)
        prompt = build_answer_prompt(query, references, outcome.errors)

        log_service.log_event(
            "deepsearch_completed",
            f"Deep search finished with {len(references)} references",
            search_id=session.search_id,
            sources=len(sources),
            errors=len(outcome.errors),
            fatal=outcome.fatal,
        )
        return DeepSearchResult(
            query=query,
            search_id=session.search_id,
            project_id=self.store.project_id,
            created_at=session.created_at,
            sources=sources,
            references=references,
            results=outcome.results,
            errors=outcome.errors,
            prompt=prompt,
            fatal=outcome.fatal,
            events=outcome.events,
        )

    async def generate_answer(self, result: DeepSearchResult) -> str:
        agent = AnswerAgent(self.model, client=self.client, cancel_token=self.cancel_token, events=result.events)
        return await agent.answer(result.prompt)

    async def complete(self, result: DeepSearchResult, conclusion: str) -> str:
        """Link citations in ``conclusion`` and persist the finished session. Returns the linked text."""
        raw = conclusion.strip() or EMPTY_CONCLUSION
        linked = linkify_citations(raw, result.references)
        session = SearchSession(
            search_id=result.search_id,
            query=result.query,
            created_at=result.created_at,
        )
        await self.store.finalize_search(
            session,
            prompt=result.prompt,
            conclusion_raw=raw,
            conclusion_linked=linked,
            references=result.references,
        )
        return linked

    async def resolve_reference(self, uri: str) -> ResolvedReference | None:
        return await self.store.resolve_reference(uri)
