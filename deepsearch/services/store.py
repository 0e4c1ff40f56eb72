"""Project-scoped evidence store on the local filesystem.

Layout under ``<project>/<store_dir_name>/``::

    pages/<page_id>/page.md
    pages/<page_id>/meta.json
    pages/<page_id>/extraction.json
    searches/<search_id>.json

Every read goes through a parse function that returns ``None`` on any shape
mismatch, so a missing or corrupt file is a cache miss and never an error.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from deepsearch.config import settings
from deepsearch.errors import PersistenceReadFailure
from deepsearch.evidence.lines import split_lines
from deepsearch.evidence.references import SAFE_ID_RE, parse_reference_uri
from deepsearch.models.evidence import (
    ExtractionRecord,
    LineSelection,
    PageRecord,
    PersistedPage,
    Reference,
    ResolvedReference,
    SearchSession,
)
from deepsearch.models.stored import (
    STORE_VERSION,
    StoredExtraction,
    StoredPageMeta,
    StoredReference,
    StoredSearch,
)
from deepsearch.services import logger as log_service
from deepsearch.tools.web_utils import canonical_url, normalize_key

MARKDOWN_FILENAME = "page.md"
PAGE_META_FILENAME = "meta.json"
EXTRACTION_FILENAME = "extraction.json"
VIEWPOINT_UNAVAILABLE = "Viewpoint unavailable for this reference."


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _timestamp(value: str) -> float:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def build_project_id(project_path: str | Path) -> str:
    digest = hashlib.sha256(str(project_path).encode("utf-8")).hexdigest()[:16]
    return f"p_{digest}"


def parse_page_meta(value: Any) -> StoredPageMeta | None:
    try:
        return StoredPageMeta.model_validate(value)
    except ValidationError:
        return None


def parse_extraction(value: Any) -> StoredExtraction | None:
    try:
        return StoredExtraction.model_validate(value)
    except ValidationError:
        return None


def parse_search_record(value: Any) -> StoredSearch | None:
    try:
        return StoredSearch.model_validate(value)
    except ValidationError:
        return None


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PersistenceReadFailure(str(exc), path=str(path)) from exc


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def _stored_reference(reference: Reference) -> dict[str, Any]:
    return StoredReference(
        ref_id=reference.ref_id,
        uri=reference.uri,
        page_id=reference.page_id,
        url=reference.url,
        title=reference.title,
        viewpoint=reference.viewpoint,
        start_line=reference.start_line,
        end_line=reference.end_line,
        text=reference.text,
    ).model_dump()


class EvidenceStore:
    """Persistence for fetched pages, extraction results and finished search sessions."""

    def __init__(self, project_path: str | Path, *, store_dir_name: str | None = None):
        self.project_path = Path(project_path)
        self.project_id = build_project_id(self.project_path)
        self.root_dir = self.project_path / (store_dir_name or settings.store_dir_name)
        self.pages_dir = self.root_dir / "pages"
        self.searches_dir = self.root_dir / "searches"

    # --- sync helpers, run off the event loop ---

    def _load(self, path: Path) -> Any | None:
        if not path.exists():
            return None
        try:
            return _read_json(path)
        except PersistenceReadFailure as exc:
            log_service.log_store_operation("read", exc.path, "miss", error=str(exc))
            return None

    def _search_path(self, search_id: str) -> Path:
        return self.searches_dir / f"{search_id}.json"

    def _create_search_session_sync(self, query: str) -> SearchSession:
        session = SearchSession(search_id=f"s_{uuid4()}", query=query, created_at=_utc_now())
        payload = StoredSearch(
            version=STORE_VERSION,
            project_id=self.project_id,
            search_id=session.search_id,
            query=query,
            created_at=session.created_at,
        ).model_dump()
        _write_json(self._search_path(session.search_id), payload)
        log_service.log_store_operation("create_search", session.search_id, "success")
        return session

    def _find_cached_page_by_url_sync(self, url: str) -> PageRecord | None:
        if not url.strip() or not self.pages_dir.is_dir():
            return None
        wanted = canonical_url(url)
        latest: tuple[float, Path, StoredPageMeta] | None = None
        for page_dir in sorted(p for p in self.pages_dir.iterdir() if p.is_dir()):
            meta = parse_page_meta(self._load(page_dir / PAGE_META_FILENAME))
            if meta is None or meta.project_id != self.project_id:
                continue
            if canonical_url(meta.url) != wanted:
                continue
            fetched_at = _timestamp(meta.fetched_at)
            if latest is None or fetched_at >= latest[0]:
                latest = (fetched_at, page_dir, meta)
        if latest is None:
            return None

        _, page_dir, meta = latest
        try:
            markdown = (page_dir / (meta.markdown_file or MARKDOWN_FILENAME)).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log_service.log_store_operation("read", str(page_dir), "miss", error=str(exc))
            return None
        if not markdown.strip():
            return None
        return PageRecord(
            page_id=meta.page_id,
            search_id=meta.search_id,
            query=meta.query,
            url=meta.url,
            title=meta.title,
            fetched_at=meta.fetched_at,
            line_count=meta.line_count if meta.line_count > 0 else len(split_lines(markdown)),
            markdown=markdown,
        )

    def _find_cached_extraction_sync(self, page_id: str, query: str) -> ExtractionRecord | None:
        page_id = page_id.strip()
        if not page_id or not SAFE_ID_RE.match(page_id):
            return None
        wanted = normalize_key(query)
        if not wanted:
            return None
        stored = parse_extraction(self._load(self.pages_dir / page_id / EXTRACTION_FILENAME))
        if stored is None or stored.project_id != self.project_id:
            return None
        if normalize_key(stored.query) != wanted:
            return None
        return ExtractionRecord(
            page_id=stored.page_id,
            search_id=stored.search_id,
            query=stored.query,
            url=stored.url,
            viewpoint=stored.viewpoint,
            broken=stored.broken,
            irrelevant=stored.irrelevant,
            line_count=stored.line_count,
            selections=[LineSelection(s.start, s.end, s.text) for s in stored.selections],
            raw_model_output=stored.raw_model_output,
            error=stored.error,
            extracted_at=stored.extracted_at,
        )

    def _save_page_sync(
        self,
        *,
        search_id: str,
        query: str,
        url: str,
        title: str | None,
        markdown: str,
        fetched_at: str | None,
    ) -> PersistedPage:
        page_id = f"p_{uuid4()}"
        page_dir = self.pages_dir / page_id
        page_dir.mkdir(parents=True, exist_ok=True)
        line_count = len(split_lines(markdown))
        (page_dir / MARKDOWN_FILENAME).write_text(markdown, encoding="utf-8")
        meta = StoredPageMeta(
            version=STORE_VERSION,
            project_id=self.project_id,
            search_id=search_id,
            page_id=page_id,
            query=query,
            url=url,
            title=title,
            fetched_at=fetched_at or _utc_now(),
            line_count=line_count,
            markdown_file=MARKDOWN_FILENAME,
        )
        _write_json(page_dir / PAGE_META_FILENAME, meta.model_dump())
        log_service.log_store_operation("save_page", page_id, "success", details=url)
        return PersistedPage(page_id=page_id, line_count=line_count)

    def _save_extraction_sync(self, record: ExtractionRecord) -> None:
        payload = StoredExtraction(
            version=STORE_VERSION,
            project_id=self.project_id,
            search_id=record.search_id,
            page_id=record.page_id,
            query=record.query,
            url=record.url,
            viewpoint=record.viewpoint,
            broken=record.broken,
            irrelevant=record.irrelevant,
            line_count=record.line_count,
            selections=[s.to_dict() for s in record.selections],
            raw_model_output=record.raw_model_output,
            error=record.error,
            extracted_at=record.extracted_at,
        ).model_dump()
        _write_json(self.pages_dir / record.page_id / EXTRACTION_FILENAME, payload)
        log_service.log_store_operation("save_extraction", record.page_id, "success", details=record.url)

    def _finalize_search_sync(
        self,
        session: SearchSession,
        *,
        prompt: str,
        conclusion_raw: str,
        conclusion_linked: str,
        references: list[Reference],
    ) -> SearchSession:
        completed = SearchSession(
            search_id=session.search_id,
            query=session.query,
            created_at=session.created_at,
            completed_at=_utc_now(),
            references=list(references),
        )
        payload = {
            "version": STORE_VERSION,
            "project_id": self.project_id,
            "search_id": completed.search_id,
            "query": completed.query,
            "created_at": completed.created_at,
            "completed_at": completed.completed_at,
            "llm_prompt": prompt,
            "llm_conclusion_raw": conclusion_raw,
            "llm_conclusion_linked": conclusion_linked,
            "references": [_stored_reference(r) for r in references],
        }
        _write_json(self._search_path(completed.search_id), payload)
        log_service.log_store_operation(
            "finalize_search", completed.search_id, "success", details=f"references={len(references)}"
        )
        return completed

    def _resolve_reference_sync(self, uri: str) -> ResolvedReference | None:
        parsed = parse_reference_uri(uri)
        if parsed is None or parsed.project_id != self.project_id:
            return None
        record = parse_search_record(self._load(self._search_path(parsed.search_id)))
        if record is None or record.project_id != self.project_id:
            return None
        for reference in record.references:
            if reference.ref_id != parsed.ref_id:
                continue
            return ResolvedReference(
                project_id=self.project_id,
                search_id=parsed.search_id,
                ref_id=reference.ref_id,
                uri=reference.uri,
                query=record.query,
                page_id=reference.page_id,
                url=reference.url,
                title=reference.title,
                viewpoint=reference.viewpoint or VIEWPOINT_UNAVAILABLE,
                start_line=reference.start_line,
                end_line=reference.end_line,
                text=reference.text,
            )
        return None

    # --- async surface ---

    async def create_search_session(self, query: str) -> SearchSession:
        return await asyncio.to_thread(self._create_search_session_sync, query)

    async def find_cached_page_by_url(self, url: str) -> PageRecord | None:
        """Latest stored fetch of ``url`` for this project, or ``None``."""
        return await asyncio.to_thread(self._find_cached_page_by_url_sync, url)

    async def find_cached_extraction_by_page_and_query(self, page_id: str, query: str) -> ExtractionRecord | None:
        return await asyncio.to_thread(self._find_cached_extraction_sync, page_id, query)

    async def save_page(
        self,
        *,
        search_id: str,
        query: str,
        url: str,
        markdown: str,
        title: str | None = None,
        fetched_at: str | None = None,
    ) -> PersistedPage:
        return await asyncio.to_thread(
            lambda: self._save_page_sync(
                search_id=search_id,
                query=query,
                url=url,
                title=title,
                markdown=markdown,
                fetched_at=fetched_at,
            )
        )

    async def save_extraction(self, record: ExtractionRecord) -> None:
        await asyncio.to_thread(self._save_extraction_sync, record)

    async def finalize_search(
        self,
        session: SearchSession,
        *,
        prompt: str,
        conclusion_raw: str,
        conclusion_linked: str,
        references: list[Reference],
    ) -> SearchSession:
        return await asyncio.to_thread(
            lambda: self._finalize_search_sync(
                session,
                prompt=prompt,
                conclusion_raw=conclusion_raw,
                conclusion_linked=conclusion_linked,
                references=references,
            )
        )

    async def resolve_reference(self, uri: str) -> ResolvedReference | None:
        return await asyncio.to_thread(self._resolve_reference_sync, uri)
