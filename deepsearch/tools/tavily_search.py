from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError
from tavily import AsyncTavilyClient
from tavily.errors import (
    BadRequestError,
    InvalidAPIKeyError,
    MissingAPIKeyError,
    UsageLimitExceededError,
)

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError
from deepsearch.models.evidence import SearchHit
from deepsearch.models.schemas import TavilyResponse
from deepsearch.tools.web_utils import clamp_text

# Status codes the SDK folds into its own exception types.
_SDK_ERROR_STATUS: dict[type[Exception], int] = {
    BadRequestError: 400,
    InvalidAPIKeyError: 401,
    UsageLimitExceededError: 429,
}


async def search(
    query: str,
    *,
    search_depth: str | None = None,
    max_results: int = 20,
    api_key: str | None = None,
) -> list[SearchHit]:
    """Execute a Tavily web search and return structured results.

    Failures are raised as ``SearchProviderError`` with ``kind`` set to
    ``config``, ``http``, ``schema`` or ``request``. An empty result set is
    not an error; it is logged and returned as ``[]``.
    """
    resolved_key = api_key or settings.tavily_api_key
    if not resolved_key:
        raise SearchProviderError("TAVILY_API_KEY is not set", provider="tavily", kind="config")

    client = AsyncTavilyClient(api_key=resolved_key)
    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth or settings.search_depth,
        "max_results": max_results,
        "include_raw_content": False,
    }

    try:
        raw = await client.search(**kwargs)
    except MissingAPIKeyError as exc:
        raise SearchProviderError(str(exc), provider="tavily", kind="config") from exc
    except (BadRequestError, InvalidAPIKeyError, UsageLimitExceededError) as exc:
        status = _SDK_ERROR_STATUS[type(exc)]
        logger.warning(f"tavily.search.error query={clamp_text(query, 160)!r} status={status} error={exc}")
        raise SearchProviderError(
            f"Tavily search failed: {status}", provider="tavily", kind="http", status_code=status
        ) from exc
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        logger.warning(
            f"tavily.search.error query={clamp_text(query, 160)!r} status={status} "
            f"body={clamp_text(exc.response.text, 400)!r}"
        )
        raise SearchProviderError(
            f"Tavily search failed: {status}", provider="tavily", kind="http", status_code=status
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning(f"tavily.search.request query={clamp_text(query, 160)!r} error={exc}")
        raise SearchProviderError(
            f"Tavily search request failed: {exc}", provider="tavily", kind="request"
        ) from exc

    try:
        parsed = TavilyResponse.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        issue = ".".join(str(p) for p in first.get("loc", ())) or "invalid"
        logger.warning(f"tavily.search.schema query={clamp_text(query, 160)!r} issue={issue}")
        raise SearchProviderError(
            "Tavily search response schema invalid.", provider="tavily", kind="schema"
        ) from exc

    if not parsed.results:
        logger.warning(f"tavily.search.empty query={clamp_text(query, 160)!r}")

    return [
        SearchHit(
            title=r.title or r.description or "",
            url=(r.url or "").strip(),
            content=r.content or r.snippet or "",
            score=r.score,
        )
        for r in parsed.results
        if (r.url or "").strip()
    ]
