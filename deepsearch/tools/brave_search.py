from __future__ import annotations

from typing import Any

import httpx

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError
from deepsearch.models.evidence import SearchHit

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_COUNT = 20


async def search(
    query: str,
    *,
    max_results: int = 20,
    http_client: httpx.AsyncClient | None = None,
) -> list[SearchHit]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise SearchProviderError("BRAVE_API_KEY is not configured", provider="brave", kind="config")

    params: dict[str, Any] = {
        "q": query,
        "count": min(max(max_results, 1), BRAVE_MAX_COUNT),
    }
    headers = {
        "Accept": "application/json",
        "X-Subscription-Token": settings.brave_api_key,
    }

    try:
        if http_client is not None:
            response = await http_client.get(BRAVE_SEARCH_URL, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(BRAVE_SEARCH_URL, params=params, headers=headers)
    except httpx.HTTPError as exc:
        raise SearchProviderError(
            f"Brave search request failed: {exc}", provider="brave", kind="request"
        ) from exc

    if response.status_code >= 400:
        raise SearchProviderError(
            f"Brave search failed: {response.status_code}",
            provider="brave",
            kind="http",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise SearchProviderError(
            "Brave search response parse failed.", provider="brave", kind="schema"
        ) from exc
    web = payload.get("web") if isinstance(payload, dict) else None
    raw_results = web.get("results", []) if isinstance(web, dict) else None
    if not isinstance(raw_results, list):
        raise SearchProviderError("Brave search response schema invalid.", provider="brave", kind="schema")

    total = max(len(raw_results), 1)
    mapped: list[SearchHit] = []
    for idx, item in enumerate(raw_results):
        if not isinstance(item, dict) or not item.get("url"):
            continue
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        content = description.strip() or " ".join(snippets).strip()
        # Brave does not expose a direct relevance score in this response shape.
        score = max(0.0, 1.0 - (idx / total))
        mapped.append(
            SearchHit(
                title=item.get("title", "") or "",
                url=item["url"],
                content=content,
                score=score,
            )
        )
    return mapped[:max_results]
