from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError
from deepsearch.models.evidence import SearchHit
from deepsearch.tools import brave_search, tavily_search


@dataclass
class SearchResponse:
    results: list[SearchHit]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


async def search(
    query: str,
    *,
    max_results: int = 20,
    search_depth: str | None = None,
) -> SearchResponse:
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily

    if provider == "tavily":
        results = await tavily_search.search(
            query,
            search_depth=search_depth,
            max_results=max_results,
        )
        return SearchResponse(results=results, provider="tavily")

    if provider == "brave":
        try:
            results = await brave_search.search(query, max_results=max_results)
        except SearchProviderError as e:
            if not use_fallback:
                raise
            logger.warning(f"search.fallback from=brave reason={e}")
            fallback_results = await tavily_search.search(
                query,
                search_depth=search_depth,
                max_results=max_results,
            )
            return SearchResponse(
                results=fallback_results,
                provider="tavily",
                fallback_from="brave",
                fallback_reason=str(e),
            )
        if results or not use_fallback:
            return SearchResponse(results=results, provider="brave")

        fallback_results = await tavily_search.search(
            query,
            search_depth=search_depth,
            max_results=max_results,
        )
        return SearchResponse(
            results=fallback_results,
            provider="tavily",
            fallback_from="brave",
            fallback_reason="brave returned zero results",
        )

    raise SearchProviderError(
        f"Unsupported SEARCH_PROVIDER: {settings.search_provider}", provider=provider, kind="config"
    )
