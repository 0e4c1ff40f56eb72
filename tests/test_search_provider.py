from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from deepsearch.errors import SearchProviderError
from deepsearch.models.evidence import SearchHit
from deepsearch.tools import search_provider, tavily_search


def _fake_tavily(search_mock: AsyncMock):
    class FakeTavilyClient:
        def __init__(self, api_key: str):
            self.api_key = api_key
            self.search = search_mock

    return FakeTavilyClient


@pytest.mark.asyncio
async def test_tavily_search_maps_results_and_skips_missing_urls():
    search_mock = AsyncMock(
        return_value={
            "results": [
                {"title": "Paris", "url": " https://a ", "content": "capital", "score": 0.9},
                {"title": None, "description": "Described", "url": "https://b", "snippet": "s", "score": "high"},
                {"title": "No url", "content": "x"},
            ]
        }
    )
    with patch("deepsearch.tools.tavily_search.AsyncTavilyClient", _fake_tavily(search_mock)):
        hits = await tavily_search.search("capital of france", api_key="key", search_depth="basic")

    assert hits == [
        SearchHit(title="Paris", url="https://a", content="capital", score=0.9),
        SearchHit(title="Described", url="https://b", content="s", score=0.0),
    ]
    assert search_mock.await_args.kwargs["search_depth"] == "basic"
    assert search_mock.await_args.kwargs["max_results"] == 20


@pytest.mark.asyncio
async def test_tavily_search_reports_schema_errors():
    search_mock = AsyncMock(return_value={"results": "not a list"})
    with patch("deepsearch.tools.tavily_search.AsyncTavilyClient", _fake_tavily(search_mock)):
        with pytest.raises(SearchProviderError) as exc_info:
            await tavily_search.search("q", api_key="key")

    assert exc_info.value.kind == "schema"


@pytest.mark.asyncio
async def test_tavily_search_reports_http_status():
    request = httpx.Request("POST", "https://api.tavily.com/search")
    error = httpx.HTTPStatusError("bad gateway", request=request, response=httpx.Response(502, request=request))
    search_mock = AsyncMock(side_effect=error)
    with patch("deepsearch.tools.tavily_search.AsyncTavilyClient", _fake_tavily(search_mock)):
        with pytest.raises(SearchProviderError) as exc_info:
            await tavily_search.search("q", api_key="key")

    assert exc_info.value.kind == "http"
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_tavily_search_requires_api_key(monkeypatch):
    monkeypatch.setattr(tavily_search.settings, "tavily_api_key", "")

    with pytest.raises(SearchProviderError) as exc_info:
        await tavily_search.search("q")

    assert exc_info.value.kind == "config"


@pytest.mark.asyncio
async def test_tavily_empty_results_are_not_an_error():
    search_mock = AsyncMock(return_value={"results": []})
    with patch("deepsearch.tools.tavily_search.AsyncTavilyClient", _fake_tavily(search_mock)):
        assert await tavily_search.search("q", api_key="key") == []


@pytest.mark.asyncio
async def test_search_provider_uses_tavily_by_default():
    hits = [SearchHit(title="t", url="https://a", content="c")]
    with patch("deepsearch.tools.search_provider.settings") as mock_settings, patch(
        "deepsearch.tools.tavily_search.search", AsyncMock(return_value=hits)
    ):
        mock_settings.search_provider = "tavily"
        mock_settings.search_fallback_to_tavily = True

        result = await search_provider.search("query", max_results=3)

    assert result.provider == "tavily"
    assert result.results == hits
    assert result.fallback_from is None


@pytest.mark.asyncio
async def test_search_provider_falls_back_from_brave():
    hits = [SearchHit(title="t", url="https://a", content="c")]
    brave_error = SearchProviderError("Brave search failed: 500", provider="brave", kind="http", status_code=500)
    with patch("deepsearch.tools.search_provider.settings") as mock_settings, patch(
        "deepsearch.tools.brave_search.search", AsyncMock(side_effect=brave_error)
    ), patch("deepsearch.tools.tavily_search.search", AsyncMock(return_value=hits)):
        mock_settings.search_provider = "brave"
        mock_settings.search_fallback_to_tavily = True

        result = await search_provider.search("query")

    assert result.provider == "tavily"
    assert result.fallback_from == "brave"
    assert "500" in result.fallback_reason


@pytest.mark.asyncio
async def test_search_provider_raises_when_provider_unsupported():
    with patch("deepsearch.tools.search_provider.settings") as mock_settings:
        mock_settings.search_provider = "unknown-provider"

        with pytest.raises(SearchProviderError) as exc_info:
            await search_provider.search("query")

    assert exc_info.value.kind == "config"
