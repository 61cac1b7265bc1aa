from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from contactscout.models.contacts import SearchResult
from contactscout.tools.base import PermanentProviderError, RetryPolicy, TransientProviderError
from contactscout.tools.search_provider import WebSearchProvider

NO_RETRY = RetryPolicy(max_attempts=1)


def _result(url: str, provider: str) -> SearchResult:
    return SearchResult(title="t", url=url, content="c", score=0.5, provider=provider)


@pytest.mark.asyncio
async def test_brave_results_are_used_when_available():
    brave = AsyncMock(return_value=[_result("https://a.com", "brave")])
    tavily = AsyncMock()
    with patch("contactscout.tools.brave_search.search", brave), patch("contactscout.tools.tavily_search.search", tavily):
        response = await WebSearchProvider("brave", retry_policy=NO_RETRY).search("query", max_results=3)

    assert response.provider == "brave"
    assert response.fallback_from is None
    brave.assert_awaited_once_with("query", max_results=3)
    tavily.assert_not_awaited()


@pytest.mark.asyncio
async def test_brave_failure_falls_back_to_tavily():
    brave = AsyncMock(side_effect=PermanentProviderError("BRAVE_API_KEY is not configured", provider="brave"))
    tavily = AsyncMock(return_value=[_result("https://b.com", "tavily")])
    with patch("contactscout.tools.brave_search.search", brave), patch("contactscout.tools.tavily_search.search", tavily):
        response = await WebSearchProvider("brave", fallback_to_tavily=True, retry_policy=NO_RETRY).search("query")

    assert response.provider == "tavily"
    assert response.fallback_from == "brave"
    assert "BRAVE_API_KEY" in response.fallback_reason
    assert [r.url for r in response.results] == ["https://b.com"]


@pytest.mark.asyncio
async def test_empty_brave_results_fall_back_to_tavily():
    brave = AsyncMock(return_value=[])
    tavily = AsyncMock(return_value=[_result("https://b.com", "tavily")])
    with patch("contactscout.tools.brave_search.search", brave), patch("contactscout.tools.tavily_search.search", tavily):
        response = await WebSearchProvider("brave", fallback_to_tavily=True, retry_policy=NO_RETRY).search("query")

    assert response.provider == "tavily"
    assert response.fallback_reason == "brave returned zero results"


@pytest.mark.asyncio
async def test_brave_failure_without_fallback_raises():
    brave = AsyncMock(side_effect=httpx.ConnectError("down"))
    with patch("contactscout.tools.brave_search.search", brave):
        provider = WebSearchProvider("brave", fallback_to_tavily=False, retry_policy=NO_RETRY)
        with pytest.raises(TransientProviderError):
            await provider.search_web("query")

    health = await provider.get_health()
    assert health.details["calls"] == 1
    assert health.error_rate == 100.0


def test_unsupported_provider_is_rejected():
    with pytest.raises(ValueError):
        WebSearchProvider("unknown-provider")


@pytest.mark.asyncio
async def test_brave_search_requires_api_key():
    from contactscout.tools import brave_search

    with patch("contactscout.tools.brave_search.settings") as mock_settings:
        mock_settings.brave_api_key = ""
        with pytest.raises(PermanentProviderError):
            await brave_search.search("query")


@pytest.mark.asyncio
async def test_brave_search_normalizes_results():
    from contactscout.tools import brave_search

    payload = {
        "web": {
            "results": [
                {"title": "First", "url": "https://one.com/a", "description": "  Desk editors  "},
                {"title": "No url"},
                {"title": "Second", "url": "https://two.com/b", "description": "", "extra_snippets": ["x", "y"]},
            ]
        }
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Subscription-Token"] == "test-key"
        assert request.url.params["q"] == "query"
        return httpx.Response(200, json=payload)

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    with patch("contactscout.tools.brave_search.settings") as mock_settings, patch(
        "contactscout.tools.brave_search.httpx.AsyncClient", side_effect=client_factory
    ):
        mock_settings.brave_api_key = "test-key"
        results = await brave_search.search("query", max_results=5)

    assert [r.url for r in results] == ["https://one.com/a", "https://two.com/b"]
    assert results[0].content == "Desk editors"
    assert results[1].content == "x y"
    assert results[0].score > results[1].score
    assert all(r.provider == "brave" and r.query == "query" for r in results)
