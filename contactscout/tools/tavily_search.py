"""Tavily search, used directly or as the fallback for Brave."""
from __future__ import annotations

from tavily import AsyncTavilyClient

from contactscout.config import settings
from contactscout.models.contacts import SearchResult
from contactscout.tools.base import PermanentProviderError

TAVILY_MAX_RESULTS = 20


async def search(query: str, *, max_results: int = 10, search_depth: str = "advanced") -> list[SearchResult]:
    if not settings.tavily_api_key:
        raise PermanentProviderError("TAVILY_API_KEY is not configured", provider="tavily")

    client = AsyncTavilyClient(api_key=settings.tavily_api_key)
    response = await client.search(
        query=query,
        search_depth=search_depth,
        max_results=max(1, min(max_results, TAVILY_MAX_RESULTS)),
        topic="general",
        include_raw_content=False,
    )

    results: list[SearchResult] = []
    for hit in response.get("results") or []:
        if not hit.get("url"):
            continue
        results.append(
            SearchResult(
                title=hit.get("title") or "",
                url=hit["url"],
                content=hit.get("content") or "",
                score=float(hit.get("score") or 0.0),
                provider="tavily",
                query=query,
            )
        )
    return results
