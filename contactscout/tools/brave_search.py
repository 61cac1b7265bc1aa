"""Brave Search web API client."""
from __future__ import annotations

from typing import Any

import httpx

from contactscout.config import settings
from contactscout.models.contacts import SearchResult
from contactscout.tools.base import PermanentProviderError

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_COUNT = 20


def _request_params(query: str, max_results: int) -> dict[str, Any]:
    return {
        "q": query,
        "count": max(1, min(max_results, BRAVE_MAX_COUNT)),
        "result_filter": "web",
        "extra_snippets": "true",
    }


def _snippet(item: dict[str, Any]) -> str:
    description = (item.get("description") or "").strip()
    if description:
        return description
    return " ".join(s.strip() for s in item.get("extra_snippets") or [] if s).strip()


def normalize_results(payload: dict[str, Any], query: str) -> list[SearchResult]:
    """Map ``web.results`` to SearchResult, scoring by rank position.

    Brave returns no relevance score, so the first hit scores 1.0 and later
    hits decay linearly. Items without a URL are dropped.
    """
    items = (payload.get("web") or {}).get("results") or []
    total = max(len(items), 1)
    return [
        SearchResult(
            title=item.get("title") or "",
            url=item["url"],
            content=_snippet(item),
            score=max(0.0, 1.0 - rank / total),
            provider="brave",
            query=query,
        )
        for rank, item in enumerate(items)
        if item.get("url")
    ]


async def search(query: str, *, max_results: int = 10) -> list[SearchResult]:
    if not settings.brave_api_key:
        raise PermanentProviderError("BRAVE_API_KEY is not configured", provider="brave")

    headers = {"Accept": "application/json", "X-Subscription-Token": settings.brave_api_key}
    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(BRAVE_SEARCH_URL, params=_request_params(query, max_results), headers=headers)
        response.raise_for_status()
        return normalize_results(response.json(), query)
