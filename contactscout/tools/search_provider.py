from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from contactscout.config import settings
from contactscout.models.contacts import SearchResult
from contactscout.tools import brave_search, tavily_search
from contactscout.tools.base import (
    HealthTracker,
    ProviderError,
    RetryPolicy,
    ServiceHealth,
    call_with_retry,
)

SUPPORTED_PROVIDERS = ("brave", "tavily")


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


class WebSearchProvider:
    """Web search adapter: Brave first, Tavily as fallback."""

    name = "web_search"

    def __init__(
        self,
        provider: str | None = None,
        fallback_to_tavily: bool | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.provider = (provider or settings.search_provider).lower().strip()
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported SEARCH_PROVIDER: {self.provider}")
        self.fallback_to_tavily = (
            settings.search_fallback_to_tavily if fallback_to_tavily is None else fallback_to_tavily
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.health = HealthTracker(self.name)

    async def _run(self, provider: str, query: str, max_results: int) -> list[SearchResult]:
        search_fn = brave_search.search if provider == "brave" else tavily_search.search
        return await call_with_retry(
            lambda: search_fn(query, max_results=max_results),
            provider=provider,
            name="search",
            policy=self.retry_policy,
            health=self.health,
        )

    async def search(self, query: str, *, max_results: int = 10) -> SearchResponse:
        if self.provider == "tavily":
            return SearchResponse(results=await self._run("tavily", query, max_results), provider="tavily")

        try:
            results = await self._run("brave", query, max_results)
        except ProviderError as exc:
            if not self.fallback_to_tavily:
                raise
            logger.warning(f"Brave search failed, falling back to Tavily: {exc}")
            return SearchResponse(
                results=await self._run("tavily", query, max_results),
                provider="tavily",
                fallback_from="brave",
                fallback_reason=str(exc),
            )

        if results or not self.fallback_to_tavily:
            return SearchResponse(results=results, provider="brave")
        return SearchResponse(
            results=await self._run("tavily", query, max_results),
            provider="tavily",
            fallback_from="brave",
            fallback_reason="brave returned zero results",
        )

    async def search_web(self, query: str, max_results: int = 10) -> list[SearchResult]:
        return (await self.search(query, max_results=max_results)).results

    async def get_health(self) -> ServiceHealth:
        return self.health.snapshot(
            provider=self.provider,
            fallback_to_tavily=self.fallback_to_tavily,
        )
