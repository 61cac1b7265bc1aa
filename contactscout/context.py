"""Per-process wiring of gateway, adapters, scheduler and orchestrator."""
from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from contactscout.config import Settings, settings
from contactscout.llm_client import LLMClient
from contactscout.services.database import PostgresSearchGateway
from contactscout.services.orchestrator import (
    OrchestratorConfig,
    ProviderAdapters,
    SearchOrchestrationService,
)
from contactscout.services.persistence import InMemorySearchGateway, SearchGateway
from contactscout.services.progress import ProgressChannel
from contactscout.services.scheduler import SearchScheduler
from contactscout.services.search_cache import SearchResultCache
from contactscout.tools.contact_extractor import ContactExtractor
from contactscout.tools.query_generator import QueryGenerator
from contactscout.tools.scraper import ContentScraper
from contactscout.tools.search_provider import WebSearchProvider


@dataclass
class AppContext:
    settings: Settings
    gateway: SearchGateway
    orchestrator: SearchOrchestrationService
    llm: LLMClient | None = None

    async def startup(self) -> None:
        if isinstance(self.gateway, PostgresSearchGateway):
            await self.gateway.ensure_schema()
        await self.orchestrator.recover_stale_searches()
        logger.info(f"ContactScout ready (gateway={type(self.gateway).__name__})")

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        await self.gateway.close()
        if self.llm is not None:
            await self.llm.close()


def build_gateway(source: Settings) -> SearchGateway:
    if source.database_url:
        return PostgresSearchGateway(source.database_url)
    logger.warning("DATABASE_URL not set, searches are kept in memory only")
    return InMemorySearchGateway()


def build_context(
    source: Settings = settings,
    gateway: SearchGateway | None = None,
    adapters: ProviderAdapters | None = None,
) -> AppContext:
    llm: LLMClient | None = None
    if adapters is None:
        llm = LLMClient.from_settings()
        adapters = ProviderAdapters(
            query_generator=QueryGenerator(llm=llm, max_queries=source.max_generated_queries),
            web_search=WebSearchProvider(),
            scraper=ContentScraper(),
            contact_extractor=ContactExtractor(llm=llm),
        )
    gateway = gateway or build_gateway(source)
    orchestrator = SearchOrchestrationService(
        gateway=gateway,
        adapters=adapters,
        scheduler=SearchScheduler(source.max_concurrent_searches),
        channel=ProgressChannel(source.progress_queue_size),
        cache=SearchResultCache(
            ttl_seconds=source.search_cache_ttl_seconds,
            max_entries=source.search_cache_max_entries,
            enabled=source.search_cache_enabled,
        ),
        config=OrchestratorConfig.from_settings(source),
    )
    return AppContext(settings=source, gateway=gateway, orchestrator=orchestrator, llm=llm)
