from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from contactscout.models.contacts import ExtractedContact, ScrapedPage, SearchResult
from contactscout.models.queries import GeneratedQuery, QueryScores
from contactscout.models.search import (
    InvalidSearchConfiguration,
    Priority,
    SearchConfiguration,
    SearchCriteria,
    SearchOptions,
    SearchRecord,
    SearchStatus,
    StageTimeouts,
)
from contactscout.services.orchestrator import (
    AccessDenied,
    OrchestratorConfig,
    ProviderAdapters,
    SearchOrchestrationService,
    aggregate_contacts,
    domain_allowed,
)
from contactscout.services.persistence import InMemorySearchGateway
from contactscout.services.progress import ProgressChannel
from contactscout.services.scheduler import SchedulerClosed, SearchScheduler
from contactscout.services.search_cache import SearchResultCache
from contactscout.tools.base import HealthStatus, PermanentProviderError, ServiceHealth, TransientProviderError

PAGE_TEXT = "Jane Doe is a senior reporter covering climate policy for the Daily News. " * 3


class FakeQueryGenerator:
    def __init__(self):
        self.calls = 0

    async def generate_queries(self, seed, criteria, options, search_id=None):
        self.calls += 1
        return [
            GeneratedQuery(
                id=f"q{i}",
                text=text,
                original_query=seed,
                scores=QueryScores.combine(0.9, 0.8, 0.7),
                search_id=search_id,
            )
            for i, text in enumerate(("climate reporters", "energy desk editors"))
        ]

    async def get_health(self):
        return ServiceHealth(service="query_generation", status=HealthStatus.HEALTHY)


class FakeWebSearch:
    def __init__(self, error: Exception | None = None, delay: float = 0.0, failing_queries: tuple[str, ...] = ()):
        self.error = error
        self.failing_queries = set(failing_queries)
        self.delay = delay
        self.calls = 0
        self.started = asyncio.Event()
        self.release: asyncio.Event | None = None

    async def search_web(self, query, max_results=10):
        self.calls += 1
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if query in self.failing_queries:
            raise PermanentProviderError(f"rejected query: {query}", provider="fake")
        return [
            SearchResult("A", "https://dailynews.com/a", "snippet a", 0.9, "fake", query),
            SearchResult("B", "https://dailynews.com/b", "snippet b", 0.6, "fake", query),
            SearchResult("X", "https://blocked.com/x", "snippet x", 0.99, "fake", query),
        ]

    async def get_health(self):
        return ServiceHealth(service="web_search", status=HealthStatus.DEGRADED)


class FakeScraper:
    def __init__(self, failing_urls: tuple[str, ...] = ()):
        self.failing_urls = set(failing_urls)
        self.calls = 0

    async def scrape_content(self, url):
        self.calls += 1
        if url in self.failing_urls:
            raise TransientProviderError(f"connection reset: {url}", provider="fake")
        return ScrapedPage(url=url, final_url=url, status_code=200, title="", content=PAGE_TEXT)

    async def get_health(self):
        return ServiceHealth(service="content_scraping", status=HealthStatus.HEALTHY)


class FakeExtractor:
    def __init__(self, error: Exception | None = None, failing_urls: tuple[str, ...] = ()):
        self.error = error
        self.failing_urls = set(failing_urls)

    async def extract_contacts(self, pages, options, query=""):
        if self.error is not None:
            raise self.error
        contacts = []
        for page in pages:
            if page.url in self.failing_urls:
                raise PermanentProviderError(f"unparseable page: {page.url}", provider="fake")
            contacts.append(
                ExtractedContact(id=f"jane-{page.url}", name="Jane Doe", email="jane@dailynews.com",
                                 confidence_score=0.9, source_url=page.url)
            )
            contacts.append(ExtractedContact(id=f"low-{page.url}", name="Maybe Someone", confidence_score=0.1))
        return contacts

    async def get_health(self):
        raise RuntimeError("health check failed")


def _service(
    web: FakeWebSearch | None = None,
    extractor: FakeExtractor | None = None,
    scraper: FakeScraper | None = None,
    config: OrchestratorConfig | None = None,
    max_concurrent: int = 4,
    cache: SearchResultCache | None = None,
    gateway: InMemorySearchGateway | None = None,
) -> SearchOrchestrationService:
    adapters = ProviderAdapters(
        query_generator=FakeQueryGenerator(),
        web_search=web or FakeWebSearch(),
        scraper=scraper or FakeScraper(),
        contact_extractor=extractor or FakeExtractor(),
    )
    return SearchOrchestrationService(
        gateway or InMemorySearchGateway(),
        adapters,
        scheduler=SearchScheduler(max_concurrent),
        channel=ProgressChannel(32),
        cache=cache,
        config=config or OrchestratorConfig(),
    )


def _configuration(**options) -> SearchConfiguration:
    return SearchConfiguration(
        query="climate reporters",
        criteria=SearchCriteria(exclude_domains=("blocked.com",)),
        options=SearchOptions(**options),
    )


def test_domain_allowed_honours_include_and_exclude_lists():
    criteria = SearchCriteria(domains=("dailynews.com",), exclude_domains=("blog.dailynews.com",))
    assert domain_allowed("dailynews.com", criteria)
    assert domain_allowed("world.dailynews.com", criteria)
    assert not domain_allowed("blog.dailynews.com", criteria)
    assert not domain_allowed("other.com", criteria)
    assert domain_allowed("anything.org", SearchCriteria())


def test_status_transitions_stop_at_terminal_states():
    assert SearchStatus.PENDING.can_transition_to(SearchStatus.PROCESSING)
    assert SearchStatus.PENDING.can_transition_to(SearchStatus.CANCELLED)
    assert SearchStatus.PROCESSING.can_transition_to(SearchStatus.FAILED)
    assert not SearchStatus.PROCESSING.can_transition_to(SearchStatus.PENDING)
    for terminal in (SearchStatus.COMPLETED, SearchStatus.FAILED, SearchStatus.CANCELLED):
        assert not terminal.can_transition_to(SearchStatus.CANCELLED)


def test_aggregate_contacts_keeps_first_per_email_then_name_title():
    contacts = [
        ExtractedContact(id="1", name="Jane Doe", email="Jane@Paper.com"),
        ExtractedContact(id="2", name="J. Doe", email="jane@paper.com"),
        ExtractedContact(id="3", name="Sam Roe", title="Editor"),
        ExtractedContact(id="4", name="sam roe", title="editor"),
        ExtractedContact(id="5", name="Sam Roe", title="Reporter"),
    ]
    unique, groups = aggregate_contacts(contacts)

    assert [c.id for c in unique] == ["1", "3", "5"]
    assert {(g.kept_contact_id, tuple(g.duplicate_contact_ids), g.match_type) for g in groups} == {
        ("1", ("2",), "EMAIL"),
        ("3", ("4",), "NAME_TITLE"),
    }


@pytest.mark.asyncio
async def test_submit_returns_pending_and_stores_priority():
    service = _service()
    result = await service.submit_search("u1", _configuration(), priority="high")

    assert result.status is SearchStatus.PENDING
    assert result.progress.percentage == 0.0
    record = await service.gateway.find_search(result.search_id)
    assert record.priority is Priority.HIGH
    assert record.user_id == "u1"
    await service.scheduler.join()


@pytest.mark.asyncio
async def test_submit_rejects_invalid_configuration():
    service = _service()
    with pytest.raises(InvalidSearchConfiguration):
        await service.submit_search("u1", _configuration(max_results=0))
    assert await service.gateway.list_searches(None) == []


@pytest.mark.asyncio
async def test_full_pipeline_completes():
    service = _service()
    updates = []
    service.on_progress_update(lambda search_id, snapshot: updates.append(snapshot.percentage))

    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert view.status is SearchStatus.COMPLETED
    assert view.progress.percentage == 100.0
    assert [s.url for s in view.sources] == ["https://dailynews.com/a", "https://dailynews.com/b"]
    assert [c.email for c in view.contacts] == ["jane@dailynews.com"]
    assert view.contacts_found == 2
    assert [s.contact_count for s in view.sources] == [1, 1]
    assert view.contacts_imported == 1
    assert view.contacts_found >= view.contacts_imported
    assert view.completed_at is not None
    assert updates == sorted(updates)
    assert updates[-1] == 100.0


@pytest.mark.asyncio
async def test_cached_configuration_skips_providers():
    web = FakeWebSearch()
    service = _service(web=web, cache=SearchResultCache())

    first = await service.submit_search("u1", _configuration())
    await service.scheduler.join()
    second = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    assert web.calls == 2
    view = await service.get_search_status(second.search_id, "u1")
    assert view.status is SearchStatus.COMPLETED
    assert [c.email for c in view.contacts] == ["jane@dailynews.com"]
    assert [s.contact_count for s in view.sources] == [1, 1]
    assert first.search_id != second.search_id


@pytest.mark.asyncio
async def test_cancel_completed_search_is_rejected():
    service = _service()
    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()
    before = await service.gateway.find_search(result.search_id)

    cancellation = await service.cancel_search(result.search_id, "u1")

    assert not cancellation.success
    assert cancellation.message == "Search cannot be cancelled (status: COMPLETED)"
    after = await service.gateway.find_search(result.search_id)
    assert after.status is SearchStatus.COMPLETED
    assert after.completed_at == before.completed_at


@pytest.mark.asyncio
async def test_foreign_user_is_denied():
    service = _service()
    result = await service.submit_search("owner", _configuration())
    await service.scheduler.join()

    with pytest.raises(AccessDenied):
        await service.get_search_status(result.search_id, "intruder")
    cancellation = await service.cancel_search(result.search_id, "intruder")
    assert not cancellation.success
    assert cancellation.message == "Access denied"


@pytest.mark.asyncio
async def test_unknown_search():
    service = _service()
    assert await service.get_search_status("missing", "u1") is None
    cancellation = await service.cancel_search("missing", "u1")
    assert cancellation.message == "Search not found"


@pytest.mark.asyncio
async def test_cancel_running_search():
    web = FakeWebSearch()
    web.release = asyncio.Event()
    service = _service(web=web)
    result = await service.submit_search("u1", _configuration())
    await web.started.wait()

    cancellation = await service.cancel_search(result.search_id, "u1", reason="no longer needed")
    web.release.set()
    await service.scheduler.join()

    assert cancellation.success
    assert cancellation.cancelled_at is not None
    record = await service.gateway.find_search(result.search_id)
    assert record.status is SearchStatus.CANCELLED
    assert record.error == "no longer needed"
    assert record.failed_stage == "web_search"
    assert record.contacts == []


@pytest.mark.asyncio
async def test_cancel_queued_search():
    web = FakeWebSearch()
    web.release = asyncio.Event()
    service = _service(web=web, max_concurrent=1)
    running = await service.submit_search("u1", _configuration())
    await web.started.wait()
    queued = await service.submit_search("u1", _configuration())
    assert service.scheduler.is_queued(queued.search_id)

    cancellation = await service.cancel_search(queued.search_id, "u1")
    web.release.set()
    await service.scheduler.join()

    assert cancellation.success
    record = await service.gateway.find_search(queued.search_id)
    assert record.status is SearchStatus.CANCELLED
    assert record.error == "Cancelled by user"
    assert record.started_at is None
    assert (await service.gateway.find_search(running.search_id)).status is SearchStatus.COMPLETED


@pytest.mark.asyncio
async def test_provider_failure_fails_the_stage():
    web = FakeWebSearch(error=PermanentProviderError("quota exhausted", provider="brave"))
    service = _service(web=web)
    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    record = await service.gateway.find_search(result.search_id)
    assert record.status is SearchStatus.FAILED
    assert record.failed_stage == "web_search"
    assert "quota exhausted" in record.error


@pytest.mark.asyncio
async def test_search_completes_when_some_queries_fail():
    web = FakeWebSearch(failing_queries=("energy desk editors",))
    service = _service(web=web)
    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert web.calls == 2
    assert view.status is SearchStatus.COMPLETED
    assert [s.url for s in view.sources] == ["https://dailynews.com/a", "https://dailynews.com/b"]
    assert view.contacts_imported == 1


@pytest.mark.asyncio
async def test_failed_scrape_skips_only_that_url():
    scraper = FakeScraper(failing_urls=("https://dailynews.com/b",))
    service = _service(scraper=scraper)
    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert view.status is SearchStatus.COMPLETED
    assert scraper.calls == 2
    assert view.contacts_found == 1
    assert [(s.url, s.contact_count) for s in view.sources] == [
        ("https://dailynews.com/a", 1),
        ("https://dailynews.com/b", 0),
    ]


@pytest.mark.asyncio
async def test_failed_extraction_skips_only_that_page():
    extractor = FakeExtractor(failing_urls=("https://dailynews.com/a",))
    service = _service(extractor=extractor)
    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert view.status is SearchStatus.COMPLETED
    assert view.error is None
    assert [c.source_url for c in view.contacts] == ["https://dailynews.com/b"]
    assert [s.contact_count for s in view.sources] == [0, 1]


@pytest.mark.asyncio
async def test_disabled_scraping_extracts_from_search_snippets():
    scraper = FakeScraper()
    service = _service(scraper=scraper, config=OrchestratorConfig(min_content_chars=5))
    result = await service.submit_search("u1", _configuration(enable_content_scraping=False))
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert view.status is SearchStatus.COMPLETED
    assert scraper.calls == 0
    assert view.contacts_found == 2
    assert [c.email for c in view.contacts] == ["jane@dailynews.com"]


@pytest.mark.asyncio
async def test_domain_include_list_filters_search_results():
    service = _service()
    configuration = SearchConfiguration(
        query="climate reporters",
        criteria=SearchCriteria(domains=("dailynews.com",)),
        options=SearchOptions(),
    )
    result = await service.submit_search("u1", configuration)
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert view.status is SearchStatus.COMPLETED
    assert {s.domain for s in view.sources} == {"dailynews.com"}
    assert len(view.sources) == 2


@pytest.mark.asyncio
async def test_unexpected_error_keeps_earlier_sources():
    service = _service(extractor=FakeExtractor(error=RuntimeError("boom")))
    result = await service.submit_search("u1", _configuration())
    await service.scheduler.join()

    view = await service.get_search_status(result.search_id, "u1")
    assert view.status is SearchStatus.FAILED
    assert view.failed_stage == "contact_extraction"
    assert view.error.startswith("internal error")
    assert len(view.sources) == 2
    assert view.progress.status is SearchStatus.FAILED


@pytest.mark.asyncio
async def test_stage_timeout_fails_search():
    web = FakeWebSearch(delay=1.0)
    service = _service(web=web)
    configuration = _configuration(stage_timeouts=StageTimeouts(web_search=0.05))
    result = await service.submit_search("u1", configuration)
    await service.scheduler.join()

    record = await service.gateway.find_search(result.search_id)
    assert record.status is SearchStatus.FAILED
    assert record.failed_stage == "web_search"
    assert record.error.startswith("timeout")


@pytest.mark.asyncio
async def test_statistics_for_user_without_searches():
    service = _service()
    statistics = await service.get_search_statistics("nobody")
    assert statistics.total_searches == 0
    assert statistics.success_rate == 0.0
    assert statistics.average_processing_time == 0.0


@pytest.mark.asyncio
async def test_health_reports_worst_status():
    service = _service()
    report = await service.get_health_status()

    assert report.services["web_search"].status is HealthStatus.DEGRADED
    assert report.services["contact_extraction"].status is HealthStatus.UNHEALTHY
    assert report.services["contact_extraction"].details["error"] == "health check failed"
    assert report.status is HealthStatus.UNHEALTHY
    assert report.to_dict()["active_searches"] == 0


@pytest.mark.asyncio
async def test_recover_stale_searches():
    gateway = InMemorySearchGateway()
    now = datetime.now(timezone.utc)
    await gateway.create_search(
        SearchRecord(
            id="old",
            user_id="u1",
            configuration=_configuration(),
            status=SearchStatus.PROCESSING,
            created_at=now - timedelta(hours=3),
        )
    )
    await gateway.create_search(
        SearchRecord(id="fresh", user_id="u1", configuration=_configuration(), created_at=now)
    )
    service = _service(gateway=gateway)

    assert await service.recover_stale_searches() == 1
    old = await gateway.find_search("old")
    assert old.status is SearchStatus.FAILED
    assert old.error.startswith("stale")
    assert (await gateway.find_search("fresh")).status is SearchStatus.PENDING


@pytest.mark.asyncio
async def test_subscription_ends_with_terminal_snapshot():
    service = _service()
    result = await service.submit_search("u1", _configuration())
    subscription = service.subscribe(result.search_id)

    snapshots = [snapshot async for snapshot in subscription]
    await service.scheduler.join()

    assert snapshots[-1].status is SearchStatus.COMPLETED
    percentages = [s.percentage for s in snapshots]
    assert percentages == sorted(percentages)


@pytest.mark.asyncio
async def test_shutdown_interrupts_running_searches_and_refuses_new_ones():
    web = FakeWebSearch()
    web.release = asyncio.Event()
    service = _service(web=web, max_concurrent=1)
    result = await service.submit_search("u1", _configuration())
    await web.started.wait()
    queued = await service.submit_search("u1", _configuration())
    assert service.scheduler.is_queued(queued.search_id)
    subscription = service.subscribe(queued.search_id)

    await service.shutdown()

    record = await service.gateway.find_search(result.search_id)
    assert record.status is SearchStatus.FAILED
    assert record.error.startswith("interrupted")
    waiting = await service.gateway.find_search(queued.search_id)
    assert waiting.status is SearchStatus.FAILED
    assert waiting.error == "interrupted: service shutting down"
    assert waiting.started_at is None
    snapshots = [snapshot async for snapshot in subscription]
    assert snapshots[-1].status is SearchStatus.FAILED
    assert service.scheduler.queue_size == 0
    with pytest.raises(SchedulerClosed):
        await service.submit_search("u1", _configuration())
    failed = [r for r in await service.gateway.list_searches("u1") if r.error == "Service is shutting down"]
    assert len(failed) == 1
