"""Search orchestration: submission, staged pipeline execution, cancellation."""
from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol, Sequence, TypeVar
from uuid import uuid4

from loguru import logger

from contactscout.config import Settings, settings
from contactscout.models.contacts import (
    AggregatedResult,
    DuplicateGroup,
    ExtractedContact,
    ScrapedPage,
    SearchResult,
    SearchSource,
)
from contactscout.models.queries import GeneratedQuery, SimilarityMethod
from contactscout.models.search import (
    CancellationResult,
    Priority,
    ProgressSnapshot,
    SearchConfiguration,
    SearchCriteria,
    SearchFilter,
    SearchOptions,
    SearchRecord,
    SearchStage,
    SearchStatistics,
    SearchStatus,
    SearchStatusView,
    SubmissionResult,
)
from contactscout.services.deduplication import DeduplicationFailed, QueryDeduplicator
from contactscout.services.logger import log_event, log_search_stage
from contactscout.services.persistence import SearchGateway
from contactscout.services.progress import ProgressCallback, ProgressChannel, ProgressSubscription, ProgressTracker
from contactscout.services.scheduler import SchedulerClosed, SearchScheduler
from contactscout.services.search_cache import SearchResultCache
from contactscout.services.statistics import compute_statistics
from contactscout.tools.base import HealthStatus, ProviderError, ServiceHealth, aggregate_health

T = TypeVar("T")


class AccessDenied(PermissionError):
    def __init__(self, search_id: str):
        self.search_id = search_id
        super().__init__(f"Access denied to search {search_id}")


class StageFailed(Exception):
    def __init__(self, stage: SearchStage, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(reason)


class StageTimeout(StageFailed):
    pass


class SearchCancelled(Exception):
    pass


class QueryGenerationAdapter(Protocol):
    async def generate_queries(
        self, seed: str, criteria: SearchCriteria, options: SearchOptions, search_id: str | None = None
    ) -> list[GeneratedQuery]: ...

    async def get_health(self) -> ServiceHealth: ...


class WebSearchAdapter(Protocol):
    async def search_web(self, query: str, max_results: int = 10) -> list[SearchResult]: ...

    async def get_health(self) -> ServiceHealth: ...


class ScrapingAdapter(Protocol):
    async def scrape_content(self, url: str) -> ScrapedPage: ...

    async def get_health(self) -> ServiceHealth: ...


class ContactExtractionAdapter(Protocol):
    async def extract_contacts(
        self, pages: Sequence[ScrapedPage], options: SearchOptions, query: str = ""
    ) -> list[ExtractedContact]: ...

    async def get_health(self) -> ServiceHealth: ...


@dataclass
class ProviderAdapters:
    query_generator: QueryGenerationAdapter
    web_search: WebSearchAdapter
    scraper: ScrapingAdapter
    contact_extractor: ContactExtractionAdapter

    def by_name(self) -> dict[str, Any]:
        return {
            "query_generation": self.query_generator,
            "web_search": self.web_search,
            "content_scraping": self.scraper,
            "contact_extraction": self.contact_extractor,
        }


@dataclass
class HealthReport:
    status: HealthStatus
    services: dict[str, ServiceHealth]
    active_searches: int
    queue_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "services": {name: health.to_dict() for name, health in self.services.items()},
            "active_searches": self.active_searches,
            "queue_size": self.queue_size,
        }


@dataclass(frozen=True)
class OrchestratorConfig:
    query_generation_timeout: float = 30.0
    web_search_timeout: float = 60.0
    content_scraping_timeout: float = 45.0
    contact_extraction_timeout: float = 60.0
    total_search_timeout: float = 300.0
    dedup_method: SimilarityMethod = "hybrid"
    dedup_threshold: float = 0.8
    max_generated_queries: int = 20
    max_search_queries: int = 5
    max_scrape_urls: int = 10
    min_content_chars: int = 100
    min_query_score: float = 0.3
    stale_search_hours: float = 1.0

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "OrchestratorConfig":
        return cls(
            query_generation_timeout=source.query_generation_timeout,
            web_search_timeout=source.web_search_timeout,
            content_scraping_timeout=source.content_scraping_timeout,
            contact_extraction_timeout=source.contact_extraction_timeout,
            total_search_timeout=source.total_search_timeout,
            dedup_method=source.dedup_method,  # type: ignore[arg-type]
            dedup_threshold=source.dedup_threshold,
            max_generated_queries=source.max_generated_queries,
            max_search_queries=source.max_search_queries,
            max_scrape_urls=source.max_scrape_urls,
            min_content_chars=source.min_content_chars,
            min_query_score=source.min_query_score,
            stale_search_hours=source.stale_search_hours,
        )

    def stage_timeout(self, stage: SearchStage) -> float | None:
        return {
            SearchStage.QUERY_GENERATION: self.query_generation_timeout,
            SearchStage.WEB_SEARCH: self.web_search_timeout,
            SearchStage.CONTENT_SCRAPING: self.content_scraping_timeout,
            SearchStage.CONTACT_EXTRACTION: self.contact_extraction_timeout,
        }.get(stage)


@dataclass
class _SearchRun:
    search_id: str
    user_id: str
    configuration: SearchConfiguration
    priority: Priority
    timeout: float | None
    tracker: ProgressTracker
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    stage: SearchStage = SearchStage.INITIALIZING
    started_at: datetime | None = None
    deadline: float = 0.0
    sources: list[SearchSource] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def domain_allowed(domain: str, criteria: SearchCriteria) -> bool:
    def matches(candidates: Sequence[str]) -> bool:
        for candidate in candidates:
            candidate = candidate.lower().strip().removeprefix("www.")
            if candidate and (domain == candidate or domain.endswith("." + candidate)):
                return True
        return False

    if criteria.domains and not matches(criteria.domains):
        return False
    return not matches(criteria.exclude_domains)


def aggregate_contacts(contacts: Sequence[ExtractedContact]) -> tuple[list[ExtractedContact], list[DuplicateGroup]]:
    """Keep the first contact per email (or per name+title when no email)."""
    kept: dict[tuple[str, str], ExtractedContact] = {}
    duplicates: dict[tuple[str, str], list[str]] = {}
    for contact in contacts:
        key = contact.dedupe_key()
        if key in kept:
            duplicates.setdefault(key, []).append(contact.id)
        else:
            kept[key] = contact
    groups = [
        DuplicateGroup(kept_contact_id=kept[key].id, duplicate_contact_ids=ids, match_type=key[0])
        for key, ids in duplicates.items()
    ]
    return list(kept.values()), groups


def snapshot_from_record(record: SearchRecord) -> ProgressSnapshot:
    tracker = ProgressTracker(record.id)
    if record.status.is_terminal:
        return tracker.finish(record.status, record.error or f"Search {record.status.value.lower()}")
    if record.status is SearchStatus.PROCESSING:
        return tracker.enter_stage(SearchStage.INITIALIZING, "Search in progress")
    return tracker.snapshot


class SearchOrchestrationService:
    """Drives searches from submission to a terminal status.

    Status writes for a live search happen under that search's lock, and a
    terminal status is claimed synchronously in ``_terminal_claims`` before it
    is written, so a cancel racing with completion lets exactly one win.
    """

    def __init__(
        self,
        gateway: SearchGateway,
        adapters: ProviderAdapters,
        scheduler: SearchScheduler | None = None,
        channel: ProgressChannel | None = None,
        cache: SearchResultCache | None = None,
        deduplicator: QueryDeduplicator | None = None,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.adapters = adapters
        self.config = config or OrchestratorConfig.from_settings()
        self.scheduler = scheduler or SearchScheduler(settings.max_concurrent_searches)
        self.channel = channel or ProgressChannel(settings.progress_queue_size)
        self.cache = cache
        self.deduplicator = deduplicator or QueryDeduplicator(
            method=self.config.dedup_method, threshold=self.config.dedup_threshold
        )
        self._clock = clock
        self._runs: dict[str, _SearchRun] = {}
        self._terminal_claims: set[str] = set()

    # ----- public operations -----

    async def submit_search(
        self,
        user_id: str,
        configuration: SearchConfiguration,
        priority: Priority | str | None = None,
        timeout: float | None = None,
    ) -> SubmissionResult:
        configuration.validate()
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        resolved_priority = Priority(priority) if priority is not None else configuration.options.priority

        now = self._clock()
        search_id = str(uuid4())
        record = SearchRecord(
            id=search_id,
            user_id=user_id,
            configuration=configuration,
            status=SearchStatus.PENDING,
            priority=resolved_priority,
            created_at=now,
            updated_at=now,
        )
        await self.gateway.create_search(record)

        run = _SearchRun(
            search_id=search_id,
            user_id=user_id,
            configuration=configuration,
            priority=resolved_priority,
            timeout=timeout,
            tracker=ProgressTracker(search_id),
        )
        self._runs[search_id] = run
        self.channel.publish(run.tracker.snapshot)
        try:
            await self.scheduler.enqueue(search_id, resolved_priority, lambda: self._execute(run))
        except SchedulerClosed:
            self._runs.pop(search_id, None)
            await self.gateway.update_search(
                search_id, status=SearchStatus.FAILED, completed_at=self._clock(), error="Service is shutting down"
            )
            raise

        log_event(
            "search_submitted",
            f"Search {search_id} queued",
            search_id=search_id,
            user_id=user_id,
            priority=resolved_priority.value,
            query=configuration.query,
        )
        return SubmissionResult(search_id=search_id, status=SearchStatus.PENDING, progress=run.tracker.snapshot)

    async def get_search_status(self, search_id: str, requesting_user_id: str) -> SearchStatusView | None:
        record = await self.gateway.find_search(search_id)
        if record is None:
            return None
        if record.user_id != requesting_user_id:
            raise AccessDenied(search_id)

        run = self._runs.get(search_id)
        progress = (
            run.tracker.snapshot
            if run is not None and not record.status.is_terminal
            else self.channel.latest(search_id) or snapshot_from_record(record)
        )
        return SearchStatusView(
            search_id=record.id,
            status=record.status,
            progress=progress,
            configuration=record.configuration,
            priority=record.priority,
            contacts_found=record.contacts_found,
            contacts_imported=record.contacts_imported,
            created_at=record.created_at,
            updated_at=record.updated_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            error=record.error,
            failed_stage=record.failed_stage,
            sources=record.sources,
            contacts=record.contacts,
        )

    async def cancel_search(
        self, search_id: str, requesting_user_id: str, reason: str | None = None
    ) -> CancellationResult:
        record = await self.gateway.find_search(search_id)
        if record is None:
            return CancellationResult(search_id, False, "Search not found")
        if record.user_id != requesting_user_id:
            return CancellationResult(search_id, False, "Access denied")
        if not record.status.can_transition_to(SearchStatus.CANCELLED) or not self._claim_terminal(search_id):
            return CancellationResult(
                search_id, False, f"Search cannot be cancelled (status: {record.status.value})"
            )

        try:
            run = self._runs.get(search_id)
            if run is not None:
                run.cancel_event.set()
            withdrawn = await self.scheduler.withdraw(search_id)

            async with run.lock if run is not None else contextlib.nullcontext():
                current = await self.gateway.find_search(search_id)
                if current is None or not current.status.can_transition_to(SearchStatus.CANCELLED):
                    status = current.status.value if current else "missing"
                    return CancellationResult(search_id, False, f"Search cannot be cancelled (status: {status})")
                cancelled_at = self._clock()
                await self.gateway.update_search(
                    search_id,
                    status=SearchStatus.CANCELLED,
                    completed_at=cancelled_at,
                    error=reason or "Cancelled by user",
                    failed_stage=run.stage.value if run is not None and run.started_at else None,
                )
        finally:
            self._release_terminal(search_id)

        tracker = run.tracker if run is not None else ProgressTracker(search_id)
        self.channel.publish(tracker.finish(SearchStatus.CANCELLED, reason or "Search cancelled"))
        if withdrawn or run is None:
            self._runs.pop(search_id, None)
        log_event("search_cancelled", f"Search {search_id} cancelled", search_id=search_id, reason=reason)
        return CancellationResult(search_id, True, "Search cancelled", cancelled_at)

    async def get_search_statistics(self, user_id: str | None, window: timedelta | None = None) -> SearchStatistics:
        now = self._clock()
        search_filter = SearchFilter(created_after=now - window if window else None)
        records = await self.gateway.list_searches(user_id, search_filter)
        return compute_statistics(records, now)

    async def get_health_status(self) -> HealthReport:
        adapters = self.adapters.by_name()
        names = list(adapters)
        reports = await asyncio.gather(
            *(adapter.get_health() for adapter in adapters.values()),
            return_exceptions=True,
        )
        services: dict[str, ServiceHealth] = {}
        for name, report in zip(names, reports):
            if isinstance(report, BaseException):
                logger.warning(f"Health check failed for {name}: {report}")
                services[name] = ServiceHealth(
                    service=name,
                    status=HealthStatus.UNHEALTHY,
                    last_check=self._clock(),
                    details={"error": str(report)},
                )
            else:
                services[name] = report
        return HealthReport(
            status=aggregate_health(services.values()),
            services=services,
            active_searches=self.scheduler.active_count,
            queue_size=self.scheduler.queue_size,
        )

    def subscribe(self, search_id: str | None = None) -> ProgressSubscription:
        return self.channel.subscribe(search_id)

    def on_progress_update(self, callback: ProgressCallback) -> Callable[[], None]:
        return self.channel.add_callback(callback)

    async def recover_stale_searches(self, max_age: timedelta | None = None) -> int:
        """Fail PENDING/PROCESSING records older than ``max_age`` that nothing runs."""
        cutoff = self._clock() - (max_age or timedelta(hours=self.config.stale_search_hours))
        records = await self.gateway.list_searches(
            None,
            SearchFilter(statuses=(SearchStatus.PENDING, SearchStatus.PROCESSING), created_before=cutoff),
        )
        recovered = 0
        for record in records:
            if record.id in self._runs or self.scheduler.owns(record.id):
                continue
            await self.gateway.update_search(
                record.id,
                status=SearchStatus.FAILED,
                completed_at=self._clock(),
                error="stale: search was not running when the service started",
            )
            recovered += 1
        if recovered:
            log_event("stale_searches_recovered", f"Marked {recovered} stale searches as failed", count=recovered)
        return recovered

    async def shutdown(self) -> None:
        withdrawn = await self.scheduler.shutdown()
        for search_id in withdrawn:
            await self._interrupt_queued(search_id)
        self.channel.close_all()

    async def _interrupt_queued(self, search_id: str) -> None:
        run = self._runs.pop(search_id, None)
        if not self._claim_terminal(search_id):
            return
        reason = "interrupted: service shutting down"
        try:
            record = await self.gateway.find_search(search_id)
            if record is None or not record.status.can_transition_to(SearchStatus.FAILED):
                return
            await self.gateway.update_search(
                search_id, status=SearchStatus.FAILED, completed_at=self._clock(), error=reason
            )
        finally:
            self._release_terminal(search_id)
        tracker = run.tracker if run is not None else ProgressTracker(search_id)
        self.channel.publish(tracker.finish(SearchStatus.FAILED, reason))
        log_search_stage(search_id, SearchStage.INITIALIZING.value, "failed", {"error": reason})

    # ----- terminal claims -----

    def _claim_terminal(self, search_id: str) -> bool:
        if search_id in self._terminal_claims:
            return False
        self._terminal_claims.add(search_id)
        return True

    def _release_terminal(self, search_id: str) -> None:
        self._terminal_claims.discard(search_id)

    # ----- pipeline -----

    def _checkpoint(self, run: _SearchRun) -> None:
        if run.cancel_event.is_set():
            raise SearchCancelled(run.search_id)

    def _publish(self, run: _SearchRun, snapshot: ProgressSnapshot) -> None:
        if not run.cancel_event.is_set():
            self.channel.publish(snapshot)

    def _remaining(self, run: _SearchRun) -> float:
        return run.deadline - time.monotonic()

    async def _stage(
        self,
        run: _SearchRun,
        stage: SearchStage,
        work: Callable[[], Awaitable[T]],
        message: str = "",
    ) -> T:
        self._checkpoint(run)
        run.stage = stage
        self._publish(run, run.tracker.enter_stage(stage, message))
        log_search_stage(run.search_id, stage.value, "started")

        remaining = self._remaining(run)
        if remaining <= 0:
            raise StageTimeout(stage, "timeout: total search time budget exhausted")
        stage_limit = run.configuration.options.stage_timeouts.for_stage(stage) or self.config.stage_timeout(stage)
        limit = min(stage_limit, remaining) if stage_limit else remaining

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(work(), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise StageTimeout(stage, f"timeout: {stage.value} exceeded {limit:.1f}s") from exc
        except DeduplicationFailed as exc:
            raise StageFailed(stage, f"deduplication failed: {exc}") from exc
        except ProviderError as exc:
            raise StageFailed(stage, f"{stage.value} failed: {exc}") from exc

        log_search_stage(
            run.search_id,
            stage.value,
            "completed",
            {"duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return result

    async def _execute(self, run: _SearchRun) -> None:
        try:
            await self._run_pipeline(run)
        except SearchCancelled:
            logger.info(f"Search {run.search_id} stopped at {run.stage.value} after cancellation")
        except StageFailed as exc:
            await self._fail(run, exc.stage, exc.reason)
        except asyncio.CancelledError:
            await self._fail(run, run.stage, "interrupted: service shutting down")
            raise
        except Exception as exc:
            logger.exception(f"Search {run.search_id} failed at {run.stage.value}")
            await self._fail(run, run.stage, f"internal error: {exc}")
        finally:
            self._runs.pop(run.search_id, None)

    async def _run_pipeline(self, run: _SearchRun) -> None:
        options = run.configuration.options
        budget = run.timeout or options.processing_timeout or self.config.total_search_timeout
        run.deadline = time.monotonic() + budget

        cached = await self._stage(run, SearchStage.INITIALIZING, lambda: self._initialize(run), "Initializing search")
        if cached is not None:
            await self._stage(
                run, SearchStage.FINALIZATION, lambda: self._finalize(run, cached, from_cache=True), "Using cached results"
            )
            return

        queries = await self._stage(
            run, SearchStage.QUERY_GENERATION, lambda: self._generate_queries(run), "Generating search queries"
        )
        results = await self._stage(
            run, SearchStage.WEB_SEARCH, lambda: self._search_web(run, queries), "Searching the web"
        )
        pages = await self._stage(
            run, SearchStage.CONTENT_SCRAPING, lambda: self._scrape(run, results), "Scraping content"
        )
        contacts = await self._stage(
            run, SearchStage.CONTACT_EXTRACTION, lambda: self._extract(run, pages), "Extracting contacts"
        )
        aggregate = await self._stage(
            run, SearchStage.RESULT_AGGREGATION, lambda: self._aggregate(run, contacts), "Aggregating results"
        )
        await self._stage(run, SearchStage.FINALIZATION, lambda: self._finalize(run, aggregate), "Saving results")

    async def _initialize(self, run: _SearchRun) -> AggregatedResult | None:
        started_at = self._clock()
        async with run.lock:
            self._checkpoint(run)
            await self.gateway.update_search(run.search_id, status=SearchStatus.PROCESSING, started_at=started_at)
        run.started_at = started_at

        if self.cache is not None and run.configuration.options.enable_caching:
            cached = self.cache.get(run.configuration)
            if cached is not None:
                log_event("search_cache_hit", f"Search {run.search_id} served from cache", search_id=run.search_id)
                return cached
        return None

    async def _generate_queries(self, run: _SearchRun) -> list[GeneratedQuery]:
        configuration = run.configuration
        generated = await self.adapters.query_generator.generate_queries(
            configuration.query, configuration.criteria, configuration.options, search_id=run.search_id
        )
        if not generated:
            raise StageFailed(SearchStage.QUERY_GENERATION, "no queries generated")

        result = self.deduplicator.deduplicate(
            generated,
            method=self.config.dedup_method,
            threshold=self.config.dedup_threshold,
            keep_highest_scored=True,
        )
        by_id = {q.id: q for q in generated}
        uniques = [by_id[query_id] for query_id in result.unique_queries]
        kept = [q for q in uniques if q.scores.overall >= self.config.min_query_score] or uniques[:1]
        kept = kept[: self.config.max_generated_queries]

        self._publish(
            run,
            run.tracker.advance(
                SearchStage.QUERY_GENERATION,
                1.0,
                f"Generated {len(kept)} queries ({result.stats.duplicates_removed} duplicates removed)",
            ),
        )
        return kept

    async def _search_web(self, run: _SearchRun, queries: Sequence[GeneratedQuery]) -> list[SearchResult]:
        options = run.configuration.options
        targets = list(queries[: self.config.max_search_queries])
        merged: dict[str, SearchResult] = {}
        failures = 0

        for index, query in enumerate(targets, start=1):
            self._checkpoint(run)
            try:
                results = await self.adapters.web_search.search_web(query.text, max_results=options.max_results)
            except ProviderError as exc:
                failures += 1
                run.errors.append({"stage": SearchStage.WEB_SEARCH.value, "target": query.text, "error": str(exc)})
                logger.warning(f"Web search failed for query '{query.text}': {exc}")
                if failures == len(targets):
                    raise
                continue
            for result in results:
                if not result.url or not domain_allowed(result.domain, run.configuration.criteria):
                    continue
                existing = merged.get(result.url)
                if existing is None or result.score > existing.score:
                    merged[result.url] = result
            self._publish(
                run,
                run.tracker.advance(SearchStage.WEB_SEARCH, index / len(targets), f"Searched {index}/{len(targets)} queries"),
            )

        ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)[: options.max_results]
        run.sources = [SearchSource.from_result(r) for r in ranked]
        await self.gateway.append_sources(run.search_id, run.sources)
        return ranked

    async def _scrape(self, run: _SearchRun, results: Sequence[SearchResult]) -> list[ScrapedPage]:
        if not run.configuration.options.enable_content_scraping:
            self._publish(
                run, run.tracker.advance(SearchStage.CONTENT_SCRAPING, 1.0, "Scraping disabled, using search snippets")
            )
            return [
                ScrapedPage(url=r.url, final_url=r.url, status_code=0, title=r.title, content=r.content)
                for r in results
            ]

        targets = list(results[: self.config.max_scrape_urls])
        pages: list[ScrapedPage] = []
        for index, result in enumerate(targets, start=1):
            self._checkpoint(run)
            try:
                page = await self.adapters.scraper.scrape_content(result.url)
            except ProviderError as exc:
                run.errors.append({"stage": SearchStage.CONTENT_SCRAPING.value, "target": result.url, "error": str(exc)})
                logger.warning(f"Scrape failed for {result.url}: {exc}")
                continue
            if not page.title:
                page.title = result.title
            pages.append(page)
            self._publish(
                run,
                run.tracker.advance(SearchStage.CONTENT_SCRAPING, index / len(targets), f"Scraped {index}/{len(targets)} pages"),
            )
        return pages

    async def _extract(self, run: _SearchRun, pages: Sequence[ScrapedPage]) -> list[ExtractedContact]:
        options = run.configuration.options
        if not options.enable_contact_extraction:
            self._publish(run, run.tracker.advance(SearchStage.CONTACT_EXTRACTION, 1.0, "Contact extraction disabled"))
            return []

        eligible = [p for p in pages if len(p.content) > self.config.min_content_chars]
        sources_by_url = {s.url: s for s in run.sources}
        extracted: list[ExtractedContact] = []
        for index, page in enumerate(eligible, start=1):
            self._checkpoint(run)
            try:
                contacts = await self.adapters.contact_extractor.extract_contacts(
                    [page], options, query=run.configuration.query
                )
            except ProviderError as exc:
                run.errors.append({"stage": SearchStage.CONTACT_EXTRACTION.value, "target": page.url, "error": str(exc)})
                logger.warning(f"Contact extraction failed for {page.url}: {exc}")
                continue
            kept = [c for c in contacts if c.confidence_score >= options.confidence_threshold]
            kept = kept[: options.max_contacts_per_source]
            extracted.extend(kept)
            if page.url in sources_by_url:
                sources_by_url[page.url].contact_count += len(kept)
            self._publish(
                run,
                run.tracker.advance(
                    SearchStage.CONTACT_EXTRACTION,
                    index / len(eligible),
                    f"Extracted {len(extracted)} contacts from {index}/{len(eligible)} pages",
                ),
            )
        return extracted

    async def _aggregate(self, run: _SearchRun, contacts: Sequence[ExtractedContact]) -> AggregatedResult:
        unique, groups = aggregate_contacts(contacts)
        return AggregatedResult(
            sources=list(run.sources),
            contacts=unique,
            duplicates=groups,
            total_found=len(contacts),
            average_confidence=sum(c.confidence_score for c in unique) / len(unique) if unique else 0.0,
            average_quality=sum(c.quality_score for c in unique) / len(unique) if unique else 0.0,
        )

    async def _finalize(self, run: _SearchRun, aggregate: AggregatedResult, from_cache: bool = False) -> None:
        completed_at = self._clock()
        started_at = run.started_at or completed_at
        async with run.lock:
            if run.cancel_event.is_set() or not self._claim_terminal(run.search_id):
                raise SearchCancelled(run.search_id)
            try:
                if from_cache:
                    await self.gateway.append_sources(run.search_id, aggregate.sources)
                else:
                    await self.gateway.update_source_counts(
                        run.search_id, {s.url: s.contact_count for s in aggregate.sources if s.contact_count}
                    )
                await self.gateway.append_contacts(run.search_id, aggregate.contacts)
                await self.gateway.update_search(
                    run.search_id,
                    status=SearchStatus.COMPLETED,
                    completed_at=completed_at,
                    contacts_found=aggregate.total_found,
                    contacts_imported=len(aggregate.contacts),
                    duration_seconds=max((completed_at - started_at).total_seconds(), 0.0),
                )
            finally:
                self._release_terminal(run.search_id)

        if self.cache is not None and run.configuration.options.enable_caching and not from_cache:
            self.cache.set(run.configuration, aggregate)
        self.channel.publish(
            run.tracker.finish(SearchStatus.COMPLETED, f"Found {len(aggregate.contacts)} unique contacts")
        )
        log_event(
            "search_completed",
            f"Search {run.search_id} completed",
            search_id=run.search_id,
            contacts_found=aggregate.total_found,
            contacts_imported=len(aggregate.contacts),
            partial_errors=len(run.errors),
            from_cache=from_cache,
        )

    async def _fail(self, run: _SearchRun, stage: SearchStage, reason: str) -> None:
        completed_at = self._clock()
        async with run.lock:
            if run.cancel_event.is_set() or not self._claim_terminal(run.search_id):
                return
            try:
                await self.gateway.update_search(
                    run.search_id,
                    status=SearchStatus.FAILED,
                    completed_at=completed_at,
                    error=reason,
                    failed_stage=stage.value,
                    duration_seconds=(
                        max((completed_at - run.started_at).total_seconds(), 0.0) if run.started_at else None
                    ),
                )
            finally:
                self._release_terminal(run.search_id)
        self.channel.publish(run.tracker.finish(SearchStatus.FAILED, reason))
        log_search_stage(run.search_id, stage.value, "failed", {"error": reason, "partial_errors": run.errors})
