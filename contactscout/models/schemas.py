from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from contactscout.models.search import (
    Priority,
    ProgressSnapshot,
    SearchConfiguration,
    SearchCriteria,
    SearchOptions,
    SearchStatistics,
    SearchStatusView,
    StageTimeouts,
)


# --- Requests ---


class CriteriaPayload(BaseModel):
    countries: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    beats: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    exclude_domains: list[str] = Field(default_factory=list)

    def to_criteria(self) -> SearchCriteria:
        return SearchCriteria.from_dict(self.model_dump())


class StageTimeoutsPayload(BaseModel):
    query_generation: float | None = None
    web_search: float | None = None
    content_scraping: float | None = None
    contact_extraction: float | None = None


class OptionsPayload(BaseModel):
    max_results: int = 50
    max_contacts_per_source: int = 10
    enable_ai_enhancement: bool = True
    enable_content_scraping: bool = True
    enable_contact_extraction: bool = True
    enable_caching: bool = True
    priority: Priority = Priority.NORMAL
    confidence_threshold: float = 0.5
    stage_timeouts: StageTimeoutsPayload = Field(default_factory=StageTimeoutsPayload)
    processing_timeout: float | None = None

    def to_options(self) -> SearchOptions:
        data = self.model_dump(exclude={"stage_timeouts"})
        return SearchOptions(stage_timeouts=StageTimeouts(**self.stage_timeouts.model_dump()), **data)


class SearchRequest(BaseModel):
    query: str = ""
    criteria: CriteriaPayload = Field(default_factory=CriteriaPayload)
    options: OptionsPayload = Field(default_factory=OptionsPayload)
    priority: Priority | None = None
    timeout: float | None = None

    def to_configuration(self) -> SearchConfiguration:
        return SearchConfiguration(
            query=self.query,
            criteria=self.criteria.to_criteria(),
            options=self.options.to_options(),
        )


class CancelRequest(BaseModel):
    reason: str | None = None


# --- Responses ---


class ProgressResponse(BaseModel):
    search_id: str
    status: str
    stage: str
    percentage: float
    message: str
    current_step: int
    total_steps: int
    stage_progress: dict[str, float]
    updated_at: datetime | None

    @classmethod
    def from_snapshot(cls, snapshot: ProgressSnapshot) -> "ProgressResponse":
        return cls(
            search_id=snapshot.search_id,
            status=snapshot.status.value,
            stage=snapshot.stage.value,
            percentage=snapshot.percentage,
            message=snapshot.message,
            current_step=snapshot.current_step,
            total_steps=snapshot.total_steps,
            stage_progress=dict(snapshot.stage_progress),
            updated_at=snapshot.updated_at,
        )


class SearchSubmitResponse(BaseModel):
    search_id: str
    status: str
    progress: ProgressResponse


class SearchStatusResponse(BaseModel):
    search_id: str
    status: str
    priority: str
    progress: ProgressResponse
    configuration: dict[str, Any]
    contacts_found: int
    contacts_imported: int
    created_at: datetime | None
    updated_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None = None
    failed_stage: str | None = None
    sources: list[dict[str, Any]] = Field(default_factory=list)
    contacts: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_view(cls, view: SearchStatusView) -> "SearchStatusResponse":
        return cls(
            search_id=view.search_id,
            status=view.status.value,
            priority=view.priority.value,
            progress=ProgressResponse.from_snapshot(view.progress),
            configuration=view.configuration.to_dict(),
            contacts_found=view.contacts_found,
            contacts_imported=view.contacts_imported,
            created_at=view.created_at,
            updated_at=view.updated_at,
            started_at=view.started_at,
            completed_at=view.completed_at,
            error=view.error,
            failed_stage=view.failed_stage,
            sources=[s.to_dict() for s in view.sources],
            contacts=[c.to_dict() for c in view.contacts],
        )


class CancellationResponse(BaseModel):
    search_id: str
    success: bool
    message: str
    cancelled_at: datetime | None = None


class QueryCountResponse(BaseModel):
    query: str
    count: int


class StatisticsResponse(BaseModel):
    total_searches: int
    pending_searches: int
    active_searches: int
    completed_searches: int
    failed_searches: int
    cancelled_searches: int
    average_processing_time: float
    average_contacts_per_search: float
    success_rate: float
    error_rate: float
    searches_by_time_range: dict[str, int]
    top_queries: list[QueryCountResponse]

    @classmethod
    def from_statistics(cls, stats: SearchStatistics) -> "StatisticsResponse":
        return cls(
            total_searches=stats.total_searches,
            pending_searches=stats.pending_searches,
            active_searches=stats.active_searches,
            completed_searches=stats.completed_searches,
            failed_searches=stats.failed_searches,
            cancelled_searches=stats.cancelled_searches,
            average_processing_time=stats.average_processing_time,
            average_contacts_per_search=stats.average_contacts_per_search,
            success_rate=stats.success_rate,
            error_rate=stats.error_rate,
            searches_by_time_range=dict(stats.searches_by_time_range),
            top_queries=[QueryCountResponse(query=q.query, count=q.count) for q in stats.top_queries],
        )
