from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from contactscout.models.contacts import ExtractedContact, SearchSource


class SearchStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    def can_transition_to(self, target: "SearchStatus") -> bool:
        if self.is_terminal or target is SearchStatus.PENDING:
            return False
        return not (self is SearchStatus.PROCESSING and target is SearchStatus.PROCESSING)


_TERMINAL_STATUSES = frozenset(
    {SearchStatus.COMPLETED, SearchStatus.FAILED, SearchStatus.CANCELLED}
)


class SearchStage(StrEnum):
    INITIALIZING = "initializing"
    QUERY_GENERATION = "query_generation"
    WEB_SEARCH = "web_search"
    CONTENT_SCRAPING = "content_scraping"
    CONTACT_EXTRACTION = "contact_extraction"
    RESULT_AGGREGATION = "result_aggregation"
    FINALIZATION = "finalization"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PIPELINE_STAGES: tuple[SearchStage, ...] = (
    SearchStage.INITIALIZING,
    SearchStage.QUERY_GENERATION,
    SearchStage.WEB_SEARCH,
    SearchStage.CONTENT_SCRAPING,
    SearchStage.CONTACT_EXTRACTION,
    SearchStage.RESULT_AGGREGATION,
    SearchStage.FINALIZATION,
)


class Priority(StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "normal": 1, "low": 2}[self.value]


class InvalidSearchConfiguration(ValueError):
    """Raised by ``SearchConfiguration.validate`` with every problem found."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


@dataclass(frozen=True, slots=True)
class SearchCriteria:
    countries: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    beats: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    topics: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    exclude_domains: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "countries": list(self.countries),
            "categories": list(self.categories),
            "beats": list(self.beats),
            "languages": list(self.languages),
            "topics": list(self.topics),
            "domains": list(self.domains),
            "exclude_domains": list(self.exclude_domains),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SearchCriteria":
        data = data or {}
        return cls(
            **{
                key: tuple(str(v) for v in (data.get(key) or []))
                for key in (
                    "countries",
                    "categories",
                    "beats",
                    "languages",
                    "topics",
                    "domains",
                    "exclude_domains",
                )
            }
        )


@dataclass(frozen=True, slots=True)
class StageTimeouts:
    """Per-stage timeouts in seconds. ``None`` falls back to service defaults."""

    query_generation: float | None = None
    web_search: float | None = None
    content_scraping: float | None = None
    contact_extraction: float | None = None

    def for_stage(self, stage: SearchStage) -> float | None:
        return getattr(self, stage.value, None)

    def to_dict(self) -> dict[str, float | None]:
        return {
            "query_generation": self.query_generation,
            "web_search": self.web_search,
            "content_scraping": self.content_scraping,
            "contact_extraction": self.contact_extraction,
        }


@dataclass(frozen=True, slots=True)
class SearchOptions:
    max_results: int = 50
    max_contacts_per_source: int = 10
    enable_ai_enhancement: bool = True
    enable_content_scraping: bool = True
    enable_contact_extraction: bool = True
    enable_caching: bool = True
    priority: Priority = Priority.NORMAL
    confidence_threshold: float = 0.5
    stage_timeouts: StageTimeouts = field(default_factory=StageTimeouts)
    processing_timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_results": self.max_results,
            "max_contacts_per_source": self.max_contacts_per_source,
            "enable_ai_enhancement": self.enable_ai_enhancement,
            "enable_content_scraping": self.enable_content_scraping,
            "enable_contact_extraction": self.enable_contact_extraction,
            "enable_caching": self.enable_caching,
            "priority": self.priority.value,
            "confidence_threshold": self.confidence_threshold,
            "stage_timeouts": self.stage_timeouts.to_dict(),
            "processing_timeout": self.processing_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SearchOptions":
        data = dict(data or {})
        timeouts = data.pop("stage_timeouts", None) or {}
        if "priority" in data and data["priority"] is not None:
            data["priority"] = Priority(data["priority"])
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        return cls(stage_timeouts=StageTimeouts(**timeouts), **known)


@dataclass(frozen=True, slots=True)
class SearchConfiguration:
    query: str
    criteria: SearchCriteria = field(default_factory=SearchCriteria)
    options: SearchOptions = field(default_factory=SearchOptions)

    def validate(self) -> None:
        """Reject out-of-range options. Empty query/criteria are allowed."""
        errors: list[str] = []
        opts = self.options
        if opts.max_results < 1:
            errors.append("options.max_results must be >= 1")
        if opts.max_contacts_per_source < 1:
            errors.append("options.max_contacts_per_source must be >= 1")
        if not 0.0 <= opts.confidence_threshold <= 1.0:
            errors.append("options.confidence_threshold must be within [0, 1]")
        if opts.processing_timeout is not None and opts.processing_timeout <= 0:
            errors.append("options.processing_timeout must be positive")
        for name, value in opts.stage_timeouts.to_dict().items():
            if value is not None and value <= 0:
                errors.append(f"options.stage_timeouts.{name} must be positive")
        if errors:
            raise InvalidSearchConfiguration(errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "criteria": self.criteria.to_dict(),
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchConfiguration":
        return cls(
            query=str(data.get("query") or ""),
            criteria=SearchCriteria.from_dict(data.get("criteria")),
            options=SearchOptions.from_dict(data.get("options")),
        )


@dataclass(slots=True)
class SearchRecord:
    id: str
    user_id: str
    configuration: SearchConfiguration
    status: SearchStatus = SearchStatus.PENDING
    priority: Priority = Priority.NORMAL
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    contacts_found: int = 0
    contacts_imported: int = 0
    duration_seconds: float | None = None
    error: str | None = None
    failed_stage: str | None = None
    sources: list[SearchSource] = field(default_factory=list)
    contacts: list[ExtractedContact] = field(default_factory=list)

    def processing_seconds(self) -> float | None:
        if self.duration_seconds is not None:
            return self.duration_seconds
        if self.completed_at is None:
            return None
        begin = self.started_at or self.created_at
        if begin is None:
            return None
        return max((self.completed_at - begin).total_seconds(), 0.0)


@dataclass(slots=True)
class ProgressSnapshot:
    search_id: str
    status: SearchStatus
    stage: SearchStage
    percentage: float
    message: str
    current_step: int
    total_steps: int
    stage_progress: dict[str, float] = field(default_factory=dict)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "search_id": self.search_id,
            "status": self.status.value,
            "stage": self.stage.value,
            "percentage": self.percentage,
            "message": self.message,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "stage_progress": dict(self.stage_progress),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(slots=True)
class SubmissionResult:
    search_id: str
    status: SearchStatus
    progress: ProgressSnapshot


@dataclass(slots=True)
class CancellationResult:
    search_id: str
    success: bool
    message: str
    cancelled_at: datetime | None = None


@dataclass(slots=True)
class SearchStatusView:
    search_id: str
    status: SearchStatus
    progress: ProgressSnapshot
    configuration: SearchConfiguration
    priority: Priority
    contacts_found: int
    contacts_imported: int
    created_at: datetime | None
    updated_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None = None
    failed_stage: str | None = None
    sources: list[SearchSource] = field(default_factory=list)
    contacts: list[ExtractedContact] = field(default_factory=list)


@dataclass(slots=True)
class SearchFilter:
    statuses: tuple[SearchStatus, ...] = ()
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = None


@dataclass(slots=True)
class QueryCount:
    query: str
    count: int


@dataclass(slots=True)
class SearchStatistics:
    total_searches: int = 0
    pending_searches: int = 0
    active_searches: int = 0
    completed_searches: int = 0
    failed_searches: int = 0
    cancelled_searches: int = 0
    average_processing_time: float = 0.0
    average_contacts_per_search: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    searches_by_time_range: dict[str, int] = field(default_factory=dict)
    top_queries: list[QueryCount] = field(default_factory=list)
