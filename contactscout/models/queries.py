from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

SimilarityMethod = Literal["exact", "semantic", "hybrid"]

OVERALL_WEIGHTS = {
    "relevance": 0.40,
    "diversity": 0.25,
    "coverage": 0.35,
}

# Split of the coverage weight between its two parts.
COVERAGE_WEIGHTS = {
    "complexity": 0.20,
    "specificity": 0.15,
}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True, slots=True)
class QueryScores:
    relevance: float
    diversity: float
    coverage: float
    overall: float

    @classmethod
    def combine(cls, relevance: float, diversity: float, coverage: float) -> "QueryScores":
        relevance, diversity, coverage = _clamp(relevance), _clamp(diversity), _clamp(coverage)
        overall = (
            relevance * OVERALL_WEIGHTS["relevance"]
            + diversity * OVERALL_WEIGHTS["diversity"]
            + coverage * OVERALL_WEIGHTS["coverage"]
        )
        return cls(relevance, diversity, coverage, _clamp(overall))


@dataclass(slots=True)
class GeneratedQuery:
    id: str
    text: str
    original_query: str
    scores: QueryScores
    search_id: str | None = None
    batch_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    query_id: str
    duplicate_of: str
    similarity: float
    reason: str


@dataclass(frozen=True, slots=True)
class DeduplicationStats:
    total_processed: int = 0
    duplicates_removed: int = 0
    unique_queries: int = 0


@dataclass(slots=True)
class DeduplicationResult:
    duplicates: list[DuplicateMatch] = field(default_factory=list)
    unique_queries: list[str] = field(default_factory=list)
    stats: DeduplicationStats = field(default_factory=DeduplicationStats)


@dataclass(frozen=True, slots=True)
class SimilarQuery:
    query: str
    similarity: float
    reason: str


@dataclass(slots=True)
class QueryBatch:
    batch_id: str
    queries: list[GeneratedQuery]


@dataclass(slots=True)
class BatchDeduplicationResult:
    batch_id: str
    result: DeduplicationResult
