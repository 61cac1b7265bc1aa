from __future__ import annotations

from typing import Iterable, Sequence

from loguru import logger

from contactscout.models.queries import (
    BatchDeduplicationResult,
    DeduplicationResult,
    DeduplicationStats,
    DuplicateMatch,
    GeneratedQuery,
    QueryBatch,
    SimilarityMethod,
    SimilarQuery,
)
from contactscout.services.similarity import similarity


class DeduplicationFailed(Exception):
    """The whole batch failed; no partial result is available."""

    def __init__(self, cause: BaseException, query_count: int):
        self.cause = cause
        self.query_count = query_count
        super().__init__(f"Query deduplication failed for {query_count} queries: {cause}")


def describe_similarity(score: float, method: SimilarityMethod) -> str:
    if score >= 0.95:
        label = "Nearly identical"
    elif score >= 0.85:
        label = "Very similar"
    elif score >= 0.75:
        label = "Similar"
    else:
        label = "Potentially duplicate"
    return f"{label} ({method})"


class QueryDeduplicator:
    def __init__(self, method: SimilarityMethod = "hybrid", threshold: float = 0.8):
        self.method = method
        self.threshold = threshold

    def deduplicate(
        self,
        queries: Sequence[GeneratedQuery],
        method: SimilarityMethod | None = None,
        threshold: float | None = None,
        keep_highest_scored: bool = True,
    ) -> DeduplicationResult:
        """Drop queries too similar to an already accepted one.

        With ``keep_highest_scored`` the batch is visited in descending
        ``scores.overall`` order (stable), so each cluster keeps its best
        member. A query is matched against the first accepted unique whose
        similarity reaches the threshold.
        """
        method = method or self.method
        threshold = self.threshold if threshold is None else threshold
        try:
            return self._deduplicate(queries, method, threshold, keep_highest_scored)
        except Exception as exc:
            logger.error(f"Deduplication failed for {len(queries)} queries: {exc}")
            raise DeduplicationFailed(exc, len(queries)) from exc

    def _deduplicate(
        self,
        queries: Sequence[GeneratedQuery],
        method: SimilarityMethod,
        threshold: float,
        keep_highest_scored: bool,
    ) -> DeduplicationResult:
        if not queries:
            return DeduplicationResult()

        ordered = list(queries)
        if keep_highest_scored:
            ordered.sort(key=lambda q: q.scores.overall, reverse=True)

        uniques: list[GeneratedQuery] = []
        duplicates: list[DuplicateMatch] = []
        for query in ordered:
            match = None
            for accepted in uniques:
                score = similarity(query.text, accepted.text, method)
                if score >= threshold:
                    match = DuplicateMatch(
                        query_id=query.id,
                        duplicate_of=accepted.id,
                        similarity=score,
                        reason=describe_similarity(score, method),
                    )
                    break
            if match is None:
                uniques.append(query)
            else:
                duplicates.append(match)

        return DeduplicationResult(
            duplicates=duplicates,
            unique_queries=[q.id for q in uniques],
            stats=DeduplicationStats(
                total_processed=len(ordered),
                duplicates_removed=len(duplicates),
                unique_queries=len(uniques),
            ),
        )

    def find_similar_queries(
        self,
        target: str,
        pool: Iterable[str],
        method: SimilarityMethod | None = None,
        threshold: float = 0.7,
        max_results: int = 10,
    ) -> list[SimilarQuery]:
        method = method or self.method
        matches: list[SimilarQuery] = []
        for candidate in pool:
            if candidate == target:
                continue
            score = similarity(target, candidate, method)
            if score >= threshold:
                matches.append(SimilarQuery(candidate, score, describe_similarity(score, method)))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:max_results]

    def batch_deduplicate(
        self,
        batches: Iterable[QueryBatch],
        method: SimilarityMethod | None = None,
        threshold: float | None = None,
        keep_highest_scored: bool = True,
    ) -> list[BatchDeduplicationResult]:
        return [
            BatchDeduplicationResult(
                batch_id=batch.batch_id,
                result=self.deduplicate(batch.queries, method, threshold, keep_highest_scored),
            )
            for batch in batches
        ]


def deduplication_stats(results: Sequence[DeduplicationResult]) -> dict[str, float]:
    total_processed = sum(r.stats.total_processed for r in results)
    duplicates_removed = sum(r.stats.duplicates_removed for r in results)
    unique_queries = sum(r.stats.unique_queries for r in results)
    count = len(results)
    return {
        "batches": count,
        "total_processed": total_processed,
        "duplicates_removed": duplicates_removed,
        "unique_queries": unique_queries,
        "average_duplicate_rate": duplicates_removed / total_processed if total_processed else 0.0,
        "average_unique_queries": unique_queries / count if count else 0.0,
    }
