from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Sequence

from contactscout.models.search import QueryCount, SearchRecord, SearchStatistics, SearchStatus

TIME_RANGES: tuple[tuple[str, timedelta | None], ...] = (
    ("Last 24h", timedelta(days=1)),
    ("Last 7d", timedelta(days=7)),
    ("Last 30d", timedelta(days=30)),
    ("Older", None),
)

TOP_QUERY_LIMIT = 10


def _bucket(created_at: datetime | None, now: datetime) -> str:
    if created_at is None:
        return "Older"
    age = now - created_at
    for label, limit in TIME_RANGES:
        if limit is not None and age <= limit:
            return label
    return "Older"


def compute_statistics(records: Sequence[SearchRecord], now: datetime | None = None) -> SearchStatistics:
    """Aggregate search history. Every ratio is zero when there is no history.

    Processing time is averaged over all terminal records, whatever their
    outcome. Time-range buckets are exclusive (a search counted in "Last 24h"
    is not also counted in "Last 7d").
    """
    now = now or datetime.now(timezone.utc)
    total = len(records)
    by_status = Counter(r.status for r in records)

    durations = [
        seconds
        for r in records
        if r.status.is_terminal and (seconds := r.processing_seconds()) is not None
    ]

    buckets = {label: 0 for label, _ in TIME_RANGES}
    for record in records:
        buckets[_bucket(record.created_at, now)] += 1

    query_counts = Counter(r.configuration.query.strip() for r in records if r.configuration.query.strip())
    completed = by_status[SearchStatus.COMPLETED]
    failed = by_status[SearchStatus.FAILED]

    return SearchStatistics(
        total_searches=total,
        pending_searches=by_status[SearchStatus.PENDING],
        active_searches=by_status[SearchStatus.PROCESSING],
        completed_searches=completed,
        failed_searches=failed,
        cancelled_searches=by_status[SearchStatus.CANCELLED],
        average_processing_time=sum(durations) / len(durations) if durations else 0.0,
        average_contacts_per_search=sum(r.contacts_found for r in records) / total if total else 0.0,
        success_rate=completed / total * 100 if total else 0.0,
        error_rate=failed / total * 100 if total else 0.0,
        searches_by_time_range=buckets,
        top_queries=[QueryCount(query, count) for query, count in query_counts.most_common(TOP_QUERY_LIMIT)],
    )
