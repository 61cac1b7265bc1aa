"""Stage-weighted progress snapshots and the channel that fans them out."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from loguru import logger

from contactscout.models.search import (
    PIPELINE_STAGES,
    ProgressSnapshot,
    SearchStage,
    SearchStatus,
)

STAGE_WEIGHTS: dict[SearchStage, float] = {
    SearchStage.INITIALIZING: 5,
    SearchStage.QUERY_GENERATION: 15,
    SearchStage.WEB_SEARCH: 25,
    SearchStage.CONTENT_SCRAPING: 25,
    SearchStage.CONTACT_EXTRACTION: 20,
    SearchStage.RESULT_AGGREGATION: 5,
    SearchStage.FINALIZATION: 5,
}

_TERMINAL_STAGES = {
    SearchStatus.COMPLETED: SearchStage.COMPLETED,
    SearchStatus.FAILED: SearchStage.FAILED,
    SearchStatus.CANCELLED: SearchStage.CANCELLED,
}

ProgressCallback = Callable[[str, ProgressSnapshot], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressTracker:
    """Keeps the progress of one search. Percentage never decreases."""

    def __init__(self, search_id: str):
        self.search_id = search_id
        self._stage_progress: dict[str, float] = {stage.value: 0.0 for stage in PIPELINE_STAGES}
        self._snapshot = ProgressSnapshot(
            search_id=search_id,
            status=SearchStatus.PENDING,
            stage=SearchStage.INITIALIZING,
            percentage=0.0,
            message="Search queued",
            current_step=0,
            total_steps=len(PIPELINE_STAGES),
            stage_progress=dict(self._stage_progress),
            updated_at=_utcnow(),
        )

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    def _weighted_percentage(self) -> float:
        total = sum(STAGE_WEIGHTS.values())
        done = sum(
            STAGE_WEIGHTS[stage] * self._stage_progress[stage.value] / 100.0
            for stage in PIPELINE_STAGES
        )
        return round(done / total * 100.0, 2)

    def _emit(self, status: SearchStatus, stage: SearchStage, message: str, percentage: float) -> ProgressSnapshot:
        current_step = PIPELINE_STAGES.index(stage) + 1 if stage in PIPELINE_STAGES else self._snapshot.current_step
        self._snapshot = ProgressSnapshot(
            search_id=self.search_id,
            status=status,
            stage=stage,
            percentage=max(self._snapshot.percentage, percentage),
            message=message,
            current_step=current_step,
            total_steps=len(PIPELINE_STAGES),
            stage_progress=dict(self._stage_progress),
            updated_at=_utcnow(),
        )
        return self._snapshot

    def enter_stage(self, stage: SearchStage, message: str = "") -> ProgressSnapshot:
        for earlier in PIPELINE_STAGES[: PIPELINE_STAGES.index(stage)]:
            self._stage_progress[earlier.value] = 100.0
        return self._emit(
            SearchStatus.PROCESSING,
            stage,
            message or f"Running {stage.value.replace('_', ' ')}",
            self._weighted_percentage(),
        )

    def advance(self, stage: SearchStage, fraction: float, message: str = "") -> ProgressSnapshot:
        """Record partial progress within ``stage``; ``fraction`` is 0..1."""
        fraction = max(0.0, min(1.0, fraction))
        current = self._stage_progress[stage.value]
        self._stage_progress[stage.value] = max(current, round(fraction * 100.0, 2))
        return self._emit(
            SearchStatus.PROCESSING,
            stage,
            message or self._snapshot.message,
            self._weighted_percentage(),
        )

    def finish(self, status: SearchStatus, message: str) -> ProgressSnapshot:
        if status is SearchStatus.COMPLETED:
            for stage in PIPELINE_STAGES:
                self._stage_progress[stage.value] = 100.0
            return self._emit(status, SearchStage.COMPLETED, message, 100.0)
        return self._emit(status, _TERMINAL_STAGES[status], message, self._snapshot.percentage)


class ProgressSubscription:
    """Bounded queue of snapshots for one subscriber.

    When the queue is full the oldest snapshot is dropped. ``None`` marks the
    end of the stream.
    """

    def __init__(self, channel: "ProgressChannel", search_id: str | None, maxsize: int):
        self.search_id = search_id
        self.dropped = 0
        self._channel = channel
        self._queue: asyncio.Queue[ProgressSnapshot | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, snapshot: ProgressSnapshot) -> bool:
        return self.search_id is None or self.search_id == snapshot.search_id

    def _put(self, item: ProgressSnapshot | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def push(self, snapshot: ProgressSnapshot) -> None:
        if not self._closed:
            self._put(snapshot)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(None)
        self._channel.discard(self)

    async def get(self) -> ProgressSnapshot | None:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[ProgressSnapshot]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class ProgressChannel:
    """Publish/subscribe fan-out of progress snapshots."""

    def __init__(self, queue_size: int = 64, max_tracked: int = 1024):
        self.queue_size = queue_size
        self.max_tracked = max_tracked
        self._subscriptions: list[ProgressSubscription] = []
        self._callbacks: list[ProgressCallback] = []
        self._latest: dict[str, ProgressSnapshot] = {}

    def subscribe(self, search_id: str | None = None) -> ProgressSubscription:
        subscription = ProgressSubscription(self, search_id, self.queue_size)
        self._subscriptions.append(subscription)
        latest = self._latest.get(search_id) if search_id else None
        if latest is not None:
            subscription.push(latest)
            if latest.status.is_terminal:
                subscription.close()
        return subscription

    def discard(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_callback(self, callback: ProgressCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def latest(self, search_id: str) -> ProgressSnapshot | None:
        return self._latest.get(search_id)

    def publish(self, snapshot: ProgressSnapshot) -> None:
        self._latest.pop(snapshot.search_id, None)
        self._latest[snapshot.search_id] = snapshot
        self._trim_latest()
        for subscription in list(self._subscriptions):
            if subscription.wants(snapshot):
                subscription.push(snapshot)
                if snapshot.status.is_terminal and subscription.search_id is not None:
                    subscription.close()
        for callback in list(self._callbacks):
            try:
                callback(snapshot.search_id, snapshot)
            except Exception:
                logger.exception(f"Progress callback failed for search {snapshot.search_id}")

    def _trim_latest(self) -> None:
        excess = len(self._latest) - self.max_tracked
        if excess <= 0:
            return
        finished = [sid for sid, snap in self._latest.items() if snap.status.is_terminal][:excess]
        for search_id in finished:
            del self._latest[search_id]

    def close_all(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
        self._callbacks.clear()
