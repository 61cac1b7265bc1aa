from __future__ import annotations

import asyncio

import pytest

from contactscout.models.search import SearchStage, SearchStatus
from contactscout.services.progress import STAGE_WEIGHTS, ProgressChannel, ProgressTracker


def test_stage_weights_sum_to_one_hundred():
    assert sum(STAGE_WEIGHTS.values()) == 100


def test_tracker_percentage_follows_stage_weights():
    tracker = ProgressTracker("s1")
    assert tracker.snapshot.status is SearchStatus.PENDING
    assert tracker.snapshot.percentage == 0.0

    tracker.enter_stage(SearchStage.QUERY_GENERATION)
    assert tracker.snapshot.percentage == pytest.approx(5.0)
    assert tracker.snapshot.current_step == 2

    tracker.advance(SearchStage.QUERY_GENERATION, 0.5)
    assert tracker.snapshot.percentage == pytest.approx(12.5)

    snapshot = tracker.enter_stage(SearchStage.WEB_SEARCH, "Searching")
    assert snapshot.percentage == pytest.approx(20.0)
    assert snapshot.message == "Searching"
    assert snapshot.stage_progress["query_generation"] == 100.0


def test_tracker_percentage_never_decreases():
    tracker = ProgressTracker("s1")
    tracker.enter_stage(SearchStage.WEB_SEARCH)
    tracker.advance(SearchStage.WEB_SEARCH, 0.8)
    before = tracker.snapshot.percentage
    tracker.advance(SearchStage.WEB_SEARCH, 0.2)
    assert tracker.snapshot.percentage == before


def test_finish_completed_is_one_hundred_percent():
    tracker = ProgressTracker("s1")
    snapshot = tracker.finish(SearchStatus.COMPLETED, "done")
    assert snapshot.percentage == 100.0
    assert snapshot.stage is SearchStage.COMPLETED


def test_finish_failed_keeps_percentage():
    tracker = ProgressTracker("s1")
    tracker.enter_stage(SearchStage.CONTENT_SCRAPING)
    snapshot = tracker.finish(SearchStatus.FAILED, "boom")
    assert snapshot.stage is SearchStage.FAILED
    assert snapshot.percentage == pytest.approx(45.0)


@pytest.mark.asyncio
async def test_subscription_receives_events_and_ends_on_terminal():
    channel = ProgressChannel(queue_size=8)
    tracker = ProgressTracker("s1")
    subscription = channel.subscribe("s1")

    channel.publish(tracker.enter_stage(SearchStage.INITIALIZING))
    channel.publish(ProgressTracker("other").enter_stage(SearchStage.INITIALIZING))
    channel.publish(tracker.finish(SearchStatus.COMPLETED, "done"))

    received = [snapshot async for snapshot in subscription]
    assert [s.search_id for s in received] == ["s1", "s1"]
    assert received[-1].status is SearchStatus.COMPLETED
    assert subscription.closed


@pytest.mark.asyncio
async def test_full_queue_drops_oldest():
    channel = ProgressChannel(queue_size=2)
    subscription = channel.subscribe()
    tracker = ProgressTracker("s1")
    for fraction in (0.1, 0.2, 0.3):
        channel.publish(tracker.advance(SearchStage.INITIALIZING, fraction))

    assert subscription.dropped == 1
    first = await subscription.get()
    assert first.stage_progress["initializing"] == 20.0


@pytest.mark.asyncio
async def test_late_subscriber_to_finished_search_gets_final_snapshot():
    channel = ProgressChannel()
    channel.publish(ProgressTracker("s1").finish(SearchStatus.CANCELLED, "stopped"))

    subscription = channel.subscribe("s1")
    received = await asyncio.wait_for(subscription.get(), timeout=1)
    assert received.status is SearchStatus.CANCELLED
    assert await subscription.get() is None


def test_callbacks_are_isolated_from_each_other():
    channel = ProgressChannel()
    calls: list[str] = []

    def broken(search_id, snapshot):
        raise RuntimeError("listener bug")

    channel.add_callback(broken)
    remove = channel.add_callback(lambda search_id, snapshot: calls.append(search_id))
    channel.publish(ProgressTracker("s1").snapshot)
    remove()
    channel.publish(ProgressTracker("s2").snapshot)

    assert calls == ["s1"]
    assert channel.latest("s2") is not None
