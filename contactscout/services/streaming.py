from __future__ import annotations

from typing import Any

from contactscout.models.events import EventType, SSEEvent
from contactscout.models.search import ProgressSnapshot, SearchStatus


def progress_update(snapshot: ProgressSnapshot) -> SSEEvent:
    return SSEEvent(event=EventType.PROGRESS_UPDATE, data=snapshot.to_dict())


def from_snapshot(snapshot: ProgressSnapshot) -> SSEEvent:
    """Map a snapshot to the most specific event for its status."""
    if snapshot.status is SearchStatus.COMPLETED:
        return SSEEvent(event=EventType.SEARCH_COMPLETED, data=snapshot.to_dict())
    if snapshot.status is SearchStatus.FAILED:
        return SSEEvent(event=EventType.SEARCH_FAILED, data=snapshot.to_dict())
    if snapshot.status is SearchStatus.CANCELLED:
        return SSEEvent(event=EventType.SEARCH_CANCELLED, data=snapshot.to_dict())
    return progress_update(snapshot)


def error(message: str, search_id: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if search_id:
        data["search_id"] = search_id
    return SSEEvent(event=EventType.ERROR, data=data)
