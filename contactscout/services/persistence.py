"""Persistence gateway contract and its in-memory implementation."""
from __future__ import annotations

import asyncio
import copy
from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence

from contactscout.models.contacts import ExtractedContact, SearchSource
from contactscout.models.search import SearchFilter, SearchRecord

_IMMUTABLE_FIELDS = {"id", "user_id", "configuration", "created_at", "sources", "contacts"}
UPDATABLE_FIELDS = frozenset(f.name for f in fields(SearchRecord) if f.name not in _IMMUTABLE_FIELDS)


class SearchNotFound(LookupError):
    def __init__(self, search_id: str):
        self.search_id = search_id
        super().__init__(f"Search not found: {search_id}")


class SearchGateway(Protocol):
    async def create_search(self, record: SearchRecord) -> str: ...

    async def update_search(self, search_id: str, **changes: Any) -> None: ...

    async def append_sources(self, search_id: str, sources: Sequence[SearchSource]) -> None: ...

    async def update_source_counts(self, search_id: str, counts: Mapping[str, int]) -> None: ...

    async def append_contacts(self, search_id: str, contacts: Sequence[ExtractedContact]) -> None: ...

    async def find_search(self, search_id: str) -> SearchRecord | None: ...

    async def list_searches(self, user_id: str | None, search_filter: SearchFilter | None = None) -> list[SearchRecord]: ...

    async def close(self) -> None: ...


def check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")


def matches_filter(record: SearchRecord, search_filter: SearchFilter) -> bool:
    if search_filter.statuses and record.status not in search_filter.statuses:
        return False
    if search_filter.created_after and (record.created_at is None or record.created_at < search_filter.created_after):
        return False
    if search_filter.created_before and (record.created_at is None or record.created_at >= search_filter.created_before):
        return False
    return True


class InMemorySearchGateway:
    """Dict-backed gateway. Records are copied in and out."""

    def __init__(self) -> None:
        self._records: dict[str, SearchRecord] = {}
        self._lock = asyncio.Lock()

    async def create_search(self, record: SearchRecord) -> str:
        async with self._lock:
            if record.id in self._records:
                raise ValueError(f"Search already exists: {record.id}")
            stored = copy.deepcopy(record)
            now = datetime.now(timezone.utc)
            stored.created_at = stored.created_at or now
            stored.updated_at = stored.updated_at or stored.created_at
            self._records[record.id] = stored
            return record.id

    async def update_search(self, search_id: str, **changes: Any) -> None:
        check_changes(changes)
        async with self._lock:
            record = self._records.get(search_id)
            if record is None:
                raise SearchNotFound(search_id)
            for name, value in changes.items():
                setattr(record, name, value)
            if "updated_at" not in changes:
                record.updated_at = datetime.now(timezone.utc)

    async def append_sources(self, search_id: str, sources: Sequence[SearchSource]) -> None:
        async with self._lock:
            record = self._records.get(search_id)
            if record is None:
                raise SearchNotFound(search_id)
            record.sources.extend(copy.deepcopy(list(sources)))

    async def update_source_counts(self, search_id: str, counts: Mapping[str, int]) -> None:
        async with self._lock:
            record = self._records.get(search_id)
            if record is None:
                raise SearchNotFound(search_id)
            for source in record.sources:
                if source.url in counts:
                    source.contact_count = counts[source.url]

    async def append_contacts(self, search_id: str, contacts: Sequence[ExtractedContact]) -> None:
        async with self._lock:
            record = self._records.get(search_id)
            if record is None:
                raise SearchNotFound(search_id)
            record.contacts.extend(copy.deepcopy(list(contacts)))

    async def find_search(self, search_id: str) -> SearchRecord | None:
        async with self._lock:
            record = self._records.get(search_id)
            return copy.deepcopy(record) if record is not None else None

    async def list_searches(self, user_id: str | None, search_filter: SearchFilter | None = None) -> list[SearchRecord]:
        search_filter = search_filter or SearchFilter()
        async with self._lock:
            records = [
                r
                for r in self._records.values()
                if (user_id is None or r.user_id == user_id) and matches_filter(r, search_filter)
            ]
            records.sort(
                key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True,
            )
            if search_filter.limit is not None:
                records = records[: search_filter.limit]
            return copy.deepcopy(records)

    async def close(self) -> None:
        return None
