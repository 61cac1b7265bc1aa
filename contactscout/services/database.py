"""PostgreSQL search gateway using asyncpg."""

from __future__ import annotations

import json
import time
from typing import Any, Mapping, Sequence

import asyncpg

from contactscout.models.contacts import ExtractedContact, SearchSource
from contactscout.models.search import (
    Priority,
    SearchConfiguration,
    SearchFilter,
    SearchRecord,
    SearchStatus,
)
from contactscout.services.logger import log_db_operation
from contactscout.services.persistence import SearchNotFound, check_changes

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS searches (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    priority TEXT NOT NULL,
    configuration JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    contacts_found INTEGER NOT NULL DEFAULT 0,
    contacts_imported INTEGER NOT NULL DEFAULT 0,
    duration_seconds DOUBLE PRECISION,
    error TEXT,
    failed_stage TEXT
);
CREATE INDEX IF NOT EXISTS searches_user_created_idx ON searches (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS searches_status_idx ON searches (status);

CREATE TABLE IF NOT EXISTS search_sources (
    id BIGSERIAL PRIMARY KEY,
    search_id TEXT NOT NULL REFERENCES searches(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    domain TEXT NOT NULL,
    title TEXT,
    provider TEXT,
    query TEXT,
    confidence_score DOUBLE PRECISION,
    contact_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS search_contacts (
    id TEXT NOT NULL,
    search_id TEXT NOT NULL REFERENCES searches(id) ON DELETE CASCADE,
    data JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (search_id, id)
);
"""

_SEARCH_COLUMNS = (
    "id, user_id, status, priority, configuration, created_at, updated_at, started_at, "
    "completed_at, contacts_found, contacts_imported, duration_seconds, error, failed_stage"
)


def _json_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _db_value(value: Any) -> Any:
    if isinstance(value, (SearchStatus, Priority)):
        return value.value
    return value


def _record_from_row(row: asyncpg.Record) -> SearchRecord:
    return SearchRecord(
        id=row["id"],
        user_id=row["user_id"],
        configuration=SearchConfiguration.from_dict(_json_object(row["configuration"])),
        status=SearchStatus(row["status"]),
        priority=Priority(row["priority"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        contacts_found=row["contacts_found"],
        contacts_imported=row["contacts_imported"],
        duration_seconds=row["duration_seconds"],
        error=row["error"],
        failed_stage=row["failed_stage"],
    )


class PostgresSearchGateway:
    """Gateway over three tables: searches, search_sources, search_contacts."""

    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 10):
        if not database_url:
            raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        return self._pool

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_search(self, record: SearchRecord) -> str:
        t0 = time.monotonic()
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO searches (id, user_id, status, priority, configuration,
                                      created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, COALESCE($6, now()), COALESCE($6, now()))
                """,
                record.id,
                record.user_id,
                record.status.value,
                record.priority.value,
                json.dumps(record.configuration.to_dict()),
                record.created_at,
            )
        log_db_operation("insert", "searches", "success", details=f"id={record.id} duration_ms={int((time.monotonic() - t0) * 1000)}")
        return record.id

    async def update_search(self, search_id: str, **changes: Any) -> None:
        check_changes(changes)
        if not changes:
            return
        t0 = time.monotonic()
        columns = list(changes)
        set_clause = ", ".join(f"{name} = ${i + 2}" for i, name in enumerate(columns))
        if "updated_at" not in changes:
            set_clause += ", updated_at = now()"
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                f"UPDATE searches SET {set_clause} WHERE id = $1",
                search_id,
                *(_db_value(changes[name]) for name in columns),
            )
        if result.endswith(" 0"):
            raise SearchNotFound(search_id)
        log_db_operation("update", "searches", "success", details=f"id={search_id} fields={sorted(changes)} duration_ms={int((time.monotonic() - t0) * 1000)}")

    async def append_sources(self, search_id: str, sources: Sequence[SearchSource]) -> None:
        if not sources:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO search_sources (search_id, url, domain, title, provider, query,
                                            confidence_score, contact_count)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                [
                    (
                        search_id,
                        s.url,
                        s.domain,
                        s.title,
                        s.provider,
                        s.query,
                        s.confidence_score,
                        s.contact_count,
                    )
                    for s in sources
                ],
            )
        log_db_operation("insert", "search_sources", "success", details=f"search_id={search_id} rows={len(sources)}")

    async def update_source_counts(self, search_id: str, counts: Mapping[str, int]) -> None:
        if not counts:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                "UPDATE search_sources SET contact_count = $3 WHERE search_id = $1 AND url = $2",
                [(search_id, url, count) for url, count in counts.items()],
            )
        log_db_operation("update", "search_sources", "success", details=f"search_id={search_id} rows={len(counts)}")

    async def append_contacts(self, search_id: str, contacts: Sequence[ExtractedContact]) -> None:
        if not contacts:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO search_contacts (search_id, id, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (search_id, id) DO NOTHING
                """,
                [(search_id, c.id, json.dumps(c.to_dict())) for c in contacts],
            )
        log_db_operation("insert", "search_contacts", "success", details=f"search_id={search_id} rows={len(contacts)}")

    async def find_search(self, search_id: str) -> SearchRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SEARCH_COLUMNS} FROM searches WHERE id = $1", search_id
            )
            if row is None:
                return None
            record = _record_from_row(row)
            source_rows = await conn.fetch(
                """
                SELECT url, title, provider, query, confidence_score, contact_count
                FROM search_sources WHERE search_id = $1 ORDER BY id
                """,
                search_id,
            )
            contact_rows = await conn.fetch(
                "SELECT data FROM search_contacts WHERE search_id = $1 ORDER BY created_at",
                search_id,
            )
        record.sources = [
            SearchSource(
                url=r["url"],
                title=r["title"] or "",
                provider=r["provider"] or "",
                query=r["query"] or "",
                confidence_score=r["confidence_score"] or 0.0,
                contact_count=r["contact_count"],
            )
            for r in source_rows
        ]
        record.contacts = [ExtractedContact.from_dict(_json_object(r["data"])) for r in contact_rows]
        return record

    async def list_searches(self, user_id: str | None, search_filter: SearchFilter | None = None) -> list[SearchRecord]:
        search_filter = search_filter or SearchFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            params.append(user_id)
            clauses.append(f"user_id = ${len(params)}")
        if search_filter.statuses:
            params.append([s.value for s in search_filter.statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        if search_filter.created_after:
            params.append(search_filter.created_after)
            clauses.append(f"created_at >= ${len(params)}")
        if search_filter.created_before:
            params.append(search_filter.created_before)
            clauses.append(f"created_at < ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit = ""
        if search_filter.limit is not None:
            params.append(search_filter.limit)
            limit = f"LIMIT ${len(params)}"

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_SEARCH_COLUMNS} FROM searches {where} ORDER BY created_at DESC {limit}",
                *params,
            )
        return [_record_from_row(r) for r in rows]
