"""PostgreSQL storage for dream records.

Follows the asyncpg.Pool pattern used by every storage class in the
project: DDL is owned here, ``initialize`` creates tables, and each
method acquires its own connection.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from dreamflow.logging import get_logger
from dreamflow.records.models import ACTIVE_STATUSES, Record, RecordStatus

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("dreamflow.records.storage")

# ------------------------------------------------------------------
# DDL
# ------------------------------------------------------------------

_CREATE_RECORDS_TABLE = """
CREATE TABLE IF NOT EXISTS records (
    id                   UUID PRIMARY KEY,
    user_id              TEXT,
    blob_path            TEXT NOT NULL,
    external_path        TEXT,
    external_modified_at TIMESTAMPTZ,
    transcript           TEXT,
    analysis             JSONB,
    embedding            DOUBLE PRECISION[],
    status               TEXT NOT NULL DEFAULT 'uploaded'
        CHECK (status IN ('uploaded', 'transcribing', 'analyzing', 'complete', 'failed')),
    error_message        TEXT,
    attempts             INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    created_at           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT complete_has_results CHECK (
        status <> 'complete' OR (transcript IS NOT NULL AND analysis IS NOT NULL)
    ),
    CONSTRAINT failed_has_error CHECK (status <> 'failed' OR error_message IS NOT NULL)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_records_user_external_path
    ON records (COALESCE(user_id, ''), external_path)
    WHERE external_path IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_records_user_created
    ON records (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_records_status ON records (status);
"""


class RecordStorage:
    """Durable store for Record rows and the read API over them."""

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_CREATE_RECORDS_TABLE)
        log.info("record_storage_initialized")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("RecordStorage is not initialized")
        return self._pool

    async def _fetch_one(self, query: str, *args: Any) -> Record | None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
        return Record.from_row(row) if row else None

    async def _fetch_many(self, query: str, *args: Any) -> list[Record]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [Record.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, record_id: UUID) -> Record | None:
        """Fetch a record by id."""
        return await self._fetch_one("SELECT * FROM records WHERE id = $1", record_id)

    async def find_by_external_path(
        self, user_id: str | None, external_path: str
    ) -> Record | None:
        """Fetch the record for a (user, external path) idempotency key."""
        return await self._fetch_one(
            """
            SELECT * FROM records
            WHERE user_id IS NOT DISTINCT FROM $1 AND external_path = $2
            """,
            user_id,
            external_path,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, record: Record) -> Record:
        """Insert a new record and return it as stored.

        Raises:
            asyncpg.UniqueViolationError: If the idempotency key already exists.
        """
        stored = await self._fetch_one(
            """
            INSERT INTO records
                (id, user_id, blob_path, external_path, external_modified_at,
                 status, attempts)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            record.id,
            record.user_id,
            record.blob_path,
            record.external_path,
            record.external_modified_at,
            str(record.status),
            record.attempts,
        )
        if stored is None:
            raise RuntimeError("Record insert returned no row")
        return stored

    async def begin_attempt(self, record_id: UUID, max_attempts: int) -> Record | None:
        """Atomically consume one attempt if the counter is below the max.

        Returns:
            The updated record, or None if no attempt was available.
        """
        return await self._fetch_one(
            """
            UPDATE records
            SET attempts = attempts + 1, updated_at = NOW()
            WHERE id = $1 AND attempts < $2 AND status <> 'complete'
            RETURNING *
            """,
            record_id,
            max_attempts,
        )

    async def set_status(self, record_id: UUID, status: RecordStatus) -> None:
        """Move a record to a non-terminal status."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE records SET status = $2, updated_at = NOW() WHERE id = $1",
                record_id,
                str(status),
            )

    async def save_transcript(self, record_id: UUID, transcript: str) -> None:
        """Persist a transcript and advance to ``analyzing``."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE records
                SET transcript = $2, status = 'analyzing', error_message = NULL,
                    updated_at = NOW()
                WHERE id = $1
                """,
                record_id,
                transcript,
            )

    async def mark_failed(self, record_id: UUID, error_message: str) -> None:
        """Move a record to ``failed`` with an error detail."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE records
                SET status = 'failed', error_message = $2, updated_at = NOW()
                WHERE id = $1
                """,
                record_id,
                error_message,
            )

    async def complete(
        self,
        record_id: UUID,
        analysis: dict[str, Any],
        embedding: list[float] | None,
    ) -> None:
        """Store analysis and embedding and mark the record ``complete``."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE records
                SET analysis = $2, embedding = $3, status = 'complete',
                    error_message = NULL, updated_at = NOW()
                WHERE id = $1
                """,
                record_id,
                json.dumps(analysis),
                embedding,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_completed(
        self,
        user_id: str | None,
        *,
        exclude_id: UUID | None = None,
        limit: int = 10,
    ) -> list[Record]:
        """The user's most recent completed records, newest first."""
        return await self._fetch_many(
            """
            SELECT * FROM records
            WHERE user_id IS NOT DISTINCT FROM $1
              AND status = 'complete'
              AND ($2::uuid IS NULL OR id <> $2)
            ORDER BY created_at DESC, id
            LIMIT $3
            """,
            user_id,
            exclude_id,
            limit,
        )

    async def list_by_user(
        self,
        user_id: str,
        *,
        query: str | None = None,
        limit: int = 50,
    ) -> list[Record]:
        """Records for a user ordered by recency, optionally filtered by transcript text."""
        if query:
            return await self._fetch_many(
                """
                SELECT * FROM records
                WHERE user_id = $1 AND transcript ILIKE '%' || $2 || '%'
                ORDER BY created_at DESC
                LIMIT $3
                """,
                user_id,
                _escape_like(query),
                limit,
            )
        return await self._fetch_many(
            """
            SELECT * FROM records
            WHERE user_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            user_id,
            limit,
        )

    async def list_stalled(
        self,
        *,
        older_than: datetime,
        max_attempts: int,
        limit: int = 20,
    ) -> list[Record]:
        """Non-terminal records untouched since ``older_than`` with attempts left."""
        return await self._fetch_many(
            """
            SELECT * FROM records
            WHERE status = ANY($4::text[])
              AND updated_at < $1
              AND attempts < $2
            ORDER BY updated_at
            LIMIT $3
            """,
            older_than,
            max_attempts,
            limit,
            sorted(str(s) for s in ACTIVE_STATUSES),
        )


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so the filter is a plain substring match."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
