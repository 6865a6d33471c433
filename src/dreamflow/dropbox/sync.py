"""Cursor-based change detection for connected Dropbox accounts.

The first sync for a user only establishes a baseline cursor; files that
already existed are never replayed. Every later sync lists one page of
changes since the stored cursor and persists the new cursor before any
file is handed downstream, so a single bad file cannot wedge the sync
position. Idempotent intake makes redelivery safe.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from dreamflow.dropbox.client import DropboxClient, DropboxClientError, DropboxEntry
from dreamflow.logging import get_logger

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("dreamflow.dropbox.sync")

SYNC_CURSORS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_cursors (
    user_id    TEXT PRIMARY KEY,
    cursor     TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


@dataclass
class SyncResult:
    """Outcome of one sync pass for a single user."""

    user_id: str
    new_files: list[DropboxEntry] = field(default_factory=list)
    cursor: str | None = None
    sync_type: str = "incremental"
    has_more: bool = False
    skipped_entries: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "new_files": [f.path_display for f in self.new_files],
            "sync_type": self.sync_type,
            "has_more": self.has_more,
            "skipped_entries": self.skipped_entries,
        }


def is_accepted_audio(entry: DropboxEntry, extensions: Iterable[str]) -> bool:
    """Check whether a change entry is a file with an accepted extension."""
    if not entry.is_file:
        return False
    return entry.name.lower().endswith(tuple(ext.lower() for ext in extensions))


class ChangeSync:
    """Lists Dropbox changes since each user's persisted cursor."""

    def __init__(
        self,
        *,
        watch_path: str = "",
        recursive: bool = False,
        extensions: Iterable[str] = (".m4a",),
        timeout: float = 30.0,
    ) -> None:
        self._watch_path = watch_path
        self._recursive = recursive
        self._extensions = tuple(extensions)
        self._timeout = timeout
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create the cursor table and store the connection pool."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(SYNC_CURSORS_SCHEMA_SQL)
        log.info("change_sync_initialized", watch_path=self._watch_path or "/")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("ChangeSync is not initialized")
        return self._pool

    # ------------------------------------------------------------------
    # Cursor persistence
    # ------------------------------------------------------------------

    async def get_cursor(self, user_id: str) -> str | None:
        """Fetch the stored cursor for a user."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT cursor FROM sync_cursors WHERE user_id = $1",
                user_id,
            )
        return row["cursor"] if row else None

    async def save_cursor(self, user_id: str, cursor: str) -> None:
        """Insert or advance the stored cursor for a user."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO sync_cursors (user_id, cursor, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    cursor = EXCLUDED.cursor,
                    updated_at = NOW()
                """,
                user_id,
                cursor,
            )

    async def reset(self, user_id: str) -> bool:
        """Forget a user's cursor so the next sync re-establishes a baseline."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM sync_cursors WHERE user_id = $1",
                user_id,
            )
        deleted = bool(result == "DELETE 1")
        if deleted:
            log.info("sync_cursor_reset", user_id=user_id)
        return deleted

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, user_id: str, access_token: str) -> SyncResult:
        """List new audio files for a user since their last sync.

        Args:
            user_id: The user whose account is synced.
            access_token: A valid Dropbox token from the credential vault.

        Returns:
            SyncResult with the accepted new files (empty for a baseline).

        Raises:
            DropboxClientError: If the change listing fails (cursor untouched).
        """
        client = DropboxClient(access_token, timeout=self._timeout)
        cursor = await self.get_cursor(user_id)

        if cursor is None:
            return await self._establish_baseline(client, user_id, sync_type="baseline")

        try:
            page = await client.list_folder_continue(cursor)
        except DropboxClientError as exc:
            if exc.is_cursor_reset:
                log.warning("sync_cursor_invalidated", user_id=user_id)
                return await self._establish_baseline(client, user_id, sync_type="reset")
            raise

        # Advance before any downstream work so one bad file cannot wedge sync
        await self.save_cursor(user_id, page.cursor)

        new_files = [e for e in page.entries if is_accepted_audio(e, self._extensions)]
        result = SyncResult(
            user_id=user_id,
            new_files=new_files,
            cursor=page.cursor,
            sync_type="incremental",
            has_more=page.has_more,
            skipped_entries=len(page.entries) - len(new_files),
        )
        log.info(
            "sync_complete",
            user_id=user_id,
            entries=len(page.entries),
            new_files=len(new_files),
            has_more=page.has_more,
        )
        return result

    async def _establish_baseline(
        self,
        client: DropboxClient,
        user_id: str,
        *,
        sync_type: str,
    ) -> SyncResult:
        """Fetch and persist a fresh cursor without listing existing files."""
        cursor = await client.get_latest_cursor(self._watch_path, recursive=self._recursive)
        await self.save_cursor(user_id, cursor)
        log.info("sync_baseline_established", user_id=user_id, sync_type=sync_type)
        return SyncResult(user_id=user_id, cursor=cursor, sync_type=sync_type)
