"""Idempotent materialization of detected Dropbox files into records.

An existing record for the same (user, Dropbox path) is returned
unchanged, which is what makes at-least-once webhook delivery safe.
New files are downloaded, written to blob storage, and inserted as
``uploaded`` records; if the insert fails the blob is deleted again.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

import asyncpg  # type: ignore[import-not-found,import-untyped]

from dreamflow.constants import MAX_FILE_SIZE
from dreamflow.dropbox.client import DropboxClient, DropboxEntry
from dreamflow.logging import get_logger
from dreamflow.records.blobs import BlobStore
from dreamflow.records.models import Record, RecordStatus
from dreamflow.records.storage import RecordStorage

log = get_logger("dreamflow.records.intake")


class FileTooLargeError(Exception):
    """Raised when a Dropbox file exceeds the accepted size."""


class PipelineTrigger(Protocol):
    """Signals the processing pipeline that a record is ready."""

    async def trigger(self, record_id: UUID) -> None:
        """Schedule processing for a record; must not wait for completion."""
        ...


@dataclass
class IntakeResult:
    """Outcome of intake for a single file."""

    record: Record
    action: str
    size: int | None = None

    @property
    def created(self) -> bool:
        return self.action == "created"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "file": self.record.external_path,
            "success": True,
            "action": self.action,
            "record_id": str(self.record.id),
            "status": str(self.record.status),
            "file_size": self.size,
        }


class RecordIntake:
    """Creates records for new Dropbox files exactly once per (user, path)."""

    def __init__(
        self,
        storage: RecordStorage,
        blobs: BlobStore,
        trigger: PipelineTrigger | None = None,
        *,
        max_file_size: int = MAX_FILE_SIZE,
        timeout: float = 30.0,
    ) -> None:
        self._storage = storage
        self._blobs = blobs
        self._trigger = trigger
        self._max_file_size = max_file_size
        self._timeout = timeout

    async def intake(
        self,
        user_id: str | None,
        entry: DropboxEntry,
        access_token: str,
    ) -> IntakeResult:
        """Materialize a Dropbox file as a record.

        Args:
            user_id: Owner of the Dropbox account the file came from.
            entry: The file entry reported by change sync.
            access_token: Valid Dropbox token for downloading the file.

        Returns:
            IntakeResult with action "created" or "skipped".

        Raises:
            DropboxClientError: The download failed.
            FileTooLargeError: The file exceeds the size limit.
            BlobStoreError: The blob could not be written.
        """
        path = entry.path_display
        existing = await self._storage.find_by_external_path(user_id, path)
        if existing is not None:
            log.info(
                "intake_skipped_existing",
                user_id=user_id,
                path=path,
                record_id=str(existing.id),
            )
            return IntakeResult(record=existing, action="skipped")

        if entry.size is not None and entry.size > self._max_file_size:
            raise FileTooLargeError(
                f"File too large: {entry.size} bytes. Max size: {self._max_file_size} bytes"
            )

        client = DropboxClient(access_token, timeout=self._timeout)
        content = await client.download(path)
        if len(content) > self._max_file_size:
            raise FileTooLargeError(
                f"File too large: {len(content)} bytes. Max size: {self._max_file_size} bytes"
            )

        blob_key = await self._blobs.put(entry.name or path, content)
        record = Record(
            blob_path=blob_key,
            user_id=user_id,
            external_path=path,
            external_modified_at=entry.server_modified,
            status=RecordStatus.UPLOADED,
            attempts=0,
        )

        try:
            stored = await self._storage.insert(record)
        except asyncpg.UniqueViolationError:
            # A concurrent delivery of the same change won the insert
            await self._discard_blob(blob_key)
            winner = await self._storage.find_by_external_path(user_id, path)
            if winner is None:
                raise
            log.info("intake_lost_race", user_id=user_id, path=path, record_id=str(winner.id))
            return IntakeResult(record=winner, action="skipped")
        except Exception:
            await self._discard_blob(blob_key)
            log.error("intake_insert_failed_blob_removed", user_id=user_id, path=path)
            raise

        log.info(
            "intake_record_created",
            user_id=user_id,
            path=path,
            record_id=str(stored.id),
            size=len(content),
        )
        await self._signal(stored.id)
        return IntakeResult(record=stored, action="created", size=len(content))

    async def _signal(self, record_id: UUID) -> None:
        """Notify the pipeline; the record stays re-triggerable if this fails."""
        if self._trigger is None:
            return
        try:
            await self._trigger.trigger(record_id)
        except Exception as exc:
            log.warning("pipeline_trigger_failed", record_id=str(record_id), error=str(exc))

    async def _discard_blob(self, blob_key: str) -> None:
        """Remove an orphaned blob without masking the insert error."""
        try:
            await self._blobs.delete(blob_key)
        except Exception as exc:
            log.error("intake_blob_cleanup_failed", blob_key=blob_key, error=str(exc))
