"""Blob storage for raw audio.

The record store and the blob store are independent, so intake pairs
every blob write with a compensating delete if the record insert fails.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from pathlib import Path
from typing import Protocol

from dreamflow.logging import get_logger

log = get_logger("dreamflow.records.blobs")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStoreError(Exception):
    """Raised when a blob cannot be written or read."""


class BlobStore(Protocol):
    """Minimal object-store surface used by intake and the pipeline."""

    async def put(self, name: str, data: bytes) -> str:
        """Store bytes under a new unique key derived from ``name``; return the key."""
        ...

    async def get(self, key: str) -> bytes:
        """Read the bytes stored under ``key``."""
        ...

    async def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are not an error."""
        ...


class LocalBlobStore:
    """Filesystem-backed blob store rooted at a single directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _resolve(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise BlobStoreError(f"Blob key escapes storage root: {key}")
        return path

    async def put(self, name: str, data: bytes) -> str:
        safe_name = _UNSAFE_CHARS.sub("_", Path(name).name).strip("._") or "audio"
        key = f"{uuid.uuid4().hex[:12]}-{safe_name}"
        path = self._resolve(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise BlobStoreError(f"Failed to write blob {key}: {exc}") from exc
        log.debug("blob_written", key=key, size=len(data))
        return key

    async def get(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise BlobStoreError(f"Failed to read blob {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        path = self._resolve(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)
        log.debug("blob_deleted", key=key)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Exclusive create: keys are unique, never overwrite
        with path.open("xb") as fh:
            fh.write(data)
