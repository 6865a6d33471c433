"""Dropbox API v2 client wrapper.

Provides async methods for the small slice of the Dropbox API that
change monitoring needs: cursor creation, change listing, and
path-addressed file download.
"""

from __future__ import annotations

import contextlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from dreamflow.logging import get_logger
from dreamflow.utils import truncate

log = get_logger("dreamflow.dropbox.client")

DROPBOX_API_BASE = "https://api.dropboxapi.com/2"
DROPBOX_CONTENT_BASE = "https://content.dropboxapi.com/2"


class DropboxClientError(Exception):
    """Raised when Dropbox API operations fail."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_summary: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_summary = error_summary

    @property
    def is_cursor_reset(self) -> bool:
        """True when Dropbox invalidated the cursor and a new baseline is needed."""
        return self.status_code == 409 and self.error_summary.startswith("reset")


@dataclass
class DropboxEntry:
    """A single metadata entry from a list_folder page."""

    tag: str
    name: str
    path_display: str
    path_lower: str = ""
    file_id: str = ""
    size: int | None = None
    server_modified: datetime | None = None

    @property
    def is_file(self) -> bool:
        return self.tag == "file"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> DropboxEntry:
        """Parse a metadata dict returned by list_folder endpoints."""
        server_modified = None
        raw_modified = data.get("server_modified")
        if raw_modified:
            with contextlib.suppress(ValueError, TypeError):
                server_modified = datetime.fromisoformat(raw_modified.replace("Z", "+00:00"))

        return cls(
            tag=data.get(".tag", ""),
            name=data.get("name", ""),
            path_display=data.get("path_display") or data.get("path_lower", ""),
            path_lower=data.get("path_lower", ""),
            file_id=data.get("id", ""),
            size=data.get("size"),
            server_modified=server_modified,
        )


@dataclass
class ChangePage:
    """One page of changes from ``list_folder/continue``."""

    entries: list[DropboxEntry]
    cursor: str
    has_more: bool = False


class DropboxClient:
    """Async Dropbox API client.

    Each client instance is bound to a single account's access token.
    """

    def __init__(self, access_token: str, *, timeout: float = 30.0) -> None:
        """Initialize the Dropbox client.

        Args:
            access_token: Dropbox OAuth2 access token.
            timeout: HTTP request timeout in seconds.
        """
        if not access_token:
            raise ValueError("access_token is required")
        self._access_token = access_token
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        """Return authorization headers."""
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _rpc(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Call an RPC-style endpoint (JSON in, JSON out)."""
        url = f"{DROPBOX_API_BASE}/{endpoint}"
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(url, headers=self._headers(), json=payload)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
            except httpx.HTTPStatusError as exc:
                raise _api_error(endpoint, exc.response) from exc
            except httpx.RequestError as exc:
                raise DropboxClientError(f"Dropbox API request failed: {exc}") from exc
            except ValueError as exc:
                raise DropboxClientError(
                    f"Dropbox {endpoint} returned a non-JSON body",
                    status_code=response.status_code,
                ) from exc

        if not isinstance(result, dict):
            raise DropboxClientError(f"Dropbox {endpoint} returned an unexpected body")
        return result

    async def get_latest_cursor(self, path: str = "", *, recursive: bool = False) -> str:
        """Get a cursor for the current state of a folder without listing it.

        Args:
            path: Folder path ('' for the app/root folder).
            recursive: Whether changes in subfolders are included.

        Returns:
            An opaque cursor string.
        """
        data = await self._rpc(
            "files/list_folder/get_latest_cursor",
            {
                "path": path,
                "recursive": recursive,
                "include_deleted": False,
                "include_media_info": False,
            },
        )
        cursor = data.get("cursor", "")
        if not cursor:
            raise DropboxClientError("Dropbox returned an empty cursor")
        return str(cursor)

    async def list_folder_continue(self, cursor: str) -> ChangePage:
        """List changes since a cursor.

        Args:
            cursor: Cursor from a previous call or ``get_latest_cursor``.

        Returns:
            A ChangePage with parsed entries, the next cursor, and has_more.
        """
        data = await self._rpc("files/list_folder/continue", {"cursor": cursor})
        entries = [DropboxEntry.from_api(e) for e in data.get("entries", [])]
        page = ChangePage(
            entries=entries,
            cursor=str(data.get("cursor") or cursor),
            has_more=bool(data.get("has_more", False)),
        )
        log.debug(
            "changes_listed",
            count=len(entries),
            has_more=page.has_more,
        )
        return page

    async def download(self, path: str) -> bytes:
        """Download a file's content by path.

        Args:
            path: The Dropbox path (display or lower-case form).

        Returns:
            Raw file bytes.
        """
        headers = {
            **self._headers(),
            "Dropbox-API-Arg": json.dumps({"path": path}),
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(
                    f"{DROPBOX_CONTENT_BASE}/files/download", headers=headers
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise _api_error("files/download", exc.response) from exc
            except httpx.RequestError as exc:
                raise DropboxClientError(f"Dropbox download request failed: {exc}") from exc

        content = response.content
        log.debug("file_downloaded", path=path, size=len(content))
        return content


def _api_error(endpoint: str, response: httpx.Response) -> DropboxClientError:
    """Build a DropboxClientError from an error response."""
    summary = ""
    with contextlib.suppress(ValueError):
        body = response.json()
        if isinstance(body, dict):
            summary = str(body.get("error_summary", ""))
    return DropboxClientError(
        f"Dropbox API error {response.status_code} on {endpoint}: {truncate(response.text)}",
        status_code=response.status_code,
        error_summary=summary,
    )
