"""Data models for dream records.

Records are plain dataclasses with row/dict conversion; the structured
analysis they carry is validated separately (see ``pipeline.analysis``)
and stored here as a plain dict.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4


class RecordStatus(StrEnum):
    """Processing states of a record."""

    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    FAILED = "failed"


# States a record can still make progress from
ACTIVE_STATUSES = frozenset(
    {RecordStatus.UPLOADED, RecordStatus.TRANSCRIBING, RecordStatus.ANALYZING}
)


@dataclass
class Record:
    """One audio file plus everything derived from it."""

    blob_path: str
    user_id: str | None = None
    external_path: str | None = None
    external_modified_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)
    transcript: str | None = None
    analysis: dict[str, Any] | None = None
    embedding: list[float] | None = None
    status: RecordStatus = RecordStatus.UPLOADED
    error_message: str | None = None
    attempts: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def themes(self) -> list[str]:
        """Themes from the stored analysis, if any."""
        if not self.analysis:
            return []
        return [str(t) for t in self.analysis.get("themes", []) or []]

    @property
    def primary_emotions(self) -> list[str]:
        """Primary emotions from the stored analysis, if any."""
        if not self.analysis:
            return []
        emotions = self.analysis.get("emotions") or {}
        return [str(e) for e in emotions.get("primary", []) or []]

    def to_dict(self, *, include_embedding: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": str(self.id),
            "user_id": self.user_id,
            "blob_path": self.blob_path,
            "external_path": self.external_path,
            "external_modified_at": (
                self.external_modified_at.isoformat() if self.external_modified_at else None
            ),
            "transcript": self.transcript,
            "analysis": self.analysis,
            "status": str(self.status),
            "error_message": self.error_message,
            "attempts": self.attempts,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    @classmethod
    def from_row(cls, row: Any) -> Record:
        analysis = row["analysis"]
        if isinstance(analysis, str):
            analysis = json.loads(analysis)
        embedding = row["embedding"]
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            blob_path=row["blob_path"],
            external_path=row["external_path"],
            external_modified_at=row["external_modified_at"],
            transcript=row["transcript"],
            analysis=analysis,
            embedding=list(embedding) if embedding is not None else None,
            status=RecordStatus(row["status"]),
            error_message=row["error_message"],
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
