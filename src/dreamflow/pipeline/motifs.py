"""Cross-record motif counters.

After a record completes, its confident symbols and all of its themes
are upserted as per-user counters. Counts and last-seen dates only
move forward. Tracking is best-effort: a store outage is logged and
never reverts the record's completion.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from dreamflow.constants import (
    ACTIVE_MOTIF_LIMIT,
    ACTIVE_MOTIF_WINDOW_DAYS,
    SYMBOL_CONFIDENCE_THRESHOLD,
    THEME_DEFAULT_CONFIDENCE,
)
from dreamflow.logging import get_logger
from dreamflow.utils import utcnow

if TYPE_CHECKING:
    from dreamflow.pipeline.analysis import DreamAnalysis

log = get_logger("dreamflow.pipeline.motifs")

MOTIF_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS motif_counters (
    user_id    TEXT NOT NULL,
    motif      TEXT NOT NULL,
    category   TEXT NOT NULL DEFAULT 'symbol',
    first_seen DATE NOT NULL,
    last_seen  DATE NOT NULL,
    count      INTEGER NOT NULL DEFAULT 1 CHECK (count > 0),
    confidence REAL NOT NULL DEFAULT 0.0 CHECK (confidence >= 0.0 AND confidence <= 1.0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, motif)
);
CREATE INDEX IF NOT EXISTS idx_motif_counters_last_seen
    ON motif_counters (user_id, last_seen);
"""

_UPSERT_SQL = """
INSERT INTO motif_counters
    (user_id, motif, category, first_seen, last_seen, count, confidence)
VALUES ($1, $2, $3, $4, $4, 1, $5)
ON CONFLICT (user_id, motif) DO UPDATE SET
    count = motif_counters.count + 1,
    last_seen = GREATEST(motif_counters.last_seen, EXCLUDED.last_seen),
    confidence = GREATEST(motif_counters.confidence, $6),
    updated_at = NOW()
"""


@dataclass
class MotifCounter:
    """Aggregate occurrence counter for one motif of one user."""

    user_id: str
    motif: str
    category: str
    first_seen: date
    last_seen: date
    count: int = 1
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "motif": self.motif,
            "category": self.category,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "count": self.count,
            "confidence": self.confidence,
        }

    @classmethod
    def from_row(cls, row: Any) -> MotifCounter:
        return cls(
            user_id=row["user_id"],
            motif=row["motif"],
            category=row["category"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            count=row["count"],
            confidence=float(row["confidence"]),
        )


@dataclass
class MotifOccurrence:
    """One motif seen in one record, ready to upsert."""

    motif: str
    category: str
    insert_confidence: float
    update_confidence: float


def normalize_label(label: str) -> str:
    """Lowercase and collapse whitespace so labels compare reliably."""
    return " ".join(label.lower().split())


def collect_occurrences(
    analysis: DreamAnalysis,
    *,
    symbol_threshold: float = SYMBOL_CONFIDENCE_THRESHOLD,
) -> list[MotifOccurrence]:
    """Motifs to count for one analysis, at most once per label.

    Symbols need at least ``symbol_threshold`` confidence; themes always
    count but never raise an existing counter's confidence.
    """
    occurrences: dict[str, MotifOccurrence] = {}

    for symbol in analysis.symbols:
        if symbol.confidence < symbol_threshold:
            continue
        label = normalize_label(symbol.item)
        if not label:
            continue
        seen = occurrences.get(label)
        if seen is None:
            occurrences[label] = MotifOccurrence(
                motif=label,
                category="symbol",
                insert_confidence=symbol.confidence,
                update_confidence=symbol.confidence,
            )
        else:
            seen.insert_confidence = max(seen.insert_confidence, symbol.confidence)
            seen.update_confidence = max(seen.update_confidence, symbol.confidence)

    for theme in analysis.themes:
        label = normalize_label(theme)
        if label and label not in occurrences:
            occurrences[label] = MotifOccurrence(
                motif=label,
                category="theme",
                insert_confidence=THEME_DEFAULT_CONFIDENCE,
                update_confidence=0.0,
            )

    return list(occurrences.values())


class MotifTracker:
    """Owns the motif_counters table."""

    def __init__(self, *, symbol_threshold: float = SYMBOL_CONFIDENCE_THRESHOLD) -> None:
        self._symbol_threshold = symbol_threshold
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create the counters table and store the connection pool."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(MOTIF_SCHEMA_SQL)
        log.info("motif_tracker_initialized")

    async def record(
        self,
        user_id: str | None,
        analysis: DreamAnalysis,
        *,
        today: date | None = None,
    ) -> int:
        """Count the motifs of a completed analysis.

        Returns:
            Number of counters upserted (0 when skipped or on store failure).
        """
        if not user_id:
            log.debug("motif_tracking_skipped_no_user")
            return 0
        if self._pool is None:
            log.warning("motif_tracking_skipped_uninitialized", user_id=user_id)
            return 0

        occurrences = collect_occurrences(analysis, symbol_threshold=self._symbol_threshold)
        if not occurrences:
            return 0

        seen_on = today or utcnow().date()
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for occ in occurrences:
                        await conn.execute(
                            _UPSERT_SQL,
                            user_id,
                            occ.motif,
                            occ.category,
                            seen_on,
                            occ.insert_confidence,
                            occ.update_confidence,
                        )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            log.error("motif_tracking_failed", user_id=user_id, error=str(exc))
            return 0

        log.info("motifs_recorded", user_id=user_id, count=len(occurrences))
        return len(occurrences)

    async def list_active(
        self,
        user_id: str | None,
        *,
        today: date | None = None,
        window_days: int = ACTIVE_MOTIF_WINDOW_DAYS,
        limit: int = ACTIVE_MOTIF_LIMIT,
    ) -> list[MotifCounter]:
        """Motifs seen within the window, most frequent first."""
        if not user_id or self._pool is None:
            return []
        since = (today or utcnow().date()) - timedelta(days=window_days)
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM motif_counters
                WHERE user_id = $1 AND last_seen > $2 AND count >= 1
                ORDER BY count DESC, motif
                LIMIT $3
                """,
                user_id,
                since,
                limit,
            )
        return [MotifCounter.from_row(r) for r in rows]

    async def list_for_user(self, user_id: str, *, limit: int = 50) -> list[MotifCounter]:
        """All counters for a user, most frequent first."""
        if self._pool is None:
            return []
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM motif_counters
                WHERE user_id = $1
                ORDER BY count DESC, motif
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [MotifCounter.from_row(r) for r in rows]
