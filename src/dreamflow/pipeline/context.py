"""Bounded history selection for the analysis prompt.

Builds a compact context pack before each analysis: the three past
dreams most relevant to the new transcript, compressed to a one-line
summary each, plus the user's currently active motifs. Selection is
fully deterministic for a given stored state and clock.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from dreamflow.constants import (
    ACTIVE_MOTIF_LIMIT,
    CONTEXT_CANDIDATE_LIMIT,
    CONTEXT_HISTORY_LIMIT,
    RECENCY_WINDOW_DAYS,
)
from dreamflow.logging import get_logger
from dreamflow.pipeline.motifs import MotifCounter, MotifTracker
from dreamflow.records.models import Record
from dreamflow.records.storage import RecordStorage
from dreamflow.utils import ensure_aware, utcnow

log = get_logger("dreamflow.pipeline.context")

THEME_WEIGHT = 0.4
EMOTION_WEIGHT = 0.4
RECENCY_WEIGHT = 0.2

# Controlled vocabularies matched against new transcripts
THEME_VOCABULARY: tuple[str, ...] = (
    "water", "house", "car", "family", "work", "school", "death", "flying",
    "falling", "chase", "lost", "door", "stairs", "animal", "baby", "wedding",
    "fire", "money", "phone", "mirror",
)  # fmt: skip

EMOTION_VOCABULARY: tuple[str, ...] = (
    "scared", "afraid", "happy", "sad", "angry", "excited", "worried", "calm",
    "anxious", "peaceful", "frustrated", "joy", "fear", "love", "hate",
    "confused", "confident", "nervous", "relaxed",
)  # fmt: skip


@dataclass
class HistoryEntry:
    """A past dream compressed to what the prompt needs."""

    record_id: UUID
    days_ago: int
    themes: list[str]
    primary_emotion: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": str(self.record_id),
            "days_ago": self.days_ago,
            "themes": self.themes,
            "primary_emotion": self.primary_emotion,
            "score": round(self.score, 4),
        }


@dataclass
class AnalysisContext:
    """Bounded history slice and active motifs for one analysis."""

    history: list[HistoryEntry] = field(default_factory=list)
    motifs: list[MotifCounter] = field(default_factory=list)

    def to_prompt_fragment(self) -> str:
        """Render the context as prompt sections."""
        parts: list[str] = []

        if self.history:
            lines = [
                f"{i}. {', '.join(h.themes) or 'no themes'} "
                f"({h.primary_emotion}, {h.days_ago}d ago)"
                for i, h in enumerate(self.history, start=1)
            ]
            parts.append("RELEVANT DREAM PATTERNS:\n" + "\n".join(lines))

        if self.motifs:
            lines = [f"- {m.motif} ({m.category or 'symbol'}, {m.count}x)" for m in self.motifs]
            parts.append("ACTIVE RECURRING MOTIFS:\n" + "\n".join(lines))

        return "\n\n".join(parts)

    @property
    def is_empty(self) -> bool:
        return not self.history and not self.motifs


def extract_terms(text: str, vocabulary: tuple[str, ...]) -> list[str]:
    """Vocabulary terms that occur in ``text``, in vocabulary order."""
    lowered = text.lower()
    return [term for term in vocabulary if term in lowered]


def overlap_ratio(new_terms: list[str], past_terms: list[str]) -> float:
    """Shared terms relative to the larger of the two term lists."""
    past = {t.lower() for t in past_terms}
    shared = sum(1 for t in new_terms if t in past)
    return shared / max(len(new_terms), len(past_terms), 1)


def days_since(created_at: datetime | None, now: datetime) -> int:
    """Whole days elapsed, never negative."""
    if created_at is None:
        return RECENCY_WINDOW_DAYS
    elapsed = (now - ensure_aware(created_at)).total_seconds() / 86400
    return max(0, math.floor(elapsed))


def relevance_score(transcript: str, candidate: Record, now: datetime) -> float:
    """Weighted theme overlap, emotion overlap, and recency for one past dream."""
    if not candidate.analysis:
        return 0.0

    theme_score = overlap_ratio(extract_terms(transcript, THEME_VOCABULARY), candidate.themes)
    emotion_score = overlap_ratio(
        extract_terms(transcript, EMOTION_VOCABULARY), candidate.primary_emotions
    )
    age = days_since(candidate.created_at, now)
    recency = max(0.0, (RECENCY_WINDOW_DAYS - age) / RECENCY_WINDOW_DAYS)

    return THEME_WEIGHT * theme_score + EMOTION_WEIGHT * emotion_score + RECENCY_WEIGHT * recency


def rank_history(
    transcript: str,
    candidates: list[Record],
    now: datetime,
    *,
    limit: int = CONTEXT_HISTORY_LIMIT,
) -> list[HistoryEntry]:
    """Top ``limit`` candidates by relevance, compressed.

    Ties keep the candidates' incoming (recency) order.
    """
    scored = [(relevance_score(transcript, c, now), c) for c in candidates]
    ranked = sorted(scored, key=lambda pair: -pair[0])[:limit]

    entries = []
    for score, record in ranked:
        primary = record.primary_emotions
        entries.append(
            HistoryEntry(
                record_id=record.id,
                days_ago=days_since(record.created_at, now),
                themes=record.themes[:3],
                primary_emotion=primary[0] if primary else "neutral",
                score=score,
            )
        )
    return entries


class ContextSelector:
    """Selects and compresses history for the analysis prompt."""

    def __init__(
        self,
        records: RecordStorage,
        motifs: MotifTracker,
        *,
        candidate_limit: int = CONTEXT_CANDIDATE_LIMIT,
        history_limit: int = CONTEXT_HISTORY_LIMIT,
        motif_limit: int = ACTIVE_MOTIF_LIMIT,
    ) -> None:
        self._records = records
        self._motifs = motifs
        self._candidate_limit = candidate_limit
        self._history_limit = history_limit
        self._motif_limit = motif_limit

    async def select(
        self,
        user_id: str | None,
        transcript: str,
        *,
        exclude_id: UUID | None = None,
        now: datetime | None = None,
    ) -> AnalysisContext:
        """Build the bounded context for analyzing ``transcript``.

        Args:
            user_id: Owner of the new record; no history without one.
            transcript: The new dream's transcript.
            exclude_id: The record being analyzed, never its own history.
            now: Clock override for deterministic scoring.
        """
        current = now or utcnow()
        if not user_id:
            return AnalysisContext()

        candidates = await self._records.list_completed(
            user_id, exclude_id=exclude_id, limit=self._candidate_limit
        )
        history = rank_history(transcript, candidates, current, limit=self._history_limit)
        motifs = await self._motifs.list_active(
            user_id, today=current.date(), limit=self._motif_limit
        )

        log.info(
            "analysis_context_selected",
            user_id=user_id,
            candidates=len(candidates),
            history=len(history),
            motifs=len(motifs),
        )
        return AnalysisContext(history=history, motifs=motifs)
