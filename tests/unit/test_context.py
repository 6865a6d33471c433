"""Unit tests for history selection and scoring."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from dreamflow.pipeline.context import (
    THEME_VOCABULARY,
    AnalysisContext,
    ContextSelector,
    HistoryEntry,
    days_since,
    extract_terms,
    overlap_ratio,
    rank_history,
    relevance_score,
)
from dreamflow.pipeline.motifs import MotifCounter
from dreamflow.records.models import Record, RecordStatus

NOW = datetime(2025, 6, 30, 12, 0, tzinfo=UTC)


def _past(days_ago: float, themes: list[str], primary: list[str]) -> Record:
    return Record(
        blob_path="k",
        user_id="user-1",
        status=RecordStatus.COMPLETE,
        transcript="...",
        analysis={"themes": themes, "emotions": {"primary": primary, "secondary": []}},
        created_at=NOW - timedelta(days=days_ago),
    )


class TestTermHelpers:
    def test_extract_terms_substring_match(self):
        """Terms match as lowercase substrings in vocabulary order."""
        assert extract_terms("I was FLYING over Water", THEME_VOCABULARY) == ["water", "flying"]

    def test_overlap_ratio_uses_larger_side(self):
        assert overlap_ratio(["water", "car"], ["water"]) == 0.5
        assert overlap_ratio(["water"], ["Water", "fire", "door", "car"]) == 0.25
        assert overlap_ratio([], []) == 0.0

    def test_days_since_floors(self):
        assert days_since(NOW - timedelta(days=2, hours=23), NOW) == 2
        assert days_since(NOW + timedelta(hours=1), NOW) == 0


class TestRelevanceScore:
    def test_weighted_sum(self):
        """0.4 theme + 0.4 emotion + 0.2 recency."""
        candidate = _past(15, ["water"], ["fear"])
        score = relevance_score("water and fear everywhere", candidate, NOW)
        assert score == pytest.approx(0.4 * 1 + 0.4 * 1 + 0.2 * 0.5)

    def test_old_dream_gets_no_recency(self):
        candidate = _past(45, [], [])
        assert relevance_score("nothing", candidate, NOW) == 0.0

    def test_record_without_analysis_scores_zero(self):
        candidate = Record(blob_path="k", created_at=NOW)
        assert relevance_score("water", candidate, NOW) == 0.0


class TestRankHistory:
    def test_top_three_by_score(self):
        candidates = [
            _past(1, ["house"], ["joy"]),
            _past(20, ["water"], ["fear"]),
            _past(2, ["water"], ["calm"]),
            _past(3, ["car"], ["fear"]),
            _past(4, ["fire"], ["love"]),
        ]
        ranked = rank_history("deep water, I felt fear", candidates, NOW)

        assert len(ranked) == 3
        assert ranked[0].record_id == candidates[1].id
        assert all(isinstance(h, HistoryEntry) for h in ranked)

    def test_ties_keep_recency_order(self):
        """Equal scores keep the incoming newest-first order."""
        a = _past(1, ["house"], ["joy"])
        b = _past(1, ["car"], ["sad"])
        ranked = rank_history("unrelated", [a, b], NOW)
        assert [h.record_id for h in ranked] == [a.id, b.id]

    def test_deterministic(self):
        candidates = [_past(d, ["water"], ["fear"]) for d in (1, 5, 9, 13)]
        first = rank_history("water fear", candidates, NOW)
        second = rank_history("water fear", candidates, NOW)
        assert [h.to_dict() for h in first] == [h.to_dict() for h in second]

    def test_compression(self):
        candidate = _past(3, ["water", "chase", "house", "door"], [])
        entry = rank_history("x", [candidate], NOW)[0]
        assert entry.themes == ["water", "chase", "house"]
        assert entry.primary_emotion == "neutral"
        assert entry.days_ago == 3


class TestAnalysisContext:
    def test_prompt_fragment(self):
        context = AnalysisContext(
            history=[
                HistoryEntry(uuid4(), 2, ["water", "chase"], "fear", 0.9),
            ],
            motifs=[
                MotifCounter("user-1", "door", "symbol", date(2025, 6, 1), date(2025, 6, 29), 4),
            ],
        )
        fragment = context.to_prompt_fragment()
        assert "1. water, chase (fear, 2d ago)" in fragment
        assert "- door (symbol, 4x)" in fragment

    def test_empty_context(self):
        assert AnalysisContext().to_prompt_fragment() == ""
        assert AnalysisContext().is_empty


class TestContextSelector:
    async def test_select_queries_bounded_history(self):
        records = MagicMock()
        records.list_completed = AsyncMock(return_value=[_past(1, ["water"], ["fear"])])
        motifs = MagicMock()
        motifs.list_active = AsyncMock(return_value=[])
        selector = ContextSelector(records, motifs)
        current = uuid4()

        context = await selector.select("user-1", "water", exclude_id=current, now=NOW)

        records.list_completed.assert_awaited_once_with("user-1", exclude_id=current, limit=10)
        motifs.list_active.assert_awaited_once_with("user-1", today=NOW.date(), limit=8)
        assert len(context.history) == 1

    async def test_no_user_no_history(self):
        records = MagicMock()
        records.list_completed = AsyncMock()
        selector = ContextSelector(records, MagicMock())

        context = await selector.select(None, "water", now=NOW)

        assert context.is_empty
        records.list_completed.assert_not_awaited()
