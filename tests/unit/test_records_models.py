"""Unit tests for record models."""

from datetime import UTC, datetime

from dreamflow.records.models import ACTIVE_STATUSES, Record, RecordStatus


class TestRecord:
    """Tests for the Record dataclass."""

    def test_defaults(self):
        record = Record(blob_path="k")
        assert record.status == RecordStatus.UPLOADED
        assert record.attempts == 0
        assert record.themes == []
        assert record.primary_emotions == []

    def test_analysis_accessors(self):
        record = Record(
            blob_path="k",
            analysis={"themes": ["water", "chase"], "emotions": {"primary": ["fear"]}},
        )
        assert record.themes == ["water", "chase"]
        assert record.primary_emotions == ["fear"]

    def test_malformed_analysis_tolerated(self):
        record = Record(blob_path="k", analysis={"themes": None, "emotions": None})
        assert record.themes == []
        assert record.primary_emotions == []

    def test_to_dict_hides_embedding_by_default(self):
        record = Record(
            blob_path="k",
            embedding=[0.1],
            created_at=datetime(2025, 1, 1, tzinfo=UTC),
        )
        data = record.to_dict()
        assert "embedding" not in data
        assert data["has_embedding"] is True
        assert data["status"] == "uploaded"
        assert data["created_at"] == "2025-01-01T00:00:00+00:00"
        assert record.to_dict(include_embedding=True)["embedding"] == [0.1]


def test_active_statuses_exclude_terminal():
    assert RecordStatus.COMPLETE not in ACTIVE_STATUSES
    assert RecordStatus.FAILED not in ACTIVE_STATUSES
    assert RecordStatus.TRANSCRIBING in ACTIVE_STATUSES
