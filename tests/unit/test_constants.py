"""Unit tests for the constants module."""

from dreamflow.constants import (
    ACTIVE_MOTIF_LIMIT,
    ACTIVE_MOTIF_WINDOW_DAYS,
    CONTEXT_HISTORY_LIMIT,
    DEFAULT_MAX_ATTEMPTS,
    MAX_FILE_SIZE,
    SYMBOL_CONFIDENCE_THRESHOLD,
    THEME_DEFAULT_CONFIDENCE,
    TOKEN_REFRESH_WINDOW_SECONDS,
)


class TestConstants:
    """Tests for centralized application constants."""

    def test_token_refresh_window_is_five_minutes(self) -> None:
        assert TOKEN_REFRESH_WINDOW_SECONDS == 300

    def test_max_file_size_is_50_mib(self) -> None:
        assert MAX_FILE_SIZE == 52_428_800

    def test_attempt_bound(self) -> None:
        """Records get three processing attempts."""
        assert DEFAULT_MAX_ATTEMPTS == 3
        assert isinstance(DEFAULT_MAX_ATTEMPTS, int)

    def test_context_limits(self) -> None:
        assert CONTEXT_HISTORY_LIMIT == 3
        assert ACTIVE_MOTIF_LIMIT == 8
        assert ACTIVE_MOTIF_WINDOW_DAYS == 30

    def test_motif_confidences(self) -> None:
        assert SYMBOL_CONFIDENCE_THRESHOLD == 0.6
        assert THEME_DEFAULT_CONFIDENCE == 0.8
