"""Shared test configuration."""

import os

import pytest

from dreamflow.config import get_settings

# Keep Settings() deterministic regardless of the developer's environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Drop cached settings so each test sees its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
