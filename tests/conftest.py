"""Pytest configuration and fixtures for kvstash tests."""

import time

import pytest

# Add the project root to the Python path
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from kvstash.config import CacheSettings


@pytest.fixture
def cache_settings(tmp_path, monkeypatch):
    """Settings isolated from the developer's environment and .env file."""
    for name in ("CACHE_BACKEND", "CACHE_PREFIX", "CACHE_REDIS_URL", "CACHE_GROUP_BYPASS"):
        monkeypatch.delenv(name, raising=False)

    return CacheSettings(
        _env_file=None,
        cache_backend="persistent",
        cache_prefix="test_",
        cache_redis_url=None,
        cache_db_path=str(tmp_path / "cache.db"),
        cache_file_dir=str(tmp_path / "files"),
        cache_file_lock_timeout_seconds=0.2,
        cache_redis_timeout_seconds=0.2,
    )


@pytest.fixture
def frozen_clock(monkeypatch):
    """Controllable replacement for time.time() for expiry tests."""

    class Clock:
        def __init__(self):
            self.now = 1_700_000_000.0

        def time(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    clock = Clock()
    monkeypatch.setattr(time, "time", clock.time)
    return clock
