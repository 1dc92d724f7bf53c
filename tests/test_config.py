"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest

from jobplatform.config import Settings, get_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults(monkeypatch) -> None:
    monkeypatch.delenv("JOBPLATFORM_DATABASE_URL", raising=False)
    settings = Settings()
    assert settings.database_url is None
    assert settings.worker_concurrency == 5
    assert settings.poll_interval_seconds == 1.0
    assert settings.shutdown_timeout_seconds == 30.0
    assert settings.stale_cleanup_interval_seconds == 300.0
    assert settings.scheduler_interval_seconds == 30.0
    assert settings.completed_retention_hours == 168
    assert settings.prefer_skip_locked is True


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("JOBPLATFORM_DATABASE_URL", "postgresql+asyncpg://jobs@db/jobs")
    monkeypatch.setenv("JOBPLATFORM_WORKER_CONCURRENCY", "12")
    monkeypatch.setenv("JOBPLATFORM_PREFER_SKIP_LOCKED", "false")
    monkeypatch.setenv("UNRELATED_SETTING", "ignored")

    settings = get_settings()
    assert settings.database_url == "postgresql+asyncpg://jobs@db/jobs"
    assert settings.worker_concurrency == 12
    assert settings.prefer_skip_locked is False
    assert get_settings() is settings
