"""Shared fixtures: a synchronous in-memory SQLite database behind an async shim."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from jobplatform.queue import DurableQueue
from jobplatform.sql.schema import metadata


class _AsyncSessionWrapper:
    def __init__(self, sync_session):
        self._session = sync_session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._session.close()

    async def execute(self, statement, params=None):
        return self._session.execute(statement, params or {})

    async def commit(self) -> None:
        self._session.commit()

    async def rollback(self) -> None:
        self._session.rollback()


class SyncSQLiteDatabase:
    """Stand-in for :class:`jobplatform.sql.Database` without an async driver."""

    dialect_name = "sqlite"

    def __init__(self) -> None:
        self.sync_engine = create_engine("sqlite:///:memory:", future=True)
        metadata.create_all(self.sync_engine)
        self._factory = sessionmaker(self.sync_engine, future=True)
        self.healthy = True

    def sessionmaker(self) -> _AsyncSessionWrapper:
        return _AsyncSessionWrapper(self._factory())

    async def check_connection(self) -> None:
        if not self.healthy:
            raise OSError("database unreachable")
        with self.sync_engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    async def create_all(self) -> None:
        metadata.create_all(self.sync_engine)

    async def dispose(self) -> None:
        self.sync_engine.dispose()


class Clock:
    """Controllable replacement for the module-level ``utcnow`` helpers."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def db() -> SyncSQLiteDatabase:
    database = SyncSQLiteDatabase()
    yield database
    database.sync_engine.dispose()


@pytest.fixture
def queue(db: SyncSQLiteDatabase) -> DurableQueue:
    return DurableQueue(db, worker_id="test-worker")


@pytest.fixture
def clock(monkeypatch) -> Clock:
    start = datetime.now(timezone.utc).replace(microsecond=0)
    fake = Clock(start)
    for module in ("queue", "scheduler", "history", "worker"):
        monkeypatch.setattr(f"jobplatform.{module}.utcnow", fake)
    return fake
