"""Tests for the asynchronous worker pool."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from jobplatform.contracts import Handler, JobContext, JobError, NoJobsAvailable
from jobplatform.models import EnqueueOptions, Job
from jobplatform.registry import Registry
from jobplatform.worker import Worker

TENANT = uuid4()
POLL_INTERVAL = 0.01


class _Handler(Handler):
    def __init__(self, behavior: Callable[[JobContext, Job], Awaitable[bytes | None]]):
        self.behavior = behavior
        self.calls: list[Job] = []

    async def handle(self, ctx: JobContext, job: Job) -> bytes | None:
        self.calls.append(job)
        return await self.behavior(ctx, job)


def _worker(queue, registry, **kwargs) -> Worker:
    kwargs.setdefault("poll_interval", POLL_INTERVAL)
    kwargs.setdefault("shutdown_timeout", 5)
    return Worker(queue, registry, worker_id="w-1", **kwargs)


async def _run_until(worker: Worker, predicate: Callable[[], Awaitable[bool]], attempts: int = 300) -> None:
    task = asyncio.create_task(worker.run())
    try:
        for _ in range(attempts):
            if await predicate():
                return
            await asyncio.sleep(0.01)
        pytest.fail("condition not reached while worker was running")
    finally:
        worker.request_stop()
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(worker.wait_stopped(), timeout=5)
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


def _status_is(queue, job_id, *statuses):
    async def _check() -> bool:
        return (await queue.get_job(job_id)).status in statuses

    return _check


def _retried(queue, job_id):
    async def _check() -> bool:
        return (await queue.get_job(job_id)).retry_count >= 1

    return _check


def test_worker_validates_configuration(queue) -> None:
    registry = Registry()
    for kwargs in (
        {"concurrency": 0},
        {"poll_interval": 0},
        {"cleanup_interval": -1},
        {"shutdown_timeout": 0},
    ):
        with pytest.raises(ValueError):
            Worker(queue, registry, **kwargs)
    assert Worker(queue, registry).worker_id.startswith("worker-")


def test_worker_completes_job(queue, db) -> None:
    async def _run() -> None:
        async def ok(ctx, job):
            assert ctx.worker_id == "w-1"
            assert ctx.deadline > job.started_at
            return b"\x02"

        handler = _Handler(ok)
        registry = Registry({"noop": handler})
        worker = _worker(queue, registry)
        job = await queue.enqueue(TENANT, "noop", b"\x01")

        assert worker.status() == "stopped"
        await _run_until(worker, _status_is(queue, job.id, "completed"))
        assert worker.status() == "stopped"
        assert len(handler.calls) == 1
        assert handler.calls[0].payload == b"\x01"

        snapshot = await worker.metrics()
        assert snapshot.jobs_processed == 1
        assert snapshot.jobs_succeeded == 1
        assert snapshot.jobs_failed == 0
        assert snapshot.in_flight == 0
        assert snapshot.queue_length == 0

        worker.reset_metrics()
        assert (await worker.metrics()).jobs_processed == 0

    asyncio.run(_run())


def test_worker_records_handler_errors(queue) -> None:
    async def _run() -> None:
        async def broken(ctx, job):
            raise JobError("upstream rejected the document")

        worker = _worker(queue, Registry({"flaky": _Handler(broken)}))
        job = await queue.enqueue(TENANT, "flaky", b"")
        await _run_until(worker, _retried(queue, job.id))

        stored = await queue.get_job(job.id)
        assert stored.status == "pending"
        assert stored.last_error == "upstream rejected the document"
        assert (await worker.metrics()).jobs_failed == 1

    asyncio.run(_run())


def test_worker_isolates_handler_crashes(queue) -> None:
    async def _run() -> None:
        async def crash(ctx, job):
            raise ValueError("kaboom")

        worker = _worker(queue, Registry({"crashy": _Handler(crash)}))
        job = await queue.enqueue(TENANT, "crashy", b"", EnqueueOptions(max_retries=1))
        await _run_until(worker, _status_is(queue, job.id, "dead"))

        stored = await queue.get_job(job.id)
        assert stored.last_error == "job panicked: ValueError('kaboom')"

    asyncio.run(_run())


def test_worker_fails_jobs_without_handler(queue) -> None:
    async def _run() -> None:
        worker = _worker(queue, Registry())
        job = await queue.enqueue(TENANT, "ghost", b"")
        await _run_until(worker, _retried(queue, job.id))
        assert (await queue.get_job(job.id)).last_error == "no handler for job type: ghost"

    asyncio.run(_run())


def test_worker_enforces_job_timeout(queue) -> None:
    async def _run() -> None:
        async def sleepy(ctx, job):
            await asyncio.sleep(10)
            return b"late"

        worker = _worker(queue, Registry({"sleepy": _Handler(sleepy)}))
        job = await queue.enqueue(TENANT, "sleepy", b"", EnqueueOptions(timeout_seconds=1))
        await _run_until(worker, _retried(queue, job.id), attempts=500)
        assert (await queue.get_job(job.id)).last_error == "job exceeded timeout of 1s"

    asyncio.run(_run())


def test_worker_runs_sync_handlers_in_threads(queue) -> None:
    async def _run() -> None:
        registry = Registry()
        registry.register_func("blocking", lambda ctx, job: b"sync-result")
        worker = _worker(queue, registry)
        job = await queue.enqueue(TENANT, "blocking", b"")
        await _run_until(worker, _status_is(queue, job.id, "completed"))

    asyncio.run(_run())


def test_worker_respects_concurrency_limit(queue) -> None:
    async def _run() -> None:
        active = 0
        peak = 0

        async def busy(ctx, job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1
            return None

        worker = _worker(queue, Registry({"busy": _Handler(busy)}), concurrency=2)
        jobs = [await queue.enqueue(TENANT, "busy", b"") for _ in range(6)]

        async def all_done() -> bool:
            for job in jobs:
                if (await queue.get_job(job.id)).status != "completed":
                    return False
            return True

        await _run_until(worker, all_done)
        assert peak == 2

    asyncio.run(_run())


def test_worker_signals_handlers_on_shutdown(queue) -> None:
    async def _run() -> None:
        started = asyncio.Event()

        async def cooperative(ctx, job):
            started.set()
            await ctx.wait_cancelled()
            assert ctx.cancelled
            return b"drained"

        worker = _worker(queue, Registry({"coop": _Handler(cooperative)}))
        job = await queue.enqueue(TENANT, "coop", b"")
        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        worker.request_stop()
        await asyncio.wait_for(worker.wait_stopped(), timeout=5)
        await task
        assert (await queue.get_job(job.id)).status == "completed"

    asyncio.run(_run())


def test_worker_abandons_jobs_after_shutdown_timeout(queue, caplog) -> None:
    async def _run() -> None:
        started = asyncio.Event()

        async def stubborn(ctx, job):
            started.set()
            await asyncio.sleep(30)
            return None

        worker = _worker(
            queue, Registry({"stubborn": _Handler(stubborn)}), shutdown_timeout=0.1
        )
        job = await queue.enqueue(TENANT, "stubborn", b"")
        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(started.wait(), timeout=5)
        worker.request_stop()
        await asyncio.wait_for(worker.wait_stopped(), timeout=5)
        await task

        stored = await queue.get_job(job.id)
        assert stored.status == "running"
        assert stored.worker_id == "w-1"

    with caplog.at_level(logging.WARNING, logger="jobplatform.worker"):
        asyncio.run(_run())
    assert "abandoning 1 jobs" in caplog.text
    assert "job abandoned during shutdown" in caplog.text


def test_worker_cancellation_drains(queue) -> None:
    async def _run() -> None:
        worker = _worker(queue, Registry())
        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)
        assert worker.status() == "running"
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(worker.wait_stopped(), timeout=1)
        assert worker.status() == "stopped"

    asyncio.run(_run())


def test_worker_backs_off_on_database_errors(queue, monkeypatch, caplog) -> None:
    async def _run() -> None:
        calls: list[str] = []

        async def flaky_dequeue(worker_id=None):
            calls.append(worker_id)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("connection refused"))
            raise NoJobsAvailable("empty")

        monkeypatch.setattr(queue, "dequeue", flaky_dequeue)
        worker = _worker(queue, Registry())

        async def polled_twice() -> bool:
            return len(calls) >= 2

        await _run_until(worker, polled_twice)
        assert calls[0] == "w-1"

    with caplog.at_level(logging.WARNING, logger="jobplatform.worker"):
        asyncio.run(_run())
    assert "dequeue failed, backing off" in caplog.text


def test_worker_survives_connection_errors(queue, monkeypatch, caplog) -> None:
    async def _run() -> None:
        real_dequeue = queue.dequeue
        dequeue_calls: list[str] = []
        sweeps: list[int] = []

        async def refusing_dequeue(worker_id=None):
            dequeue_calls.append(worker_id)
            if len(dequeue_calls) == 1:
                raise ConnectionRefusedError(111, "Connect call failed")
            return await real_dequeue(worker_id)

        async def refusing_cleanup() -> int:
            sweeps.append(1)
            raise ConnectionResetError(104, "Connection reset by peer")

        monkeypatch.setattr(queue, "dequeue", refusing_dequeue)
        monkeypatch.setattr(queue, "cleanup_stale_jobs", refusing_cleanup)

        async def ok(ctx, job):
            return b"ok"

        worker = _worker(queue, Registry({"noop": _Handler(ok)}), cleanup_interval=0.02)
        job = await queue.enqueue(TENANT, "noop", b"")

        async def recovered() -> bool:
            done = (await queue.get_job(job.id)).status == "completed"
            return done and len(sweeps) >= 2

        await _run_until(worker, recovered)
        assert len(dequeue_calls) >= 2

    with caplog.at_level(logging.WARNING, logger="jobplatform.worker"):
        asyncio.run(_run())
    assert "dequeue failed, backing off" in caplog.text
    assert "stale job cleanup failed" in caplog.text


def test_worker_runs_periodic_stale_cleanup(queue, monkeypatch) -> None:
    async def _run() -> None:
        sweeps: list[int] = []

        async def fake_cleanup() -> int:
            sweeps.append(1)
            if len(sweeps) == 1:
                raise OperationalError("UPDATE", {}, Exception("deadlock"))
            return 0

        monkeypatch.setattr(queue, "cleanup_stale_jobs", fake_cleanup)
        worker = _worker(queue, Registry(), cleanup_interval=0.02)

        async def swept_twice() -> bool:
            return len(sweeps) >= 2

        await _run_until(worker, swept_twice)

    asyncio.run(_run())


def test_worker_health_check(queue, db) -> None:
    async def _run() -> None:
        worker = _worker(queue, Registry())
        await queue.enqueue(TENANT, "noop", b"")
        health = await worker.check_health()
        assert health["status"] == "healthy"
        assert health["queue_length"] == 1
        assert health["state"] == "stopped"

        db.healthy = False
        health = await worker.check_health()
        assert health["status"] == "unhealthy"
        assert "database unreachable" in health["reason"]

    asyncio.run(_run())
