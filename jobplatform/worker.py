"""Async worker pool built on :mod:`asyncio` primitives.

The worker claims jobs from a :class:`~jobplatform.queue.DurableQueue` and runs
their handlers with a bounded degree of concurrency. Callers signal termination
with :meth:`Worker.request_stop` (or by cancelling :meth:`Worker.run`) and can
await teardown via :meth:`Worker.wait_stopped`. In-flight handlers get up to
``shutdown_timeout`` seconds to finish; whatever is left is abandoned and its
rows are recovered later by stale cleanup.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from . import metrics as prom
from .contracts import (
    HandlerNotFoundError,
    JobContext,
    JobError,
    JobNotFoundError,
    NoJobsAvailable,
    OptimisticLockError,
)
from .models import Job, WorkerMetrics
from .queue import DurableQueue
from .registry import Registry
from .sql.database import utcnow

MAX_POLL_BACKOFF = 30.0
logger = logging.getLogger(__name__)


class Worker:
    def __init__(
        self,
        queue: DurableQueue,
        registry: Registry,
        *,
        worker_id: str | None = None,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        shutdown_timeout: float | None = 30.0,
        cleanup_interval: float = 300.0,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.cleanup_interval = cleanup_interval
        self._validate_configuration()
        self._stop = asyncio.Event()
        self._draining = asyncio.Event()
        self._stopped = asyncio.Event()
        self._sem = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._active_jobs = 0
        self._active_jobs_zero = asyncio.Event()
        self._active_jobs_zero.set()
        self._running = False
        self._processed = 0
        self._succeeded = 0
        self._failed = 0

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Worker(id={self.worker_id}, concurrency={self.concurrency})"

    def request_stop(self) -> None:
        self._stop.set()

    async def wait_stopped(self) -> None:
        """Wait until the worker has drained or abandoned its in-flight jobs."""

        await self._stopped.wait()

    def status(self) -> str:
        return "running" if self._running else "stopped"

    async def metrics(self) -> WorkerMetrics:
        return WorkerMetrics(
            jobs_processed=self._processed,
            jobs_succeeded=self._succeeded,
            jobs_failed=self._failed,
            in_flight=self._active_jobs,
            queue_length=await self.queue.queue_length(),
        )

    def reset_metrics(self) -> None:
        self._processed = 0
        self._succeeded = 0
        self._failed = 0

    async def run(self) -> None:
        self._running = True
        self._stopped.clear()
        logger.info(
            "worker starting: worker_id=%s concurrency=%s poll_interval=%.2fs",
            self.worker_id,
            self.concurrency,
            self.poll_interval,
        )
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._cleanup_loop())
                tg.create_task(self._poll_loop())
        finally:
            await self._wait_for_drain()
            self._running = False
            logger.info("worker stopped: worker_id=%s", self.worker_id)

    async def _poll_loop(self) -> None:
        backoff = self.poll_interval
        while not self._stop.is_set():
            try:
                await self._fill_slots()
                backoff = self.poll_interval
            except (SQLAlchemyError, OSError) as exc:
                logger.warning(
                    "dequeue failed, backing off for %.2fs: %s",
                    backoff,
                    exc,
                    exc_info=True,
                )
                await self._sleep(self._jitter(backoff))
                backoff = min(backoff * 2, MAX_POLL_BACKOFF)
                continue
            await self._sleep(self.poll_interval)

    async def _fill_slots(self) -> None:
        while not self._stop.is_set() and not self._sem.locked():
            await self._sem.acquire()
            try:
                job = await self.queue.dequeue(self.worker_id)
            except NoJobsAvailable:
                self._sem.release()
                return
            except BaseException:
                self._sem.release()
                raise
            self._increment_active()
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_job(self, job: Job) -> None:
        try:
            await self._process(job)
        except asyncio.CancelledError:
            logger.warning(
                "job abandoned during shutdown: job_id=%s type=%s tenant=%s worker_id=%s",
                job.id,
                job.type,
                job.tenant_id,
                self.worker_id,
            )
            raise
        finally:
            self._sem.release()
            self._decrement_active()

    async def _process(self, job: Job) -> None:
        logger.info(
            "processing job: job_id=%s type=%s tenant=%s priority=%s retry_count=%s worker_id=%s",
            job.id,
            job.type,
            job.tenant_id,
            job.priority,
            job.retry_count,
            self.worker_id,
        )
        try:
            handler = self.registry.get(job.type)
        except HandlerNotFoundError:
            logger.error("no handler for job type: job_id=%s type=%s", job.id, job.type)
            await self._finish(job, None, f"no handler for job type: {job.type}", 0.0)
            return

        deadline = (job.started_at or utcnow()) + timedelta(seconds=job.timeout_seconds)
        ctx = JobContext(job=job, worker_id=self.worker_id, deadline=deadline, _stop=self._draining)
        loop = asyncio.get_running_loop()
        timeout = asyncio.timeout_at(loop.time() + ctx.remaining())
        result: bytes | None = None
        error: str | None = None
        started = time.monotonic()
        try:
            async with timeout:
                result = await handler.handle(ctx, job)
        except TimeoutError as exc:
            if timeout.expired():
                error = f"job exceeded timeout of {job.timeout_seconds}s"
            else:
                error = f"job panicked: {exc!r}"
        except JobError as exc:
            error = str(exc) or type(exc).__name__
        except Exception as exc:
            error = f"job panicked: {exc!r}"
            logger.error(
                "job panicked: job_id=%s type=%s tenant=%s",
                job.id,
                job.type,
                job.tenant_id,
                exc_info=exc,
            )
        await self._finish(job, result, error, time.monotonic() - started)

    async def _finish(
        self, job: Job, result: bytes | None, error: str | None, elapsed: float
    ) -> None:
        self._processed += 1
        prom.job_duration.labels(type=job.type).observe(elapsed)
        try:
            if error is None:
                await self.queue.complete(job.id, result, worker_id=self.worker_id)
            else:
                logger.warning(
                    "job failed: job_id=%s type=%s tenant=%s retry_count=%s max_retries=%s "
                    "duration=%.3fs error=%s",
                    job.id,
                    job.type,
                    job.tenant_id,
                    job.retry_count + 1,
                    job.max_retries,
                    elapsed,
                    error,
                )
                await self.queue.fail(job.id, error, worker_id=self.worker_id)
        except (OptimisticLockError, JobNotFoundError) as exc:
            logger.info("job outcome dropped: job_id=%s reason=%s", job.id, exc)
            error = error or str(exc)
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "failed to record job outcome: job_id=%s outcome=%s",
                job.id,
                "failed" if error else "completed",
                exc_info=exc,
            )
            error = error or repr(exc)

        if error is None:
            self._succeeded += 1
            prom.jobs_processed.labels(type=job.type, outcome="succeeded").inc()
        else:
            self._failed += 1
            prom.jobs_processed.labels(type=job.type, outcome="failed").inc()

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            if not await self._sleep(self.cleanup_interval):
                return
            try:
                await self.queue.cleanup_stale_jobs()
            except (SQLAlchemyError, OSError) as exc:
                logger.error("stale job cleanup failed: %s", exc, exc_info=True)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless a stop is requested first; return ``False`` on stop."""

        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _wait_for_drain(self) -> None:
        self._stop.set()
        self._draining.set()
        logger.info(
            "worker stopping, waiting for active jobs: worker_id=%s active_jobs=%s",
            self.worker_id,
            self._active_jobs,
        )
        try:
            if self.shutdown_timeout is None:
                await self._active_jobs_zero.wait()
                return
            await asyncio.wait_for(self._active_jobs_zero.wait(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "worker shutdown timed out after %.2fs; abandoning %d jobs",
                self.shutdown_timeout,
                len(self._tasks),
            )
            for task in list(self._tasks):
                task.cancel()
        finally:
            try:
                if self._tasks:
                    await asyncio.gather(*self._tasks, return_exceptions=True)
            finally:
                self._stopped.set()

    async def check_health(self) -> dict[str, Any]:
        try:
            await self.queue.db.check_connection()
        except (SQLAlchemyError, OSError) as exc:
            return {"status": "unhealthy", "reason": repr(exc)}

        return {
            "status": "healthy",
            "worker_id": self.worker_id,
            "state": self.status(),
            "active_jobs": self._active_jobs,
            "queue_length": await self.queue.queue_length(),
        }

    @staticmethod
    def _jitter(value: float) -> float:
        return value * (0.8 + random.random() * 0.4)

    def _increment_active(self) -> None:
        self._active_jobs += 1
        prom.jobs_in_flight.inc()
        if self._active_jobs == 1:
            self._active_jobs_zero.clear()

    def _decrement_active(self) -> None:
        self._active_jobs -= 1
        prom.jobs_in_flight.dec()
        if self._active_jobs == 0:
            self._active_jobs_zero.set()

    def _validate_configuration(self) -> None:
        if self.concurrency <= 0:
            raise ValueError("concurrency must be greater than 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be greater than 0")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be greater than 0")
        if self.shutdown_timeout is not None and self.shutdown_timeout <= 0:
            raise ValueError("shutdown_timeout must be greater than 0 when provided")
