"""Durable job queue implemented with SQLAlchemy async sessions.

Every public operation runs in its own short transaction. On PostgreSQL jobs
are claimed with ``FOR UPDATE SKIP LOCKED``; other dialects fall back to a
compare-and-swap on the ``version`` column so that a pending row is claimed by
at most one caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import UUID, uuid4

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import metrics
from .contracts import (
    DuplicateJobError,
    JobNotFoundError,
    NoJobsAvailable,
    OptimisticLockError,
)
from .models import (
    STATUS_COMPLETED,
    STATUS_DEAD,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    EnqueueOptions,
    Job,
)
from .registry import validate_job_type
from .sql.database import Database, as_utc, utcnow
from .sql.schema import DeadLetters, JobHistoryTable, Jobs

STALE_JOB_ERROR = "job timed out"
logger = logging.getLogger(__name__)

_CLAIM_PG_SQL = text(
    """
    UPDATE jobs
       SET status = 'running',
           started_at = :now,
           first_started_at = COALESCE(first_started_at, :now),
           worker_id = :worker,
           updated_at = :now,
           version = version + 1
     WHERE id = (
           SELECT id FROM jobs
            WHERE status = 'pending' AND run_at <= :now
            ORDER BY priority DESC, run_at ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
     )
    RETURNING jobs.*
    """
).columns(*Jobs.c)


def backoff(retry_count: int) -> timedelta:
    """Delay before retry number ``retry_count`` (1 -> 2s, 2 -> 4s, 3 -> 8s)."""

    return timedelta(seconds=2**retry_count)


class DurableQueue:
    """Transactional enqueue/dequeue with retries, dead letters and history.

    Parameters:
        db: Database wrapper providing the async session factory.
        worker_id: Identity stamped on claimed rows when ``dequeue`` is called
            without an explicit worker id.
        prefer_pg_skip_locked: Use ``SKIP LOCKED`` claiming on PostgreSQL.
        claim_attempts: Compare-and-swap attempts per ``dequeue`` on dialects
            without ``SKIP LOCKED``.
    """

    def __init__(
        self,
        db: Database,
        *,
        worker_id: str = "default",
        prefer_pg_skip_locked: bool = True,
        claim_attempts: int = 5,
    ) -> None:
        self.db = db
        self.worker_id = worker_id
        self.prefer_pg_skip_locked = prefer_pg_skip_locked
        self.claim_attempts = claim_attempts
        self._warned_about_skip_locked = False

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return (
            f"DurableQueue(worker_id={self.worker_id!r}, "
            f"prefer_pg_skip_locked={self.prefer_pg_skip_locked})"
        )

    async def enqueue(
        self,
        tenant_id: UUID,
        job_type: str,
        payload: bytes,
        opts: EnqueueOptions | None = None,
    ) -> Job:
        """Insert a new ``pending`` job and return it.

        Raises:
            DuplicateJobError: If ``opts.idempotency_key`` is already held by
                another row in ``jobs``.
            InvalidJobTypeError: If ``job_type`` contains invalid characters.
        """

        validate_job_type(job_type)
        opts = opts or EnqueueOptions()
        if opts.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if opts.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than 0")
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError("payload must be bytes; use encode_payload() for JSON values")

        now = utcnow()
        values: dict[str, Any] = dict(
            id=uuid4(),
            tenant_id=tenant_id,
            type=job_type,
            payload=bytes(payload),
            priority=opts.priority,
            status=STATUS_PENDING,
            max_retries=opts.max_retries,
            retry_count=0,
            error_log=[],
            run_at=opts.run_at or now,
            timeout_seconds=opts.timeout_seconds,
            idempotency_key=opts.idempotency_key or None,
            schedule_id=opts.schedule_id,
            version=0,
            created_at=now,
            updated_at=now,
        )
        async with self.db.sessionmaker() as session:
            try:
                await session.execute(insert(Jobs).values(**values))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if values["idempotency_key"] is None:
                    raise
                logger.info(
                    "enqueue suppressed: type=%s tenant=%s idempotency_key=%s",
                    job_type,
                    tenant_id,
                    values["idempotency_key"],
                )
                raise DuplicateJobError(
                    f"duplicate job (idempotency key {values['idempotency_key']!r})"
                ) from exc

        metrics.jobs_enqueued.labels(type=job_type).inc()
        job = self._row_to_job(values)
        logger.info(
            "job enqueued: job_id=%s type=%s tenant=%s priority=%s run_at=%s idempotency_key=%s",
            job.id,
            job.type,
            job.tenant_id,
            job.priority,
            job.run_at.isoformat(),
            job.idempotency_key,
        )
        return job

    async def dequeue(self, worker_id: str | None = None) -> Job:
        """Claim the highest-priority eligible job and mark it ``running``.

        Raises:
            NoJobsAvailable: If no pending job has ``run_at <= now``.
        """

        worker = worker_id or self.worker_id
        now = utcnow()
        if self.db.dialect_name == "postgresql" and self.prefer_pg_skip_locked:
            row = await self._claim_pg(worker, now)
        else:
            if not self._warned_about_skip_locked:
                logger.warning(
                    "Running without SKIP LOCKED; claims fall back to compare-and-swap on version"
                )
                self._warned_about_skip_locked = True
            row = await self._claim_generic(worker, now)
        if row is None:
            raise NoJobsAvailable("no jobs available")

        job = self._row_to_job(row)
        logger.debug(
            "job dequeued: job_id=%s type=%s tenant=%s priority=%s retry_count=%s worker_id=%s",
            job.id,
            job.type,
            job.tenant_id,
            job.priority,
            job.retry_count,
            job.worker_id,
        )
        return job

    async def _claim_pg(self, worker: str, now: datetime) -> Mapping[str, Any] | None:
        async with self.db.sessionmaker() as session:
            try:
                row = (
                    await session.execute(_CLAIM_PG_SQL, {"now": now, "worker": worker})
                ).mappings().first()
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
            return row

    async def _claim_generic(self, worker: str, now: datetime) -> dict[str, Any] | None:
        async with self.db.sessionmaker() as session:
            for _ in range(self.claim_attempts):
                query = (
                    select(Jobs)
                    .where(Jobs.c.status == STATUS_PENDING)
                    .where(Jobs.c.run_at <= now)
                    .order_by(Jobs.c.priority.desc(), Jobs.c.run_at.asc())
                    .limit(1)
                )
                row = (await session.execute(query)).mappings().first()
                if not row:
                    return None
                claimed = dict(row)
                claimed.update(
                    status=STATUS_RUNNING,
                    started_at=now,
                    first_started_at=row["first_started_at"] or now,
                    worker_id=worker,
                    updated_at=now,
                    version=row["version"] + 1,
                )
                stmt = (
                    update(Jobs)
                    .where(Jobs.c.id == row["id"])
                    .where(Jobs.c.status == STATUS_PENDING)
                    .where(Jobs.c.version == row["version"])
                    .values(
                        status=STATUS_RUNNING,
                        started_at=now,
                        first_started_at=claimed["first_started_at"],
                        worker_id=worker,
                        updated_at=now,
                        version=Jobs.c.version + 1,
                    )
                )
                res = await session.execute(stmt)
                if res.rowcount:
                    await session.commit()
                    return claimed
                await session.rollback()
            return None

    async def get_job(self, job_id: UUID) -> Job:
        async with self.db.sessionmaker() as session:
            row = (
                await session.execute(select(Jobs).where(Jobs.c.id == job_id))
            ).mappings().first()
            if not row:
                raise JobNotFoundError(f"job not found: {job_id}")
            return self._row_to_job(row)

    async def complete(
        self, job_id: UUID, result: bytes | None = None, *, worker_id: str | None = None
    ) -> None:
        """Transition ``running -> completed`` and record a history row.

        Calling it again for a job that is no longer running is a no-op. When
        ``worker_id`` is given, a report for an attempt claimed by another
        worker is a no-op too. A failure to append history is logged and does
        not undo completion.
        """

        now = utcnow()
        async with self.db.sessionmaker() as session:
            try:
                row = await self._locked_row(session, job_id)
                if row["status"] != STATUS_RUNNING:
                    await session.rollback()
                    logger.debug(
                        "complete ignored: job_id=%s status=%s", job_id, row["status"]
                    )
                    return
                if worker_id is not None and row["worker_id"] != worker_id:
                    await session.rollback()
                    logger.info(
                        "complete ignored: job_id=%s claimed_by=%s reported_by=%s",
                        job_id,
                        row["worker_id"],
                        worker_id,
                    )
                    return
                res = await session.execute(
                    update(Jobs)
                    .where(Jobs.c.id == job_id)
                    .where(Jobs.c.version == row["version"])
                    .values(
                        status=STATUS_COMPLETED,
                        completed_at=now,
                        updated_at=now,
                        version=Jobs.c.version + 1,
                    )
                )
                if res.rowcount == 0:
                    raise OptimisticLockError(f"complete lost race for job {job_id}")
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        job = self._row_to_job(row)
        await self._append_history(
            job, STATUS_COMPLETED, completed_at=now, result=result, error=None
        )
        logger.info(
            "job completed: job_id=%s type=%s tenant=%s priority=%s retry_count=%s worker_id=%s",
            job.id,
            job.type,
            job.tenant_id,
            job.priority,
            job.retry_count,
            job.worker_id,
        )

    async def fail(
        self, job_id: UUID, error_message: str, *, worker_id: str | None = None
    ) -> None:
        """Record a failed attempt; requeue with backoff or dead-letter the job.

        Raises:
            JobNotFoundError: If the job does not exist.
            OptimisticLockError: If the job is no longer ``running`` or, when
                ``worker_id`` is given, is claimed by another worker.
        """

        now = utcnow()
        async with self.db.sessionmaker() as session:
            try:
                row = await self._locked_row(session, job_id)
                if row["status"] != STATUS_RUNNING:
                    raise OptimisticLockError(
                        f"job {job_id} is {row['status']}, not {STATUS_RUNNING}"
                    )
                if worker_id is not None and row["worker_id"] != worker_id:
                    raise OptimisticLockError(
                        f"job {job_id} is claimed by {row['worker_id']}, not {worker_id}"
                    )
                job = self._row_to_job(row)
                outcome = await self._apply_failure(session, job, error_message, now)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        if outcome == STATUS_DEAD:
            await self._after_dead_letter(job, error_message, now)

    async def move_to_dead_letter(self, job: Job, final_error: str) -> None:
        """Dead-letter ``job`` regardless of its remaining retry budget."""

        now = utcnow()
        async with self.db.sessionmaker() as session:
            try:
                await self._dead_letter(session, job, final_error, now)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        await self._after_dead_letter(job, final_error, now)

    async def cleanup_stale_jobs(self) -> int:
        """Fail every ``running`` job whose ``started_at + timeout`` has passed.

        The rows go through the normal failure path (retry with backoff or dead
        letter) with the error ``"job timed out"``.
        """

        now = utcnow()
        dead: list[Job] = []
        reclaimed = 0
        async with self.db.sessionmaker() as session:
            try:
                rows = (
                    await session.execute(
                        select(Jobs)
                        .where(Jobs.c.status == STATUS_RUNNING)
                        .where(Jobs.c.started_at.is_not(None))
                        .where(Jobs.c.started_at < now)
                        .with_for_update(skip_locked=True)
                    )
                ).mappings().all()
                for row in rows:
                    job = self._row_to_job(row)
                    if job.started_at + timedelta(seconds=job.timeout_seconds) >= now:
                        continue
                    try:
                        outcome = await self._apply_failure(session, job, STALE_JOB_ERROR, now)
                    except OptimisticLockError:
                        logger.debug("stale cleanup skipped: job_id=%s changed concurrently", job.id)
                        continue
                    reclaimed += 1
                    if outcome == STATUS_DEAD:
                        dead.append(job)
                    logger.warning(
                        "stale job reclaimed: job_id=%s type=%s tenant=%s priority=%s "
                        "retry_count=%s worker_id=%s outcome=%s",
                        job.id,
                        job.type,
                        job.tenant_id,
                        job.priority,
                        job.retry_count,
                        job.worker_id,
                        outcome,
                    )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        for job in dead:
            await self._after_dead_letter(job, STALE_JOB_ERROR, now)
        if reclaimed:
            metrics.stale_jobs_reclaimed.inc(reclaimed)
            logger.warning("cleaned up stale jobs: count=%s", reclaimed)
        return reclaimed

    async def delete_completed_jobs(self, older_than: timedelta) -> int:
        """Remove ``completed`` and ``dead`` rows finished before ``now - older_than``."""

        cutoff = utcnow() - older_than
        async with self.db.sessionmaker() as session:
            try:
                res = await session.execute(
                    delete(Jobs)
                    .where(Jobs.c.status.in_([STATUS_COMPLETED, STATUS_DEAD]))
                    .where(Jobs.c.completed_at < cutoff)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        deleted = int(res.rowcount or 0)
        logger.info("completed jobs deleted: count=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted

    async def queue_length(self) -> int:
        return await self._count_pending()

    async def queue_length_by_type(self, job_type: str) -> int:
        return await self._count_pending(Jobs.c.type == job_type)

    async def _count_pending(self, *criteria: Any) -> int:
        async with self.db.sessionmaker() as session:
            query = select(func.count()).select_from(Jobs).where(Jobs.c.status == STATUS_PENDING)
            for criterion in criteria:
                query = query.where(criterion)
            count = (await session.execute(query)).scalar()
            return int(count or 0)

    async def _locked_row(self, session: Any, job_id: UUID) -> Mapping[str, Any]:
        row = (
            await session.execute(
                select(Jobs).where(Jobs.c.id == job_id).with_for_update()
            )
        ).mappings().first()
        if not row:
            raise JobNotFoundError(f"job not found: {job_id}")
        return row

    async def _apply_failure(
        self, session: Any, job: Job, error_message: str, now: datetime
    ) -> str:
        """Requeue or dead-letter ``job`` inside ``session``; return the new status."""

        if job.retry_count + 1 >= job.max_retries:
            await self._dead_letter(session, job, error_message, now)
            return STATUS_DEAD

        retry_count = job.retry_count + 1
        next_run_at = max(now + backoff(retry_count), job.run_at)
        res = await session.execute(
            update(Jobs)
            .where(Jobs.c.id == job.id)
            .where(Jobs.c.version == job.version)
            .values(
                status=STATUS_PENDING,
                retry_count=retry_count,
                last_error=error_message,
                error_log=[*job.error_log, error_message],
                run_at=next_run_at,
                started_at=None,
                worker_id=None,
                updated_at=now,
                version=Jobs.c.version + 1,
            )
        )
        if res.rowcount == 0:
            raise OptimisticLockError(f"retry lost race for job {job.id}")
        logger.info(
            "job failed, will retry: job_id=%s type=%s tenant=%s priority=%s retry_count=%s "
            "max_retries=%s worker_id=%s next_run_at=%s error=%s",
            job.id,
            job.type,
            job.tenant_id,
            job.priority,
            retry_count,
            job.max_retries,
            job.worker_id,
            next_run_at.isoformat(),
            error_message,
        )
        return STATUS_PENDING

    async def _dead_letter(
        self, session: Any, job: Job, final_error: str, now: datetime
    ) -> None:
        errors = [*job.error_log, final_error]
        res = await session.execute(
            update(Jobs)
            .where(Jobs.c.id == job.id)
            .where(Jobs.c.version == job.version)
            .values(
                status=STATUS_DEAD,
                completed_at=now,
                last_error=final_error,
                error_log=errors,
                updated_at=now,
                version=Jobs.c.version + 1,
            )
        )
        if res.rowcount == 0:
            raise OptimisticLockError(f"dead-letter lost race for job {job.id}")
        await session.execute(
            insert(DeadLetters).values(
                id=uuid4(),
                tenant_id=job.tenant_id,
                original_job_id=job.id,
                type=job.type,
                payload=job.payload,
                errors=errors,
                max_retries=job.max_retries,
                total_attempts=job.retry_count + 1,
                first_attempted_at=job.first_started_at or job.started_at,
                last_attempted_at=now,
                acknowledged=False,
                created_at=now,
            )
        )

    async def _after_dead_letter(self, job: Job, final_error: str, now: datetime) -> None:
        metrics.dead_letters.labels(type=job.type).inc()
        await self._append_history(
            job, STATUS_FAILED, completed_at=now, result=None, error=final_error
        )
        logger.warning(
            "job moved to dead letter queue: job_id=%s type=%s tenant=%s priority=%s "
            "retry_count=%s worker_id=%s total_attempts=%s error=%s",
            job.id,
            job.type,
            job.tenant_id,
            job.priority,
            job.retry_count,
            job.worker_id,
            job.retry_count + 1,
            final_error,
        )

    async def _append_history(
        self,
        job: Job,
        status: str,
        *,
        completed_at: datetime,
        result: bytes | None,
        error: str | None,
    ) -> None:
        started_at = job.started_at or completed_at
        duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
        try:
            async with self.db.sessionmaker() as session:
                await session.execute(
                    insert(JobHistoryTable).values(
                        id=uuid4(),
                        tenant_id=job.tenant_id,
                        job_id=job.id,
                        schedule_id=job.schedule_id,
                        type=job.type,
                        payload=job.payload,
                        status=status,
                        result=result,
                        error_message=error,
                        started_at=started_at,
                        completed_at=completed_at,
                        duration_ms=duration_ms,
                        worker_id=job.worker_id,
                        created_at=completed_at,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "failed to record job history: job_id=%s status=%s error=%s",
                job.id,
                status,
                exc,
                exc_info=exc,
            )

    @staticmethod
    def _row_to_job(row: Mapping[str, Any]) -> Job:
        return Job(
            id=row["id"],
            tenant_id=row["tenant_id"],
            type=row["type"],
            payload=bytes(row["payload"] or b""),
            priority=row["priority"],
            status=row["status"],
            max_retries=row["max_retries"],
            retry_count=row["retry_count"],
            run_at=as_utc(row["run_at"]),
            timeout_seconds=row["timeout_seconds"],
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            last_error=row.get("last_error"),
            started_at=as_utc(row.get("started_at")),
            first_started_at=as_utc(row.get("first_started_at")),
            completed_at=as_utc(row.get("completed_at")),
            worker_id=row.get("worker_id"),
            idempotency_key=row.get("idempotency_key"),
            schedule_id=row.get("schedule_id"),
            error_log=list(row.get("error_log") or []),
            version=row.get("version") or 0,
        )
