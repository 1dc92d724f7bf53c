"""Read side of the platform: job history, dead letters and aggregate metrics."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import case, func, select, update

from .contracts import DeadLetterNotFoundError, HistoryNotFoundError
from .models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    PRIORITY_NORMAL,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_RUNNING,
    DeadLetter,
    EnqueueOptions,
    HistoryFilter,
    Job,
    JobHistory,
    JobMetrics,
)
from .queue import DurableQueue
from .sql.database import Database, as_utc, utcnow
from .sql.schema import DeadLetters, JobHistoryTable, Jobs

logger = logging.getLogger(__name__)


class JobRepository:
    """Queries over ``job_history`` and ``dead_letters`` plus operator actions."""

    def __init__(self, db: Database, queue: DurableQueue) -> None:
        self.db = db
        self.queue = queue

    async def list_history(self, query: HistoryFilter) -> tuple[list[JobHistory], int]:
        """Return one page of history rows (newest first) and the total match count."""

        criteria = [JobHistoryTable.c.tenant_id == query.tenant_id]
        if query.type:
            criteria.append(JobHistoryTable.c.type == query.type)
        if query.status:
            criteria.append(JobHistoryTable.c.status == query.status)
        if query.date_from:
            criteria.append(JobHistoryTable.c.started_at >= query.date_from)
        if query.date_to:
            criteria.append(JobHistoryTable.c.started_at <= query.date_to)
        if query.schedule_id:
            criteria.append(JobHistoryTable.c.schedule_id == query.schedule_id)

        async with self.db.sessionmaker() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(JobHistoryTable).where(*criteria)
                )
            ).scalar()
            rows = (
                await session.execute(
                    select(JobHistoryTable)
                    .where(*criteria)
                    .order_by(JobHistoryTable.c.started_at.desc())
                    .limit(query.limit if query.limit > 0 else 50)
                    .offset(max(query.offset, 0))
                )
            ).mappings().all()
        return [self._row_to_history(row) for row in rows], int(total or 0)

    async def get_history(self, history_id: UUID) -> JobHistory:
        async with self.db.sessionmaker() as session:
            row = (
                await session.execute(
                    select(JobHistoryTable).where(JobHistoryTable.c.id == history_id)
                )
            ).mappings().first()
        if not row:
            raise HistoryNotFoundError(f"job history not found: {history_id}")
        return self._row_to_history(row)

    async def list_dead_letters(
        self,
        tenant_id: UUID,
        acknowledged: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeadLetter], int]:
        criteria = [
            DeadLetters.c.tenant_id == tenant_id,
            DeadLetters.c.acknowledged.is_(acknowledged),
        ]
        async with self.db.sessionmaker() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(DeadLetters).where(*criteria)
                )
            ).scalar()
            rows = (
                await session.execute(
                    select(DeadLetters)
                    .where(*criteria)
                    .order_by(DeadLetters.c.created_at.desc())
                    .limit(limit if limit > 0 else 50)
                    .offset(max(offset, 0))
                )
            ).mappings().all()
        return [self._row_to_dead_letter(row) for row in rows], int(total or 0)

    async def get_dead_letter(self, dead_letter_id: UUID) -> DeadLetter:
        async with self.db.sessionmaker() as session:
            row = (
                await session.execute(
                    select(DeadLetters).where(DeadLetters.c.id == dead_letter_id)
                )
            ).mappings().first()
        if not row:
            raise DeadLetterNotFoundError(f"dead letter not found: {dead_letter_id}")
        return self._row_to_dead_letter(row)

    async def acknowledge_dead_letter(self, dead_letter_id: UUID, user_id: UUID) -> None:
        """Mark a dead letter as handled by ``user_id``.

        Raises:
            DeadLetterNotFoundError: If the row does not exist or was already
                acknowledged.
        """

        async with self.db.sessionmaker() as session:
            res = await session.execute(
                update(DeadLetters)
                .where(DeadLetters.c.id == dead_letter_id)
                .where(DeadLetters.c.acknowledged.is_(False))
                .values(acknowledged=True, acknowledged_by=user_id, acknowledged_at=utcnow())
            )
            if res.rowcount == 0:
                await session.rollback()
                raise DeadLetterNotFoundError(
                    f"dead letter not found or already acknowledged: {dead_letter_id}"
                )
            await session.commit()
        logger.info("dead letter acknowledged: id=%s user_id=%s", dead_letter_id, user_id)

    async def retry(self, history_id: UUID) -> Job:
        """Enqueue a fresh job with the type and payload of a history row."""

        history = await self.get_history(history_id)
        job = await self.queue.enqueue(
            history.tenant_id,
            history.type,
            history.payload,
            EnqueueOptions(
                priority=PRIORITY_NORMAL,
                max_retries=DEFAULT_MAX_RETRIES,
                timeout_seconds=DEFAULT_TIMEOUT_SECONDS,
            ),
        )
        logger.info("job retried from history: history_id=%s job_id=%s", history_id, job.id)
        return job

    async def get_metrics(self, tenant_id: UUID) -> JobMetrics:
        since = utcnow() - timedelta(hours=24)
        async with self.db.sessionmaker() as session:
            pending = await self._count_jobs(session, tenant_id, STATUS_PENDING)
            running = await self._count_jobs(session, tenant_id, STATUS_RUNNING)
            recent = (
                await session.execute(
                    select(
                        func.count(),
                        func.coalesce(
                            func.sum(
                                case((JobHistoryTable.c.status == STATUS_COMPLETED, 1), else_=0)
                            ),
                            0,
                        ),
                        func.coalesce(func.avg(JobHistoryTable.c.duration_ms), 0),
                    )
                    .select_from(JobHistoryTable)
                    .where(JobHistoryTable.c.tenant_id == tenant_id)
                    .where(JobHistoryTable.c.started_at >= since)
                )
            ).one()
            dead = (
                await session.execute(
                    select(func.count())
                    .select_from(DeadLetters)
                    .where(DeadLetters.c.tenant_id == tenant_id)
                    .where(DeadLetters.c.acknowledged.is_(False))
                )
            ).scalar()

        jobs_last_24h, success_last_24h, avg_duration = recent
        jobs_last_24h = int(jobs_last_24h or 0)
        success_last_24h = int(success_last_24h or 0)
        return JobMetrics(
            pending_count=pending,
            running_count=running,
            jobs_last_24h=jobs_last_24h,
            success_last_24h=success_last_24h,
            success_rate=(success_last_24h / jobs_last_24h * 100) if jobs_last_24h else 0.0,
            avg_duration_ms=float(avg_duration or 0),
            dead_letter_count=int(dead or 0),
        )

    @staticmethod
    async def _count_jobs(session: Any, tenant_id: UUID, status: str) -> int:
        count = (
            await session.execute(
                select(func.count())
                .select_from(Jobs)
                .where(Jobs.c.tenant_id == tenant_id)
                .where(Jobs.c.status == status)
            )
        ).scalar()
        return int(count or 0)

    @staticmethod
    def _row_to_history(row: Mapping[str, Any]) -> JobHistory:
        return JobHistory(
            id=row["id"],
            tenant_id=row["tenant_id"],
            job_id=row["job_id"],
            schedule_id=row["schedule_id"],
            type=row["type"],
            payload=bytes(row["payload"] or b""),
            status=row["status"],
            result=bytes(row["result"]) if row["result"] is not None else None,
            error_message=row["error_message"],
            started_at=as_utc(row["started_at"]),
            completed_at=as_utc(row["completed_at"]),
            duration_ms=row["duration_ms"],
            worker_id=row["worker_id"],
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _row_to_dead_letter(row: Mapping[str, Any]) -> DeadLetter:
        return DeadLetter(
            id=row["id"],
            tenant_id=row["tenant_id"],
            original_job_id=row["original_job_id"],
            type=row["type"],
            payload=bytes(row["payload"] or b""),
            errors=list(row["errors"] or []),
            max_retries=row["max_retries"],
            total_attempts=row["total_attempts"],
            first_attempted_at=as_utc(row["first_attempted_at"]),
            last_attempted_at=as_utc(row["last_attempted_at"]),
            acknowledged=bool(row["acknowledged"]),
            acknowledged_by=row["acknowledged_by"],
            acknowledged_at=as_utc(row["acknowledged_at"]),
            created_at=as_utc(row["created_at"]),
        )
