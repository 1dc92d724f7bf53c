"""Turns recurring schedules into queue insertions.

Each tick locks the due ``schedules`` rows (skipping rows held by another
scheduler), enqueues one job per schedule under a minute-granular idempotency
key and advances ``next_run_at``. Replicas racing inside the same minute are
absorbed by the queue's idempotency check.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID, uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import metrics
from .contracts import (
    DuplicateJobError,
    DuplicateScheduleError,
    JobPlatformError,
    ScheduleNotFoundError,
)
from .models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    PRIORITY_NORMAL,
    EnqueueOptions,
    Schedule,
)
from .queue import DurableQueue
from .recurrence import next_run
from .registry import validate_job_type
from .sql.database import Database, as_utc, utcnow
from .sql.schema import Schedules

logger = logging.getLogger(__name__)


def idempotency_key(schedule_id: UUID, now: datetime) -> str:
    """Key shared by every replica firing ``schedule_id`` in the same minute."""

    return f"schedule-{schedule_id}-{int(now.timestamp()) // 60}"


class Scheduler:
    def __init__(
        self,
        db: Database,
        queue: DurableQueue,
        *,
        interval: float = 30.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than 0")
        self.db = db
        self.queue = queue
        self.interval = interval
        self._stop = asyncio.Event()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"Scheduler(interval={self.interval})"

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Tick immediately, then every ``interval`` seconds until stopped."""

        logger.info("scheduler started: interval=%.1fs", self.interval)
        try:
            while not self._stop.is_set():
                try:
                    await self.tick()
                except (SQLAlchemyError, OSError) as exc:
                    logger.error("scheduler tick failed: %s", exc, exc_info=True)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            logger.info("scheduler stopped")

    async def tick(self) -> int:
        """Fire every enabled schedule whose ``next_run_at`` has passed.

        Returns the number of schedules that produced (or deduplicated) a job.
        """

        now = utcnow()
        fired = 0
        async with self.db.sessionmaker() as session:
            try:
                rows = (
                    await session.execute(
                        select(Schedules)
                        .where(Schedules.c.enabled.is_(True))
                        .where(Schedules.c.next_run_at <= now)
                        .order_by(Schedules.c.next_run_at)
                        .with_for_update(skip_locked=True)
                    )
                ).mappings().all()
                schedules = [self._row_to_schedule(row) for row in rows]
                outcomes = [await self._fire(schedule, now) for schedule in schedules]
                for schedule, ok in zip(schedules, outcomes):
                    if ok:
                        fired += 1
                        await session.execute(
                            update(Schedules)
                            .where(Schedules.c.id == schedule.id)
                            .values(
                                last_run_at=now,
                                next_run_at=next_run(schedule, now),
                                run_count=Schedules.c.run_count + 1,
                                updated_at=now,
                            )
                        )
                    else:
                        await session.execute(
                            update(Schedules)
                            .where(Schedules.c.id == schedule.id)
                            .values(fail_count=Schedules.c.fail_count + 1, updated_at=now)
                        )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        if rows:
            logger.debug("scheduler tick: due=%s fired=%s", len(rows), fired)
        return fired

    async def _fire(self, schedule: Schedule, now: datetime) -> bool:
        opts = EnqueueOptions(
            priority=PRIORITY_NORMAL,
            run_at=now,
            max_retries=DEFAULT_MAX_RETRIES,
            timeout_seconds=DEFAULT_TIMEOUT_SECONDS,
            idempotency_key=idempotency_key(schedule.id, now),
            schedule_id=schedule.id,
        )
        try:
            await self.queue.enqueue(
                schedule.tenant_id, schedule.job_type, schedule.job_payload, opts
            )
        except DuplicateJobError:
            logger.info(
                "schedule already fired this minute: schedule_id=%s name=%s",
                schedule.id,
                schedule.name,
            )
        except (SQLAlchemyError, JobPlatformError, ValueError) as exc:
            logger.error(
                "failed to enqueue scheduled job: schedule_id=%s name=%s type=%s error=%s",
                schedule.id,
                schedule.name,
                schedule.job_type,
                exc,
            )
            return False
        metrics.schedules_fired.labels(job_type=schedule.job_type).inc()
        return True

    async def create_schedule(self, schedule: Schedule) -> Schedule:
        """Persist ``schedule``; ``next_run_at`` is computed from now when unset.

        Raises:
            DuplicateScheduleError: If the tenant already has a schedule with
                the same name.
        """

        validate_job_type(schedule.job_type)
        now = utcnow()
        schedule.id = schedule.id or uuid4()
        schedule.next_run_at = schedule.next_run_at or next_run(schedule, now)
        schedule.created_at = now
        schedule.updated_at = now
        async with self.db.sessionmaker() as session:
            try:
                await session.execute(insert(Schedules).values(**self._values(schedule)))
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateScheduleError(
                    f"schedule {schedule.name!r} already exists for tenant {schedule.tenant_id}"
                ) from exc
        logger.info(
            "schedule created: schedule_id=%s tenant=%s name=%s type=%s next_run_at=%s",
            schedule.id,
            schedule.tenant_id,
            schedule.name,
            schedule.job_type,
            schedule.next_run_at.isoformat(),
        )
        return schedule

    async def get_schedule(self, schedule_id: UUID) -> Schedule:
        async with self.db.sessionmaker() as session:
            row = (
                await session.execute(select(Schedules).where(Schedules.c.id == schedule_id))
            ).mappings().first()
            if not row:
                raise ScheduleNotFoundError(f"schedule not found: {schedule_id}")
            return self._row_to_schedule(row)

    async def update_schedule(self, schedule: Schedule) -> Schedule:
        """Write the new definition and recompute ``next_run_at`` from now."""

        validate_job_type(schedule.job_type)
        now = utcnow()
        schedule.next_run_at = next_run(schedule, now)
        schedule.updated_at = now
        values = self._values(schedule)
        for column in ("id", "tenant_id", "created_at", "last_run_at", "run_count", "fail_count"):
            values.pop(column)
        async with self.db.sessionmaker() as session:
            try:
                res = await session.execute(
                    update(Schedules).where(Schedules.c.id == schedule.id).values(**values)
                )
                if res.rowcount == 0:
                    raise ScheduleNotFoundError(f"schedule not found: {schedule.id}")
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateScheduleError(
                    f"schedule {schedule.name!r} already exists for tenant {schedule.tenant_id}"
                ) from exc
            except Exception:
                await session.rollback()
                raise
        logger.info(
            "schedule updated: schedule_id=%s next_run_at=%s",
            schedule.id,
            schedule.next_run_at.isoformat(),
        )
        return schedule

    async def delete_schedule(self, schedule_id: UUID) -> None:
        async with self.db.sessionmaker() as session:
            res = await session.execute(delete(Schedules).where(Schedules.c.id == schedule_id))
            if res.rowcount == 0:
                await session.rollback()
                raise ScheduleNotFoundError(f"schedule not found: {schedule_id}")
            await session.commit()
        logger.info("schedule deleted: schedule_id=%s", schedule_id)

    async def enable_schedule(self, schedule_id: UUID) -> None:
        await self._set_enabled(schedule_id, True)

    async def disable_schedule(self, schedule_id: UUID) -> None:
        await self._set_enabled(schedule_id, False)

    async def _set_enabled(self, schedule_id: UUID, enabled: bool) -> None:
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                update(Schedules)
                .where(Schedules.c.id == schedule_id)
                .values(enabled=enabled, updated_at=utcnow())
            )
            if res.rowcount == 0:
                await session.rollback()
                raise ScheduleNotFoundError(f"schedule not found: {schedule_id}")
            await session.commit()
        logger.info("schedule %s: schedule_id=%s", "enabled" if enabled else "disabled", schedule_id)

    async def list_schedules(self, tenant_id: UUID) -> list[Schedule]:
        async with self.db.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(Schedules)
                    .where(Schedules.c.tenant_id == tenant_id)
                    .order_by(Schedules.c.name)
                )
            ).mappings().all()
            return [self._row_to_schedule(row) for row in rows]

    @staticmethod
    def _values(schedule: Schedule) -> dict[str, Any]:
        return dict(
            id=schedule.id,
            tenant_id=schedule.tenant_id,
            name=schedule.name,
            job_type=schedule.job_type,
            job_payload=bytes(schedule.job_payload or b""),
            cron_expression=schedule.cron_expression or None,
            interval=schedule.interval or None,
            enabled=schedule.enabled,
            timezone=schedule.timezone or "UTC",
            last_run_at=schedule.last_run_at,
            next_run_at=schedule.next_run_at,
            run_count=schedule.run_count,
            fail_count=schedule.fail_count,
            created_at=schedule.created_at,
            updated_at=schedule.updated_at,
        )

    @staticmethod
    def _row_to_schedule(row: Mapping[str, Any]) -> Schedule:
        return Schedule(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            job_type=row["job_type"],
            job_payload=bytes(row["job_payload"] or b""),
            cron_expression=row["cron_expression"],
            interval=row["interval"],
            enabled=bool(row["enabled"]),
            timezone=row["timezone"] or "UTC",
            last_run_at=as_utc(row["last_run_at"]),
            next_run_at=as_utc(row["next_run_at"]),
            run_count=row["run_count"],
            fail_count=row["fail_count"],
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )
