"""Housekeeping handlers that operate on the job tables themselves."""

from __future__ import annotations

from datetime import timedelta

from ..contracts import Handler, JobContext, JobError
from ..models import TYPE_JOB_CLEANUP, Job, encode_payload
from ..queue import DurableQueue


class CompletedJobsCleanupHandler(Handler):
    """Delete finished ``jobs`` rows older than a retention window.

    The window comes from the payload (``{"older_than_hours": n}``) or falls
    back to the constructor default (one week).
    """

    job_type = TYPE_JOB_CLEANUP

    def __init__(self, queue: DurableQueue, *, older_than_hours: int = 168) -> None:
        self.queue = queue
        self.older_than_hours = older_than_hours

    async def handle(self, ctx: JobContext, job: Job) -> bytes:
        try:
            payload = job.payload_json() or {}
            hours = int(payload.get("older_than_hours", self.older_than_hours))
        except (ValueError, TypeError, AttributeError) as exc:
            raise JobError(f"invalid cleanup payload: {exc}") from exc
        if hours < 0:
            raise JobError("older_than_hours must not be negative")
        deleted = await self.queue.delete_completed_jobs(timedelta(hours=hours))
        return encode_payload({"deleted": deleted, "older_than_hours": hours})
