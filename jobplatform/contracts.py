"""Core contracts shared by the queue, scheduler and worker.

Handlers are explicit abstract base classes rather than ``typing.Protocol``
interfaces so that an incomplete handler fails at definition time instead of
at the first dispatched job.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .models import Job


class JobPlatformError(RuntimeError):
    """Base class for every error raised by the job platform."""


class NotFoundError(JobPlatformError):
    """A job, schedule, history row or dead letter does not exist."""


class JobNotFoundError(NotFoundError):
    pass


class ScheduleNotFoundError(NotFoundError):
    pass


class HistoryNotFoundError(NotFoundError):
    pass


class DeadLetterNotFoundError(NotFoundError):
    pass


class DuplicateError(JobPlatformError):
    """A uniqueness constraint rejected the write."""


class DuplicateJobError(DuplicateError):
    """Another live job already carries the idempotency key."""


class DuplicateScheduleError(DuplicateError):
    """The tenant already has a schedule with this name."""


class NoJobsAvailable(JobPlatformError):
    """Raised by ``dequeue`` when no pending job is eligible to run."""


class OptimisticLockError(JobPlatformError):
    """Raised when a job row changed underneath a state transition."""


class HandlerExistsError(JobPlatformError):
    pass


class HandlerNotFoundError(JobPlatformError):
    pass


class InvalidJobTypeError(ValueError):
    pass


class JobError(Exception):
    """Raised by handlers to report an ordinary, retryable failure."""


@dataclass(slots=True)
class JobContext:
    """Execution context passed to handlers.

    ``deadline`` is ``started_at + timeout_seconds``. ``cancelled`` flips to
    ``True`` once the worker starts draining; handlers are expected to stop
    promptly but are never killed by the pool.
    """

    job: Job
    worker_id: str
    deadline: datetime
    _stop: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def remaining(self) -> float:
        return max(0.0, (self.deadline - datetime.now(timezone.utc)).total_seconds())

    async def wait_cancelled(self) -> None:
        await self._stop.wait()


class Handler(ABC):
    """Processes one job type.

    ``job_type`` is optional on instances registered explicitly but required
    for handlers loaded by the command line (``--handler module:attr``).
    """

    job_type: str = ""

    @abstractmethod
    async def handle(self, ctx: JobContext, job: Job) -> bytes | None:
        """Run ``job`` and return an opaque result blob.

        Raise :class:`JobError` to report a failure; any other exception is
        treated as a crash of the handler.
        """
