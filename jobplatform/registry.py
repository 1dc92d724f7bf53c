"""Job type to handler bindings."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import threading
from typing import Awaitable, Callable, Union

from .contracts import (
    Handler,
    HandlerExistsError,
    HandlerNotFoundError,
    InvalidJobTypeError,
    JobContext,
)
from .models import Job

JOB_TYPE_PATTERN = re.compile(r"[A-Za-z0-9_.-]+")
DEFAULT_FUNC_RESULT = b'{"success":true}'
logger = logging.getLogger(__name__)

HandlerFunc = Callable[
    [JobContext, Job], Union[bytes, None, Awaitable[Union[bytes, None]]]
]


def validate_job_type(job_type: str) -> str:
    if not JOB_TYPE_PATTERN.fullmatch(job_type or ""):
        raise InvalidJobTypeError(
            "job type must contain only alphanumerics, dash, underscore, or dot"
        )
    return job_type


class FuncHandler(Handler):
    """Adapts a bare function to :class:`Handler`.

    Coroutine functions are awaited on the event loop; plain functions run in a
    worker thread so blocking bodies do not stall the poll loop.
    """

    def __init__(self, job_type: str, fn: HandlerFunc) -> None:
        self.job_type = job_type
        self.fn = fn

    async def handle(self, ctx: JobContext, job: Job) -> bytes | None:
        if inspect.iscoroutinefunction(self.fn):
            result = await self.fn(ctx, job)
        else:
            result = await asyncio.to_thread(self.fn, ctx, job)
        return DEFAULT_FUNC_RESULT if result is None else result

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"FuncHandler(job_type={self.job_type!r}, fn={self.fn!r})"


class Registry:
    """Thread-safe mapping of job type to handler.

    Registration is expected at startup; lookups are safe for the lifetime of
    any number of workers.
    """

    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.RLock()
        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)

    def register(self, job_type: str, handler: Handler) -> None:
        """Bind ``handler`` to ``job_type``.

        Raises:
            HandlerExistsError: If ``job_type`` is already bound.
            InvalidJobTypeError: If ``job_type`` contains invalid characters.
        """

        validate_job_type(job_type)
        with self._lock:
            if job_type in self._handlers:
                raise HandlerExistsError(f"handler already registered: {job_type}")
            self._handlers[job_type] = handler
        logger.debug("handler registered: type=%s handler=%s", job_type, type(handler).__name__)

    def must_register(self, job_type: str, handler: Handler) -> None:
        """Like :meth:`register` but meant for module initialisation.

        A duplicate binding is a programming error, so it is escalated to
        ``RuntimeError`` instead of the recoverable registry error.
        """

        try:
            self.register(job_type, handler)
        except HandlerExistsError as exc:
            raise RuntimeError(str(exc)) from exc

    def register_func(self, job_type: str, fn: HandlerFunc) -> None:
        self.register(job_type, FuncHandler(job_type, fn))

    def get(self, job_type: str) -> Handler:
        with self._lock:
            try:
                return self._handlers[job_type]
            except KeyError:
                raise HandlerNotFoundError(f"handler not found: {job_type}") from None

    def has(self, job_type: str) -> bool:
        with self._lock:
            return job_type in self._handlers

    def types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def unregister(self, job_type: str) -> None:
        with self._lock:
            self._handlers.pop(job_type, None)

    def __repr__(self) -> str:
        with self._lock:
            bound = {job_type: type(h).__name__ for job_type, h in self._handlers.items()}
        return f"Registry(handlers={bound})"
