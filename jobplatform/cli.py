"""Entry-point for the ``jobplatform`` console script."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from datetime import timedelta
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from .config import Settings, get_settings
from .contracts import Handler, InvalidJobTypeError
from .handlers import CompletedJobsCleanupHandler, WebhookDeliveryHandler
from .queue import DurableQueue
from .registry import Registry
from .scheduler import Scheduler
from .sql.database import Database
from .worker import Worker

LOG_LEVELS = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]


class CLIError(RuntimeError):
    """Raised when the CLI fails to start or configure a component."""


def _positive_int(name: str) -> Callable[[str], int]:
    def _validate(value: str) -> int:
        try:
            converted = int(value)
        except ValueError as exc:  # pragma: no cover - argparse already reports
            raise argparse.ArgumentTypeError(f"{name} must be an integer") from exc
        if converted <= 0:
            raise argparse.ArgumentTypeError(f"{name} must be greater than 0")
        return converted

    return _validate


def _positive_float(name: str) -> Callable[[str], float]:
    def _validate(value: str) -> float:
        try:
            converted = float(value)
        except ValueError as exc:  # pragma: no cover - argparse already reports
            raise argparse.ArgumentTypeError(f"{name} must be a number") from exc
        if converted <= 0:
            raise argparse.ArgumentTypeError(f"{name} must be greater than 0")
        return converted

    return _validate


def _configure_logging(level_name: str) -> None:
    numeric = logging.getLevelName(level_name.upper())
    if not isinstance(numeric, int):  # pragma: no cover - guarded by argparse choices
        raise CLIError(f"Unknown log level: {level_name}")
    logging.basicConfig(level=numeric, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _load_handler(dotted_path: str) -> Handler:
    module_name, sep, attr = dotted_path.rpartition(":")
    if not module_name or not sep:
        raise CLIError("Handler path must be in 'module:attr' format")
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise CLIError(f"Cannot import handler module '{module_name}': {exc}") from exc
    try:
        target = getattr(module, attr)
    except AttributeError as exc:
        raise CLIError(f"Module '{module_name}' has no attribute '{attr}'") from exc
    if isinstance(target, Handler):
        handler = target
    else:
        try:
            handler = target()
        except Exception as exc:
            raise CLIError(f"Handler factory '{dotted_path}' raised: {exc}") from exc
    if not isinstance(handler, Handler):
        raise CLIError(f"'{dotted_path}' did not produce a Handler instance")
    if not handler.job_type:
        raise CLIError(f"Handler '{dotted_path}' does not declare a job_type")
    return handler


def _build_registry(args: argparse.Namespace, queue: DurableQueue) -> Registry:
    registry = Registry()
    builtins: list[Handler] = [
        WebhookDeliveryHandler(),
        CompletedJobsCleanupHandler(queue, older_than_hours=args.retention_hours),
    ]
    for handler in builtins:
        registry.register(handler.job_type, handler)
    for dotted_path in getattr(args, "handler", None) or []:
        handler = _load_handler(dotted_path)
        try:
            if registry.has(handler.job_type):
                registry.unregister(handler.job_type)
            registry.register(handler.job_type, handler)
        except InvalidJobTypeError as exc:
            raise CLIError(f"Cannot register handler '{dotted_path}': {exc}") from exc
    return registry


def _open_database(args: argparse.Namespace) -> Database:
    if not args.dsn:
        raise CLIError("a database DSN is required (--dsn or JOBPLATFORM_DATABASE_URL)")
    try:
        engine = create_async_engine(args.dsn)
    except (SQLAlchemyError, ImportError) as exc:
        raise CLIError(f"Failed to create engine for DSN {args.dsn!r}: {exc}") from exc
    return Database(engine)


def _make_queue(args: argparse.Namespace, db: Database) -> DurableQueue:
    return DurableQueue(
        db,
        worker_id=args.worker_id or "default",
        prefer_pg_skip_locked=not args.disable_skip_locked,
    )


def _make_worker(args: argparse.Namespace, queue: DurableQueue) -> Worker:
    return Worker(
        queue,
        _build_registry(args, queue),
        worker_id=args.worker_id,
        concurrency=args.concurrency,
        poll_interval=args.poll_interval,
        shutdown_timeout=args.shutdown_timeout,
        cleanup_interval=args.cleanup_interval,
    )


async def _supervise(components: list[Worker | Scheduler]) -> None:
    try:
        await asyncio.gather(*(component.run() for component in components))
    except asyncio.CancelledError:
        for component in components:
            component.request_stop()
        for component in components:
            if isinstance(component, Worker):
                await component.wait_stopped()
        raise
    except SQLAlchemyError as exc:
        raise CLIError(f"Terminated with a database error: {exc}") from exc


async def _run_worker(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    db = _open_database(args)
    try:
        await _supervise([_make_worker(args, _make_queue(args, db))])
    finally:
        await db.dispose()


async def _run_scheduler(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    db = _open_database(args)
    try:
        scheduler = Scheduler(db, _make_queue(args, db), interval=args.interval)
        await _supervise([scheduler])
    finally:
        await db.dispose()


async def _run_all(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    db = _open_database(args)
    try:
        queue = _make_queue(args, db)
        components: list[Worker | Scheduler] = [
            _make_worker(args, queue),
            Scheduler(db, queue, interval=args.interval),
        ]
        await _supervise(components)
    finally:
        await db.dispose()


async def _gc(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    db = _open_database(args)
    try:
        deleted = await _make_queue(args, db).delete_completed_jobs(
            timedelta(hours=args.older_than_hours)
        )
    except SQLAlchemyError as exc:
        raise CLIError(f"Failed to delete completed jobs: {exc}") from exc
    finally:
        await db.dispose()
    print(f"deleted {deleted} completed jobs")


async def _init_db(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    db = _open_database(args)
    try:
        await db.create_all()
    except SQLAlchemyError as exc:
        raise CLIError(f"Failed to create tables: {exc}") from exc
    finally:
        await db.dispose()
    print("database schema created")


def _add_common(parser: argparse.ArgumentParser, settings: Settings) -> None:
    parser.add_argument(
        "--dsn",
        default=settings.database_url,
        help="SQLAlchemy async DSN (default: JOBPLATFORM_DATABASE_URL)",
    )
    parser.add_argument("--worker-id", default=settings.worker_id, help="Identity stamped on claimed jobs")
    parser.add_argument(
        "--disable-skip-locked",
        action="store_true",
        default=not settings.prefer_skip_locked,
        help="Disable Postgres SKIP LOCKED claiming",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level.upper(),
        choices=LOG_LEVELS,
        help="Root logging level",
    )


def _add_worker_options(parser: argparse.ArgumentParser, settings: Settings) -> None:
    parser.add_argument(
        "--concurrency",
        type=_positive_int("concurrency"),
        default=settings.worker_concurrency,
    )
    parser.add_argument(
        "--poll-interval",
        type=_positive_float("poll-interval"),
        default=settings.poll_interval_seconds,
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=_positive_float("shutdown-timeout"),
        default=settings.shutdown_timeout_seconds,
    )
    parser.add_argument(
        "--cleanup-interval",
        type=_positive_float("cleanup-interval"),
        default=settings.stale_cleanup_interval_seconds,
        help="Seconds between stale job sweeps",
    )
    parser.add_argument(
        "--retention-hours",
        type=_positive_int("retention-hours"),
        default=settings.completed_retention_hours,
        help="Default retention for the built-in job_cleanup handler",
    )
    parser.add_argument(
        "--handler",
        action="append",
        help="Additional handler in the form 'module:attr' to register with the worker",
    )


def _add_scheduler_options(parser: argparse.ArgumentParser, settings: Settings) -> None:
    parser.add_argument(
        "--interval",
        type=_positive_float("interval"),
        default=settings.scheduler_interval_seconds,
        help="Seconds between scheduler ticks",
    )


def build_parser(settings: Settings | None = None) -> argparse.ArgumentParser:
    settings = settings or get_settings()
    parser = argparse.ArgumentParser(
        prog="jobplatform", description="Run job platform workers and schedulers"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run a worker pool")
    _add_common(worker, settings)
    _add_worker_options(worker, settings)
    worker.set_defaults(func=_run_worker)

    scheduler = sub.add_parser("scheduler", help="Run the schedule ticker")
    _add_common(scheduler, settings)
    _add_scheduler_options(scheduler, settings)
    scheduler.set_defaults(func=_run_scheduler)

    both = sub.add_parser("run", help="Run a worker pool and the scheduler in one process")
    _add_common(both, settings)
    _add_worker_options(both, settings)
    _add_scheduler_options(both, settings)
    both.set_defaults(func=_run_all)

    gc = sub.add_parser("gc", help="Delete finished jobs older than a retention window")
    _add_common(gc, settings)
    gc.add_argument(
        "--older-than-hours",
        type=_positive_int("older-than-hours"),
        default=settings.completed_retention_hours,
    )
    gc.set_defaults(func=_gc)

    init_db = sub.add_parser("init-db", help="Create the job tables")
    _add_common(init_db, settings)
    init_db.set_defaults(func=_init_db)
    return parser


def main() -> None:
    args = build_parser().parse_args()
    entrypoint: Callable[[argparse.Namespace], Awaitable[None]] = args.func
    try:
        asyncio.run(entrypoint(args))
    except KeyboardInterrupt:  # pragma: no cover - CLI convenience
        print("Received Ctrl+C, requesting shutdown...", file=sys.stderr)
        raise SystemExit(130)
    except CLIError as exc:
        print(f"jobplatform: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
