"""Operator dashboard demo for Jobplatform using FastAPI and SQLite.

Run with ``uvicorn examples.dashboard.app:app`` after installing the
``examples`` extra. A worker and a scheduler run inside the app process.
"""

from __future__ import annotations

import asyncio
import random
from contextlib import suppress
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from fastapi import FastAPI, HTTPException, Query
from sqlalchemy.ext.asyncio import create_async_engine

from jobplatform import (
    Database,
    DurableQueue,
    EnqueueOptions,
    JobContext,
    JobError,
    JobRepository,
    Registry,
    Schedule,
    Scheduler,
    Worker,
    encode_payload,
)
from jobplatform.contracts import DeadLetterNotFoundError, DuplicateScheduleError, NotFoundError
from jobplatform.models import HistoryFilter, Job

DEMO_TENANT = UUID("00000000-0000-4000-8000-000000000001")


async def demo_sleep(ctx: JobContext, job: Job) -> bytes:
    payload = job.payload_json() or {}
    duration = float(payload.get("duration", random.uniform(0.5, 2.0)))
    await asyncio.sleep(min(duration, ctx.remaining()))
    if payload.get("fail"):
        raise JobError(f"{payload.get('label', job.id)} asked to fail")
    return encode_payload({"slept": duration})


db = Database(create_async_engine("sqlite+aiosqlite:///jobplatform-demo.db"))
queue = DurableQueue(db, worker_id="dashboard")
registry = Registry()
registry.register_func("demo.sleep", demo_sleep)
worker = Worker(queue, registry, concurrency=4, poll_interval=0.5)
scheduler = Scheduler(db, queue, interval=5.0)
repository = JobRepository(db, queue)
app = FastAPI(title="Jobplatform dashboard demo")


@app.on_event("startup")
async def start_background() -> None:
    await db.create_all()
    with suppress(DuplicateScheduleError):
        await scheduler.create_schedule(
            Schedule(
                tenant_id=DEMO_TENANT,
                name="hourly-demo",
                job_type="demo.sleep",
                job_payload=encode_payload({"label": "scheduled"}),
                interval="hourly",
            )
        )
    app.state.tasks = [
        asyncio.create_task(worker.run()),
        asyncio.create_task(scheduler.run()),
    ]


@app.on_event("shutdown")
async def stop_background() -> None:
    worker.request_stop()
    scheduler.request_stop()
    await worker.wait_stopped()
    for task in getattr(app.state, "tasks", []):
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    await db.dispose()


def _dump(value: Any) -> Any:
    if isinstance(value, (UUID, datetime)):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _as_dict(obj: Any) -> dict[str, Any]:
    return {name: _dump(getattr(obj, name)) for name in obj.__slots__}


@app.post("/api/v1/jobs")
async def enqueue_demo(label: str = "demo", fail: bool = False) -> dict[str, Any]:
    job = await queue.enqueue(
        DEMO_TENANT,
        "demo.sleep",
        encode_payload({"label": label, "fail": fail}),
        EnqueueOptions(max_retries=2),
    )
    return _as_dict(job)


@app.get("/api/v1/jobs")
async def list_jobs(
    type: str | None = None,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    rows, total = await repository.list_history(
        HistoryFilter(tenant_id=DEMO_TENANT, type=type, status=status, limit=limit, offset=offset)
    )
    return {"jobs": [_as_dict(row) for row in rows], "total": total}


@app.get("/api/v1/jobs/dead-letters")
async def list_dead_letters(
    acknowledged: bool = False,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    rows, total = await repository.list_dead_letters(DEMO_TENANT, acknowledged, limit, offset)
    return {"dead_letters": [_as_dict(row) for row in rows], "total": total}


@app.post("/api/v1/jobs/dead-letters/{dead_letter_id}/acknowledge")
async def acknowledge_dead_letter(dead_letter_id: UUID) -> dict[str, str]:
    try:
        await repository.acknowledge_dead_letter(dead_letter_id, uuid4())
    except DeadLetterNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "acknowledged"}


@app.get("/api/v1/jobs/metrics")
async def job_metrics() -> dict[str, Any]:
    metrics = _as_dict(await repository.get_metrics(DEMO_TENANT))
    metrics["worker"] = _as_dict(await worker.metrics())
    metrics["worker_status"] = worker.status()
    return metrics


@app.get("/api/v1/jobs/{history_id}")
async def get_job(history_id: UUID) -> dict[str, Any]:
    try:
        return _as_dict(await repository.get_history(history_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/v1/jobs/{history_id}/retry")
async def retry_job(history_id: UUID) -> dict[str, Any]:
    try:
        job = await repository.retry(history_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"job_id": str(job.id), "status": job.status}
