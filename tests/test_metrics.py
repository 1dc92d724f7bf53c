"""Tests for the Prometheus collectors wired into the queue and scheduler."""

from __future__ import annotations

import asyncio
from uuid import uuid4

from prometheus_client import REGISTRY

from jobplatform.models import EnqueueOptions


def _sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels or None) or 0.0


def test_queue_updates_prometheus_counters(queue, clock) -> None:
    job_type = f"metrics-{uuid4().hex[:8]}"
    before_stale = _sample("jobplatform_stale_jobs_reclaimed_total")

    async def _run() -> None:
        tenant = uuid4()
        await queue.enqueue(tenant, job_type, b"", EnqueueOptions(timeout_seconds=1))
        await queue.dequeue()
        clock.advance(2)
        await queue.cleanup_stale_jobs()

        doomed = await queue.enqueue(tenant, job_type, b"", EnqueueOptions(max_retries=0))
        await queue.dequeue()
        await queue.fail(doomed.id, "fatal")

    asyncio.run(_run())

    assert _sample("jobplatform_jobs_enqueued_total", type=job_type) == 2
    assert _sample("jobplatform_dead_letters_total", type=job_type) == 1
    assert _sample("jobplatform_stale_jobs_reclaimed_total") == before_stale + 1
