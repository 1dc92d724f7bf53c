"""End-to-end delivery of a webhook job through the worker and built-in handler."""

from __future__ import annotations

import asyncio
import json
from contextlib import suppress
from uuid import uuid4

import httpx
import pytest

from jobplatform.handlers import WebhookDeliveryHandler, sign
from jobplatform.handlers import webhook
from jobplatform.history import JobRepository
from jobplatform.models import EnqueueOptions, HistoryFilter, encode_payload
from jobplatform.registry import Registry
from jobplatform.worker import Worker

TENANT = uuid4()


class _Endpoint:
    """In-process stand-in for a subscriber that answers with scripted statuses."""

    def __init__(self, statuses: list[int]) -> None:
        self.statuses = list(statuses)
        self.received: list[httpx.Request] = []

    def client_factory(self, timeout: float):
        endpoint = self

        class _Client:
            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return None

            async def post(self, url, content=None, headers=None):
                request = httpx.Request("POST", url, content=content, headers=headers)
                endpoint.received.append(request)
                return httpx.Response(endpoint.statuses.pop(0), request=request)

        return _Client()


async def _drive(worker: Worker, predicate) -> None:
    task = asyncio.create_task(worker.run())
    try:
        for _ in range(300):
            if await predicate():
                return
            await asyncio.sleep(0.01)
        pytest.fail("webhook job did not settle")
    finally:
        worker.request_stop()
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(worker.wait_stopped(), timeout=5)
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


@pytest.mark.e2e
def test_webhook_retried_until_delivered(db, queue, clock, monkeypatch) -> None:
    endpoint = _Endpoint([502, 200])
    monkeypatch.setattr(webhook.httpx, "AsyncClient", endpoint.client_factory)

    async def _run():
        handler = WebhookDeliveryHandler()
        registry = Registry({handler.job_type: handler})
        job = await queue.enqueue(
            TENANT,
            "webhook_delivery",
            encode_payload(
                {
                    "url": "https://subscriber.example.test/hooks",
                    "event_type": "document.analyzed",
                    "body": {"document": 42},
                    "secret": "topsecret",
                }
            ),
            EnqueueOptions(max_retries=3),
        )

        async def retried() -> bool:
            return (await queue.get_job(job.id)).retry_count == 1

        async def delivered() -> bool:
            return (await queue.get_job(job.id)).status == "completed"

        await _drive(Worker(queue, registry, poll_interval=0.01), retried)
        assert (await queue.get_job(job.id)).last_error == "webhook endpoint returned HTTP 502"

        clock.advance(2)
        await _drive(Worker(queue, registry, poll_interval=0.01), delivered)

        rows, total = await JobRepository(db, queue).list_history(HistoryFilter(tenant_id=TENANT))
        assert total == 1
        assert json.loads(rows[0].result)["status"] == 200
        return job

    job = asyncio.run(_run())

    assert len(endpoint.received) == 2
    last = endpoint.received[-1]
    assert last.content == b'{"document":42}'
    assert last.headers["X-Delivery-ID"] == str(job.id)
    assert last.headers["X-Event-Type"] == "document.analyzed"
    assert last.headers["X-Webhook-Signature"] == sign(b'{"document":42}', "topsecret")
