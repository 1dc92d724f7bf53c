"""Tests for the built-in webhook and housekeeping handlers."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
import pytest

from jobplatform.contracts import JobContext, JobError
from jobplatform.handlers import CompletedJobsCleanupHandler, WebhookDeliveryHandler, sign
from jobplatform.handlers import webhook
from jobplatform.models import Job, encode_payload

TENANT = uuid4()


def _job(payload: bytes, job_type: str = "webhook_delivery") -> Job:
    now = datetime.now(timezone.utc)
    return Job(
        id=uuid4(),
        tenant_id=TENANT,
        type=job_type,
        payload=payload,
        priority=5,
        status="running",
        max_retries=3,
        retry_count=0,
        run_at=now,
        timeout_seconds=30,
        created_at=now,
        updated_at=now,
        started_at=now,
    )


def _ctx(job: Job) -> JobContext:
    return JobContext(job=job, worker_id="w", deadline=job.started_at + timedelta(seconds=30))


class _FakeClient:
    """Records posts and answers with a canned status or raises a transport error."""

    status_code = 200
    error: Exception | None = None
    requests: list[dict] = []
    timeouts: list[float] = []

    def __init__(self, timeout: float) -> None:
        type(self).timeouts.append(timeout)

    async def __aenter__(self) -> "_FakeClient":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    async def post(self, url, content=None, headers=None):
        type(self).requests.append({"url": url, "content": content, "headers": headers})
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, request=httpx.Request("POST", url))


@pytest.fixture
def fake_client(monkeypatch):
    class Client(_FakeClient):
        requests = []
        timeouts = []

    monkeypatch.setattr(webhook.httpx, "AsyncClient", Client)
    return Client


def test_sign_matches_hmac_sha256() -> None:
    body = b'{"a":1}'
    expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert sign(body, "s3cret") == f"sha256={expected}"


def test_webhook_delivery_posts_signed_event(fake_client) -> None:
    payload = encode_payload(
        {
            "url": "https://hooks.example.test/in",
            "event_type": "deadline.created",
            "body": {"id": 7},
            "secret": "s3cret",
            "webhook_id": "wh-1",
            "headers": {"X-Custom": "yes"},
        }
    )
    job = _job(payload)
    result = asyncio.run(WebhookDeliveryHandler().handle(_ctx(job), job))

    assert json.loads(result)["status"] == 200
    [sent] = fake_client.requests
    assert sent["url"] == "https://hooks.example.test/in"
    assert sent["content"] == b'{"id":7}'
    headers = sent["headers"]
    assert headers["Content-Type"] == "application/json"
    assert headers["User-Agent"] == webhook.USER_AGENT
    assert headers["X-Event-Type"] == "deadline.created"
    assert headers["X-Delivery-ID"] == str(job.id)
    assert headers["X-Webhook-ID"] == "wh-1"
    assert headers["X-Webhook-Signature"] == sign(b'{"id":7}', "s3cret")
    assert headers["X-Custom"] == "yes"
    assert 0 < fake_client.timeouts[0] <= 30


def test_webhook_delivery_omits_optional_headers(fake_client) -> None:
    job = _job(encode_payload({"url": "https://hooks.example.test", "event_type": "ping"}))
    asyncio.run(WebhookDeliveryHandler(timeout=5).handle(_ctx(job), job))
    headers = fake_client.requests[0]["headers"]
    assert "X-Webhook-Signature" not in headers
    assert "X-Webhook-ID" not in headers
    assert fake_client.requests[0]["content"] == b"null"
    assert fake_client.timeouts == [5.0]


def test_webhook_delivery_rejects_non_2xx(fake_client) -> None:
    fake_client.status_code = 503
    job = _job(encode_payload({"url": "https://hooks.example.test", "event_type": "ping"}))
    with pytest.raises(JobError, match="HTTP 503"):
        asyncio.run(WebhookDeliveryHandler().handle(_ctx(job), job))


def test_webhook_delivery_wraps_transport_errors(fake_client) -> None:
    fake_client.error = httpx.ConnectError("connection refused")
    job = _job(encode_payload({"url": "https://hooks.example.test", "event_type": "ping"}))
    with pytest.raises(JobError, match="webhook delivery failed"):
        asyncio.run(WebhookDeliveryHandler().handle(_ctx(job), job))


@pytest.mark.parametrize(
    "payload",
    [b"not json", encode_payload({"event_type": "ping"}), encode_payload(["url"])],
)
def test_webhook_delivery_rejects_invalid_payloads(fake_client, payload) -> None:
    job = _job(payload)
    with pytest.raises(JobError, match="invalid webhook payload"):
        asyncio.run(WebhookDeliveryHandler().handle(_ctx(job), job))
    assert fake_client.requests == []


def test_cleanup_handler_deletes_old_finished_jobs(queue, clock) -> None:
    async def _run() -> None:
        old = await queue.enqueue(TENANT, "report", b"")
        await queue.dequeue()
        await queue.complete(old.id)
        clock.advance(48 * 3600)
        fresh = await queue.enqueue(TENANT, "report", b"")
        await queue.dequeue()
        await queue.complete(fresh.id)
        pending = await queue.enqueue(TENANT, "report", b"")

        handler = CompletedJobsCleanupHandler(queue)
        job = _job(encode_payload({"older_than_hours": 24}), "job_cleanup")
        result = json.loads(await handler.handle(_ctx(job), job))
        assert result == {"deleted": 1, "older_than_hours": 24}

        assert (await queue.get_job(fresh.id)).status == "completed"
        assert (await queue.get_job(pending.id)).status == "pending"

        default = _job(b"", "job_cleanup")
        result = json.loads(await handler.handle(_ctx(default), default))
        assert result == {"deleted": 0, "older_than_hours": 168}

    asyncio.run(_run())


def test_cleanup_handler_rejects_bad_payloads(queue) -> None:
    handler = CompletedJobsCleanupHandler(queue)
    for payload in (encode_payload({"older_than_hours": -1}), encode_payload({"older_than_hours": "x"})):
        job = _job(payload, "job_cleanup")
        with pytest.raises(JobError):
            asyncio.run(handler.handle(_ctx(job), job))
