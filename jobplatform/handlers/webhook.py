"""Webhook delivery handler built on httpx.AsyncClient."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

import httpx

from ..contracts import Handler, JobContext, JobError
from ..models import TYPE_WEBHOOK_DELIVERY, Job

USER_AGENT = "jobplatform-webhooks/1.0"
DEFAULT_TIMEOUT = 30.0
logger = logging.getLogger(__name__)


def sign(body: bytes, secret: str) -> str:
    """Return the ``X-Webhook-Signature`` value for ``body``."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookDeliveryHandler(Handler):
    """POST a JSON event to a subscriber endpoint.

    Payload fields: ``url`` and ``event_type`` (required), ``body`` (any JSON
    value), ``secret`` to sign the body, extra ``headers``, a ``timeout`` in
    seconds and an optional ``webhook_id``. Non-2xx responses and transport
    errors raise :class:`JobError` so the queue retries the delivery.
    """

    job_type = TYPE_WEBHOOK_DELIVERY

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout

    async def handle(self, ctx: JobContext, job: Job) -> bytes:
        try:
            payload = job.payload_json() or {}
            url = payload["url"]
            event_type = payload["event_type"]
        except (ValueError, KeyError, TypeError) as exc:
            raise JobError(f"invalid webhook payload: {exc}") from exc

        body = json.dumps(payload.get("body"), separators=(",", ":")).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Event-Type": event_type,
            "X-Delivery-ID": str(job.id),
        }
        if payload.get("webhook_id"):
            headers["X-Webhook-ID"] = str(payload["webhook_id"])
        if payload.get("secret"):
            headers["X-Webhook-Signature"] = sign(body, payload["secret"])
        headers.update(payload.get("headers") or {})

        timeout = min(float(payload.get("timeout") or self.timeout), max(ctx.remaining(), 0.001))
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise JobError(f"webhook delivery failed: {exc!r}") from exc
        duration = int((time.perf_counter() - started) * 1000)
        logger.info(
            "webhook delivered: job_id=%s event_type=%s url=%s status=%s duration_ms=%s",
            job.id,
            event_type,
            url,
            resp.status_code,
            duration,
        )
        if not resp.is_success:
            raise JobError(f"webhook endpoint returned HTTP {resp.status_code}")
        return json.dumps(
            {"status": resp.status_code, "duration_ms": duration},
            separators=(",", ":"),
        ).encode("utf-8")
