"""Value objects exchanged between the queue, scheduler, worker and callers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_DEAD = "dead"

PRIORITY_HIGH = 10
PRIORITY_NORMAL = 5
PRIORITY_LOW = 1

TYPE_DATABOX_SYNC = "databox_sync"
TYPE_DOCUMENT_ANALYSIS = "document_analysis"
TYPE_DEADLINE_REMINDER = "deadline_reminder"
TYPE_WATCHLIST_CHECK = "watchlist_check"
TYPE_SESSION_CLEANUP = "session_cleanup"
TYPE_WEBHOOK_DELIVERY = "webhook_delivery"
TYPE_AUDIT_ARCHIVE = "audit_archive"
TYPE_SOFT_DELETE_CLEANUP = "soft_delete_cleanup"
TYPE_JOB_CLEANUP = "job_cleanup"

INTERVAL_HOURLY = "hourly"
INTERVAL_4HOURLY = "4hourly"
INTERVAL_DAILY = "daily"
INTERVAL_WEEKLY = "weekly"

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 1800


def encode_payload(value: Any) -> bytes:
    """Marshal ``value`` to the JSON bytes stored as an opaque job payload."""

    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


@dataclass(slots=True)
class EnqueueOptions:
    """Per-job options accepted by :meth:`DurableQueue.enqueue`.

    ``run_at`` defaults to "now" at insertion time. ``schedule_id`` is an opaque
    back-reference that is only copied into history rows.
    """

    priority: int = PRIORITY_NORMAL
    run_at: datetime | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    idempotency_key: str | None = None
    schedule_id: UUID | None = None


@dataclass(slots=True)
class Job:
    id: UUID
    tenant_id: UUID
    type: str
    payload: bytes
    priority: int
    status: str
    max_retries: int
    retry_count: int
    run_at: datetime
    timeout_seconds: int
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    started_at: datetime | None = None
    first_started_at: datetime | None = None
    completed_at: datetime | None = None
    worker_id: str | None = None
    idempotency_key: str | None = None
    schedule_id: UUID | None = None
    error_log: list[str] = field(default_factory=list)
    version: int = 0

    def payload_json(self) -> Any:
        return json.loads(self.payload) if self.payload else None


@dataclass(slots=True)
class Schedule:
    tenant_id: UUID
    name: str
    job_type: str
    job_payload: bytes = b""
    cron_expression: str | None = None
    interval: str | None = None
    enabled: bool = True
    timezone: str = "UTC"
    id: UUID | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0
    fail_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class JobHistory:
    id: UUID
    tenant_id: UUID
    job_id: UUID | None
    schedule_id: UUID | None
    type: str
    payload: bytes
    status: str
    result: bytes | None
    error_message: str | None
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    worker_id: str | None
    created_at: datetime


@dataclass(slots=True)
class DeadLetter:
    id: UUID
    tenant_id: UUID
    original_job_id: UUID | None
    type: str
    payload: bytes
    errors: list[str]
    max_retries: int
    total_attempts: int
    first_attempted_at: datetime | None
    last_attempted_at: datetime
    acknowledged: bool
    created_at: datetime
    acknowledged_by: UUID | None = None
    acknowledged_at: datetime | None = None


@dataclass(slots=True)
class HistoryFilter:
    tenant_id: UUID
    type: str | None = None
    status: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    schedule_id: UUID | None = None
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class WorkerMetrics:
    jobs_processed: int
    jobs_succeeded: int
    jobs_failed: int
    in_flight: int
    queue_length: int


@dataclass(slots=True)
class JobMetrics:
    pending_count: int = 0
    running_count: int = 0
    jobs_last_24h: int = 0
    success_last_24h: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    dead_letter_count: int = 0
