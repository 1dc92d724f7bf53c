"""Prometheus instrumentation for queue, worker and scheduler code paths.

Collectors register on the default ``prometheus_client`` registry; expose them
with ``prometheus_client.start_http_server`` or any ASGI/WSGI exporter.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

jobs_enqueued = Counter(
    "jobplatform_jobs_enqueued_total",
    "Jobs accepted by the durable queue.",
    ["type"],
)

jobs_processed = Counter(
    "jobplatform_jobs_processed_total",
    "Jobs finished by workers, labelled by outcome (succeeded or failed).",
    ["type", "outcome"],
)

job_duration = Histogram(
    "jobplatform_job_duration_seconds",
    "Wall-clock time spent inside job handlers.",
    ["type"],
)

jobs_in_flight = Gauge(
    "jobplatform_jobs_in_flight",
    "Handler invocations currently running in this process.",
)

dead_letters = Counter(
    "jobplatform_dead_letters_total",
    "Jobs moved to the dead-letter sink after exhausting their retries.",
    ["type"],
)

stale_jobs_reclaimed = Counter(
    "jobplatform_stale_jobs_reclaimed_total",
    "Running jobs whose deadline passed and were pushed back through the failure path.",
)

schedules_fired = Counter(
    "jobplatform_schedules_fired_total",
    "Schedule ticks that produced (or deduplicated) a job.",
    ["job_type"],
)
