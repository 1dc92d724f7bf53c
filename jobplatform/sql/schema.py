"""SQLAlchemy Core schema for the job platform relations."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    text,
    true,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

_json = JSON().with_variant(JSONB, "postgresql")

Jobs = Table(
    "jobs",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("tenant_id", Uuid, nullable=False),
    Column("type", String(100), nullable=False),
    Column("payload", LargeBinary, nullable=False),
    Column("priority", Integer, nullable=False, server_default="5"),
    Column("status", String(50), nullable=False, server_default="pending"),
    Column("max_retries", Integer, nullable=False, server_default="3"),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("last_error", Text),
    Column("error_log", _json, nullable=False),
    Column("run_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("first_started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("timeout_seconds", Integer, nullable=False, server_default="1800"),
    Column("worker_id", String(255)),
    Column("idempotency_key", String(255)),
    Column("schedule_id", Uuid),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint(
        "status IN ('pending','running','completed','failed','dead')",
        name="jobs_status_chk",
    ),
    CheckConstraint("retry_count <= max_retries", name="jobs_retry_chk"),
)

Index(
    "idx_jobs_pending",
    Jobs.c.run_at,
    Jobs.c.priority.desc(),
    postgresql_where=text("status = 'pending'"),
)
Index("idx_jobs_tenant", Jobs.c.tenant_id)
Index("idx_jobs_type", Jobs.c.type)
Index("idx_jobs_status", Jobs.c.status)
Index(
    "uq_jobs_idempotency_key",
    Jobs.c.idempotency_key,
    unique=True,
    postgresql_where=text("idempotency_key IS NOT NULL"),
    sqlite_where=text("idempotency_key IS NOT NULL"),
)

Schedules = Table(
    "schedules",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("tenant_id", Uuid, nullable=False),
    Column("name", String(255), nullable=False),
    Column("job_type", String(100), nullable=False),
    Column("job_payload", LargeBinary, nullable=False),
    Column("cron_expression", String(100)),
    Column("interval", String(50)),
    Column("enabled", Boolean, nullable=False, server_default=true()),
    Column("timezone", String(100), nullable=False, server_default="UTC"),
    Column("last_run_at", DateTime(timezone=True)),
    Column("next_run_at", DateTime(timezone=True)),
    Column("run_count", Integer, nullable=False, server_default="0"),
    Column("fail_count", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tenant_id", "name", name="uq_schedules_tenant_name"),
)

Index("idx_schedules_tenant", Schedules.c.tenant_id)
Index(
    "idx_schedules_next_run",
    Schedules.c.next_run_at,
    postgresql_where=text("enabled = TRUE"),
)

JobHistoryTable = Table(
    "job_history",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("tenant_id", Uuid, nullable=False),
    Column("job_id", Uuid),
    Column("schedule_id", Uuid),
    Column("type", String(100), nullable=False),
    Column("payload", LargeBinary, nullable=False),
    Column("status", String(50), nullable=False),
    Column("result", LargeBinary),
    Column("error_message", Text),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=False),
    Column("duration_ms", Integer, nullable=False, server_default="0"),
    Column("worker_id", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("status IN ('completed','failed')", name="job_history_status_chk"),
)

Index("idx_job_history_tenant", JobHistoryTable.c.tenant_id)
Index("idx_job_history_started", JobHistoryTable.c.started_at.desc())
Index("idx_job_history_schedule", JobHistoryTable.c.schedule_id)

DeadLetters = Table(
    "dead_letters",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("tenant_id", Uuid, nullable=False),
    Column("original_job_id", Uuid),
    Column("type", String(100), nullable=False),
    Column("payload", LargeBinary, nullable=False),
    Column("errors", _json, nullable=False),
    Column("max_retries", Integer, nullable=False),
    Column("total_attempts", Integer, nullable=False),
    Column("first_attempted_at", DateTime(timezone=True)),
    Column("last_attempted_at", DateTime(timezone=True), nullable=False),
    Column("acknowledged", Boolean, nullable=False, server_default=false()),
    Column("acknowledged_by", Uuid),
    Column("acknowledged_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

Index("idx_dead_letters_tenant", DeadLetters.c.tenant_id)
Index(
    "idx_dead_letters_unacked",
    DeadLetters.c.created_at,
    postgresql_where=text("acknowledged = FALSE"),
)

__all__ = ["DeadLetters", "JobHistoryTable", "Jobs", "Schedules", "metadata"]
