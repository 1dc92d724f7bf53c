"""Create jobs, schedules, job_history and dead_letters."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision = "20261019_background_jobs"
down_revision = None
branch_labels = None
depends_on = None

_json = sa.JSON().with_variant(JSONB, "postgresql")


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("tenant_id", sa.Uuid, nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("error_log", _json, nullable=False),
        _ts("run_at", nullable=False),
        _ts("started_at"),
        _ts("first_started_at"),
        _ts("completed_at"),
        sa.Column("timeout_seconds", sa.Integer, nullable=False, server_default="1800"),
        sa.Column("worker_id", sa.String(255)),
        sa.Column("idempotency_key", sa.String(255)),
        sa.Column("schedule_id", sa.Uuid),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('pending','running','completed','failed','dead')",
            name="jobs_status_chk",
        ),
        sa.CheckConstraint("retry_count <= max_retries", name="jobs_retry_chk"),
    )
    op.create_index(
        "idx_jobs_pending",
        "jobs",
        ["run_at", sa.text("priority DESC")],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("idx_jobs_tenant", "jobs", ["tenant_id"])
    op.create_index("idx_jobs_type", "jobs", ["type"])
    op.create_index("idx_jobs_status", "jobs", ["status"])
    op.create_index(
        "uq_jobs_idempotency_key",
        "jobs",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
        sqlite_where=sa.text("idempotency_key IS NOT NULL"),
    )

    op.create_table(
        "schedules",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("tenant_id", sa.Uuid, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("job_payload", sa.LargeBinary, nullable=False),
        sa.Column("cron_expression", sa.String(100)),
        sa.Column("interval", sa.String(50)),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("timezone", sa.String(100), nullable=False, server_default="UTC"),
        _ts("last_run_at"),
        _ts("next_run_at"),
        sa.Column("run_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("fail_count", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_schedules_tenant_name"),
    )
    op.create_index("idx_schedules_tenant", "schedules", ["tenant_id"])
    op.create_index(
        "idx_schedules_next_run",
        "schedules",
        ["next_run_at"],
        postgresql_where=sa.text("enabled = TRUE"),
    )

    op.create_table(
        "job_history",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("tenant_id", sa.Uuid, nullable=False),
        sa.Column("job_id", sa.Uuid),
        sa.Column("schedule_id", sa.Uuid),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("result", sa.LargeBinary),
        sa.Column("error_message", sa.Text),
        _ts("started_at", nullable=False),
        _ts("completed_at", nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(255)),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("status IN ('completed','failed')", name="job_history_status_chk"),
    )
    op.create_index("idx_job_history_tenant", "job_history", ["tenant_id"])
    op.create_index("idx_job_history_started", "job_history", [sa.text("started_at DESC")])
    op.create_index("idx_job_history_schedule", "job_history", ["schedule_id"])

    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("tenant_id", sa.Uuid, nullable=False),
        sa.Column("original_job_id", sa.Uuid),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=False),
        sa.Column("errors", _json, nullable=False),
        sa.Column("max_retries", sa.Integer, nullable=False),
        sa.Column("total_attempts", sa.Integer, nullable=False),
        _ts("first_attempted_at"),
        _ts("last_attempted_at", nullable=False),
        sa.Column("acknowledged", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("acknowledged_by", sa.Uuid),
        _ts("acknowledged_at"),
        _ts("created_at", nullable=False),
    )
    op.create_index("idx_dead_letters_tenant", "dead_letters", ["tenant_id"])
    op.create_index(
        "idx_dead_letters_unacked",
        "dead_letters",
        ["created_at"],
        postgresql_where=sa.text("acknowledged = FALSE"),
    )


def downgrade() -> None:
    op.drop_table("dead_letters")
    op.drop_table("job_history")
    op.drop_table("schedules")
    op.drop_table("jobs")
