"""create_job_tables

Revision ID: 3f1a9c27d4e8
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a9c27d4e8"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32)


JOB_TYPES = (
    "marketplace-sync",
    "marketplace-update",
    "product-batch",
    "product-individual",
    "ai-optimization-scan",
    "ai-description-batch",
)
JOB_STATUSES = ("queued", "processing", "completed", "failed")
JOB_PRIORITIES = ("low", "normal", "high")
HISTORY_EVENTS = (
    "queued",
    "started",
    "progress",
    "retry",
    "completed",
    "failed",
    "cancelled",
    "rollback",
)


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = inspector.get_table_names()

    if "jobs" not in tables:
        op.create_table(
            "jobs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_id", sa.String(36), nullable=False),
            sa.Column("job_type", _enum("jobtype", *JOB_TYPES), nullable=False),
            sa.Column("queue_name", sa.String(64), nullable=False),
            sa.Column("routing_key", sa.String(128), nullable=False),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("user_id", sa.String(64), nullable=True),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("status", _enum("jobstatus", *JOB_STATUSES), nullable=False),
            sa.Column("progress", sa.Integer(), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False),
            sa.Column("max_attempts", sa.Integer(), nullable=False),
            sa.Column("priority", _enum("jobpriority", *JOB_PRIORITIES), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.Column("processed_on", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("published_at", sa.DateTime(), nullable=True),
            sa.Column("processing_time", sa.Float(), nullable=True),
            sa.Column("queue_wait_time", sa.Float(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("parent_job_id", sa.String(36), nullable=True),
            sa.Column("result", sa.JSON(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        )
        op.create_index("ux_jobs_job_id", "jobs", ["job_id"], unique=True)
        op.create_index("ix_jobs_workspace_status", "jobs", ["workspace_id", "status"])
        op.create_index("ix_jobs_workspace_created", "jobs", ["workspace_id", "created_at"])
        op.create_index("ix_jobs_type_status", "jobs", ["job_type", "status"])
        op.create_index("ix_jobs_queue_status", "jobs", ["queue_name", "status"])
        op.create_index("ix_jobs_parent_job_id", "jobs", ["parent_job_id"])
        op.create_index("ix_jobs_created_at", "jobs", ["created_at"])

    if "jobhistories" not in tables:
        op.create_table(
            "jobhistories",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_id", sa.String(36), nullable=False),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("event", _enum("historyevent", *HISTORY_EVENTS), nullable=False),
            sa.Column("timestamp", sa.DateTime(), nullable=True),
            sa.Column("progress", sa.Integer(), nullable=True),
            sa.Column("attempt", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("previous_status", sa.String(32), nullable=True),
            sa.Column("new_status", sa.String(32), nullable=True),
            sa.Column("processing_time", sa.Float(), nullable=True),
            sa.Column("queue_wait_time", sa.Float(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
        )
        op.create_index("ix_jobhistories_job_timestamp", "jobhistories", ["job_id", "timestamp"])
        op.create_index(
            "ix_jobhistories_workspace_timestamp", "jobhistories", ["workspace_id", "timestamp"]
        )
        op.create_index("ix_jobhistories_event_timestamp", "jobhistories", ["event", "timestamp"])

    if "queuehealths" not in tables:
        op.create_table(
            "queuehealths",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("queue_name", sa.String(64), nullable=False),
            sa.Column("messages", sa.Integer(), nullable=True),
            sa.Column("consumers", sa.Integer(), nullable=True),
            sa.Column("message_rate", sa.Float(), nullable=True),
            sa.Column("consume_rate", sa.Float(), nullable=True),
            sa.Column("memory", sa.BigInteger(), nullable=True),
            sa.Column("is_running", sa.Boolean(), nullable=True),
            sa.Column("is_healthy", sa.Boolean(), nullable=True),
            sa.Column("issues", sa.JSON(), nullable=True),
            sa.Column("timestamp", sa.DateTime(), nullable=True),
        )
        op.create_index(
            "ix_queuehealths_queue_timestamp", "queuehealths", ["queue_name", "timestamp"]
        )


def downgrade() -> None:
    op.drop_index("ix_queuehealths_queue_timestamp", table_name="queuehealths")
    op.drop_table("queuehealths")

    op.drop_index("ix_jobhistories_event_timestamp", table_name="jobhistories")
    op.drop_index("ix_jobhistories_workspace_timestamp", table_name="jobhistories")
    op.drop_index("ix_jobhistories_job_timestamp", table_name="jobhistories")
    op.drop_table("jobhistories")

    for index in (
        "ix_jobs_created_at",
        "ix_jobs_parent_job_id",
        "ix_jobs_queue_status",
        "ix_jobs_type_status",
        "ix_jobs_workspace_status",
        "ix_jobs_workspace_created",
        "ux_jobs_job_id",
    ):
        op.drop_index(index, table_name="jobs")
    op.drop_table("jobs")
