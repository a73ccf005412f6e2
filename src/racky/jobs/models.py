from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import sqlalchemy
from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from racky.db.db import Base
from racky.jobs.types import JobPriority, JobType
from racky.utils import utcnow


class JobStatus(str, Enum):
    """Persisted job states."""

    Queued = "queued"
    Processing = "processing"
    Completed = "completed"
    Failed = "failed"


TERMINAL_STATUSES = (JobStatus.Completed, JobStatus.Failed)


class HistoryEvent(str, Enum):
    Queued = "queued"
    Started = "started"
    Progress = "progress"
    Retry = "retry"
    Completed = "completed"
    Failed = "failed"
    Cancelled = "cancelled"
    Rollback = "rollback"


def _enum(enum_cls, name: str):
    return sqlalchemy.Enum(
        enum_cls,
        name=name,
        values_callable=lambda enum: [e.value for e in enum],
        native_enum=False,
        length=32,
    )


class Job(Base):
    """Authoritative record of a unit of asynchronous work.

    ``published_at`` is cleared whenever the job goes back to queued and stamped
    once the broker accepted the message, so NULL means "not on the broker yet".
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(sqlalchemy.String(36), nullable=False)
    job_type: Mapped[JobType] = mapped_column(_enum(JobType, "jobtype"), nullable=False)
    queue_name: Mapped[str] = mapped_column(sqlalchemy.String(64), nullable=False)
    routing_key: Mapped[str] = mapped_column(sqlalchemy.String(128), nullable=False)
    workspace_id: Mapped[str] = mapped_column(sqlalchemy.String(64), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(sqlalchemy.String(64))
    data: Mapped[Dict[str, Any]] = mapped_column(sqlalchemy.JSON, default=dict)
    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus, "jobstatus"), default=JobStatus.Queued, nullable=False
    )
    progress: Mapped[int] = mapped_column(sqlalchemy.Integer, default=0, nullable=False)
    attempts: Mapped[int] = mapped_column(sqlalchemy.Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(sqlalchemy.Integer, default=3, nullable=False)
    priority: Mapped[JobPriority] = mapped_column(
        _enum(JobPriority, "jobpriority"), default=JobPriority.NORMAL, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(sqlalchemy.DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        sqlalchemy.DateTime, default=utcnow, onupdate=utcnow
    )
    processed_on: Mapped[Optional[datetime]] = mapped_column(sqlalchemy.DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(sqlalchemy.DateTime)
    published_at: Mapped[Optional[datetime]] = mapped_column(sqlalchemy.DateTime)
    processing_time: Mapped[Optional[float]] = mapped_column(sqlalchemy.Float)
    queue_wait_time: Mapped[Optional[float]] = mapped_column(sqlalchemy.Float)
    error: Mapped[Optional[str]] = mapped_column(sqlalchemy.Text)
    parent_job_id: Mapped[Optional[str]] = mapped_column(sqlalchemy.String(36))
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(sqlalchemy.JSON)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", sqlalchemy.JSON, default=dict)
    cancel_requested: Mapped[bool] = mapped_column(
        sqlalchemy.Boolean, default=False, nullable=False
    )

    __table_args__ = (
        Index("ux_jobs_job_id", "job_id", unique=True),
        Index("ix_jobs_workspace_status", "workspace_id", "status"),
        Index("ix_jobs_workspace_created", "workspace_id", "created_at"),
        Index("ix_jobs_type_status", "job_type", "status"),
        Index("ix_jobs_queue_status", "queue_name", "status"),
        Index("ix_jobs_parent_job_id", "parent_job_id"),
        Index("ix_jobs_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a dict for API responses and logging."""
        return {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "queue_name": self.queue_name,
            "routing_key": self.routing_key,
            "workspace_id": self.workspace_id,
            "user_id": self.user_id,
            "data": self.data,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_on": self.processed_on.isoformat() if self.processed_on else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "processing_time": self.processing_time,
            "queue_wait_time": self.queue_wait_time,
            "error": self.error,
            "parent_job_id": self.parent_job_id,
            "result": self.result,
            "metadata": self.meta,
            "cancel_requested": self.cancel_requested,
        }


class JobHistory(Base):
    """Append-only job event log. Rows are never updated."""

    __tablename__ = "jobhistories"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(sqlalchemy.String(36), nullable=False)
    workspace_id: Mapped[str] = mapped_column(sqlalchemy.String(64), nullable=False)
    event: Mapped[HistoryEvent] = mapped_column(_enum(HistoryEvent, "historyevent"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(sqlalchemy.DateTime, default=utcnow)
    progress: Mapped[Optional[int]] = mapped_column(sqlalchemy.Integer)
    attempt: Mapped[Optional[int]] = mapped_column(sqlalchemy.Integer)
    error_message: Mapped[Optional[str]] = mapped_column(sqlalchemy.Text)
    previous_status: Mapped[Optional[str]] = mapped_column(sqlalchemy.String(32))
    new_status: Mapped[Optional[str]] = mapped_column(sqlalchemy.String(32))
    processing_time: Mapped[Optional[float]] = mapped_column(sqlalchemy.Float)
    queue_wait_time: Mapped[Optional[float]] = mapped_column(sqlalchemy.Float)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", sqlalchemy.JSON, default=dict)

    __table_args__ = (
        Index("ix_jobhistories_job_timestamp", "job_id", "timestamp"),
        Index("ix_jobhistories_workspace_timestamp", "workspace_id", "timestamp"),
        Index("ix_jobhistories_event_timestamp", "event", "timestamp"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "workspace_id": self.workspace_id,
            "event": self.event.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "progress": self.progress,
            "attempt": self.attempt,
            "error_message": self.error_message,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "processing_time": self.processing_time,
            "queue_wait_time": self.queue_wait_time,
            "metadata": self.meta,
        }


class QueueState(Base):
    """Operator controls for a job queue. Workers stop consuming paused queues."""

    __tablename__ = "queuestates"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    queue_name: Mapped[str] = mapped_column(sqlalchemy.String(128), unique=True, nullable=False)
    paused: Mapped[bool] = mapped_column(sqlalchemy.Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sqlalchemy.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_name": self.queue_name,
            "paused": self.paused,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
