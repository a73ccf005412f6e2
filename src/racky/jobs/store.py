"""
Job state store.

The ``jobs`` table is the single source of truth for job status; the broker
only carries delivery notifications. Every read takes an explicit
``TenantScope`` so tenant isolation cannot be forgotten at a call site, and
every state change is a conditional UPDATE guarded by the expected current
status, which makes concurrent consumers and redeliveries safe.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from sqla_wrapper import SQLAlchemy
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from racky.db.db import db_session
from racky.exceptions import InvalidTransitionError, JobNotFoundError
from racky.jobs.models import TERMINAL_STATUSES, HistoryEvent, Job, JobHistory, JobStatus, QueueState
from racky.jobs.types import BROKER_PRIORITIES, JobPriority, JobType
from racky.utils import elapsed_ms, utcnow

CANCELLED_ERROR = "Job cancelled"
MAX_PAGE_SIZE = 100


def calculate_efficiency(processing_time: float | None, queue_wait_time: float | None) -> float:
    """Share of a job's lifetime spent processing, in percent."""
    processing = processing_time or 0.0
    total = (queue_wait_time or 0.0) + processing
    if total <= 0:
        return 100.0
    return round(processing / total * 100, 2)


@dataclass(frozen=True)
class TenantScope:
    """Tenant boundary applied to every query.

    Use ``TenantScope.workspace(id)`` for tenant-facing reads and
    ``TenantScope.platform()`` only from monitoring and admin contexts.
    """

    workspace_id: Optional[str] = None
    platform_wide: bool = False

    @classmethod
    def workspace(cls, workspace_id: str) -> "TenantScope":
        if not workspace_id:
            raise ValueError("workspace_id is required for a workspace scope")
        return cls(workspace_id=workspace_id)

    @classmethod
    def platform(cls) -> "TenantScope":
        return cls(platform_wide=True)

    def apply(self, query, model=Job):
        if self.platform_wide:
            return query
        return query.where(model.workspace_id == self.workspace_id)

    def __str__(self) -> str:
        return "platform" if self.platform_wide else f"workspace:{self.workspace_id}"


@dataclass
class JobFilters:
    status: Optional[Sequence[JobStatus]] = None
    job_type: Optional[JobType] = None
    queue_name: Optional[str] = None
    parent_job_id: Optional[str] = None
    user_id: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    def apply(self, query):
        if self.status:
            query = query.where(Job.status.in_(list(self.status)))
        if self.job_type:
            query = query.where(Job.job_type == self.job_type)
        if self.queue_name:
            query = query.where(Job.queue_name == self.queue_name)
        if self.parent_job_id:
            query = query.where(Job.parent_job_id == self.parent_job_id)
        if self.user_id:
            query = query.where(Job.user_id == self.user_id)
        if self.created_after:
            query = query.where(Job.created_at >= self.created_after)
        if self.created_before:
            query = query.where(Job.created_at < self.created_before)
        return query


@dataclass
class JobPage:
    items: List[Job] = field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = 20

    @property
    def pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page if self.per_page else 0


class ClaimOutcome(Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    job: Optional[Job] = None


_SORT_FIELDS = {
    "created_at": Job.created_at,
    "completed_at": Job.completed_at,
    "processing_time": Job.processing_time,
    "progress": Job.progress,
    "status": Job.status,
    "priority": case(
        *[(Job.priority == p, rank) for p, rank in BROKER_PRIORITIES.items()], else_=0
    ),
}


def _order_by(sort: str):
    descending = sort.startswith("-")
    name = sort.lstrip("-+")
    column = _SORT_FIELDS.get(name)
    if column is None:
        raise ValueError(f"Cannot sort jobs by '{name}'")
    return column.desc() if descending else column.asc()


def add_history(
    session: Session,
    job: Job,
    event: HistoryEvent,
    *,
    previous_status: JobStatus | None = None,
    error_message: str | None = None,
    metadata: Dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> JobHistory:
    entry = JobHistory(
        job_id=job.job_id,
        workspace_id=job.workspace_id,
        event=event,
        timestamp=timestamp or utcnow(),
        progress=job.progress,
        attempt=job.attempts,
        error_message=error_message,
        previous_status=previous_status.value if previous_status else None,
        new_status=job.status.value,
        processing_time=job.processing_time,
        queue_wait_time=job.queue_wait_time,
        meta=metadata or {},
    )
    session.add(entry)
    return entry


def _detach(session: Session, job: Job | None) -> Job | None:
    if job is not None:
        session.refresh(job)
        session.expunge(job)
    return job


class JobStore:
    """Persistence and state transitions for jobs and their history."""

    def __init__(self, db: SQLAlchemy):
        self.db = db

    @contextmanager
    def session(self) -> Iterator[Session]:
        with db_session(self.db) as session:
            yield session

    def _locked(self, session: Session, job_id: str) -> Job | None:
        query = select(Job).where(Job.job_id == job_id).with_for_update()
        return session.execute(query).scalar_one_or_none()

    # Creation

    def create_job(
        self,
        *,
        job_id: str,
        job_type: JobType,
        queue_name: str,
        routing_key: str,
        workspace_id: str,
        data: Dict[str, Any],
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: int = 3,
        user_id: str | None = None,
        parent_job_id: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> Job:
        """Persist a new job as queued together with its ``queued`` history event."""
        with self.session() as session:
            job = Job(
                job_id=job_id,
                job_type=job_type,
                queue_name=queue_name,
                routing_key=routing_key,
                workspace_id=workspace_id,
                user_id=user_id,
                data=data,
                status=JobStatus.Queued,
                progress=0,
                attempts=0,
                max_attempts=max_attempts,
                priority=priority,
                created_at=utcnow(),
                parent_job_id=parent_job_id,
                meta=metadata or {},
            )
            session.add(job)
            session.flush()
            add_history(session, job, HistoryEvent.Queued, timestamp=job.created_at)
            session.commit()
            return _detach(session, job)

    # Reads

    def get_job(self, job_id: str, scope: TenantScope) -> Job | None:
        with self.session() as session:
            query = scope.apply(select(Job).where(Job.job_id == job_id))
            job = session.execute(query).scalar_one_or_none()
            if job:
                session.expunge(job)
            return job

    def get_job_status(self, queue_name: str, job_id: str, scope: TenantScope) -> Job | None:
        """Return the job in ``queue_name`` visible to ``scope``, or None."""
        with self.session() as session:
            query = scope.apply(
                select(Job).where(Job.job_id == job_id, Job.queue_name == queue_name)
            )
            job = session.execute(query).scalar_one_or_none()
            if job:
                session.expunge(job)
            return job

    def list_jobs(
        self,
        scope: TenantScope,
        filters: JobFilters | None = None,
        page: int = 1,
        per_page: int = 20,
        sort: str = "-created_at",
    ) -> JobPage:
        """
        List jobs visible to ``scope``.

        Parameters:
            scope: Tenant boundary for the query.
            filters: Optional field filters.
            page: 1-based page number.
            per_page: Page size, capped at ``MAX_PAGE_SIZE``.
            sort: Field name, prefixed with ``-`` for descending order.

        Returns:
            JobPage: Detached jobs for the requested page and the total match count.
        """
        page = max(1, page)
        per_page = max(1, min(per_page, MAX_PAGE_SIZE))
        filters = filters or JobFilters()

        with self.session() as session:
            base = filters.apply(scope.apply(select(Job)))
            total = session.execute(
                select(func.count()).select_from(base.subquery())
            ).scalar_one()
            query = (
                base.order_by(_order_by(sort), Job.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            items = list(session.execute(query).scalars().all())
            for job in items:
                session.expunge(job)
            return JobPage(items=items, total=total, page=page, per_page=per_page)

    def count_by_status(self, scope: TenantScope, filters: JobFilters | None = None) -> Dict[str, int]:
        filters = filters or JobFilters()
        counts = {status.value: 0 for status in JobStatus}
        with self.session() as session:
            query = filters.apply(
                scope.apply(select(Job.status, func.count(Job.id)).group_by(Job.status))
            )
            for status, count in session.execute(query).all():
                counts[JobStatus(status).value] = count
        return counts

    def get_queue_stats(self, queue_name: str, scope: TenantScope) -> Dict[str, int]:
        """Job counts for one queue as ``{waiting, active, completed, failed}``."""
        counts = self.count_by_status(scope, JobFilters(queue_name=queue_name))
        return {
            "waiting": counts[JobStatus.Queued.value],
            "active": counts[JobStatus.Processing.value],
            "completed": counts[JobStatus.Completed.value],
            "failed": counts[JobStatus.Failed.value],
        }

    def get_timeline(self, job_id: str, scope: TenantScope) -> List[JobHistory]:
        with self.session() as session:
            query = scope.apply(
                select(JobHistory)
                .where(JobHistory.job_id == job_id)
                .order_by(JobHistory.timestamp.asc(), JobHistory.id.asc()),
                JobHistory,
            )
            rows = list(session.execute(query).scalars().all())
            for row in rows:
                session.expunge(row)
            return rows

    def get_recent_events(
        self,
        scope: TenantScope,
        event: HistoryEvent | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> List[JobHistory]:
        with self.session() as session:
            query = scope.apply(select(JobHistory), JobHistory)
            if event:
                query = query.where(JobHistory.event == event)
            if since:
                query = query.where(JobHistory.timestamp >= since)
            query = query.order_by(JobHistory.timestamp.desc(), JobHistory.id.desc()).limit(limit)
            rows = list(session.execute(query).scalars().all())
            for row in rows:
                session.expunge(row)
            return rows

    def is_cancel_requested(self, job_id: str) -> bool:
        with self.session() as session:
            flag = session.execute(
                select(Job.cancel_requested).where(Job.job_id == job_id)
            ).scalar_one_or_none()
            return bool(flag)

    # Transitions

    def mark_published(self, job_id: str) -> bool:
        with self.session() as session:
            result = session.execute(
                update(Job)
                .where(Job.job_id == job_id, Job.status == JobStatus.Queued)
                .values(published_at=utcnow())
            )
            session.commit()
            return result.rowcount == 1

    def claim(self, job_id: str) -> ClaimResult:
        """
        Move a queued job to processing for a new attempt.

        A delivery for a job that is already processing or terminal is a
        duplicate and must be acknowledged without running the handler.
        """
        with self.session() as session:
            job = self._locked(session, job_id)
            if job is None:
                return ClaimResult(ClaimOutcome.NOT_FOUND)

            if job.status != JobStatus.Queued:
                session.expunge(job)
                return ClaimResult(ClaimOutcome.DUPLICATE, job)

            now = utcnow()
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.Failed
                job.completed_at = now
                job.error = job.error or "Attempts exhausted"
                add_history(
                    session,
                    job,
                    HistoryEvent.Failed,
                    previous_status=JobStatus.Queued,
                    error_message=job.error,
                )
                session.commit()
                return ClaimResult(ClaimOutcome.EXHAUSTED, _detach(session, job))

            result = session.execute(
                update(Job)
                .where(
                    Job.job_id == job_id,
                    Job.status == JobStatus.Queued,
                    Job.attempts == job.attempts,
                )
                .values(
                    status=JobStatus.Processing,
                    attempts=job.attempts + 1,
                    progress=0,
                    processed_on=now,
                    queue_wait_time=elapsed_ms(job.created_at, now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.get(Job, job.id, populate_existing=True)
                if current is not None:
                    session.expunge(current)
                return ClaimResult(ClaimOutcome.DUPLICATE, current)

            session.refresh(job)
            add_history(session, job, HistoryEvent.Started, previous_status=JobStatus.Queued)
            session.commit()
            return ClaimResult(ClaimOutcome.CLAIMED, _detach(session, job))

    def update_progress(self, job_id: str, progress: int, metadata: Dict[str, Any] | None = None) -> bool:
        """Advance progress of a processing job. Never moves progress backwards."""
        progress = max(0, min(100, int(progress)))
        with self.session() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.job_id == job_id,
                    Job.status == JobStatus.Processing,
                    Job.progress < progress,
                )
                .values(progress=progress, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            job = session.execute(select(Job).where(Job.job_id == job_id)).scalar_one()
            add_history(session, job, HistoryEvent.Progress, metadata=metadata)
            session.commit()
            return True

    def mark_completed(self, job_id: str, result: Dict[str, Any] | None = None) -> Job:
        with self.session() as session:
            job = self._locked(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.Processing:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.Completed.value)

            now = utcnow()
            job.status = JobStatus.Completed
            job.progress = 100
            job.completed_at = now
            job.processing_time = elapsed_ms(job.processed_on, now)
            job.queue_wait_time = elapsed_ms(job.created_at, job.processed_on)
            job.result = result
            job.error = None
            add_history(
                session,
                job,
                HistoryEvent.Completed,
                previous_status=JobStatus.Processing,
                metadata={
                    "efficiency": calculate_efficiency(job.processing_time, job.queue_wait_time)
                },
                timestamp=now,
            )
            session.commit()
            return _detach(session, job)

    def record_failure(self, job_id: str, error: str, retryable: bool = True) -> Job:
        """
        Record a failed attempt.

        The job goes back to queued while attempts remain and the error is
        retryable, otherwise it becomes terminally failed. The caller inspects
        the returned status to decide between re-publishing and dead-lettering.
        """
        with self.session() as session:
            job = self._locked(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.Processing:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.Failed.value)

            now = utcnow()
            job.error = error
            if retryable and job.attempts < job.max_attempts:
                job.status = JobStatus.Queued
                job.published_at = None
                add_history(
                    session,
                    job,
                    HistoryEvent.Retry,
                    previous_status=JobStatus.Processing,
                    error_message=error,
                    timestamp=now,
                )
            else:
                job.status = JobStatus.Failed
                job.completed_at = now
                job.processing_time = elapsed_ms(job.processed_on, now)
                add_history(
                    session,
                    job,
                    HistoryEvent.Failed,
                    previous_status=JobStatus.Processing,
                    error_message=error,
                    timestamp=now,
                )
            session.commit()
            return _detach(session, job)

    def mark_cancelled(self, job_id: str, reason: str = CANCELLED_ERROR) -> Job:
        with self.session() as session:
            job = self._locked(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.Processing:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.Failed.value)

            now = utcnow()
            job.status = JobStatus.Failed
            job.error = reason
            job.completed_at = now
            job.processing_time = elapsed_ms(job.processed_on, now)
            add_history(
                session,
                job,
                HistoryEvent.Cancelled,
                previous_status=JobStatus.Processing,
                error_message=reason,
                timestamp=now,
            )
            session.commit()
            return _detach(session, job)

    def request_cancel(self, job_id: str, scope: TenantScope) -> Job | None:
        """Flag a job for cooperative cancellation. Terminal jobs are left untouched."""
        with self.session() as session:
            query = scope.apply(select(Job).where(Job.job_id == job_id)).with_for_update()
            job = session.execute(query).scalar_one_or_none()
            if job is None:
                return None
            if job.status not in TERMINAL_STATUSES and not job.cancel_requested:
                job.cancel_requested = True
                session.commit()
            return _detach(session, job)

    # Reconciliation

    def find_stale_processing(self, older_than: datetime, limit: int = 100) -> List[Job]:
        with self.session() as session:
            query = (
                select(Job)
                .where(Job.status == JobStatus.Processing, Job.processed_on < older_than)
                .order_by(Job.processed_on.asc())
                .limit(limit)
            )
            jobs = list(session.execute(query).scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    def rollback_stale(self, job_id: str, older_than: datetime) -> Job | None:
        """Reclaim a processing job whose worker stopped reporting.

        Returns the updated job, or None when it moved on in the meantime.
        """
        with self.session() as session:
            job = self._locked(session, job_id)
            if job is None or job.status != JobStatus.Processing:
                return None
            if job.processed_on is not None and job.processed_on >= older_than:
                return None

            now = utcnow()
            stalled_for = elapsed_ms(job.processed_on, now)
            if job.attempts < job.max_attempts:
                job.status = JobStatus.Queued
                job.published_at = None
                job.error = f"Job stalled after {stalled_for / 1000:.0f}s"
                add_history(
                    session,
                    job,
                    HistoryEvent.Rollback,
                    previous_status=JobStatus.Processing,
                    error_message=job.error,
                    metadata={"stalled_ms": stalled_for},
                    timestamp=now,
                )
            else:
                job.status = JobStatus.Failed
                job.completed_at = now
                job.error = f"Job stalled after {stalled_for / 1000:.0f}s with no attempts left"
                add_history(
                    session,
                    job,
                    HistoryEvent.Failed,
                    previous_status=JobStatus.Processing,
                    error_message=job.error,
                    metadata={"stalled_ms": stalled_for},
                    timestamp=now,
                )
            session.commit()
            return _detach(session, job)

    def find_unpublished(self, older_than: datetime, limit: int = 100) -> List[Job]:
        with self.session() as session:
            query = (
                select(Job)
                .where(
                    Job.status == JobStatus.Queued,
                    Job.published_at.is_(None),
                    Job.updated_at < older_than,
                )
                .order_by(Job.created_at.asc())
                .limit(limit)
            )
            jobs = list(session.execute(query).scalars().all())
            for job in jobs:
                session.expunge(job)
            return jobs

    def purge_expired(self, job_ttl: timedelta, history_ttl: timedelta) -> Tuple[int, int]:
        """Delete jobs and history past their retention window."""
        now = utcnow()
        with self.session() as session:
            jobs = session.execute(
                delete(Job).where(Job.created_at < now - job_ttl)
            ).rowcount
            histories = session.execute(
                delete(JobHistory).where(JobHistory.timestamp < now - history_ttl)
            ).rowcount
            session.commit()
        if jobs or histories:
            logger.log("DATABASE", f"Purged {jobs} expired jobs and {histories} history events")
        return jobs, histories

    def clean_queue(self, queue_name: str, grace: timedelta, scope: TenantScope) -> Dict[str, int]:
        """
        Delete completed and failed jobs of one queue that finished more than
        ``grace`` ago, together with their history.
        """
        cutoff = utcnow() - grace
        finished_at = func.coalesce(Job.completed_at, Job.updated_at)
        removed: Dict[str, int] = {}
        with self.session() as session:
            for status in TERMINAL_STATUSES:
                job_ids = list(
                    session.execute(
                        scope.apply(
                            select(Job.job_id).where(
                                Job.queue_name == queue_name,
                                Job.status == status,
                                finished_at < cutoff,
                            )
                        )
                    ).scalars().all()
                )
                if job_ids:
                    session.execute(delete(JobHistory).where(JobHistory.job_id.in_(job_ids)))
                    session.execute(delete(Job).where(Job.job_id.in_(job_ids)))
                removed[status.value] = len(job_ids)
            session.commit()
        logger.log(
            "QUEUE",
            f"Cleaned {queue_name} for {scope}: {removed['completed']} completed, "
            f"{removed['failed']} failed jobs removed",
        )
        return removed

    def set_queue_paused(self, queue_name: str, paused: bool) -> QueueState:
        with self.session() as session:
            state = session.execute(
                select(QueueState).where(QueueState.queue_name == queue_name)
            ).scalar_one_or_none()
            if state is None:
                state = QueueState(queue_name=queue_name, paused=paused)
                session.add(state)
            else:
                state.paused = paused
                state.updated_at = utcnow()
            session.commit()
            session.refresh(state)
            session.expunge(state)
            return state

    def paused_queues(self) -> set[str]:
        with self.session() as session:
            return set(
                session.execute(
                    select(QueueState.queue_name).where(QueueState.paused.is_(True))
                ).scalars().all()
            )
