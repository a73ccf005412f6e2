"""
Job metrics aggregated from the job and history tables.

Everything here is derived from persisted rows, so any number of API or
monitor processes can compute the same statistics without coordination.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Final, List, Optional

from loguru import logger
from sqla_wrapper import SQLAlchemy
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError

from racky.db.db import db_session
from racky.jobs.models import HistoryEvent, Job, JobHistory, JobStatus
from racky.jobs.store import TenantScope, add_history, calculate_efficiency
from racky.utils import elapsed_ms, utcnow

TIMEFRAMES: Final[Dict[str, timedelta]] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}

TOP_ERRORS: Final[int] = 20


def _count_status(status: JobStatus):
    return func.sum(case((Job.status == status, 1), else_=0))


def _round(value: Optional[float]) -> float:
    return round(float(value), 2) if value is not None else 0.0


class JobMetricsService:
    def __init__(self, db: SQLAlchemy):
        self.db = db

    def record_job_completion(self, job_id: str, start: datetime, end: datetime) -> Optional[float]:
        """
        Record the execution window of a job and return its efficiency.

        Calling this again for the same job overwrites the timings with the
        same values and does not append a second ``completed`` event, so
        aggregates never count a job twice. Returns ``None`` when the job is
        unknown or the store cannot be reached.
        """
        try:
            efficiency = self._record_completion(job_id, start, end)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record completion of job {job_id}: {e}")
            return None
        if efficiency is None:
            logger.warning(f"Cannot record completion of unknown job {job_id}")
            return None

        logger.log("METRICS", f"Job {job_id} took {elapsed_ms(start, end):.0f}ms ({efficiency}% efficient)")
        return efficiency

    def _record_completion(self, job_id: str, start: datetime, end: datetime) -> Optional[float]:
        with db_session(self.db) as session:
            job = session.execute(
                select(Job).where(Job.job_id == job_id).with_for_update()
            ).scalar_one_or_none()
            if job is None:
                return None

            job.processing_time = elapsed_ms(start, end)
            job.completed_at = end
            if job.processed_on is None:
                job.processed_on = start
            if job.queue_wait_time is None:
                job.queue_wait_time = elapsed_ms(job.created_at, job.processed_on)
            efficiency = calculate_efficiency(job.processing_time, job.queue_wait_time)

            already_recorded = session.execute(
                select(func.count(JobHistory.id)).where(
                    JobHistory.job_id == job_id,
                    JobHistory.event == HistoryEvent.Completed,
                )
            ).scalar_one()
            if not already_recorded:
                add_history(
                    session,
                    job,
                    HistoryEvent.Completed,
                    metadata={"efficiency": efficiency},
                    timestamp=end,
                )
            session.commit()
        return efficiency

    def get_performance_stats(
        self, timeframe: str = "24h", scope: TenantScope | None = None
    ) -> List[Dict[str, Any]]:
        """
        Per job type totals, status counts, timings and success/failure rates
        for jobs created within ``timeframe`` (``1h``, ``24h`` or ``7d``).
        """
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe '{timeframe}'. Allowed: {', '.join(TIMEFRAMES)}")
        scope = scope or TenantScope.platform()
        since = utcnow() - TIMEFRAMES[timeframe]

        query = scope.apply(
            select(
                Job.job_type,
                func.count(Job.id),
                _count_status(JobStatus.Queued),
                _count_status(JobStatus.Processing),
                _count_status(JobStatus.Completed),
                _count_status(JobStatus.Failed),
                func.avg(Job.processing_time),
                func.min(Job.processing_time),
                func.max(Job.processing_time),
                func.avg(Job.queue_wait_time),
            )
            .where(Job.created_at >= since)
            .group_by(Job.job_type)
        )

        try:
            with db_session(self.db) as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to compute job performance stats: {e}")
            return []

        stats: List[Dict[str, Any]] = []
        for row in rows:
            (job_type, total, queued, processing, completed, failed,
             avg_time, min_time, max_time, avg_wait) = row
            total = int(total or 0)
            completed, failed = int(completed or 0), int(failed or 0)
            stats.append(
                {
                    "job_type": getattr(job_type, "value", job_type),
                    "total": total,
                    "queued": int(queued or 0),
                    "processing": int(processing or 0),
                    "completed": completed,
                    "failed": failed,
                    "avg_processing_time": _round(avg_time),
                    "min_processing_time": _round(min_time),
                    "max_processing_time": _round(max_time),
                    "avg_queue_wait_time": _round(avg_wait),
                    "success_rate": round(completed / total * 100, 2) if total else 0.0,
                    "failure_rate": round(failed / total * 100, 2) if total else 0.0,
                }
            )
        stats.sort(key=lambda s: s["total"], reverse=True)
        return stats

    def get_throughput_stats(
        self, queue_name: Optional[str] = None, hours: int = 24
    ) -> List[Dict[str, Any]]:
        """Completed jobs per minute, oldest bucket first."""
        since = utcnow() - timedelta(hours=hours)
        query = select(Job.completed_at, Job.processing_time).where(
            Job.status == JobStatus.Completed, Job.completed_at >= since
        )
        if queue_name:
            query = query.where(Job.queue_name == queue_name)

        try:
            with db_session(self.db) as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to compute job throughput: {e}")
            return []

        buckets: Dict[str, List[float]] = defaultdict(list)
        for completed_at, processing_time in rows:
            buckets[completed_at.strftime("%Y-%m-%d %H:%M")].append(processing_time or 0.0)

        return [
            {
                "minute": minute,
                "completed": len(times),
                "avg_processing_time": round(sum(times) / len(times), 2),
            }
            for minute, times in sorted(buckets.items())
        ]

    def get_error_analysis(
        self, workspace_id: Optional[str] = None, hours: int = 24
    ) -> List[Dict[str, Any]]:
        """Failed-history events grouped by message, most frequent first (top 20)."""
        since = utcnow() - timedelta(hours=hours)
        scope = TenantScope.workspace(workspace_id) if workspace_id else TenantScope.platform()
        message = func.coalesce(JobHistory.error_message, "Unknown error")

        grouped = scope.apply(
            select(message, func.count(JobHistory.id), func.max(JobHistory.timestamp))
            .where(JobHistory.event == HistoryEvent.Failed, JobHistory.timestamp >= since)
            .group_by(message)
            .order_by(func.count(JobHistory.id).desc())
            .limit(TOP_ERRORS),
            JobHistory,
        )

        try:
            with db_session(self.db) as session:
                top = session.execute(grouped).all()
                if not top:
                    return []
                affected: Dict[str, List[str]] = defaultdict(list)
                rows = session.execute(
                    scope.apply(
                        select(message, JobHistory.job_id)
                        .where(
                            JobHistory.event == HistoryEvent.Failed,
                            JobHistory.timestamp >= since,
                            message.in_([m for m, _, _ in top]),
                        )
                        .distinct(),
                        JobHistory,
                    )
                ).all()
                for error_message, job_id in rows:
                    affected[error_message].append(job_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to analyse job errors: {e}")
            return []

        return [
            {
                "error": error_message,
                "count": int(count),
                "last_occurrence": last.isoformat() if last else None,
                "job_ids": sorted(affected.get(error_message, [])),
            }
            for error_message, count, last in top
        ]
