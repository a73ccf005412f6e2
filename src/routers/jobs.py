# Job and queue API endpoints
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, HTTPException, Query
from kink import di
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from racky.exceptions import BrokerUnavailableError, JobNotFoundError, ValidationError
from racky.jobs.models import HistoryEvent, Job, JobHistory, JobStatus
from racky.jobs.store import JobFilters, JobStore, TenantScope
from racky.jobs.types import JobPriority, JobType
from racky.monitoring.health import QueueHealthMonitor
from racky.monitoring.metrics import JobMetricsService
from racky.queue.queue_manager import EnqueueOptions, QueueManager
from racky.utils import utcnow

router = APIRouter(tags=["jobs"])


class EnqueueRequest(BaseModel):
    """Body for ``POST /jobs/{domain}/{job_type}``."""
    workspace_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)
    parent_job_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None


class EnqueueResponse(BaseModel):
    job_id: str
    status: str


class JobResponse(BaseModel):
    job_id: str
    job_type: str
    queue_name: str
    workspace_id: str
    user_id: Optional[str] = None
    status: str
    progress: int
    attempts: int
    max_attempts: int
    priority: str
    created_at: Optional[datetime] = None
    processed_on: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time: Optional[float] = None
    queue_wait_time: Optional[float] = None
    error: Optional[str] = None
    parent_job_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            job_type=job.job_type.value,
            queue_name=job.queue_name,
            workspace_id=job.workspace_id,
            user_id=job.user_id,
            status=job.status.value,
            progress=job.progress,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority.value,
            created_at=job.created_at,
            processed_on=job.processed_on,
            completed_at=job.completed_at,
            processing_time=job.processing_time,
            queue_wait_time=job.queue_wait_time,
            error=job.error,
            parent_job_id=job.parent_job_id,
            result=job.result,
            cancel_requested=job.cancel_requested,
        )


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int
    page: int
    per_page: int
    pages: int
    counts: Dict[str, int]


class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int


class QueueStateResponse(BaseModel):
    queue_name: str
    paused: bool


class CleanQueueResponse(BaseModel):
    queue_name: str
    completed: int
    failed: int


class HistoryEntryResponse(BaseModel):
    job_id: str
    event: str
    timestamp: Optional[datetime] = None
    progress: Optional[int] = None
    attempt: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class JobListQuery(BaseModel):
    status: Optional[str] = None
    job_type: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _validate_status(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        for part in v.split(","):
            try:
                JobStatus(part)
            except ValueError:
                allowed = ", ".join(s.value for s in JobStatus)
                raise ValueError(f"Invalid status '{part}'. Allowed: {allowed}")
        return v

    @field_validator("job_type")
    @classmethod
    def _validate_job_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            JobType(v)
        except ValueError:
            allowed = ", ".join(t.value for t in JobType)
            raise ValueError(f"Invalid job type '{v}'. Allowed: {allowed}")
        return v


def _scope(workspace_id: Optional[str]) -> TenantScope:
    return TenantScope.workspace(workspace_id) if workspace_id else TenantScope.platform()


def _validation_error(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})


def _history_entry(row: JobHistory) -> HistoryEntryResponse:
    return HistoryEntryResponse(
        job_id=row.job_id,
        event=row.event.value,
        timestamp=row.timestamp,
        progress=row.progress,
        attempt=row.attempt,
        error_message=row.error_message,
        metadata=row.meta or {},
    )


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
def cancel_job(job_id: str, workspace_id: str = Query(..., min_length=1)):
    """Request cooperative cancellation of a queued or running job."""
    try:
        job = di[QueueManager].cancel_job(job_id, TenantScope.workspace(workspace_id))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.from_job(job)


@router.post("/jobs/{domain}/{job_type}", response_model=EnqueueResponse, status_code=202)
def enqueue_job(domain: str, job_type: str, request: EnqueueRequest):
    """Validate, persist and publish a job. The job is queued once this returns."""
    try:
        result = di[QueueManager].enqueue(
            domain,
            job_type,
            request.payload,
            EnqueueOptions(
                workspace_id=request.workspace_id,
                user_id=request.user_id,
                priority=request.priority,
                max_attempts=request.max_attempts,
                parent_job_id=request.parent_job_id,
                metadata=request.metadata,
            ),
        )
    except ValidationError as e:
        raise _validation_error(e)
    except BrokerUnavailableError as e:
        logger.error(f"Enqueue of {domain}/{job_type} deferred: {e}")
        raise HTTPException(
            status_code=503,
            detail={"message": "Broker unavailable, job will be published later", "job_id": e.job_id},
        )
    return EnqueueResponse(**result)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    workspace_id: str = Query(..., min_length=1),
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    queue_name: Optional[str] = None,
    parent_job_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    sort: str = "-created_at",
):
    try:
        query = JobListQuery(status=status, job_type=job_type)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    filters = JobFilters(
        status=[JobStatus(s) for s in query.status.split(",")] if query.status else None,
        job_type=JobType(query.job_type) if query.job_type else None,
        queue_name=queue_name,
        parent_job_id=parent_job_id,
    )
    scope = TenantScope.workspace(workspace_id)
    store = di[JobStore]
    try:
        result = store.list_jobs(scope, filters, page=page, per_page=per_page, sort=sort)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return JobListResponse(
        jobs=[JobResponse.from_job(j) for j in result.items],
        total=result.total,
        page=result.page,
        per_page=result.per_page,
        pages=result.pages,
        counts=store.count_by_status(scope, JobFilters(queue_name=queue_name)),
    )


@router.get("/jobs/{job_id}/timeline", response_model=List[HistoryEntryResponse])
def get_job_timeline(job_id: str, workspace_id: str = Query(..., min_length=1)):
    try:
        rows = di[QueueManager].get_job_timeline(job_id, TenantScope.workspace(workspace_id))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return [_history_entry(row) for row in rows]


@router.get("/events", response_model=List[HistoryEntryResponse])
def get_recent_events(
    workspace_id: Optional[str] = None,
    event: Optional[HistoryEvent] = None,
    hours: int = Query(24, ge=1, le=168),
    limit: int = Query(100, ge=1, le=1000),
):
    rows = di[JobStore].get_recent_events(
        _scope(workspace_id), event=event, since=utcnow() - timedelta(hours=hours), limit=limit
    )
    return [_history_entry(row) for row in rows]


@router.get("/queues/{queue_name}/jobs/{job_id}", response_model=JobResponse)
def get_job_status(queue_name: str, job_id: str, workspace_id: str = Query(..., min_length=1)):
    job = di[QueueManager].get_job_status(queue_name, job_id, TenantScope.workspace(workspace_id))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found in {queue_name}")
    return JobResponse.from_job(job)


@router.get("/queues/stats", response_model=Dict[str, QueueStatsResponse])
def get_all_queue_stats(workspace_id: Optional[str] = None):
    return di[QueueManager].get_all_queue_stats(_scope(workspace_id))


@router.get("/queues/{queue_name}/stats", response_model=QueueStatsResponse)
def get_queue_stats(queue_name: str, workspace_id: Optional[str] = None):
    """Job counts for one queue; without ``workspace_id`` the counts are platform wide."""
    try:
        return di[QueueManager].get_queue_stats(queue_name, _scope(workspace_id))
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/queues/paused", response_model=List[str])
def get_paused_queues():
    return di[QueueManager].get_paused_queues()


@router.post("/queues/{queue_name}/pause", response_model=QueueStateResponse)
def pause_queue(queue_name: str):
    try:
        state = di[QueueManager].pause_queue(queue_name)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return QueueStateResponse(queue_name=state.queue_name, paused=state.paused)


@router.post("/queues/{queue_name}/resume", response_model=QueueStateResponse)
def resume_queue(queue_name: str):
    try:
        state = di[QueueManager].resume_queue(queue_name)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return QueueStateResponse(queue_name=state.queue_name, paused=state.paused)


@router.post("/queues/{queue_name}/clean", response_model=CleanQueueResponse)
def clean_queue(
    queue_name: str,
    grace_seconds: int = Query(24 * 60 * 60, ge=0),
    workspace_id: Optional[str] = None,
):
    """Delete completed and failed jobs that finished more than ``grace_seconds`` ago."""
    try:
        removed = di[QueueManager].clean_queue(
            queue_name, timedelta(seconds=grace_seconds), _scope(workspace_id)
        )
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CleanQueueResponse(queue_name=queue_name, **removed)


@router.get("/health")
def get_system_health():
    return di[QueueHealthMonitor].get_system_health()


@router.get("/health/broker")
def get_broker_health():
    monitor = di[QueueHealthMonitor]
    return {
        "overview": monitor.get_overall_health().to_dict(),
        "management_api": monitor.is_management_api_accessible(),
        "connections": monitor.get_connection_stats(),
        "channels": monitor.get_channel_stats(),
    }


@router.get("/health/queues")
def get_queue_health(unhealthy_only: bool = False):
    monitor = di[QueueHealthMonitor]
    if unhealthy_only:
        return [row.to_dict() for row in monitor.get_unhealthy_queues()]
    return [s.to_dict() for s in monitor.get_all_queue_stats()]


@router.get("/health/queues/{queue_name}/trend")
def get_queue_health_trend(queue_name: str, hours: int = Query(24, ge=1, le=168)):
    return [row.to_dict() for row in di[QueueHealthMonitor].get_health_trend(queue_name, hours)]


@router.get("/metrics/performance")
def get_performance_stats(
    timeframe: Literal["1h", "24h", "7d"] = "24h", workspace_id: Optional[str] = None
):
    return di[JobMetricsService].get_performance_stats(timeframe, _scope(workspace_id))


@router.get("/metrics/throughput")
def get_throughput_stats(queue_name: Optional[str] = None, hours: int = Query(24, ge=1, le=168)):
    return di[JobMetricsService].get_throughput_stats(queue_name, hours)


@router.get("/metrics/errors")
def get_error_analysis(workspace_id: Optional[str] = None, hours: int = Query(24, ge=1, le=168)):
    return di[JobMetricsService].get_error_analysis(workspace_id, hours)
