"""
Queue facade used by route handlers and other platform modules.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from racky.exceptions import JobNotFoundError, ValidationError
from racky.jobs.models import Job, JobHistory, QueueState
from racky.jobs.store import JobStore, TenantScope
from racky.jobs.types import JobDomain, JobPriority, domain_for, parse_job_type
from racky.queue.producer import JobProducer
from racky.queue.topology import all_queue_names


@dataclass
class EnqueueOptions:
    workspace_id: str
    user_id: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    max_attempts: Optional[int] = None
    parent_job_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def _check_queue(queue_name: str) -> None:
    if queue_name not in all_queue_names():
        raise ValidationError(
            f"Unknown queue '{queue_name}'",
            errors=[{"field": "queue_name", "message": "unknown queue"}],
        )


class QueueManager:
    def __init__(self, store: JobStore, producer: JobProducer):
        self.store = store
        self.producer = producer

    def enqueue(
        self,
        domain: JobDomain | str,
        job_type: str,
        payload: Dict[str, Any],
        options: EnqueueOptions,
    ) -> Dict[str, str]:
        """Returns ``{"job_id", "status"}``; the job is queued once this returns."""
        try:
            domain = JobDomain(domain)
        except ValueError:
            allowed = ", ".join(d.value for d in JobDomain)
            raise ValidationError(
                f"Invalid domain '{domain}'. Allowed: {allowed}",
                errors=[{"field": "domain", "message": "unknown domain"}],
            ) from None
        parsed = parse_job_type(job_type)
        if domain_for(parsed) is not domain:
            raise ValidationError(
                f"Job type '{parsed.value}' does not belong to domain '{domain.value}'",
                errors=[{"field": "job_type", "message": "wrong domain"}],
            )

        job_id = self.producer.enqueue(
            parsed,
            payload,
            workspace_id=options.workspace_id,
            user_id=options.user_id,
            priority=options.priority,
            max_attempts=options.max_attempts,
            parent_job_id=options.parent_job_id,
            metadata=options.metadata,
        )
        return {"job_id": job_id, "status": "queued"}

    def get_job_status(self, queue_name: str, job_id: str, scope: TenantScope) -> Job | None:
        return self.store.get_job_status(queue_name, job_id, scope)

    def get_queue_stats(self, queue_name: str, scope: TenantScope) -> Dict[str, int]:
        _check_queue(queue_name)
        return self.store.get_queue_stats(queue_name, scope)

    def get_all_queue_stats(self, scope: TenantScope) -> Dict[str, Dict[str, int]]:
        return {name: self.store.get_queue_stats(name, scope) for name in all_queue_names()}

    def cancel_job(self, job_id: str, scope: TenantScope) -> Job:
        job = self.store.request_cancel(job_id, scope)
        if job is None:
            raise JobNotFoundError(job_id)
        logger.log("QUEUE", f"Cancel requested for job {job_id} by {scope}")
        return job

    def get_job_timeline(self, job_id: str, scope: TenantScope) -> List[JobHistory]:
        if self.store.get_job(job_id, scope) is None:
            raise JobNotFoundError(job_id)
        return self.store.get_timeline(job_id, scope)

    # Queue controls

    def pause_queue(self, queue_name: str) -> QueueState:
        """Workers cancel their consumers on this queue at their next poll. Messages stay queued."""
        _check_queue(queue_name)
        state = self.store.set_queue_paused(queue_name, True)
        logger.log("QUEUE", f"Queue {queue_name} paused")
        return state

    def resume_queue(self, queue_name: str) -> QueueState:
        _check_queue(queue_name)
        state = self.store.set_queue_paused(queue_name, False)
        logger.log("QUEUE", f"Queue {queue_name} resumed")
        return state

    def get_paused_queues(self) -> List[str]:
        return sorted(self.store.paused_queues())

    def clean_queue(
        self,
        queue_name: str,
        grace: timedelta = timedelta(hours=24),
        scope: TenantScope | None = None,
    ) -> Dict[str, int]:
        """Remove finished jobs older than ``grace``. Returns ``{completed, failed}`` removal counts."""
        _check_queue(queue_name)
        return self.store.clean_queue(queue_name, grace, scope or TenantScope.platform())
