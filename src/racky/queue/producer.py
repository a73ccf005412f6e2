"""
Job producer: validate, persist, then publish.

The job row is written before anything touches the broker, so a broker outage
never loses a job; it simply stays queued with ``published_at`` unset until the
sweeper republishes it.
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Protocol

from loguru import logger

from racky.exceptions import BrokerUnavailableError, ValidationError
from racky.jobs.models import Job, JobStatus
from racky.jobs.store import JobStore
from racky.jobs.types import (
    JobMessage,
    JobPriority,
    JobType,
    domain_for,
    dump_payload,
    parse_job_type,
    queue_for,
    routing_key_for,
    validate_payload,
)
from racky.queue.topology import exchange_name, retry_queue_name, retry_tier_ms


class Publisher(Protocol):
    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        priority: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None,
        message_id: Optional[str] = None,
    ) -> None: ...


class JobProducer:
    def __init__(self, store: JobStore, publisher: Publisher, default_max_attempts: int = 3):
        self.store = store
        self.publisher = publisher
        self.default_max_attempts = default_max_attempts

    def enqueue(
        self,
        job_type: JobType | str,
        payload: Dict[str, Any],
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
        priority: JobPriority | str = JobPriority.NORMAL,
        max_attempts: Optional[int] = None,
        parent_job_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Validate and persist a job, then publish it.

        Returns:
            The new job id.

        Raises:
            ValidationError: The payload or options are invalid. Nothing was persisted.
            BrokerUnavailableError: The job was persisted as queued but could not
                be published; ``job_id`` is set on the error.
        """
        job_type = parse_job_type(job_type)
        try:
            priority = JobPriority(priority)
        except ValueError:
            raise ValidationError(
                f"Invalid priority '{priority}'",
                errors=[{"field": "priority", "message": "must be low, normal or high"}],
            ) from None
        if not workspace_id:
            raise ValidationError(
                "workspace_id is required",
                errors=[{"field": "workspace_id", "message": "required"}],
            )
        max_attempts = max_attempts if max_attempts is not None else self.default_max_attempts
        if max_attempts < 1:
            raise ValidationError(
                "max_attempts must be at least 1",
                errors=[{"field": "max_attempts", "message": "must be >= 1"}],
            )

        data = dump_payload(validate_payload(job_type, payload))

        job = self.store.create_job(
            job_id=str(uuid.uuid4()),
            job_type=job_type,
            queue_name=queue_for(job_type),
            routing_key=routing_key_for(job_type, priority),
            workspace_id=workspace_id,
            user_id=user_id,
            data=data,
            priority=priority,
            max_attempts=max_attempts,
            parent_job_id=parent_job_id,
            metadata=metadata,
        )
        logger.log("QUEUE", f"Enqueued {job_type.value} job {job.job_id} for workspace {workspace_id}")

        try:
            self.publish(job)
        except BrokerUnavailableError as e:
            e.job_id = job.job_id
            logger.error(f"Job {job.job_id} persisted but not published, left for reconciliation: {e}")
            raise
        return job.job_id

    def publish(self, job: Job, *, delay_ms: Optional[int] = None) -> None:
        """
        Publish a delivery notification for a queued job.

        With ``delay_ms`` the message goes to the retry queue of the smallest
        delay tier covering it and only reaches consumers once that tier's
        TTL expires.
        """
        message = JobMessage(
            job_id=job.job_id,
            job_type=job.job_type,
            workspace_id=job.workspace_id,
            priority=job.priority,
            attempt=job.attempts,
            created_at=job.created_at.isoformat() if job.created_at else None,
        )
        if delay_ms:
            exchange, routing_key = "", retry_queue_name(job.queue_name, retry_tier_ms(delay_ms))
        else:
            exchange, routing_key = exchange_name(domain_for(job.job_type)), job.routing_key

        self.publisher.publish(
            exchange,
            routing_key,
            message.encode(),
            priority=job.priority.broker_priority,
            message_id=f"{job.job_id}:{job.attempts}",
        )
        if not self.store.mark_published(job.job_id):
            logger.debug(f"Job {job.job_id} left queued before publish was recorded")
        logger.trace(f"Published {message.log_message} to {exchange or 'default'}/{routing_key}")

    def republish(self, job: Job, *, delay_ms: Optional[int] = None) -> bool:
        """Publish again a job that is still queued. Returns False on broker failure."""
        if job.status != JobStatus.Queued:
            return False
        try:
            self.publish(job, delay_ms=delay_ms)
            return True
        except BrokerUnavailableError as e:
            logger.warning(f"Republish of job {job.job_id} failed: {e}")
            return False
