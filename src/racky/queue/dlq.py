"""
Dead Letter Queue (DLQ) payloads.

Terminal failures are published to the dead-letter exchange as structured
JSON so operators can triage them without digging through the job tables.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from loguru import logger

from racky.exceptions import BrokerUnavailableError
from racky.jobs.models import Job
from racky.queue.topology import DLQ_ROUTING_KEY, DLX_NAME
from racky.utils import utcnow


def build_failure_payload(*, job: Job, error: str, exception: Optional[BaseException] = None) -> Dict[str, Any]:
    """Construct a structured failure payload for a terminally failed job."""
    return {
        "timestamp": utcnow().isoformat() + "Z",
        "queue": job.queue_name,
        "routing_key": job.routing_key,
        "job_id": job.job_id,
        "job_type": job.job_type.value,
        "workspace_id": job.workspace_id,
        "attempt_count": job.attempts,
        "max_attempts": job.max_attempts,
        "error": {
            "type": type(exception).__name__ if exception else "Error",
            "message": error,
        },
    }


def publish_failure_to_dlq(publisher, failure: Dict[str, Any]) -> bool:
    """Publish a failure payload through the DLX. Returns False if the broker refused it."""
    try:
        publisher.publish(
            DLX_NAME,
            DLQ_ROUTING_KEY,
            json.dumps(failure, default=str).encode("utf-8"),
            headers={"x-racky-failure": True},
        )
        logger.warning(f"Published final failure to DLQ: job_id={failure.get('job_id')}")
        return True
    except BrokerUnavailableError as e:
        logger.error(f"Failed to publish failure to DLQ: {e}")
        return False
