"""Errors raised by the job orchestration core.

Producer and consumer errors propagate to the REST boundary where they map to
HTTP responses. ``ManagementAPIError`` never leaves the health monitor.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class RackyJobError(Exception):
    """Base class for job orchestration errors."""


class ValidationError(RackyJobError):
    """An enqueue payload failed its job type schema. Never retried."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class BrokerUnavailableError(RackyJobError):
    """Publishing failed. The job stays queued for reconciliation."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class HandlerExecutionError(RackyJobError):
    """Business failure raised inside a job handler; retried with backoff."""

    def __init__(self, message: str, job_id: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.job_id = job_id
        self.retryable = retryable


class JobCancelledError(RackyJobError):
    """Raised by a handler that observed a cancellation request."""


class ManagementAPIError(RackyJobError):
    """A broker management API call failed."""

    def __init__(self, message: str, path: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.status = status


class JobNotFoundError(RackyJobError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(RackyJobError):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target
