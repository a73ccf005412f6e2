"""
Job consumer and worker process.

``JobConsumer.handle`` turns one delivery into a settled outcome (ack or
dead-letter) and owns every job state transition made by a worker. It knows
nothing about pika so it can be driven directly in tests. ``JobWorker`` wires
it to RabbitMQ: handlers run on a thread pool and acks are handed back to the
connection thread with ``add_callback_threadsafe``.
"""
from __future__ import annotations

import functools
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import pika
from dramatiq.common import compute_backoff
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from racky.exceptions import (
    HandlerExecutionError,
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    ValidationError,
)
from racky.jobs.models import Job, JobStatus
from racky.jobs.store import ClaimOutcome, JobStore
from racky.jobs.types import QUEUE_NAMES, JobMessage, JobType, validate_payload
from racky.queue.broker import connection_parameters
from racky.queue.dlq import build_failure_payload, publish_failure_to_dlq
from racky.queue.producer import JobProducer
from racky.queue.topology import QueueSpec, build_queue_specs, declare_topology


class Outcome(Enum):
    ACK = "ack"
    REJECT = "reject"  # nack without requeue, dead-letters through the DLX


@dataclass
class JobContext:
    """What a handler sees of the job it is running."""

    job_id: str
    job_type: JobType
    workspace_id: str
    payload: Any
    attempt: int
    max_attempts: int
    user_id: Optional[str] = None
    parent_job_id: Optional[str] = None
    _store: Optional[JobStore] = field(default=None, repr=False)
    cancel_observed: bool = False

    def update_progress(self, percent: int, **metadata: Any) -> bool:
        """Persist progress. Returns False when the job is no longer processing."""
        if self._store is None:
            return False
        return self._store.update_progress(self.job_id, percent, metadata or None)

    def is_cancelled(self) -> bool:
        """Poll between internal steps; return early once this is True."""
        if self._store is None:
            return False
        cancelled = self._store.is_cancel_requested(self.job_id)
        if cancelled:
            self.cancel_observed = True
        return cancelled

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise JobCancelledError(f"Job {self.job_id} was cancelled")


Handler = Callable[[JobContext], Optional[Dict[str, Any]]]


class HandlerRegistry:
    """One opaque handler per job type, supplied by the modules that own the work."""

    def __init__(self):
        self._handlers: Dict[JobType, Handler] = {}

    def register(self, job_type: JobType | str, handler: Handler | None = None):
        job_type = JobType(job_type)

        def _register(fn: Handler) -> Handler:
            if job_type in self._handlers:
                logger.warning(f"Replacing handler for {job_type.value}")
            self._handlers[job_type] = fn
            return fn

        if handler is not None:
            return _register(handler)
        return _register

    def get(self, job_type: JobType) -> Handler | None:
        return self._handlers.get(job_type)

    def job_types(self) -> List[JobType]:
        return list(self._handlers)

    def queues(self) -> List[str]:
        return sorted({QUEUE_NAMES[jt] for jt in self._handlers})

    def __contains__(self, job_type: JobType) -> bool:
        return job_type in self._handlers


class JobConsumer:
    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        producer: JobProducer,
        *,
        backoff_factor_ms: int = 1000,
        max_backoff_ms: int = 5 * 60 * 1000,
    ):
        self.store = store
        self.registry = registry
        self.producer = producer
        self.backoff_factor_ms = backoff_factor_ms
        self.max_backoff_ms = max_backoff_ms

    def retry_delay_ms(self, attempts: int) -> int:
        """Exponential backoff with jitter for the attempt that just failed."""
        if self.backoff_factor_ms <= 0:
            return 0
        _, backoff = compute_backoff(
            max(0, attempts - 1),
            factor=self.backoff_factor_ms,
            max_backoff=self.max_backoff_ms,
        )
        return min(int(backoff), self.max_backoff_ms)

    def handle(self, body: bytes) -> Outcome:
        try:
            message = JobMessage.decode(body)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Dead-lettering malformed message: {e}")
            return Outcome.REJECT

        claim = self.store.claim(message.job_id)
        if claim.outcome is ClaimOutcome.NOT_FOUND:
            logger.warning(f"No job row for {message.log_message}; dead-lettering")
            return Outcome.REJECT
        if claim.outcome is ClaimOutcome.DUPLICATE:
            status = claim.job.status.value if claim.job else "unknown"
            logger.debug(f"Skipping duplicate delivery of {message.log_message} ({status})")
            return Outcome.ACK
        if claim.outcome is ClaimOutcome.EXHAUSTED:
            return self._dead_letter(claim.job, claim.job.error or "Attempts exhausted")

        job = claim.job
        logger.log("WORKER", f"Starting {message.log_message}, attempt {job.attempts}/{job.max_attempts}")

        if job.cancel_requested:
            self.store.mark_cancelled(job.job_id)
            logger.log("WORKER", f"Job {job.job_id} cancelled before start")
            return Outcome.ACK

        handler = self.registry.get(job.job_type)
        if handler is None:
            return self._fail(job, f"No handler registered for {job.job_type.value}")

        try:
            payload = validate_payload(job.job_type, dict(job.data or {}))
        except ValidationError as e:
            return self._fail(job, str(e), e, retryable=False)

        context = JobContext(
            job_id=job.job_id,
            job_type=job.job_type,
            workspace_id=job.workspace_id,
            payload=payload,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            user_id=job.user_id,
            parent_job_id=job.parent_job_id,
            _store=self.store,
        )

        try:
            result = handler(context)
        except JobCancelledError:
            return self._cancel(job)
        except Exception as e:
            return self._fail(job, str(e) or type(e).__name__, e)

        if context.cancel_observed:
            return self._cancel(job)

        if result is not None and not isinstance(result, dict):
            result = {"value": result}
        try:
            completed = self.store.mark_completed(job.job_id, result)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning(f"Could not complete job {job.job_id}: {e}")
            return Outcome.ACK
        logger.success(
            f"Completed {message.log_message} in {completed.processing_time:.0f}ms "
            f"(waited {completed.queue_wait_time or 0:.0f}ms)"
        )
        return Outcome.ACK

    def _cancel(self, job: Job) -> Outcome:
        try:
            self.store.mark_cancelled(job.job_id)
            logger.log("WORKER", f"Job {job.job_id} cancelled during execution")
        except InvalidTransitionError as e:
            logger.warning(f"Could not cancel job {job.job_id}: {e}")
        return Outcome.ACK

    def _fail(
        self,
        job: Job,
        error: str,
        exception: Optional[BaseException] = None,
        retryable: bool = True,
    ) -> Outcome:
        if isinstance(exception, HandlerExecutionError) and not exception.retryable:
            retryable = False
        try:
            updated = self.store.record_failure(job.job_id, error, retryable=retryable)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning(f"Could not record failure for job {job.job_id}: {e}")
            return Outcome.ACK

        if updated.status == JobStatus.Queued:
            delay = self.retry_delay_ms(updated.attempts)
            logger.warning(
                f"Job {job.job_id} failed attempt {updated.attempts}/{updated.max_attempts}: "
                f"{error}. Retrying in {delay}ms"
            )
            # A failed republish leaves published_at unset for the sweeper.
            self.producer.republish(updated, delay_ms=delay)
            return Outcome.ACK

        logger.error(
            f"Job {job.job_id} failed permanently after {updated.attempts} attempts: {error}"
        )
        return self._dead_letter(updated, error, exception)

    def _dead_letter(self, job: Job, error: str, exception: Optional[BaseException] = None) -> Outcome:
        failure = build_failure_payload(job=job, error=error, exception=exception)
        if publish_failure_to_dlq(self.producer.publisher, failure):
            return Outcome.ACK
        return Outcome.REJECT


class JobWorker:
    """Competing consumer for the queues of the registered job types."""

    def __init__(
        self,
        consumer: JobConsumer,
        url: str,
        *,
        specs: Dict[str, QueueSpec] | None = None,
        queues: Iterable[str] | None = None,
        reconnect_attempts: int = 5,
        reconnect_backoff: float = 1.0,
        pause_poll_interval: float = 5.0,
    ):
        self.consumer = consumer
        self.url = url
        self.specs = specs or build_queue_specs()
        selected = list(queues) if queues else consumer.registry.queues()
        unknown = [q for q in selected if q not in self.specs]
        if unknown:
            raise ValueError(f"Unknown queues: {', '.join(unknown)}")
        self.queues = selected
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_backoff = reconnect_backoff
        self.pause_poll_interval = pause_poll_interval
        self._stopping = threading.Event()
        self._consumer_tags: Dict[str, str] = {}
        self._connection: Optional[pika.BlockingConnection] = None
        workers = sum(self.specs[q].prefetch for q in self.queues) or 1
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="racky-job")

    def run(self) -> None:
        """Consume until ``stop()`` is called, reconnecting with exponential backoff."""
        if not self.queues:
            logger.warning("No job handlers registered; worker has nothing to consume")
            return

        failures = 0
        while not self._stopping.is_set():
            connection = None
            try:
                connection = pika.BlockingConnection(connection_parameters(self.url))
                self._connection = connection
                channel = connection.channel()
                declare_topology(channel, self.specs)
                self._consumer_tags.clear()
                self.sync_consumers(connection, channel)
                failures = 0
                last_poll = time.monotonic()
                while not self._stopping.is_set():
                    connection.process_data_events(time_limit=1)
                    if time.monotonic() - last_poll >= self.pause_poll_interval:
                        self.sync_consumers(connection, channel)
                        last_poll = time.monotonic()
            except (pika.exceptions.AMQPError, OSError) as e:
                failures += 1
                if self.reconnect_attempts and failures > self.reconnect_attempts:
                    logger.error(f"Giving up on broker after {failures - 1} reconnect attempts: {e}")
                    raise
                delay = min(60.0, self.reconnect_backoff * (2 ** (failures - 1)))
                logger.warning(f"Broker connection lost: {e}. Reconnecting in {delay:.1f}s...")
                self._stopping.wait(delay)
            finally:
                self._connection = None
                if connection is not None and connection.is_open:
                    try:
                        connection.close()
                    except pika.exceptions.AMQPError as e:
                        logger.debug(f"Ignoring error while closing worker connection: {e}")

        self._executor.shutdown(wait=True)
        logger.log("WORKER", "Worker stopped")

    def sync_consumers(self, connection, channel) -> None:
        """Cancel consumers of paused queues and start consumers of active ones."""
        try:
            paused = self.consumer.store.paused_queues()
        except SQLAlchemyError as e:
            logger.error(f"Could not read paused queues, keeping current consumers: {e}")
            return

        for queue_name in self.queues:
            tag = self._consumer_tags.get(queue_name)
            if queue_name in paused and tag:
                channel.basic_cancel(consumer_tag=tag)
                del self._consumer_tags[queue_name]
                logger.log("WORKER", f"Paused consuming from {queue_name}")
            elif queue_name not in paused and not tag:
                # Non-global qos applies to consumers started after it on this channel.
                channel.basic_qos(prefetch_count=self.specs[queue_name].prefetch)
                self._consumer_tags[queue_name] = channel.basic_consume(
                    queue=queue_name,
                    on_message_callback=functools.partial(self._on_message, connection),
                )
                logger.log("WORKER", f"Consuming from {queue_name}")

    def stop(self) -> None:
        self._stopping.set()

    def _on_message(self, connection, channel, method, properties, body) -> None:
        self._executor.submit(self._process, connection, channel, method.delivery_tag, body)

    def _process(self, connection, channel, delivery_tag, body) -> None:
        try:
            outcome = self.consumer.handle(body)
        except Exception as e:
            # Store outage: leave the message to be redelivered.
            logger.exception(f"Unexpected error handling delivery {delivery_tag}: {e}")
            connection.add_callback_threadsafe(
                functools.partial(self._settle, channel, delivery_tag, None)
            )
            return
        connection.add_callback_threadsafe(
            functools.partial(self._settle, channel, delivery_tag, outcome)
        )

    @staticmethod
    def _settle(channel, delivery_tag, outcome: Optional[Outcome]) -> None:
        if not channel.is_open:
            return
        if outcome is Outcome.ACK:
            channel.basic_ack(delivery_tag=delivery_tag)
        elif outcome is Outcome.REJECT:
            channel.basic_nack(delivery_tag=delivery_tag, requeue=False)
        else:
            channel.basic_nack(delivery_tag=delivery_tag, requeue=True)
