"""
Process-level service wiring.

Every service is built once per process from settings and handed to its
collaborators explicitly. ``register`` exposes them through the kink
container for the route handlers.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from kink import di
from sqla_wrapper import SQLAlchemy

from racky.db.db import create_db
from racky.jobs.store import JobStore
from racky.monitoring.health import QueueHealthMonitor
from racky.monitoring.management import ManagementApiClient
from racky.monitoring.metrics import JobMetricsService
from racky.queue.broker import BrokerClient
from racky.queue.consumer import HandlerRegistry, JobConsumer
from racky.queue.producer import JobProducer, Publisher
from racky.queue.queue_manager import QueueManager
from racky.queue.sweeper import JobSweeper
from racky.queue.topology import build_queue_specs
from racky.settings.models import AppModel


@dataclass
class Services:
    settings: AppModel
    db: SQLAlchemy
    store: JobStore
    publisher: Publisher
    producer: JobProducer
    registry: HandlerRegistry
    consumer: JobConsumer
    queue_manager: QueueManager
    metrics: JobMetricsService
    monitor: QueueHealthMonitor
    sweeper: JobSweeper

    def close(self) -> None:
        self.monitor.stop()
        self.sweeper.stop()
        close = getattr(self.publisher, "close", None)
        if close:
            close()


def build_services(
    settings: AppModel,
    *,
    db: Optional[SQLAlchemy] = None,
    publisher: Optional[Publisher] = None,
    registry: Optional[HandlerRegistry] = None,
    management_client: Optional[ManagementApiClient] = None,
) -> Services:
    db = db or create_db(
        settings.database.host,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
    )
    publisher = publisher or BrokerClient(
        settings.broker.amqp_url, specs=build_queue_specs(settings.broker.prefetch)
    )
    registry = registry or HandlerRegistry()
    management_client = management_client or ManagementApiClient(
        settings.broker.management_url,
        settings.broker.management_user,
        settings.broker.management_password,
        settings.broker.vhost,
        timeout=settings.broker.management_timeout,
    )

    store = JobStore(db)
    producer = JobProducer(store, publisher, default_max_attempts=settings.jobs.default_max_attempts)
    consumer = JobConsumer(
        store,
        registry,
        producer,
        backoff_factor_ms=settings.jobs.backoff_factor_ms,
        max_backoff_ms=settings.jobs.max_backoff_ms,
    )
    metrics = JobMetricsService(db)
    monitor = QueueHealthMonitor(management_client, db, settings.monitoring, metrics=metrics)
    sweeper = JobSweeper(store, producer, settings.jobs, snapshot_purger=monitor.purge_snapshots)

    return Services(
        settings=settings,
        db=db,
        store=store,
        publisher=publisher,
        producer=producer,
        registry=registry,
        consumer=consumer,
        queue_manager=QueueManager(store, producer),
        metrics=metrics,
        monitor=monitor,
        sweeper=sweeper,
    )


def register(services: Services) -> Services:
    di[Services] = services
    di[JobStore] = services.store
    di[QueueManager] = services.queue_manager
    di[JobMetricsService] = services.metrics
    di[QueueHealthMonitor] = services.monitor
    di[HandlerRegistry] = services.registry
    return services
