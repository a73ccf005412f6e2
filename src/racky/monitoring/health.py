"""
Health monitoring for RabbitMQ queues and the job pipeline.

The monitor polls the broker's management API on its own timer, persists a
snapshot per queue and raises alerts from queue and job statistics. It only
reads job state. Management API failures degrade to zeroed stats with
``is_running``/``is_healthy`` false and are never propagated to the caller.
"""

import asyncio
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from sqla_wrapper import SQLAlchemy
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from racky.db.db import db_session, ping
from racky.exceptions import ManagementAPIError
from racky.monitoring.management import ManagementApiClient
from racky.monitoring.metrics import JobMetricsService
from racky.monitoring.models import BrokerHealth, HealthAlert, QueueHealth, QueueStats
from racky.queue.topology import DLQ_NAME, all_queue_names
from racky.settings.models import MonitoringModel
from racky.utils import utcnow


def _run(coro):
    """Run a coroutine from synchronous code on a private event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class QueueHealthMonitor:
    """Monitors the health of RabbitMQ and the job queues"""

    def __init__(
        self,
        client: ManagementApiClient,
        db: SQLAlchemy,
        settings: MonitoringModel,
        metrics: Optional[JobMetricsService] = None,
        queues: Optional[List[str]] = None,
    ):
        self.client = client
        self.db = db
        self.settings = settings
        self.metrics = metrics
        self.queues = queues or all_queue_names()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_alerts: List[HealthAlert] = []

    # Live broker state

    async def get_queue_stats_async(self, queue_name: str) -> QueueStats:
        try:
            return QueueStats.from_api(await self.client.queue(queue_name))
        except ManagementAPIError as e:
            logger.log("MONITOR", f"Queue stats unavailable for {queue_name}: {e}")
            return QueueStats(queue_name=queue_name, is_running=False, error=str(e))

    async def get_all_queue_stats_async(self) -> List[QueueStats]:
        names = [*self.queues, DLQ_NAME]
        return list(await asyncio.gather(*(self.get_queue_stats_async(n) for n in names)))

    async def get_overall_health_async(self) -> BrokerHealth:
        overview, nodes = await asyncio.gather(
            self.client.overview(), self.client.nodes(), return_exceptions=True
        )
        for result in (overview, nodes):
            if isinstance(result, ManagementAPIError):
                logger.log("MONITOR", f"Broker health unavailable: {result}")
                return BrokerHealth(is_healthy=False, error=str(result))
            if isinstance(result, BaseException):
                raise result

        totals = overview.get("object_totals") or {}
        nodes = nodes or []
        return BrokerHealth(
            version=overview.get("rabbitmq_version", "unknown"),
            uptime=int(nodes[0].get("uptime") or 0) if nodes else 0,
            total_queues=int(totals.get("queues") or 0),
            total_connections=int(totals.get("connections") or 0),
            memory_used=sum(int(n.get("mem_used") or 0) for n in nodes),
            disk_free=min((int(n.get("disk_free") or 0) for n in nodes), default=0),
            is_healthy=bool(nodes) and all(n.get("running", False) for n in nodes),
            nodes=[{"name": n.get("name"), "running": bool(n.get("running"))} for n in nodes],
        )

    async def get_connection_stats_async(self) -> Dict[str, Any]:
        try:
            connections = await self.client.connections()
        except ManagementAPIError as e:
            logger.log("MONITOR", f"Connection stats unavailable: {e}")
            return {"total": 0, "by_state": {}, "connections": [], "error": str(e)}

        by_state: Dict[str, int] = {}
        for conn in connections:
            state = conn.get("state", "unknown")
            by_state[state] = by_state.get(state, 0) + 1
        return {
            "total": len(connections),
            "by_state": by_state,
            "connections": [
                {
                    "name": c.get("name"),
                    "user": c.get("user"),
                    "state": c.get("state"),
                    "channels": int(c.get("channels") or 0),
                }
                for c in connections
            ],
        }

    async def get_channel_stats_async(self) -> Dict[str, Any]:
        try:
            channels = await self.client.channels()
        except ManagementAPIError as e:
            logger.log("MONITOR", f"Channel stats unavailable: {e}")
            return {"total": 0, "consumers": 0, "unacknowledged": 0, "channels": [], "error": str(e)}

        return {
            "total": len(channels),
            "consumers": sum(int(c.get("consumer_count") or 0) for c in channels),
            "unacknowledged": sum(int(c.get("messages_unacknowledged") or 0) for c in channels),
            "channels": [
                {
                    "name": c.get("name"),
                    "consumers": int(c.get("consumer_count") or 0),
                    "prefetch": int(c.get("prefetch_count") or 0),
                    "unacknowledged": int(c.get("messages_unacknowledged") or 0),
                }
                for c in channels
            ],
        }

    async def is_management_api_accessible_async(self) -> bool:
        try:
            await self.client.overview()
            return True
        except ManagementAPIError:
            return False

    def get_queue_stats(self, queue_name: str) -> QueueStats:
        return _run(self.get_queue_stats_async(queue_name))

    def get_all_queue_stats(self) -> List[QueueStats]:
        return _run(self.get_all_queue_stats_async())

    def get_overall_health(self) -> BrokerHealth:
        """Node overview; ``is_healthy`` is True only when every node is running."""
        return _run(self.get_overall_health_async())

    def get_connection_stats(self) -> Dict[str, Any]:
        return _run(self.get_connection_stats_async())

    def get_channel_stats(self) -> Dict[str, Any]:
        return _run(self.get_channel_stats_async())

    def is_management_api_accessible(self) -> bool:
        return _run(self.is_management_api_accessible_async())

    # Snapshots and alerts

    def queue_issues(self, stats: QueueStats) -> List[str]:
        issues: List[str] = []
        if not stats.is_running:
            issues.append("Queue not running")
        if stats.messages > self.settings.max_queue_backlog:
            issues.append(f"High backlog: {stats.messages} messages")
        if stats.consumers == 0 and stats.messages > 0 and stats.queue_name != DLQ_NAME:
            issues.append("No active consumers")
        return issues

    def take_snapshot(self, stats: Optional[List[QueueStats]] = None) -> List[QueueHealth]:
        """Persist one QueueHealth row per queue. Returns an empty list if the store is down."""
        if stats is None:
            stats = self.get_all_queue_stats()
        now = utcnow()
        rows = []
        for s in stats:
            issues = self.queue_issues(s)
            rows.append(
                QueueHealth(
                    queue_name=s.queue_name,
                    messages=s.messages,
                    consumers=s.consumers,
                    message_rate=s.message_rate,
                    consume_rate=s.consume_rate,
                    memory=s.memory,
                    is_running=s.is_running,
                    is_healthy=not issues,
                    issues=issues,
                    timestamp=now,
                )
            )
        try:
            with db_session(self.db) as session:
                session.add_all(rows)
                session.commit()
                for row in rows:
                    session.refresh(row)
                    session.expunge(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist queue health snapshot: {e}")
            return []

        unhealthy = [r.queue_name for r in rows if not r.is_healthy]
        if unhealthy:
            logger.log("MONITOR", f"Unhealthy queues: {', '.join(unhealthy)}")
        return rows

    def generate_alerts(
        self,
        stats: Optional[List[QueueStats]] = None,
        performance: Optional[List[Dict[str, Any]]] = None,
    ) -> List[HealthAlert]:
        alerts: List[HealthAlert] = []
        s = self.settings

        for q in stats if stats is not None else self.get_all_queue_stats():
            if not q.is_running:
                alerts.append(
                    HealthAlert(
                        type="error",
                        service="rabbitmq",
                        message=f"Queue {q.queue_name} is not running",
                        queue=q.queue_name,
                        action="Check broker connectivity and queue declarations",
                    )
                )
                continue
            if q.messages > s.max_queue_backlog:
                alerts.append(
                    HealthAlert(
                        type="warning",
                        service="rabbitmq",
                        message=f"High backlog in {q.queue_name}",
                        threshold=s.max_queue_backlog,
                        current_value=q.messages,
                        queue=q.queue_name,
                        action="Scale up workers for this queue",
                    )
                )
            if q.consumers == 0 and q.messages > 0 and q.queue_name != DLQ_NAME:
                alerts.append(
                    HealthAlert(
                        type="error",
                        service="rabbitmq",
                        message=f"No consumers on {q.queue_name} with {q.messages} pending",
                        current_value=q.messages,
                        queue=q.queue_name,
                        action="Start workers for this queue",
                    )
                )

        if performance is None and self.metrics is not None:
            try:
                performance = self.metrics.get_performance_stats("1h")
            except SQLAlchemyError as e:
                logger.error(f"Job performance stats unavailable: {e}")
                performance = []

        for p in performance or []:
            if p["failure_rate"] > s.max_failure_rate:
                alerts.append(
                    HealthAlert(
                        type="error",
                        service="jobs",
                        message=f"High failure rate for {p['job_type']}",
                        threshold=s.max_failure_rate,
                        current_value=p["failure_rate"],
                        job_type=p["job_type"],
                        action="Inspect the error analysis for this job type",
                    )
                )
            if p["avg_processing_time"] > s.max_processing_time_ms:
                alerts.append(
                    HealthAlert(
                        type="warning",
                        service="jobs",
                        message=f"Slow processing for {p['job_type']}",
                        threshold=s.max_processing_time_ms,
                        current_value=p["avg_processing_time"],
                        job_type=p["job_type"],
                    )
                )
            finished = p["completed"] + p["failed"]
            if 0 < finished < s.min_throughput_per_hour and p["queued"] > finished:
                alerts.append(
                    HealthAlert(
                        type="info",
                        service="jobs",
                        message=f"Low throughput for {p['job_type']}",
                        threshold=s.min_throughput_per_hour,
                        current_value=finished,
                        job_type=p["job_type"],
                    )
                )

        for alert in alerts:
            level = {"error": "ERROR", "warning": "WARNING"}.get(alert.type, "MONITOR")
            logger.log(level, f"[{alert.service}] {alert.message}")
        self.last_alerts = alerts
        return alerts

    def get_system_health(self) -> Dict[str, Any]:
        broker = self.get_overall_health()
        database = ping(self.db)
        stats = self.get_all_queue_stats() if broker.is_healthy else []
        alerts = self.generate_alerts(stats=stats)

        errors = [a for a in alerts if a.type == "error"]
        if not broker.is_healthy or not database:
            overall = "unhealthy"
        elif errors or any(a.type == "warning" for a in alerts):
            overall = "degraded"
        else:
            overall = "healthy"

        escalate = not broker.is_healthy or len(errors) >= 3
        if escalate:
            logger.critical(
                f"Job pipeline needs operator attention: broker healthy={broker.is_healthy}, "
                f"{len(errors)} error alerts"
            )

        return {
            "overall": overall,
            "broker": broker.to_dict(),
            "database": {"is_healthy": database},
            "queues": [q.to_dict() for q in stats],
            "alerts": [a.to_dict() for a in alerts],
            "escalate": escalate,
            "timestamp": utcnow().isoformat(),
        }

    # Snapshot history

    def get_latest_health(self, queue_name: str) -> Optional[QueueHealth]:
        try:
            with db_session(self.db) as session:
                row = session.execute(
                    select(QueueHealth)
                    .where(QueueHealth.queue_name == queue_name)
                    .order_by(QueueHealth.timestamp.desc(), QueueHealth.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
                if row:
                    session.expunge(row)
                return row
        except SQLAlchemyError as e:
            logger.error(f"Failed to read latest health of {queue_name}: {e}")
            return None

    def get_health_trend(self, queue_name: str, hours: int = 24) -> List[QueueHealth]:
        since = utcnow() - timedelta(hours=hours)
        try:
            with db_session(self.db) as session:
                rows = list(
                    session.execute(
                        select(QueueHealth)
                        .where(QueueHealth.queue_name == queue_name, QueueHealth.timestamp >= since)
                        .order_by(QueueHealth.timestamp.asc())
                    ).scalars().all()
                )
                for row in rows:
                    session.expunge(row)
                return rows
        except SQLAlchemyError as e:
            logger.error(f"Failed to read health trend of {queue_name}: {e}")
            return []

    def get_unhealthy_queues(self) -> List[QueueHealth]:
        """Latest snapshot of every queue whose most recent check was unhealthy."""
        latest = (
            select(QueueHealth.queue_name, func.max(QueueHealth.timestamp).label("ts"))
            .group_by(QueueHealth.queue_name)
            .subquery()
        )
        try:
            with db_session(self.db) as session:
                rows = list(
                    session.execute(
                        select(QueueHealth)
                        .join(
                            latest,
                            (QueueHealth.queue_name == latest.c.queue_name)
                            & (QueueHealth.timestamp == latest.c.ts),
                        )
                        .where(QueueHealth.is_healthy.is_(False))
                        .order_by(QueueHealth.queue_name)
                    ).scalars().all()
                )
                for row in rows:
                    session.expunge(row)
                return rows
        except SQLAlchemyError as e:
            logger.error(f"Failed to read unhealthy queues: {e}")
            return []

    def purge_snapshots(self) -> int:
        cutoff = utcnow() - timedelta(days=self.settings.snapshot_ttl_days)
        try:
            with db_session(self.db) as session:
                deleted = session.execute(delete(QueueHealth).where(QueueHealth.timestamp < cutoff)).rowcount
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to purge queue health snapshots: {e}")
            return 0
        return deleted

    # Timer

    def run_once(self) -> None:
        stats = self.get_all_queue_stats()
        self.take_snapshot(stats)
        self.generate_alerts(stats=stats)

    def _loop(self) -> None:
        while not self._stop.wait(self.settings.interval):
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Queue health check failed: {e}")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="racky-monitor", daemon=True)
        self._thread.start()
        logger.log("MONITOR", f"Queue health monitor started (every {self.settings.interval}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
