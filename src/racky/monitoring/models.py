from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy
from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from racky.db.db import Base
from racky.utils import utcnow


class QueueHealth(Base):
    """Periodic per-queue snapshot written by the health monitor."""

    __tablename__ = "queuehealths"

    id: Mapped[int] = mapped_column(sqlalchemy.Integer, primary_key=True)
    queue_name: Mapped[str] = mapped_column(sqlalchemy.String(64), nullable=False)
    messages: Mapped[int] = mapped_column(sqlalchemy.Integer, default=0)
    consumers: Mapped[int] = mapped_column(sqlalchemy.Integer, default=0)
    message_rate: Mapped[float] = mapped_column(sqlalchemy.Float, default=0.0)
    consume_rate: Mapped[float] = mapped_column(sqlalchemy.Float, default=0.0)
    memory: Mapped[int] = mapped_column(sqlalchemy.BigInteger, default=0)
    is_running: Mapped[bool] = mapped_column(sqlalchemy.Boolean, default=False)
    is_healthy: Mapped[bool] = mapped_column(sqlalchemy.Boolean, default=False)
    issues: Mapped[List[str]] = mapped_column(sqlalchemy.JSON, default=list)
    timestamp: Mapped[datetime] = mapped_column(sqlalchemy.DateTime, default=utcnow)

    __table_args__ = (Index("ix_queuehealths_queue_timestamp", "queue_name", "timestamp"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_name": self.queue_name,
            "messages": self.messages,
            "consumers": self.consumers,
            "message_rate": self.message_rate,
            "consume_rate": self.consume_rate,
            "memory": self.memory,
            "is_running": self.is_running,
            "is_healthy": self.is_healthy,
            "issues": self.issues or [],
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class QueueStats:
    """Live queue numbers from the management API."""
    queue_name: str
    messages: int = 0
    messages_ready: int = 0
    messages_unacknowledged: int = 0
    consumers: int = 0
    message_rate: float = 0.0
    consume_rate: float = 0.0
    memory: int = 0
    is_running: bool = False
    error: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "QueueStats":
        message_stats = data.get("message_stats") or {}
        publish = message_stats.get("publish_details") or {}
        deliver = (
            message_stats.get("deliver_get_details")
            or message_stats.get("deliver_details")
            or {}
        )
        return cls(
            queue_name=data.get("name", ""),
            messages=int(data.get("messages") or 0),
            messages_ready=int(data.get("messages_ready") or 0),
            messages_unacknowledged=int(data.get("messages_unacknowledged") or 0),
            consumers=int(data.get("consumers") or 0),
            message_rate=float(publish.get("rate") or 0.0),
            consume_rate=float(deliver.get("rate") or 0.0),
            memory=int(data.get("memory") or 0),
            # Idle classic queues report "idle"; only crashed/stopped ones are down.
            is_running=data.get("state", "running") in ("running", "idle"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BrokerHealth:
    version: str = "unknown"
    uptime: int = 0
    total_queues: int = 0
    total_connections: int = 0
    memory_used: int = 0
    disk_free: int = 0
    is_healthy: bool = False
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HealthAlert:
    type: str  # info, warning, error
    service: str
    message: str
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    queue: Optional[str] = None
    job_type: Optional[str] = None
    action: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
