# src/tests/conftest.py
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from typing import Any, Dict, List, Optional

# Settings and logging read these at import time.
os.environ.setdefault("RACKY_DATA_DIR", tempfile.mkdtemp(prefix="racky-tests-"))
os.environ["RACKY_LOGGING_ENABLED"] = "false"

import pytest
from sqla_wrapper import SQLAlchemy

from racky.db.db import create_all, create_db
from racky.exceptions import BrokerUnavailableError
from racky.jobs.types import JobMessage
from racky.monitoring.management import ManagementApiClient
from racky.queue.consumer import HandlerRegistry
from racky.services import Services, build_services
from racky.settings.models import AppModel
from racky.utils.logging import setup_logger

# Setup logger for tests to ensure custom log levels are available
setup_logger("DEBUG")

# Nothing listens here, so every management call fails fast.
UNREACHABLE_MANAGEMENT_URL = "http://127.0.0.1:1"


class FakePublisher:
    """Records every publish instead of talking to RabbitMQ."""

    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self.fail = False
        self.fail_exchanges: set[str] = set()

    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        priority: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None,
        message_id: Optional[str] = None,
    ) -> None:
        if self.fail or exchange in self.fail_exchanges:
            raise BrokerUnavailableError(f"Broker refused publish to {exchange or 'default'}")
        self.published.append(
            {
                "exchange": exchange,
                "routing_key": routing_key,
                "body": body,
                "priority": priority,
                "headers": headers,
                "message_id": message_id,
            }
        )

    def messages(self, exchange: str | None = None) -> List[Dict[str, Any]]:
        return [p for p in self.published if exchange is None or p["exchange"] == exchange]

    def last_job_message(self) -> JobMessage:
        for entry in reversed(self.published):
            if entry["exchange"] != "racky.dlx":
                return JobMessage.decode(entry["body"])
        raise AssertionError("No job message was published")


@pytest.fixture()
def db(tmp_path) -> Iterator[SQLAlchemy]:
    """File-backed sqlite database with the full schema, one per test."""
    database = create_db(f"sqlite:///{tmp_path / 'racky.db'}")
    create_all(database)
    yield database
    database.engine.dispose()


@pytest.fixture()
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture()
def settings() -> AppModel:
    app_settings = AppModel()
    app_settings.jobs.backoff_factor_ms = 100
    app_settings.jobs.max_backoff_ms = 1000
    return app_settings


@pytest.fixture()
def services(db, publisher, settings) -> Iterator[Services]:
    built = build_services(
        settings,
        db=db,
        publisher=publisher,
        registry=HandlerRegistry(),
        management_client=ManagementApiClient(
            UNREACHABLE_MANAGEMENT_URL, "guest", "guest", "racky", timeout=0.5
        ),
    )
    yield built
    built.close()


@pytest.fixture()
def sync_payload() -> Dict[str, Any]:
    return {"connection_id": "conn-1", "marketplace": "amazon", "estimated_products": 120}


@pytest.fixture()
def batch_payload() -> Dict[str, Any]:
    return {"connection_id": "conn-1", "product_ids": ["p1", "p2", "p3"], "batch_number": 1, "total_batches": 2}
