"""
RabbitMQ client used by producers, workers and the DLQ publisher.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import pika
from loguru import logger
from pika.adapters.blocking_connection import BlockingChannel

from racky.exceptions import BrokerUnavailableError
from racky.queue.topology import QueueSpec, declare_topology


def _augment_amqp_url(url: str) -> str:
    """Add sane heartbeat/timeouts to AMQP URL if missing."""
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    query.setdefault("heartbeat", ["30"])  # seconds
    query.setdefault("blocked_connection_timeout", ["300"])  # seconds
    query.setdefault("socket_timeout", ["10"])  # seconds
    query.setdefault("connection_attempts", ["3"])  # total attempts per connect
    query.setdefault("retry_delay", ["2"])  # seconds between attempts
    return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))


def connection_parameters(url: str) -> pika.URLParameters:
    params = pika.URLParameters(_augment_amqp_url(url))
    if not params.heartbeat:
        params.heartbeat = 30
    if not params.blocked_connection_timeout:
        params.blocked_connection_timeout = 300
    return params


class BrokerClient:
    """
    Publishing connection to RabbitMQ.

    pika's BlockingConnection is not thread-safe, so every channel operation
    goes through ``self._lock``. Publisher confirms are enabled: a publish only
    returns once the broker has taken responsibility for the message.
    """

    def __init__(
        self,
        url: str,
        *,
        specs: Dict[str, QueueSpec] | None = None,
        declare: bool = True,
        publish_retries: int = 1,
    ):
        self.url = url
        self.specs = specs
        self.declare = declare
        self.publish_retries = publish_retries
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[BlockingChannel] = None
        self._declared = False
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return bool(self._connection and self._connection.is_open and self._channel and self._channel.is_open)

    def _open_channel(self) -> BlockingChannel:
        if self.is_open:
            return self._channel
        self._reset()
        self._connection = pika.BlockingConnection(connection_parameters(self.url))
        channel = self._connection.channel()
        channel.confirm_delivery()
        if self.declare and not self._declared:
            declare_topology(channel, self.specs)
            self._declared = True
        self._channel = channel
        logger.log("QUEUE", "Connected to RabbitMQ broker")
        return channel

    def _reset(self) -> None:
        connection, self._connection, self._channel = self._connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except pika.exceptions.AMQPError as e:
                logger.debug(f"Ignoring error while closing broker connection: {e}")

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
        """
        Publish a persistent JSON message.

        Raises:
            BrokerUnavailableError: The connection could not be opened or the
                broker did not confirm the message.
        """
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
            priority=priority,
            headers=headers,
            message_id=message_id,
            timestamp=int(time.time()),
        )
        last_error: Exception | None = None
        with self._lock:
            for attempt in range(1, self.publish_retries + 2):
                try:
                    channel = self._open_channel()
                    channel.basic_publish(
                        exchange=exchange,
                        routing_key=routing_key,
                        body=body,
                        properties=properties,
                        mandatory=True,
                    )
                    return
                except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as e:
                    raise BrokerUnavailableError(
                        f"Broker rejected message for {exchange}/{routing_key}: {e}"
                    ) from e
                except (pika.exceptions.AMQPError, OSError) as e:
                    last_error = e
                    logger.warning(
                        f"Publish attempt {attempt} to {exchange}/{routing_key} failed: {e}"
                    )
                    self._reset()
        raise BrokerUnavailableError(f"Broker unavailable: {last_error}") from last_error

    def test_connection(self) -> bool:
        """Open and close a throwaway connection without declaring anything."""
        try:
            connection = pika.BlockingConnection(connection_parameters(self.url))
            connection.close()
            logger.log("QUEUE", "Successfully connected to RabbitMQ broker")
            return True
        except (pika.exceptions.AMQPError, OSError) as e:
            logger.error(f"Failed to connect to RabbitMQ broker: {e}")
            return False

    def close(self) -> None:
        with self._lock:
            self._reset()
