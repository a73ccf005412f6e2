"""
AMQP topology for Racky jobs.

One durable topic exchange per domain, one durable priority queue per job
type bound with ``<domain>.<job-type>.*``, a set of consumer-less retry queues
per job queue (one per delay tier, each with a queue-level TTL) that
dead-letter expired messages back into it, and a shared dead-letter
exchange/queue for terminal failures.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Final, List, Tuple

from loguru import logger

from racky.jobs.types import (
    JOB_DOMAINS,
    MAX_BROKER_PRIORITY,
    QUEUE_NAMES,
    JobDomain,
    JobType,
)

DLX_NAME: Final[str] = "racky.dlx"
DLQ_NAME: Final[str] = "racky.failed"
DLQ_ROUTING_KEY: Final[str] = "failed"

DEFAULT_PREFETCH: Final[Dict[str, int]] = {
    JobDomain.SYNC.value: 1,
    JobDomain.PRODUCTS.value: 3,
    JobDomain.AI_OPTIMIZATION.value: 2,
}

# Every message in a tier queue waits the same time, so expiry order is
# arrival order.
RETRY_TIERS_MS: Final[Tuple[int, ...]] = (1_000, 5_000, 15_000, 30_000, 60_000, 120_000, 300_000)


def exchange_name(domain: JobDomain) -> str:
    return f"racky.{domain.value}.exchange"


def retry_tier_ms(delay_ms: int) -> int:
    """Smallest delay tier that is not shorter than ``delay_ms``."""
    for tier in RETRY_TIERS_MS:
        if delay_ms <= tier:
            return tier
    return RETRY_TIERS_MS[-1]


def retry_queue_name(queue_name: str, tier_ms: int) -> str:
    return f"{queue_name}.retry.{tier_ms}"


def binding_pattern(job_type: JobType) -> str:
    return f"{JOB_DOMAINS[job_type].value}.{job_type.value}.*"


@dataclass
class QueueSpec:
    name: str
    domain: JobDomain
    job_types: List[JobType]
    prefetch: int = 1
    arguments: Dict[str, Any] = field(default_factory=dict)

    @property
    def exchange(self) -> str:
        return exchange_name(self.domain)

    @property
    def retry_queues(self) -> Dict[int, str]:
        return {tier: retry_queue_name(self.name, tier) for tier in RETRY_TIERS_MS}

    @property
    def bindings(self) -> List[str]:
        return [binding_pattern(jt) for jt in self.job_types]


def build_queue_specs(prefetch: Dict[str, int] | None = None) -> Dict[str, QueueSpec]:
    """Return every job queue keyed by name, with its per-domain prefetch."""
    prefetch = {**DEFAULT_PREFETCH, **(prefetch or {})}
    specs: Dict[str, QueueSpec] = {}
    for job_type, queue_name in QUEUE_NAMES.items():
        domain = JOB_DOMAINS[job_type]
        spec = specs.get(queue_name)
        if spec is None:
            spec = QueueSpec(
                name=queue_name,
                domain=domain,
                job_types=[],
                prefetch=max(1, int(prefetch.get(domain.value, 1))),
                arguments={
                    "x-dead-letter-exchange": DLX_NAME,
                    "x-dead-letter-routing-key": DLQ_ROUTING_KEY,
                    "x-max-priority": MAX_BROKER_PRIORITY,
                },
            )
            specs[queue_name] = spec
        spec.job_types.append(job_type)
    return specs


def all_queue_names() -> List[str]:
    return sorted(set(QUEUE_NAMES.values()))


def declare_topology(channel, specs: Dict[str, QueueSpec] | None = None) -> Dict[str, QueueSpec]:
    """
    Idempotently declare exchanges, queues and bindings on an open pika channel.

    Redeclaring with identical arguments is a no-op on the broker; a mismatch
    closes the channel with PRECONDITION_FAILED, which is left to the caller.
    """
    specs = specs or build_queue_specs()

    channel.exchange_declare(exchange=DLX_NAME, exchange_type="direct", durable=True)
    channel.queue_declare(queue=DLQ_NAME, durable=True)
    channel.queue_bind(exchange=DLX_NAME, queue=DLQ_NAME, routing_key=DLQ_ROUTING_KEY)

    for domain in JobDomain:
        channel.exchange_declare(
            exchange=exchange_name(domain), exchange_type="topic", durable=True
        )

    for spec in specs.values():
        channel.queue_declare(queue=spec.name, durable=True, arguments=spec.arguments)
        for pattern in spec.bindings:
            channel.queue_bind(exchange=spec.exchange, queue=spec.name, routing_key=pattern)

        # No consumers: messages wait out the tier TTL, then dead-letter through
        # the default exchange straight back into the work queue.
        for tier, retry_queue in spec.retry_queues.items():
            channel.queue_declare(
                queue=retry_queue,
                durable=True,
                arguments={
                    "x-message-ttl": tier,
                    "x-dead-letter-exchange": "",
                    "x-dead-letter-routing-key": spec.name,
                },
            )

    logger.log("QUEUE", f"AMQP topology declared: {len(specs)} queues across {len(JobDomain)} exchanges")
    return specs
