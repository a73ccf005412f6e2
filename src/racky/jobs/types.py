"""
Job types, payload schemas and the broker message for Racky's queue system.

Every job type belongs to one domain, and each domain owns one topic exchange.
Payloads form a tagged union keyed by ``job_type`` so a payload can be
validated at enqueue time and rehydrated with its own schema in the worker.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Final, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from racky.exceptions import ValidationError


class JobDomain(str, Enum):
    """Logical job groupings; one exchange each."""
    SYNC = "sync"
    PRODUCTS = "products"
    AI_OPTIMIZATION = "ai-optimization"


class JobType(str, Enum):
    """Types of jobs that can be processed."""
    MARKETPLACE_SYNC = "marketplace-sync"
    MARKETPLACE_UPDATE = "marketplace-update"
    PRODUCT_BATCH = "product-batch"
    PRODUCT_INDIVIDUAL = "product-individual"
    AI_OPTIMIZATION_SCAN = "ai-optimization-scan"
    AI_DESCRIPTION_BATCH = "ai-description-batch"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def broker_priority(self) -> int:
        return BROKER_PRIORITIES[self]


BROKER_PRIORITIES: Final[Dict[JobPriority, int]] = {
    JobPriority.LOW: 2,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 8,
}

MAX_BROKER_PRIORITY: Final[int] = 10

JOB_DOMAINS: Final[Dict[JobType, JobDomain]] = {
    JobType.MARKETPLACE_SYNC: JobDomain.SYNC,
    JobType.MARKETPLACE_UPDATE: JobDomain.SYNC,
    JobType.PRODUCT_BATCH: JobDomain.PRODUCTS,
    JobType.PRODUCT_INDIVIDUAL: JobDomain.PRODUCTS,
    JobType.AI_OPTIMIZATION_SCAN: JobDomain.AI_OPTIMIZATION,
    JobType.AI_DESCRIPTION_BATCH: JobDomain.AI_OPTIMIZATION,
}

QUEUE_NAMES: Final[Dict[JobType, str]] = {
    JobType.MARKETPLACE_SYNC: "sync.marketplace",
    JobType.MARKETPLACE_UPDATE: "sync.updates",
    JobType.PRODUCT_BATCH: "products.batch",
    JobType.PRODUCT_INDIVIDUAL: "products.individual",
    JobType.AI_OPTIMIZATION_SCAN: "ai-optimization.scan",
    JobType.AI_DESCRIPTION_BATCH: "ai-optimization.batch",
}


def domain_for(job_type: JobType) -> JobDomain:
    return JOB_DOMAINS[job_type]


def queue_for(job_type: JobType) -> str:
    return QUEUE_NAMES[job_type]


def routing_key_for(job_type: JobType, priority: JobPriority) -> str:
    """``<domain>.<job-type>.<priority>``"""
    return f"{domain_for(job_type).value}.{job_type.value}.{priority.value}"


# Payload schemas


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class MarketplaceSyncPayload(_Payload):
    job_type: Literal["marketplace-sync"] = "marketplace-sync"
    connection_id: str = Field(min_length=1)
    marketplace: str = Field(min_length=1)
    estimated_products: int = Field(default=0, ge=0)
    batch_size: int = Field(default=50, ge=1, le=500)
    full_sync: bool = True


class MarketplaceUpdatePayload(_Payload):
    job_type: Literal["marketplace-update"] = "marketplace-update"
    connection_id: str = Field(min_length=1)
    marketplace: str = Field(min_length=1)
    product_ids: List[str] = Field(min_length=1)
    fields: Dict[str, Any] = Field(default_factory=dict)


class ProductBatchPayload(_Payload):
    job_type: Literal["product-batch"] = "product-batch"
    connection_id: str = Field(min_length=1)
    product_ids: List[str] = Field(min_length=1, max_length=500)
    batch_number: int = Field(default=1, ge=1)
    total_batches: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def check_batch_position(self):
        if self.batch_number > self.total_batches:
            raise ValueError("batch_number cannot exceed total_batches")
        return self


class ProductIndividualPayload(_Payload):
    job_type: Literal["product-individual"] = "product-individual"
    connection_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)


class ScanFilters(_Payload):
    marketplace: Optional[str] = None
    min_description_length: Optional[int] = Field(default=None, ge=0)
    max_description_length: Optional[int] = Field(default=None, ge=0)
    created_after: Optional[datetime] = None

    @model_validator(mode="after")
    def check_lengths(self):
        low, high = self.min_description_length, self.max_description_length
        if low is not None and high is not None and low > high:
            raise ValueError("min_description_length cannot exceed max_description_length")
        return self


class AIOptimizationScanPayload(_Payload):
    job_type: Literal["ai-optimization-scan"] = "ai-optimization-scan"
    filters: ScanFilters = Field(default_factory=ScanFilters)
    batch_size: int = Field(default=50, ge=1, le=500)


class AIDescriptionBatchPayload(_Payload):
    job_type: Literal["ai-description-batch"] = "ai-description-batch"
    product_ids: List[str] = Field(min_length=1, max_length=100)
    marketplace: Optional[str] = None
    language: str = Field(default="en", min_length=2, max_length=5)


JobPayload = Annotated[
    Union[
        MarketplaceSyncPayload,
        MarketplaceUpdatePayload,
        ProductBatchPayload,
        ProductIndividualPayload,
        AIOptimizationScanPayload,
        AIDescriptionBatchPayload,
    ],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_type(value: str | JobType) -> JobType:
    try:
        return JobType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in JobType)
        raise ValidationError(
            f"Invalid job type '{value}'. Allowed: {allowed}",
            errors=[{"field": "job_type", "message": "unknown job type"}],
        ) from None


def validate_payload(job_type: JobType, payload: Dict[str, Any]) -> JobPayload:
    """Validate a raw payload against the schema registered for ``job_type``."""
    if not isinstance(payload, dict):
        raise ValidationError(
            "Payload must be an object",
            errors=[{"field": "payload", "message": "must be an object"}],
        )
    declared = payload.get("job_type")
    if declared is not None and declared != job_type.value:
        raise ValidationError(
            f"Payload job_type '{declared}' does not match '{job_type.value}'",
            errors=[{"field": "job_type", "message": "does not match"}],
        )
    try:
        return _payload_adapter.validate_python({**payload, "job_type": job_type.value})
    except PydanticValidationError as e:
        errors = [
            {
                "field": ".".join(str(x) for x in err["loc"][1:]) or "payload",
                "message": err.get("msg"),
            }
            for err in e.errors()
        ]
        summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
        raise ValidationError(f"Invalid {job_type.value} payload: {summary}", errors=errors) from None


def dump_payload(payload: JobPayload) -> Dict[str, Any]:
    return payload.model_dump(mode="json", exclude={"job_type"})


@dataclass
class JobMessage:
    """
    Body of every message published to a domain exchange.

    The message is only a delivery notification: the job row is authoritative
    and the consumer always re-reads it before doing any work.
    """
    job_id: str
    job_type: JobType
    workspace_id: str
    priority: JobPriority = JobPriority.NORMAL
    attempt: int = 0
    created_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["job_type"] = self.job_type.value
        data["priority"] = self.priority.value
        return data

    def encode(self) -> bytes:
        return json.dumps(self.to_dict(), default=str).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobMessage":
        data = dict(data)
        data["job_type"] = JobType(data["job_type"])
        data["priority"] = JobPriority(data.get("priority", JobPriority.NORMAL.value))
        return cls(**data)

    @classmethod
    def decode(cls, body: bytes) -> "JobMessage":
        """Raises ``ValueError``/``KeyError``/``TypeError`` on malformed bodies."""
        data = json.loads(body.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("Message body must be a JSON object")
        return cls.from_dict(data)

    @property
    def log_message(self) -> str:
        return f"Job {self.job_type.value} {self.job_id} (workspace {self.workspace_id})"
