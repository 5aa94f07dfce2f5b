"""
Data models for storage layer.

Defines the tenant financials, credit reservations, generation jobs and
scenario records persisted by the core.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

SANDBOX_PREFIX = "sandbox-"
RESERVATION_AMOUNT = 1


class PlanTier(Enum):
    """Commercial plan of a store."""
    MICRO = "micro"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingStatus(Enum):
    """Billing state of a store; frozen stores cannot start new work."""
    ACTIVE = "active"
    FROZEN = "frozen"


class ReservationStatus(Enum):
    """Reservation lifecycle. Only reserved -> confirmed|cancelled is allowed."""
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class JobStatus(Enum):
    """Generation job lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


@dataclass(frozen=True)
class StoreFinancials:
    """Per-tenant credit balance record.

    ``credits_balance`` and ``overdraft_limit`` are ``None`` when billing has
    not been configured for the store yet.
    """
    store_id: str
    credits_balance: Optional[int]
    overdraft_limit: Optional[int]
    plan_tier: PlanTier = PlanTier.MICRO
    billing_status: BillingStatus = BillingStatus.ACTIVE
    sandbox_mode: bool = False

    def __post_init__(self):
        """Validate overdraft is never negative."""
        if self.overdraft_limit is not None and self.overdraft_limit < 0:
            raise ValueError("overdraft_limit must be >= 0")

    @property
    def is_configured(self) -> bool:
        """True when both financial fields are present."""
        return self.credits_balance is not None and self.overdraft_limit is not None

    @property
    def available_balance(self) -> int:
        """Credits that can still be spent, overdraft included."""
        return (self.credits_balance or 0) + (self.overdraft_limit or 0)


@dataclass(frozen=True)
class Reservation:
    """Provisional, reversible hold of one credit against a store balance."""
    id: str
    store_id: str
    status: ReservationStatus
    amount: int
    created_at: datetime
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_sandbox(self) -> bool:
        return is_sandbox_reservation_id(self.id)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


def is_sandbox_reservation_id(reservation_id: Optional[str]) -> bool:
    """Sandbox reservations never touch the ledger tables."""
    return bool(reservation_id) and reservation_id.startswith(SANDBOX_PREFIX)


@dataclass(frozen=True)
class JobResult:
    """Output of a completed generation job."""
    image_url: str
    composition_id: Optional[str] = None
    scene_image_urls: Tuple[str, ...] = ()
    total_cost: Optional[float] = None
    processing_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase shape used on the wire and in storage."""
        data: Dict[str, Any] = {"imageUrl": self.image_url}
        if self.composition_id is not None:
            data["compositionId"] = self.composition_id
        if self.scene_image_urls:
            data["sceneImageUrls"] = list(self.scene_image_urls)
        if self.total_cost is not None:
            data["totalCost"] = self.total_cost
        if self.processing_time is not None:
            data["processingTime"] = self.processing_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            image_url=data["imageUrl"],
            composition_id=data.get("compositionId"),
            scene_image_urls=tuple(data.get("sceneImageUrls") or ()),
            total_cost=data.get("totalCost"),
            processing_time=data.get("processingTime"),
        )


@dataclass(frozen=True)
class GenerationJob:
    """Snapshot of an asynchronous generation job.

    Invariants: ``retry_count <= max_retries`` and ``result`` is set only
    when ``status`` is COMPLETED.
    """
    id: str
    store_id: str
    status: JobStatus
    reservation_id: str
    person_image_url: str
    product_ids: List[str]
    created_at: datetime
    updated_at: datetime
    options: Dict[str, Any] = field(default_factory=dict)
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    result: Optional[JobResult] = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    credit_committed: bool = False
    api_cost: Optional[float] = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


@dataclass(frozen=True)
class ScenarioRecord:
    """Tagged background scenario used as a generation input."""
    id: str
    image_url: str
    lighting_prompt: str
    category: str
    tags: Tuple[str, ...] = ()
    active: bool = True


@dataclass(frozen=True)
class ProductRecord:
    """Catalog product as seen by scenario matching."""
    id: str
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
