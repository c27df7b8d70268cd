"""
Domain entities and value objects.

Patterns used
-------------
- ``TripRequest`` is a read-only snapshot handed to callers; status changes
  go through ``src.services.lifecycle`` only.
- ``DispatchOffer.is_expired`` judges lateness against the stored deadline,
  never against whether a timer fired.
- ``DomainEvent.dedup_key`` is what downstream consumers deduplicate on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from .enums import (
    ActorRole,
    DiscountType,
    EventKind,
    OfferOutcome,
    PromoScope,
    RequestStatus,
    RequestType,
    VehicleClass,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Place:
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(id="dispatch", role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class FareQuote:
    base: Decimal
    distance_portion: Decimal
    time_portion: Decimal
    surge_amount: Decimal
    discount_amount: Decimal
    total: Decimal

    @property
    def subtotal(self) -> Decimal:
        """Pre-discount amount."""
        return self.base + self.distance_portion + self.time_portion + self.surge_amount


@dataclass(frozen=True)
class DiscountDescriptor:
    promo_id: int
    code: str
    discount_type: DiscountType
    value: Decimal
    max_discount: Optional[Decimal] = None


@dataclass(frozen=True)
class RequestParams:
    """Everything ``CreateRequest`` needs; no ambient session state."""

    request_type: RequestType
    requester_id: str
    vehicle_class: VehicleClass
    payment_method: str
    origin: Optional[Place] = None
    destination: Optional[Place] = None
    merchant_id: Optional[str] = None
    distance_meters: Optional[float] = None
    duration_seconds: Optional[float] = None
    surge_multiplier: Optional[float] = None
    promo_code: Optional[str] = None


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class PromoCode:
    code: str
    discount_type: DiscountType
    value: Decimal
    valid_from: datetime
    valid_until: datetime
    scope: PromoScope = PromoScope.ALL
    id: Optional[int] = None
    title: str = ""
    description: str = ""
    is_active: bool = True
    min_order_value: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    usage_cap: Optional[int] = None
    per_user_cap: Optional[int] = None
    new_user_only: bool = False
    usage_count: int = 0

    def effective_per_user_cap(self, new_user_default: int = 1) -> Optional[int]:
        if self.per_user_cap is not None:
            return self.per_user_cap
        return new_user_default if self.new_user_only else None

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.valid_from <= now < self.valid_until

    def descriptor(self) -> DiscountDescriptor:
        assert self.id is not None
        return DiscountDescriptor(
            promo_id=self.id,
            code=self.code,
            discount_type=self.discount_type,
            value=self.value,
            max_discount=self.max_discount,
        )


@dataclass
class DispatchOffer:
    id: int
    request_id: int
    candidate_id: str
    offered_at: datetime
    expires_at: datetime
    outcome: OfferOutcome = OfferOutcome.PENDING
    responded_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_pending(self) -> bool:
        return self.outcome is OfferOutcome.PENDING


@dataclass
class TripRequest:
    id: int
    request_type: RequestType
    requester_id: str
    vehicle_class: VehicleClass
    payment_method: str
    status: RequestStatus
    fare: FareQuote
    origin: Optional[Place] = None
    destination: Optional[Place] = None
    merchant_id: Optional[str] = None
    distance_meters: float = 0.0
    duration_seconds: float = 0.0
    surge_multiplier: Decimal = Decimal("1")
    promo_code: Optional[str] = None
    fulfiller_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    post_assignment_cancellation: bool = False
    dispatch_attempts: int = 0
    version: int = 1
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True)
class DomainEvent:
    kind: EventKind
    request_id: int
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        if self.kind is EventKind.REQUEST_TRANSITION:
            return f"{self.request_id}:{self.payload['to_status']}"
        if self.kind in (EventKind.OFFER_CREATED, EventKind.OFFER_RESOLVED):
            return f"offer:{self.payload['offer_id']}:{self.payload['outcome']}"
        return f"{self.kind.value}:{self.request_id}:{self.occurred_at.isoformat()}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "occurred_at": self.occurred_at.isoformat(),
            "dedup_key": self.dedup_key,
            "payload": self.payload,
        }
