"""
SQLAlchemy ORM models.

Tables
------
* ``trip_requests``      -- rides and food/grocery/pharmacy orders
* ``promo_codes``        -- operator-managed discount codes
* ``promo_redemptions``  -- one row per (promo, request) consumption
* ``dispatch_offers``    -- time-bounded offers of a request to one candidate
* ``outbox_events``      -- domain events awaiting (re-)publication

Indexes
-------
* **B-Tree** on ``status``, ``requester_id``, ``idempotency_key`` for the
  required read patterns (by id, by requester, by status).
* **Partial unique** index on ``dispatch_offers(request_id) WHERE outcome =
  'pending'``: storage-level backstop for the single-outstanding-offer rule.
* ``trip_requests.version`` is the optimistic-concurrency counter
  (SQLAlchemy ``version_id_col``).
"""

from __future__ import annotations

from datetime import timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.types import TypeDecorator

from .database import Base
from src.domain.entities import (
    DispatchOffer,
    DomainEvent,
    FareQuote,
    Place,
    PromoCode,
    TripRequest,
)
from src.domain.enums import (
    DiscountType,
    EventKind,
    OfferOutcome,
    PromoScope,
    RequestStatus,
    RequestType,
    VehicleClass,
)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


Money = Numeric(10, 2)


class TripRequestModel(Base):
    __tablename__ = "trip_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_type = Column(_enum(RequestType, "request_type"), nullable=False)
    requester_id = Column(String(64), nullable=False)
    vehicle_class = Column(_enum(VehicleClass, "vehicle_class"), nullable=False)
    payment_method = Column(String(32), nullable=False)
    merchant_id = Column(String(64), nullable=True)

    origin_address = Column(String(255), nullable=True)
    origin_lat = Column(Float, nullable=True)
    origin_lng = Column(Float, nullable=True)
    destination_address = Column(String(255), nullable=True)
    destination_lat = Column(Float, nullable=True)
    destination_lng = Column(Float, nullable=True)

    distance_meters = Column(Float, nullable=False, default=0.0)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    surge_multiplier = Column(Numeric(6, 3), nullable=False, default=Decimal("1"))

    status = Column(
        _enum(RequestStatus, "request_status"),
        default=RequestStatus.CREATED,
        nullable=False,
    )
    fulfiller_id = Column(String(64), nullable=True)

    promo_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=True)
    promo_code = Column(String(32), nullable=True)
    fare_base = Column(Money, nullable=False)
    fare_distance = Column(Money, nullable=False)
    fare_time = Column(Money, nullable=False)
    fare_surge = Column(Money, nullable=False)
    fare_discount = Column(Money, nullable=False)
    fare_total = Column(Money, nullable=False)

    idempotency_key = Column(String(64), unique=True, nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancelled_by_role = Column(String(16), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    post_assignment_cancellation = Column(Boolean, default=False, nullable=False)

    dispatch_attempts = Column(Integer, default=0, nullable=False)
    last_dispatch_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())
    confirmed_at = Column(UTCDateTime, nullable=True)
    assigned_at = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_trip_requests_status", "status"),
        Index("idx_trip_requests_requester", "requester_id"),
        Index("idx_trip_requests_idempotency", "idempotency_key"),
    )

    def apply_fare(self, fare: FareQuote) -> None:
        self.fare_base = fare.base
        self.fare_distance = fare.distance_portion
        self.fare_time = fare.time_portion
        self.fare_surge = fare.surge_amount
        self.fare_discount = fare.discount_amount
        self.fare_total = fare.total

    def fare(self) -> FareQuote:
        return FareQuote(
            base=Decimal(self.fare_base),
            distance_portion=Decimal(self.fare_distance),
            time_portion=Decimal(self.fare_time),
            surge_amount=Decimal(self.fare_surge),
            discount_amount=Decimal(self.fare_discount),
            total=Decimal(self.fare_total),
        )

    def to_entity(self) -> TripRequest:
        origin = (
            Place(self.origin_address, self.origin_lat, self.origin_lng)
            if self.origin_address is not None
            else None
        )
        destination = (
            Place(self.destination_address, self.destination_lat, self.destination_lng)
            if self.destination_address is not None
            else None
        )
        return TripRequest(
            id=self.id,
            request_type=RequestType(self.request_type),
            requester_id=self.requester_id,
            vehicle_class=VehicleClass(self.vehicle_class),
            payment_method=self.payment_method,
            status=RequestStatus(self.status),
            fare=self.fare(),
            origin=origin,
            destination=destination,
            merchant_id=self.merchant_id,
            distance_meters=self.distance_meters,
            duration_seconds=self.duration_seconds,
            surge_multiplier=Decimal(self.surge_multiplier),
            promo_code=self.promo_code,
            fulfiller_id=self.fulfiller_id,
            idempotency_key=self.idempotency_key,
            cancelled_by=self.cancelled_by,
            cancellation_reason=self.cancellation_reason,
            post_assignment_cancellation=bool(self.post_assignment_cancellation),
            dispatch_attempts=self.dispatch_attempts or 0,
            version=self.version,
            created_at=self.created_at,
            confirmed_at=self.confirmed_at,
            assigned_at=self.assigned_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            cancelled_at=self.cancelled_at,
        )


class PromoCodeModel(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False)  # normalized upper-case
    title = Column(String(120), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    discount_type = Column(_enum(DiscountType, "discount_type"), nullable=False)
    value = Column(Money, nullable=False)
    scope = Column(_enum(PromoScope, "promo_scope"), default=PromoScope.ALL, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    valid_from = Column(UTCDateTime, nullable=False)
    valid_until = Column(UTCDateTime, nullable=False)
    min_order_value = Column(Money, nullable=True)
    max_discount = Column(Money, nullable=True)
    usage_cap = Column(Integer, nullable=True)
    per_user_cap = Column(Integer, nullable=True)
    new_user_only = Column(Boolean, default=False, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())

    def to_entity(self) -> PromoCode:
        return PromoCode(
            id=self.id,
            code=self.code,
            title=self.title or "",
            description=self.description or "",
            discount_type=DiscountType(self.discount_type),
            value=Decimal(self.value),
            scope=PromoScope(self.scope),
            is_active=bool(self.is_active),
            valid_from=self.valid_from,
            valid_until=self.valid_until,
            min_order_value=(
                Decimal(self.min_order_value) if self.min_order_value is not None else None
            ),
            max_discount=(
                Decimal(self.max_discount) if self.max_discount is not None else None
            ),
            usage_cap=self.usage_cap,
            per_user_cap=self.per_user_cap,
            new_user_only=bool(self.new_user_only),
            usage_count=self.usage_count or 0,
        )


class PromoRedemptionModel(Base):
    __tablename__ = "promo_redemptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    promo_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("trip_requests.id"), nullable=False)
    requester_id = Column(String(64), nullable=False)
    redeemed_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("promo_id", "request_id", name="uq_promo_redemption"),
        Index("idx_promo_redemptions_user", "promo_id", "requester_id"),
    )


class DispatchOfferModel(Base):
    __tablename__ = "dispatch_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("trip_requests.id"), nullable=False)
    candidate_id = Column(String(64), nullable=False)
    offered_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    outcome = Column(
        _enum(OfferOutcome, "offer_outcome"),
        default=OfferOutcome.PENDING,
        nullable=False,
    )
    responded_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_dispatch_offers_request", "request_id"),
        Index(
            "uq_dispatch_offers_one_pending",
            "request_id",
            unique=True,
            postgresql_where=text("outcome = 'pending'"),
            sqlite_where=text("outcome = 'pending'"),
        ),
    )

    def to_entity(self) -> DispatchOffer:
        return DispatchOffer(
            id=self.id,
            request_id=self.request_id,
            candidate_id=self.candidate_id,
            offered_at=self.offered_at,
            expires_at=self.expires_at,
            outcome=OfferOutcome(self.outcome),
            responded_at=self.responded_at,
        )


class OutboxEventModel(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, nullable=False)
    kind = Column(String(40), nullable=False)
    dedup_key = Column(String(120), nullable=False)
    payload = Column(JSON, nullable=False)
    occurred_at = Column(UTCDateTime, nullable=False)
    published_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_outbox_unpublished", "published_at", "occurred_at"),
        Index("idx_outbox_request", "request_id"),
    )

    def to_event(self) -> DomainEvent:
        return DomainEvent(
            kind=EventKind(self.kind),
            request_id=self.request_id,
            occurred_at=self.occurred_at,
            payload=dict(self.payload),
        )
