"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.domain.entities import (
    DispatchOffer,
    DomainEvent,
    FareQuote,
    Place,
    PromoCode,
    RequestParams,
    TripRequest,
)
from src.domain.enums import (
    DiscountType,
    OfferOutcome,
    PromoScope,
    RequestStatus,
    RequestType,
    VehicleClass,
)
from src.domain.pricing import format_amount


# ── Requests ──────────────────────────────────────────────────────────


class PlaceIn(BaseModel):
    address: str = Field(..., min_length=1, max_length=255)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    def to_place(self) -> Place:
        return Place(self.address, self.latitude, self.longitude)


class RequestCreate(BaseModel):
    request_type: RequestType = RequestType.RIDE
    vehicle_class: VehicleClass = VehicleClass.CAR
    payment_method: str = Field("cash", min_length=1, max_length=32)
    origin: Optional[PlaceIn] = None
    destination: Optional[PlaceIn] = None
    merchant_id: Optional[str] = Field(None, max_length=64)
    distance_meters: Optional[float] = Field(None, ge=0)
    duration_seconds: Optional[float] = Field(None, ge=0)
    surge_multiplier: Optional[float] = None
    promo_code: Optional[str] = Field(None, max_length=32)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID so a retried submit creates one request.",
    )

    def to_params(self, requester_id: str) -> RequestParams:
        return RequestParams(
            request_type=self.request_type,
            requester_id=requester_id,
            vehicle_class=self.vehicle_class,
            payment_method=self.payment_method,
            origin=self.origin.to_place() if self.origin else None,
            destination=self.destination.to_place() if self.destination else None,
            merchant_id=self.merchant_id,
            distance_meters=self.distance_meters,
            duration_seconds=self.duration_seconds,
            surge_multiplier=self.surge_multiplier,
            promo_code=self.promo_code,
        )


class PromoApply(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class CancelBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class StatusBody(BaseModel):
    status: RequestStatus


class OfferReply(BaseModel):
    accept: bool


class PromoCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    title: str = ""
    description: str = ""
    discount_type: DiscountType
    value: Decimal = Field(..., ge=0)
    scope: PromoScope = PromoScope.ALL
    is_active: bool = True
    valid_from: datetime
    valid_until: datetime
    min_order_value: Optional[Decimal] = Field(None, ge=0)
    max_discount: Optional[Decimal] = Field(None, ge=0)
    usage_cap: Optional[int] = Field(None, ge=1)
    per_user_cap: Optional[int] = Field(None, ge=1)
    new_user_only: bool = False

    def to_promo(self) -> PromoCode:
        return PromoCode(**self.model_dump())


# ── Responses ─────────────────────────────────────────────────────────


class FareOut(BaseModel):
    base: Decimal
    distance_portion: Decimal
    time_portion: Decimal
    surge_amount: Decimal
    discount_amount: Decimal
    total: Decimal
    display_total: str

    @classmethod
    def from_quote(cls, fare: FareQuote, currency_symbol: str = "₱") -> "FareOut":
        return cls(
            base=fare.base,
            distance_portion=fare.distance_portion,
            time_portion=fare.time_portion,
            surge_amount=fare.surge_amount,
            discount_amount=fare.discount_amount,
            total=fare.total,
            display_total=format_amount(fare.total, currency_symbol),
        )


class PlaceOut(BaseModel):
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    model_config = {"from_attributes": True}


class TripRequestResponse(BaseModel):
    id: int
    request_type: RequestType
    requester_id: str
    vehicle_class: VehicleClass
    payment_method: str
    status: RequestStatus
    fare: FareOut
    origin: Optional[PlaceOut] = None
    destination: Optional[PlaceOut] = None
    merchant_id: Optional[str] = None
    distance_meters: float
    duration_seconds: float
    surge_multiplier: Decimal
    promo_code: Optional[str] = None
    fulfiller_id: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    post_assignment_cancellation: bool = False
    dispatch_attempts: int = 0
    version: int
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_entity(
        cls, request: TripRequest, currency_symbol: str = "₱"
    ) -> "TripRequestResponse":
        data = {
            name: getattr(request, name)
            for name in cls.model_fields
            if name not in ("fare", "origin", "destination")
        }
        return cls(
            **data,
            fare=FareOut.from_quote(request.fare, currency_symbol),
            origin=PlaceOut.model_validate(request.origin) if request.origin else None,
            destination=(
                PlaceOut.model_validate(request.destination)
                if request.destination
                else None
            ),
        )


class OfferResponse(BaseModel):
    id: int
    request_id: int
    candidate_id: str
    offered_at: datetime
    expires_at: datetime
    outcome: OfferOutcome
    responded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_entity(cls, offer: DispatchOffer) -> "OfferResponse":
        return cls.model_validate(offer)


class OfferReplyResponse(BaseModel):
    offer: OfferResponse
    request: TripRequestResponse


class EventResponse(BaseModel):
    kind: str
    request_id: int
    occurred_at: datetime
    dedup_key: str
    payload: dict[str, Any]

    @classmethod
    def from_event(cls, event: DomainEvent) -> "EventResponse":
        return cls(**event.as_dict())


class PromoResponse(BaseModel):
    id: int
    code: str
    title: str
    description: str
    discount_type: DiscountType
    value: Decimal
    scope: PromoScope
    is_active: bool
    valid_from: datetime
    valid_until: datetime
    min_order_value: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    usage_cap: Optional[int] = None
    per_user_cap: Optional[int] = None
    new_user_only: bool
    usage_count: int

    model_config = {"from_attributes": True}

    @classmethod
    def from_entity(cls, promo: PromoCode) -> "PromoResponse":
        return cls.model_validate(promo)


class HealthResponse(BaseModel):
    status: str = "ok"
    requests_by_status: dict[str, int] = {}


class DispatchCycleResponse(BaseModel):
    dispatch_started: int
    events_republished: int


class ErrorResponse(BaseModel):
    detail: str
    code: str
    kind: Optional[str] = None
