"""
Request endpoints
=================

POST   /api/v1/requests                  -- create a ride or order
GET    /api/v1/requests                  -- list by requester (default: caller) or status
GET    /api/v1/requests/{id}             -- current status, fare and milestones
GET    /api/v1/requests/{id}/offers      -- dispatch offers made so far
GET    /api/v1/requests/{id}/events      -- lifecycle / dispatch events
POST   /api/v1/requests/{id}/promo       -- apply a promo code (``created`` only)
DELETE /api/v1/requests/{id}/promo       -- remove the applied promo
POST   /api/v1/requests/{id}/confirm     -- confirm and start dispatch
POST   /api/v1/requests/{id}/cancel      -- cancel (any non-terminal status)
POST   /api/v1/requests/{id}/status      -- advance a fulfillment status
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from src.api.dependencies import get_engine, get_principal
from src.api.middleware import limiter
from src.api.schemas import (
    CancelBody,
    EventResponse,
    OfferResponse,
    PromoApply,
    RequestCreate,
    StatusBody,
    TripRequestResponse,
)
from src.domain.entities import Actor
from src.domain.enums import ActorRole, RequestStatus
from src.services.engine import TripEngine

router = APIRouter(prefix="/requests", tags=["requests"])


def _out(engine: TripEngine, trip) -> TripRequestResponse:
    return TripRequestResponse.from_entity(trip, engine.config.currency_symbol)


@router.post(
    "",
    status_code=201,
    response_model=TripRequestResponse,
    summary="Create a ride or order request",
)
@limiter.limit("100/minute")
async def create_request(
    request: Request,
    body: RequestCreate,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    trip = await engine.create_request(
        body.to_params(principal.id), idempotency_key=body.idempotency_key
    )
    return _out(engine, trip)


@router.get("", response_model=list[TripRequestResponse], summary="List requests")
@limiter.limit("100/minute")
async def list_requests(
    request: Request,
    status: Optional[RequestStatus] = None,
    requester_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    if principal.role is ActorRole.REQUESTER or (requester_id is None and status is None):
        requester_id = principal.id
    trips = await engine.list_requests(requester_id, status, limit)
    return [_out(engine, t) for t in trips]


@router.get(
    "/{request_id}",
    response_model=TripRequestResponse,
    summary="Get request status and fare",
)
@limiter.limit("100/minute")
async def get_request(
    request: Request,
    request_id: int,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    return _out(engine, await engine.get_request(request_id, principal))


@router.get(
    "/{request_id}/offers",
    response_model=list[OfferResponse],
    summary="Dispatch offers made for a request",
)
@limiter.limit("100/minute")
async def list_offers(
    request: Request,
    request_id: int,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    offers = await engine.list_offers(request_id, principal)
    return [OfferResponse.from_entity(o) for o in offers]


@router.get(
    "/{request_id}/events",
    response_model=list[EventResponse],
    summary="Lifecycle and dispatch events of a request",
)
@limiter.limit("100/minute")
async def list_events(
    request: Request,
    request_id: int,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    events = await engine.list_events(request_id, principal)
    return [EventResponse.from_event(e) for e in events]


@router.post(
    "/{request_id}/promo",
    response_model=TripRequestResponse,
    summary="Apply a promo code",
)
@limiter.limit("100/minute")
async def apply_promo(
    request: Request,
    request_id: int,
    body: PromoApply,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    return _out(engine, await engine.apply_promo(request_id, body.code, principal))


@router.delete(
    "/{request_id}/promo",
    response_model=TripRequestResponse,
    summary="Remove the applied promo code",
)
@limiter.limit("100/minute")
async def remove_promo(
    request: Request,
    request_id: int,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    return _out(engine, await engine.remove_promo(request_id, principal))


@router.post(
    "/{request_id}/confirm",
    response_model=TripRequestResponse,
    summary="Confirm a request and start dispatch",
)
@limiter.limit("100/minute")
async def confirm_request(
    request: Request,
    request_id: int,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    return _out(engine, await engine.confirm_request(request_id, principal))


@router.post(
    "/{request_id}/cancel",
    response_model=TripRequestResponse,
    summary="Cancel a request",
    description=(
        "Any non-terminal request can be cancelled.  An outstanding dispatch "
        "offer is expired in the same step."
    ),
)
@limiter.limit("100/minute")
async def cancel_request(
    request: Request,
    request_id: int,
    body: Optional[CancelBody] = None,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    reason = body.reason if body else None
    return _out(engine, await engine.cancel_request(request_id, principal, reason))


@router.post(
    "/{request_id}/status",
    response_model=TripRequestResponse,
    summary="Advance a fulfillment status",
)
@limiter.limit("100/minute")
async def advance_status(
    request: Request,
    request_id: int,
    body: StatusBody,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    return _out(engine, await engine.advance_status(request_id, body.status, principal))
