"""
Offer endpoints
===============

GET  /api/v1/offers/{id}          -- offer state and deadline
POST /api/v1/offers/{id}/respond  -- accept or decline (caller is the candidate)
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_engine, get_principal
from src.api.middleware import limiter
from src.api.schemas import OfferReply, OfferReplyResponse, OfferResponse, TripRequestResponse
from src.domain.entities import Actor
from src.services.engine import TripEngine

router = APIRouter(prefix="/offers", tags=["offers"])


@router.get("/{offer_id}", response_model=OfferResponse, summary="Get an offer")
@limiter.limit("100/minute")
async def get_offer(
    request: Request,
    offer_id: int,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    return OfferResponse.from_entity(await engine.get_offer(offer_id, principal))


@router.post(
    "/{offer_id}/respond",
    response_model=OfferReplyResponse,
    summary="Accept or decline a dispatch offer",
    responses={410: {"description": "Offer no longer available."}},
)
@limiter.limit("100/minute")
async def respond_to_offer(
    request: Request,
    offer_id: int,
    body: OfferReply,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    await engine.respond_to_offer(offer_id, principal.id, body.accept)
    offer = await engine.get_offer(offer_id)
    trip = await engine.get_request(offer.request_id)
    return OfferReplyResponse(
        offer=OfferResponse.from_entity(offer),
        request=TripRequestResponse.from_entity(trip, engine.config.currency_symbol),
    )
