"""
Promo endpoints
===============

POST /api/v1/promos         -- create a promo code (operators)
GET  /api/v1/promos/{code}  -- look a code up (case-insensitive)
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_engine, require_operator
from src.api.middleware import limiter
from src.api.schemas import PromoCreate, PromoResponse
from src.domain.entities import Actor
from src.services.engine import TripEngine

router = APIRouter(prefix="/promos", tags=["promos"])


@router.post("", status_code=201, response_model=PromoResponse, summary="Create a promo code")
@limiter.limit("30/minute")
async def create_promo(
    request: Request,
    body: PromoCreate,
    operator: Actor = Depends(require_operator),
    engine: TripEngine = Depends(get_engine),
):
    return PromoResponse.from_entity(await engine.create_promo(body.to_promo()))


@router.get("/{code}", response_model=PromoResponse, summary="Look up a promo code")
@limiter.limit("100/minute")
async def get_promo(
    request: Request,
    code: str,
    engine: TripEngine = Depends(get_engine),
):
    return PromoResponse.from_entity(await engine.get_promo(code))
