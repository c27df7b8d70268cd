"""POST /api/v1/quotes -- price a prospective request without storing it."""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_engine, get_principal
from src.api.middleware import limiter
from src.api.schemas import FareOut, RequestCreate
from src.domain.entities import Actor
from src.services.engine import TripEngine

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.post("", response_model=FareOut, summary="Quote a fare")
@limiter.limit("100/minute")
async def quote(
    request: Request,
    body: RequestCreate,
    principal: Actor = Depends(get_principal),
    engine: TripEngine = Depends(get_engine),
):
    fare = await engine.quote(body.to_params(principal.id))
    return FareOut.from_quote(fare, engine.config.currency_symbol)
