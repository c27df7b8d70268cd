"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/health    -- health check with request counts per status
POST /api/v1/admin/dispatch  -- run one dispatch-worker cycle now
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_engine, require_operator
from src.api.middleware import limiter
from src.api.schemas import DispatchCycleResponse, HealthResponse
from src.domain.entities import Actor
from src.services.engine import TripEngine
from src.workers.dispatcher import run_dispatch_cycle

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(engine: TripEngine = Depends(get_engine)):
    return HealthResponse(requests_by_status=await engine.status_counts())


@router.post(
    "/dispatch",
    response_model=DispatchCycleResponse,
    summary="Retry dispatch for waiting requests and re-publish stuck events",
)
@limiter.limit("10/minute")
async def trigger_dispatch(
    request: Request,
    operator: Actor = Depends(require_operator),
    engine: TripEngine = Depends(get_engine),
):
    started, relayed = await run_dispatch_cycle(engine)
    return DispatchCycleResponse(dispatch_started=started, events_republished=relayed)
