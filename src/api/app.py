"""
FastAPI application factory.

* Registers routes for requests, offers, quotes, promos and admin.
* Builds the ``TripEngine`` and starts / stops the background dispatch
  worker via lifespan events.
* Maps engine errors to JSON responses and applies rate limiting.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.errors import register_error_handlers
from src.api.middleware import limiter
from src.api.routes import admin, offers, promos, quotes, requests
from src.config import settings
from src.infrastructure.database import async_session_factory
from src.infrastructure.redis_client import close_redis
from src.services.engine import TripEngine, create_trip_engine
from src.workers import dispatcher as _dispatcher

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine and start the dispatch worker; stop both on shutdown."""
    if getattr(app.state, "engine", None) is None:
        app.state.engine = await create_trip_engine(async_session_factory)
    engine: TripEngine = app.state.engine
    if app.state.start_worker:
        await _dispatcher.start_dispatch_loop(engine)
    yield
    if app.state.start_worker:
        await _dispatcher.stop_dispatch_loop()
    await engine.shutdown()
    await close_redis()


def create_app(
    engine: Optional[TripEngine] = None, start_worker: Optional[bool] = None
) -> FastAPI:
    app = FastAPI(
        title="Trip Lifecycle & Dispatch API",
        description=(
            "Rides and food/grocery/pharmacy orders from quote to completion: "
            "fare and promo pricing, the status lifecycle, and one-at-a-time "
            "driver dispatch with timed offers."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.start_worker = (
        settings.dispatch_worker_enabled if start_worker is None else start_worker
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_error_handlers(app)

    # Routers
    for module in (requests, offers, quotes, promos, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app
