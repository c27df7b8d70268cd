"""
Shared test fixtures.

Uses a per-test SQLite file database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The same ORM models are used as in
production; ``SELECT ... FOR UPDATE`` compiles to a plain SELECT on SQLite
and the in-process lock manager provides the per-request serialization.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.api.app import create_app
from src.api.middleware import limiter
from src.config import Settings
from src.domain.entities import Actor, DomainEvent, Place, PromoCode, RequestParams
from src.domain.enums import ActorRole, DiscountType, PromoScope, RequestType, VehicleClass
from src.infrastructure.candidates import StaticCandidateDirectory
from src.infrastructure.database import Base, build_engine, build_session_factory
from src.infrastructure.event_sink import EventSink
from src.infrastructure.locks import LocalLockManager
from src.services.engine import TripEngine

START = datetime(2026, 3, 4, 2, 0, tzinfo=timezone.utc)  # a Wednesday, 10:00 in Manila

CANDIDATES = {
    "ride:motorcycle": ["drv-1", "drv-2", "drv-3"],
    "ride:car": ["drv-car-1"],
    "food:motorcycle": ["drv-4", "drv-5"],
}

RIDER = Actor(id="rider-1", role=ActorRole.REQUESTER)
OPERATOR = Actor(id="ops-1", role=ActorRole.OPERATOR)


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSink(EventSink):
    def __init__(self):
        self.events: list[DomainEvent] = []
        self.fail = False

    async def publish(self, event: DomainEvent) -> None:
        if self.fail:
            raise ConnectionError("sink down")
        self.events.append(event)

    def kinds(self, request_id: int) -> list[str]:
        return [e.kind.value for e in self.events if e.request_id == request_id]

    def statuses(self, request_id: int) -> list[str]:
        return [
            e.payload["to_status"]
            for e in self.events
            if e.request_id == request_id and e.kind.value == "request.transition"
        ]


def ride_params(**overrides) -> RequestParams:
    """2.5 km / 10 min motorcycle ride; base fare 40 + 20 + 10 = 70."""
    values = dict(
        request_type=RequestType.RIDE,
        requester_id=RIDER.id,
        vehicle_class=VehicleClass.MOTORCYCLE,
        payment_method="cash",
        origin=Place("SM Megamall", 14.5849, 121.0563),
        destination=Place("BGC High Street", 14.5509, 121.0503),
        distance_meters=2500,
        duration_seconds=600,
        surge_multiplier=1.0,
    )
    values.update(overrides)
    return RequestParams(**values)


def food_params(**overrides) -> RequestParams:
    values = dict(
        request_type=RequestType.FOOD,
        requester_id=RIDER.id,
        vehicle_class=VehicleClass.MOTORCYCLE,
        payment_method="gcash",
        merchant_id="jollibee-ortigas",
        origin=Place("Jollibee Ortigas"),
        destination=Place("Unit 12B, The Residences"),
        distance_meters=3000,
        duration_seconds=900,
        surge_multiplier=1.0,
    )
    values.update(overrides)
    return RequestParams(**values)


def promo(code: str, clock: FakeClock, **overrides) -> PromoCode:
    values = dict(
        code=code,
        discount_type=DiscountType.PERCENTAGE,
        value=Decimal("10"),
        valid_from=clock() - timedelta(days=1),
        valid_until=clock() + timedelta(days=30),
        scope=PromoScope.ALL,
    )
    values.update(overrides)
    return PromoCode(**values)


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an async predicate until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


async def pending_offer(engine: TripEngine, request_id: int, timeout: float = 3.0):
    async def _find():
        offers = await engine.list_offers(request_id)
        return next((o for o in offers if o.outcome.value == "pending"), None)

    return await wait_for(_find, timeout)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        offer_window_seconds=30,
        offer_poll_seconds=0.05,
        dispatch_retry_seconds=60,
        dispatch_worker_enabled=False,
        surge_schedule_enabled=False,
        lock_wait_seconds=5,
        static_candidates=CANDIDATES,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create tables in a fresh SQLite file, yield a session factory, dispose."""
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(db_engine)
    await db_engine.dispose()


@pytest_asyncio.fixture
async def engine(session_factory, sink, clock, test_settings) -> AsyncGenerator[TripEngine, None]:
    trip_engine = TripEngine(
        session_factory,
        LocalLockManager(test_settings.lock_wait_seconds),
        sink,
        StaticCandidateDirectory(test_settings.static_candidates),
        config=test_settings,
        clock=clock,
    )
    yield trip_engine
    await trip_engine.shutdown()


@pytest_asyncio.fixture
async def client(engine) -> AsyncGenerator[AsyncClient, None]:
    limiter.reset()
    app = create_app(engine=engine, start_worker=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
