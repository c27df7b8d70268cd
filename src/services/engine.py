"""
TripEngine: the service boundary.

Every public operation takes explicit parameters (no ambient session or UI
state) and either returns a fresh ``TripRequest`` snapshot or raises an
``EngineError``.  Mutations go through ``LifecycleService.request_scope``
so they are serialized per request and roll back as a whole.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import Settings, settings as default_settings
from src.domain.distance import estimate_route
from src.domain.entities import (
    Actor,
    DispatchOffer,
    DomainEvent,
    FareQuote,
    PromoCode,
    RequestParams,
    TripRequest,
    utcnow,
)
from src.domain.enums import (
    ActorRole,
    OfferOutcome,
    RequestStatus,
    RequestType,
    VehicleClass,
)
from src.domain.errors import InvalidTransition, NotFound, Unavailable, ValidationError
from src.domain.pricing import PricingEngine, SurgeSchedule
from src.domain.promos import normalize_code
from src.infrastructure.candidates import (
    CandidateDirectory,
    RedisCandidateDirectory,
    StaticCandidateDirectory,
)
from src.infrastructure.event_sink import (
    EventPublisher,
    EventSink,
    LoggingEventSink,
    RedisStreamEventSink,
)
from src.infrastructure.locks import LocalLockManager, LockManager, RedisLockManager
from src.infrastructure.models import TripRequestModel
from src.infrastructure.redis_client import get_redis
from src.infrastructure.repositories import (
    DispatchOfferRepository,
    OutboxRepository,
    PromoRepository,
    TripRequestRepository,
)
from src.services.dispatch import DispatchCoordinator, offer_event
from src.services.lifecycle import LifecycleService, storage_errors, transition_event
from src.services.promotions import PromoValidator

logger = logging.getLogger(__name__)


class TripEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        sink: EventSink,
        candidates: CandidateDirectory,
        pricing: Optional[PricingEngine] = None,
        surge_schedule: Optional[SurgeSchedule] = None,
        config: Settings = default_settings,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.config = config
        self.clock = clock
        self.pricing = pricing or PricingEngine.from_overrides(
            config.vehicle_rates, config.max_surge_multiplier
        )
        self.surge_schedule = surge_schedule or SurgeSchedule(
            peak_hours=config.peak_hours,
            peak_multiplier=config.peak_multiplier,
            weekend_multiplier=config.weekend_multiplier,
            timezone=config.surge_timezone,
            max_surge=config.max_surge_multiplier,
            enabled=config.surge_schedule_enabled,
        )
        self.publisher = EventPublisher(session_factory, sink, clock)
        self.lifecycle = LifecycleService(session_factory, locks, self.publisher, clock)
        self.promos = PromoValidator(config.currency_symbol, config.new_user_promo_cap)
        self.dispatch = DispatchCoordinator(
            self.lifecycle,
            candidates,
            offer_window_seconds=config.offer_window_seconds,
            poll_seconds=config.offer_poll_seconds,
        )

    # ── Quoting ───────────────────────────────────────────────────────

    def _route(self, params: RequestParams) -> tuple[float, float]:
        distance, duration = params.distance_meters, params.duration_seconds
        if distance is not None and duration is not None:
            return distance, duration
        origin, destination = params.origin, params.destination
        if not (origin and destination and origin.has_coordinates and destination.has_coordinates):
            raise ValidationError(
                "distance_meters and duration_seconds are required "
                "unless both places have coordinates"
            )
        est_distance, est_duration = estimate_route(
            origin.latitude,
            origin.longitude,
            destination.latitude,
            destination.longitude,
            road_factor=self.config.road_distance_factor,
            average_speed_kmh=self.config.average_speed_kmh,
        )
        return (
            distance if distance is not None else est_distance,
            duration if duration is not None else est_duration,
        )

    def _surge(self, params: RequestParams, now) -> Decimal:
        if params.surge_multiplier is not None:
            return self.pricing.check_surge(params.surge_multiplier)
        return self.surge_schedule.multiplier_at(now)

    @staticmethod
    def _check_params(params: RequestParams) -> None:
        if not params.requester_id:
            raise ValidationError("requester_id is required")
        if not params.payment_method:
            raise ValidationError("payment_method is required")
        if params.destination is None:
            raise ValidationError("A destination or delivery address is required")
        if params.request_type is RequestType.RIDE and params.origin is None:
            raise ValidationError("A pickup location is required for rides")

    async def quote(self, params: RequestParams) -> FareQuote:
        """Price a prospective request without storing anything."""
        now = self.clock()
        distance, duration = self._route(params)
        surge = self._surge(params, now)
        promo = None
        if params.promo_code:
            subtotal = self.pricing.subtotal(distance, duration, params.vehicle_class, surge)
            async with self.session_factory() as session, storage_errors():
                promo = await self.promos.validate(
                    session, params.promo_code, subtotal,
                    params.request_type, params.requester_id, now,
                )
        return self.pricing.quote(distance, duration, params.vehicle_class, surge, promo)

    # ── Requests ──────────────────────────────────────────────────────

    async def create_request(
        self, params: RequestParams, idempotency_key: Optional[str] = None
    ) -> TripRequest:
        self._check_params(params)
        if not idempotency_key:
            return await self._create(params, None)
        async with self.locks.hold(f"create:{idempotency_key}"):
            existing = await self._by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info("Replayed create for idempotency key %s", idempotency_key)
                return existing
            return await self._create(params, idempotency_key)

    async def _by_idempotency_key(self, key: str) -> Optional[TripRequest]:
        async with self.session_factory() as session:
            async with storage_errors():
                model = await TripRequestRepository(session).get_by_idempotency_key(key)
        return model.to_entity() if model else None

    async def _create(
        self, params: RequestParams, idempotency_key: Optional[str]
    ) -> TripRequest:
        now = self.clock()
        distance, duration = self._route(params)
        surge = self._surge(params, now)
        origin, destination = params.origin, params.destination

        async with self.session_factory() as session:
            async with storage_errors():
                promo = None
                if params.promo_code:
                    subtotal = self.pricing.subtotal(
                        distance, duration, params.vehicle_class, surge
                    )
                    promo = await self.promos.validate(
                        session, params.promo_code, subtotal,
                        params.request_type, params.requester_id, now,
                    )
                fare = self.pricing.quote(
                    distance, duration, params.vehicle_class, surge, promo
                )
                model = TripRequestModel(
                    request_type=params.request_type,
                    requester_id=params.requester_id,
                    vehicle_class=params.vehicle_class,
                    payment_method=params.payment_method,
                    merchant_id=params.merchant_id,
                    origin_address=origin.address if origin else None,
                    origin_lat=origin.latitude if origin else None,
                    origin_lng=origin.longitude if origin else None,
                    destination_address=destination.address if destination else None,
                    destination_lat=destination.latitude if destination else None,
                    destination_lng=destination.longitude if destination else None,
                    distance_meters=distance,
                    duration_seconds=duration,
                    surge_multiplier=surge,
                    status=RequestStatus.CREATED,
                    promo_id=promo.promo_id if promo else None,
                    promo_code=promo.code if promo else None,
                    idempotency_key=idempotency_key,
                    dispatch_attempts=0,
                    created_at=now,
                )
                model.apply_fare(fare)
                try:
                    await TripRequestRepository(session).create(model)
                    rows = [
                        OutboxRepository(session).add(
                            transition_event(
                                model.id,
                                None,
                                RequestStatus.CREATED,
                                Actor(params.requester_id, ActorRole.REQUESTER),
                                now,
                            )
                        )
                    ]
                    await session.commit()
                except IntegrityError as exc:
                    # another process won the race for this idempotency key
                    await session.rollback()
                    existing = (
                        await self._by_idempotency_key(idempotency_key)
                        if idempotency_key
                        else None
                    )
                    if existing is None:
                        raise Unavailable("Could not store the request") from exc
                    return existing

        await self.publisher.publish(rows)
        request = model.to_entity()
        logger.info(
            "Created %s request %s for %s (total %s)",
            request.request_type.value, request.id, request.requester_id, request.fare.total,
        )
        return request

    @staticmethod
    def _check_party(request: Union[TripRequestModel, TripRequest], actor: Actor) -> None:
        """Requesters and fulfillers may only touch their own requests."""
        if actor.role is ActorRole.REQUESTER and actor.id != request.requester_id:
            raise NotFound(f"Request {request.id} not found")
        if actor.role is ActorRole.FULFILLER and actor.id != request.fulfiller_id:
            raise NotFound(f"Request {request.id} not found")

    @staticmethod
    def _require_created(request: TripRequestModel) -> None:
        if RequestStatus(request.status) is not RequestStatus.CREATED:
            raise ValidationError(
                "Promo codes can only be changed before the request is confirmed"
            )

    async def apply_promo(
        self, request_id: int, code: str, actor: Optional[Actor] = None
    ) -> TripRequest:
        async with self.lifecycle.request_scope(request_id) as scope:
            request = scope.request
            if actor is not None:
                self._check_party(request, actor)
            self._require_created(request)
            vehicle_class = VehicleClass(request.vehicle_class)
            subtotal = self.pricing.subtotal(
                request.distance_meters, request.duration_seconds,
                vehicle_class, request.surge_multiplier,
            )
            promo = await self.promos.validate(
                scope.session, code, subtotal,
                RequestType(request.request_type), request.requester_id, self.clock(),
            )
            request.apply_fare(
                self.pricing.quote(
                    request.distance_meters, request.duration_seconds,
                    vehicle_class, request.surge_multiplier, promo,
                )
            )
            request.promo_id = promo.promo_id
            request.promo_code = promo.code
        logger.info("Promo %s applied to request %s", promo.code, request_id)
        return scope.request.to_entity()

    async def remove_promo(
        self, request_id: int, actor: Optional[Actor] = None
    ) -> TripRequest:
        async with self.lifecycle.request_scope(request_id) as scope:
            request = scope.request
            if actor is not None:
                self._check_party(request, actor)
            self._require_created(request)
            if request.promo_id is not None:
                request.apply_fare(
                    self.pricing.quote(
                        request.distance_meters, request.duration_seconds,
                        VehicleClass(request.vehicle_class), request.surge_multiplier,
                    )
                )
                logger.info("Promo %s removed from request %s", request.promo_code, request_id)
                request.promo_id = None
                request.promo_code = None
        return scope.request.to_entity()

    async def confirm_request(self, request_id: int, actor: Actor) -> TripRequest:
        """``created -> confirmed``, consume the promo, then start dispatch."""
        async with self.lifecycle.request_scope(request_id) as scope:
            request = scope.request
            self._check_party(request, actor)
            await self.lifecycle.apply(scope, RequestStatus.CONFIRMED, actor)
            if request.promo_id is not None:
                await self.promos.consume(
                    scope.session, request.promo_id, request.id,
                    request.requester_id, self.clock(),
                )
        self.dispatch.start(request_id)
        return scope.request.to_entity()

    async def respond_to_offer(
        self, offer_id: int, candidate_id: str, accept: bool
    ) -> bool:
        return await self.dispatch.respond(offer_id, candidate_id, accept)

    async def cancel_request(
        self, request_id: int, actor: Actor, reason: Optional[str] = None
    ) -> TripRequest:
        """Cancel and expire any outstanding offer in the same unit of work."""
        async with self.lifecycle.request_scope(request_id) as scope:
            self._check_party(scope.request, actor)
            await self.lifecycle.apply(scope, RequestStatus.CANCELLED, actor, reason)
            now = self.clock()
            expired = await DispatchOfferRepository(scope.session).expire_pending(
                request_id, now
            )
            for offer in expired:
                scope.record(
                    offer_event(
                        offer.to_entity(), OfferOutcome.EXPIRED, now, reason="request_cancelled"
                    )
                )
        self.dispatch.cancel(request_id)
        for offer in expired:
            self.dispatch.notify(offer.id)
        return scope.request.to_entity()

    async def advance_status(
        self, request_id: int, target: RequestStatus, actor: Actor
    ) -> TripRequest:
        if target is RequestStatus.CANCELLED:
            return await self.cancel_request(request_id, actor)
        async with self.lifecycle.request_scope(request_id) as scope:
            self._check_party(scope.request, actor)
            if target is RequestStatus.ASSIGNED:
                raise InvalidTransition(
                    RequestStatus(scope.request.status),
                    target,
                    "Requests are assigned only by accepting a dispatch offer",
                )
            await self.lifecycle.apply(scope, target, actor)
        return scope.request.to_entity()

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_request(
        self, request_id: int, actor: Optional[Actor] = None
    ) -> TripRequest:
        request = await self.lifecycle.get(request_id)
        if actor is not None:
            self._check_party(request, actor)
        return request

    async def list_requests(
        self,
        requester_id: Optional[str] = None,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
    ) -> list[TripRequest]:
        if requester_id is None and status is None:
            raise ValidationError("Filter by requester_id or status")
        async with self.session_factory() as session:
            async with storage_errors():
                repo = TripRequestRepository(session)
                if requester_id is not None:
                    models = await repo.list_by_requester(requester_id, status, limit)
                else:
                    models = await repo.list_by_status(status, limit)
        return [m.to_entity() for m in models]

    async def list_offers(
        self, request_id: int, actor: Optional[Actor] = None
    ) -> list[DispatchOffer]:
        async with self.session_factory() as session:
            async with storage_errors():
                request = await TripRequestRepository(session).get_by_id(request_id)
                if request is None:
                    raise NotFound(f"Request {request_id} not found")
                if actor is not None:
                    self._check_party(request, actor)
                models = await DispatchOfferRepository(session).list_for_request(request_id)
        return [m.to_entity() for m in models]

    async def get_offer(
        self, offer_id: int, actor: Optional[Actor] = None
    ) -> DispatchOffer:
        """Candidates see offers made to them; requesters offers on their requests."""
        async with self.session_factory() as session:
            async with storage_errors():
                model = await DispatchOfferRepository(session).get_by_id(offer_id)
                request = (
                    await TripRequestRepository(session).get_by_id(model.request_id)
                    if model is not None and actor is not None
                    else None
                )
        if model is None:
            raise NotFound(f"Offer {offer_id} not found")
        if actor is not None:
            if actor.role is ActorRole.FULFILLER:
                if actor.id != model.candidate_id:
                    raise NotFound(f"Offer {offer_id} not found")
            elif request is not None:
                self._check_party(request, actor)
        return model.to_entity()

    async def list_events(
        self, request_id: int, actor: Optional[Actor] = None
    ) -> list[DomainEvent]:
        if actor is not None:
            await self.get_request(request_id, actor)
        async with self.session_factory() as session:
            async with storage_errors():
                rows = await OutboxRepository(session).list_for_request(request_id)
        return [row.to_event() for row in rows]

    async def status_counts(self) -> dict[str, int]:
        async with self.session_factory() as session:
            async with storage_errors():
                repo = TripRequestRepository(session)
                return {
                    status.value: await repo.count_by_status(status)
                    for status in RequestStatus
                }

    # ── Promo administration ──────────────────────────────────────────

    async def create_promo(self, promo: PromoCode) -> PromoCode:
        async with self.session_factory() as session:
            async with storage_errors():
                created = await self.promos.create(session, promo)
                await session.commit()
        logger.info("Promo %s created", created.code)
        return created

    async def get_promo(self, code: str) -> PromoCode:
        async with self.session_factory() as session:
            async with storage_errors():
                model = await PromoRepository(session).get_by_code(code)
        if model is None:
            raise NotFound(f"Promo code {normalize_code(code)} not found")
        return model.to_entity()

    # ── Background dispatch ───────────────────────────────────────────

    async def dispatch_pending(self, limit: int = 100) -> int:
        """Start dispatch for confirmed requests whose retry backoff has elapsed."""
        retry_before = self.clock() - timedelta(seconds=self.config.dispatch_retry_seconds)
        async with self.session_factory() as session:
            async with storage_errors():
                waiting = await TripRequestRepository(session).awaiting_dispatch(
                    retry_before, limit
                )
        started = 0
        for model in waiting:
            if not self.dispatch.is_running(model.id):
                self.dispatch.start(model.id)
                started += 1
        return started

    async def shutdown(self) -> None:
        await self.dispatch.shutdown()


async def create_trip_engine(
    session_factory: async_sessionmaker[AsyncSession],
    config: Settings = default_settings,
) -> TripEngine:
    """Wire a ``TripEngine`` from settings: lock, sink and candidate backends."""
    redis_client = None
    if "redis" in (config.lock_backend, config.event_sink, config.candidate_directory):
        redis_client = await get_redis(config.redis_url)

    if config.lock_backend == "redis":
        locks = RedisLockManager(
            redis_client, config.lock_ttl_seconds, config.lock_wait_seconds
        )
    else:
        locks = LocalLockManager(config.lock_wait_seconds)

    if config.event_sink == "redis":
        sink = RedisStreamEventSink(redis_client, config.event_stream)
    else:
        sink = LoggingEventSink()

    if config.candidate_directory == "redis":
        candidates = RedisCandidateDirectory(
            redis_client, config.candidate_key_prefix, config.candidate_limit
        )
    else:
        candidates = StaticCandidateDirectory(config.static_candidates)

    logger.info(
        "Trip engine: locks=%s sink=%s candidates=%s",
        config.lock_backend, config.event_sink, config.candidate_directory,
    )
    return TripEngine(session_factory, locks, sink, candidates, config=config)
