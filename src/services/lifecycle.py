"""
Lifecycle service: the only writer of a request's status.

Unit of work per mutating call
------------------------------
1. take the per-request lock (``request:<id>``),
2. open a session and load the request (``SELECT ... FOR UPDATE``),
3. let the caller mutate it and record events into the outbox,
4. commit,
5. flush the request's undelivered events while still holding the lock,
   older ones first, so events of one request leave in the order they were
   applied.

Any exception before commit rolls the whole unit back: an illegal
transition never leaves a partial write.  ``StaleDataError`` from the
version column surfaces as ``StaleState``; any other storage failure as
``Unavailable``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from src.domain.entities import Actor, DomainEvent, TripRequest, utcnow
from src.domain.enums import EventKind, RequestStatus, RequestType
from src.domain.errors import NotFound, StaleState, Unavailable
from src.domain.lifecycle import (
    MILESTONE_FIELDS,
    check_transition,
    is_post_assignment_cancel,
    needs_accepted_offer,
)
from src.infrastructure.event_sink import EventPublisher
from src.infrastructure.locks import LockManager
from src.infrastructure.models import OutboxEventModel, TripRequestModel
from src.infrastructure.repositories import (
    DispatchOfferRepository,
    OutboxRepository,
    TripRequestRepository,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def storage_errors() -> AsyncIterator[None]:
    """Translate SQLAlchemy failures into engine errors."""
    try:
        yield
    except StaleDataError as exc:
        raise StaleState(
            "The request was changed by another operation; reload and retry"
        ) from exc
    except SQLAlchemyError as exc:
        logger.exception("Storage failure")
        raise Unavailable("Storage is temporarily unavailable") from exc


def request_key(request_id: int) -> str:
    return f"request:{request_id}"


@dataclass
class RequestScope:
    session: AsyncSession
    request: TripRequestModel
    outbox: list[OutboxEventModel] = field(default_factory=list)

    def record(self, event: DomainEvent) -> None:
        self.outbox.append(OutboxRepository(self.session).add(event))


def transition_event(
    request_id: int,
    from_status: Optional[RequestStatus],
    to_status: RequestStatus,
    actor: Actor,
    occurred_at,
    reason: Optional[str] = None,
) -> DomainEvent:
    return DomainEvent(
        kind=EventKind.REQUEST_TRANSITION,
        request_id=request_id,
        occurred_at=occurred_at,
        payload={
            "from_status": from_status.value if from_status else None,
            "to_status": to_status.value,
            "actor_id": actor.id,
            "actor_role": actor.role.value,
            "reason": reason,
        },
    )


class LifecycleService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        publisher: EventPublisher,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.publisher = publisher
        self.clock = clock

    @asynccontextmanager
    async def request_scope(self, request_id: int) -> AsyncIterator[RequestScope]:
        async with self.locks.hold(request_key(request_id)):
            async with self.session_factory() as session:
                async with storage_errors():
                    model = await TripRequestRepository(session).get_for_update(
                        request_id
                    )
                if model is None:
                    raise NotFound(f"Request {request_id} not found")
                scope = RequestScope(session, model)
                async with storage_errors():
                    yield scope
                    await session.commit()
            if scope.outbox:
                await self.publisher.flush(request_id)

    async def get(self, request_id: int) -> TripRequest:
        async with self.session_factory() as session:
            async with storage_errors():
                model = await TripRequestRepository(session).get_by_id(request_id)
        if model is None:
            raise NotFound(f"Request {request_id} not found")
        return model.to_entity()

    async def transition(
        self,
        request_id: int,
        target: RequestStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> TripRequest:
        async with self.request_scope(request_id) as scope:
            await self.apply(scope, target, actor, reason)
        return scope.request.to_entity()

    async def apply(
        self,
        scope: RequestScope,
        target: RequestStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> DomainEvent:
        """Validate and apply one transition inside an open unit of work."""
        request = scope.request
        current = RequestStatus(request.status)

        has_offer = False
        if needs_accepted_offer(target):
            has_offer = await DispatchOfferRepository(scope.session).has_accepted(
                request.id, request.fulfiller_id
            )
        check_transition(
            RequestType(request.request_type),
            current,
            target,
            has_accepted_offer=has_offer,
        )

        now = self.clock()
        request.status = target
        milestone = MILESTONE_FIELDS.get(target)
        if milestone:
            setattr(request, milestone, now)
        if target is RequestStatus.CANCELLED:
            request.cancelled_by = actor.id
            request.cancelled_by_role = actor.role.value
            request.cancellation_reason = reason
            request.post_assignment_cancellation = is_post_assignment_cancel(
                current, actor.role
            )

        event = transition_event(request.id, current, target, actor, now, reason)
        scope.record(event)
        logger.info(
            "Request %s: %s -> %s by %s:%s",
            request.id, current.value, target.value, actor.role.value, actor.id,
        )
        return event

    async def relay_events(self, older_than_seconds: int = 30) -> int:
        """Re-publish events whose first delivery attempt did not go through."""
        async with storage_errors():
            request_ids = await self.publisher.stale_requests(older_than_seconds)
        count = 0
        for request_id in request_ids:
            try:
                async with self.locks.hold(request_key(request_id)):
                    count += await self.publisher.flush(request_id)
            except Unavailable:
                logger.info("Request %s is busy; its events go out on the next cycle", request_id)
        if request_ids:
            logger.info(
                "Outbox relay re-published %d event(s) for %d request(s)",
                count, len(request_ids),
            )
        return count
