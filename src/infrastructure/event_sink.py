"""
Event sinks and the outbox publisher.

Domain events are written to ``outbox_events`` in the same transaction as
the change that produced them.  After commit, still under the request lock,
the ``EventPublisher`` flushes every undelivered event of that request to
the configured sink in id order and stamps ``published_at``.  A failed push
is logged and held back, together with everything recorded after it, until
the next flush or the relay run by the dispatch worker.  Delivery is
at-least-once and consumers deduplicate on ``dedup_key``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Sequence

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import OutboxEventModel
from .repositories import OutboxRepository
from src.domain.entities import DomainEvent, utcnow

logger = logging.getLogger(__name__)


class EventSink(ABC):
    @abstractmethod
    async def publish(self, event: DomainEvent) -> None: ...


class LoggingEventSink(EventSink):
    async def publish(self, event: DomainEvent) -> None:
        logger.info("event %s", json.dumps(event.as_dict(), default=str))


class RedisStreamEventSink(EventSink):
    """Appends each event to a Redis stream read by the notification service."""

    def __init__(self, client: aioredis.Redis, stream: str, maxlen: int = 100_000):
        self.redis = client
        self.stream = stream
        self.maxlen = maxlen

    async def publish(self, event: DomainEvent) -> None:
        await self.redis.xadd(
            self.stream,
            {
                "kind": event.kind.value,
                "request_id": str(event.request_id),
                "dedup_key": event.dedup_key,
                "event": json.dumps(event.as_dict(), default=str),
            },
            maxlen=self.maxlen,
            approximate=True,
        )


class EventPublisher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sink: EventSink,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.clock = clock

    async def publish(self, rows: Sequence[OutboxEventModel]) -> int:
        """
        Push committed outbox rows in order; returns how many went out.

        Stops at the first failed push so later rows never overtake it.
        A failure to stamp ``published_at`` is only logged: the change is
        already committed and the relay delivers those rows again.
        """
        published: list[int] = []
        for row in rows:
            try:
                await self.sink.publish(row.to_event())
            except Exception:
                # Left unpublished; the next flush or the relay retries it.
                logger.warning(
                    "Publishing %s for request %s failed", row.kind, row.request_id,
                    exc_info=True,
                )
                break
            published.append(row.id)

        if published:
            try:
                async with self.session_factory() as session:
                    await OutboxRepository(session).mark_published(published, self.clock())
                    await session.commit()
            except SQLAlchemyError:
                logger.warning(
                    "Could not mark %d event(s) published; they will be re-sent",
                    len(published), exc_info=True,
                )
        return len(published)

    async def flush(self, request_id: int) -> int:
        """Publish every undelivered event of one request, oldest first.

        Callers hold the request lock.
        """
        try:
            async with self.session_factory() as session:
                rows = await OutboxRepository(session).unpublished_for_request(request_id)
        except SQLAlchemyError:
            logger.warning(
                "Could not load events of request %s; left for the relay",
                request_id, exc_info=True,
            )
            return 0
        return await self.publish(rows) if rows else 0

    async def stale_requests(self, older_than_seconds: int = 30) -> list[int]:
        """Requests whose first delivery attempt did not go through."""
        cutoff = self.clock() - timedelta(seconds=older_than_seconds)
        async with self.session_factory() as session:
            return await OutboxRepository(session).requests_with_unpublished(cutoff)
