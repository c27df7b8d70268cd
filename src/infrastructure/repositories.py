"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Outcome and usage-counter changes are
single ``UPDATE ... WHERE`` statements so they act as compare-and-swap
even without the per-request lock.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DispatchOfferModel,
    OutboxEventModel,
    PromoCodeModel,
    PromoRedemptionModel,
    TripRequestModel,
)
from src.domain.entities import DomainEvent
from src.domain.enums import OfferOutcome, RequestStatus
from src.domain.promos import normalize_code


class TripRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, request: TripRequestModel) -> TripRequestModel:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(self, request_id: int) -> Optional[TripRequestModel]:
        return await self.session.get(TripRequestModel, request_id)

    async def get_for_update(self, request_id: int) -> Optional[TripRequestModel]:
        """SELECT ... FOR UPDATE; a no-op lock clause on SQLite."""
        result = await self.session.execute(
            select(TripRequestModel)
            .where(TripRequestModel.id == request_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> Optional[TripRequestModel]:
        result = await self.session.execute(
            select(TripRequestModel).where(TripRequestModel.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def list_by_requester(
        self,
        requester_id: str,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
    ) -> list[TripRequestModel]:
        query = select(TripRequestModel).where(
            TripRequestModel.requester_id == requester_id
        )
        if status is not None:
            query = query.where(TripRequestModel.status == status)
        result = await self.session.execute(
            query.order_by(TripRequestModel.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_status(
        self, status: RequestStatus, limit: int = 50
    ) -> list[TripRequestModel]:
        result = await self.session.execute(
            select(TripRequestModel)
            .where(TripRequestModel.status == status)
            .order_by(TripRequestModel.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def awaiting_dispatch(
        self, retry_before: datetime, limit: int = 100
    ) -> list[TripRequestModel]:
        """Confirmed requests with no pending offer whose backoff has elapsed."""
        pending_offer = exists().where(
            DispatchOfferModel.request_id == TripRequestModel.id,
            DispatchOfferModel.outcome == OfferOutcome.PENDING,
        )
        result = await self.session.execute(
            select(TripRequestModel)
            .where(
                TripRequestModel.status == RequestStatus.CONFIRMED,
                (TripRequestModel.last_dispatch_at.is_(None))
                | (TripRequestModel.last_dispatch_at < retry_before),
                ~pending_offer,
            )
            .order_by(TripRequestModel.confirmed_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_status(self, status: RequestStatus) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(TripRequestModel)
            .where(TripRequestModel.status == status)
        )
        return result.scalar() or 0


class PromoRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, promo: PromoCodeModel) -> PromoCodeModel:
        promo.code = normalize_code(promo.code)
        self.session.add(promo)
        await self.session.flush()
        return promo

    async def get_for_update(self, promo_id: int) -> Optional[PromoCodeModel]:
        """Lock the promo row; serializes redemptions of one code."""
        result = await self.session.execute(
            select(PromoCodeModel)
            .where(PromoCodeModel.id == promo_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Optional[PromoCodeModel]:
        result = await self.session.execute(
            select(PromoCodeModel).where(PromoCodeModel.code == normalize_code(code))
        )
        return result.scalar_one_or_none()

    async def count_redemptions(self, promo_id: int, requester_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PromoRedemptionModel)
            .where(
                PromoRedemptionModel.promo_id == promo_id,
                PromoRedemptionModel.requester_id == requester_id,
            )
        )
        return result.scalar() or 0

    async def has_redemption(self, promo_id: int, request_id: int) -> bool:
        result = await self.session.execute(
            select(PromoRedemptionModel.id).where(
                PromoRedemptionModel.promo_id == promo_id,
                PromoRedemptionModel.request_id == request_id,
            )
        )
        return result.first() is not None

    async def increment_usage(self, promo_id: int) -> bool:
        """Bump ``usage_count`` only while below ``usage_cap``."""
        result = await self.session.execute(
            update(PromoCodeModel)
            .where(
                PromoCodeModel.id == promo_id,
                (PromoCodeModel.usage_cap.is_(None))
                | (PromoCodeModel.usage_count < PromoCodeModel.usage_cap),
            )
            .values(usage_count=PromoCodeModel.usage_count + 1)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def add_redemption(
        self, promo_id: int, request_id: int, requester_id: str, at: datetime
    ) -> PromoRedemptionModel:
        redemption = PromoRedemptionModel(
            promo_id=promo_id,
            request_id=request_id,
            requester_id=requester_id,
            redeemed_at=at,
        )
        self.session.add(redemption)
        await self.session.flush()
        return redemption


class DispatchOfferRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        *,
        request_id: int,
        candidate_id: str,
        offered_at: datetime,
        expires_at: datetime,
    ) -> DispatchOfferModel:
        offer = DispatchOfferModel(
            request_id=request_id,
            candidate_id=candidate_id,
            offered_at=offered_at,
            expires_at=expires_at,
            outcome=OfferOutcome.PENDING,
        )
        self.session.add(offer)
        await self.session.flush()
        return offer

    async def get_by_id(self, offer_id: int) -> Optional[DispatchOfferModel]:
        return await self.session.get(DispatchOfferModel, offer_id)

    async def get_pending(self, request_id: int) -> Optional[DispatchOfferModel]:
        result = await self.session.execute(
            select(DispatchOfferModel).where(
                DispatchOfferModel.request_id == request_id,
                DispatchOfferModel.outcome == OfferOutcome.PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_request(self, request_id: int) -> list[DispatchOfferModel]:
        result = await self.session.execute(
            select(DispatchOfferModel)
            .where(DispatchOfferModel.request_id == request_id)
            .order_by(DispatchOfferModel.id)
        )
        return list(result.scalars().all())

    async def has_accepted(self, request_id: int, candidate_id: Optional[str]) -> bool:
        if candidate_id is None:
            return False
        result = await self.session.execute(
            select(DispatchOfferModel.id).where(
                DispatchOfferModel.request_id == request_id,
                DispatchOfferModel.candidate_id == candidate_id,
                DispatchOfferModel.outcome == OfferOutcome.ACCEPTED,
            )
        )
        return result.first() is not None

    async def compare_and_set(
        self,
        offer_id: int,
        expected: OfferOutcome,
        new: OfferOutcome,
        at: datetime,
    ) -> bool:
        """Atomically move an offer from *expected* to *new*.  False if lost."""
        result = await self.session.execute(
            update(DispatchOfferModel)
            .where(
                DispatchOfferModel.id == offer_id,
                DispatchOfferModel.outcome == expected,
            )
            .values(outcome=new, responded_at=at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def expire_pending(
        self, request_id: int, at: datetime
    ) -> list[DispatchOfferModel]:
        offer = await self.get_pending(request_id)
        if offer is None:
            return []
        if await self.compare_and_set(
            offer.id, OfferOutcome.PENDING, OfferOutcome.EXPIRED, at
        ):
            await self.session.refresh(offer)
            return [offer]
        return []


class OutboxRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def add(self, event: DomainEvent) -> OutboxEventModel:
        row = OutboxEventModel(
            request_id=event.request_id,
            kind=event.kind.value,
            dedup_key=event.dedup_key,
            payload=event.payload,
            occurred_at=event.occurred_at,
        )
        self.session.add(row)
        return row

    async def mark_published(self, ids: Sequence[int], at: datetime) -> None:
        if not ids:
            return
        await self.session.execute(
            update(OutboxEventModel)
            .where(OutboxEventModel.id.in_(list(ids)))
            .values(published_at=at)
            .execution_options(synchronize_session=False)
        )

    async def unpublished_for_request(self, request_id: int) -> list[OutboxEventModel]:
        result = await self.session.execute(
            select(OutboxEventModel)
            .where(
                OutboxEventModel.request_id == request_id,
                OutboxEventModel.published_at.is_(None),
            )
            .order_by(OutboxEventModel.id)
        )
        return list(result.scalars().all())

    async def requests_with_unpublished(
        self, occurred_before: datetime, limit: int = 200
    ) -> list[int]:
        """Requests holding an undelivered event older than *occurred_before*."""
        result = await self.session.execute(
            select(OutboxEventModel.request_id)
            .where(
                OutboxEventModel.published_at.is_(None),
                OutboxEventModel.occurred_at < occurred_before,
            )
            .group_by(OutboxEventModel.request_id)
            .order_by(func.min(OutboxEventModel.id))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_request(self, request_id: int) -> list[OutboxEventModel]:
        result = await self.session.execute(
            select(OutboxEventModel)
            .where(OutboxEventModel.request_id == request_id)
            .order_by(OutboxEventModel.id)
        )
        return list(result.scalars().all())
