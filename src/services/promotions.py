"""Storage-backed promo validation and consumption."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import DiscountDescriptor, PromoCode
from src.domain.enums import PromoErrorKind, RequestType
from src.domain.errors import PromoError, ValidationError
from src.domain.promos import check_promo, normalize_code
from src.infrastructure.models import PromoCodeModel
from src.infrastructure.repositories import PromoRepository

logger = logging.getLogger(__name__)


class PromoValidator:
    def __init__(self, currency_symbol: str = "₱", new_user_cap: int = 1):
        self.currency_symbol = currency_symbol
        self.new_user_cap = new_user_cap

    async def validate(
        self,
        session: AsyncSession,
        code: str,
        subtotal: Decimal,
        request_type: RequestType,
        requester_id: str,
        now: datetime,
    ) -> DiscountDescriptor:
        """Check a code against a quote.  Does not consume a use."""
        repo = PromoRepository(session)
        model = await repo.get_by_code(code)
        uses = await repo.count_redemptions(model.id, requester_id) if model else 0
        return check_promo(
            model.to_entity() if model else None,
            code=code,
            subtotal=subtotal,
            request_type=request_type,
            requester_uses=uses,
            now=now,
            new_user_cap=self.new_user_cap,
            currency_symbol=self.currency_symbol,
        )

    async def consume(
        self,
        session: AsyncSession,
        promo_id: int,
        request_id: int,
        requester_id: str,
        now: datetime,
    ) -> bool:
        """
        Count one use of the promo for this request.  Runs inside the
        confirmation unit of work; a redemption already recorded for the
        request makes this a no-op and returns False.
        """
        repo = PromoRepository(session)
        # row lock held until commit; the cap checks below read committed counts
        model = await repo.get_for_update(promo_id)
        if model is None:
            raise PromoError(PromoErrorKind.NOT_FOUND, "Promo code no longer exists")
        if await repo.has_redemption(promo_id, request_id):
            return False

        promo = model.to_entity()
        if not promo.is_live(now):
            raise PromoError(PromoErrorKind.EXPIRED, f"Promo {promo.code} has expired")

        per_user = promo.effective_per_user_cap(self.new_user_cap)
        if per_user is not None:
            if await repo.count_redemptions(promo_id, requester_id) >= per_user:
                raise PromoError(
                    PromoErrorKind.USAGE_CAP_REACHED,
                    f"You have already used promo {promo.code}",
                )
        if not await repo.increment_usage(promo_id):
            raise PromoError(
                PromoErrorKind.USAGE_CAP_REACHED,
                f"Promo {promo.code} has reached its usage limit",
            )
        await repo.add_redemption(promo_id, request_id, requester_id, now)
        logger.info("Promo %s consumed by request %s", promo.code, request_id)
        return True

    async def create(self, session: AsyncSession, promo: PromoCode) -> PromoCode:
        if promo.valid_until <= promo.valid_from:
            raise ValidationError("valid_until must be after valid_from")
        if promo.value < 0:
            raise ValidationError("Promo value must be non-negative")
        repo = PromoRepository(session)
        if await repo.get_by_code(promo.code) is not None:
            raise ValidationError(f"Promo code {normalize_code(promo.code)} already exists")
        model = await repo.create(
            PromoCodeModel(
                code=promo.code,
                title=promo.title,
                description=promo.description,
                discount_type=promo.discount_type,
                value=promo.value,
                scope=promo.scope,
                is_active=promo.is_active,
                valid_from=promo.valid_from,
                valid_until=promo.valid_until,
                min_order_value=promo.min_order_value,
                max_discount=promo.max_discount,
                usage_cap=promo.usage_cap,
                per_user_cap=promo.per_user_cap,
                new_user_only=promo.new_user_only,
                usage_count=0,
            )
        )
        return model.to_entity()
