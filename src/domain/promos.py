"""
Promo-code rules.

Checks run in a fixed order and the first failure wins:

1. the code exists (lookup is case-insensitive)
2. the code is active and ``valid_from <= now < valid_until``
3. the code's scope covers the request type
4. the pre-discount subtotal meets ``min_order_value``
5. total redemptions are below ``usage_cap``
6. the requester's redemptions are below the per-user cap

Validation never consumes a use; see ``PromoValidator.consume``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from .entities import DiscountDescriptor, PromoCode
from .enums import PromoErrorKind, RequestType
from .errors import PromoError
from .pricing import format_amount


def normalize_code(code: str) -> str:
    return code.strip().upper()


def check_promo(
    promo: Optional[PromoCode],
    *,
    code: str,
    subtotal: Decimal,
    request_type: RequestType,
    requester_uses: int,
    now: datetime,
    new_user_cap: int = 1,
    currency_symbol: str = "₱",
) -> DiscountDescriptor:
    label = normalize_code(code)
    if promo is None:
        raise PromoError(PromoErrorKind.NOT_FOUND, f"Promo code {label} does not exist")

    if not promo.is_active or now >= promo.valid_until:
        raise PromoError(PromoErrorKind.EXPIRED, f"Promo {label} has expired")
    if now < promo.valid_from:
        raise PromoError(PromoErrorKind.EXPIRED, f"Promo {label} is not active yet")

    if not promo.scope.covers(request_type):
        raise PromoError(
            PromoErrorKind.SCOPE_MISMATCH,
            f"Promo {label} is only valid for {promo.scope.value} requests",
        )

    if promo.min_order_value is not None and subtotal < promo.min_order_value:
        raise PromoError(
            PromoErrorKind.BELOW_MINIMUM,
            f"Promo {label} requires a minimum order of "
            f"{format_amount(promo.min_order_value, currency_symbol)}",
        )

    if promo.usage_cap is not None and promo.usage_count >= promo.usage_cap:
        raise PromoError(
            PromoErrorKind.USAGE_CAP_REACHED,
            f"Promo {label} has reached its usage limit",
        )

    per_user = promo.effective_per_user_cap(new_user_cap)
    if per_user is not None and requester_uses >= per_user:
        raise PromoError(
            PromoErrorKind.USAGE_CAP_REACHED,
            f"You have already used promo {label}",
        )

    return promo.descriptor()
