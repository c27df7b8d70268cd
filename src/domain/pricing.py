"""
Fare Pricing Engine  (Strategy Pattern)
=======================================

Formula
-------
Subtotal = Base + Distance_km x Rate_Per_KM + Duration_min x Rate_Per_Minute
Surge    = Subtotal x (Surge_Multiplier - 1)            (0 when multiplier == 1)
Total    = max(0, Subtotal + Surge - Discount)

* **Discount** comes from a promo descriptor (percentage, fixed, or
  free-delivery = the base fee), capped by ``max_discount`` and by the
  pre-discount amount.
* **Surge_Multiplier** is an input.  ``compute_surge`` (demand / supply)
  and ``SurgeSchedule`` (peak hours, weekends) are the two ways the service
  derives one when the caller does not pass it.

All arithmetic uses ``Decimal``.  Each component is rounded half-up to
cents once, at the end; ``total`` is derived from the rounded components
so ``total == base + distance + time + surge - discount`` holds exactly.

Complexity: O(1) per quote.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Union
from zoneinfo import ZoneInfo

from .entities import DiscountDescriptor, FareQuote
from .enums import DiscountType, VehicleClass
from .errors import ValidationError

Number = Union[int, float, Decimal]

CENT = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value: Number) -> Decimal:
    """Round half-up to two decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Number, symbol: str = "₱") -> str:
    value = money(amount)
    if value == value.to_integral_value():
        return f"{symbol}{value:.0f}"
    return f"{symbol}{value:.2f}"


@dataclass(frozen=True)
class VehicleRate:
    base_fare: Decimal
    per_km: Decimal
    per_minute: Decimal


def _rate(base: str, per_km: str, per_minute: str) -> VehicleRate:
    return VehicleRate(Decimal(base), Decimal(per_km), Decimal(per_minute))


# PHP, per vehicle class
DEFAULT_RATES: dict[VehicleClass, VehicleRate] = {
    VehicleClass.MOTORCYCLE: _rate("40", "8", "1"),
    VehicleClass.CAR: _rate("60", "15", "2"),
    VehicleClass.VAN: _rate("100", "20", "3"),
    VehicleClass.DELIVERY: _rate("50", "12", "1"),
    VehicleClass.HAPPY_MOVE: _rate("300", "25", "5"),
    VehicleClass.AIRPORT: _rate("500", "0", "0"),
}


# ── Discount strategies ───────────────────────────────────────────────


class DiscountStrategy(ABC):
    def __init__(self, max_discount: Optional[Decimal] = None):
        self.max_discount = max_discount

    @abstractmethod
    def raw_amount(self, subtotal: Decimal, base: Decimal) -> Decimal: ...

    def calculate(self, subtotal: Decimal, base: Decimal) -> Decimal:
        amount = max(ZERO, self.raw_amount(subtotal, base))
        if self.max_discount is not None:
            amount = min(amount, self.max_discount)
        return min(amount, subtotal)


class NoDiscount(DiscountStrategy):
    def raw_amount(self, subtotal: Decimal, base: Decimal) -> Decimal:
        return ZERO


class PercentageDiscount(DiscountStrategy):
    def __init__(self, percent: Decimal, max_discount: Optional[Decimal] = None):
        super().__init__(max_discount)
        self.percent = percent

    def raw_amount(self, subtotal: Decimal, base: Decimal) -> Decimal:
        return subtotal * self.percent / Decimal(100)


class FixedDiscount(DiscountStrategy):
    def __init__(self, amount: Decimal, max_discount: Optional[Decimal] = None):
        super().__init__(max_discount)
        self.amount = amount

    def raw_amount(self, subtotal: Decimal, base: Decimal) -> Decimal:
        return self.amount


class FreeDeliveryDiscount(DiscountStrategy):
    """Waives the base (delivery / flag-down) fee."""

    def raw_amount(self, subtotal: Decimal, base: Decimal) -> Decimal:
        return base


def discount_strategy(promo: Optional[DiscountDescriptor]) -> DiscountStrategy:
    if promo is None:
        return NoDiscount()
    value = to_decimal(promo.value)
    cap = to_decimal(promo.max_discount) if promo.max_discount is not None else None
    if promo.discount_type is DiscountType.PERCENTAGE:
        return PercentageDiscount(value, cap)
    if promo.discount_type is DiscountType.FIXED:
        return FixedDiscount(value, cap)
    return FreeDeliveryDiscount(cap)


# ── Surge sources ─────────────────────────────────────────────────────


class SurgeSchedule:
    """Time-of-day surge: peak hours and weekends, combined multiplicatively."""

    def __init__(
        self,
        peak_hours: Iterable[tuple[int, int]] = ((6, 9), (17, 20)),
        peak_multiplier: Number = 1.25,
        weekend_multiplier: Number = 1.1,
        timezone: str = "Asia/Manila",
        max_surge: Number = 3.0,
        enabled: bool = True,
    ):
        self.peak_hours = [tuple(window) for window in peak_hours]
        self.peak_multiplier = to_decimal(peak_multiplier)
        self.weekend_multiplier = to_decimal(weekend_multiplier)
        self.tz = ZoneInfo(timezone)
        self.max_surge = to_decimal(max_surge)
        self.enabled = enabled

    def multiplier_at(self, now: datetime) -> Decimal:
        if not self.enabled:
            return ONE
        local = now.astimezone(self.tz)
        multiplier = ONE
        if any(start <= local.hour < end for start, end in self.peak_hours):
            multiplier *= self.peak_multiplier
        if local.weekday() >= 5:
            multiplier *= self.weekend_multiplier
        return min(multiplier, self.max_surge)


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """High-level API used by the engine facade and the quote endpoint."""

    def __init__(
        self,
        rates: Optional[dict[VehicleClass, VehicleRate]] = None,
        max_surge: Number = 3.0,
    ):
        self.rates = dict(DEFAULT_RATES)
        if rates:
            self.rates.update(rates)
        self.max_surge = to_decimal(max_surge)

    @classmethod
    def from_overrides(
        cls,
        overrides: dict[str, tuple[float, float, float]],
        max_surge: Number = 3.0,
    ) -> "PricingEngine":
        rates = {
            VehicleClass(name): VehicleRate(*(to_decimal(v) for v in values))
            for name, values in overrides.items()
        }
        return cls(rates, max_surge)

    @staticmethod
    def compute_surge(
        active_requests: int, available_fulfillers: int, max_surge: Number = 3.0
    ) -> Decimal:
        cap = to_decimal(max_surge)
        if available_fulfillers <= 0:
            return cap
        ratio = Decimal(active_requests) / Decimal(available_fulfillers)
        return min(cap, max(ONE, ratio))

    def check_surge(self, surge_multiplier: Number) -> Decimal:
        surge = to_decimal(surge_multiplier)
        if surge < ONE:
            raise ValidationError("Surge multiplier must be at least 1")
        if surge > self.max_surge:
            raise ValidationError(
                f"Surge multiplier must not exceed {self.max_surge}"
            )
        return surge

    def rate_for(self, vehicle_class: VehicleClass) -> VehicleRate:
        try:
            return self.rates[vehicle_class]
        except KeyError:
            raise ValidationError(
                f"No rate configured for vehicle class {vehicle_class.value}"
            ) from None

    def _components(
        self,
        distance_meters: Number,
        duration_seconds: Number,
        vehicle_class: VehicleClass,
        surge_multiplier: Number,
    ) -> tuple[Decimal, Decimal, Decimal, Decimal]:
        distance = to_decimal(distance_meters)
        duration = to_decimal(duration_seconds)
        if distance < ZERO or duration < ZERO:
            raise ValidationError("Distance and duration must be non-negative")
        surge = self.check_surge(surge_multiplier)
        rate = self.rate_for(vehicle_class)

        base = rate.base_fare
        distance_portion = distance / Decimal(1000) * rate.per_km
        time_portion = duration / Decimal(60) * rate.per_minute
        surge_amount = ZERO
        if surge > ONE:
            surge_amount = (base + distance_portion + time_portion) * (surge - ONE)
        return base, distance_portion, time_portion, surge_amount

    def subtotal(
        self,
        distance_meters: Number,
        duration_seconds: Number,
        vehicle_class: VehicleClass,
        surge_multiplier: Number = 1,
    ) -> Decimal:
        """Pre-discount amount, used to check a promo's minimum order."""
        parts = self._components(
            distance_meters, duration_seconds, vehicle_class, surge_multiplier
        )
        return sum((money(p) for p in parts), ZERO)

    def quote(
        self,
        distance_meters: Number,
        duration_seconds: Number,
        vehicle_class: VehicleClass,
        surge_multiplier: Number = 1,
        promo: Optional[DiscountDescriptor] = None,
    ) -> FareQuote:
        base_u, distance_u, time_u, surge_u = self._components(
            distance_meters, duration_seconds, vehicle_class, surge_multiplier
        )
        discount_u = discount_strategy(promo).calculate(
            base_u + distance_u + time_u + surge_u, base_u
        )

        base, distance, time, surge = (
            money(base_u), money(distance_u), money(time_u), money(surge_u)
        )
        subtotal = base + distance + time + surge
        discount = min(money(discount_u), subtotal)
        return FareQuote(
            base=base,
            distance_portion=distance,
            time_portion=time,
            surge_amount=surge,
            discount_amount=discount,
            total=max(ZERO, subtotal - discount),
        )
