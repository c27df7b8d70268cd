"""
Seed script -- populates the database (and Redis) with demo data.

Run after migrations:
    python seed.py

Creates:
  - 5 promo codes (WELCOME50, FREESHIP, PAYDAY20, GOGO100, FOODIE100)
  - candidate driver lists per request type / vehicle class in Redis
    (sorted sets read by ``RedisCandidateDirectory``)
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select

from src.config import settings
from src.domain.entities import utcnow
from src.domain.enums import DiscountType, PromoScope, RequestType, VehicleClass
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.models import PromoCodeModel
from src.infrastructure.redis_client import close_redis, get_redis
from src.infrastructure.repositories import PromoRepository

PROMOS = [
    {
        "code": "WELCOME50", "title": "Welcome!",
        "description": "50% off your first ride!",
        "discount_type": DiscountType.PERCENTAGE, "value": "50", "max_discount": "100",
        "scope": PromoScope.RIDE, "new_user_only": True, "days": 90,
    },
    {
        "code": "FREESHIP", "title": "Free delivery",
        "description": "Free delivery on food orders over ₱500",
        "discount_type": DiscountType.FREE_DELIVERY, "value": "0",
        "min_order_value": "500", "per_user_cap": 3,
        "scope": PromoScope.FOOD, "days": 30,
    },
    {
        "code": "PAYDAY20", "title": "Payday treat",
        "description": "20% off on all orders (max ₱150)",
        "discount_type": DiscountType.PERCENTAGE, "value": "20", "max_discount": "150",
        "min_order_value": "300", "per_user_cap": 2,
        "scope": PromoScope.ALL, "days": 7,
    },
    {
        "code": "GOGO100", "title": "₱100 off",
        "description": "₱100 off on orders over ₱1000",
        "discount_type": DiscountType.FIXED, "value": "100",
        "min_order_value": "1000", "per_user_cap": 5,
        "scope": PromoScope.FOOD, "days": 60,
    },
    {
        "code": "FOODIE100", "title": "Foodie",
        "description": "₱100 off food orders of ₱300 or more",
        "discount_type": DiscountType.FIXED, "value": "100",
        "min_order_value": "300", "usage_cap": 1000,
        "scope": PromoScope.FOOD, "days": 30,
    },
]

# "<request_type>:<vehicle_class>" -> driver ids, nearest first
CANDIDATES = {
    (RequestType.RIDE, VehicleClass.MOTORCYCLE): ["drv-moto-01", "drv-moto-02", "drv-moto-03"],
    (RequestType.RIDE, VehicleClass.CAR): ["drv-car-01", "drv-car-02", "drv-car-03"],
    (RequestType.RIDE, VehicleClass.VAN): ["drv-van-01"],
    (RequestType.FOOD, VehicleClass.MOTORCYCLE): ["drv-moto-04", "drv-moto-05"],
    (RequestType.GROCERY, VehicleClass.MOTORCYCLE): ["drv-moto-04", "drv-moto-06"],
    (RequestType.PHARMACY, VehicleClass.MOTORCYCLE): ["drv-moto-05"],
}


def _money(value):
    return Decimal(value) if value is not None else None


async def seed_promos() -> None:
    now = utcnow()
    async with async_session_factory() as session:
        result = await session.execute(select(func.count()).select_from(PromoCodeModel))
        if result.scalar() > 0:
            print("Promo codes already seeded. Skipping.")
            return

        repo = PromoRepository(session)
        for p in PROMOS:
            await repo.create(
                PromoCodeModel(
                    code=p["code"],
                    title=p["title"],
                    description=p["description"],
                    discount_type=p["discount_type"],
                    value=Decimal(p["value"]),
                    scope=p["scope"],
                    is_active=True,
                    valid_from=now,
                    valid_until=now + timedelta(days=p["days"]),
                    min_order_value=_money(p.get("min_order_value")),
                    max_discount=_money(p.get("max_discount")),
                    usage_cap=p.get("usage_cap"),
                    per_user_cap=p.get("per_user_cap"),
                    new_user_only=p.get("new_user_only", False),
                    usage_count=0,
                )
            )
        await session.commit()
        print(f"  Created {len(PROMOS)} promo codes")


async def seed_candidates() -> None:
    redis = await get_redis()
    for (request_type, vehicle_class), drivers in CANDIDATES.items():
        key = f"{settings.candidate_key_prefix}:{request_type.value}:{vehicle_class.value}"
        await redis.delete(key)
        await redis.zadd(key, {driver: rank for rank, driver in enumerate(drivers)})
    print(f"  Loaded {len(CANDIDATES)} candidate lists into Redis")


async def main():
    print("Seeding...")
    await seed_promos()
    if settings.candidate_directory == "redis":
        await seed_candidates()
        await close_redis()
    await engine.dispose()
    print("\nSeed complete!")


if __name__ == "__main__":
    asyncio.run(main())
