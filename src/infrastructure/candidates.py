"""
Candidate directory adapters.

Selection and ranking (nearest-available, rating, ...) belong to an
external service; the dispatch coordinator only consumes the ordered list
these adapters return.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Mapping, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.domain.entities import TripRequest
from src.domain.errors import Unavailable


def directory_key(request: TripRequest) -> str:
    return f"{request.request_type.value}:{request.vehicle_class.value}"


class CandidateDirectory(ABC):
    @abstractmethod
    async def candidates_for(self, request: TripRequest) -> list[str]:
        """Eligible fulfiller ids, best first."""


class StaticCandidateDirectory(CandidateDirectory):
    """Fixed lists keyed by ``"<request_type>:<vehicle_class>"``."""

    def __init__(self, candidates: Mapping[str, Sequence[str]]):
        self.candidates = {key: list(ids) for key, ids in candidates.items()}

    async def candidates_for(self, request: TripRequest) -> list[str]:
        return list(self.candidates.get(directory_key(request), []))


class RedisCandidateDirectory(CandidateDirectory):
    """
    Reads a sorted set per key, lowest score first.  The ranking service
    keeps the scores (e.g. distance to pickup) up to date.
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "candidates", limit: int = 10):
        self.redis = client
        self.prefix = prefix
        self.limit = limit

    async def candidates_for(self, request: TripRequest) -> list[str]:
        key = f"{self.prefix}:{directory_key(request)}"
        try:
            members = await self.redis.zrange(key, 0, self.limit - 1)
        except RedisError as exc:
            raise Unavailable("Candidate directory unavailable") from exc
        return [m.decode() if isinstance(m, bytes) else m for m in members]
