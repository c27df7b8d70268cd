"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from src.domain.entities import Actor
from src.domain.enums import ActorRole
from src.services.engine import TripEngine


def get_engine(request: Request) -> TripEngine:
    """The ``TripEngine`` built by the app lifespan (or injected by tests)."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine is not running")
    return engine


async def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: ActorRole = Header(ActorRole.REQUESTER),
) -> Actor:
    """Principal already verified by the identity gateway in front of us."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return Actor(id=x_user_id, role=x_user_role)


async def require_operator(principal: Actor = Depends(get_principal)) -> Actor:
    if principal.role not in (ActorRole.OPERATOR, ActorRole.SYSTEM):
        raise HTTPException(status_code=403, detail="Operator access required")
    return principal
