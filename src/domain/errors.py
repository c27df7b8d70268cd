"""
Error taxonomy shared by the domain, the services and the API layer.

Every error carries a stable ``code`` and a user-facing ``message``.  The
API maps them to HTTP responses in ``src.api.errors``.
"""

from __future__ import annotations

from typing import Optional

from .enums import PromoErrorKind, RequestStatus


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidTransition(EngineError):
    """Raised when a status change violates the state machine."""

    code = "invalid_transition"

    def __init__(
        self,
        current: RequestStatus,
        target: RequestStatus,
        message: Optional[str] = None,
    ):
        self.current = current
        self.target = target
        super().__init__(
            message
            or f"Cannot move request from {current.value} to {target.value}"
        )


class StaleState(EngineError):
    """Optimistic-concurrency conflict: the request changed underneath us."""

    code = "stale_state"


class PromoError(EngineError):
    code = "promo_error"

    def __init__(self, kind: PromoErrorKind, message: str):
        self.kind = kind
        super().__init__(message)


class OfferExpired(EngineError):
    """The offer was already resolved or its deadline has passed."""

    code = "offer_expired"

    def __init__(self, message: str = "Offer is no longer available"):
        super().__init__(message)


class NoCandidatesAvailable(EngineError):
    """Retryable: every candidate declined or timed out."""

    code = "no_candidates"


class PendingOfferExists(EngineError):
    code = "pending_offer_exists"


class ValidationError(EngineError):
    code = "validation_error"


class NotFound(EngineError):
    code = "not_found"


class Unavailable(EngineError):
    """Storage or infrastructure failure; the caller should retry."""

    code = "unavailable"
