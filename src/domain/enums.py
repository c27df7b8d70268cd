"""Domain enumerations and state-transition rules."""

import enum


class RequestType(str, enum.Enum):
    RIDE = "ride"
    FOOD = "food"
    GROCERY = "grocery"
    PHARMACY = "pharmacy"

    @property
    def is_order(self) -> bool:
        return self is not RequestType.RIDE


class RequestStatus(str, enum.Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    # ride path
    ARRIVED_DROPOFF = "arrived_dropoff"
    COMPLETED = "completed"
    # order path
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.DELIVERED, RequestStatus.CANCELLED}
)

PRE_ASSIGNMENT_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.CREATED, RequestStatus.CONFIRMED}
)

_S = RequestStatus

# Shared prefix of both paths: maps current status -> set of valid next statuses
_DISPATCH_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    _S.CREATED: {_S.CONFIRMED, _S.CANCELLED},
    _S.CONFIRMED: {_S.ASSIGNED, _S.CANCELLED},
    _S.ASSIGNED: {_S.IN_PROGRESS, _S.CANCELLED},
}

RIDE_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    **_DISPATCH_TRANSITIONS,
    _S.IN_PROGRESS: {_S.ARRIVED_DROPOFF, _S.COMPLETED, _S.CANCELLED},
    _S.ARRIVED_DROPOFF: {_S.COMPLETED, _S.CANCELLED},
    _S.COMPLETED: set(),
    _S.CANCELLED: set(),
}

ORDER_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    **_DISPATCH_TRANSITIONS,
    _S.IN_PROGRESS: {_S.PREPARING, _S.CANCELLED},
    _S.PREPARING: {_S.READY, _S.CANCELLED},
    _S.READY: {_S.PICKED_UP, _S.CANCELLED},
    _S.PICKED_UP: {_S.ON_THE_WAY, _S.CANCELLED},
    _S.ON_THE_WAY: {_S.DELIVERED, _S.CANCELLED},
    _S.DELIVERED: set(),
    _S.CANCELLED: set(),
}


class VehicleClass(str, enum.Enum):
    MOTORCYCLE = "motorcycle"
    CAR = "car"
    VAN = "van"
    DELIVERY = "delivery"
    HAPPY_MOVE = "happy_move"
    AIRPORT = "airport"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_DELIVERY = "free-delivery"


class PromoScope(str, enum.Enum):
    RIDE = "ride"
    FOOD = "food"
    GROCERY = "grocery"
    ALL = "all"

    def covers(self, request_type: RequestType) -> bool:
        return self is PromoScope.ALL or self.value == request_type.value


class PromoErrorKind(str, enum.Enum):
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    SCOPE_MISMATCH = "ScopeMismatch"
    BELOW_MINIMUM = "BelowMinimum"
    USAGE_CAP_REACHED = "UsageCapReached"


class OfferOutcome(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class ActorRole(str, enum.Enum):
    REQUESTER = "requester"
    FULFILLER = "fulfiller"
    OPERATOR = "operator"
    SYSTEM = "system"


class EventKind(str, enum.Enum):
    REQUEST_TRANSITION = "request.transition"
    OFFER_CREATED = "offer.created"
    OFFER_RESOLVED = "offer.resolved"
    NO_CANDIDATES = "dispatch.no_candidates"
