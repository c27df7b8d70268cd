"""
Request lifecycle state machine (pure rules).

Two canonical paths share the dispatch prefix::

    created -> confirmed -> assigned -> in_progress
        ride:  in_progress -> arrived_dropoff -> completed
        order: in_progress -> preparing -> ready -> picked_up
                            -> on_the_way -> delivered

Every non-terminal status may move to ``cancelled``.  Moves into
``assigned`` and ``in_progress`` additionally need an accepted dispatch
offer for the request.
"""

from __future__ import annotations

from .enums import (
    ORDER_TRANSITIONS,
    PRE_ASSIGNMENT_STATUSES,
    RIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    ActorRole,
    RequestStatus,
    RequestType,
)
from .errors import InvalidTransition

_OFFER_GUARDED = frozenset({RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS})

# status -> name of the milestone timestamp it stamps on the request
MILESTONE_FIELDS: dict[RequestStatus, str] = {
    RequestStatus.CONFIRMED: "confirmed_at",
    RequestStatus.ASSIGNED: "assigned_at",
    RequestStatus.IN_PROGRESS: "started_at",
    RequestStatus.COMPLETED: "completed_at",
    RequestStatus.DELIVERED: "completed_at",
    RequestStatus.CANCELLED: "cancelled_at",
}


def transitions_for(
    request_type: RequestType,
) -> dict[RequestStatus, set[RequestStatus]]:
    return ORDER_TRANSITIONS if request_type.is_order else RIDE_TRANSITIONS


def allowed_targets(
    request_type: RequestType, current: RequestStatus
) -> frozenset[RequestStatus]:
    return frozenset(transitions_for(request_type).get(current, set()))


def needs_accepted_offer(target: RequestStatus) -> bool:
    return target in _OFFER_GUARDED


def check_transition(
    request_type: RequestType,
    current: RequestStatus,
    target: RequestStatus,
    *,
    has_accepted_offer: bool = False,
) -> None:
    """Raise ``InvalidTransition`` unless *current* -> *target* is legal."""
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(
            current, target, f"Request is already {current.value}"
        )
    if target not in allowed_targets(request_type, current):
        raise InvalidTransition(current, target)
    if needs_accepted_offer(target) and not has_accepted_offer:
        raise InvalidTransition(
            current,
            target,
            f"Cannot move to {target.value} without an accepted dispatch offer",
        )


def is_post_assignment_cancel(current: RequestStatus, role: ActorRole) -> bool:
    """Requester cancelling after a fulfiller was assigned."""
    return role is ActorRole.REQUESTER and current not in PRE_ASSIGNMENT_STATUSES
