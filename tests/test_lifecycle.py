"""Lifecycle state machine: transition table, guards and the serialized service."""

import pytest

from src.domain.entities import Actor
from src.domain.enums import (
    ORDER_TRANSITIONS,
    RIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    ActorRole,
    RequestStatus,
    RequestType,
)
from src.domain.errors import InvalidTransition, NotFound, StaleState
from src.domain.lifecycle import (
    allowed_targets,
    check_transition,
    is_post_assignment_cancel,
    needs_accepted_offer,
)
from src.infrastructure.models import TripRequestModel
from src.services.lifecycle import storage_errors
from tests.conftest import OPERATOR, RIDER, food_params, ride_params

S = RequestStatus

RIDE_PATH = [S.CREATED, S.CONFIRMED, S.ASSIGNED, S.IN_PROGRESS, S.ARRIVED_DROPOFF, S.COMPLETED]
ORDER_PATH = [
    S.CREATED, S.CONFIRMED, S.ASSIGNED, S.IN_PROGRESS,
    S.PREPARING, S.READY, S.PICKED_UP, S.ON_THE_WAY, S.DELIVERED,
]


def _all_pairs():
    for request_type, table in ((RequestType.RIDE, RIDE_TRANSITIONS),
                                (RequestType.FOOD, ORDER_TRANSITIONS)):
        for current in RequestStatus:
            for target in RequestStatus:
                yield request_type, table, current, target


class TestTransitionTable:
    @pytest.mark.parametrize("request_type,table,current,target", list(_all_pairs()))
    def test_every_pair(self, request_type, table, current, target):
        legal = target in table.get(current, set())
        if legal:
            check_transition(request_type, current, target, has_accepted_offer=True)
        else:
            with pytest.raises(InvalidTransition):
                check_transition(request_type, current, target, has_accepted_offer=True)

    @pytest.mark.parametrize("path,request_type", [
        (RIDE_PATH, RequestType.RIDE),
        (ORDER_PATH, RequestType.GROCERY),
    ])
    def test_canonical_path_is_legal(self, path, request_type):
        for current, target in zip(path, path[1:]):
            check_transition(request_type, current, target, has_accepted_offer=True)

    def test_ride_may_complete_without_arrival(self):
        check_transition(RequestType.RIDE, S.IN_PROGRESS, S.COMPLETED)

    def test_skip_ahead_rejected(self):
        with pytest.raises(InvalidTransition):
            check_transition(RequestType.FOOD, S.PREPARING, S.PICKED_UP)

    def test_order_statuses_not_reachable_on_ride(self):
        assert S.PREPARING not in allowed_targets(RequestType.RIDE, S.IN_PROGRESS)
        assert S.ARRIVED_DROPOFF not in allowed_targets(RequestType.PHARMACY, S.IN_PROGRESS)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    @pytest.mark.parametrize("target", list(RequestStatus))
    def test_terminal_statuses_are_final(self, terminal, target):
        with pytest.raises(InvalidTransition):
            check_transition(RequestType.RIDE, terminal, target, has_accepted_offer=True)

    @pytest.mark.parametrize("current", [s for s in RequestStatus if s not in TERMINAL_STATUSES])
    def test_any_live_status_can_cancel(self, current):
        table = ORDER_TRANSITIONS if current in ORDER_TRANSITIONS else RIDE_TRANSITIONS
        request_type = RequestType.FOOD if table is ORDER_TRANSITIONS else RequestType.RIDE
        check_transition(request_type, current, S.CANCELLED)

    def test_assignment_needs_accepted_offer(self):
        assert needs_accepted_offer(S.ASSIGNED)
        assert needs_accepted_offer(S.IN_PROGRESS)
        with pytest.raises(InvalidTransition, match="accepted dispatch offer"):
            check_transition(RequestType.RIDE, S.CONFIRMED, S.ASSIGNED)
        with pytest.raises(InvalidTransition):
            check_transition(RequestType.RIDE, S.ASSIGNED, S.IN_PROGRESS)

    def test_post_assignment_cancel_flag(self):
        assert not is_post_assignment_cancel(S.CONFIRMED, ActorRole.REQUESTER)
        assert is_post_assignment_cancel(S.ASSIGNED, ActorRole.REQUESTER)
        assert not is_post_assignment_cancel(S.ASSIGNED, ActorRole.OPERATOR)


class TestLifecycleService:
    @pytest.mark.asyncio
    async def test_create_emits_event_without_from_status(self, engine, sink):
        trip = await engine.create_request(ride_params())
        assert trip.status is S.CREATED
        assert trip.version == 1
        event = sink.events[0]
        assert event.payload["from_status"] is None
        assert event.payload["to_status"] == "created"
        assert event.dedup_key == f"{trip.id}:created"

    @pytest.mark.asyncio
    async def test_illegal_transition_leaves_state_untouched(self, engine, sink):
        trip = await engine.create_request(food_params())
        with pytest.raises(InvalidTransition):
            await engine.advance_status(trip.id, S.PREPARING, OPERATOR)

        after = await engine.get_request(trip.id)
        assert after.status is S.CREATED
        assert after.version == trip.version
        assert sink.statuses(trip.id) == ["created"]

    @pytest.mark.asyncio
    async def test_advance_to_assigned_is_dispatch_only(self, engine):
        trip = await engine.create_request(ride_params())
        with pytest.raises(InvalidTransition, match="dispatch offer"):
            await engine.advance_status(trip.id, S.ASSIGNED, OPERATOR)

    @pytest.mark.asyncio
    async def test_cancel_before_assignment(self, engine, sink):
        trip = await engine.create_request(ride_params())
        cancelled = await engine.cancel_request(trip.id, RIDER, "changed my mind")

        assert cancelled.status is S.CANCELLED
        assert cancelled.cancelled_by == RIDER.id
        assert cancelled.cancellation_reason == "changed my mind"
        assert cancelled.post_assignment_cancellation is False
        assert cancelled.cancelled_at is not None
        assert sink.events[-1].payload["reason"] == "changed my mind"

    @pytest.mark.asyncio
    async def test_advance_status_routes_cancel(self, engine):
        trip = await engine.create_request(ride_params())
        cancelled = await engine.advance_status(trip.id, S.CANCELLED, OPERATOR)
        assert cancelled.status is S.CANCELLED
        assert cancelled.cancelled_by == OPERATOR.id

    @pytest.mark.asyncio
    async def test_cancelled_request_cannot_be_revived(self, engine):
        trip = await engine.create_request(ride_params())
        await engine.cancel_request(trip.id, RIDER)
        with pytest.raises(InvalidTransition, match="already cancelled"):
            await engine.confirm_request(trip.id, RIDER)

    @pytest.mark.asyncio
    async def test_other_requesters_cannot_touch_request(self, engine):
        trip = await engine.create_request(ride_params())
        with pytest.raises(NotFound):
            await engine.cancel_request(trip.id, Actor("rider-9", ActorRole.REQUESTER))

    @pytest.mark.asyncio
    async def test_unknown_request(self, engine):
        with pytest.raises(NotFound):
            await engine.confirm_request(999, RIDER)

    @pytest.mark.asyncio
    async def test_confirm_stamps_milestone(self, engine, clock):
        trip = await engine.create_request(ride_params())
        confirmed = await engine.confirm_request(trip.id, RIDER)
        assert confirmed.status is S.CONFIRMED
        assert confirmed.confirmed_at == clock()
        assert confirmed.version == trip.version + 1


class TestOptimisticConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_write_surfaces_as_stale_state(self, engine, session_factory):
        trip = await engine.create_request(ride_params())

        async with session_factory() as first, session_factory() as second:
            a = await first.get(TripRequestModel, trip.id)
            b = await second.get(TripRequestModel, trip.id)
            a.payment_method = "card"
            await first.commit()

            b.payment_method = "gcash"
            with pytest.raises(StaleState):
                async with storage_errors():
                    await second.commit()
