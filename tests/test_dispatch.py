"""
Dispatch protocol tests.

Demonstrates:
1. Accept assigns the request; decline and timeout move to the next candidate.
2. A late accept (after ``expires_at``) is rejected and the offer expired.
3. Cancellation expires the outstanding offer and stops the run.
4. Two racing accepts: exactly one wins.
5. Exhausted candidates leave the request ``confirmed`` for a later retry.
"""

import asyncio

import pytest

from src.domain.entities import Actor
from src.domain.enums import ActorRole, OfferOutcome, RequestStatus, RequestType
from src.domain.errors import (
    NoCandidatesAvailable,
    NotFound,
    OfferExpired,
    PendingOfferExists,
)
from src.infrastructure.candidates import StaticCandidateDirectory
from src.infrastructure.locks import LocalLockManager
from src.services.engine import TripEngine
from src.workers.dispatcher import run_dispatch_cycle
from tests.conftest import RIDER, food_params, pending_offer, ride_params, wait_for

S = RequestStatus


def _driver(driver_id: str) -> Actor:
    return Actor(driver_id, ActorRole.FULFILLER)


async def _confirmed(engine, params=None):
    trip = await engine.create_request(params or ride_params())
    await engine.confirm_request(trip.id, RIDER)
    return trip


async def _offer_to(engine, request_id: int, candidate_id: str):
    async def _find():
        offers = await engine.list_offers(request_id)
        return next(
            (o for o in offers if o.candidate_id == candidate_id and o.is_pending), None
        )

    return await wait_for(_find)


class TestOfferAcceptance:
    @pytest.mark.asyncio
    async def test_first_candidate_accepts(self, engine, sink, clock):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        assert offer.candidate_id == "drv-1"
        assert (offer.expires_at - offer.offered_at).total_seconds() == 30

        assert await engine.respond_to_offer(offer.id, "drv-1", accept=True) is True
        assert await engine.dispatch.join(trip.id) == "drv-1"

        assigned = await engine.get_request(trip.id)
        assert assigned.status is S.ASSIGNED
        assert assigned.fulfiller_id == "drv-1"
        assert assigned.assigned_at == clock()
        assert sink.kinds(trip.id) == [
            "request.transition",  # created
            "request.transition",  # confirmed
            "offer.created",
            "offer.resolved",
            "request.transition",  # assigned
        ]

    @pytest.mark.asyncio
    async def test_decline_moves_to_next_candidate(self, engine):
        trip = await _confirmed(engine)
        first = await _offer_to(engine, trip.id, "drv-1")
        await engine.respond_to_offer(first.id, "drv-1", accept=False)

        second = await _offer_to(engine, trip.id, "drv-2")
        assert second.id != first.id
        assert (await engine.get_offer(first.id)).outcome is OfferOutcome.DECLINED
        assert (await engine.get_request(trip.id)).status is S.CONFIRMED

    @pytest.mark.asyncio
    async def test_late_accept_is_rejected(self, engine, clock):
        trip = await _confirmed(engine)
        offer = await _offer_to(engine, trip.id, "drv-1")

        clock.advance(31)
        with pytest.raises(OfferExpired):
            await engine.respond_to_offer(offer.id, "drv-1", accept=True)

        assert (await engine.get_offer(offer.id)).outcome is OfferOutcome.EXPIRED
        assert (await engine.get_request(trip.id)).status is S.CONFIRMED
        nxt = await _offer_to(engine, trip.id, "drv-2")
        assert nxt.offered_at == clock()

    @pytest.mark.asyncio
    async def test_accept_exactly_at_deadline_is_late(self, engine, clock):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        clock.advance(30)
        with pytest.raises(OfferExpired):
            await engine.respond_to_offer(offer.id, "drv-1", accept=True)

    @pytest.mark.asyncio
    async def test_response_to_resolved_offer(self, engine):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        await engine.respond_to_offer(offer.id, "drv-1", accept=False)
        with pytest.raises(OfferExpired, match="no longer available"):
            await engine.respond_to_offer(offer.id, "drv-1", accept=True)

    @pytest.mark.asyncio
    async def test_wrong_candidate(self, engine):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        with pytest.raises(NotFound):
            await engine.respond_to_offer(offer.id, "drv-2", accept=True)

    @pytest.mark.asyncio
    async def test_one_outstanding_offer_per_request(self, engine):
        trip = await _confirmed(engine)
        await pending_offer(engine, trip.id)
        with pytest.raises(PendingOfferExists):
            await engine.dispatch.offer(trip.id, "drv-9")
        assert len(await engine.list_offers(trip.id)) == 1

    @pytest.mark.asyncio
    async def test_racing_accepts_have_one_winner(self, engine, sink):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)

        results = await asyncio.gather(
            engine.respond_to_offer(offer.id, "drv-1", accept=True),
            engine.respond_to_offer(offer.id, "drv-1", accept=True),
            return_exceptions=True,
        )
        assert sorted(type(r).__name__ for r in results) == ["OfferExpired", "bool"]
        assert sink.statuses(trip.id).count("assigned") == 1


class TestFulfillment:
    @pytest.mark.asyncio
    async def test_ride_runs_to_completion(self, engine, clock, sink):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        await engine.respond_to_offer(offer.id, "drv-1", accept=True)

        driver = _driver("drv-1")
        for status in (S.IN_PROGRESS, S.ARRIVED_DROPOFF, S.COMPLETED):
            clock.advance(60)
            current = await engine.advance_status(trip.id, status, driver)
            assert current.status is status

        assert current.started_at is not None
        assert current.completed_at == clock()
        assert sink.statuses(trip.id) == [
            "created", "confirmed", "assigned", "in_progress", "arrived_dropoff", "completed",
        ]

    @pytest.mark.asyncio
    async def test_order_runs_to_delivery(self, engine):
        trip = await _confirmed(engine, food_params())
        offer = await pending_offer(engine, trip.id)
        assert offer.candidate_id == "drv-4"
        await engine.respond_to_offer(offer.id, "drv-4", accept=True)

        driver = _driver("drv-4")
        for status in (S.IN_PROGRESS, S.PREPARING, S.READY, S.PICKED_UP, S.ON_THE_WAY, S.DELIVERED):
            current = await engine.advance_status(trip.id, status, driver)
        assert current.status is S.DELIVERED

    @pytest.mark.asyncio
    async def test_other_driver_cannot_advance(self, engine):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        await engine.respond_to_offer(offer.id, "drv-1", accept=True)
        with pytest.raises(NotFound):
            await engine.advance_status(trip.id, S.IN_PROGRESS, _driver("drv-2"))


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_expires_outstanding_offer(self, engine, sink):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)

        cancelled = await engine.cancel_request(trip.id, RIDER, "found another ride")
        assert cancelled.status is S.CANCELLED
        assert cancelled.post_assignment_cancellation is False
        assert await engine.dispatch.join(trip.id) is None
        assert not engine.dispatch.is_running(trip.id)

        offers = await engine.list_offers(trip.id)
        assert [(o.id, o.outcome) for o in offers] == [(offer.id, OfferOutcome.EXPIRED)]
        resolved = [e for e in sink.events if e.kind.value == "offer.resolved"]
        assert resolved[-1].payload["reason"] == "request_cancelled"

        with pytest.raises(OfferExpired):
            await engine.respond_to_offer(offer.id, "drv-1", accept=True)

    @pytest.mark.asyncio
    async def test_cancel_after_assignment(self, engine, clock):
        trip = await _confirmed(engine)
        offer = await pending_offer(engine, trip.id)
        await engine.respond_to_offer(offer.id, "drv-1", accept=True)

        cancelled = await engine.cancel_request(trip.id, RIDER)
        assert cancelled.status is S.CANCELLED
        assert cancelled.post_assignment_cancellation is True
        assert all(not o.is_pending for o in await engine.list_offers(trip.id))

        clock.advance(3600)
        assert await engine.dispatch_pending() == 0
        assert len(await engine.list_offers(trip.id)) == 1


class TestExhaustion:
    @pytest.mark.asyncio
    async def test_no_candidates_keeps_request_confirmed(self, engine, sink):
        trip = await _confirmed(engine, food_params(request_type=RequestType.PHARMACY))
        await engine.dispatch.join(trip.id)

        assert "dispatch.no_candidates" in sink.kinds(trip.id)
        assert (await engine.get_request(trip.id)).status is S.CONFIRMED
        with pytest.raises(NoCandidatesAvailable):
            await engine.dispatch.run(trip.id)

    @pytest.mark.asyncio
    async def test_all_candidates_decline(self, engine, sink):
        trip = await _confirmed(engine, ride_params(vehicle_class="car"))
        offer = await pending_offer(engine, trip.id)
        await engine.respond_to_offer(offer.id, "drv-car-1", accept=False)
        await engine.dispatch.join(trip.id)

        event = [e for e in sink.events if e.kind.value == "dispatch.no_candidates"][0]
        assert event.payload["candidates_tried"] == 1
        trip = await engine.get_request(trip.id)
        assert trip.status is S.CONFIRMED
        assert trip.dispatch_attempts == 1

    @pytest.mark.asyncio
    async def test_worker_retries_after_backoff(self, engine, clock):
        trip = await _confirmed(engine, food_params(request_type=RequestType.PHARMACY))
        await engine.dispatch.join(trip.id)

        assert await run_dispatch_cycle(engine) == (0, 0)
        clock.advance(61)
        started, _ = await run_dispatch_cycle(engine)
        assert started == 1
        await engine.dispatch.join(trip.id)


class TestCountdown:
    @pytest.mark.asyncio
    async def test_unanswered_offer_times_out(
        self, session_factory, sink, clock, test_settings
    ):
        config = test_settings.model_copy(update={"offer_window_seconds": 0.2})
        engine = TripEngine(
            session_factory,
            LocalLockManager(),
            sink,
            StaticCandidateDirectory({"ride:car": ["drv-a", "drv-b"]}),
            config=config,
            clock=clock,
        )
        try:
            trip = await engine.create_request(ride_params(vehicle_class="car"))
            await engine.confirm_request(trip.id, RIDER)
            await engine.dispatch.join(trip.id)

            offers = await engine.list_offers(trip.id)
            assert [o.candidate_id for o in offers] == ["drv-a", "drv-b"]
            assert all(o.outcome is OfferOutcome.EXPIRED for o in offers)
            assert (await engine.get_request(trip.id)).status is S.CONFIRMED
        finally:
            await engine.shutdown()
