"""
Dispatch Coordinator
====================

Turns a ``confirmed`` request into an ``assigned`` one by offering it to
candidates one at a time.

Protocol per candidate
----------------------
1. Under the request lock: the request must still be ``confirmed`` and have
   no pending offer; create the offer with ``expires_at = now + window``.
2. Race the countdown against a response signal and the run's cancellation
   signal (``asyncio.wait(..., FIRST_COMPLETED)``).  The offer row is
   re-read every ``poll_seconds`` so responses handled by another process
   are seen too.
3. accepted -> done.  declined / expired -> next candidate.  Countdown
   elapsed while still pending -> CAS to ``expired`` -> next candidate.

When the list runs out a ``dispatch.no_candidates`` event is recorded and
``NoCandidatesAvailable`` raised; the request stays ``confirmed`` and the
background worker retries it later.

Concurrency
-----------
* All offer outcome changes are ``UPDATE ... WHERE outcome = 'pending'``, so
  of two racing accepts exactly one wins.
* Lateness is judged against the stored ``expires_at`` using the injected
  clock, never by whether the local timer fired.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from src.domain.entities import Actor, DispatchOffer, DomainEvent
from src.domain.enums import ActorRole, EventKind, OfferOutcome, RequestStatus
from src.domain.errors import (
    EngineError,
    NoCandidatesAvailable,
    NotFound,
    OfferExpired,
    PendingOfferExists,
)
from src.infrastructure.candidates import CandidateDirectory
from src.infrastructure.repositories import DispatchOfferRepository
from src.services.lifecycle import LifecycleService, RequestScope, storage_errors

logger = logging.getLogger(__name__)


def offer_event(
    offer: DispatchOffer,
    outcome: OfferOutcome,
    at: datetime,
    reason: Optional[str] = None,
) -> DomainEvent:
    kind = (
        EventKind.OFFER_CREATED
        if outcome is OfferOutcome.PENDING
        else EventKind.OFFER_RESOLVED
    )
    payload = {
        "offer_id": offer.id,
        "candidate_id": offer.candidate_id,
        "outcome": outcome.value,
        "expires_at": offer.expires_at.isoformat(),
    }
    if reason:
        payload["reason"] = reason
    return DomainEvent(kind=kind, request_id=offer.request_id, occurred_at=at, payload=payload)


@dataclass
class _Run:
    task: asyncio.Task
    cancelled: asyncio.Event


class DispatchCoordinator:
    def __init__(
        self,
        lifecycle: LifecycleService,
        candidates: CandidateDirectory,
        offer_window_seconds: float = 30.0,
        poll_seconds: float = 2.0,
    ):
        self.lifecycle = lifecycle
        self.candidates = candidates
        self.window_seconds = offer_window_seconds
        self.poll_seconds = poll_seconds
        self._runs: dict[int, _Run] = {}
        self._offer_signals: dict[int, asyncio.Event] = {}

    @property
    def clock(self):
        return self.lifecycle.clock

    # ── Run management ────────────────────────────────────────────────

    def is_running(self, request_id: int) -> bool:
        run = self._runs.get(request_id)
        return run is not None and not run.task.done()

    def start(self, request_id: int) -> asyncio.Task:
        """Start a background dispatch run unless one is already going."""
        run = self._runs.get(request_id)
        if run is not None and not run.task.done():
            return run.task
        cancelled = asyncio.Event()
        task = asyncio.create_task(
            self._run_guarded(request_id, cancelled), name=f"dispatch-{request_id}"
        )
        self._runs[request_id] = _Run(task, cancelled)
        task.add_done_callback(lambda t: self._forget(request_id, t))
        return task

    async def join(self, request_id: int) -> Optional[str]:
        """Wait for the current run of *request_id*, if any."""
        run = self._runs.get(request_id)
        if run is None:
            return None
        return await asyncio.shield(run.task)

    def cancel(self, request_id: int) -> None:
        run = self._runs.get(request_id)
        if run is not None:
            run.cancelled.set()

    def notify(self, offer_id: int) -> None:
        signal = self._offer_signals.get(offer_id)
        if signal is not None:
            signal.set()

    async def shutdown(self) -> None:
        tasks = [run.task for run in self._runs.values() if not run.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatch coordinator stopped (%d runs cancelled)", len(tasks))

    def _forget(self, request_id: int, task: asyncio.Task) -> None:
        run = self._runs.get(request_id)
        if run is not None and run.task is task:
            del self._runs[request_id]

    async def _run_guarded(
        self, request_id: int, cancelled: asyncio.Event
    ) -> Optional[str]:
        try:
            return await self.run(request_id, cancelled)
        except NoCandidatesAvailable as exc:
            logger.info(exc.message)
        except EngineError as exc:
            logger.warning("Dispatch of request %s stopped: %s", request_id, exc.message)
        except Exception:
            logger.exception("Dispatch of request %s failed", request_id)
        return None

    # ── Protocol ──────────────────────────────────────────────────────

    async def run(
        self, request_id: int, cancelled: Optional[asyncio.Event] = None
    ) -> Optional[str]:
        """
        Offer the request to each candidate in order.  Returns the id of the
        candidate who accepted, or None when the request stopped being
        dispatchable (cancelled, or moved on by someone else).
        """
        cancelled = cancelled or asyncio.Event()
        request = await self.lifecycle.get(request_id)
        if request.status is not RequestStatus.CONFIRMED:
            logger.info(
                "Request %s is %s; nothing to dispatch", request_id, request.status.value
            )
            return None

        candidates = await self.candidates.candidates_for(request)
        logger.info("Dispatching request %s to %d candidate(s)", request_id, len(candidates))

        for candidate_id in candidates:
            if cancelled.is_set():
                return None
            offer = await self.offer(request_id, candidate_id)
            if offer is None:
                return None
            outcome = await self._await_response(offer, cancelled)
            if outcome is None:
                logger.info("Dispatch of request %s cancelled", request_id)
                return None
            if outcome is OfferOutcome.ACCEPTED:
                logger.info("Request %s accepted by %s", request_id, candidate_id)
                return candidate_id

        if cancelled.is_set():
            return None
        await self._no_candidates(request_id, len(candidates))
        raise NoCandidatesAvailable(
            f"No driver accepted request {request_id}; it will be offered again shortly"
        )

    async def offer(self, request_id: int, candidate_id: str) -> Optional[DispatchOffer]:
        """Create a pending offer, or return None if the request left ``confirmed``."""
        offer_id: Optional[int] = None
        try:
            async with self.lifecycle.request_scope(request_id) as scope:
                request = scope.request
                if RequestStatus(request.status) is not RequestStatus.CONFIRMED:
                    return None
                repo = DispatchOfferRepository(scope.session)
                if await repo.get_pending(request_id) is not None:
                    raise PendingOfferExists(
                        f"Request {request_id} already has an outstanding offer"
                    )
                now = self.clock()
                try:
                    model = await repo.create(
                        request_id=request_id,
                        candidate_id=candidate_id,
                        offered_at=now,
                        expires_at=now + timedelta(seconds=self.window_seconds),
                    )
                except IntegrityError as exc:
                    raise PendingOfferExists(
                        f"Request {request_id} already has an outstanding offer"
                    ) from exc
                request.last_dispatch_at = now
                request.dispatch_attempts = (request.dispatch_attempts or 0) + 1
                offer = model.to_entity()
                offer_id = offer.id
                self._offer_signals[offer_id] = asyncio.Event()
                scope.record(offer_event(offer, OfferOutcome.PENDING, now))
        except BaseException:
            if offer_id is not None:
                self._offer_signals.pop(offer_id, None)
            raise
        logger.info(
            "Offered request %s to %s (offer %s, expires %s)",
            request_id, candidate_id, offer.id, offer.expires_at.isoformat(),
        )
        return offer

    async def _await_response(
        self, offer: DispatchOffer, cancelled: asyncio.Event
    ) -> Optional[OfferOutcome]:
        """Final outcome of *offer*, or None if the run was cancelled."""
        signal = self._offer_signals.setdefault(offer.id, asyncio.Event())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.window_seconds
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await self._race(signal, cancelled, min(remaining, self.poll_seconds))
                if cancelled.is_set():
                    return None
                signal.clear()
                outcome = await self._current_outcome(offer.id)
                if outcome is not OfferOutcome.PENDING:
                    return outcome
            return await self._expire(offer)
        finally:
            self._offer_signals.pop(offer.id, None)

    @staticmethod
    async def _race(
        signal: asyncio.Event, cancelled: asyncio.Event, timeout: float
    ) -> None:
        waiters = [
            asyncio.create_task(signal.wait()),
            asyncio.create_task(cancelled.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _current_outcome(self, offer_id: int) -> OfferOutcome:
        async with self.lifecycle.session_factory() as session:
            async with storage_errors():
                model = await DispatchOfferRepository(session).get_by_id(offer_id)
        if model is None:
            raise NotFound(f"Offer {offer_id} not found")
        return OfferOutcome(model.outcome)

    async def _expire(self, offer: DispatchOffer) -> OfferOutcome:
        async with self.lifecycle.request_scope(offer.request_id) as scope:
            repo = DispatchOfferRepository(scope.session)
            now = self.clock()
            if await repo.compare_and_set(
                offer.id, OfferOutcome.PENDING, OfferOutcome.EXPIRED, now
            ):
                scope.record(offer_event(offer, OfferOutcome.EXPIRED, now, reason="timeout"))
                logger.info("Offer %s to %s timed out", offer.id, offer.candidate_id)
                return OfferOutcome.EXPIRED
            current = await repo.get_by_id(offer.id)
            return OfferOutcome(current.outcome)

    async def _no_candidates(self, request_id: int, tried: int) -> None:
        async with self.lifecycle.request_scope(request_id) as scope:
            if RequestStatus(scope.request.status) is not RequestStatus.CONFIRMED:
                return
            now = self.clock()
            scope.request.last_dispatch_at = now
            scope.record(
                DomainEvent(
                    kind=EventKind.NO_CANDIDATES,
                    request_id=request_id,
                    occurred_at=now,
                    payload={"candidates_tried": tried},
                )
            )
        logger.warning("Request %s: no candidate accepted (%d tried)", request_id, tried)

    # ── Responses ─────────────────────────────────────────────────────

    async def respond(self, offer_id: int, candidate_id: str, accept: bool) -> bool:
        async with self.lifecycle.session_factory() as session:
            async with storage_errors():
                model = await DispatchOfferRepository(session).get_by_id(offer_id)
        if model is None or model.candidate_id != candidate_id:
            raise NotFound(f"Offer {offer_id} not found")

        late = False
        try:
            async with self.lifecycle.request_scope(model.request_id) as scope:
                late = await self._resolve(scope, offer_id, candidate_id, accept)
        finally:
            self.notify(offer_id)

        if late:
            logger.info("Late response from %s to offer %s rejected", candidate_id, offer_id)
            raise OfferExpired()
        return True

    async def _resolve(
        self, scope: RequestScope, offer_id: int, candidate_id: str, accept: bool
    ) -> bool:
        """Apply a response inside the request's unit of work.  True when late."""
        repo = DispatchOfferRepository(scope.session)
        offer = (await repo.get_by_id(offer_id)).to_entity()
        if not offer.is_pending:
            raise OfferExpired()

        now = self.clock()
        if offer.is_expired(now):
            # committed before the caller sees OfferExpired
            if await repo.compare_and_set(
                offer_id, OfferOutcome.PENDING, OfferOutcome.EXPIRED, now
            ):
                scope.record(offer_event(offer, OfferOutcome.EXPIRED, now, reason="late_response"))
            return True

        outcome = OfferOutcome.ACCEPTED if accept else OfferOutcome.DECLINED
        if not await repo.compare_and_set(offer_id, OfferOutcome.PENDING, outcome, now):
            raise OfferExpired()
        scope.record(offer_event(offer, outcome, now))

        if accept:
            scope.request.fulfiller_id = candidate_id
            await self.lifecycle.apply(
                scope,
                RequestStatus.ASSIGNED,
                Actor(id=candidate_id, role=ActorRole.FULFILLER),
            )
        else:
            logger.info("Offer %s declined by %s", offer_id, candidate_id)
        return False
