"""
Background Dispatch Worker
==========================

Runs every ``DISPATCH_WORKER_INTERVAL_SECONDS`` (default 15 s).

Each cycle
----------
1. Start a dispatch run for every ``confirmed`` request that has no pending
   offer and whose retry backoff (``DISPATCH_RETRY_SECONDS``) has elapsed.
   This picks up requests whose previous run ended in
   ``NoCandidatesAvailable`` and requests confirmed on a process that died.
2. Re-publish outbox events whose first delivery failed.

Concurrency safety
------------------
* The ``dispatch_worker`` lock (Redis when ``LOCK_BACKEND=redis``) is taken
  without waiting, so only one process runs a cycle at a time.
* Each dispatch run serializes on its own request lock, and the partial
  unique index on pending offers rejects a second concurrent offer.
"""

from __future__ import annotations

import asyncio
import logging

from src.config import settings
from src.domain.errors import Unavailable
from src.services.engine import TripEngine

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_dispatch_loop(engine: TripEngine) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(engine))
    logger.info(
        "Dispatch worker started (interval=%ds)",
        settings.dispatch_worker_interval_seconds,
    )


async def stop_dispatch_loop() -> None:
    global _task, _stop_event
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    _task = _stop_event = None
    logger.info("Dispatch worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(engine: TripEngine) -> None:
    assert _stop_event is not None
    stop = _stop_event
    while not stop.is_set():
        try:
            await run_dispatch_cycle(engine)
        except Exception:
            logger.exception("Unhandled error in dispatch cycle")
        try:
            await asyncio.wait_for(
                stop.wait(), timeout=settings.dispatch_worker_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_dispatch_cycle(engine: TripEngine) -> tuple[int, int]:
    """One cycle.  Returns ``(dispatch runs started, events re-published)``."""
    try:
        async with engine.locks.hold("dispatch_worker", wait=0):
            started = await engine.dispatch_pending()
            relayed = await engine.lifecycle.relay_events(
                settings.outbox_relay_after_seconds
            )
    except Unavailable as exc:
        # usually the lock is held by another worker
        logger.debug("Dispatch cycle skipped: %s", exc.message)
        return 0, 0

    if started or relayed:
        logger.info(
            "Dispatch cycle: %d run(s) started, %d event(s) re-published",
            started, relayed,
        )
    return started, relayed
