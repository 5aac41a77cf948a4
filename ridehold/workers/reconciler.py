"""
Payment Reconciliation Worker
=============================

Runs every ``RECONCILE_INTERVAL_SECONDS`` (default 300 s).

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance sweeps at a time
  across multiple API processes.
* **SELECT … FOR UPDATE** on each trip row keeps the sweep from settling a
  trip that a dispute resolution is touching at the same moment.

Work per cycle
--------------
1. Release every payment HELD for longer than the dispute window with no
   open dispute (escrow goes to the driver).
2. Release authorizations still live on cancelled trips, left behind when a
   release failed at cancel time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ridehold.config import settings
from ridehold.infrastructure.database import async_session_factory
from ridehold.infrastructure.locks import DistributedLock
from ridehold.infrastructure.processor import PaymentProcessor
from ridehold.infrastructure.redis_client import get_redis
from ridehold.services.disputes import DisputeResolutionEngine
from ridehold.services.ledger import PaymentAuthorizationLedger

logger = logging.getLogger(__name__)

LOCK_KEY = "payment_reconciliation"

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_reconcile_loop(processor: PaymentProcessor) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(processor))
    logger.info(
        "Reconciliation worker started (interval=%ds)",
        settings.reconcile_interval_seconds,
    )


async def stop_reconcile_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Reconciliation worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(processor: PaymentProcessor) -> None:
    """Periodic loop: run a sweep then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_reconcile_cycle(processor)
        except Exception:
            logger.exception("Unhandled error in reconciliation cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.reconcile_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_reconcile_cycle(
    processor: PaymentProcessor, session_factory=async_session_factory, redis=None
) -> Optional[dict[str, int]]:
    """Execute one sweep.  Returns counts, or ``None`` if another worker holds the lock."""
    redis = redis or await get_redis()
    lock = DistributedLock(redis, LOCK_KEY, ttl_seconds=120)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return None

    try:
        async with session_factory() as session:
            ledger = PaymentAuthorizationLedger(session, processor)
            engine = DisputeResolutionEngine(session, ledger)

            released = await engine.auto_resolve_held_payments()
            orphaned = await ledger.release_orphaned()
            await session.commit()

        if released or orphaned:
            logger.info(
                "Reconciliation cycle: %d held payments released, %d orphaned holds released",
                len(released),
                orphaned,
            )
        return {"auto_released": len(released), "orphaned_released": orphaned}
    finally:
        await lock.release()
