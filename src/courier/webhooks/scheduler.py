"""Retry scheduling for failed deliveries.

Two paths bring a delivery back to the pool:

- ``schedule`` arms an in-process timer for a delivery's ``next_retry_at``.
  Cheap, but lost on restart.
- ``reap`` scans storage for RETRYING deliveries that are due and PENDING
  deliveries that were never picked up. It runs at startup and then
  periodically, so no retry depends on a timer surviving.

Both may submit the same delivery; the worker's claim lets only one of
them through.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from courier.logging import get_logger
from courier.models import Delivery, DeliveryStatus, utc_now

if TYPE_CHECKING:
    from courier.config import Settings
    from courier.storage import CourierStorage
    from courier.webhooks.dispatcher import Submit
    from courier.webhooks.ledger import DeliveryLedger

logger = get_logger(__name__)

# Upper bound on deliveries re-admitted by one reaper pass
REAP_BATCH_SIZE = 500


def compute_backoff(attempts: int, table: Sequence[int]) -> int:
    """Delay in seconds before the retry following attempt number ``attempts``.

    The table is indexed by ``attempts - 1`` and clamped to its last entry.
    """
    if not table:
        raise ValueError("backoff table must not be empty")
    index = min(max(attempts, 1), len(table)) - 1
    return int(table[index])


class RetryScheduler:
    """Brings due deliveries back to the delivery pool.

    Example:
        ```python
        scheduler = RetryScheduler(storage, pool.submit, settings, ledger=ledger)
        await scheduler.start()   # immediate reap, then periodic
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        storage: CourierStorage,
        submit: Submit,
        settings: Settings,
        ledger: DeliveryLedger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._submit = submit
        self._ledger = ledger
        self._clock = clock
        self._interval = settings.retry_scan_interval_seconds
        self._pending_grace = timedelta(seconds=settings.pending_grace_seconds)
        self._retention_days = settings.delivery_retention_days
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def scheduled(self) -> list[str]:
        """IDs of deliveries with an armed retry timer."""
        return list(self._timers)

    def schedule(self, delivery: Delivery) -> None:
        """Arm a timer that submits ``delivery`` at its ``next_retry_at``.

        A later call for the same delivery replaces the earlier timer.
        """
        if delivery.status != DeliveryStatus.RETRYING or delivery.next_retry_at is None:
            return

        delay = max(0.0, (delivery.next_retry_at - self._clock()).total_seconds())
        self._cancel_timer(delivery.id)
        loop = asyncio.get_running_loop()
        self._timers[delivery.id] = loop.call_later(delay, self._fire, delivery.id)
        logger.debug(
            "Retry scheduled",
            delivery_id=delivery.id,
            attempts=delivery.attempts,
            delay_seconds=delay,
        )

    async def reap(self, now: datetime | None = None) -> int:
        """Submit every due retry and every stale pending delivery.

        Deliveries still leased by a worker are left to that worker.

        Args:
            now: Reference time. Defaults to the scheduler clock.

        Returns:
            Number of deliveries submitted.
        """
        now = now or self._clock()
        due = await self._storage.find_due_retries(now, limit=REAP_BATCH_SIZE)
        stale = await self._storage.find_stale_pending(
            now - self._pending_grace, limit=REAP_BATCH_SIZE
        )

        submitted: set[str] = set()
        leased = 0
        for delivery in [*due, *stale]:
            if delivery.id in submitted:
                continue
            if delivery.claimed_until is not None and delivery.claimed_until > now:
                leased += 1
                continue
            self._cancel_timer(delivery.id)
            self._submit(delivery.id)
            submitted.add(delivery.id)

        if submitted:
            logger.info(
                "Reaper re-admitted deliveries",
                due_retries=len(due),
                stale_pending=len(stale),
                leased=leased,
            )
        return len(submitted)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Purge terminal deliveries older than the retention window.

        Returns:
            Number of deliveries purged (0 when retention is disabled).
        """
        if self._ledger is None or self._retention_days <= 0:
            return 0
        now = now or self._clock()
        return await self._ledger.purge(now - timedelta(days=self._retention_days))

    async def start(self) -> None:
        """Run one reaper pass now, then keep reaping in the background."""
        if self.running:
            return
        await self._tick()
        self._task = asyncio.create_task(self._run(), name="courier-retry-reaper")
        logger.info("Retry scheduler started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Stop the background loop and drop all armed timers."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for delivery_id in list(self._timers):
            self._cancel_timer(delivery_id)
        logger.info("Retry scheduler stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self.reap()
            await self.purge_expired()
        except Exception:
            logger.exception("Retry reaper pass failed")

    def _fire(self, delivery_id: str) -> None:
        self._timers.pop(delivery_id, None)
        self._submit(delivery_id)

    def _cancel_timer(self, delivery_id: str) -> None:
        handle = self._timers.pop(delivery_id, None)
        if handle is not None:
            handle.cancel()


__all__ = [
    "REAP_BATCH_SIZE",
    "RetryScheduler",
    "compute_backoff",
]
