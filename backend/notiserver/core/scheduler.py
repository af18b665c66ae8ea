from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .logger import get_logger
from .metrics import DispatchMetrics
from .store import NotificationStore
from .worker_pool import WorkerPool

log = get_logger(__name__)


@dataclass
class TickResult:
    fetched: int = 0
    claimed: int = 0
    enqueued: int = 0
    deferred: int = 0
    reclaimed: int = 0


class DispatchScheduler:
    """
    Polls the store for eligible notifications and hands them to the pool.

    Each tick: release expired claims, fetch a batch of eligible rows, claim
    each one and offer it to the pool. When the pool queue is full the claim
    is released again and the rest of the batch is left for the next tick.
    The scheduler never waits for queue capacity.
    """

    def __init__(
        self,
        store: NotificationStore,
        pool: WorkerPool,
        *,
        interval_seconds: float = 5.0,
        batch_size: int = 100,
        claim_timeout_seconds: float = 300.0,
        metrics: Optional[DispatchMetrics] = None,
        stop_event: Optional[asyncio.Event] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        logger=None,
    ):
        self.store = store
        self.pool = pool
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.claim_timeout_seconds = claim_timeout_seconds
        self.metrics = metrics or pool.metrics
        self.stop_event = stop_event or asyncio.Event()
        self.clock = clock
        self.logger = logger or log

    async def run_once(self) -> TickResult:
        result = TickResult()
        now = self.clock()
        self.metrics.ticks += 1
        self.metrics.last_tick_at = now

        if self.claim_timeout_seconds > 0:
            cutoff = now - timedelta(seconds=self.claim_timeout_seconds)
            result.reclaimed = self.store.reclaim_stale(cutoff)
            if result.reclaimed:
                self.metrics.stale_reclaimed += result.reclaimed
                self.logger.warning(
                    "Released %d notification(s) claimed before %s",
                    result.reclaimed,
                    cutoff.isoformat(),
                )

        pending = self.store.fetch_pending_unclaimed(self.batch_size)
        result.fetched = len(pending)

        for notification in pending:
            if not self.store.mark_claimed(notification.id):
                # Another claimer got there first
                continue
            result.claimed += 1
            self.metrics.claimed += 1

            if self.pool.offer(notification):
                result.enqueued += 1
                continue

            self.store.mark_unclaimed(notification.id)
            result.deferred += 1
            self.metrics.deferred += 1
            self.logger.info(
                "Worker queue full, notification %s deferred to next tick",
                notification.id,
            )
            break

        if result.fetched:
            self.logger.debug(
                "Tick: fetched=%d claimed=%d enqueued=%d deferred=%d",
                result.fetched,
                result.claimed,
                result.enqueued,
                result.deferred,
            )
        return result

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when stop was requested."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self) -> None:
        self.logger.info(
            "Dispatch scheduler started (interval %.1fs, batch %d)",
            self.interval_seconds,
            self.batch_size,
        )
        while not self.stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                # Storage hiccups must not kill the loop
                self.logger.exception(
                    "Dispatch tick failed, retrying in %.1fs", self.interval_seconds
                )
            if await self._sleep(self.interval_seconds):
                break
        self.logger.info("Dispatch scheduler stopped")

    def stop(self) -> None:
        self.stop_event.set()
