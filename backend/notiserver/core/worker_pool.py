from __future__ import annotations

import asyncio
import time as time_module
from typing import List, Optional

from ..integrations.push_gateway import DeliveryReport, PushGateway, PushGatewayError
from .logger import get_logger
from .metrics import DispatchMetrics
from .store import Notification, NotificationStore, NotificationStoreError

log = get_logger(__name__)

_STOP = object()


class WorkerPool:
    """
    Fixed set of asyncio workers fed by one bounded queue.

    The queue holds at most worker_count notifications. Producers must use
    offer(), which never waits: a False return means the caller keeps
    ownership of the row and has to release its claim.

    Every dequeued notification is marked processed once the gateway call
    has been attempted, whatever the per-token outcome was. "processed"
    therefore means "attempted", and the outcome counts are stored with it.
    """

    def __init__(
        self,
        store: NotificationStore,
        gateway: PushGateway,
        *,
        worker_count: int = 10,
        metrics: Optional[DispatchMetrics] = None,
        logger=None,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.store = store
        self.gateway = gateway
        self.worker_count = worker_count
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or log
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=worker_count)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        for worker_id in range(1, self.worker_count + 1):
            self._tasks.append(
                asyncio.create_task(self._worker(worker_id), name=f"push-worker-{worker_id}")
            )
        self.logger.info("Started %d push workers", self.worker_count)

    def offer(self, notification: Notification) -> bool:
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            return False
        return True

    async def _worker(self, worker_id: int) -> None:
        while True:
            item = await self.queue.get()
            try:
                if item is _STOP:
                    return
                await self.process(item, worker_id)
            finally:
                self.queue.task_done()

    async def process(self, notification: Notification, worker_id: int = 0) -> DeliveryReport:
        start = time_module.perf_counter()
        try:
            report = await self.gateway.send(notification)
        except PushGatewayError as exc:
            self.metrics.gateway_errors += 1
            self.logger.error(
                "Worker-%d: gateway error for notification %s, batch abandoned: %s",
                worker_id,
                notification.id,
                exc,
            )
            report = DeliveryReport.all_failed(notification.device_tokens)
        except Exception:
            self.metrics.gateway_errors += 1
            self.logger.exception(
                "Worker-%d: unexpected error sending notification %s",
                worker_id,
                notification.id,
            )
            report = DeliveryReport.all_failed(notification.device_tokens)

        elapsed = time_module.perf_counter() - start
        self.logger.info(
            "Worker-%d: notification %s push time %.3fs, SuccessCount: %d, FailureCount: %d",
            worker_id,
            notification.id,
            elapsed,
            report.success_count,
            report.failure_count,
        )

        try:
            self.store.mark_processed(
                notification.id,
                success_count=report.success_count,
                failure_count=report.failure_count,
            )
        except NotificationStoreError as exc:
            # Row stays claimed; the claim lease hands it back to the scheduler later
            self.logger.error(
                "Worker-%d: could not mark notification %s processed: %s",
                worker_id,
                notification.id,
                exc,
            )
        else:
            self.metrics.processed += 1

        self.metrics.tokens_succeeded += report.success_count
        self.metrics.tokens_failed += report.failure_count
        return report

    async def stop(self) -> int:
        """
        Stop the workers after their in-flight item.

        Notifications still waiting in the queue are not sent; their claims
        are released so the next scheduler run picks them up again.
        Returns how many were handed back.
        """
        abandoned = 0
        while True:
            try:
                item = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.queue.task_done()
            if item is _STOP:
                continue
            try:
                self.store.mark_unclaimed(item.id)
                abandoned += 1
            except NotificationStoreError as exc:
                self.logger.error("Could not release notification %s: %s", item.id, exc)

        live = [t for t in self._tasks if not t.done()]
        for _ in live:
            self.queue.put_nowait(_STOP)
        if live:
            await asyncio.gather(*live, return_exceptions=True)
        self._tasks = []

        self.logger.info("Push workers stopped, %d queued notification(s) released", abandoned)
        return abandoned
