from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, tzinfo
from typing import Optional

from .logger import get_logger
from .metrics import DispatchMetrics
from .store import NotificationStore

log = get_logger(__name__)


class RetentionJob:
    """Deletes notifications older than the retention window once a day, then compacts."""

    def __init__(
        self,
        store: NotificationStore,
        *,
        retention_hours: float = 24.0,
        run_hour: int = 0,
        tz: Optional[tzinfo] = None,
        metrics: Optional[DispatchMetrics] = None,
        stop_event: Optional[asyncio.Event] = None,
        logger=None,
    ):
        if not 0 <= run_hour <= 23:
            raise ValueError("run_hour must be between 0 and 23")
        self.store = store
        self.retention = timedelta(hours=retention_hours)
        self.run_hour = run_hour
        self.tz = tz
        self.metrics = metrics
        self.stop_event = stop_event or asyncio.Event()
        self.logger = logger or log

    def next_run_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.run_hour, minute=0, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def run_once(self, now: Optional[datetime] = None) -> int:
        # created_at is stored as naive UTC
        threshold = (now or datetime.utcnow()) - self.retention
        deleted = self.store.delete_older_than(threshold)
        self.store.compact()

        if self.metrics is not None:
            self.metrics.last_cleanup_at = now or datetime.utcnow()
            self.metrics.last_cleanup_deleted = deleted
        self.logger.info(
            "Retention: deleted %d notification(s) created before %s",
            deleted,
            threshold.isoformat(),
        )
        return deleted

    async def run(self) -> None:
        while not self.stop_event.is_set():
            now = datetime.now(self.tz)
            next_run = self.next_run_after(now)
            # timestamp() keeps the delay right across DST changes
            delay = max(next_run.timestamp() - now.timestamp(), 0.0)
            self.logger.info("Next retention run at %s", next_run.isoformat())

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            try:
                self.run_once()
            except Exception:
                self.logger.exception("Retention run failed, waiting for next boundary")
