from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class DispatchMetrics:
    """Counters shared by the scheduler and the worker pool of one process."""

    ticks: int = 0
    claimed: int = 0
    deferred: int = 0
    stale_reclaimed: int = 0
    processed: int = 0
    tokens_succeeded: int = 0
    tokens_failed: int = 0
    gateway_errors: int = 0
    last_tick_at: Optional[datetime] = None
    last_cleanup_at: Optional[datetime] = None
    last_cleanup_deleted: int = 0

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self)
