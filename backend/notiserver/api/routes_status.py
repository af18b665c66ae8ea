from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..core.metrics import DispatchMetrics
from ..core.store import NotificationStore, StorageError
from .deps import get_metrics, get_store, require_token

router = APIRouter(tags=["status"])


class HealthResponse(BaseModel):
    message: str
    time: datetime


class QueueCounts(BaseModel):
    pending: int
    processing: int
    processed: int
    total: int


class DispatchStats(BaseModel):
    ticks: int
    claimed: int
    deferred: int
    stale_reclaimed: int
    processed: int
    tokens_succeeded: int
    tokens_failed: int
    gateway_errors: int
    last_tick_at: Optional[datetime]
    last_cleanup_at: Optional[datetime]
    last_cleanup_deleted: int


class StatusResponse(BaseModel):
    now: datetime
    queue: QueueCounts
    dispatch: DispatchStats


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(message="Alive", time=datetime.utcnow())


@router.get("/status", response_model=StatusResponse, dependencies=[Depends(require_token)])
def dispatch_status(
    store: NotificationStore = Depends(get_store),
    metrics: DispatchMetrics = Depends(get_metrics),
):
    try:
        counts = store.counts()
    except StorageError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification store unavailable",
        )

    return StatusResponse(
        now=datetime.utcnow(),
        queue=QueueCounts(**counts),
        dispatch=DispatchStats(**metrics.snapshot()),
    )
