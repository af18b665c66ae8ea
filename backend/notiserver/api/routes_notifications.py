import time as time_module
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from ..core.logger import get_logger
from ..core.store import Notification, NotificationStore, StorageError
from .deps import get_store, require_token

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_token)],
)
log = get_logger(__name__)


class NotificationRequest(BaseModel):
    message: str = ""
    title: str = ""
    body: str = ""
    image_url: str = ""
    device_tokens: List[str]
    analytics_label: str = ""
    data: Dict[str, str] = Field(default_factory=dict)

    @field_validator("device_tokens")
    @classmethod
    def validate_device_tokens(cls, v: List[str]) -> List[str]:
        tokens = [t.strip() for t in v if t and t.strip()]
        if not tokens:
            raise ValueError("device_tokens must contain at least one token")
        return tokens


class NotificationAck(BaseModel):
    message: str
    id: int


@router.post("/send", response_model=NotificationAck)
def send_notification(
    payload: NotificationRequest,
    store: NotificationStore = Depends(get_store),
):
    """
    Store the notification for asynchronous dispatch.
    Success only means the row is durable; delivery happens later.
    """
    start = time_module.perf_counter()

    try:
        notification_id = store.insert(
            Notification(
                message=payload.message,
                title=payload.title,
                body=payload.body,
                image_url=payload.image_url,
                device_tokens=payload.device_tokens,
                analytics_label=payload.analytics_label,
                data=payload.data,
            )
        )
    except StorageError as exc:
        log.error("Failed to save notification: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save notification",
        )

    log.info(
        "Stored notification %d: title=%r, %d token(s), label=%r in %.1fms",
        notification_id,
        payload.title,
        len(payload.device_tokens),
        payload.analytics_label,
        (time_module.perf_counter() - start) * 1000.0,
    )
    return NotificationAck(message="Message Received", id=notification_id)
