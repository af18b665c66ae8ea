from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..config import Settings, get_settings
from ..core.database import SessionLocal
from ..core.metrics import DispatchMetrics
from ..core.store import NotificationStore, SqlNotificationStore


@lru_cache
def get_store() -> NotificationStore:
    settings = get_settings()
    return SqlNotificationStore(
        SessionLocal,
        max_insert_attempts=settings.insert_max_attempts,
        backoff_seconds=settings.insert_backoff_seconds,
    )


def get_metrics(request: Request) -> DispatchMetrics:
    metrics = getattr(request.app.state, "metrics", None)
    if metrics is None:
        metrics = DispatchMetrics()
        request.app.state.metrics = metrics
    return metrics


def token_matches(header_value: str, expected: str) -> bool:
    # Exact comparison; both "<secret>" and "Bearer <secret>" are accepted
    return header_value == expected or header_value == f"Bearer {expected}"


def require_token(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.auth_token
    if not expected or not authorization or not token_matches(authorization, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token invalid",
            headers={"WWW-Authenticate": "Bearer"},
        )
