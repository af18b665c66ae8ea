from .notification import NotificationRecord


__all__ = [
    "NotificationRecord",
]
