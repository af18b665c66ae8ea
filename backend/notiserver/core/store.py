from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models import NotificationRecord
from .logger import get_logger

log = get_logger(__name__)

Clock = Callable[[], datetime]


class NotificationStoreError(Exception):
    pass


class StorageError(NotificationStoreError):
    """Raised when the backing storage rejects or cannot complete an operation."""


@dataclass
class Notification:
    device_tokens: List[str]
    title: str = ""
    body: str = ""
    image_url: str = ""
    message: str = ""
    analytics_label: str = ""
    data: Dict[str, str] = field(default_factory=dict)

    id: Optional[int] = None
    created_at: Optional[datetime] = None
    processed: bool = False
    processing: bool = False
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0


def _check_tokens(notification: Notification) -> None:
    if not notification.device_tokens:
        raise ValueError("notification must carry at least one device token")


class NotificationStore(ABC):
    """
    Durable outbox for notifications and their dispatch state.

    A row is eligible for dispatch while processed and processing are both
    false. mark_claimed is the only transition out of that state and must be
    atomic per row.
    """

    @abstractmethod
    def insert(self, notification: Notification) -> int: ...

    @abstractmethod
    def get(self, notification_id: int) -> Optional[Notification]: ...

    @abstractmethod
    def fetch_pending_unclaimed(self, limit: int) -> List[Notification]: ...

    @abstractmethod
    def mark_claimed(self, notification_id: int) -> bool:
        """Return True only if this call moved the row from eligible to processing."""

    @abstractmethod
    def mark_unclaimed(self, notification_id: int) -> None: ...

    @abstractmethod
    def mark_processed(
        self, notification_id: int, success_count: int = 0, failure_count: int = 0
    ) -> None: ...

    @abstractmethod
    def reclaim_stale(self, older_than: datetime) -> int:
        """Release claims taken before older_than that never completed."""

    @abstractmethod
    def delete_older_than(self, threshold: datetime) -> int: ...

    @abstractmethod
    def compact(self) -> None: ...

    @abstractmethod
    def counts(self) -> Dict[str, int]: ...


# ---------- SQLAlchemy implementation ----------


def _is_contention(exc: OperationalError) -> bool:
    msg = str(exc.orig if exc.orig is not None else exc).lower()
    return "locked" in msg or "busy" in msg


def _to_notification(row: NotificationRecord) -> Notification:
    return Notification(
        id=row.id,
        message=row.message,
        title=row.title,
        body=row.body,
        image_url=row.image_url,
        analytics_label=row.analytics_label,
        device_tokens=list(row.device_tokens or []),
        data=dict(row.data or {}),
        processed=row.processed,
        processing=row.processing,
        claimed_at=row.claimed_at,
        processed_at=row.processed_at,
        success_count=row.success_count,
        failure_count=row.failure_count,
        created_at=row.created_at,
    )


class SqlNotificationStore(NotificationStore):
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        max_insert_attempts: int = 10,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = datetime.utcnow,
        logger=None,
    ):
        self.session_factory = session_factory
        self.max_insert_attempts = max_insert_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.clock = clock
        self.logger = logger or log

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db: Session = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(str(exc)) from exc
        finally:
            db.close()

    def insert(self, notification: Notification) -> int:
        """
        Persist a new row and return its id.

        Lock contention is retried with linear backoff: the wait after the
        i-th failed attempt is i * backoff_seconds. Once max_insert_attempts
        is spent the write is abandoned with StorageError.
        """
        _check_tokens(notification)

        for attempt in range(1, self.max_insert_attempts + 1):
            db: Session = self.session_factory()
            try:
                row = NotificationRecord(
                    message=notification.message,
                    title=notification.title,
                    body=notification.body,
                    image_url=notification.image_url,
                    analytics_label=notification.analytics_label,
                    device_tokens=list(notification.device_tokens),
                    data=dict(notification.data),
                    processed=False,
                    processing=False,
                    created_at=notification.created_at or self.clock(),
                )
                db.add(row)
                db.flush()
                # No database access after commit, or a committed row gets retried
                new_id = row.id
                db.commit()
                return new_id
            except OperationalError as exc:
                db.rollback()
                if not _is_contention(exc):
                    raise StorageError(f"failed to save notification: {exc}") from exc
                if attempt == self.max_insert_attempts:
                    break
                wait = attempt * self.backoff_seconds
                self.logger.info(
                    "Retrying to save notification (attempt %d/%d) in %.1fs: %s",
                    attempt,
                    self.max_insert_attempts,
                    wait,
                    exc.orig,
                )
                self.sleep(wait)
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError(f"failed to save notification: {exc}") from exc
            finally:
                db.close()

        self.logger.error("Failed to save notification after %d tries", self.max_insert_attempts)
        raise StorageError(
            f"failed to save notification after {self.max_insert_attempts} attempts"
        )

    def get(self, notification_id: int) -> Optional[Notification]:
        with self._session() as db:
            row = db.get(NotificationRecord, notification_id)
            return _to_notification(row) if row else None

    def fetch_pending_unclaimed(self, limit: int) -> List[Notification]:
        with self._session() as db:
            rows = db.scalars(
                select(NotificationRecord)
                .where(
                    NotificationRecord.processed == False,  # noqa: E712
                    NotificationRecord.processing == False,  # noqa: E712
                )
                .order_by(NotificationRecord.id.asc())
                .limit(limit)
            ).all()
            return [_to_notification(r) for r in rows]

    def mark_claimed(self, notification_id: int) -> bool:
        # Single conditional UPDATE: only one concurrent caller can match the row
        with self._session() as db:
            result = db.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.id == notification_id,
                    NotificationRecord.processed == False,  # noqa: E712
                    NotificationRecord.processing == False,  # noqa: E712
                )
                .values(processing=True, claimed_at=self.clock())
            )
            db.commit()
            return result.rowcount == 1

    def mark_unclaimed(self, notification_id: int) -> None:
        with self._session() as db:
            db.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.id == notification_id,
                    NotificationRecord.processed == False,  # noqa: E712
                )
                .values(processing=False, claimed_at=None)
            )
            db.commit()

    def mark_processed(
        self, notification_id: int, success_count: int = 0, failure_count: int = 0
    ) -> None:
        with self._session() as db:
            db.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.id == notification_id,
                    NotificationRecord.processed == False,  # noqa: E712
                )
                .values(
                    processed=True,
                    processing=False,
                    processed_at=self.clock(),
                    success_count=success_count,
                    failure_count=failure_count,
                )
            )
            db.commit()

    def reclaim_stale(self, older_than: datetime) -> int:
        with self._session() as db:
            result = db.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.processed == False,  # noqa: E712
                    NotificationRecord.processing == True,  # noqa: E712
                    or_(
                        NotificationRecord.claimed_at.is_(None),
                        NotificationRecord.claimed_at < older_than,
                    ),
                )
                .values(processing=False, claimed_at=None)
            )
            db.commit()
            return result.rowcount

    def delete_older_than(self, threshold: datetime) -> int:
        with self._session() as db:
            result = db.execute(
                delete(NotificationRecord).where(NotificationRecord.created_at < threshold)
            )
            db.commit()
            return result.rowcount

    def compact(self) -> None:
        """Reclaim file space after large deletes. Only SQLite needs this."""
        with self._session() as db:
            bind = db.get_bind()
            if bind.dialect.name != "sqlite":
                return
            engine = getattr(bind, "engine", bind)
        try:
            # VACUUM cannot run inside a transaction
            with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                conn.exec_driver_sql("VACUUM")
        except SQLAlchemyError as exc:
            raise StorageError(f"VACUUM failed: {exc}") from exc

    def counts(self) -> Dict[str, int]:
        with self._session() as db:
            rows = db.execute(
                select(
                    NotificationRecord.processed,
                    NotificationRecord.processing,
                    func.count(NotificationRecord.id),
                ).group_by(NotificationRecord.processed, NotificationRecord.processing)
            ).all()

        counts = {"pending": 0, "processing": 0, "processed": 0, "total": 0}
        for processed, processing, n in rows:
            if processed:
                counts["processed"] += n
            elif processing:
                counts["processing"] += n
            else:
                counts["pending"] += n
            counts["total"] += n
        return counts


# ---------- In-memory implementation ----------


class InMemoryNotificationStore(NotificationStore):
    """Process-local store with the same semantics, for tests and local runs."""

    def __init__(self, clock: Clock = datetime.utcnow):
        self.clock = clock
        self._rows: Dict[int, Notification] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @staticmethod
    def _copy(n: Notification) -> Notification:
        return replace(n, device_tokens=list(n.device_tokens), data=dict(n.data))

    def insert(self, notification: Notification) -> int:
        _check_tokens(notification)
        with self._lock:
            new_id = next(self._ids)
            self._rows[new_id] = replace(
                self._copy(notification),
                id=new_id,
                created_at=notification.created_at or self.clock(),
                processed=False,
                processing=False,
                claimed_at=None,
                processed_at=None,
                success_count=0,
                failure_count=0,
            )
            return new_id

    def get(self, notification_id: int) -> Optional[Notification]:
        with self._lock:
            row = self._rows.get(notification_id)
            return self._copy(row) if row else None

    def fetch_pending_unclaimed(self, limit: int) -> List[Notification]:
        with self._lock:
            pending = [
                self._copy(n)
                for _, n in sorted(self._rows.items())
                if not n.processed and not n.processing
            ]
        return pending[:limit]

    def mark_claimed(self, notification_id: int) -> bool:
        with self._lock:
            row = self._rows.get(notification_id)
            if row is None or row.processed or row.processing:
                return False
            row.processing = True
            row.claimed_at = self.clock()
            return True

    def mark_unclaimed(self, notification_id: int) -> None:
        with self._lock:
            row = self._rows.get(notification_id)
            if row is not None and not row.processed:
                row.processing = False
                row.claimed_at = None

    def mark_processed(
        self, notification_id: int, success_count: int = 0, failure_count: int = 0
    ) -> None:
        with self._lock:
            row = self._rows.get(notification_id)
            if row is None or row.processed:
                return
            row.processed = True
            row.processing = False
            row.processed_at = self.clock()
            row.success_count = success_count
            row.failure_count = failure_count

    def reclaim_stale(self, older_than: datetime) -> int:
        reclaimed = 0
        with self._lock:
            for row in self._rows.values():
                if row.processed or not row.processing:
                    continue
                if row.claimed_at is None or row.claimed_at < older_than:
                    row.processing = False
                    row.claimed_at = None
                    reclaimed += 1
        return reclaimed

    def delete_older_than(self, threshold: datetime) -> int:
        with self._lock:
            expired = [i for i, n in self._rows.items() if n.created_at < threshold]
            for i in expired:
                del self._rows[i]
        return len(expired)

    def compact(self) -> None:
        return None

    def counts(self) -> Dict[str, int]:
        with self._lock:
            rows = list(self._rows.values())
        return {
            "pending": sum(1 for n in rows if not n.processed and not n.processing),
            "processing": sum(1 for n in rows if not n.processed and n.processing),
            "processed": sum(1 for n in rows if n.processed),
            "total": len(rows),
        }
