from datetime import datetime
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from notiserver.api.deps import get_store
from notiserver.config import Settings, get_settings
from notiserver.core.database import Base
from notiserver.core.store import Notification, SqlNotificationStore
from notiserver.integrations.push_gateway import DeliveryReport, PushGateway
from notiserver.main import app

AUTH_TOKEN = "s3cret-token"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class ScriptedGateway(PushGateway):
    """Fails the tokens listed in failing_tokens, succeeds for every other token."""

    def __init__(self, failing_tokens=(), error: Exception | None = None):
        self.failing_tokens = set(failing_tokens)
        self.error = error
        self.calls: List[Notification] = []

    async def send(self, notification: Notification) -> DeliveryReport:
        self.calls.append(notification)
        if self.error is not None:
            raise self.error
        report = DeliveryReport()
        for token in notification.device_tokens:
            if token in self.failing_tokens:
                report.failure_count += 1
                report.failed_tokens.append(token)
            else:
                report.success_count += 1
        return report


def make_notification(*tokens: str, **kwargs) -> Notification:
    return Notification(
        device_tokens=list(tokens) or ["token-a"],
        title=kwargs.pop("title", "Hello"),
        body=kwargs.pop("body", "World"),
        **kwargs,
    )


@pytest.fixture(scope="function")
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def store(session_factory: sessionmaker, sleeps: List[float]) -> SqlNotificationStore:
    return SqlNotificationStore(session_factory, backoff_seconds=1.0, sleep=sleeps.append)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, auth_token=AUTH_TOKEN, push_credentials_file=None)


@pytest.fixture
def client(store: SqlNotificationStore, settings: Settings) -> Generator[TestClient, None, None]:
    """Test client without lifespan, so no background loops are started."""
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {AUTH_TOKEN}"}
