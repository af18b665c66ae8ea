import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import AUTH_TOKEN
from notiserver import main
from notiserver.api.deps import get_store
from notiserver.config import Settings, get_settings
from notiserver.core.store import SqlNotificationStore
from notiserver.main import app


@pytest.fixture
def file_store(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'notifications.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    store = SqlNotificationStore(sessionmaker(bind=engine, autoflush=False, autocommit=False))
    yield engine, store
    engine.dispose()


@pytest.fixture
def live_app(monkeypatch, file_store):
    engine, store = file_store
    cfg = Settings(
        _env_file=None,
        auth_token=AUTH_TOKEN,
        push_credentials_file=None,
        poll_interval_seconds=0.05,
        worker_count=2,
    )
    monkeypatch.setattr(main, "settings", cfg)
    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(main, "get_store", lambda: store)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: cfg
    yield store
    app.dependency_overrides.clear()


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_startup_dispatches_and_shutdown_stops_workers(live_app):
    store = live_app

    with TestClient(app) as client:
        resp = client.post(
            "/notifications/send",
            json={"title": "Hi", "device_tokens": ["tok-1", "tok-2"]},
            headers={"Authorization": f"Bearer {AUTH_TOKEN}"},
        )
        assert resp.status_code == 200
        nid = resp.json()["id"]

        assert wait_until(lambda: store.get(nid).processed)
        assert app.state.pool.running

    row = store.get(nid)
    assert (row.success_count, row.failure_count) == (0, 2)
    assert row.processing is False
    assert app.state.stop_event.is_set()
    assert not app.state.pool.running
    assert all(task.done() for task in app.state.background_tasks)
