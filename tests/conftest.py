"""Shared fixtures for the ingest test suite."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from app.utils.config import Settings
from app.utils.database import DatabaseClient
from domains.file_ingest.store import StatusStore


class FakeClock:
    """Settable clock for deterministic timestamps."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'ingest.db'}"


@pytest.fixture
def db(db_url):
    client = DatabaseClient(db_url)
    client.create_schema()
    yield client
    client.close()


@pytest.fixture
def store(db) -> StatusStore:
    return StatusStore(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, 30, tzinfo=timezone.utc))


@pytest.fixture
def clocked_store(db, clock) -> StatusStore:
    return StatusStore(db, clock=clock)


@pytest.fixture
def inbox(tmp_path: Path) -> Path:
    path = tmp_path / "inbox"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, db_url, inbox) -> Settings:
    return Settings(
        _env_file=None,
        database_url=db_url,
        watch_path=inbox,
        debounce_seconds=0.2,
        worker_pool_size=2,
        max_retries=2,
        retry_backoff_base=0.01,
        retry_backoff_max=0.05,
        stale_after_seconds=0,
        reconcile_interval_seconds=0,
        intake_retry_seconds=0.05,
        shutdown_grace_seconds=5.0,
    )
