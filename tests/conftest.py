"""Pytest configuration for the sessionwatch test suite."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from sessionwatch import init_db
from sessionwatch.db import build_engine, build_session_factory
from sessionwatch.store import TrafficStore

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock; call it to read the current time."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def at(self, offset_seconds: float) -> datetime:
        self.now = BASE_TIME + timedelta(seconds=offset_seconds)
        return self.now


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'traffic.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> TrafficStore:
    return TrafficStore(build_session_factory(engine))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broken_store(tmp_path) -> TrafficStore:
    """Store whose database cannot be opened; every call raises StoreUnavailable."""
    eng = build_engine(f"sqlite:///{tmp_path / 'missing' / 'nope' / 'traffic.db'}")
    return TrafficStore(build_session_factory(eng))


async def add_record(store: TrafficStore, client_ip: str, offset_seconds: float, **fields) -> int:
    """Insert an unassigned record `offset_seconds` after BASE_TIME."""
    values = dict(method="GET", url="/", status_code=200)
    values.update(fields)
    return await store.insert_record(
        client_ip=client_ip,
        timestamp=BASE_TIME + timedelta(seconds=offset_seconds),
        **values,
    )
