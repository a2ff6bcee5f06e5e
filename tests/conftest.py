"""Shared fixtures for the test suite."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from habitkernel.db import get_store
from habitkernel.kernel.clock import FixedClock
from habitkernel.kernel.deps import get_clock
from habitkernel.kernel.goals import GoalService
from habitkernel.kernel.nudges import NudgeCooldownGate
from habitkernel.kernel.store import InMemoryStore
from habitkernel.kernel.streaks import StreakTracker
from habitkernel.main import app

# Tuesday 2026-02-17, midday UTC
T0 = datetime(2026, 2, 17, 12, 0, tzinfo=timezone.utc)


def utc(year: int, month: int, day: int, hour: int = 12, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock():
    return FixedClock(T0)


@pytest.fixture()
def store():
    return InMemoryStore()


@pytest.fixture()
def goals(store, clock):
    return GoalService(store, clock)


@pytest.fixture()
def tracker(store, clock):
    return StreakTracker(store, clock)


@pytest.fixture()
def gate(store, clock):
    return NudgeCooldownGate(store, clock)


# ---------------------------------------------------------------------------
# App fixtures (no lifespan under ASGITransport, so the store is injected)
# ---------------------------------------------------------------------------


@pytest.fixture()
def override_deps(store, clock):
    async def _store():
        return store

    app.dependency_overrides[get_store] = _store
    app.dependency_overrides[get_clock] = lambda: clock
    yield store
    app.dependency_overrides.clear()


@pytest.fixture()
async def client(override_deps):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
