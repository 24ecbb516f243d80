"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from towerline.config import Settings
from towerline.core.bus import EventBus
from towerline.core.models import Authority, WorkerState
from towerline.core.scheduler import ManualClock, Scheduler
from towerline.engine import Engine, build_engine
from towerline.swarm.workforce import Worker, Workforce

BUSY = WorkerState.WORKING


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer shell settings out of the tests."""
    for name in (
        "TOWERLINE_ROSTER_PATH",
        "TOWERLINE_DEDUP_TTL_SECONDS",
        "TOWERLINE_DEDUP_SWEEP_INTERVAL_SECONDS",
        "TOWERLINE_SWARM_ALLOW_CROSS_AUTHORITY",
        "TOWERLINE_SWARM_DEFAULT_CAPABILITIES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def scheduler(clock: ManualClock) -> Scheduler:
    return Scheduler(clock)


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorder(bus: EventBus) -> list[tuple[str, object]]:
    """Every delivered ``(channel, payload)`` pair, in delivery order."""
    events: list[tuple[str, object]] = []
    bus.add_monitor(lambda channel, payload: events.append((channel, payload)))
    return events


@pytest.fixture()
def engine(clock: ManualClock) -> Iterator[Engine]:
    built = build_engine(Settings(), clock=clock)
    yield built
    built.close()


@pytest.fixture()
def workforce() -> Workforce:
    return Workforce(
        [
            Worker("ana", "Ana", 1, Authority.PRIMARY, "testing", ("testing",)),
            Worker("ben", "Ben", 2, Authority.PRIMARY, "production", ("testing",), BUSY),
            Worker("cid", "Cid", 3, Authority.PRIMARY, "rnd", ("research",)),
        ],
    )
