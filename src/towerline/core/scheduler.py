"""Cooperative timer wheel for settle delays, sweeps, and simulated work."""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Virtual clock moved explicitly; used by tests and the simulator."""

    def __init__(self, start: float = 1_767_225_600.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def set(self, value: float) -> None:
        if value < self._now:
            raise ValueError("ManualClock cannot move backwards.")
        self._now = value

    def advance(self, seconds: float) -> None:
        self.set(self._now + seconds)


def to_utc(timestamp: float) -> datetime:
    """Epoch seconds to an aware UTC datetime."""

    return datetime.fromtimestamp(timestamp, tz=UTC)


@dataclass(slots=True)
class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    due: float
    label: str
    callback: Callable[[], None] = field(repr=False)
    interval: float | None = None
    cancelled: bool = False
    fired: int = 0

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not self.cancelled and (self.interval is not None or self.fired == 0)


class Scheduler:
    """Fires callbacks once their due time has passed.

    Nothing runs on its own: callers drive the wheel with ``run_due`` (wall
    clock) or ``advance`` (manual clock). Callbacks run one at a time, in due
    order, ties broken by scheduling order.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()

    def now(self) -> float:
        return self.clock.now()

    def call_later(
        self,
        delay: float,
        callback: Callable[[], None],
        label: str = "",
    ) -> TimerHandle:
        handle = TimerHandle(due=self.now() + max(0.0, delay), label=label, callback=callback)
        self._push(handle)
        return handle

    def call_every(
        self,
        interval: float,
        callback: Callable[[], None],
        label: str = "",
    ) -> TimerHandle:
        if interval <= 0:
            raise ValueError("Repeating timer interval must be > 0.")
        handle = TimerHandle(
            due=self.now() + interval,
            label=label,
            callback=callback,
            interval=interval,
        )
        self._push(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle in self._heap if not handle.cancelled)

    def next_due(self) -> float | None:
        self._drop_cancelled()
        return self._heap[0][0] if self._heap else None

    def run_due(self) -> int:
        """Fire every timer due at the current clock time; returns how many fired."""

        fired = 0
        now = self.now()
        while True:
            self._drop_cancelled()
            if not self._heap or self._heap[0][0] > now:
                return fired
            _, _, handle = heapq.heappop(self._heap)
            self._fire(handle)
            fired += 1

    def advance(self, seconds: float) -> int:
        """Move a ManualClock forward, firing timers at their own due times."""

        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance() requires a ManualClock.")
        target = self.now() + seconds
        fired = 0
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            self.clock.set(max(due, self.now()))
            fired += self.run_due()
        self.clock.set(target)
        return fired

    def run_until_idle(self, max_seconds: float) -> int:
        """Advance a ManualClock until no one-shot timers remain or the budget is spent."""

        fired = 0
        deadline = self.now() + max_seconds
        while True:
            one_shots = [h.due for _, _, h in self._heap if not h.cancelled and h.interval is None]
            if not one_shots:
                return fired
            due = min(one_shots)
            if due > deadline:
                return fired
            fired += self.advance(max(0.0, due - self.now()))

    def _push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._heap, (handle.due, next(self._sequence), handle))

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)

    def _fire(self, handle: TimerHandle) -> None:
        handle.fired += 1
        if handle.interval is not None:
            handle.due += handle.interval
            self._push(handle)
        try:
            handle.callback()
        except Exception:
            logger.exception("Timer %s failed", handle.label or handle.callback)
