"""Ordered publish/subscribe channel shared by every component.

Delivery is single-threaded: ``publish`` enqueues the event and, unless a
dispatch is already running further up the stack, drains the queue. Each event
reaches all of its subscribers, in registration order, before the next queued
event is looked at. Events published from inside a handler are therefore
delivered after the current event, never interleaved with it.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from towerline.core.models import Authority

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]
Monitor = Callable[[str, Any], None]

TASK_CREATED = "task.created"
TASK_DELEGATED = "task.delegated"
TASK_ASSIGNED = "task.assigned"
TASK_SWARMED = "task.swarmed"
TASK_PROGRESS = "task.progress"
TASK_NOTE = "task.note"
TASK_COMPLETED = "task.completed"
TASK_FAILED = "task.failed"
TASK_FINALIZED = "task.finalized"
REGISTRY_STATS = "registry.stats"
BRIDGE_DUPLICATE = "bridge.duplicate"
BRIDGE_STATUS = "bridge.status"
CROSS_AUTHORITY_FORWARD = "authority.newTask"
PRIMARY_COMMAND = "primary.command"
MIRROR_COMMAND = "mirror.command"
SWARM_REQUEST = "swarm.request"
SWARM_RECALL = "swarm.recall"
SWARM_FORMED = "swarm.formed"


def queue_channel(authority: Authority, queue: int) -> str:
    """Channel a queue consumer listens on for new work orders."""

    if authority is Authority.MIRROR:
        return f"mirror.queue.{queue}.task"
    return f"queue.{queue}.task"


class EventBus:
    """In-process event bus with FIFO delivery."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}
        self._once: dict[str, list[Handler]] = {}
        self._monitors: list[Monitor] = []
        self._queue: deque[tuple[str, Any]] = deque()
        self._dispatching = False
        self.delivered = 0

    def subscribe(self, channel: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""

        self._subscribers.setdefault(channel, []).append(handler)
        return lambda: self.unsubscribe(channel, handler)

    def once(self, channel: str, handler: Handler) -> None:
        """Register a handler that fires for the next event only."""

        self._once.setdefault(channel, []).append(handler)

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._subscribers.get(channel)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def add_monitor(self, monitor: Monitor) -> None:
        """Observe every delivered event as ``(channel, payload)``."""

        self._monitors.append(monitor)

    def has_subscribers(self, channel: str) -> bool:
        return bool(self._subscribers.get(channel) or self._once.get(channel))

    @property
    def pending(self) -> int:
        return len(self._queue)

    def publish(self, channel: str, payload: Any = None) -> None:
        """Queue an event and drain the queue unless a dispatch is in progress."""

        self._queue.append((channel, payload))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                next_channel, next_payload = self._queue.popleft()
                self._deliver(next_channel, next_payload)
        finally:
            self._dispatching = False

    def _deliver(self, channel: str, payload: Any) -> None:
        self.delivered += 1
        for monitor in list(self._monitors):
            try:
                monitor(channel, payload)
            except Exception:
                logger.exception("Bus monitor failed on %s", channel)
        for handler in list(self._subscribers.get(channel, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler %r failed on %s", handler, channel)
        once_handlers = self._once.pop(channel, [])
        for handler in once_handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("One-shot handler %r failed on %s", handler, channel)
