"""Canonical task lifecycle: creation, event-driven transitions, and history."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime

from towerline.core import bus as channels
from towerline.core.bus import EventBus
from towerline.core.models import (
    Authority,
    DelegationStep,
    RegistryStats,
    Task,
    TaskCompleted,
    TaskCreate,
    TaskDelegated,
    TaskFailed,
    TaskLogEntry,
    TaskNote,
    TaskProgress,
    TaskStatus,
    TaskSwarmed,
)
from towerline.core.scheduler import Clock, SystemClock, to_utc

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Task"


class TaskRegistry:
    """Only component allowed to mutate task state.

    Creation is a direct call; every later transition arrives as a bus event.
    Lifecycle events for ids that are not active (never created, or already
    finalized and possibly evicted from history) are ignored.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        clock: Clock | None = None,
        history_capacity: int = 500,
        id_prefix: str = "TSK",
    ) -> None:
        self.bus = bus
        self.clock = clock or SystemClock()
        self.id_prefix = id_prefix
        self._active: dict[str, Task] = {}
        self._history: deque[Task] = deque(maxlen=history_capacity)
        self._counter = 0

        bus.subscribe(channels.TASK_DELEGATED, self.on_delegated)
        bus.subscribe(channels.TASK_ASSIGNED, self.on_assigned)
        bus.subscribe(channels.TASK_SWARMED, self.on_swarmed)
        bus.subscribe(channels.TASK_PROGRESS, self.on_progress)
        bus.subscribe(channels.TASK_NOTE, self.on_note)
        bus.subscribe(channels.TASK_COMPLETED, self.on_completed)
        bus.subscribe(channels.TASK_FAILED, self.on_failed)

    def create_task(self, params: TaskCreate) -> Task:
        """Create a pending task from loosely validated parameters."""

        self._counter += 1
        now = to_utc(self.clock.now())
        task = Task(
            task_id=f"{self.id_prefix}-{self._counter:05d}",
            title=(params.title or "").strip() or DEFAULT_TITLE,
            description=params.description or "",
            source=params.source or "unknown",
            source_worker=params.source_worker,
            priority=params.priority,
            authority=params.authority,
            target_project=params.target_project,
            target_queue=params.target_queue,
            target_division=params.target_division,
            linked_task_id=params.linked_task_id,
            created_at=now,
            updated_at=now,
        )
        self._active[task.task_id] = task
        self._log(task, f"Task created by {task.source}", task.source_worker)
        logger.info(
            "Task %s created: %r authority=%s queue=%s",
            task.task_id,
            task.title,
            task.authority.value,
            task.target_queue,
        )
        self.bus.publish(channels.TASK_CREATED, task.snapshot())
        self._publish_stats()
        return task

    def on_delegated(self, event: TaskDelegated) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        if task.status is TaskStatus.PENDING:
            task.status = TaskStatus.DELEGATED
        self._chain(task, event, action="delegate")
        self._add_unique(task.assigned_workers, event.to_worker)
        self._log(
            task,
            f"Delegated: {event.from_worker} -> {event.to_worker} (queue {event.queue})",
            event.from_worker,
        )
        self._publish_stats()

    def on_assigned(self, event: TaskDelegated) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        self._chain(task, event, action="assign")
        self._add_unique(task.assigned_workers, event.to_worker)
        self._log(
            task,
            f"Assigned: {event.from_worker} -> {event.to_worker} ({event.division or 'any'})",
            event.from_worker,
        )
        self._publish_stats()

    def on_swarmed(self, event: TaskSwarmed) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        task.status = TaskStatus.SWARMING
        timestamp = self._touch(task)
        for worker_id in event.workers:
            self._add_unique(task.recruited_workers, worker_id)
            task.delegation_chain.append(
                DelegationStep(
                    from_worker=event.coordinator,
                    to_worker=worker_id,
                    queue=event.queue,
                    division=event.division,
                    timestamp=timestamp,
                    action="swarm-recruit",
                ),
            )
        self._log(
            task,
            f"Swarm activated: {len(event.workers)} workers recruited by {event.coordinator}",
            event.coordinator,
        )
        self._publish_stats()

    def on_progress(self, event: TaskProgress) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        task.status = TaskStatus.IN_PROGRESS
        if event.progress is not None:
            task.progress = min(100, max(0, int(event.progress)))
        self._touch(task)
        self._log(task, event.message or f"Progress {task.progress}%", event.worker)
        self._publish_stats()

    def on_note(self, event: TaskNote) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        self._touch(task)
        self._log(task, event.message, event.worker, level=event.level)
        self._publish_stats()

    def on_completed(self, event: TaskCompleted) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        task.status = TaskStatus.COMPLETED
        task.progress = 100
        task.result = event.result or "Success"
        self._finalize(task, event.worker)

    def on_failed(self, event: TaskFailed) -> None:
        task = self._active.get(event.task_id)
        if task is None:
            return
        task.status = TaskStatus.FAILED
        task.result = event.reason or "Unknown failure"
        self._finalize(task, event.worker)

    def get_task(self, task_id: str) -> Task | None:
        """Active task, or the most recent history entry with that id."""

        task = self._active.get(task_id)
        if task is not None:
            return task
        for finished in reversed(self._history):
            if finished.task_id == task_id:
                return finished
        return None

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    def list_active(self) -> list[Task]:
        return list(self._active.values())

    def list_completed(self, limit: int = 50) -> list[Task]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def list_by_queue(self, queue: int) -> list[Task]:
        return [task for task in self._active.values() if task.target_queue == queue]

    def list_by_worker(self, worker_id: str) -> list[Task]:
        return [
            task
            for task in self._active.values()
            if worker_id in task.assigned_workers or worker_id in task.recruited_workers
        ]

    def list_by_authority(self, authority: Authority) -> list[Task]:
        return [
            task
            for task in self._active.values()
            if task.authority is authority or task.authority is Authority.BOTH
        ]

    def list_cross_authority(self) -> list[Task]:
        return [
            task
            for task in self._active.values()
            if task.authority is Authority.BOTH or task.linked_task_id
        ]

    def stats(self) -> RegistryStats:
        active = list(self._active.values())
        history = list(self._history)
        durations = [task.duration_ms or 0 for task in history]
        return RegistryStats(
            active=len(active),
            pending=sum(1 for task in active if task.status is TaskStatus.PENDING),
            delegated=sum(1 for task in active if task.status is TaskStatus.DELEGATED),
            in_progress=sum(1 for task in active if task.status is TaskStatus.IN_PROGRESS),
            swarming=sum(1 for task in active if task.status is TaskStatus.SWARMING),
            completed_total=sum(1 for task in history if task.status is TaskStatus.COMPLETED),
            failed_total=sum(1 for task in history if task.status is TaskStatus.FAILED),
            avg_duration_ms=sum(durations) / len(durations) if durations else 0.0,
        )

    def full_log(self) -> dict[str, object]:
        return {
            "active": self.list_active(),
            "completed": list(self._history),
            "stats": self.stats(),
        }

    def _finalize(self, task: Task, worker: str | None) -> None:
        now = self._touch(task)
        task.completed_at = now
        task.duration_ms = int(round((now - task.created_at).total_seconds() * 1000))
        elapsed = format_duration(task.duration_ms)
        if task.status is TaskStatus.COMPLETED:
            self._log(task, f"Completed in {elapsed}. Result: {task.result}", worker)
        else:
            self._log(task, f"FAILED after {elapsed}: {task.result}", worker)
        del self._active[task.task_id]
        self._history.append(task)
        logger.info("Task %s finalized as %s", task.task_id, task.status.value)
        self.bus.publish(channels.TASK_FINALIZED, task.snapshot())
        self._publish_stats()

    def _chain(self, task: Task, event: TaskDelegated, *, action: str) -> None:
        task.delegation_chain.append(
            DelegationStep(
                from_worker=event.from_worker,
                to_worker=event.to_worker,
                queue=event.queue,
                division=event.division,
                timestamp=self._touch(task),
                action=action,
            ),
        )

    def _touch(self, task: Task) -> datetime:
        task.updated_at = to_utc(self.clock.now())
        return task.updated_at

    def _log(self, task: Task, message: str, worker: str | None, level: str = "info") -> None:
        task.logs.append(
            TaskLogEntry(
                timestamp=to_utc(self.clock.now()),
                message=message,
                worker=worker or "system",
                level=level,
            ),
        )

    def _publish_stats(self) -> None:
        self.bus.publish(channels.REGISTRY_STATS, self.stats())

    @staticmethod
    def _add_unique(values: list[str], value: str | None) -> None:
        if value and value not in values:
            values.append(value)


def format_duration(duration_ms: int | float) -> str:
    """Human-friendly duration used in audit lines and reports."""

    if duration_ms < 1000:
        return f"{int(duration_ms)}ms"
    if duration_ms < 60_000:
        return f"{duration_ms / 1000:.1f}s"
    return f"{duration_ms / 60_000:.1f}min"
