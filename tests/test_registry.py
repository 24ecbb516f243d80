from __future__ import annotations

import allure
import pytest

from towerline.core import bus as channels
from towerline.core.bus import EventBus
from towerline.core.models import (
    Authority,
    Priority,
    TaskCompleted,
    TaskCreate,
    TaskDelegated,
    TaskFailed,
    TaskNote,
    TaskProgress,
    TaskStatus,
    TaskSwarmed,
)
from towerline.core.scheduler import ManualClock
from towerline.tasks.registry import DEFAULT_TITLE, TaskRegistry, format_duration

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Registry"),
]


@pytest.fixture()
def registry(bus: EventBus, clock: ManualClock) -> TaskRegistry:
    return TaskRegistry(bus=bus, clock=clock, history_capacity=3)


def test_create_task_fills_defaults_and_publishes(registry: TaskRegistry, recorder) -> None:
    task = registry.create_task(TaskCreate(title="   ", source="api"))

    assert task.task_id == "TSK-00001"
    assert task.title == DEFAULT_TITLE
    assert task.status is TaskStatus.PENDING
    assert task.priority is Priority.NORMAL
    assert task.logs[0].message == "Task created by api"
    assert [channel for channel, _ in recorder] == [
        channels.TASK_CREATED,
        channels.REGISTRY_STATS,
    ]
    created = recorder[0][1]
    assert created.task_id == task.task_id
    assert created is not task


def test_task_ids_are_unique_and_sequential(registry: TaskRegistry) -> None:
    ids = [registry.create_task(TaskCreate(title=f"t{index}")).task_id for index in range(3)]

    assert ids == ["TSK-00001", "TSK-00002", "TSK-00003"]


def test_delegation_events_build_the_chain(registry: TaskRegistry, bus: EventBus) -> None:
    task = registry.create_task(TaskCreate(title="Fix login bug"))

    bus.publish(
        channels.TASK_DELEGATED,
        TaskDelegated(task.task_id, "primary-c2", "qm-tsiapp", 15, "production"),
    )
    bus.publish(
        channels.TASK_ASSIGNED,
        TaskDelegated(task.task_id, "qm-tsiapp", "tsi-dev", 15, "production"),
    )

    assert task.status is TaskStatus.DELEGATED
    assert [step.action for step in task.delegation_chain] == ["delegate", "assign"]
    assert [step.to_worker for step in task.delegation_chain] == ["qm-tsiapp", "tsi-dev"]
    assert task.assigned_workers == ["qm-tsiapp", "tsi-dev"]


def test_swarm_progress_and_note_events(registry: TaskRegistry, bus: EventBus) -> None:
    task = registry.create_task(TaskCreate(title="Swarm it", priority=Priority.CRITICAL))

    bus.publish(
        channels.TASK_SWARMED,
        TaskSwarmed(task.task_id, "primary-c2", ["ana", "ben"], queue=15),
    )
    assert task.status is TaskStatus.SWARMING
    assert task.recruited_workers == ["ana", "ben"]
    assert [step.action for step in task.delegation_chain] == ["swarm-recruit", "swarm-recruit"]

    bus.publish(channels.TASK_PROGRESS, TaskProgress(task.task_id, progress=150))
    assert task.status is TaskStatus.IN_PROGRESS
    assert task.progress == 100

    bus.publish(channels.TASK_NOTE, TaskNote(task.task_id, "heads up", level="warning"))
    assert task.logs[-1].message == "heads up"
    assert task.logs[-1].level == "warning"


def test_note_republishes_stats(registry: TaskRegistry, bus: EventBus, recorder) -> None:
    task = registry.create_task(TaskCreate(title="Fix login bug"))
    recorder.clear()

    bus.publish(channels.TASK_NOTE, TaskNote(task.task_id, "queue 42 missing", level="warning"))

    assert [channel for channel, _ in recorder] == [channels.TASK_NOTE, channels.REGISTRY_STATS]


def test_completion_moves_task_to_history_once(
    registry: TaskRegistry,
    bus: EventBus,
    clock: ManualClock,
    recorder,
) -> None:
    task = registry.create_task(TaskCreate(title="Ship it"))
    clock.advance(1.5)

    bus.publish(channels.TASK_COMPLETED, TaskCompleted(task.task_id, result="done"))
    bus.publish(channels.TASK_COMPLETED, TaskCompleted(task.task_id, result="again"))
    bus.publish(channels.TASK_FAILED, TaskFailed(task.task_id, reason="late failure"))

    assert not registry.is_active(task.task_id)
    assert registry.list_completed() == [task]
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "done"
    assert task.duration_ms == 1500
    assert task.progress == 100
    finalized = [payload for channel, payload in recorder if channel == channels.TASK_FINALIZED]
    assert len(finalized) == 1


def test_failure_records_reason(registry: TaskRegistry, bus: EventBus) -> None:
    task = registry.create_task(TaskCreate(title="Break it"))

    bus.publish(channels.TASK_FAILED, TaskFailed(task.task_id))

    assert task.status is TaskStatus.FAILED
    assert task.result == "Unknown failure"
    assert registry.stats().failed_total == 1
    assert task.logs[-1].message.startswith("FAILED after")


def test_events_for_unknown_tasks_are_ignored(registry: TaskRegistry, bus: EventBus) -> None:
    bus.publish(channels.TASK_PROGRESS, TaskProgress("TSK-99999", progress=50))
    bus.publish(channels.TASK_COMPLETED, TaskCompleted("TSK-99999"))

    assert registry.list_active() == []
    assert registry.list_completed() == []


def test_history_is_bounded(registry: TaskRegistry, bus: EventBus) -> None:
    tasks = [registry.create_task(TaskCreate(title=f"t{index}")) for index in range(5)]
    for task in tasks:
        bus.publish(channels.TASK_COMPLETED, TaskCompleted(task.task_id))

    history = registry.list_completed()

    assert [task.task_id for task in history] == ["TSK-00003", "TSK-00004", "TSK-00005"]
    assert registry.get_task("TSK-00001") is None
    assert registry.get_task("TSK-00005") is tasks[-1]


def test_queries_by_queue_worker_and_authority(registry: TaskRegistry, bus: EventBus) -> None:
    primary = registry.create_task(TaskCreate(title="a", target_queue=15))
    mirror = registry.create_task(
        TaskCreate(title="b", authority=Authority.MIRROR, target_queue=16),
    )
    shared = registry.create_task(TaskCreate(title="c", authority=Authority.BOTH, target_queue=15))
    linked = registry.create_task(
        TaskCreate(title="d", authority=Authority.MIRROR, linked_task_id=primary.task_id),
    )
    bus.publish(
        channels.TASK_ASSIGNED,
        TaskDelegated(mirror.task_id, "qm-mirror-data", "ops-dba", 16),
    )

    assert registry.list_by_queue(15) == [primary, shared]
    assert registry.list_by_worker("ops-dba") == [mirror]
    assert registry.list_by_authority(Authority.MIRROR) == [mirror, shared, linked]
    assert registry.list_cross_authority() == [shared, linked]


def test_stats_track_counts_and_average_duration(
    registry: TaskRegistry,
    bus: EventBus,
    clock: ManualClock,
) -> None:
    first = registry.create_task(TaskCreate(title="one"))
    second = registry.create_task(TaskCreate(title="two"))
    registry.create_task(TaskCreate(title="three"))
    clock.advance(2.0)
    bus.publish(channels.TASK_COMPLETED, TaskCompleted(first.task_id))
    clock.advance(2.0)
    bus.publish(channels.TASK_FAILED, TaskFailed(second.task_id))

    stats = registry.stats()

    assert stats.active == 1
    assert stats.pending == 1
    assert stats.completed_total == 1
    assert stats.failed_total == 1
    assert stats.avg_duration_ms == 3000.0
    assert registry.full_log()["stats"] == stats


def test_format_duration() -> None:
    assert format_duration(250) == "250ms"
    assert format_duration(1500) == "1.5s"
    assert format_duration(90_000) == "1.5min"
