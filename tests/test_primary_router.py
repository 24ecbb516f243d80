from __future__ import annotations

import allure
import pytest

from towerline.bridge.dedup import DedupCandidate
from towerline.core import bus as channels
from towerline.core.models import (
    Authority,
    Priority,
    Task,
    TaskCompleted,
    TaskStatus,
    WorkerState,
)
from towerline.engine import Engine
from towerline.routing.commands import CommandEnvelope

pytestmark = [
    allure.epic("Routing"),
    allure.feature("Primary Router"),
]


@pytest.fixture()
def events(engine: Engine) -> list[tuple[str, object]]:
    seen: list[tuple[str, object]] = []
    engine.bus.add_monitor(lambda channel, payload: seen.append((channel, payload)))
    return seen


def _on(events: list[tuple[str, object]], channel: str) -> list[object]:
    return [payload for name, payload in events if name == channel]


def _replies(engine: Engine) -> list[str]:
    return [reply.text for reply in engine.replies]


def _delegated_by(task: Task) -> list[str]:
    return [step.from_worker for step in task.delegation_chain if step.action == "delegate"]


def test_deploy_request_is_owned_by_mirror(engine: Engine, events) -> None:
    task = engine.primary.create_and_delegate({"title": "Deploy tsiapp"})

    assert task.authority is Authority.MIRROR
    assert engine.registry.list_active() == [task]
    dispatches = _on(events, "mirror.queue.15.task")
    assert [dispatch.task_id for dispatch in dispatches] == [task.task_id]
    assert _on(events, "queue.15.task") == []
    assert task.delegation_chain[0].to_worker == "qm-mirror-production"
    assert engine.dedup.entry_for(task).owning_authority is Authority.MIRROR


def test_cross_cutting_request_creates_one_shared_task(engine: Engine, events) -> None:
    task = engine.primary.create_and_delegate({"title": "Full-stack release of tsiapp"})

    assert task.authority is Authority.BOTH
    assert len(engine.registry.list_active()) == 1
    primary_dispatch = _on(events, "queue.15.task")
    forwards = _on(events, channels.CROSS_AUTHORITY_FORWARD)
    mirror_dispatch = _on(events, "mirror.queue.15.task")
    assert [item.task_id for item in primary_dispatch] == [task.task_id]
    assert [item.task_id for item in forwards] == [task.task_id]
    assert [item.task_id for item in mirror_dispatch] == [task.task_id]
    assert [step.to_worker for step in task.delegation_chain] == [
        "qm-tsiapp",
        "qm-mirror-production",
    ]
    assert task.target_project == "tsiapp"


def test_equivalent_request_is_blocked_as_duplicate(engine: Engine) -> None:
    first = engine.primary.create_and_delegate({"title": "Fix login bug"})
    second = engine.primary.create_and_delegate({"title": "fix   login bug"})

    assert first is not None
    assert second is None
    assert engine.registry.list_active() == [first]
    assert engine.dedup.is_duplicate(DedupCandidate("fix   login bug", queue=15))
    assert _replies(engine)[-1] == (
        f"Duplicate blocked: 'fix   login bug' is already owned by primary as {first.task_id}"
    )


def test_duplicate_allowed_again_after_ttl(engine: Engine) -> None:
    engine.primary.create_and_delegate({"title": "Fix login bug"})
    engine.scheduler.advance(engine.settings.dedup.ttl_seconds + 1)

    assert engine.primary.create_and_delegate({"title": "Fix login bug"}) is not None
    assert len(engine.registry.list_active()) == 2


def test_explicit_authority_overrides_classification(engine: Engine, events) -> None:
    task = engine.primary.create_and_delegate({"title": "Deploy tsiapp", "authority": "primary"})

    assert task.authority is Authority.PRIMARY
    assert _on(events, channels.CROSS_AUTHORITY_FORWARD) == []
    assert [item.task_id for item in _on(events, "queue.15.task")] == [task.task_id]


def test_unknown_queue_falls_back_with_warning_note(engine: Engine) -> None:
    task = engine.primary.create_and_delegate({"title": "Write docs", "queue": 42})

    assert task.target_queue == 15
    warnings = [entry.message for entry in task.logs if entry.level == "warning"]
    assert warnings == ["No queue 42 for primary; using queue 15"]


def test_task_command_via_bus_replies_to_originator(engine: Engine) -> None:
    engine.submit(
        CommandEnvelope(
            command="task",
            args={"title": "Research new charting library", "priority": "high"},
            reply_channel="chat-7",
        ),
    )

    task = engine.registry.list_active()[0]
    assert task.target_queue == 17
    assert task.priority is Priority.HIGH
    assert task.status is TaskStatus.DELEGATED
    assert engine.replies[-1].channel_ref == "chat-7"
    assert engine.replies[-1].text == f"Task {task.task_id} created and delegated to queue 17"


def test_deploy_command_builds_a_mirror_task(engine: Engine) -> None:
    engine.submit(CommandEnvelope(command="deploy", args={"project": "tsiapp"}))

    task = engine.registry.list_active()[0]
    assert task.title == "Deploy tsiapp"
    assert task.authority is Authority.MIRROR
    assert task.priority is Priority.HIGH
    assert task.target_project == "tsiapp"


def test_swarm_command_recruits_workers(engine: Engine, events) -> None:
    engine.send_chat("/swarm Incident response")

    task = engine.registry.list_active()[0]
    session = engine.recruitment.session_for(task.task_id)
    assert task.priority is Priority.CRITICAL
    assert task.status is TaskStatus.SWARMING
    assert session is not None
    assert len(session.workers) == engine.settings.recruitment.swarm_command_max_workers
    assert task.recruited_workers == [ref.worker_id for ref in session.workers]
    assert _on(events, channels.SWARM_REQUEST)[0].task_id == task.task_id
    assert _replies(engine)[-1].startswith(f"SWARM ACTIVATED: Task {task.task_id}")


def test_shared_swarm_is_forwarded_to_mirror(engine: Engine, events) -> None:
    engine.submit(
        CommandEnvelope(
            command="swarm",
            args={"title": "Incident response", "authority": "both"},
        ),
    )

    assert len(engine.registry.list_active()) == 1
    task = engine.registry.list_active()[0]
    assert task.authority is Authority.BOTH
    assert [item.task_id for item in _on(events, "queue.15.task")] == [task.task_id]
    forwards = _on(events, channels.CROSS_AUTHORITY_FORWARD)
    assert [item.task_id for item in forwards] == [task.task_id]
    assert forwards[0].args["priority"] == "critical"
    mirror_dispatch = [
        payload
        for name, payload in events
        if name.startswith("mirror.queue.") and name.endswith(".task")
    ]
    assert [item.task_id for item in mirror_dispatch] == [task.task_id]
    assert mirror_dispatch[0].from_worker == "mirror-c2"
    assert _delegated_by(task) == ["primary-c2", "mirror-c2"]


def test_mirror_swarm_goes_through_mirror_router(engine: Engine, events) -> None:
    engine.submit(
        CommandEnvelope(
            command="swarm",
            args={"title": "Incident response", "authority": "mirror"},
        ),
    )

    assert len(engine.registry.list_active()) == 1
    task = engine.registry.list_active()[0]
    assert task.authority is Authority.MIRROR
    assert [name for name, _ in events if name.startswith("queue.")] == []
    forwards = _on(events, channels.CROSS_AUTHORITY_FORWARD)
    assert [(item.task_id, item.args["queue"]) for item in forwards] == [(task.task_id, 15)]
    dispatches = _on(events, "mirror.queue.15.task")
    assert [(item.task_id, item.from_worker) for item in dispatches] == [
        (task.task_id, "mirror-c2"),
    ]
    assert _delegated_by(task) == ["mirror-c2"]
    assert _on(events, channels.SWARM_REQUEST)[0].authority is Authority.MIRROR


def test_recall_fails_task_and_returns_swarm(engine: Engine) -> None:
    before = engine.workforce.placement()
    engine.send_chat("/swarm Incident response")
    task = engine.registry.list_active()[0]
    engine.scheduler.advance(engine.settings.recruitment.settle_seconds)

    engine.submit(CommandEnvelope(command="recall", args={"task_id": task.task_id}))
    engine.scheduler.advance(engine.settings.recruitment.release_settle_seconds)

    assert task.status is TaskStatus.FAILED
    assert task.result == "Recalled by primary-c2"
    assert engine.recruitment.active_sessions() == []
    assert engine.workforce.placement() == before
    assert f"Task {task.task_id} FAILED: Recalled by primary-c2" in _replies(engine)


def test_recall_without_task_id_is_rejected(engine: Engine) -> None:
    engine.submit(CommandEnvelope(command="recall"))

    assert _replies(engine) == ["Recall needs a task id"]


def test_assign_marks_worker_and_records_chain(engine: Engine) -> None:
    task = engine.primary.create_and_delegate({"title": "Write docs"})

    engine.submit(
        CommandEnvelope(command="assign", args={"worker_id": "tsi-qa", "task_id": task.task_id}),
    )

    assert engine.workforce.get("tsi-qa").state is WorkerState.WORKING
    assert task.delegation_chain[-1].to_worker == "tsi-qa"
    assert task.delegation_chain[-1].action == "assign"
    assert _replies(engine)[-1] == f"Assigned {task.task_id} to TSI QA"


def test_assign_unknown_worker(engine: Engine) -> None:
    engine.submit(CommandEnvelope(command="assign", args={"worker_id": "ghost"}))

    assert _replies(engine) == ["Worker ghost not found"]


def test_status_and_tasks_reports(engine: Engine) -> None:
    engine.primary.create_and_delegate({"title": "Write docs"})

    engine.send_chat("/status")
    engine.send_chat("/tasks")

    status, tasks = _replies(engine)[-2:]
    assert status.splitlines()[0] == "TOWERLINE STATUS"
    assert "  Q15: 1 active" in status.splitlines()
    assert tasks.splitlines()[0] == "ACTIVE TASKS"
    assert "Write docs" in tasks


def test_unknown_command_becomes_generic_task(engine: Engine) -> None:
    engine.submit(CommandEnvelope(command="dance", args={"style": "tango"}))

    task = engine.registry.list_active()[0]
    assert task.title == 'dance: {"style": "tango"}'
    assert task.authority is Authority.PRIMARY


def test_operational_command_is_forwarded_to_mirror(engine: Engine, events) -> None:
    engine.submit(CommandEnvelope(command="backup", args={"target": "orders"}))

    forwards = _on(events, channels.CROSS_AUTHORITY_FORWARD)
    task = engine.registry.list_active()[0]
    assert forwards[0].task_id is None
    assert task.title == "Backup orders"
    assert task.authority is Authority.MIRROR
    assert task.target_queue == 16


def test_completion_reply_for_tracked_task(engine: Engine) -> None:
    task = engine.primary.create_and_delegate({"title": "Write docs"})

    engine.bus.publish(channels.TASK_COMPLETED, TaskCompleted(task.task_id))

    assert _replies(engine)[-1] == f"Task {task.task_id} COMPLETED: Success"
