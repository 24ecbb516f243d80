from __future__ import annotations

import allure
import pytest

from towerline.core import bus as channels
from towerline.core.bus import EventBus
from towerline.core.models import (
    Authority,
    RecruitRequest,
    SwarmRecall,
    SwarmStatus,
    TaskFailed,
    WorkerState,
)
from towerline.core.scheduler import Scheduler
from towerline.swarm.recruitment import RecruitmentEngine
from towerline.swarm.workforce import Worker, Workforce

pytestmark = [
    allure.epic("Swarms"),
    allure.feature("Recruitment"),
]


@pytest.fixture()
def recruitment(bus: EventBus, scheduler: Scheduler, workforce: Workforce) -> RecruitmentEngine:
    return RecruitmentEngine(bus=bus, scheduler=scheduler, workforce=workforce)


def _request(**overrides) -> RecruitRequest:
    values = {
        "task_id": "T1",
        "target_queue": 5,
        "coordinator_id": "primary-c2",
        "required_capabilities": ("testing",),
        "max_workers": 2,
    }
    values.update(overrides)
    return RecruitRequest(**values)


def test_candidates_are_scored_and_ordered(recruitment: RecruitmentEngine) -> None:
    candidates = recruitment.score_candidates(_request())

    assert [(item.worker_id, item.score) for item in candidates] == [
        ("ana", 5),
        ("ben", 3),
        ("cid", 2),
    ]


def test_recruit_takes_highest_scoring_workers(
    recruitment: RecruitmentEngine,
    workforce: Workforce,
    recorder,
) -> None:
    session = recruitment.recruit(_request())

    assert [ref.worker_id for ref in session.workers] == ["ana", "ben"]
    assert session.status is SwarmStatus.RECRUITING
    assert workforce.get("ana").queue == 5
    assert workforce.get("ana").state is WorkerState.MOVING
    assert workforce.get("cid").queue == 3
    swarmed = [payload for channel, payload in recorder if channel == channels.TASK_SWARMED]
    assert swarmed[0].workers == ["ana", "ben"]
    assert swarmed[0].queue == 5


def test_session_activates_after_settle_delay(
    recruitment: RecruitmentEngine,
    scheduler: Scheduler,
    workforce: Workforce,
) -> None:
    recruitment.recruit(_request())

    scheduler.advance(1.0)
    assert recruitment.session_for("T1").status is SwarmStatus.RECRUITING

    scheduler.advance(1.0)
    assert recruitment.session_for("T1").status is SwarmStatus.ACTIVE
    assert workforce.get("ben").state is WorkerState.WORKING


def test_release_restores_every_worker(
    recruitment: RecruitmentEngine,
    scheduler: Scheduler,
    workforce: Workforce,
) -> None:
    before = workforce.placement()
    recruitment.recruit(_request(max_workers=3))
    scheduler.advance(2.0)

    recruitment.release("T1")
    assert recruitment.session_for("T1").status is SwarmStatus.COMPLETING
    assert workforce.get("ana").state is WorkerState.MOVING
    assert workforce.get("ana").queue == 1

    scheduler.advance(2.5)
    assert workforce.placement() == before
    assert recruitment.active_sessions() == []
    assert recruitment.bound_task("ana") is None


def test_failed_task_releases_its_swarm(
    recruitment: RecruitmentEngine,
    bus: EventBus,
    scheduler: Scheduler,
    workforce: Workforce,
) -> None:
    before = workforce.placement()
    recruitment.recruit(_request())
    scheduler.advance(2.0)

    bus.publish(channels.TASK_FAILED, TaskFailed("T1", reason="boom"))

    assert recruitment.session_for("T1").status is SwarmStatus.COMPLETING
    scheduler.advance(2.5)
    assert workforce.placement() == before
    assert recruitment.session_for("T1") is None


def test_recall_before_activation_cancels_pending_activation(
    recruitment: RecruitmentEngine,
    bus: EventBus,
    scheduler: Scheduler,
    workforce: Workforce,
) -> None:
    before = workforce.placement()
    recruitment.recruit(_request())

    bus.publish(channels.SWARM_RECALL, SwarmRecall("T1"))
    scheduler.advance(10.0)

    assert workforce.placement() == before
    assert recruitment.active_sessions() == []


def test_bound_workers_are_not_recruited_twice(recruitment: RecruitmentEngine) -> None:
    recruitment.recruit(_request(max_workers=1))

    second = recruitment.recruit(_request(task_id="T2", max_workers=5))

    assert recruitment.bound_task("ana") == "T1"
    assert [ref.worker_id for ref in second.workers] == ["ben", "cid"]


def test_second_request_for_same_task_keeps_existing_session(
    recruitment: RecruitmentEngine,
) -> None:
    first = recruitment.recruit(_request(max_workers=1))

    again = recruitment.recruit(_request(max_workers=3))

    assert again is first
    assert len(recruitment.session_for("T1").workers) == 1


def test_unavailable_and_local_workers_are_skipped(
    recruitment: RecruitmentEngine,
    workforce: Workforce,
) -> None:
    workforce.set_state("ana", WorkerState.MEETING)
    workforce.set_state("cid", WorkerState.OFFLINE)

    candidates = recruitment.score_candidates(_request(target_queue=2))

    assert candidates == []
    assert recruitment.recruit(_request(target_queue=2)) is None


def test_other_authority_workers_need_cross_authority(
    recruitment: RecruitmentEngine,
    workforce: Workforce,
) -> None:
    workforce.add(Worker("ops", "Ops", 9, Authority.MIRROR, "testing", ("testing",)))

    same_side = recruitment.score_candidates(_request())
    crossing = recruitment.score_candidates(_request(allow_cross_authority=True))

    assert "ops" not in [item.worker_id for item in same_side]
    assert [item.worker_id for item in crossing][:2] == ["ana", "ops"]


def test_same_numbered_queue_of_other_authority_is_not_local(
    recruitment: RecruitmentEngine,
    workforce: Workforce,
) -> None:
    workforce.add(Worker("ops", "Ops", 5, Authority.MIRROR, "testing", ("testing",)))

    shared = recruitment.score_candidates(_request(authority=Authority.BOTH))
    mirror_only = recruitment.score_candidates(_request(authority=Authority.MIRROR))

    assert [item.worker_id for item in shared] == ["ana", "ops", "ben", "cid"]
    assert mirror_only == []


def test_division_match_adds_bonus() -> None:
    worker = Worker("sec", "Sec", 19, Authority.PRIMARY, "security", ("pentest",), WorkerState.IDLE)

    assert RecruitmentEngine.score_worker(worker, ("pentest",)) == 7
    assert RecruitmentEngine.score_worker(worker, ("audit",)) == 4


def test_zero_settle_delays_apply_immediately(
    bus: EventBus,
    scheduler: Scheduler,
    workforce: Workforce,
) -> None:
    before = workforce.placement()
    engine = RecruitmentEngine(
        bus=bus,
        scheduler=scheduler,
        workforce=workforce,
        settle_seconds=0,
        release_settle_seconds=0,
    )

    session = engine.recruit(_request())
    assert session.status is SwarmStatus.ACTIVE

    engine.release("T1")
    assert workforce.placement() == before
    assert scheduler.pending == 0
