"""Temporary cross-queue swarms: score, recruit, and release workers."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Protocol

from towerline.core import bus as channels
from towerline.core.bus import EventBus
from towerline.core.models import (
    NON_RECRUITABLE_STATES,
    Authority,
    RecruitRequest,
    SwarmSession,
    SwarmStatus,
    TaskSwarmed,
    WorkerCandidate,
    WorkerRef,
    WorkerState,
)
from towerline.core.scheduler import Scheduler, TimerHandle
from towerline.swarm.workforce import Worker, Workforce

logger = logging.getLogger(__name__)

CAPABILITY_DIVISIONS: dict[str, str] = {
    "security": "security",
    "pentest": "security",
    "audit": "security",
    "research": "rnd",
    "prototype": "rnd",
    "experiment": "rnd",
    "qa": "testing",
    "test": "testing",
    "verify": "testing",
    "build": "production",
    "deploy": "production",
    "code": "production",
}

IDLE_BONUS = 2
CAPABILITY_BONUS = 3
DIVISION_BONUS = 2


class _TaskEvent(Protocol):
    task_id: str


class RecruitmentEngine:
    """Owns swarm sessions; workers stay owned by the workforce roster.

    A recruited worker is bound to exactly one session until that session has
    been released and its workers restored to their origin queue and state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        bus: EventBus,
        scheduler: Scheduler,
        workforce: Workforce,
        max_workers: int = 5,
        settle_seconds: float = 2.0,
        release_settle_seconds: float = 2.5,
        allow_cross_authority: bool = False,
    ) -> None:
        self.bus = bus
        self.scheduler = scheduler
        self.workforce = workforce
        self.max_workers = max_workers
        self.settle_seconds = settle_seconds
        self.release_settle_seconds = release_settle_seconds
        self.allow_cross_authority = allow_cross_authority
        self._sessions: dict[str, SwarmSession] = {}
        self._bound: dict[str, str] = {}
        self._timers: dict[str, TimerHandle] = {}

        bus.subscribe(channels.SWARM_REQUEST, self.on_swarm_request)
        bus.subscribe(channels.TASK_COMPLETED, self.on_task_finished)
        bus.subscribe(channels.TASK_FAILED, self.on_task_finished)
        bus.subscribe(channels.SWARM_RECALL, self.on_task_finished)

    def score_candidates(self, request: RecruitRequest) -> list[WorkerCandidate]:
        """Eligible workers, best first; equal scores keep roster order."""

        candidates = []
        for worker in self.workforce:
            if not self._eligible(worker, request):
                continue
            score = self.score_worker(worker, request.required_capabilities)
            if score <= 0:
                continue
            candidates.append(
                WorkerCandidate(
                    worker_id=worker.worker_id,
                    origin_queue=worker.queue,
                    origin_state=worker.state,
                    score=score,
                ),
            )
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)
        return candidates

    @staticmethod
    def score_worker(worker: Worker, required_capabilities: tuple[str, ...]) -> int:
        score = IDLE_BONUS if worker.state is WorkerState.IDLE else 0
        for capability in required_capabilities:
            if capability in worker.capabilities:
                score += CAPABILITY_BONUS
            if CAPABILITY_DIVISIONS.get(capability) == worker.division:
                score += DIVISION_BONUS
        return score

    def _eligible(self, worker: Worker, request: RecruitRequest) -> bool:
        target_authority = (
            Authority.MIRROR if request.authority is Authority.MIRROR else Authority.PRIMARY
        )
        if worker.queue == request.target_queue and worker.authority is target_authority:
            return False
        if worker.state in NON_RECRUITABLE_STATES:
            return False
        if worker.worker_id in self._bound:
            return False
        cross = (
            self.allow_cross_authority
            if request.allow_cross_authority is None
            else request.allow_cross_authority
        )
        if cross or request.authority is Authority.BOTH:
            return True
        return worker.authority is request.authority

    def recruit(self, request: RecruitRequest) -> SwarmSession | None:
        existing = self._sessions.get(request.task_id)
        if existing is not None:
            logger.info("Task %s already has a swarm; ignoring new request", request.task_id)
            return existing

        limit = request.max_workers or self.max_workers
        recruited = self.score_candidates(request)[:limit]
        if not recruited:
            logger.info(
                "No recruitable workers for task %s (queue %s, needs %s)",
                request.task_id,
                request.target_queue,
                ", ".join(request.required_capabilities) or "nothing specific",
            )
            return None

        session = SwarmSession(
            task_id=request.task_id,
            target_queue=request.target_queue,
            coordinator_id=request.coordinator_id,
            workers=[
                WorkerRef(
                    worker_id=candidate.worker_id,
                    origin_queue=candidate.origin_queue,
                    origin_state=candidate.origin_state,
                )
                for candidate in recruited
            ],
            status=SwarmStatus.RECRUITING,
            started_at=self.scheduler.now(),
        )
        self._sessions[session.task_id] = session
        for ref in session.workers:
            self._bound[ref.worker_id] = session.task_id
            self.workforce.move_to(ref.worker_id, session.target_queue)
            self.workforce.set_state(ref.worker_id, WorkerState.MOVING)

        logger.info(
            "Recruited %d workers for task %s onto queue %s",
            len(session.workers),
            session.task_id,
            session.target_queue,
        )
        self.bus.publish(
            channels.TASK_SWARMED,
            TaskSwarmed(
                task_id=session.task_id,
                coordinator=session.coordinator_id,
                workers=[ref.worker_id for ref in session.workers],
                queue=session.target_queue,
            ),
        )
        self.bus.publish(channels.SWARM_FORMED, _snapshot(session))

        if self.settle_seconds > 0:
            self._timers[session.task_id] = self.scheduler.call_later(
                self.settle_seconds,
                lambda: self._activate(session.task_id),
                label=f"swarm-activate:{session.task_id}",
            )
        else:
            self._activate(session.task_id)
        return session

    def release(self, task_id: str) -> None:
        """Start returning a session's workers; unknown or completing sessions are ignored."""

        session = self._sessions.get(task_id)
        if session is None or session.status is SwarmStatus.COMPLETING:
            return

        pending = self._timers.pop(task_id, None)
        if pending is not None:
            pending.cancel()
        session.status = SwarmStatus.COMPLETING
        for ref in session.workers:
            self.workforce.move_to(ref.worker_id, ref.origin_queue)
            self.workforce.set_state(ref.worker_id, WorkerState.MOVING)
        logger.info("Releasing %d workers from task %s", len(session.workers), task_id)

        if self.release_settle_seconds > 0:
            self._timers[task_id] = self.scheduler.call_later(
                self.release_settle_seconds,
                lambda: self._restore(task_id),
                label=f"swarm-restore:{task_id}",
            )
        else:
            self._restore(task_id)

    def active_sessions(self) -> list[SwarmSession]:
        return [_snapshot(session) for session in self._sessions.values()]

    def session_for(self, task_id: str) -> SwarmSession | None:
        session = self._sessions.get(task_id)
        return _snapshot(session) if session else None

    def bound_task(self, worker_id: str) -> str | None:
        return self._bound.get(worker_id)

    def on_swarm_request(self, request: RecruitRequest) -> None:
        self.recruit(request)

    def on_task_finished(self, event: _TaskEvent) -> None:
        self.release(event.task_id)

    def _activate(self, task_id: str) -> None:
        self._timers.pop(task_id, None)
        session = self._sessions.get(task_id)
        if session is None or session.status is not SwarmStatus.RECRUITING:
            return
        session.status = SwarmStatus.ACTIVE
        for ref in session.workers:
            self.workforce.set_state(ref.worker_id, WorkerState.WORKING)
        logger.debug("Swarm for task %s active", task_id)

    def _restore(self, task_id: str) -> None:
        self._timers.pop(task_id, None)
        session = self._sessions.pop(task_id, None)
        if session is None:
            return
        for ref in session.workers:
            self.workforce.move_to(ref.worker_id, ref.origin_queue)
            self.workforce.set_state(
                ref.worker_id,
                self.workforce.return_state(ref.worker_id, ref.origin_state),
            )
            self._bound.pop(ref.worker_id, None)
        logger.info("Swarm for task %s dissolved; %d workers back", task_id, len(session.workers))


def _snapshot(session: SwarmSession) -> SwarmSession:
    return replace(session, workers=[replace(ref) for ref in session.workers])
