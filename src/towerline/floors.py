"""Simulated queue consumers that work delegated tasks on virtual time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from towerline.config import SimulationSettings
from towerline.core import bus as channels
from towerline.core.bus import EventBus, queue_channel
from towerline.core.models import (
    Priority,
    QueueDispatch,
    Task,
    TaskCompleted,
    TaskDelegated,
    TaskFailed,
    TaskProgress,
    WorkerState,
)
from towerline.core.scheduler import Scheduler, TimerHandle
from towerline.routing.queues import QueueSpec
from towerline.swarm.workforce import Worker, Workforce

logger = logging.getLogger(__name__)

DIVISION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "marketing": ("brand", "social", "content", "outreach", "campaign", "launch", "pr"),
    "rnd": (
        "research",
        "prototype",
        "experiment",
        "design",
        "architecture",
        "innovation",
        "explore",
    ),
    "testing": ("test", "qa", "verify", "validate", "audit", "review", "check", "debug"),
    "production": ("build", "deploy", "ship", "implement", "code", "develop", "feature", "fix"),
    "security": ("security", "vulnerability", "threat", "encrypt", "auth", "pentest", "firewall"),
    "legal": ("legal", "compliance", "license", "patent", "copyright", "terms", "contract"),
    "accounting": ("budget", "invoice", "expense", "revenue", "financial", "receipt", "cost"),
}

COMPLEX_KEYWORDS = (
    "overhaul",
    "migrate",
    "rewrite",
    "redesign",
    "full-stack",
    "enterprise",
    "critical",
    "urgent",
)
SWARM_KEYWORDS = ("all hands", "swarm", "team effort", "cross-division", "company-wide", "everyone")


def analyze_divisions(text: str, limit: int = 3) -> list[str]:
    """Divisions ranked by keyword hits; production when nothing matches."""

    lowered = text.lower()
    scored = []
    for division, keywords in DIVISION_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits:
            scored.append((division, hits))
    scored.sort(key=lambda item: item[1], reverse=True)
    return [division for division, _ in scored[:limit]] or ["production"]


def assess_complexity(text: str, priority: Priority) -> str:
    lowered = text.lower()
    if priority is Priority.CRITICAL or any(keyword in lowered for keyword in SWARM_KEYWORDS):
        return "swarm"
    if priority is Priority.HIGH or any(keyword in lowered for keyword in COMPLEX_KEYWORDS):
        return "complex"
    return "standard"


@dataclass(slots=True)
class _ActiveWork:
    task_id: str
    workers: list[str]
    steps_done: int = 0
    step_seconds: float = 0.0
    handle: TimerHandle | None = field(default=None, repr=False)


class QueueManager:
    """Consumes one queue channel, assigns workers, and reports progress.

    Work for a task stops as soon as the task is finalized by anyone else,
    for example through a recall.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        bus: EventBus,
        scheduler: Scheduler,
        workforce: Workforce,
        spec: QueueSpec,
        settings: SimulationSettings | None = None,
    ) -> None:
        self.bus = bus
        self.scheduler = scheduler
        self.workforce = workforce
        self.spec = spec
        self.settings = settings or SimulationSettings()
        self._active: dict[str, _ActiveWork] = {}

        bus.subscribe(queue_channel(spec.authority, spec.queue), self.receive)
        bus.subscribe(channels.TASK_FINALIZED, self.on_finalized)

    @property
    def manager_id(self) -> str:
        return self.spec.manager_id

    @property
    def active_count(self) -> int:
        return len(self._active)

    def receive(self, dispatch: QueueDispatch) -> None:
        if dispatch.task_id in self._active:
            return
        text = f"{dispatch.title} {dispatch.description}"
        divisions = analyze_divisions(text)
        complexity = assess_complexity(text, dispatch.priority)
        logger.info(
            "%s received %s: %r divisions=%s complexity=%s",
            self.manager_id,
            dispatch.task_id,
            dispatch.title,
            ",".join(divisions),
            complexity,
        )

        workers = self._pick_workers(divisions)
        if not workers:
            logger.warning("%s has no workers for task %s", self.manager_id, dispatch.task_id)
            self.bus.publish(
                channels.TASK_FAILED,
                TaskFailed(
                    task_id=dispatch.task_id,
                    reason=f"No workers on queue {self.spec.queue}",
                    worker=self.manager_id,
                ),
            )
            return

        work = _ActiveWork(task_id=dispatch.task_id, workers=[])
        self._active[dispatch.task_id] = work
        for worker, division in workers:
            self.workforce.set_state(worker.worker_id, WorkerState.WORKING)
            work.workers.append(worker.worker_id)
            self.bus.publish(
                channels.TASK_ASSIGNED,
                TaskDelegated(
                    task_id=dispatch.task_id,
                    from_worker=self.manager_id,
                    to_worker=worker.worker_id,
                    queue=self.spec.queue,
                    division=division,
                ),
            )

        total = (
            self.settings.swarm_task_seconds
            if complexity == "swarm"
            else self.settings.standard_task_seconds
        )
        work.step_seconds = total / self.settings.progress_steps
        self._schedule_step(work)

    def on_finalized(self, task: Task) -> None:
        work = self._active.pop(task.task_id, None)
        if work is None:
            return
        if work.handle is not None:
            work.handle.cancel()
        self._release_workers(work)
        logger.debug("%s stopped work on %s", self.manager_id, task.task_id)

    def _pick_workers(self, divisions: list[str]) -> list[tuple[Worker, str]]:
        local = [
            worker
            for worker in self.workforce.on_queue(self.spec.queue, self.spec.authority)
            if worker.state in (WorkerState.IDLE, WorkerState.WORKING)
        ]
        if not local:
            return []
        picked: list[tuple[Worker, str]] = []
        for division in divisions:
            matching = [worker for worker in local if worker.division == division]
            if not matching:
                continue
            idle = [worker for worker in matching if worker.state is WorkerState.IDLE]
            worker = (idle or matching)[0]
            if all(worker is not chosen for chosen, _ in picked):
                picked.append((worker, division))
        if not picked:
            idle = [worker for worker in local if worker.state is WorkerState.IDLE]
            picked.append(((idle or local)[0], divisions[0]))
        return picked

    def _step(self, task_id: str) -> None:
        work = self._active.get(task_id)
        if work is None:
            return
        work.steps_done += 1
        steps = self.settings.progress_steps
        progress = min(100, round(work.steps_done / steps * 100))
        self.bus.publish(
            channels.TASK_PROGRESS,
            TaskProgress(
                task_id=task_id,
                progress=progress,
                message=f"{self.manager_id}: {progress}% complete",
                worker=self.manager_id,
            ),
        )
        if work.steps_done < steps:
            self._schedule_step(work)
            return
        self._active.pop(task_id, None)
        self._release_workers(work)
        self.bus.publish(
            channels.TASK_COMPLETED,
            TaskCompleted(
                task_id=task_id,
                result=f"Completed by {self.manager_id}",
                worker=self.manager_id,
            ),
        )

    def _schedule_step(self, work: _ActiveWork) -> None:
        task_id = work.task_id
        work.handle = self.scheduler.call_later(
            work.step_seconds,
            lambda: self._step(task_id),
            label=f"progress:{task_id}",
        )

    def _release_workers(self, work: _ActiveWork) -> None:
        for worker_id in work.workers:
            worker = self.workforce.get(worker_id)
            if worker is None:
                continue
            if worker.queue != self.spec.queue or worker.state is WorkerState.MOVING:
                # borrowed by a swarm; idle once it is sent back
                self.workforce.hold_return_state(worker_id, WorkerState.IDLE)
            elif worker.state is WorkerState.WORKING:
                self.workforce.set_state(worker_id, WorkerState.IDLE)
