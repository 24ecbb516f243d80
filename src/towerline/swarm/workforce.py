"""Roster of workers and the queues that own them."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from towerline.core.models import Authority, WorkerState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Worker:
    """A worker belongs to one queue of one authority at a time."""

    worker_id: str
    name: str
    queue: int
    authority: Authority
    division: str
    capabilities: tuple[str, ...] = ()
    state: WorkerState = WorkerState.IDLE


class Workforce:
    """Mutable worker roster shared by queue managers and recruitment."""

    def __init__(self, workers: Iterable[Worker] = ()) -> None:
        self._workers: dict[str, Worker] = {}
        self._return_states: dict[str, WorkerState] = {}
        for worker in workers:
            self.add(worker)

    def add(self, worker: Worker) -> None:
        if worker.worker_id in self._workers:
            raise ValueError(f"Duplicate worker id: {worker.worker_id}")
        self._workers[worker.worker_id] = worker

    def get(self, worker_id: str) -> Worker | None:
        return self._workers.get(worker_id)

    def on_queue(self, queue: int, authority: Authority | None = None) -> list[Worker]:
        return [
            worker
            for worker in self._workers.values()
            if worker.queue == queue and (authority is None or worker.authority is authority)
        ]

    def move_to(self, worker_id: str, queue: int) -> bool:
        worker = self._workers.get(worker_id)
        if worker is None:
            logger.warning("Cannot move unknown worker %s", worker_id)
            return False
        worker.queue = queue
        return True

    def set_state(self, worker_id: str, state: WorkerState) -> bool:
        worker = self._workers.get(worker_id)
        if worker is None:
            logger.warning("Cannot set state of unknown worker %s", worker_id)
            return False
        worker.state = state
        return True

    def hold_return_state(self, worker_id: str, state: WorkerState) -> None:
        """Override the state a borrowed worker gets back when its swarm dissolves."""

        self._return_states[worker_id] = state

    def return_state(self, worker_id: str, default: WorkerState) -> WorkerState:
        return self._return_states.pop(worker_id, default)

    def placement(self) -> dict[str, tuple[int, WorkerState]]:
        """Snapshot of every worker's ``(queue, state)`` pair."""

        return {worker.worker_id: (worker.queue, worker.state) for worker in self._workers.values()}

    def __iter__(self) -> Iterator[Worker]:
        return iter(list(self._workers.values()))

    def __len__(self) -> int:
        return len(self._workers)
