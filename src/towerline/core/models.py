"""Domain models for tasks, dedup entries, swarms, and bus payloads."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class Priority(str, Enum):
    """Request priority as given by the originator."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: object) -> Priority:
        """Return a priority for loose input, falling back to normal."""

        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.NORMAL


class Authority(str, Enum):
    """Routing domain that owns execution of a task."""

    PRIMARY = "primary"
    MIRROR = "mirror"
    BOTH = "both"

    @property
    def other(self) -> Authority:
        """Opposite single authority, used to suggest collaboration."""

        return Authority.PRIMARY if self is Authority.MIRROR else Authority.MIRROR

    @classmethod
    def parse(cls, value: object) -> Authority | None:
        """Return an authority for loose input, or None when not recognized."""

        if isinstance(value, Authority):
            return value
        normalized = str(value or "").strip().lower()
        aliases = {"left": "primary", "right": "mirror"}
        try:
            return cls(aliases.get(normalized, normalized))
        except ValueError:
            return None


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    DELEGATED = "delegated"
    IN_PROGRESS = "in-progress"
    SWARMING = "swarming"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerState(str, Enum):
    """Runtime state of a worker in the roster."""

    IDLE = "idle"
    WORKING = "working"
    MEETING = "meeting"
    MOVING = "moving"
    OFFLINE = "offline"


NON_RECRUITABLE_STATES = frozenset({WorkerState.MEETING, WorkerState.MOVING, WorkerState.OFFLINE})


class SwarmStatus(str, Enum):
    """Swarm session lifecycle."""

    RECRUITING = "recruiting"
    ACTIVE = "active"
    COMPLETING = "completing"


@dataclass(slots=True)
class DelegationStep:
    """One hand-off in a task's delegation chain."""

    from_worker: str
    to_worker: str
    queue: int | None
    division: str | None
    timestamp: datetime
    action: str


@dataclass(slots=True)
class TaskLogEntry:
    """Audit line attached to a task."""

    timestamp: datetime
    message: str
    worker: str = "system"
    level: str = "info"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task; every field has a default."""

    title: str | None = None
    description: str = ""
    source: str = "unknown"
    source_worker: str | None = None
    priority: Priority = Priority.NORMAL
    authority: Authority = Authority.PRIMARY
    target_project: str | None = None
    target_queue: int | None = None
    target_division: str | None = None
    linked_task_id: str | None = None


@dataclass(slots=True)
class Task:
    """Unit of work tracked by the registry."""

    task_id: str
    title: str
    description: str
    source: str
    source_worker: str | None
    priority: Priority
    authority: Authority
    target_project: str | None
    target_queue: int | None
    target_division: str | None
    created_at: datetime
    updated_at: datetime
    linked_task_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    delegation_chain: list[DelegationStep] = field(default_factory=list)
    assigned_workers: list[str] = field(default_factory=list)
    recruited_workers: list[str] = field(default_factory=list)
    progress: int = 0
    logs: list[TaskLogEntry] = field(default_factory=list)
    completed_at: datetime | None = None
    duration_ms: int | None = None
    result: str | None = None

    def snapshot(self) -> Task:
        """Detached copy safe to hand to subscribers."""

        return replace(
            self,
            delegation_chain=list(self.delegation_chain),
            assigned_workers=list(self.assigned_workers),
            recruited_workers=list(self.recruited_workers),
            logs=list(self.logs),
        )


@dataclass(slots=True)
class RegistryStats:
    """Aggregate counters published on every registry mutation."""

    active: int
    pending: int
    delegated: int
    in_progress: int
    swarming: int
    completed_total: int
    failed_total: int
    avg_duration_ms: float


@dataclass(slots=True)
class DedupEntry:
    """Live fingerprint owned by one authority."""

    fingerprint: str
    owning_authority: Authority
    task_id: str
    title: str
    seen_at: float


@dataclass(slots=True)
class BridgeStatus:
    """Live dedup entries per authority plus the duplicate counter."""

    primary: int
    mirror: int
    shared: int
    duplicate_count: int


@dataclass(slots=True)
class WorkerRef:
    """Borrowed worker and where it has to go back to."""

    worker_id: str
    origin_queue: int
    origin_state: WorkerState


@dataclass(slots=True)
class WorkerCandidate:
    """Scored recruitment candidate; lives only during one recruit call."""

    worker_id: str
    origin_queue: int
    origin_state: WorkerState
    score: int


@dataclass(slots=True)
class RecruitRequest:
    """Input for forming a swarm around one task."""

    task_id: str
    target_queue: int
    coordinator_id: str
    required_capabilities: tuple[str, ...] = ()
    max_workers: int | None = None
    authority: Authority = Authority.PRIMARY
    allow_cross_authority: bool | None = None


@dataclass(slots=True)
class SwarmSession:
    """Worker-to-task binding for a temporary swarm."""

    task_id: str
    target_queue: int
    coordinator_id: str
    workers: list[WorkerRef]
    status: SwarmStatus
    started_at: float


# ---------------------------------------------------------------------------
# Bus payloads
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TaskDelegated:
    task_id: str
    from_worker: str
    to_worker: str
    queue: int | None
    division: str | None = None


@dataclass(slots=True)
class TaskSwarmed:
    task_id: str
    coordinator: str
    workers: list[str]
    queue: int
    division: str = "swarm"


@dataclass(slots=True)
class TaskProgress:
    task_id: str
    progress: int | None = None
    message: str | None = None
    worker: str | None = None


@dataclass(slots=True)
class TaskNote:
    task_id: str
    message: str
    worker: str | None = None
    level: str = "info"


@dataclass(slots=True)
class TaskCompleted:
    task_id: str
    result: str | None = None
    worker: str | None = None


@dataclass(slots=True)
class TaskFailed:
    task_id: str
    reason: str | None = None
    worker: str | None = None


@dataclass(slots=True)
class DuplicateDetected:
    new_task_id: str
    existing_task_id: str
    existing_authority: Authority
    title: str


@dataclass(slots=True)
class QueueDispatch:
    """Work order published to a queue consumer."""

    task_id: str
    title: str
    description: str
    priority: Priority
    from_worker: str
    authority: Authority = Authority.PRIMARY


@dataclass(slots=True)
class CrossAuthorityForward:
    command: str
    args: dict[str, Any]
    task_id: str | None = None
    source: str = "cross-authority"
    reply_channel: str | None = None


@dataclass(slots=True)
class Reply:
    """Notification sent back to whoever issued a command."""

    text: str
    channel_ref: str | None = None


@dataclass(slots=True)
class SwarmRecall:
    """Out-of-band request to tear down a task's swarm."""

    task_id: str
