"""Cross-authority duplicate suppression with time-bounded fingerprints."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from towerline.core import bus as channels
from towerline.core.bus import EventBus
from towerline.core.models import (
    Authority,
    BridgeStatus,
    DedupEntry,
    DuplicateDetected,
    Task,
)
from towerline.core.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class DedupCandidate:
    """The parts of a request that make up its fingerprint."""

    title: str
    project: str | None = None
    queue: int | None = None

    @classmethod
    def from_task(cls, task: Task) -> DedupCandidate:
        return cls(title=task.title, project=task.target_project, queue=task.target_queue)


def normalize_title(title: str | None) -> str:
    """Lower-case, trim, and collapse inner whitespace."""

    return _WHITESPACE_RE.sub(" ", (title or "").strip().lower())


def fingerprint(candidate: DedupCandidate | Task) -> str:
    """Composite key used to decide whether two requests are the same work."""

    if isinstance(candidate, Task):
        candidate = DedupCandidate.from_task(candidate)
    project = (candidate.project or "").strip().lower()
    return f"{normalize_title(candidate.title)}|{project}|{candidate.queue or 0}"


class DedupCache:
    """Index of recently seen fingerprints and the authority that owns each.

    The cache only reports; whether a duplicate blocks a request is up to the
    caller. Expired entries are purged on every lookup and by a periodic sweep
    once ``start`` has been called.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        scheduler: Scheduler,
        ttl_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self.bus = bus
        self.scheduler = scheduler
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.duplicate_count = 0
        self._entries: dict[str, DedupEntry] = {}
        self._sweep_handle: TimerHandle | None = None

        bus.subscribe(channels.TASK_CREATED, self.on_task_created)

    def start(self) -> None:
        """Begin the periodic expiry sweep."""

        if self._sweep_handle is None or not self._sweep_handle.active:
            self._sweep_handle = self.scheduler.call_every(
                self.sweep_interval_seconds,
                self.sweep,
                label="dedup-sweep",
            )
        logger.info(
            "Cross-authority dedup active: ttl=%.0fs sweep=%.0fs",
            self.ttl_seconds,
            self.sweep_interval_seconds,
        )
        self._publish_status()

    def close(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None

    def is_duplicate(self, candidate: DedupCandidate | Task) -> bool:
        self.sweep()
        return fingerprint(candidate) in self._entries

    def owner_of(self, key: str) -> Authority | None:
        entry = self._entries.get(key)
        return entry.owning_authority if entry else None

    def entry_for(self, candidate: DedupCandidate | Task) -> DedupEntry | None:
        self.sweep()
        return self._entries.get(fingerprint(candidate))

    def request_cross_authority(self, candidate: DedupCandidate | Task) -> Authority:
        """Suggest which single authority should take a request.

        An already-owned fingerprint points away from its owner: mirror for a
        primary owner, primary for a mirror or shared owner. Otherwise the
        authority with fewer live entries wins, ties going to primary.
        """

        self.sweep()
        existing = self._entries.get(fingerprint(candidate))
        if existing is not None:
            if existing.owning_authority is Authority.PRIMARY:
                return Authority.MIRROR
            return Authority.PRIMARY

        status = self.status()
        return Authority.PRIMARY if status.primary <= status.mirror else Authority.MIRROR

    def status(self) -> BridgeStatus:
        counts = {authority: 0 for authority in Authority}
        for entry in self._entries.values():
            counts[entry.owning_authority] += 1
        return BridgeStatus(
            primary=counts[Authority.PRIMARY],
            mirror=counts[Authority.MIRROR],
            shared=counts[Authority.BOTH],
            duplicate_count=self.duplicate_count,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def register_task(self, task: Task, authority: Authority | None = None) -> DedupEntry:
        key = fingerprint(task)
        entry = DedupEntry(
            fingerprint=key,
            owning_authority=authority or task.authority,
            task_id=task.task_id,
            title=task.title,
            seen_at=self.scheduler.now(),
        )
        self._entries[key] = entry
        self._publish_status()
        return entry

    def on_task_created(self, task: Task) -> None:
        self.sweep()
        key = fingerprint(task)
        existing = self._entries.get(key)
        if existing is None:
            self.register_task(task)
            return
        if existing.task_id == task.task_id:
            return

        self.duplicate_count += 1
        logger.warning(
            "Duplicate detected: %r already owned by %s (%s)",
            task.title,
            existing.owning_authority.value,
            existing.task_id,
        )
        self.bus.publish(
            channels.BRIDGE_DUPLICATE,
            DuplicateDetected(
                new_task_id=task.task_id,
                existing_task_id=existing.task_id,
                existing_authority=existing.owning_authority,
                title=task.title,
            ),
        )
        self._publish_status()

    def sweep(self) -> int:
        """Drop entries older than the TTL; returns how many were removed."""

        now = self.scheduler.now()
        expired = [
            key for key, entry in self._entries.items() if now - entry.seen_at > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Expired %d dedup entries", len(expired))
        return len(expired)

    def _publish_status(self) -> None:
        self.bus.publish(channels.BRIDGE_STATUS, self.status())
