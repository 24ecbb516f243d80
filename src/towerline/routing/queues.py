"""Known work queues per authority and the fallbacks used to pick one."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from towerline.core.models import Authority

logger = logging.getLogger(__name__)

PRIMARY_KEYWORD_QUEUES: tuple[tuple[tuple[str, ...], int], ...] = (
    (("security", "threat"), 19),
    (("legal", "compliance"), 18),
    (("research", "prototype"), 17),
    (("finance", "budget"), 16),
)

MIRROR_PATTERN_QUEUES: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"deploy|rollback|sync|rsync|ftp|ship|production"), 15),
    (re.compile(r"backup|migration|database|query|data"), 16),
    (re.compile(r"api|endpoint|rate.limit|prototype"), 17),
    (re.compile(r"dns|ssl|subdomain|cert|domain|legal"), 18),
    (re.compile(r"uptime|monitor|alert|log|security|watch"), 19),
)


@dataclass(slots=True)
class QueueSpec:
    """One destination queue owned by an authority."""

    queue: int
    authority: Authority
    project_id: str
    name: str

    @property
    def manager_id(self) -> str:
        if self.authority is Authority.MIRROR:
            return f"qm-mirror-{self.project_id}"
        return f"qm-{self.project_id}"


@dataclass(slots=True)
class QueueResolution:
    """Outcome of queue inference for one request."""

    queue: int
    reason: str
    project: str | None = None
    requested: int | None = None
    fallback: bool = False


class QueueDirectory:
    """Registry of queues each authority can delegate to."""

    def __init__(self, queues: Iterable[QueueSpec] = ()) -> None:
        self._queues: dict[tuple[Authority, int], QueueSpec] = {}
        for spec in queues:
            self.add(spec)

    def add(self, spec: QueueSpec) -> None:
        self._queues[(spec.authority, spec.queue)] = spec

    def get(self, authority: Authority, queue: int) -> QueueSpec | None:
        return self._queues.get((authority, queue))

    def has(self, authority: Authority, queue: int) -> bool:
        return (authority, queue) in self._queues

    def for_authority(self, authority: Authority) -> list[QueueSpec]:
        return sorted(
            (spec for spec in self._queues.values() if spec.authority is authority),
            key=lambda spec: spec.queue,
        )

    def all(self) -> list[QueueSpec]:
        return sorted(self._queues.values(), key=lambda spec: (spec.authority.value, spec.queue))

    def manager_id(self, authority: Authority, queue: int) -> str:
        spec = self.get(authority, queue)
        if spec is not None:
            return spec.manager_id
        return f"qm-mirror-{queue}" if authority is Authority.MIRROR else f"qm-{queue}"

    def find_project(
        self,
        reference: str,
        authority: Authority = Authority.PRIMARY,
    ) -> QueueSpec | None:
        """Exact, case-insensitive match on project id or name."""

        wanted = reference.strip().lower()
        if not wanted:
            return None
        for spec in self.for_authority(authority):
            if wanted in {spec.project_id.lower(), spec.name.lower()}:
                return spec
        return None

    def match_text(self, text: str, authority: Authority = Authority.PRIMARY) -> QueueSpec | None:
        """First queue whose project id or name appears in the text."""

        lowered = text.lower()
        for spec in self.for_authority(authority):
            if spec.project_id.lower() in lowered or spec.name.lower() in lowered:
                return spec
        return None

    def __len__(self) -> int:
        return len(self._queues)


def explicit_queue(args: Mapping[str, Any]) -> int | None:
    """Queue number given as ``queue`` or ``floor``; unparseable values are ignored."""

    for key in ("queue", "floor"):
        value = args.get(key)
        if value is None or value == "":
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric %s=%r", key, value)
    return None


def infer_primary_queue(
    text: str,
    args: Mapping[str, Any],
    directory: QueueDirectory,
    *,
    flagship_queue: int,
) -> QueueResolution:
    requested = explicit_queue(args)
    if requested is not None:
        return QueueResolution(queue=requested, reason="explicit", requested=requested)

    project = str(args.get("project") or "").strip()
    if project:
        spec = directory.find_project(project)
        if spec is not None:
            return QueueResolution(queue=spec.queue, reason="project", project=spec.project_id)

    spec = directory.match_text(text)
    if spec is not None:
        return QueueResolution(queue=spec.queue, reason="project-match", project=spec.project_id)

    lowered = text.lower()
    for keywords, queue in PRIMARY_KEYWORD_QUEUES:
        if any(keyword in lowered for keyword in keywords):
            return QueueResolution(queue=queue, reason="keyword")

    return QueueResolution(queue=flagship_queue, reason="flagship")


def infer_mirror_queue(
    text: str,
    args: Mapping[str, Any],
    *,
    default_queue: int,
) -> QueueResolution:
    requested = explicit_queue(args)
    if requested is not None:
        return QueueResolution(queue=requested, reason="explicit", requested=requested)

    lowered = text.lower()
    for pattern, queue in MIRROR_PATTERN_QUEUES:
        if pattern.search(lowered):
            return QueueResolution(queue=queue, reason="keyword")

    return QueueResolution(queue=default_queue, reason="default")


def ensure_known(
    resolution: QueueResolution,
    directory: QueueDirectory,
    authority: Authority,
    *,
    default_queue: int,
) -> QueueResolution:
    """Swap an unknown destination for the authority's default queue."""

    if directory.has(authority, resolution.queue):
        return resolution
    logger.warning(
        "No %s queue %s; falling back to queue %s",
        authority.value,
        resolution.queue,
        default_queue,
    )
    return QueueResolution(
        queue=default_queue,
        reason="fallback",
        project=resolution.project,
        requested=resolution.queue,
        fallback=True,
    )
