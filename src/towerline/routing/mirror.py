"""Second-authority router for operational work (deploys, certificates, backups)."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from towerline.bridge.dedup import DedupCache, DedupCandidate
from towerline.config import RoutingSettings
from towerline.core import bus as channels
from towerline.core.bus import EventBus, queue_channel
from towerline.core.models import (
    Authority,
    CrossAuthorityForward,
    Priority,
    QueueDispatch,
    Reply,
    Task,
    TaskCompleted,
    TaskCreate,
    TaskDelegated,
    TaskFailed,
    TaskNote,
)
from towerline.routing.classifier import request_text
from towerline.routing.commands import CommandEnvelope, CommandKind, generic_title
from towerline.routing.queues import QueueDirectory, ensure_known, infer_mirror_queue
from towerline.tasks.registry import DEFAULT_TITLE, TaskRegistry

logger = logging.getLogger(__name__)

REPLY_PREFIX = "[MIRROR]"


@dataclass(slots=True)
class TaskTemplate:
    """Fixed task shape for one operational command."""

    title: str
    description: str
    priority: Priority
    division: str
    queue: int

    def as_args(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "division": self.division,
            "queue": self.queue,
        }


def _deploy(args: Mapping[str, Any]) -> TaskTemplate:
    project = args.get("project") or "tsiapp"
    return TaskTemplate(
        title=f"Deploy {project} to production",
        description=f"Deploy latest build of {project}. Rollback ready.",
        priority=Priority.HIGH,
        division="production",
        queue=15,
    )


def _sync(args: Mapping[str, Any]) -> TaskTemplate:
    target = args.get("target") or args.get("project") or "all"
    return TaskTemplate(
        title=f"Sync {target}",
        description=f"FTP/rsync synchronization for {target}",
        priority=Priority.NORMAL,
        division="production",
        queue=15,
    )


def _monitor(args: Mapping[str, Any]) -> TaskTemplate:
    target = args.get("target") or "all"
    return TaskTemplate(
        title=f"Monitor {target}",
        description=f"Uptime check and log analysis for {target}",
        priority=Priority.NORMAL,
        division="security",
        queue=19,
    )


def _certificate(args: Mapping[str, Any]) -> TaskTemplate:
    domain = args.get("domain") or args.get("target") or "unknown"
    return TaskTemplate(
        title=f"SSL cert for {domain}",
        description=f"SSL certificate management for {domain}",
        priority=Priority.HIGH,
        division="legal",
        queue=18,
    )


def _subdomain(args: Mapping[str, Any]) -> TaskTemplate:
    subdomain = args.get("subdomain") or args.get("target") or "new"
    return TaskTemplate(
        title=f"Subdomain: {subdomain}",
        description=f"DNS routing and subdomain configuration for {subdomain}",
        priority=Priority.NORMAL,
        division="legal",
        queue=18,
    )


def _backup(args: Mapping[str, Any]) -> TaskTemplate:
    target = args.get("target") or "full"
    return TaskTemplate(
        title=f"Backup {target}",
        description=f"Database backup and migration prep for {target}",
        priority=Priority.NORMAL,
        division="accounting",
        queue=16,
    )


TEMPLATES: dict[CommandKind, Callable[[Mapping[str, Any]], TaskTemplate]] = {
    CommandKind.DEPLOY: _deploy,
    CommandKind.SYNC: _sync,
    CommandKind.MONITOR: _monitor,
    CommandKind.CERTIFICATE: _certificate,
    CommandKind.SUBDOMAIN: _subdomain,
    CommandKind.BACKUP: _backup,
}


class MirrorRouter:
    """Delegates work to mirror queues.

    A forwarded task id is reused when it is still active, which keeps a
    ``both`` task a single task with one delegation branch per authority.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        registry: TaskRegistry,
        dedup: DedupCache,
        directory: QueueDirectory,
        settings: RoutingSettings | None = None,
    ) -> None:
        self.bus = bus
        self.registry = registry
        self.dedup = dedup
        self.directory = directory
        self.settings = settings or RoutingSettings()
        self.active_tasks: dict[str, int] = {}

        bus.subscribe(channels.MIRROR_COMMAND, self.handle_command)
        bus.subscribe(channels.CROSS_AUTHORITY_FORWARD, self.handle_forward)
        bus.subscribe(channels.TASK_COMPLETED, self.on_completed)
        bus.subscribe(channels.TASK_FAILED, self.on_failed)

    @property
    def commander(self) -> str:
        return self.settings.mirror_commander

    def handle_command(self, envelope: CommandEnvelope) -> Task | None:
        logger.info("Mirror command received: %s from %s", envelope.command, envelope.source)
        return self.dispatch(
            envelope.kind,
            envelope.command,
            envelope.args,
            source=envelope.source,
            reply_channel=envelope.reply_channel,
            task_id=envelope.task_id,
        )

    def handle_forward(self, forward: CrossAuthorityForward) -> Task | None:
        return self.dispatch(
            CommandKind.parse(forward.command),
            forward.command,
            forward.args,
            source=forward.source,
            reply_channel=forward.reply_channel,
            task_id=forward.task_id,
        )

    def dispatch(  # noqa: PLR0913
        self,
        kind: CommandKind,
        command: str,
        args: Mapping[str, Any],
        *,
        source: str,
        reply_channel: str | None,
        task_id: str | None = None,
    ) -> Task | None:
        if kind is CommandKind.STATUS:
            self._reply(self.status_text(), reply_channel)
            return None
        template = TEMPLATES.get(kind)
        if template is not None:
            params = {"project": args.get("project"), **template(args).as_args()}
        elif kind is CommandKind.TASK:
            params = dict(args)
        else:
            params = {
                **args,
                "title": args.get("title") or generic_title(command, dict(args)),
                "description": args.get("description") or "",
            }
        return self.delegate(params, source=source, reply_channel=reply_channel, task_id=task_id)

    def delegate(
        self,
        args: Mapping[str, Any],
        *,
        source: str = "cross-authority",
        reply_channel: str | None = None,
        task_id: str | None = None,
    ) -> Task | None:
        """Reuse a forwarded task or create a mirror task, then hand it to a mirror queue."""

        title = str(args.get("title") or "").strip() or DEFAULT_TITLE
        description = str(args.get("description") or "")
        default_queue = self.settings.mirror_default_queue
        resolution = ensure_known(
            infer_mirror_queue(request_text(title, description), args, default_queue=default_queue),
            self.directory,
            Authority.MIRROR,
            default_queue=default_queue,
        )

        task = None
        if task_id and self.registry.is_active(task_id):
            task = self.registry.get_task(task_id)
        if task is None:
            project = str(args.get("project") or "").strip() or None
            if task_id is None:
                candidate = DedupCandidate(title=title, project=project, queue=resolution.queue)
                if self.dedup.is_duplicate(candidate):
                    entry = self.dedup.entry_for(candidate)
                    owner = entry.owning_authority.value if entry else "another authority"
                    existing = entry.task_id if entry else "?"
                    logger.info("Mirror blocked duplicate %r (owned by %s)", title, owner)
                    self._reply(
                        f"{REPLY_PREFIX} Duplicate blocked: '{title}' is already owned by "
                        f"{owner} as {existing}",
                        reply_channel,
                    )
                    return None
            else:
                logger.warning("Forwarded task %s is gone; creating a linked mirror task", task_id)
            task = self.registry.create_task(
                TaskCreate(
                    title=title,
                    description=description,
                    source=source,
                    source_worker=self.commander,
                    priority=Priority.parse(args.get("priority")),
                    authority=Authority.MIRROR,
                    target_project=project,
                    target_queue=resolution.queue,
                    target_division=args.get("division"),
                    linked_task_id=task_id,
                ),
            )
            self.dedup.register_task(task, Authority.MIRROR)

        if resolution.fallback:
            self.bus.publish(
                channels.TASK_NOTE,
                TaskNote(
                    task_id=task.task_id,
                    message=(
                        f"No mirror queue {resolution.requested}; using queue {resolution.queue}"
                    ),
                    worker=self.commander,
                    level="warning",
                ),
            )

        self.active_tasks[task.task_id] = resolution.queue
        self.bus.publish(
            channels.TASK_DELEGATED,
            TaskDelegated(
                task_id=task.task_id,
                from_worker=self.commander,
                to_worker=self.directory.manager_id(Authority.MIRROR, resolution.queue),
                queue=resolution.queue,
                division=args.get("division"),
            ),
        )
        self.bus.publish(
            queue_channel(Authority.MIRROR, resolution.queue),
            QueueDispatch(
                task_id=task.task_id,
                title=task.title,
                description=task.description,
                priority=task.priority,
                from_worker=self.commander,
                authority=Authority.MIRROR,
            ),
        )
        self._reply(
            f"{REPLY_PREFIX} Task {task.task_id} delegated to queue {resolution.queue}: "
            f"{task.title}",
            reply_channel,
        )
        return task

    def status_text(self) -> str:
        busy: dict[int, int] = {}
        for queue in self.active_tasks.values():
            busy[queue] = busy.get(queue, 0) + 1
        lines = [f"{REPLY_PREFIX} STATUS", f"Active tasks: {len(self.active_tasks)}"]
        lines.extend(f"  Q{queue}M: {count} active" for queue, count in sorted(busy.items()))
        return "\n".join(lines)

    def on_completed(self, event: TaskCompleted) -> None:
        if self.active_tasks.pop(event.task_id, None) is None:
            return
        self._reply(
            f"{REPLY_PREFIX} Task {event.task_id} COMPLETED: {event.result or 'Success'}",
            None,
        )

    def on_failed(self, event: TaskFailed) -> None:
        if self.active_tasks.pop(event.task_id, None) is None:
            return
        self._reply(
            f"{REPLY_PREFIX} Task {event.task_id} FAILED: {event.reason or 'Unknown'}",
            None,
        )

    def _reply(self, text: str, channel_ref: str | None) -> None:
        self.bus.publish(self.settings.reply_channel, Reply(text=text, channel_ref=channel_ref))
