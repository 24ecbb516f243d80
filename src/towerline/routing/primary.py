"""Entry router: classifies requests, guards against duplicates, delegates."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from towerline.bridge.dedup import DedupCache, DedupCandidate
from towerline.config import RecruitmentSettings, RoutingSettings
from towerline.core import bus as channels
from towerline.core.bus import EventBus, queue_channel
from towerline.core.models import (
    Authority,
    CrossAuthorityForward,
    Priority,
    QueueDispatch,
    RecruitRequest,
    Reply,
    SwarmRecall,
    Task,
    TaskCompleted,
    TaskCreate,
    TaskDelegated,
    TaskFailed,
    TaskNote,
    WorkerState,
)
from towerline.reports import StatusReporter, render
from towerline.routing.classifier import Classifier, KeywordClassifier, request_text
from towerline.routing.commands import CommandEnvelope, CommandKind, generic_title
from towerline.routing.queues import (
    QueueDirectory,
    QueueResolution,
    ensure_known,
    explicit_queue,
    infer_mirror_queue,
    infer_primary_queue,
)
from towerline.swarm.workforce import Workforce
from towerline.tasks.registry import DEFAULT_TITLE, TaskRegistry

logger = logging.getLogger(__name__)

MIRROR_TEMPLATE_COMMANDS = frozenset(
    {
        CommandKind.SYNC,
        CommandKind.MONITOR,
        CommandKind.CERTIFICATE,
        CommandKind.SUBDOMAIN,
        CommandKind.BACKUP,
    },
)


class PrimaryRouter:
    """Turns inbound commands into tasks owned by the primary authority or both.

    Work for the mirror authority is never delegated here; it is forwarded on
    ``authority.newTask`` together with the id of the task created for it, so the
    mirror side reuses that task instead of creating a second one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        bus: EventBus,
        registry: TaskRegistry,
        dedup: DedupCache,
        directory: QueueDirectory,
        workforce: Workforce | None = None,
        reporter: StatusReporter | None = None,
        classifier: Classifier | None = None,
        settings: RoutingSettings | None = None,
        swarm_settings: RecruitmentSettings | None = None,
    ) -> None:
        self.bus = bus
        self.registry = registry
        self.dedup = dedup
        self.directory = directory
        self.workforce = workforce
        self.reporter = reporter or StatusReporter(registry=registry, dedup=dedup)
        self.classifier = classifier or KeywordClassifier()
        self.settings = settings or RoutingSettings()
        self.swarm_settings = swarm_settings or RecruitmentSettings()
        self._tracked: set[str] = set()

        self._handlers: dict[CommandKind, Callable[[CommandEnvelope], Task | None]] = {
            CommandKind.TASK: self._handle_task,
            CommandKind.DEPLOY: self._handle_deploy,
            CommandKind.SWARM: self._handle_swarm,
            CommandKind.ASSIGN: self._handle_assign,
            CommandKind.RECALL: self._handle_recall,
            CommandKind.STATUS: self._handle_status,
            CommandKind.TASKS: self._handle_tasks,
            CommandKind.GENERIC: self._handle_generic,
        }
        for kind in MIRROR_TEMPLATE_COMMANDS:
            self._handlers[kind] = self._forward_command

        bus.subscribe(channels.PRIMARY_COMMAND, self.handle_command)
        bus.subscribe(channels.TASK_COMPLETED, self.on_completed)
        bus.subscribe(channels.TASK_FAILED, self.on_failed)

    @property
    def commander(self) -> str:
        return self.settings.primary_commander

    def handle_command(self, envelope: CommandEnvelope) -> Task | None:
        logger.info("Command received: %s from %s", envelope.command, envelope.source)
        return self._handlers[envelope.kind](envelope)

    def create_and_delegate(
        self,
        args: Mapping[str, Any],
        *,
        source: str = "api",
        reply_channel: str | None = None,
    ) -> Task | None:
        """Create one task for an accepted request and route it.

        Returns None only when the request duplicates live work.
        """

        title = str(args.get("title") or "").strip() or DEFAULT_TITLE
        description = str(args.get("description") or "")
        text = request_text(title, description)
        authority = Authority.parse(args.get("authority")) or self.classifier.classify(text)
        resolution = self._resolve_queue(authority, args, text)
        project = str(args.get("project") or "").strip() or resolution.project

        candidate = DedupCandidate(title=title, project=project, queue=resolution.queue)
        if self._blocked(candidate, reply_channel):
            return None

        task = self.registry.create_task(
            TaskCreate(
                title=title,
                description=description,
                source=source,
                source_worker=self.commander,
                priority=Priority.parse(args.get("priority")),
                authority=authority,
                target_project=project,
                target_queue=resolution.queue,
                target_division=args.get("division"),
            ),
        )
        self.dedup.register_task(task, authority)
        self._tracked.add(task.task_id)
        if resolution.fallback:
            self._note_fallback(task, resolution)

        if authority in (Authority.PRIMARY, Authority.BOTH):
            self._delegate(task, resolution.queue)
        if authority in (Authority.MIRROR, Authority.BOTH):
            forwarded = dict(args)
            if authority is Authority.MIRROR:
                forwarded["queue"] = resolution.queue
            self._forward("task", forwarded, task.task_id, source, reply_channel)

        if authority is Authority.PRIMARY:
            text = f"Task {task.task_id} created and delegated to queue {resolution.queue}"
        elif authority is Authority.MIRROR:
            text = f"Task {task.task_id} created and forwarded to the mirror authority"
        else:
            text = (
                f"Task {task.task_id} created, delegated to queue {resolution.queue} "
                "and forwarded to the mirror authority"
            )
        self._reply(text, reply_channel)
        return task

    def _handle_task(self, envelope: CommandEnvelope) -> Task | None:
        return self.create_and_delegate(
            envelope.args,
            source=envelope.source,
            reply_channel=envelope.reply_channel,
        )

    def _handle_deploy(self, envelope: CommandEnvelope) -> Task | None:
        project = str(envelope.args.get("project") or "tsiapp")
        return self.create_and_delegate(
            {
                **envelope.args,
                "title": f"Deploy {project}",
                "description": f"Deploy {project} to production. Rollback ready.",
                "project": project,
                "priority": "high",
                "division": "production",
            },
            source=envelope.source,
            reply_channel=envelope.reply_channel,
        )

    def _handle_swarm(self, envelope: CommandEnvelope) -> Task | None:
        args = envelope.args
        authority = Authority.parse(args.get("authority")) or Authority.PRIMARY
        queue_owner = Authority.MIRROR if authority is Authority.MIRROR else Authority.PRIMARY
        default_queue = (
            self.settings.mirror_default_queue
            if queue_owner is Authority.MIRROR
            else self.settings.flagship_queue
        )
        requested = explicit_queue(args)
        resolution = ensure_known(
            QueueResolution(
                queue=requested if requested is not None else default_queue,
                reason="explicit" if requested is not None else "flagship",
                requested=requested,
            ),
            self.directory,
            queue_owner,
            default_queue=default_queue,
        )
        title = str(args.get("title") or "").strip() or "Swarm Task"
        project = str(args.get("project") or "").strip() or None
        candidate = DedupCandidate(title=title, project=project, queue=resolution.queue)
        if self._blocked(candidate, envelope.reply_channel):
            return None

        task = self.registry.create_task(
            TaskCreate(
                title=title,
                description=str(
                    args.get("description") or "Critical task requiring swarm intelligence",
                ),
                source=envelope.source,
                source_worker=self.commander,
                priority=Priority.CRITICAL,
                authority=authority,
                target_project=project,
                target_queue=resolution.queue,
                target_division="swarm",
            ),
        )
        self.dedup.register_task(task, authority)
        self._tracked.add(task.task_id)
        if resolution.fallback:
            self._note_fallback(task, resolution)
        if authority in (Authority.PRIMARY, Authority.BOTH):
            self._delegate(task, resolution.queue)
        if authority in (Authority.MIRROR, Authority.BOTH):
            forwarded = {**args, "title": title, "priority": Priority.CRITICAL.value}
            if authority is Authority.MIRROR:
                forwarded["queue"] = resolution.queue
            self._forward("task", forwarded, task.task_id, envelope.source, envelope.reply_channel)

        self.bus.publish(
            channels.SWARM_REQUEST,
            RecruitRequest(
                task_id=task.task_id,
                target_queue=resolution.queue,
                coordinator_id=self.commander,
                required_capabilities=_capabilities(
                    args.get("capabilities"),
                    self.swarm_settings.default_capabilities,
                ),
                max_workers=_positive_int(args.get("max_workers"))
                or self.swarm_settings.swarm_command_max_workers,
                authority=authority,
            ),
        )
        self._reply(
            f"SWARM ACTIVATED: Task {task.task_id} - recruiting workers across all queues",
            envelope.reply_channel,
        )
        return task

    def _handle_assign(self, envelope: CommandEnvelope) -> None:
        args = envelope.args
        worker_id = str(args.get("worker_id") or args.get("worker") or "")
        worker = self.workforce.get(worker_id) if self.workforce and worker_id else None
        if worker is None:
            logger.warning("Assign: unknown worker %r", worker_id)
            self._reply(f"Worker {worker_id or '?'} not found", envelope.reply_channel)
            return None

        self.workforce.set_state(worker.worker_id, WorkerState.WORKING)
        task_id = args.get("task_id") or envelope.task_id
        if task_id and self.registry.is_active(task_id):
            self.bus.publish(
                channels.TASK_ASSIGNED,
                TaskDelegated(
                    task_id=task_id,
                    from_worker=self.commander,
                    to_worker=worker.worker_id,
                    queue=worker.queue,
                    division=worker.division,
                ),
            )
        label = args.get("task_title") or task_id or "direct assignment"
        logger.info("Directly assigned %r to worker %s", label, worker.worker_id)
        self._reply(f"Assigned {label} to {worker.name}", envelope.reply_channel)
        return None

    def _handle_recall(self, envelope: CommandEnvelope) -> None:
        task_id = envelope.args.get("task_id") or envelope.task_id
        if not task_id:
            self._reply("Recall needs a task id", envelope.reply_channel)
            return None
        if self.registry.is_active(task_id):
            self.bus.publish(
                channels.TASK_FAILED,
                TaskFailed(
                    task_id=task_id,
                    reason=f"Recalled by {self.commander}",
                    worker=self.commander,
                ),
            )
        else:
            self.bus.publish(channels.SWARM_RECALL, SwarmRecall(task_id=task_id))
        self._reply(f"Recall issued for {task_id}", envelope.reply_channel)
        return None

    def _handle_status(self, envelope: CommandEnvelope) -> None:
        self._reply(render(self.reporter.status_lines()), envelope.reply_channel)
        return None

    def _handle_tasks(self, envelope: CommandEnvelope) -> None:
        self._reply(render(self.reporter.task_lines()), envelope.reply_channel)
        return None

    def _handle_generic(self, envelope: CommandEnvelope) -> Task | None:
        return self.create_and_delegate(
            {
                "title": envelope.args.get("title")
                or generic_title(envelope.command, envelope.args),
                "description": envelope.args.get("description") or "",
            },
            source=envelope.source,
            reply_channel=envelope.reply_channel,
        )

    def _forward_command(self, envelope: CommandEnvelope) -> None:
        self._forward(
            envelope.kind.value,
            dict(envelope.args),
            envelope.task_id,
            envelope.source,
            envelope.reply_channel,
        )
        return None

    def on_completed(self, event: TaskCompleted) -> None:
        if event.task_id not in self._tracked:
            return
        self._tracked.discard(event.task_id)
        self._reply(f"Task {event.task_id} COMPLETED: {event.result or 'Success'}", None)

    def on_failed(self, event: TaskFailed) -> None:
        if event.task_id not in self._tracked:
            return
        self._tracked.discard(event.task_id)
        self._reply(f"Task {event.task_id} FAILED: {event.reason or 'Unknown'}", None)

    def _resolve_queue(
        self,
        authority: Authority,
        args: Mapping[str, Any],
        text: str,
    ) -> QueueResolution:
        if authority is Authority.MIRROR:
            default_queue = self.settings.mirror_default_queue
            resolution = infer_mirror_queue(text, args, default_queue=default_queue)
        else:
            default_queue = self.settings.flagship_queue
            resolution = infer_primary_queue(
                text,
                args,
                self.directory,
                flagship_queue=default_queue,
            )
        owner = Authority.MIRROR if authority is Authority.MIRROR else Authority.PRIMARY
        return ensure_known(resolution, self.directory, owner, default_queue=default_queue)

    def _blocked(self, candidate: DedupCandidate, reply_channel: str | None) -> bool:
        if not self.dedup.is_duplicate(candidate):
            return False
        entry = self.dedup.entry_for(candidate)
        owner = entry.owning_authority.value if entry else "another authority"
        existing = entry.task_id if entry else "?"
        logger.info(
            "Blocked duplicate request %r (owned by %s as %s)",
            candidate.title,
            owner,
            existing,
        )
        self._reply(
            f"Duplicate blocked: '{candidate.title}' is already owned by {owner} as {existing}",
            reply_channel,
        )
        return True

    def _delegate(self, task: Task, queue: int) -> None:
        self.bus.publish(
            channels.TASK_DELEGATED,
            TaskDelegated(
                task_id=task.task_id,
                from_worker=self.commander,
                to_worker=self.directory.manager_id(Authority.PRIMARY, queue),
                queue=queue,
                division=task.target_division,
            ),
        )
        self.bus.publish(
            queue_channel(Authority.PRIMARY, queue),
            QueueDispatch(
                task_id=task.task_id,
                title=task.title,
                description=task.description,
                priority=task.priority,
                from_worker=self.commander,
                authority=Authority.PRIMARY,
            ),
        )

    def _forward(  # noqa: PLR0913
        self,
        command: str,
        args: dict[str, Any],
        task_id: str | None,
        source: str,
        reply_channel: str | None,
    ) -> None:
        self.bus.publish(
            channels.CROSS_AUTHORITY_FORWARD,
            CrossAuthorityForward(
                command=command,
                args=args,
                task_id=task_id,
                source=source,
                reply_channel=reply_channel,
            ),
        )

    def _note_fallback(self, task: Task, resolution: QueueResolution) -> None:
        self.bus.publish(
            channels.TASK_NOTE,
            TaskNote(
                task_id=task.task_id,
                message=(
                    f"No queue {resolution.requested} for {task.authority.value}; "
                    f"using queue {resolution.queue}"
                ),
                worker=self.commander,
                level="warning",
            ),
        )

    def _reply(self, text: str, channel_ref: str | None) -> None:
        self.bus.publish(self.settings.reply_channel, Reply(text=text, channel_ref=channel_ref))


def _capabilities(value: object, default: tuple[str, ...]) -> tuple[str, ...]:
    if isinstance(value, str):
        parsed = tuple(part.strip() for part in value.split(",") if part.strip())
    elif isinstance(value, list | tuple):
        parsed = tuple(str(part).strip() for part in value if str(part).strip())
    else:
        parsed = ()
    return parsed or default


def _positive_int(value: object) -> int | None:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None
