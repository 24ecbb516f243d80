"""Builds the service graph once and hands every component its collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from towerline.bridge.dedup import DedupCache
from towerline.config import Settings
from towerline.core import bus as channels
from towerline.core.bus import EventBus
from towerline.core.models import Authority, Reply
from towerline.core.scheduler import Clock, Scheduler
from towerline.floors import QueueManager
from towerline.reports import StatusReporter
from towerline.roster import Roster, default_roster, load_roster
from towerline.routing.classifier import Classifier
from towerline.routing.commands import CommandEnvelope, parse_chat_message
from towerline.routing.mirror import MirrorRouter
from towerline.routing.primary import PrimaryRouter
from towerline.routing.queues import QueueDirectory
from towerline.swarm.recruitment import RecruitmentEngine
from towerline.swarm.workforce import Workforce
from towerline.tasks.registry import TaskRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Engine:
    """Wired components sharing one bus and one scheduler."""

    settings: Settings
    bus: EventBus
    scheduler: Scheduler
    registry: TaskRegistry
    dedup: DedupCache
    directory: QueueDirectory
    workforce: Workforce
    recruitment: RecruitmentEngine
    reporter: StatusReporter
    primary: PrimaryRouter
    mirror: MirrorRouter
    queue_managers: list[QueueManager] = field(default_factory=list)
    replies: list[Reply] = field(default_factory=list)

    def submit(self, envelope: CommandEnvelope, authority: Authority = Authority.PRIMARY) -> None:
        """Publish a command on the router channel for ``authority``."""

        channel = (
            channels.MIRROR_COMMAND if authority is Authority.MIRROR else channels.PRIMARY_COMMAND
        )
        self.bus.publish(channel, envelope)

    def send_chat(
        self,
        text: str,
        *,
        source: str = "chat",
        reply_channel: str | None = None,
    ) -> CommandEnvelope | None:
        envelope = parse_chat_message(text, source=source, reply_channel=reply_channel)
        if envelope is None:
            logger.debug("Ignoring non-command chat line %r", text)
            return None
        self.submit(envelope)
        return envelope

    def close(self) -> None:
        self.dedup.close()


def build_engine(
    settings: Settings | None = None,
    *,
    roster: Roster | None = None,
    clock: Clock | None = None,
    classifier: Classifier | None = None,
    simulate: bool = False,
) -> Engine:
    """Construct every service once; ``simulate`` adds a queue manager per known queue."""

    settings = settings or Settings()
    if roster is None:
        roster = load_roster(settings.roster_path) if settings.roster_path else default_roster()

    bus = EventBus()
    scheduler = Scheduler(clock)
    registry = TaskRegistry(
        bus=bus,
        clock=scheduler.clock,
        history_capacity=settings.registry.history_capacity,
        id_prefix=settings.registry.id_prefix,
    )
    dedup = DedupCache(
        bus=bus,
        scheduler=scheduler,
        ttl_seconds=settings.dedup.ttl_seconds,
        sweep_interval_seconds=settings.dedup.sweep_interval_seconds,
    )
    directory = QueueDirectory(roster.queues)
    workforce = Workforce(roster.workers)
    recruitment = RecruitmentEngine(
        bus=bus,
        scheduler=scheduler,
        workforce=workforce,
        max_workers=settings.recruitment.max_workers,
        settle_seconds=settings.recruitment.settle_seconds,
        release_settle_seconds=settings.recruitment.release_settle_seconds,
        allow_cross_authority=settings.recruitment.allow_cross_authority,
    )
    reporter = StatusReporter(registry=registry, recruitment=recruitment, dedup=dedup)
    primary = PrimaryRouter(
        bus=bus,
        registry=registry,
        dedup=dedup,
        directory=directory,
        workforce=workforce,
        reporter=reporter,
        classifier=classifier,
        settings=settings.routing,
        swarm_settings=settings.recruitment,
    )
    mirror = MirrorRouter(
        bus=bus,
        registry=registry,
        dedup=dedup,
        directory=directory,
        settings=settings.routing,
    )
    engine = Engine(
        settings=settings,
        bus=bus,
        scheduler=scheduler,
        registry=registry,
        dedup=dedup,
        directory=directory,
        workforce=workforce,
        recruitment=recruitment,
        reporter=reporter,
        primary=primary,
        mirror=mirror,
    )
    bus.subscribe(settings.routing.reply_channel, engine.replies.append)

    if simulate:
        engine.queue_managers = [
            QueueManager(
                bus=bus,
                scheduler=scheduler,
                workforce=workforce,
                spec=spec,
                settings=settings.simulation,
            )
            for spec in directory.all()
        ]
    dedup.start()
    logger.info(
        "Engine ready: %d queues, %d workers, %d queue managers",
        len(directory),
        len(workforce),
        len(engine.queue_managers),
    )
    return engine
