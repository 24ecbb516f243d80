"""Controllers for towerline CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from towerline.config import Settings
from towerline.core.models import Authority, Task
from towerline.core.scheduler import ManualClock
from towerline.engine import Engine, build_engine
from towerline.roster import default_roster, load_roster
from towerline.routing.classifier import KeywordClassifier, request_text
from towerline.routing.commands import CommandEnvelope, parse_chat_message
from towerline.routing.queues import (
    QueueDirectory,
    ensure_known,
    infer_mirror_queue,
    infer_primary_queue,
)
from towerline.tasks.registry import format_duration


@dataclass(slots=True)
class ClassifyCommand:
    """CLI inputs for classify command."""

    title: str
    description: str = ""
    roster_path: Path | None = None


@dataclass(slots=True)
class SubmitCommand:
    """CLI inputs for submit command."""

    command: str
    args: dict[str, Any] = field(default_factory=dict)
    authority: Authority = Authority.PRIMARY
    source: str = "cli"
    roster_path: Path | None = None


@dataclass(slots=True)
class SimulateCommand:
    """CLI inputs for simulate command."""

    script: Path
    seconds: float
    roster_path: Path | None = None


class TowerlineCliController:
    """Coordinates CLI command execution against a freshly built engine."""

    def classify(self, command: ClassifyCommand) -> list[str]:
        settings = _settings(command.roster_path)
        roster = load_roster(settings.roster_path) if settings.roster_path else default_roster()
        directory = QueueDirectory(roster.queues)
        text = request_text(command.title, command.description)
        classifier = KeywordClassifier()
        score = classifier.score(text)
        authority = classifier.classify(text)

        if authority is Authority.MIRROR:
            default_queue = settings.routing.mirror_default_queue
            resolution = infer_mirror_queue(text, {}, default_queue=default_queue)
            owner = Authority.MIRROR
        else:
            default_queue = settings.routing.flagship_queue
            resolution = infer_primary_queue(text, {}, directory, flagship_queue=default_queue)
            owner = Authority.PRIMARY
        resolution = ensure_known(resolution, directory, owner, default_queue=default_queue)

        return [
            f"Authority: {authority.value}",
            f"Queue: {resolution.queue} ({resolution.reason})",
            f"Project: {resolution.project or '-'}",
            "Scores: "
            f"primary={score.primary} mirror={score.mirror} "
            f"cross_cutting={'yes' if score.cross_cutting else 'no'} "
            f"composite={'yes' if score.composite else 'no'}",
        ]

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.roster_path)
        engine = build_engine(settings, clock=ManualClock())
        try:
            engine.submit(
                CommandEnvelope(command=command.command, args=command.args, source=command.source),
                authority=command.authority,
            )
            lines = [f"Reply: {reply.text}" for reply in engine.replies]
            tasks = engine.registry.list_active()
            if not tasks:
                lines.append("No task created.")
            for task in tasks:
                lines.extend(_task_lines(task))
            lines.extend(_stats_lines(engine))
        finally:
            engine.close()
        return lines

    def simulate(self, command: SimulateCommand) -> list[str]:
        settings = _settings(command.roster_path)
        envelopes = _read_script(command.script)
        engine = build_engine(settings, clock=ManualClock(), simulate=True)
        try:
            for authority, envelope in envelopes:
                engine.submit(envelope, authority=authority)
            engine.scheduler.run_until_idle(command.seconds)
            lines = [f"Commands: {len(envelopes)}", "Replies:"]
            for reply in engine.replies:
                lines.extend(f"  {line}" for line in reply.text.splitlines())
            lines.extend(engine.reporter.status_lines())
            lines.extend(engine.reporter.task_lines(recent=len(envelopes) or 5))
        finally:
            engine.close()
        return lines


def _settings(roster_path: Path | None) -> Settings:
    settings = Settings.from_env(roster_path=roster_path)
    settings.validate()
    return settings


def _read_script(path: Path) -> list[tuple[Authority, CommandEnvelope]]:
    """Chat lines (``/task ...``) or JSON envelopes, one per line; ``#`` starts a comment."""

    envelopes: list[tuple[Authority, CommandEnvelope]] = []
    for number, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("{"):
            try:
                data = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{number}: invalid JSON envelope: {exc}") from exc
            if not isinstance(data, dict):
                raise ValueError(f"{path}:{number}: envelope must be a JSON object.")
            envelope = CommandEnvelope.from_mapping(data, source="script")
            authority = Authority.parse(data.get("authority")) or Authority.PRIMARY
            envelopes.append((authority, envelope))
            continue
        envelope = parse_chat_message(line, source="script")
        if envelope is None:
            raise ValueError(f"{path}:{number}: not a command: {line!r}")
        envelopes.append((Authority.PRIMARY, envelope))
    return envelopes


def _task_lines(task: Task) -> list[str]:
    chain = " -> ".join(f"{step.to_worker}({step.action})" for step in task.delegation_chain)
    return [
        f"Task {task.task_id}: {task.title}",
        f"  authority={task.authority.value} status={task.status.value} "
        f"queue={task.target_queue} priority={task.priority.value}",
        f"  chain: {chain or '-'}",
    ]


def _stats_lines(engine: Engine) -> list[str]:
    stats = engine.registry.stats()
    bridge = engine.dedup.status()
    return [
        "Stats: "
        f"active={stats.active} completed={stats.completed_total} failed={stats.failed_total} "
        f"avg={format_duration(stats.avg_duration_ms)}",
        "Bridge: "
        f"primary={bridge.primary} mirror={bridge.mirror} shared={bridge.shared} "
        f"duplicates={bridge.duplicate_count}",
    ]
