"""Inbound command envelopes and the chat-line parser."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CommandKind(str, Enum):
    """Commands understood by the routers; anything else is GENERIC."""

    TASK = "task"
    DEPLOY = "deploy"
    SWARM = "swarm"
    ASSIGN = "assign"
    RECALL = "recall"
    STATUS = "status"
    TASKS = "tasks"
    SYNC = "sync"
    MONITOR = "monitor"
    CERTIFICATE = "certificate"
    SUBDOMAIN = "subdomain"
    BACKUP = "backup"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: str | None) -> CommandKind:
        normalized = (value or "").strip().lower()
        if normalized == "ssl":
            return cls.CERTIFICATE
        try:
            return cls(normalized)
        except ValueError:
            return cls.GENERIC


@dataclass(slots=True)
class CommandEnvelope:
    """Loosely structured command from a human or an API client."""

    command: str
    args: dict[str, Any] = field(default_factory=dict)
    source: str = "api"
    reply_channel: str | None = None
    task_id: str | None = None

    @property
    def kind(self) -> CommandKind:
        return CommandKind.parse(self.command)

    @classmethod
    def from_mapping(cls, data: dict[str, Any], *, source: str = "api") -> CommandEnvelope:
        """Build an envelope from decoded JSON; ``ValueError`` when it has no command."""

        command = str(data.get("command") or "").strip()
        if not command:
            raise ValueError("Command envelope requires a non-empty 'command'.")
        args = data.get("args") or {}
        if not isinstance(args, dict):
            raise ValueError("Command envelope 'args' must be an object.")
        return cls(
            command=command,
            args=dict(args),
            source=str(data.get("source") or source),
            reply_channel=data.get("reply_channel"),
            task_id=data.get("task_id"),
        )


def generic_title(command: str, args: dict[str, Any]) -> str:
    """Title for a command nobody recognizes."""

    return f"{command}: {json.dumps(args, sort_keys=True, default=str)}"


def parse_chat_message(
    text: str,
    *,
    source: str = "chat",
    reply_channel: str | None = None,
) -> CommandEnvelope | None:
    """Turn a ``/command rest`` chat line into an envelope; other lines give None."""

    stripped = (text or "").strip()
    if not stripped.startswith("/"):
        return None
    head, _, rest = stripped.partition(" ")
    rest = rest.strip()
    command = head.lower()

    if command == "/task":
        args: dict[str, Any] = {"title": rest, "description": rest}
        kind = CommandKind.TASK
    elif command == "/deploy":
        args = {"project": rest or "tsiapp"}
        kind = CommandKind.DEPLOY
    elif command == "/swarm":
        args = {"title": rest, "priority": "critical"}
        kind = CommandKind.SWARM
    elif command == "/status":
        args = {}
        kind = CommandKind.STATUS
    elif command == "/tasks":
        args = {}
        kind = CommandKind.TASKS
    else:
        return None

    return CommandEnvelope(
        command=kind.value,
        args=args,
        source=source,
        reply_channel=reply_channel,
    )
