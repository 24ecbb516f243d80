"""Queue and worker definitions: the built-in roster and a JSON loader."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from towerline.core.models import Authority, WorkerState
from towerline.routing.queues import QueueSpec
from towerline.swarm.workforce import Worker

P = Authority.PRIMARY
M = Authority.MIRROR


@dataclass(slots=True)
class Roster:
    """Queues per authority plus the workers that start on them."""

    queues: list[QueueSpec] = field(default_factory=list)
    workers: list[Worker] = field(default_factory=list)


def default_roster() -> Roster:
    """Fresh copy of the built-in roster; workers are mutable, so never share one."""

    return Roster(
        queues=[
            QueueSpec(14, P, "dashboard", "Dashboard"),
            QueueSpec(15, P, "tsiapp", "TSI App"),
            QueueSpec(16, P, "finance", "Finance"),
            QueueSpec(17, P, "rnd", "Research Lab"),
            QueueSpec(18, P, "legal", "Legal"),
            QueueSpec(19, P, "security", "Security"),
            QueueSpec(15, M, "production", "Production Servers"),
            QueueSpec(16, M, "data", "Data Servers"),
            QueueSpec(17, M, "api", "API Gateway"),
            QueueSpec(18, M, "domains", "Domains and Certificates"),
            QueueSpec(19, M, "watch", "Monitoring"),
        ],
        workers=[
            Worker("dash-dev", "Dash Developer", 14, P, "production", ("code-generation", "ui")),
            Worker("dash-qa", "Dash QA", 14, P, "testing", ("testing", "qa")),
            Worker("tsi-lead", "TSI Lead", 15, P, "production", ("code-generation", "build")),
            Worker("tsi-dev", "TSI Developer", 15, P, "production", ("code-generation", "qa")),
            Worker("tsi-qa", "TSI QA", 15, P, "testing", ("testing", "verify")),
            Worker("tsi-design", "TSI Designer", 15, P, "rnd", ("design", "prototype")),
            Worker("fin-analyst", "Finance Analyst", 16, P, "accounting", ("budget", "reporting")),
            Worker("fin-auditor", "Finance Auditor", 16, P, "accounting", ("audit", "testing")),
            Worker("rnd-researcher", "Researcher", 17, P, "rnd", ("research", "experiment")),
            Worker("rnd-engineer", "Prototyper", 17, P, "rnd", ("code-generation", "prototype")),
            Worker("legal-counsel", "Counsel", 18, P, "legal", ("compliance", "contracts")),
            Worker("sec-analyst", "Security Analyst", 19, P, "security", ("security", "audit")),
            Worker("sec-pentester", "Pentester", 19, P, "security", ("pentest", "testing")),
            Worker("ops-deployer", "Deployer", 15, M, "production", ("deployment", "rollback")),
            Worker("ops-sync", "Sync Agent", 15, M, "production", ("rsync", "deployment")),
            Worker("ops-dba", "Database Agent", 16, M, "accounting", ("backup", "migration")),
            Worker("ops-api", "API Agent", 17, M, "rnd", ("endpoint", "rate-limit")),
            Worker("ops-dns", "DNS Agent", 18, M, "legal", ("dns", "ssl")),
            Worker("ops-watch", "Uptime Agent", 19, M, "security", ("uptime", "alerting")),
        ],
    )


def load_roster(path: Path) -> Roster:
    """Read a roster JSON file; ``ValueError`` describes what is malformed."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Roster file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Roster file {path} must contain a JSON object.")
    return roster_from_mapping(payload)


def roster_from_mapping(payload: dict[str, Any]) -> Roster:
    queues_raw = payload.get("queues", [])
    workers_raw = payload.get("workers", [])
    if not isinstance(queues_raw, list) or not isinstance(workers_raw, list):
        raise ValueError("Roster 'queues' and 'workers' must be lists.")
    return Roster(
        queues=[_queue_from(item, index) for index, item in enumerate(queues_raw)],
        workers=[_worker_from(item, index) for index, item in enumerate(workers_raw)],
    )


def _queue_from(item: object, index: int) -> QueueSpec:
    if not isinstance(item, dict):
        raise ValueError(f"Roster queue #{index} must be an object.")
    try:
        queue = int(item["queue"])
        project_id = str(item["project_id"]).strip()
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Roster queue #{index} needs integer 'queue' and 'project_id'.") from exc
    if not project_id:
        raise ValueError(f"Roster queue #{index} has an empty 'project_id'.")
    return QueueSpec(
        queue=queue,
        authority=_authority(item.get("authority"), f"queue #{index}"),
        project_id=project_id,
        name=str(item.get("name") or project_id),
    )


def _worker_from(item: object, index: int) -> Worker:
    if not isinstance(item, dict):
        raise ValueError(f"Roster worker #{index} must be an object.")
    try:
        worker_id = str(item["id"]).strip()
        queue = int(item["queue"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Roster worker #{index} needs 'id' and integer 'queue'.") from exc
    if not worker_id:
        raise ValueError(f"Roster worker #{index} has an empty 'id'.")
    capabilities = item.get("capabilities") or []
    if not isinstance(capabilities, list):
        raise ValueError(f"Roster worker {worker_id} 'capabilities' must be a list.")
    try:
        state = WorkerState(str(item.get("state") or "idle").lower())
    except ValueError as exc:
        raise ValueError(
            f"Roster worker {worker_id} has unknown state {item.get('state')!r}.",
        ) from exc
    return Worker(
        worker_id=worker_id,
        name=str(item.get("name") or worker_id),
        queue=queue,
        authority=_authority(item.get("authority"), f"worker {worker_id}"),
        division=str(item.get("division") or "production"),
        capabilities=tuple(str(capability) for capability in capabilities),
        state=state,
    )


def _authority(value: object, where: str) -> Authority:
    if value is None:
        return Authority.PRIMARY
    authority = Authority.parse(value)
    if authority is None or authority is Authority.BOTH:
        raise ValueError(f"Roster {where} has invalid authority {value!r}.")
    return authority
