"""Runtime configuration for routing, dedup, and recruitment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class DedupSettings:
    """Cross-authority duplicate suppression settings."""

    ttl_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0


@dataclass(slots=True)
class RegistrySettings:
    """Task registry settings."""

    history_capacity: int = 500
    id_prefix: str = "TSK"


@dataclass(slots=True)
class RoutingSettings:
    """Router identities and fallback queues."""

    primary_commander: str = "primary-c2"
    mirror_commander: str = "mirror-c2"
    flagship_queue: int = 15
    mirror_default_queue: int = 15
    reply_channel: str = "originator.reply"


@dataclass(slots=True)
class RecruitmentSettings:
    """Swarm recruitment settings."""

    max_workers: int = 5
    swarm_command_max_workers: int = 8
    settle_seconds: float = 2.0
    release_settle_seconds: float = 2.5
    allow_cross_authority: bool = False
    default_capabilities: tuple[str, ...] = ("code-generation", "testing", "deployment")


@dataclass(slots=True)
class SimulationSettings:
    """Simulated queue-manager pacing."""

    standard_task_seconds: float = 10.0
    swarm_task_seconds: float = 25.0
    progress_steps: int = 10


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    roster_path: Path | None = None
    dedup: DedupSettings = field(default_factory=DedupSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    recruitment: RecruitmentSettings = field(default_factory=RecruitmentSettings)
    simulation: SimulationSettings = field(default_factory=SimulationSettings)

    @classmethod
    def from_env(cls, roster_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        env_roster = os.getenv("TOWERLINE_ROSTER_PATH", "").strip()
        return cls(
            roster_path=roster_path or (Path(env_roster) if env_roster else None),
            dedup=DedupSettings(
                ttl_seconds=float(os.getenv("TOWERLINE_DEDUP_TTL_SECONDS", "300")),
                sweep_interval_seconds=float(
                    os.getenv("TOWERLINE_DEDUP_SWEEP_INTERVAL_SECONDS", "60"),
                ),
            ),
            registry=RegistrySettings(
                history_capacity=int(os.getenv("TOWERLINE_HISTORY_CAPACITY", "500")),
                id_prefix=os.getenv("TOWERLINE_TASK_ID_PREFIX", "TSK").strip() or "TSK",
            ),
            routing=RoutingSettings(
                primary_commander=os.getenv("TOWERLINE_PRIMARY_COMMANDER", "primary-c2"),
                mirror_commander=os.getenv("TOWERLINE_MIRROR_COMMANDER", "mirror-c2"),
                flagship_queue=int(os.getenv("TOWERLINE_FLAGSHIP_QUEUE", "15")),
                mirror_default_queue=int(os.getenv("TOWERLINE_MIRROR_DEFAULT_QUEUE", "15")),
                reply_channel=os.getenv("TOWERLINE_REPLY_CHANNEL", "originator.reply"),
            ),
            recruitment=RecruitmentSettings(
                max_workers=int(os.getenv("TOWERLINE_SWARM_MAX_WORKERS", "5")),
                swarm_command_max_workers=int(
                    os.getenv("TOWERLINE_SWARM_COMMAND_MAX_WORKERS", "8"),
                ),
                settle_seconds=float(os.getenv("TOWERLINE_SWARM_SETTLE_SECONDS", "2.0")),
                release_settle_seconds=float(
                    os.getenv("TOWERLINE_SWARM_RELEASE_SETTLE_SECONDS", "2.5"),
                ),
                allow_cross_authority=_env_bool(
                    "TOWERLINE_SWARM_ALLOW_CROSS_AUTHORITY",
                    default=False,
                ),
                default_capabilities=_env_csv(
                    "TOWERLINE_SWARM_DEFAULT_CAPABILITIES",
                    default=("code-generation", "testing", "deployment"),
                ),
            ),
            simulation=SimulationSettings(
                standard_task_seconds=float(
                    os.getenv("TOWERLINE_SIM_STANDARD_TASK_SECONDS", "10"),
                ),
                swarm_task_seconds=float(os.getenv("TOWERLINE_SIM_SWARM_TASK_SECONDS", "25")),
                progress_steps=int(os.getenv("TOWERLINE_SIM_PROGRESS_STEPS", "10")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.dedup.ttl_seconds <= 0:
            raise ValueError("TOWERLINE_DEDUP_TTL_SECONDS must be > 0.")
        if self.dedup.sweep_interval_seconds <= 0:
            raise ValueError("TOWERLINE_DEDUP_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.registry.history_capacity <= 0:
            raise ValueError("TOWERLINE_HISTORY_CAPACITY must be a positive integer.")
        if self.recruitment.max_workers <= 0:
            raise ValueError("TOWERLINE_SWARM_MAX_WORKERS must be a positive integer.")
        if self.recruitment.swarm_command_max_workers <= 0:
            raise ValueError("TOWERLINE_SWARM_COMMAND_MAX_WORKERS must be a positive integer.")
        if self.recruitment.settle_seconds < 0 or self.recruitment.release_settle_seconds < 0:
            raise ValueError("Swarm settle delays must be >= 0.")
        if self.simulation.progress_steps <= 0:
            raise ValueError("TOWERLINE_SIM_PROGRESS_STEPS must be a positive integer.")
        if self.roster_path is not None and not self.roster_path.is_file():
            raise ValueError(f"Roster file not found: {self.roster_path}")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = tuple(part.strip() for part in raw.split(",") if part.strip())
    return values or default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
