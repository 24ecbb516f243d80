"""Plain-text status and task reports."""

from __future__ import annotations

from collections import Counter

from towerline.bridge.dedup import DedupCache
from towerline.core.models import Authority, Task
from towerline.swarm.recruitment import RecruitmentEngine
from towerline.tasks.registry import TaskRegistry, format_duration


class StatusReporter:
    """Renders registry, swarm, and dedup state as reply lines."""

    def __init__(
        self,
        *,
        registry: TaskRegistry,
        recruitment: RecruitmentEngine | None = None,
        dedup: DedupCache | None = None,
    ) -> None:
        self.registry = registry
        self.recruitment = recruitment
        self.dedup = dedup

    def status_lines(self, authority: Authority | None = None) -> list[str]:
        stats = self.registry.stats()
        active = (
            self.registry.list_active()
            if authority is None
            else self.registry.list_by_authority(authority)
        )
        busy = Counter(task.target_queue for task in active if task.target_queue is not None)

        lines = [
            "TOWERLINE STATUS" if authority is None else f"TOWERLINE STATUS ({authority.value})",
            f"Tasks: active={stats.active} completed={stats.completed_total} "
            f"failed={stats.failed_total}",
            "Busy queues:",
        ]
        if busy:
            lines.extend(f"  Q{queue}: {count} active" for queue, count in sorted(busy.items()))
        else:
            lines.append("  All clear")

        lines.append("Swarms:")
        sessions = self.recruitment.active_sessions() if self.recruitment else []
        if sessions:
            lines.extend(
                f"  {session.task_id}: {len(session.workers)} workers, {session.status.value}"
                for session in sessions
            )
        else:
            lines.append("  None")

        if self.dedup is not None:
            bridge = self.dedup.status()
            lines.append(
                f"Dedup: primary={bridge.primary} mirror={bridge.mirror} "
                f"shared={bridge.shared} duplicates={bridge.duplicate_count}",
            )
        lines.append(f"Avg task time: {format_duration(stats.avg_duration_ms)}")
        return lines

    def task_lines(self, recent: int = 5) -> list[str]:
        lines = ["ACTIVE TASKS"]
        active = self.registry.list_active()
        if not active:
            lines.append("  No active tasks")
        for task in active:
            lines.append(
                f"  {task.task_id} [{task.status.value}] {task.title} ({task.progress}%) "
                f"authority={task.authority.value}",
            )
            chain = " -> ".join(step.to_worker for step in task.delegation_chain)
            lines.append(f"    Chain: {chain or '-'}")

        lines.append("RECENT FINISHED")
        finished = self.registry.list_completed(recent)
        if not finished:
            lines.append("  None")
        lines.extend(_finished_line(task) for task in finished)
        return lines


def _finished_line(task: Task) -> str:
    duration = format_duration(task.duration_ms) if task.duration_ms is not None else "?"
    return f"  {task.task_id} [{task.status.value}] {task.title} ({duration})"


def render(lines: list[str]) -> str:
    return "\n".join(lines)
