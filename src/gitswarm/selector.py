from __future__ import annotations

from gitswarm.registry import Task, TaskRegistry

DEFAULT_TERMINAL_PREFIX = "final-"


class TaskSelector:
    """Picks the next task, holding terminal-phase tasks back until regular work settles."""

    def __init__(self, terminal_prefix: str = DEFAULT_TERMINAL_PREFIX) -> None:
        self.terminal_prefix = terminal_prefix

    def is_terminal_phase(self, task_id: str) -> bool:
        return bool(self.terminal_prefix) and task_id.startswith(self.terminal_prefix)

    def outstanding_regular(self, registry: TaskRegistry) -> list[Task]:
        return [
            task
            for task in registry.with_status("pending", "in_progress")
            if not self.is_terminal_phase(task.id)
        ]

    def select(self, registry: TaskRegistry) -> Task | None:
        for task in registry:
            if task.status == "pending" and not self.is_terminal_phase(task.id):
                return task
        if self.outstanding_regular(registry):
            return None
        for task in registry:
            if task.status == "pending":
                return task
        return None
