from __future__ import annotations

import logging
from dataclasses import dataclass

from gitswarm.registry import Task, TaskRegistry, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StatusDelta:
    status: TaskStatus
    attempt_count: int

    def describe(self) -> str:
        if self.status == "pending":
            return f"pending (retry {self.attempt_count})"
        return self.status


class RequeuePolicy:
    def __init__(self, max_attempts: int = 2) -> None:
        self.max_attempts = max(0, max_attempts)

    def on_success(self, task: Task) -> StatusDelta:
        return StatusDelta(status="done", attempt_count=task.attempt_count)

    def on_failure(self, task: Task) -> StatusDelta:
        if task.attempt_count < self.max_attempts:
            retry = task.attempt_count + 1
            logger.warning(
                "Task %s failed (attempt %d/%d), requeueing for retry #%d",
                task.id,
                retry,
                self.max_attempts + 1,
                retry,
            )
            return StatusDelta(status="pending", attempt_count=retry)
        logger.error(
            "Task %s failed after %d attempts, permanently failed",
            task.id,
            self.max_attempts + 1,
        )
        return StatusDelta(status="failed", attempt_count=task.attempt_count)

    def outcome(self, task: Task, *, succeeded: bool) -> StatusDelta:
        return self.on_success(task) if succeeded else self.on_failure(task)

    def requeue_failed(self, registry: TaskRegistry) -> list[str]:
        requeued: list[str] = []
        for task in registry.with_status("failed"):
            if task.attempt_count < self.max_attempts:
                registry.transition(task.id, "pending")
                requeued.append(task.id)
        if requeued:
            logger.info("Requeued failed task(s) with attempts left: %s", ", ".join(requeued))
        return requeued
