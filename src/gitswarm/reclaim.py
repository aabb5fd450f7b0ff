from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass, field

from gitswarm.policy import RequeuePolicy
from gitswarm.registry import TaskRegistry
from gitswarm.state.base import SharedStore
from gitswarm.state.leases import LockManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    reclaimed: dict[str, str] = field(default_factory=dict)
    orphaned: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    published: bool = True

    @property
    def changed(self) -> bool:
        return bool(self.reclaimed or self.orphaned or self.requeued)


class Reclaimer:
    """Frees dead and stale leases and returns their tasks to the pool."""

    def __init__(
        self,
        store: SharedStore,
        locks: LockManager,
        policy: RequeuePolicy,
        holder: str,
        *,
        max_append_attempts: int = 3,
    ) -> None:
        self.store = store
        self.locks = locks
        self.policy = policy
        self.holder = holder
        self.max_append_attempts = max(1, max_append_attempts)

    def _apply(self, held: Collection[str] | None) -> SweepReport:
        report = SweepReport()
        registry = TaskRegistry.load(self.store)
        live: set[str] = set()

        for lease in self.locks.list_leases():
            if held is not None and lease.holder == self.holder and lease.resource_id not in held:
                reason = "forgotten"
            else:
                reason = self.locks.detector.assess(lease)
                if reason == "live":
                    live.add(lease.resource_id)
                    continue
            logger.info(
                "Reclaiming %s lock held by %s (%s)", lease.resource_id, lease.holder, reason
            )
            self.locks.release(lease.resource_id)
            report.reclaimed[lease.resource_id] = reason

        if registry is None:
            return report

        reset = False
        for task in registry.with_status("in_progress"):
            if task.id in live:
                continue
            registry.transition(task.id, "pending")
            reset = True
            if task.id not in report.reclaimed:
                logger.info("Task %s is in progress without a live lease, requeueing", task.id)
                report.orphaned.append(task.id)

        report.requeued = self.policy.requeue_failed(registry)
        if reset or report.requeued:
            registry.save(self.store)
        return report

    def sweep(self, held: Collection[str] | None = None) -> SweepReport:
        """Reclaim non-live leases.

        ``held`` lists the resources this agent knows it holds; leases under its
        own id that are not in it are treated as leftovers of a lost release.
        ``None`` disables that rule.
        """
        base = self.store.revision()
        report = self._apply(held)
        if not report.changed:
            return report
        self.store.commit(
            f"[HARNESS] agent({self.holder}): reclaim "
            + ", ".join(sorted({*report.reclaimed, *report.orphaned, *report.requeued}))
        )
        report.published = self.store.publish(self.max_append_attempts)
        if not report.published:
            logger.warning("Reclaim sweep not published; it will be recomputed next cycle")
            self.store.rewind(base)
        return report
