"""Claim and release of task leases over compare-and-swap appends."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from gitswarm.policy import RequeuePolicy, StatusDelta
from gitswarm.registry import RegistryError, TaskRegistry
from gitswarm.selector import DEFAULT_TERMINAL_PREFIX, TaskSelector
from gitswarm.state.base import SharedStore
from gitswarm.state.leases import AlreadyLocked, Lease, LockManager

logger = logging.getLogger(__name__)


class ClaimConflict(RuntimeError):
    """Expected claim failure; the caller backs off and selects again."""

    def __init__(self, message: str, *, task_id: str, holder: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.holder = holder


class AlreadyClaimed(ClaimConflict):
    """A live lease for the task exists."""


class TaskNotClaimable(ClaimConflict):
    """The task is finished, or waits for regular tasks to finish first."""


class LostRace(ClaimConflict):
    """Another agent published a conflicting claim first."""


class AppendRejected(ClaimConflict):
    """The claim could not be published within the retry budget."""


@dataclass(slots=True)
class ReleaseResult:
    task_id: str
    status: str | None
    applied: bool
    published: bool
    work_lost: bool = False


class ClaimProtocol:
    def __init__(
        self,
        store: SharedStore,
        locks: LockManager,
        policy: RequeuePolicy,
        holder: str,
        *,
        max_append_attempts: int = 2,
        max_release_attempts: int = 3,
        terminal_prefix: str = DEFAULT_TERMINAL_PREFIX,
    ) -> None:
        self.store = store
        self.locks = locks
        self.policy = policy
        self.holder = holder
        self.max_append_attempts = max(1, max_append_attempts)
        self.max_release_attempts = max(1, max_release_attempts)
        self.selector = TaskSelector(terminal_prefix)
        self.held: set[str] = set()

    def _load_registry(self) -> TaskRegistry:
        registry = TaskRegistry.load(self.store)
        if registry is None:
            raise RegistryError("No task registry in the shared store yet.")
        return registry

    def _lost(self, task_id: str, base: str, message: str, holder: str | None = None) -> LostRace:
        self.store.rewind(base)
        logger.info(message)
        return LostRace(message, task_id=task_id, holder=holder)

    def claim(self, task_id: str) -> Lease:
        self.store.sync_down()
        registry = self._load_registry()
        task = registry.require(task_id)
        if task.terminal:
            raise TaskNotClaimable(
                f"Task {task_id} is already {task.status}", task_id=task_id
            )
        if self.selector.is_terminal_phase(task_id):
            outstanding = self.selector.outstanding_regular(registry)
            if outstanding:
                raise TaskNotClaimable(
                    f"Task {task_id} waits for {len(outstanding)} regular task(s) to finish",
                    task_id=task_id,
                )

        base = self.store.revision()
        try:
            lease = self.locks.acquire(task_id, self.holder)
        except AlreadyLocked as exc:
            logger.info("Task %s already claimed by %s", task_id, exc.lease.holder)
            raise AlreadyClaimed(
                f"Task {task_id} already claimed by {exc.lease.holder}",
                task_id=task_id,
                holder=exc.lease.holder,
            ) from exc
        if task.status == "in_progress":
            # dead lease replaced above; the task returns through pending
            registry.transition(task_id, "pending")
        registry.transition(task_id, "in_progress")
        registry.save(self.store)
        self.store.commit(f"[HARNESS] agent({self.holder}): claim task {task_id}")

        for attempt in range(1, self.max_append_attempts + 1):
            if self.store.try_append():
                self.held.add(task_id)
                logger.info("Claimed task %s", task_id)
                return lease
            if attempt == self.max_append_attempts:
                break
            logger.warning("Push conflict claiming %s, another agent may have got it", task_id)
            if not self.store.replay():
                raise self._lost(
                    task_id, base, f"Task {task_id}: conflict during claim, backing off"
                )
            current = self.locks.read(task_id)
            if current is None or current.holder != self.holder or current.created != lease.created:
                holder = current.holder if current else None
                raise self._lost(
                    task_id, base, f"Task {task_id} claimed by {holder}, not us", holder
                )

        self.store.rewind(base)
        logger.error("Could not publish claim for task %s", task_id)
        raise AppendRejected(
            f"Claim for task {task_id} was not published after "
            f"{self.max_append_attempts} attempts",
            task_id=task_id,
        )

    def _apply_release(self, task_id: str, delta: StatusDelta) -> bool:
        registry = TaskRegistry.load(self.store)
        task = registry.get(task_id) if registry is not None else None
        lease = self.locks.read(task_id)
        if lease is not None and lease.holder != self.holder:
            logger.warning(
                "Lease for %s is now held by %s, leaving it untouched", task_id, lease.holder
            )
            return False
        if task is None or task.status != "in_progress":
            if lease is None:
                logger.info("Task %s already released", task_id)
                return False
            self.locks.release(task_id)
        else:
            registry.transition(task_id, delta.status, attempt_count=delta.attempt_count)
            registry.save(self.store)
            self.locks.release(task_id)
        return self.store.commit(
            f"[HARNESS] agent({self.holder}): release task {task_id} ({delta.describe()})"
        )

    def release(self, task_id: str, *, succeeded: bool) -> ReleaseResult:
        registry = TaskRegistry.load(self.store)
        task = registry.get(task_id) if registry is not None else None
        if task is None:
            logger.warning("Cannot release unknown task %s", task_id)
            self.held.discard(task_id)
            return ReleaseResult(task_id=task_id, status=None, applied=False, published=True)
        if task.status != "in_progress" and self.locks.read(task_id) is None:
            logger.info("Task %s already released (%s)", task_id, task.status)
            self.held.discard(task_id)
            return ReleaseResult(
                task_id=task_id, status=task.status, applied=False, published=True
            )

        delta = self.policy.outcome(task, succeeded=succeeded)
        applied = self._apply_release(task_id, delta)
        published = not applied
        work_lost = False
        attempt = 0
        while applied and attempt < self.max_release_attempts:
            attempt += 1
            if self.store.try_append():
                published = True
                break
            logger.warning("Push conflict releasing %s (attempt %d)", task_id, attempt)
            if self.store.replay():
                continue
            # beyond the release commit itself, dropped commits carried task work
            if self.store.hard_reset() > 1 and delta.status == "done":
                logger.warning(
                    "Work for task %s conflicted with the shared head and was discarded; "
                    "requeueing it instead of marking it done",
                    task_id,
                )
                delta = self.policy.on_failure(task)
                work_lost = True
            if not self._apply_release(task_id, delta):
                published = True
                break

        self.held.discard(task_id)
        if not published:
            logger.warning(
                "Release of %s not published after %d attempts; kept locally for the next cycle",
                task_id,
                self.max_release_attempts,
            )
        else:
            logger.info("Released task %s - %s", task_id, delta.describe())
        return ReleaseResult(
            task_id=task_id,
            status=delta.status,
            applied=applied,
            published=published,
            work_lost=work_lost,
        )
