"""Singleton phases (planning, validation) guarded by phase leases."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Literal, NoReturn

from gitswarm.registry import REGISTRY_FILE, RegistryError, TaskRegistry
from gitswarm.roles.planner import Planner
from gitswarm.roles.validator import Validator
from gitswarm.state.base import SharedStore
from gitswarm.state.leases import PLANNING_LOCK, VALIDATION_LOCK, AlreadyLocked, LockManager

logger = logging.getLogger(__name__)

PASSED_MARKER = "VALIDATION_PASSED"
ROUND_MARKER = ".validation_round"

WaitOutcome = Literal["done", "released", "timeout"]
PlanningOutcome = Literal["exists", "planned", "waited"]
ValidationOutcome = Literal["passed", "exhausted", "waited", "gaps_found"]

Sleeper = Callable[[float], Awaitable[object]]


class PhaseFailure(RuntimeError):
    def __init__(self, message: str, *, phase: str) -> None:
        super().__init__(message)
        self.phase = phase


class PhaseMarkers:
    def __init__(self, store: SharedStore) -> None:
        self.store = store

    def passed(self) -> bool:
        return self.store.exists(PASSED_MARKER)

    def summary(self) -> str | None:
        content = self.store.read_text(PASSED_MARKER)
        return content.strip() if content is not None else None

    def round(self) -> int:
        content = self.store.read_text(ROUND_MARKER)
        if content is None:
            return 0
        try:
            return max(0, int(content.strip() or 0))
        except ValueError:
            logger.warning("Ignoring unreadable %s: %r", ROUND_MARKER, content.strip())
            return 0

    def set_round(self, value: int) -> None:
        self.store.write_text(ROUND_MARKER, f"{value}\n")


class PhaseGate:
    """Serializes a phase across agents with a phase lease."""

    def __init__(
        self,
        store: SharedStore,
        locks: LockManager,
        holder: str,
        *,
        poll_seconds: float = 10.0,
        max_wait_seconds: float = 600.0,
        max_append_attempts: int = 3,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.store = store
        self.locks = locks
        self.holder = holder
        self.poll_seconds = max(0.0, poll_seconds)
        self.max_wait_seconds = max(0.0, max_wait_seconds)
        self.max_append_attempts = max(1, max_append_attempts)
        self.sleep = sleep

    @staticmethod
    def _label(phase: str) -> str:
        return phase.lstrip("_")

    def try_acquire(self, phase: str) -> bool:
        """Take the phase lease and publish it. The local view must be synced first."""
        base = self.store.revision()
        try:
            self.locks.acquire(phase, self.holder)
        except AlreadyLocked as exc:
            lease = exc.lease
            started = lease.created.isoformat() if lease.created else "unknown"
            logger.info(
                "Agent %s holds the %s lock (started %s)", lease.holder, self._label(phase), started
            )
            return False
        self.store.commit(f"[HARNESS] agent({self.holder}): claim {self._label(phase)} lock")
        if self.store.try_append():
            logger.info("Claimed %s lock", self._label(phase))
            return True
        logger.info("Failed to claim %s lock (another agent won)", self._label(phase))
        self.store.rewind(base)
        return False

    async def wait_for(self, phase: str, done: Callable[[], bool]) -> WaitOutcome:
        if self.poll_seconds > 0:
            checks = max(1, int(self.max_wait_seconds // self.poll_seconds))
        else:
            checks = 1
        for check in range(1, checks + 1):
            await self.sleep(self.poll_seconds)
            self.store.sync_down()
            if done():
                return "done"
            lease = self.locks.read(phase)
            if lease is None:
                logger.info("%s lock released", self._label(phase).capitalize())
                return "released"
            if not self.locks.detector.is_live(lease):
                logger.info(
                    "%s lock from %s is no longer live",
                    self._label(phase).capitalize(),
                    lease.holder,
                )
                return "released"
            if check % 3 == 0:
                logger.info(
                    "Waiting for %s agent %s... (%.0fs elapsed)",
                    self._label(phase),
                    lease.holder,
                    check * self.poll_seconds,
                )
        logger.error(
            "Timed out waiting for %s to complete (%.0fs)",
            self._label(phase),
            self.max_wait_seconds,
        )
        return "timeout"

    def release(self, phase: str, message: str) -> bool:
        """Drop the phase lease together with everything staged, in one append."""
        self.locks.release(phase)
        self.store.commit(message)
        return self.store.publish(self.max_append_attempts)


class PlanningPhase:
    def __init__(
        self,
        store: SharedStore,
        gate: PhaseGate,
        planner: Planner,
        *,
        spec_file: str = "PROJECT_SPEC.md",
        max_acquire_attempts: int = 3,
    ) -> None:
        self.store = store
        self.gate = gate
        self.planner = planner
        self.spec_file = spec_file
        self.max_acquire_attempts = max(1, max_acquire_attempts)

    def _registry_ready(self) -> bool:
        return TaskRegistry.exists(self.store)

    async def run(self) -> PlanningOutcome:
        self.store.sync_down()
        if self._registry_ready():
            logger.info("%s already exists, skipping planning", REGISTRY_FILE)
            return "exists"
        if not self.store.exists(self.spec_file):
            raise PhaseFailure(
                f"No {self.spec_file} found in the shared store, nothing to plan from",
                phase="planning",
            )

        for _ in range(self.max_acquire_attempts):
            if self.gate.try_acquire(PLANNING_LOCK):
                return await self._plan()
            outcome = await self.gate.wait_for(PLANNING_LOCK, self._registry_ready)
            if outcome == "done":
                logger.info("%s is now available (planner finished)", REGISTRY_FILE)
                return "waited"
            if outcome == "timeout":
                raise PhaseFailure("Timed out waiting for planning to complete", phase="planning")
            if self._registry_ready():
                return "waited"
            logger.info("Planning lock released but no %s, retrying", REGISTRY_FILE)
        raise PhaseFailure("Could not acquire the planning lock", phase="planning")

    async def _plan(self) -> PlanningOutcome:
        holder = self.gate.holder
        logger.info("Running planner agent...")
        result = await self.planner.run()
        if result.succeeded:
            logger.info("Planner agent completed successfully")
        else:
            logger.warning("Planner agent exited with error (see %s)", result.log_path)

        try:
            candidate = self.store.read_json(REGISTRY_FILE)
        except json.JSONDecodeError as exc:
            logger.error("Planner output rejected: %s is not valid JSON (%s)", REGISTRY_FILE, exc)
            candidate = None
        registry, dropped = TaskRegistry.from_candidate(candidate)
        for message in dropped:
            logger.warning("Dropping planned task: %s", message)
        if not len(registry):
            self._abandon(f"Planner did not produce a usable {REGISTRY_FILE}")

        for task in registry.with_status("in_progress"):
            registry.transition(task.id, "pending")
        registry.save(self.store)
        self.store.commit_all("[PLAN] generate tasks and init script from project spec")
        if not self.gate.release(
            PLANNING_LOCK, f"[HARNESS] agent({holder}): release planning lock"
        ):
            self.store.hard_reset()
            raise PhaseFailure("Failed to publish planning results", phase="planning")
        logger.info("Planning complete, %d tasks committed and pushed", len(registry))
        return "planned"

    def _abandon(self, message: str) -> NoReturn:
        logger.error(message)
        self.store.hard_reset()
        self.store.clean()
        if not self.gate.release(
            PLANNING_LOCK, f"[HARNESS] agent({self.gate.holder}): release planning lock (failed)"
        ):
            logger.warning("Could not publish planning lock release")
        raise PhaseFailure(message, phase="planning")


class ValidationPhase:
    def __init__(
        self,
        store: SharedStore,
        gate: PhaseGate,
        validator: Validator,
        *,
        max_rounds: int = 2,
    ) -> None:
        self.store = store
        self.gate = gate
        self.validator = validator
        self.markers = PhaseMarkers(store)
        self.max_rounds = max(0, max_rounds)

    def exhausted(self) -> bool:
        return self.markers.round() >= self.max_rounds

    def _work_outstanding(self) -> bool:
        try:
            registry = TaskRegistry.load(self.store)
        except RegistryError as exc:
            raise PhaseFailure(f"Cannot validate: {exc}", phase="validation") from exc
        return registry is None or not registry.all_terminal()

    async def run(self) -> ValidationOutcome:
        self.store.sync_down()
        if self.markers.passed():
            logger.info("Validation already passed")
            return "passed"
        current_round = self.markers.round()
        if current_round >= self.max_rounds:
            logger.info("Max validation rounds (%d) already reached", self.max_rounds)
            return "exhausted"
        if self._work_outstanding():
            logger.info("Tasks are still open, validation has to wait")
            return "waited"

        if not self.gate.try_acquire(VALIDATION_LOCK):
            outcome = await self.gate.wait_for(VALIDATION_LOCK, self.markers.passed)
            if outcome == "timeout":
                raise PhaseFailure("Timed out waiting for validation", phase="validation")
            return "passed" if self.markers.passed() else "waited"
        if self._work_outstanding():
            logger.info("Tasks reopened while taking the validation lock, backing off")
            if not self.gate.release(
                VALIDATION_LOCK, f"[HARNESS] agent({self.gate.holder}): release validation lock"
            ):
                logger.warning("Could not publish validation lock release")
            return "waited"
        return await self._validate(current_round + 1)

    def _read_candidate(self) -> object:
        try:
            return self.store.read_json(REGISTRY_FILE)
        except json.JSONDecodeError as exc:
            logger.warning("Validator left an unreadable %s (%s); ignoring it", REGISTRY_FILE, exc)
            return None

    async def _validate(self, round_number: int) -> ValidationOutcome:
        holder = self.gate.holder
        snapshot = TaskRegistry.load(self.store) or TaskRegistry()
        logger.info("Running validator (round %d/%d)...", round_number, self.max_rounds)
        result = await self.validator.run(round_number, self.max_rounds)
        if not result.succeeded:
            self._abandon(f"Validator exited with error (see {result.log_path})")

        merged, added = TaskRegistry.merge_appended(snapshot, self._read_candidate())
        merged.save(self.store)
        self.store.commit_all(f"[VALIDATION] validation results from agent {holder}")

        if self.markers.passed():
            outcome: ValidationOutcome = "passed"
            logger.info("Validation PASSED")
        else:
            outcome = "gaps_found"
            self.markers.set_round(round_number)
            self.store.commit(
                f"[HARNESS] agent({holder}): validation round {round_number}, gaps found"
            )
            logger.warning(
                "Validation round %d, %d remediation tasks added", round_number, len(added)
            )

        if not self.gate.release(
            VALIDATION_LOCK, f"[HARNESS] agent({holder}): release validation lock"
        ):
            self.store.hard_reset()
            raise PhaseFailure("Failed to publish validation results", phase="validation")
        return outcome

    def _abandon(self, message: str) -> NoReturn:
        logger.error(message)
        self.store.hard_reset()
        self.store.clean()
        release_message = f"[HARNESS] agent({self.gate.holder}): release validation lock (failed)"
        if not self.gate.release(VALIDATION_LOCK, release_message):
            logger.warning("Could not publish validation lock release")
        raise PhaseFailure(message, phase="validation")
