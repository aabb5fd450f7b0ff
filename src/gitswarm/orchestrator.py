from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Literal

from gitswarm.config import ConfigError, SwarmConfig
from gitswarm.environment import ProjectSetup
from gitswarm.phases import (
    PASSED_MARKER,
    ROUND_MARKER,
    PhaseFailure,
    PhaseGate,
    PhaseMarkers,
    PlanningPhase,
    Sleeper,
    ValidationPhase,
)
from gitswarm.policy import RequeuePolicy
from gitswarm.protocol import ClaimConflict, ClaimProtocol
from gitswarm.reclaim import Reclaimer
from gitswarm.registry import REGISTRY_FILE, RegistryError, Task, TaskRegistry
from gitswarm.roles import Planner, TaskExecutor, Validator
from gitswarm.selector import TaskSelector
from gitswarm.state import GitRemoteStore, LockManager, SharedStore, StalenessDetector
from gitswarm.state.leases import LOCK_DIR
from gitswarm.state.liveness import LivenessProbe, assume_alive, dns_liveness_probe
from gitswarm.workers import ClaudeCodeWorker, CodexWorker, WorkerBackend

logger = logging.getLogger(__name__)

LoopOutcome = Literal[
    "validated",
    "rounds_exhausted",
    "phase_failed",
    "iteration_cap",
    "setup_failed",
]

COORDINATION_PATHS = (REGISTRY_FILE, LOCK_DIR, PASSED_MARKER, ROUND_MARKER)

LIVENESS_PROBES: dict[str, LivenessProbe] = {
    "dns": dns_liveness_probe,
    "none": assume_alive,
}


@dataclass(slots=True)
class LoopSummary:
    agent_id: str
    outcome: LoopOutcome | None = None
    iterations: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicts: int = 0
    phase_failures: int = 0


def build_worker(config: SwarmConfig) -> WorkerBackend:
    timeout = config.worker.timeout_minutes * 60 if config.worker.timeout_minutes > 0 else None
    options = {
        "model": config.worker.model or None,
        "working_directory": config.workdir,
        "log_dir": Path(config.worker.log_dir).expanduser(),
        "timeout_seconds": timeout,
    }
    if config.worker.backend == "codex":
        return CodexWorker(**options)
    if config.worker.backend == "claude":
        return ClaudeCodeWorker(**options)
    raise ConfigError(f"Unknown worker backend: {config.worker.backend!r}")


def resolve_probe(name: str) -> LivenessProbe:
    try:
        return LIVENESS_PROBES[name]
    except KeyError as exc:
        choices = ", ".join(sorted(LIVENESS_PROBES))
        raise ConfigError(f"Unknown liveness probe {name!r} (expected one of: {choices})") from exc


def _prompt_path(value: str) -> Path | None:
    return Path(value).expanduser() if value else None


class AgentLoop:
    """Plan, claim, execute and release tasks until the project settles."""

    def __init__(
        self,
        *,
        config: SwarmConfig,
        store: SharedStore,
        locks: LockManager,
        protocol: ClaimProtocol,
        reclaimer: Reclaimer,
        selector: TaskSelector,
        executor: TaskExecutor,
        planning: PlanningPhase,
        validation: ValidationPhase,
        setup: ProjectSetup,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.locks = locks
        self.protocol = protocol
        self.reclaimer = reclaimer
        self.selector = selector
        self.executor = executor
        self.planning = planning
        self.validation = validation
        self.setup = setup
        self.sleep = sleep
        self.rng = rng or random.Random()

    @classmethod
    def from_config(
        cls,
        config: SwarmConfig,
        *,
        worker: WorkerBackend | None = None,
        probe: LivenessProbe | None = None,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> AgentLoop:
        holder = config.resolved_agent_id()
        store = GitRemoteStore(
            config.workdir,
            remote_url=config.store.url,
            branch=config.store.branch,
            user_name=config.store.git_user_name,
            user_email=config.store.git_user_email,
        )
        detector = StalenessDetector(
            probe or resolve_probe(config.leases.liveness_probe),
            ttl=timedelta(minutes=config.leases.ttl_minutes),
        )
        locks = LockManager(store, detector)
        policy = RequeuePolicy(config.retry.max_attempts)
        worker = worker or build_worker(config)
        attempts = config.store.max_append_attempts
        gate = PhaseGate(
            store,
            locks,
            holder,
            poll_seconds=config.phases.poll_seconds,
            max_wait_seconds=config.phases.max_wait_seconds,
            max_append_attempts=attempts,
            sleep=sleep,
        )
        return cls(
            config=config,
            store=store,
            locks=locks,
            protocol=ClaimProtocol(
                store,
                locks,
                policy,
                holder,
                max_release_attempts=attempts,
                terminal_prefix=config.phases.terminal_prefix,
            ),
            reclaimer=Reclaimer(store, locks, policy, holder, max_append_attempts=attempts),
            selector=TaskSelector(config.phases.terminal_prefix),
            executor=TaskExecutor(
                worker, prompt_path=_prompt_path(config.worker.agent_prompt_file)
            ),
            planning=PlanningPhase(
                store,
                gate,
                Planner(worker, prompt_path=_prompt_path(config.worker.planner_prompt_file)),
                spec_file=config.phases.spec_file,
            ),
            validation=ValidationPhase(
                store,
                gate,
                Validator(worker, prompt_path=_prompt_path(config.worker.validator_prompt_file)),
                max_rounds=config.phases.max_validation_rounds,
            ),
            setup=ProjectSetup(config.workdir),
            sleep=sleep,
            rng=rng,
        )

    @property
    def holder(self) -> str:
        return self.protocol.holder

    @property
    def markers(self) -> PhaseMarkers:
        return self.validation.markers

    async def _backoff(self) -> None:
        low = max(0.0, self.config.agent.backoff_min_seconds)
        high = max(low, self.config.agent.backoff_max_seconds)
        await self.sleep(self.rng.uniform(low, high))

    async def _phase_failed(self, summary: LoopSummary, exc: PhaseFailure) -> bool:
        """Count a phase failure; True when the agent has to stop."""
        summary.phase_failures += 1
        limit = max(1, self.config.agent.max_phase_failures)
        logger.error(
            "%s phase failed (%d/%d): %s",
            exc.phase.capitalize(),
            summary.phase_failures,
            limit,
            exc,
        )
        if summary.phase_failures >= limit:
            summary.outcome = "phase_failed"
            return True
        await self._backoff()
        return False

    async def _ensure_registry(self, summary: LoopSummary) -> bool:
        while True:
            try:
                await self.planning.run()
            except PhaseFailure as exc:
                if await self._phase_failed(summary, exc):
                    return False
                continue
            if TaskRegistry.exists(self.store):
                return True
            logger.warning("tasks.json still missing after planning phase")

    def _setup_ok(self, summary: LoopSummary) -> bool:
        if self.setup.ensure() or not self.config.agent.require_setup:
            return True
        logger.error("Project setup failed and is required, stopping")
        summary.outcome = "setup_failed"
        return False

    async def _settle(self, registry: TaskRegistry, summary: LoopSummary) -> bool:
        """Handle a cycle with nothing to claim; True when the loop is finished."""
        if self.markers.passed():
            logger.info("Validation passed, agent done")
            summary.outcome = "validated"
            return True
        if self.validation.exhausted():
            logger.info("Validation rounds exhausted, agent done")
            summary.outcome = "rounds_exhausted"
            return True
        if not registry.all_terminal():
            logger.info("No claimable tasks, waiting for tasks in progress elsewhere")
            await self.sleep(self.config.agent.idle_seconds)
            return False

        logger.info("All tasks finished, entering validation")
        try:
            outcome = await self.validation.run()
        except PhaseFailure as exc:
            return await self._phase_failed(summary, exc)
        if outcome == "passed":
            summary.outcome = "validated"
            return True
        if outcome == "exhausted":
            summary.outcome = "rounds_exhausted"
            return True
        return False

    async def _execute(self, task: Task, summary: LoopSummary) -> None:
        head = self.store.head()
        base = self.store.revision()
        spec_text = self.store.read_text(self.config.phases.spec_file)
        logger.info("Running worker on task %s...", task.id)
        result = await self.executor.run(task, spec_text=spec_text, label=f"{task.id}_{head}")
        if result.succeeded:
            logger.info("Worker completed task %s successfully", task.id)
        else:
            logger.warning("Worker failed on task %s (see %s)", task.id, result.log_path)

        # coordination files change only through claim, release and the phases
        self.store.restore_paths(base, COORDINATION_PATHS)
        self.store.commit_all(f"agent({self.holder}): work on task {task.id}")
        release = self.protocol.release(task.id, succeeded=result.succeeded)
        if not self.store.publish(self.config.store.max_append_attempts):
            logger.error("Failed to push after completing task %s", task.id)

        if result.succeeded and release.status == "done":
            summary.completed.append(task.id)
        else:
            summary.failed.append(task.id)
        logger.info("Task %s completed with status: %s", task.id, release.status)

    async def run(self) -> LoopSummary:
        summary = LoopSummary(agent_id=self.holder)
        logger.info("Starting agent loop (id: %s)", self.holder)
        self.store.ensure_clone()
        self.store.sync_down()

        if not await self._ensure_registry(summary):
            return summary
        logger.info("tasks.json ready")
        if not self._setup_ok(summary):
            return summary

        max_iterations = self.config.agent.max_iterations
        while True:
            if max_iterations > 0 and summary.iterations >= max_iterations:
                logger.info("Reached max iterations (%d), exiting", max_iterations)
                summary.outcome = "iteration_cap"
                return summary
            summary.iterations += 1
            if max_iterations > 0:
                logger.info("Iteration %d/%d", summary.iterations, max_iterations)

            self.store.sync_down()
            if not self._setup_ok(summary):
                return summary
            try:
                self.reclaimer.sweep(self.protocol.held)
                registry = TaskRegistry.load(self.store)
            except RegistryError as exc:
                failure = PhaseFailure(f"Unusable {REGISTRY_FILE}: {exc}", phase="registry")
                if await self._phase_failed(summary, failure):
                    return summary
                continue
            if registry is None:
                logger.warning("tasks.json disappeared from the shared store")
                if not await self._ensure_registry(summary):
                    return summary
                continue

            task = self.selector.select(registry)
            if task is None:
                if await self._settle(registry, summary):
                    return summary
                continue

            logger.info("Found pending task: %s", task.id)
            try:
                self.protocol.claim(task.id)
            except ClaimConflict as exc:
                summary.conflicts += 1
                logger.info(
                    "Failed to claim %s (%s), will retry with a different task", task.id, exc
                )
                await self._backoff()
                continue
            except RegistryError as exc:
                logger.warning("Could not claim %s: %s", task.id, exc)
                await self._backoff()
                continue
            await self._execute(task, summary)
