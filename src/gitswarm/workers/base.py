from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

LABEL_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


class WorkerExecutionError(RuntimeError):
    """Raised when a worker invocation cannot be carried out."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class WorkerProcessError(WorkerExecutionError):
    """Raised when the worker process cannot be started."""


@dataclass(slots=True)
class WorkResult:
    succeeded: bool
    exit_code: int | None = None
    log_path: Path | None = None
    timed_out: bool = False
    duration_seconds: float = 0.0


class WorkerBackend(ABC):
    name: str = "worker"

    @abstractmethod
    async def invoke(self, prompt: str, *, label: str) -> WorkResult:
        """Run the worker on ``prompt`` and report whether it succeeded."""


class CliWorkerBackend(WorkerBackend):
    """Runs a coding-agent CLI in the workspace, streaming its output to a log file."""

    def __init__(
        self,
        *,
        binary: str,
        model: str | None = None,
        working_directory: Path | None = None,
        log_dir: Path | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.working_directory = working_directory
        self.log_dir = log_dir or Path("/tmp")
        self.timeout_seconds = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Command line for one invocation."""

    def log_path_for(self, label: str) -> Path:
        safe_label = LABEL_PATTERN.sub("_", label).strip("_") or "run"
        stamp = time.strftime("%Y%m%d%H%M%S")
        return self.log_dir / f"{self.name}_{safe_label}_{stamp}.log"

    async def invoke(self, prompt: str, *, label: str) -> WorkResult:
        command = self.build_command(prompt)
        log_path = self.log_path_for(label)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        with log_path.open("wb") as log_file:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory) if self.working_directory else None,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except FileNotFoundError as exc:
                raise WorkerProcessError(
                    f"{self.name} binary not found: {self.binary}",
                    backend=self.name,
                ) from exc

            timed_out = False
            try:
                if self.timeout_seconds is None:
                    return_code = await process.wait()
                else:
                    return_code = await asyncio.wait_for(
                        process.wait(), timeout=self.timeout_seconds
                    )
            except TimeoutError:
                timed_out = True
                logger.error(
                    "%s exceeded %.0fs on %s, terminating it",
                    self.name,
                    self.timeout_seconds,
                    label,
                )
                process.kill()
                return_code = await process.wait()

        duration = time.monotonic() - started
        succeeded = return_code == 0 and not timed_out
        if not succeeded:
            logger.warning(
                "%s exited with code %s on %s (see %s)", self.name, return_code, label, log_path
            )
        return WorkResult(
            succeeded=succeeded,
            exit_code=return_code,
            log_path=log_path,
            timed_out=timed_out,
            duration_seconds=duration,
        )
