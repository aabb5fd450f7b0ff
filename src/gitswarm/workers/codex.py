from __future__ import annotations

from pathlib import Path

from gitswarm.workers.base import CliWorkerBackend


class CodexWorker(CliWorkerBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        *,
        model: str | None = None,
        working_directory: Path | None = None,
        log_dir: Path | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(
            binary=binary,
            model=model,
            working_directory=working_directory,
            log_dir=log_dir,
            timeout_seconds=timeout_seconds,
        )

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "exec", "--full-auto"]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.append(prompt)
        return command
