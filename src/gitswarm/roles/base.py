from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path

from gitswarm.workers.base import WorkerBackend, WorkerExecutionError, WorkResult

logger = logging.getLogger(__name__)


class AgentRole:
    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are an autonomous software agent."

    def __init__(self, worker: WorkerBackend, *, prompt_path: Path | None = None) -> None:
        self.worker = worker
        self.prompt_path = prompt_path
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if self.prompt_path is not None:
            try:
                return self.prompt_path.read_text(encoding="utf-8").strip()
            except OSError:
                logger.warning(
                    "Cannot read %s prompt from %s, using the built-in one",
                    self.role,
                    self.prompt_path,
                )
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("gitswarm.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    async def _invoke(self, prompt: str, *, label: str) -> WorkResult:
        try:
            return await self.worker.invoke(prompt, label=label)
        except WorkerExecutionError as exc:
            logger.error("%s worker failed on %s: %s", self.role, label, exc)
            return WorkResult(succeeded=False, exit_code=exc.exit_code)
