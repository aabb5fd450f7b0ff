from __future__ import annotations

from gitswarm.roles.base import AgentRole
from gitswarm.workers.base import WorkResult


class Planner(AgentRole):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
Read PROJECT_SPEC.md and write tasks.json: a JSON array of tasks with
id, description, steps and status "pending".
""".strip()

    async def run(self) -> WorkResult:
        return await self._invoke(self.system_prompt, label="planner")
