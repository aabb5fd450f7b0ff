from __future__ import annotations

from gitswarm.registry import Task
from gitswarm.roles.base import AgentRole
from gitswarm.workers.base import WorkResult


class TaskExecutor(AgentRole):
    role = "executor"
    prompt_file = "agent.md"
    fallback_prompt = """
You are an autonomous coding agent working on a shared repository.
Work only on the task below and commit your changes frequently.
""".strip()

    def build_prompt(self, task: Task, *, spec_text: str | None = None) -> str:
        sections = [self.system_prompt]
        if spec_text:
            sections.append(f"---\n\n## Project Specification\n\n{spec_text.strip()}")
        steps = "\n".join(f"{index}. {step}" for index, step in enumerate(task.steps, start=1))
        sections.append(
            "---\n\n"
            "## Your Current Task\n\n"
            f"**Task ID:** {task.id}\n"
            f"**Description:** {task.description}\n\n"
            f"**Steps:**\n{steps}\n\n"
            "Work on this task now. Commit your changes frequently with clear messages."
        )
        return "\n\n".join(sections) + "\n"

    async def run(
        self,
        task: Task,
        *,
        spec_text: str | None = None,
        label: str | None = None,
    ) -> WorkResult:
        prompt = self.build_prompt(task, spec_text=spec_text)
        return await self._invoke(prompt, label=label or task.id)
