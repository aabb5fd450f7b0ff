from __future__ import annotations

from gitswarm.roles.base import AgentRole
from gitswarm.workers.base import WorkResult


class Validator(AgentRole):
    role = "validator"
    prompt_file = "validator.md"
    fallback_prompt = """
Check the repository against PROJECT_SPEC.md. Create VALIDATION_PASSED when
it is complete, otherwise append remediation tasks to tasks.json.
""".strip()

    def build_prompt(self, round_number: int, max_rounds: int) -> str:
        return f"{self.system_prompt}\n\n**Validation round:** {round_number} of {max_rounds}\n"

    async def run(self, round_number: int, max_rounds: int) -> WorkResult:
        return await self._invoke(
            self.build_prompt(round_number, max_rounds),
            label=f"validator-{round_number}",
        )
