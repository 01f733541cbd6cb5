from __future__ import annotations

from conductor.specialists.base import SpecialistAgent, SpecialistResponse


class RefinerAgent(SpecialistAgent):
    role = "refiner"
    prompt_file = "refiner.md"
    fallback_prompt = """
You are the Task Refiner.
Restate the user's task as a precise, testable description.
Keep the user's intent; do not add scope.
""".strip()

    async def refine(self, task: str, *, injection: str | None = None) -> SpecialistResponse:
        return await self.run(
            f"Refine this task description:\n\n{task}",
            injection=injection,
        )
