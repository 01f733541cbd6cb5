from __future__ import annotations

from conductor.specialists.base import SpecialistAgent, SpecialistResponse


class CurmudgeonAgent(SpecialistAgent):
    role = "curmudgeon"
    prompt_file = "curmudgeon.md"
    fallback_prompt = """
You are the Curmudgeon, a skeptical senior engineer.
Review the plan for over-engineering. Say plainly whether it is fine,
should be simplified (and how), or is fundamentally wrong.
""".strip()

    async def critique(
        self, task: str, plan: str, *, injection: str | None = None
    ) -> SpecialistResponse:
        return await self.run(
            f"Task:\n{task}\n\nProposed plan:\n{plan}\n\nIs this plan as simple as it can be?",
            injection=injection,
        )
