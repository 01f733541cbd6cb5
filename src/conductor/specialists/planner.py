from __future__ import annotations

from conductor.specialists.base import SpecialistAgent, SpecialistResponse


class PlannerAgent(SpecialistAgent):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are the Planner.
Write a concise markdown implementation plan with ordered steps,
the files likely to change, and how to verify the result.
""".strip()

    async def plan(
        self,
        task: str,
        *,
        previous_plan: str | None = None,
        curmudgeon_feedback: str | None = None,
        retry_feedback: str | None = None,
        injection: str | None = None,
    ) -> SpecialistResponse:
        parts = [f"Task:\n{task}"]
        if previous_plan and (curmudgeon_feedback or retry_feedback):
            parts.append(f"Previous plan:\n{previous_plan}")
        if curmudgeon_feedback:
            parts.append(f"A reviewer asked for a simpler plan:\n{curmudgeon_feedback}")
        if retry_feedback:
            parts.append(f"Feedback from the user on the previous attempt:\n{retry_feedback}")
        parts.append("Write the implementation plan in markdown.")
        return await self.run("\n\n".join(parts), injection=injection)
