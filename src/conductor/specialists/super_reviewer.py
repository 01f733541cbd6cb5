from __future__ import annotations

from conductor.specialists.base import SpecialistAgent, SpecialistResponse


class SuperReviewerAgent(SpecialistAgent):
    role = "super_reviewer"
    prompt_file = "super_reviewer.md"
    fallback_prompt = """
You are the SuperReviewer, the final quality gate.
Check the whole change against the task and plan. Either approve it
for merge or list the issues a human must look at.
""".strip()

    async def review(
        self,
        task: str,
        plan: str | None,
        *,
        chunks_completed: int,
        injection: str | None = None,
    ) -> SpecialistResponse:
        return await self.run(
            f"Task:\n{task}\n\nPlan:\n{plan or '(no plan recorded)'}\n\n"
            f"{chunks_completed} chunk(s) were implemented and approved. "
            "Review the final state of the working tree.",
            injection=injection,
        )
