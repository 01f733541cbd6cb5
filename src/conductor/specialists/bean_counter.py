from __future__ import annotations

from conductor.invoker import AgentSession
from conductor.specialists.base import SpecialistAgent, SpecialistResponse


class BeanCounterAgent(SpecialistAgent):
    """Splits the plan into chunks and keeps a progress ledger in its own session."""

    role = "bean_counter"
    prompt_file = "bean_counter.md"
    fallback_prompt = """
You are the Bean Counter.
Break the approved plan into small, independently reviewable chunks.
Keep a running ledger of what is done. Each time, either assign the next
chunk (description, requirements, context) or state that all work is complete.
""".strip()

    async def next_chunk(
        self,
        task: str,
        plan: str,
        *,
        session: AgentSession,
        last_approval: str | None = None,
        plan_revised: bool = False,
        injection: str | None = None,
    ) -> SpecialistResponse:
        """Ask for the next chunk.

        ``plan_revised`` marks the start of a later execution cycle: the ledger
        session already exists but the plan it tracks has been replaced.
        """
        if not session.initialized:
            instruction = (
                f"Task:\n{task}\n\nApproved plan:\n{plan}\n\n"
                "Start your ledger and assign the first chunk of work."
            )
        elif plan_revised:
            instruction = (
                f"The plan was revised after the final review.\n\nRevised plan:\n{plan}\n\n"
                "Keep the chunks already done in your ledger, reconcile it with the "
                "revised plan, and assign the next chunk, or say the task is complete."
            )
        elif last_approval:
            instruction = (
                f"The previous chunk was approved:\n{last_approval}\n\n"
                "Update your ledger. Assign the next chunk, or say the task is complete."
            )
        else:
            instruction = (
                "Check your ledger. Assign the next chunk, or say the task is complete."
            )
        return await self.run(instruction, session=session, injection=injection)
