from __future__ import annotations

from conductor.execution import Chunk, Proposal
from conductor.invoker import AgentSession
from conductor.specialists.base import SpecialistAgent, SpecialistResponse
from conductor.specialists.coder import describe_chunk, describe_proposal


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the Reviewer.
Judge proposals and applied code for one chunk of work.
Approve, ask for revisions, reject, or ask for a human, and say why.
""".strip()

    async def review_plan(
        self,
        chunk: Chunk,
        proposal: Proposal,
        *,
        session: AgentSession,
        injection: str | None = None,
    ) -> SpecialistResponse:
        return await self.run(
            f"{describe_chunk(chunk)}\n\n{describe_proposal(proposal)}\n\n"
            "Review this proposal before any code is written. "
            "If the chunk's work already exists in the code, say it is already complete.",
            session=session,
            injection=injection,
        )

    async def review_code(
        self,
        chunk: Chunk,
        proposal: Proposal | None,
        summary: str | None,
        *,
        session: AgentSession,
        injection: str | None = None,
    ) -> SpecialistResponse:
        parts = [describe_chunk(chunk)]
        if proposal is not None:
            parts.append(describe_proposal(proposal))
        if summary:
            parts.append(f"Coder's report:\n{summary}")
        parts.append("Inspect the working tree and review the applied change.")
        return await self.run("\n\n".join(parts), session=session, injection=injection)
