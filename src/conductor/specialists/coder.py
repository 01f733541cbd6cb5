from __future__ import annotations

from conductor.execution import Chunk, FeedbackKind, Proposal
from conductor.invoker import AgentSession
from conductor.specialists.base import EDIT_TOOLS, SpecialistAgent, SpecialistResponse


def describe_chunk(chunk: Chunk) -> str:
    lines = [f"Chunk: {chunk.description}"]
    if chunk.requirements:
        lines.append("Requirements:")
        lines.extend(f"- {item}" for item in chunk.requirements)
    if chunk.context:
        lines.append(f"Context: {chunk.context}")
    return "\n".join(lines)


def describe_proposal(proposal: Proposal) -> str:
    lines = [f"Proposal: {proposal.description}"]
    if proposal.steps:
        lines.append("Steps:")
        lines.extend(f"{index}. {step}" for index, step in enumerate(proposal.steps, start=1))
    if proposal.files:
        lines.append("Files: " + ", ".join(proposal.files))
    return "\n".join(lines)


class CoderAgent(SpecialistAgent):
    role = "coder"
    prompt_file = "coder.md"
    fallback_prompt = """
You are the Coder specialist.
First propose how you will implement the assigned chunk. After approval,
apply exactly that change and report what you changed.
""".strip()

    async def propose(
        self,
        chunk: Chunk,
        *,
        session: AgentSession,
        feedback: str | None = None,
        injection: str | None = None,
    ) -> SpecialistResponse:
        parts = [describe_chunk(chunk)]
        if feedback:
            parts.append(f"Your previous proposal was not accepted. Reviewer feedback:\n{feedback}")
        parts.append(
            "Propose the change: description, numbered steps and files. "
            "If the work is already done, say so."
        )
        return await self.run("\n\n".join(parts), session=session, injection=injection)

    async def implement(
        self,
        chunk: Chunk,
        proposal: Proposal,
        *,
        session: AgentSession,
        feedback: str | None = None,
        feedback_kind: FeedbackKind | None = None,
        injection: str | None = None,
    ) -> SpecialistResponse:
        parts = [describe_chunk(chunk), describe_proposal(proposal)]
        if feedback and feedback_kind == "reject":
            parts.append(
                "Your last implementation was rejected. Discard that approach and "
                f"implement again. Reviewer feedback:\n{feedback}"
            )
        elif feedback:
            parts.append(f"Revise your implementation. Reviewer feedback:\n{feedback}")
        else:
            parts.append("Implement the approved proposal now.")
        parts.append("When done, summarize what you changed and list the files.")
        return await self.run(
            "\n\n".join(parts),
            session=session,
            injection=injection,
            allowed_tools=EDIT_TOOLS,
            permission_mode="acceptEdits",
        )
