"""Condensed summaries of Coder and Reviewer output for activity views."""

from __future__ import annotations

import logging

from conductor.errors import InvalidResponseError, TransportError
from conductor.invoker import AgentInvoker

logger = logging.getLogger(__name__)

SUMMARY_PROMPTS: dict[str, str] = {
    "coder": """
You condense a coding agent's report for a progress view.
Reply with 3-5 short lines: what was changed, in which files, and anything left open.
No preamble and no markdown headings.
""".strip(),
    "reviewer": """
You condense a code reviewer's response for a progress view.
Reply with 3-5 short lines: the verdict, the main issues found, and what must change.
No preamble and no markdown headings.
""".strip(),
}

FALLBACK_SUMMARIES: dict[str, str] = {
    "coder": "Coder completed work",
    "reviewer": "Reviewer provided feedback",
}


class Summarizer:
    """Stateless secondary call; failures degrade to a fixed line, never an error."""

    def __init__(
        self,
        invoker: AgentInvoker,
        *,
        model: str | None = None,
        max_chars: int = 12000,
    ) -> None:
        self.invoker = invoker
        self.model = model
        self.max_chars = max_chars

    async def summarize(self, role: str, output: str) -> str:
        if role not in SUMMARY_PROMPTS:
            raise ValueError(f"No summary prompt for role {role!r}")
        fallback = FALLBACK_SUMMARIES[role]
        if not output.strip():
            return f"{fallback} (summary unavailable)"

        text = output
        if len(text) > self.max_chars:
            text = text[: self.max_chars] + "\n[truncated]"
        try:
            reply = await self.invoker.invoke(
                "summarizer",
                f"Summarize this {role} response:\n\n{text}",
                system_prompt=SUMMARY_PROMPTS[role],
                model=self.model,
                allowed_tools=[],
                permission_mode="plan",
            )
        except (TransportError, InvalidResponseError) as exc:
            logger.warning("Could not summarize %s output: %s", role, exc)
            return f"{fallback} (summary error: {exc})"

        summary = reply.text.strip()
        return summary or f"{fallback} (summary unavailable)"
