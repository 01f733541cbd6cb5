"""Normalize free-form agent output into a closed verdict per role.

Every agent answers in prose. Rather than matching keywords, a second
stateless call to the reasoning engine extracts a JSON decision which is
then checked against the decisions the role is allowed to produce. Anything
that cannot be read with confidence becomes ``Decision.AMBIGUOUS``; the
interpreter never turns doubt into approval.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from conductor.errors import InterpretationAmbiguous, InvalidResponseError, TransportError
from conductor.invoker import AgentInvoker

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


class Decision(StrEnum):
    APPROVE = "approve"
    SIMPLIFY = "simplify"
    REVISE = "revise"
    REJECT = "reject"
    NEEDS_HUMAN = "needs_human"
    WORK_CHUNK = "work_chunk"
    TASK_COMPLETE = "task_complete"
    PROPOSED = "proposed"
    IMPLEMENTED = "implemented"
    ALREADY_COMPLETE = "already_complete"
    AMBIGUOUS = "ambiguous"


class Role(StrEnum):
    CURMUDGEON = "curmudgeon"
    BEAN_COUNTER = "bean_counter"
    CODER_PLAN = "coder_plan"
    CODER_CODE = "coder_code"
    PLAN_REVIEW = "plan_review"
    CODE_REVIEW = "code_review"
    SUPER_REVIEW = "super_review"


ROLE_DECISIONS: dict[Role, frozenset[Decision]] = {
    Role.CURMUDGEON: frozenset(
        {Decision.APPROVE, Decision.SIMPLIFY, Decision.REJECT, Decision.NEEDS_HUMAN}
    ),
    Role.BEAN_COUNTER: frozenset({Decision.WORK_CHUNK, Decision.TASK_COMPLETE}),
    Role.CODER_PLAN: frozenset({Decision.PROPOSED, Decision.ALREADY_COMPLETE}),
    Role.CODER_CODE: frozenset({Decision.IMPLEMENTED}),
    Role.PLAN_REVIEW: frozenset(
        {
            Decision.APPROVE,
            Decision.REVISE,
            Decision.REJECT,
            Decision.NEEDS_HUMAN,
            Decision.ALREADY_COMPLETE,
        }
    ),
    Role.CODE_REVIEW: frozenset(
        {Decision.APPROVE, Decision.REVISE, Decision.REJECT, Decision.NEEDS_HUMAN}
    ),
    Role.SUPER_REVIEW: frozenset({Decision.APPROVE, Decision.NEEDS_HUMAN}),
}

ROLE_GUIDANCE: dict[Role, str] = {
    Role.CURMUDGEON: (
        "The text is a critique of an implementation plan. approve = the plan is fine as is; "
        "simplify = the plan is over-engineered and should be made simpler; "
        "reject = the plan is fundamentally wrong; needs_human = a person must decide."
    ),
    Role.BEAN_COUNTER: (
        "The text assigns the next unit of work or declares everything done. "
        "work_chunk = a new chunk is assigned; put description, requirements (list) and "
        "context in payload. task_complete = no work remains."
    ),
    Role.CODER_PLAN: (
        "The text is a coder describing what it intends to change. proposed = a concrete "
        "proposal; put description, steps (list) and files (list) in payload. "
        "already_complete = the work already exists and nothing needs changing."
    ),
    Role.CODER_CODE: (
        "The text is a coder reporting applied changes. implemented = changes were made; "
        "put description and files_changed (list) in payload."
    ),
    Role.PLAN_REVIEW: (
        "The text reviews a proposed change before it is made. approve, revise (needs "
        "adjustment), reject (wrong approach), needs_human, or already_complete (the "
        "requested work is already present). Put the reviewer's reasons in feedback."
    ),
    Role.CODE_REVIEW: (
        "The text reviews applied code. approve, revise (small fixes), reject (start the "
        "implementation over) or needs_human. Put the reviewer's reasons in feedback."
    ),
    Role.SUPER_REVIEW: (
        "The text is a final quality review of the whole task. approve = ready to merge; "
        "needs_human = issues a person must look at. Put the summary in feedback and the "
        "list of issues under payload.issues."
    ),
}

SYSTEM_PROMPT = """
You extract decisions from software agent output.
Reply with one JSON object and nothing else:
{"decision": "<one allowed value>", "feedback": "<short reasons or empty>", "payload": {}}
If the text does not clearly support one allowed value, use "ambiguous".
""".strip()


@dataclass(slots=True)
class Verdict:
    role: Role
    decision: Decision
    feedback: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ambiguous(self) -> bool:
        return self.decision is Decision.AMBIGUOUS

    def require_clear(self) -> Verdict:
        if self.is_ambiguous:
            raise InterpretationAmbiguous(self.role.value, self.feedback)
        return self


def strip_code_fences(raw: str) -> str:
    return FENCE_PATTERN.sub("", raw.strip()).strip()


def parse_verdict(role: Role, raw_json: str) -> Verdict:
    """Validate the extractor's JSON answer against the role's decision set."""
    cleaned = strip_code_fences(raw_json)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            return Verdict(role, Decision.AMBIGUOUS, "extractor reply is not JSON")
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return Verdict(role, Decision.AMBIGUOUS, "extractor reply is not JSON")

    if not isinstance(parsed, dict):
        return Verdict(role, Decision.AMBIGUOUS, "extractor reply is not an object")

    raw_decision = str(parsed.get("decision", "")).strip().lower()
    try:
        decision = Decision(raw_decision)
    except ValueError:
        return Verdict(role, Decision.AMBIGUOUS, f"unknown decision {raw_decision!r}")
    if decision is Decision.AMBIGUOUS:
        return Verdict(role, decision, str(parsed.get("feedback") or "extractor unsure"))
    if decision not in ROLE_DECISIONS[role]:
        return Verdict(role, Decision.AMBIGUOUS, f"decision {decision} not allowed for {role}")

    feedback = parsed.get("feedback")
    payload = parsed.get("payload")
    return Verdict(
        role=role,
        decision=decision,
        feedback=feedback if isinstance(feedback, str) else "",
        payload=payload if isinstance(payload, dict) else {},
    )


class Interpreter:
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

    def _build_prompt(self, role: Role, raw_text: str) -> str:
        allowed = ", ".join(sorted(decision.value for decision in ROLE_DECISIONS[role]))
        text = raw_text
        if len(text) > self.max_chars:
            text = text[: self.max_chars] + "\n[truncated]"
        return (
            f"{ROLE_GUIDANCE[role]}\n"
            f"Allowed decisions: {allowed}, ambiguous.\n\n"
            f"Agent output:\n{text}"
        )

    async def interpret(self, role: Role, raw_text: str) -> Verdict:
        if not raw_text.strip():
            return Verdict(role, Decision.AMBIGUOUS, "agent output was empty")
        try:
            reply = await self.invoker.invoke(
                "interpreter",
                self._build_prompt(role, raw_text),
                system_prompt=SYSTEM_PROMPT,
                model=self.model,
                allowed_tools=[],
                permission_mode="plan",
            )
        except (TransportError, InvalidResponseError) as exc:
            logger.warning("Interpreter call for %s failed: %s", role, exc)
            return Verdict(role, Decision.AMBIGUOUS, f"interpreter unavailable: {exc}")

        verdict = parse_verdict(role, reply.text)
        if verdict.is_ambiguous:
            logger.warning("Ambiguous %s output: %s", role, verdict.feedback)
        else:
            logger.debug("Interpreted %s as %s", role, verdict.decision)
        return verdict
