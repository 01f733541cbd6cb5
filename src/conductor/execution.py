"""Chunk loop: Bean Counter assigns work, Coder proposes and applies, Reviewer judges.

Transitions are pure functions of (state, event, context, payload); agent
calls happen before an event is fired, so a recorded event sequence replays
to the same state. Automated revisions and rejections consume a per-phase
attempt budget. When the budget is spent the machine stays put and records an
escalation; from then on only a human outcome (approve, reject with feedback,
abort) is accepted.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal, NoReturn

from conductor.errors import AttemptsExhausted, ProtocolViolation

logger = logging.getLogger(__name__)

Phase = Literal["plan", "code"]
FeedbackKind = Literal["revise", "reject"]


class ExecutionState(StrEnum):
    BEAN_COUNTING = "bean_counting"
    PLANNING = "planning"
    PLAN_REVIEW = "plan_review"
    IMPLEMENTING = "implementing"
    CODE_REVIEW = "code_review"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


class ExecutionEvent(StrEnum):
    CHUNK_READY = "chunk_ready"
    TASK_COMPLETE_SIGNAL = "task_complete_signal"
    PLAN_PROPOSED = "plan_proposed"
    PLAN_APPROVED = "plan_approved"
    PLAN_REVISION_REQUESTED = "plan_revision_requested"
    PLAN_REJECTED = "plan_rejected"
    PLAN_NEEDS_HUMAN = "plan_needs_human"
    CODE_APPLIED = "code_applied"
    CODE_APPROVED = "code_approved"
    CODE_REVISION_REQUESTED = "code_revision_requested"
    CODE_REJECTED = "code_rejected"
    CODE_NEEDS_HUMAN = "code_needs_human"
    USER_ABORT = "user_abort"
    ERROR_OCCURRED = "error_occurred"


TERMINAL_EXECUTION_STATES = frozenset(
    {ExecutionState.COMPLETE, ExecutionState.FAILED, ExecutionState.ABORTED}
)

_ANY_STATE_EVENTS = frozenset({ExecutionEvent.USER_ABORT, ExecutionEvent.ERROR_OCCURRED})

ALLOWED_EVENTS: dict[ExecutionState, frozenset[ExecutionEvent]] = {
    ExecutionState.BEAN_COUNTING: frozenset(
        {ExecutionEvent.CHUNK_READY, ExecutionEvent.TASK_COMPLETE_SIGNAL}
    ),
    ExecutionState.PLANNING: frozenset({ExecutionEvent.PLAN_PROPOSED}),
    ExecutionState.PLAN_REVIEW: frozenset(
        {
            ExecutionEvent.PLAN_APPROVED,
            ExecutionEvent.PLAN_REVISION_REQUESTED,
            ExecutionEvent.PLAN_REJECTED,
            ExecutionEvent.PLAN_NEEDS_HUMAN,
            ExecutionEvent.CODE_APPROVED,
        }
    ),
    ExecutionState.IMPLEMENTING: frozenset({ExecutionEvent.CODE_APPLIED}),
    ExecutionState.CODE_REVIEW: frozenset(
        {
            ExecutionEvent.CODE_APPROVED,
            ExecutionEvent.CODE_REVISION_REQUESTED,
            ExecutionEvent.CODE_REJECTED,
            ExecutionEvent.CODE_NEEDS_HUMAN,
        }
    ),
    ExecutionState.COMPLETE: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.ABORTED: frozenset(),
}

ESCALATION_EVENTS: dict[str, frozenset[ExecutionEvent]] = {
    "plan": frozenset(
        {ExecutionEvent.PLAN_APPROVED, ExecutionEvent.PLAN_REJECTED, ExecutionEvent.USER_ABORT}
    ),
    "code": frozenset(
        {ExecutionEvent.CODE_APPROVED, ExecutionEvent.CODE_REJECTED, ExecutionEvent.USER_ABORT}
    ),
}


@dataclass(slots=True)
class Chunk:
    description: str
    requirements: list[str] = field(default_factory=list)
    context: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any], fallback: str = "") -> Chunk:
        requirements = payload.get("requirements")
        if isinstance(requirements, str):
            requirements = [requirements]
        return cls(
            description=str(payload.get("description") or fallback).strip(),
            requirements=[str(item) for item in requirements or []],
            context=str(payload.get("context") or ""),
        )


@dataclass(slots=True)
class Proposal:
    description: str
    steps: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], fallback: str = "") -> Proposal:
        return cls(
            description=str(payload.get("description") or fallback).strip(),
            steps=[str(item) for item in payload.get("steps") or []],
            files=[str(item) for item in payload.get("files") or []],
        )


@dataclass(slots=True)
class Escalation:
    kind: Phase
    reason: str
    feedback: str | None = None
    attempts: int = 0
    raw_output: str | None = None


@dataclass(slots=True)
class ExecutionContext:
    max_plan_attempts: int = 3
    max_code_attempts: int = 3
    plan_attempts: int = 0
    code_attempts: int = 0
    plan_feedback: str | None = None
    code_feedback: str | None = None
    code_feedback_kind: FeedbackKind | None = None
    current_chunk: Chunk | None = None
    current_proposal: Proposal | None = None
    implementation_summary: str | None = None
    agent_output: dict[str, str] = field(default_factory=dict)
    agent_summary: dict[str, str] = field(default_factory=dict)
    escalation: Escalation | None = None
    chunks_completed: int = 0
    last_approval: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_plan_attempts": self.max_plan_attempts,
            "max_code_attempts": self.max_code_attempts,
            "plan_attempts": self.plan_attempts,
            "code_attempts": self.code_attempts,
            "plan_feedback": self.plan_feedback,
            "code_feedback": self.code_feedback,
            "code_feedback_kind": self.code_feedback_kind,
            "current_chunk": _dataclass_dict(self.current_chunk),
            "current_proposal": _dataclass_dict(self.current_proposal),
            "implementation_summary": self.implementation_summary,
            "agent_output": dict(self.agent_output),
            "agent_summary": dict(self.agent_summary),
            "escalation": _dataclass_dict(self.escalation),
            "chunks_completed": self.chunks_completed,
            "last_approval": self.last_approval,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionContext:
        values = dict(data)
        chunk = values.pop("current_chunk", None)
        proposal = values.pop("current_proposal", None)
        escalation = values.pop("escalation", None)
        return cls(
            current_chunk=Chunk(**chunk) if chunk else None,
            current_proposal=Proposal(**proposal) if proposal else None,
            escalation=Escalation(**escalation) if escalation else None,
            **values,
        )


def _dataclass_dict(value: Chunk | Proposal | Escalation | None) -> dict[str, Any] | None:
    return asdict(value) if value is not None else None


def _violation(
    state: ExecutionState, event: ExecutionEvent, reason: str | None = None
) -> NoReturn:
    raise ProtocolViolation("execution", state.value, event.value, reason)


def _escalate(
    ctx: ExecutionContext,
    kind: Phase,
    reason: str,
    feedback: str | None,
    raw_output: str | None,
) -> None:
    attempts = ctx.plan_attempts if kind == "plan" else ctx.code_attempts
    ctx.escalation = Escalation(
        kind=kind,
        reason=reason,
        feedback=feedback,
        attempts=attempts,
        raw_output=raw_output,
    )


def _exhausted(ctx: ExecutionContext, kind: Phase) -> str:
    if kind == "plan":
        error = AttemptsExhausted(kind, ctx.plan_attempts, ctx.max_plan_attempts)
    else:
        error = AttemptsExhausted(kind, ctx.code_attempts, ctx.max_code_attempts)
    return str(error)


def _complete_chunk(ctx: ExecutionContext, message: str | None) -> None:
    ctx.chunks_completed += 1
    ctx.last_approval = message
    ctx.current_chunk = None
    ctx.current_proposal = None
    ctx.implementation_summary = None
    ctx.plan_feedback = None
    ctx.code_feedback = None
    ctx.code_feedback_kind = None
    ctx.escalation = None


def transition_execution(
    state: ExecutionState,
    event: ExecutionEvent,
    context: ExecutionContext,
    payload: dict[str, Any] | None = None,
) -> tuple[ExecutionState, ExecutionContext]:
    """Compute the next state and context without touching the inputs.

    Raises ProtocolViolation when ``event`` is not acceptable in ``state``.
    """
    payload = payload or {}
    feedback = payload.get("feedback")
    raw_output = payload.get("raw_output")

    if state in TERMINAL_EXECUTION_STATES:
        _violation(state, event, "machine is terminal")

    if context.escalation is not None:
        if event not in ESCALATION_EVENTS[context.escalation.kind]:
            _violation(state, event, f"awaiting human decision on {context.escalation.kind}")
    elif event not in ALLOWED_EVENTS[state] and event not in _ANY_STATE_EVENTS:
        _violation(state, event)

    ctx = copy.deepcopy(context)

    if event is ExecutionEvent.USER_ABORT:
        ctx.escalation = None
        return ExecutionState.ABORTED, ctx

    if event is ExecutionEvent.ERROR_OCCURRED:
        ctx.last_error = str(payload.get("reason") or "unknown error")
        return ExecutionState.FAILED, ctx

    if context.escalation is not None:
        # Human outcome for a pending escalation; only that phase's budget resets.
        ctx.escalation = None
        if event is ExecutionEvent.PLAN_APPROVED:
            ctx.plan_feedback = None
            ctx.code_attempts = 0
            return ExecutionState.IMPLEMENTING, ctx
        if event is ExecutionEvent.PLAN_REJECTED:
            ctx.plan_attempts = 0
            ctx.plan_feedback = feedback
            ctx.current_proposal = None
            return ExecutionState.PLANNING, ctx
        if event is ExecutionEvent.CODE_APPROVED:
            _complete_chunk(ctx, payload.get("message"))
            return ExecutionState.BEAN_COUNTING, ctx
        # CODE_REJECTED
        ctx.code_attempts = 0
        ctx.code_feedback = feedback
        ctx.code_feedback_kind = "reject"
        return ExecutionState.IMPLEMENTING, ctx

    if event is ExecutionEvent.CHUNK_READY:
        chunk = payload.get("chunk")
        if not isinstance(chunk, Chunk):
            _violation(state, event, "missing chunk")
        ctx.current_chunk = chunk
        ctx.current_proposal = None
        ctx.implementation_summary = None
        ctx.plan_attempts = 0
        ctx.code_attempts = 0
        ctx.plan_feedback = None
        ctx.code_feedback = None
        ctx.code_feedback_kind = None
        return ExecutionState.PLANNING, ctx

    if event is ExecutionEvent.TASK_COMPLETE_SIGNAL:
        return ExecutionState.COMPLETE, ctx

    if event is ExecutionEvent.PLAN_PROPOSED:
        proposal = payload.get("proposal")
        if not isinstance(proposal, Proposal):
            _violation(state, event, "missing proposal")
        ctx.current_proposal = proposal
        return ExecutionState.PLAN_REVIEW, ctx

    if event is ExecutionEvent.PLAN_APPROVED:
        ctx.plan_feedback = None
        ctx.code_attempts = 0
        ctx.code_feedback = None
        ctx.code_feedback_kind = None
        return ExecutionState.IMPLEMENTING, ctx

    if event in {ExecutionEvent.PLAN_REVISION_REQUESTED, ExecutionEvent.PLAN_REJECTED}:
        if ctx.plan_attempts >= ctx.max_plan_attempts:
            _escalate(ctx, "plan", _exhausted(ctx, "plan"), feedback, raw_output)
            return state, ctx
        ctx.plan_attempts += 1
        ctx.plan_feedback = feedback
        if event is ExecutionEvent.PLAN_REJECTED:
            ctx.current_proposal = None
        return ExecutionState.PLANNING, ctx

    if event is ExecutionEvent.PLAN_NEEDS_HUMAN:
        _escalate(ctx, "plan", "reviewer asked for a human", feedback, raw_output)
        return state, ctx

    if event is ExecutionEvent.CODE_APPLIED:
        ctx.implementation_summary = payload.get("summary")
        return ExecutionState.CODE_REVIEW, ctx

    if event is ExecutionEvent.CODE_APPROVED:
        # From PLAN_REVIEW this means the chunk's work already exists.
        _complete_chunk(ctx, payload.get("message"))
        return ExecutionState.BEAN_COUNTING, ctx

    if event in {ExecutionEvent.CODE_REVISION_REQUESTED, ExecutionEvent.CODE_REJECTED}:
        if ctx.code_attempts >= ctx.max_code_attempts:
            _escalate(ctx, "code", _exhausted(ctx, "code"), feedback, raw_output)
            return state, ctx
        ctx.code_attempts += 1
        ctx.code_feedback = feedback
        ctx.code_feedback_kind = (
            "reject" if event is ExecutionEvent.CODE_REJECTED else "revise"
        )
        return ExecutionState.IMPLEMENTING, ctx

    # CODE_NEEDS_HUMAN
    _escalate(ctx, "code", "reviewer asked for a human", feedback, raw_output)
    return state, ctx


class ExecutionStateMachine:
    def __init__(
        self,
        context: ExecutionContext | None = None,
        state: ExecutionState = ExecutionState.BEAN_COUNTING,
    ) -> None:
        self.state = state
        self.context = context or ExecutionContext()

    @classmethod
    def with_limits(cls, max_plan_attempts: int, max_code_attempts: int) -> ExecutionStateMachine:
        return cls(
            ExecutionContext(
                max_plan_attempts=max_plan_attempts,
                max_code_attempts=max_code_attempts,
            )
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_EXECUTION_STATES

    @property
    def needs_human(self) -> bool:
        return self.context.escalation is not None

    def can_fire(self, event: ExecutionEvent) -> bool:
        if self.is_terminal:
            return False
        if self.context.escalation is not None:
            return event in ESCALATION_EVENTS[self.context.escalation.kind]
        return event in ALLOWED_EVENTS[self.state] or event in _ANY_STATE_EVENTS

    def fire(self, event: ExecutionEvent, payload: dict[str, Any] | None = None) -> ExecutionState:
        previous = self.state
        try:
            self.state, self.context = transition_execution(
                self.state, event, self.context, payload
            )
        except ProtocolViolation as exc:
            logger.error("%s", exc)
            raise
        if self.context.escalation is not None:
            logger.warning(
                "Execution escalated (%s): %s",
                self.context.escalation.kind,
                self.context.escalation.reason,
            )
        logger.info("Execution %s --%s--> %s", previous, event, self.state)
        return self.state

    def record_output(self, role: str, raw_output: str, summary: str | None = None) -> None:
        self.context.agent_output[role] = raw_output
        if summary is not None:
            self.context.agent_summary[role] = summary

    def snapshot(self) -> dict[str, Any]:
        return {"kind": "execution", "state": self.state.value, "context": self.context.to_dict()}

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> ExecutionStateMachine:
        if snapshot.get("kind") != "execution":
            raise ValueError(f"Not an execution snapshot: {snapshot.get('kind')!r}")
        return cls(
            context=ExecutionContext.from_dict(snapshot["context"]),
            state=ExecutionState(snapshot["state"]),
        )
