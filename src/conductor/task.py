"""Task lifecycle: refine, plan, critique, execute, super-review, finalize.

``transition_task`` is the pure transition function; ``TaskStateMachine``
commits its result, owns the shared ``TaskContext`` and nests one
``ExecutionStateMachine`` per execution cycle.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal, NoReturn

from conductor.backends.base import AgentReply
from conductor.errors import ProtocolViolation
from conductor.execution import ExecutionState, ExecutionStateMachine
from conductor.invoker import AgentSession

logger = logging.getLogger(__name__)

HumanGate = Literal["plan", "super_review"]


class TaskState(StrEnum):
    INIT = "task_init"
    REFINING = "task_refining"
    PLANNING = "task_planning"
    CURMUDGEONING = "task_curmudgeoning"
    EXECUTING = "task_executing"
    SUPER_REVIEWING = "task_super_reviewing"
    FINALIZING = "task_finalizing"
    COMPLETE = "task_complete"
    ABANDONED = "task_abandoned"


class TaskEvent(StrEnum):
    START_TASK = "start_task"
    REFINEMENT_COMPLETE = "refinement_complete"
    REFINEMENT_CANCELLED = "refinement_cancelled"
    PLAN_CREATED = "plan_created"
    PLAN_FAILED = "plan_failed"
    CURMUDGEON_APPROVED = "curmudgeon_approved"
    CURMUDGEON_SIMPLIFY = "curmudgeon_simplify"
    CURMUDGEON_REJECTED = "curmudgeon_rejected"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_FAILED = "execution_failed"
    SUPER_REVIEW_PASSED = "super_review_passed"
    SUPER_REVIEW_NEEDS_HUMAN = "super_review_needs_human"
    HUMAN_APPROVED = "human_approved"
    HUMAN_RETRY = "human_retry"
    HUMAN_ABANDON = "human_abandon"
    AUTO_MERGE = "auto_merge"
    MANUAL_MERGE = "manual_merge"
    ERROR = "error"


TERMINAL_TASK_STATES = frozenset({TaskState.COMPLETE, TaskState.ABANDONED})

HUMAN_EVENTS = frozenset(
    {TaskEvent.HUMAN_APPROVED, TaskEvent.HUMAN_RETRY, TaskEvent.HUMAN_ABANDON}
)

ALLOWED_EVENTS: dict[TaskState, frozenset[TaskEvent]] = {
    TaskState.INIT: frozenset({TaskEvent.START_TASK}),
    TaskState.REFINING: frozenset(
        {TaskEvent.REFINEMENT_COMPLETE, TaskEvent.REFINEMENT_CANCELLED, TaskEvent.ERROR}
    ),
    TaskState.PLANNING: frozenset(
        {TaskEvent.PLAN_CREATED, TaskEvent.PLAN_FAILED, TaskEvent.ERROR}
    ),
    TaskState.CURMUDGEONING: frozenset(
        {
            TaskEvent.CURMUDGEON_APPROVED,
            TaskEvent.CURMUDGEON_SIMPLIFY,
            TaskEvent.CURMUDGEON_REJECTED,
            TaskEvent.ERROR,
            *HUMAN_EVENTS,
        }
    ),
    TaskState.EXECUTING: frozenset(
        {TaskEvent.EXECUTION_COMPLETE, TaskEvent.EXECUTION_FAILED, TaskEvent.ERROR}
    ),
    TaskState.SUPER_REVIEWING: frozenset(
        {
            TaskEvent.SUPER_REVIEW_PASSED,
            TaskEvent.SUPER_REVIEW_NEEDS_HUMAN,
            TaskEvent.ERROR,
            *HUMAN_EVENTS,
        }
    ),
    TaskState.FINALIZING: frozenset(
        {TaskEvent.AUTO_MERGE, TaskEvent.MANUAL_MERGE, TaskEvent.ERROR}
    ),
    TaskState.COMPLETE: frozenset(),
    TaskState.ABANDONED: frozenset(),
}


@dataclass(slots=True)
class AgentStats:
    cost_usd: float = 0.0
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    calls: int = 0

    def add(self, reply: AgentReply) -> None:
        self.cost_usd += reply.cost_usd
        self.duration_ms += reply.duration_ms
        self.input_tokens += reply.token_usage.input_tokens
        self.output_tokens += reply.token_usage.output_tokens
        self.cache_creation_tokens += reply.token_usage.cache_creation_tokens
        self.cache_read_tokens += reply.token_usage.cache_read_tokens
        self.calls += 1


@dataclass(slots=True)
class SuperReview:
    verdict: str
    summary: str = ""
    issues: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskContext:
    task_id: str
    original_description: str
    working_directory: str = "."
    interactive: bool = True
    auto_merge: bool = False
    max_simplifications: int = 4
    max_plan_attempts: int = 3
    max_code_attempts: int = 3
    refined_task: str | None = None
    plan_md: str | None = None
    curmudgeon_feedback: str | None = None
    code_feedback: str | None = None
    retry_feedback: str | None = None
    super_review: SuperReview | None = None
    user_has_reviewed_plan: bool = False
    simplification_count: int = 0
    awaiting_human: HumanGate | None = None
    agent_stats: dict[str, AgentStats] = field(default_factory=dict)
    sessions: dict[str, AgentSession] = field(default_factory=dict)
    live_activity: str | None = None
    pending_injection: str | None = None
    in_flight: str | None = None
    execution_cycles: int = 0
    iteration: int = 0
    last_error: str | None = None

    @property
    def task_to_use(self) -> str:
        return self.refined_task or self.original_description

    @property
    def total_cost_usd(self) -> float:
        return sum(stats.cost_usd for stats in self.agent_stats.values())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskContext:
        values = dict(data)
        super_review = values.pop("super_review", None)
        stats = values.pop("agent_stats", {}) or {}
        sessions = values.pop("sessions", {}) or {}
        return cls(
            super_review=SuperReview(**super_review) if super_review else None,
            agent_stats={role: AgentStats(**item) for role, item in stats.items()},
            sessions={role: AgentSession.from_dict(item) for role, item in sessions.items()},
            **values,
        )


def _violation(state: TaskState, event: TaskEvent, reason: str | None = None) -> NoReturn:
    raise ProtocolViolation("task", state.value, event.value, reason)


def _await_plan_approval(ctx: TaskContext) -> TaskState:
    if not ctx.interactive:
        # Non-interactive runs approve on the human's behalf.
        return TaskState.EXECUTING
    ctx.awaiting_human = "plan"
    return TaskState.CURMUDGEONING


def _abandon(ctx: TaskContext, reason: object) -> TaskState:
    ctx.last_error = str(reason) if reason else ctx.last_error
    ctx.awaiting_human = None
    return TaskState.ABANDONED


def transition_task(
    state: TaskState,
    event: TaskEvent,
    context: TaskContext,
    payload: dict[str, Any] | None = None,
) -> tuple[TaskState, TaskContext]:
    """Compute the next state and context without touching the inputs.

    Raises ProtocolViolation when ``event`` is not acceptable in ``state``
    or in the human-decision sub-state the task is currently blocked on.
    """
    payload = payload or {}
    if event not in ALLOWED_EVENTS[state]:
        _violation(state, event)
    if event in HUMAN_EVENTS and context.awaiting_human is None:
        _violation(state, event, "no human decision is pending")
    if context.awaiting_human is not None and event not in HUMAN_EVENTS | {TaskEvent.ERROR}:
        _violation(state, event, f"awaiting human decision on {context.awaiting_human}")

    ctx = copy.deepcopy(context)
    feedback = payload.get("feedback")

    if event is TaskEvent.ERROR:
        if state is TaskState.REFINING and not payload.get("fatal"):
            ctx.refined_task = None
            return TaskState.PLANNING, ctx
        return _abandon(ctx, payload.get("reason") or "unexpected error"), ctx

    if event is TaskEvent.START_TASK:
        return (TaskState.REFINING if ctx.interactive else TaskState.PLANNING), ctx

    if event is TaskEvent.REFINEMENT_COMPLETE:
        text = payload.get("text")
        ctx.refined_task = text.strip() if isinstance(text, str) and text.strip() else None
        return TaskState.PLANNING, ctx

    if event is TaskEvent.REFINEMENT_CANCELLED:
        ctx.refined_task = None
        return TaskState.PLANNING, ctx

    if event is TaskEvent.PLAN_CREATED:
        plan = payload.get("plan")
        if not isinstance(plan, str) or not plan.strip():
            _violation(state, event, "empty plan")
        ctx.plan_md = plan
        ctx.retry_feedback = None
        if ctx.user_has_reviewed_plan or ctx.simplification_count >= ctx.max_simplifications:
            return _await_plan_approval(ctx), ctx
        return TaskState.CURMUDGEONING, ctx

    if event is TaskEvent.PLAN_FAILED:
        return _abandon(ctx, payload.get("reason") or "planning failed"), ctx

    if event is TaskEvent.CURMUDGEON_APPROVED:
        ctx.curmudgeon_feedback = feedback
        return _await_plan_approval(ctx), ctx

    if event is TaskEvent.CURMUDGEON_SIMPLIFY:
        ctx.curmudgeon_feedback = feedback
        if ctx.simplification_count >= ctx.max_simplifications:
            return _await_plan_approval(ctx), ctx
        ctx.simplification_count += 1
        return TaskState.PLANNING, ctx

    if event is TaskEvent.CURMUDGEON_REJECTED:
        ctx.curmudgeon_feedback = feedback
        if not ctx.interactive:
            return _abandon(ctx, feedback or "curmudgeon rejected the plan"), ctx
        return _await_plan_approval(ctx), ctx

    if event is TaskEvent.EXECUTION_COMPLETE:
        return TaskState.SUPER_REVIEWING, ctx

    if event is TaskEvent.EXECUTION_FAILED:
        return _abandon(ctx, payload.get("reason") or "execution failed"), ctx

    if event is TaskEvent.SUPER_REVIEW_PASSED:
        ctx.super_review = SuperReview(
            verdict="approve",
            summary=str(payload.get("summary") or ""),
            issues=list(payload.get("issues") or []),
        )
        return TaskState.FINALIZING, ctx

    if event is TaskEvent.SUPER_REVIEW_NEEDS_HUMAN:
        ctx.super_review = SuperReview(
            verdict="needs_human",
            summary=str(payload.get("summary") or ""),
            issues=list(payload.get("issues") or []),
        )
        ctx.awaiting_human = "super_review"
        return state, ctx

    if event is TaskEvent.AUTO_MERGE or event is TaskEvent.MANUAL_MERGE:
        return TaskState.COMPLETE, ctx

    # Human outcomes for the pending decision.
    gate = ctx.awaiting_human
    ctx.awaiting_human = None
    if event is TaskEvent.HUMAN_ABANDON:
        return _abandon(ctx, payload.get("reason") or f"abandoned at {gate} review"), ctx
    if gate == "plan":
        ctx.user_has_reviewed_plan = True
        if event is TaskEvent.HUMAN_APPROVED:
            return TaskState.EXECUTING, ctx
        ctx.retry_feedback = feedback
        ctx.curmudgeon_feedback = None
        return TaskState.PLANNING, ctx
    # super_review
    if event is TaskEvent.HUMAN_APPROVED:
        return TaskState.FINALIZING, ctx
    ctx.retry_feedback = feedback
    ctx.curmudgeon_feedback = None
    return TaskState.PLANNING, ctx


class TaskStateMachine:
    def __init__(
        self,
        context: TaskContext,
        state: TaskState = TaskState.INIT,
        execution: ExecutionStateMachine | None = None,
    ) -> None:
        self.context = context
        self.state = state
        self.execution = execution

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TASK_STATES

    @property
    def awaiting_human(self) -> HumanGate | None:
        return self.context.awaiting_human

    def can_fire(self, event: TaskEvent) -> bool:
        if event not in ALLOWED_EVENTS[self.state]:
            return False
        if self.context.awaiting_human is None:
            return event not in HUMAN_EVENTS
        return event in HUMAN_EVENTS or event is TaskEvent.ERROR

    def fire(self, event: TaskEvent, payload: dict[str, Any] | None = None) -> TaskState:
        previous = self.state
        try:
            if event is TaskEvent.EXECUTION_COMPLETE and (
                self.execution is None or self.execution.state is not ExecutionState.COMPLETE
            ):
                _violation(self.state, event, "execution cycle has not completed")
            self.state, self.context = transition_task(self.state, event, self.context, payload)
        except ProtocolViolation as exc:
            logger.error("%s", exc)
            raise

        if self.state is TaskState.EXECUTING and previous is not TaskState.EXECUTING:
            self.attach_execution(
                ExecutionStateMachine.with_limits(
                    self.context.max_plan_attempts, self.context.max_code_attempts
                )
            )
        elif self.state is TaskState.PLANNING and previous is TaskState.SUPER_REVIEWING:
            self.detach_execution()

        logger.info("Task %s %s --%s--> %s", self.context.task_id, previous, event, self.state)
        return self.state

    # Context operations that are not lifecycle transitions.

    def record_agent_call(self, role: str, reply: AgentReply) -> None:
        self.context.agent_stats.setdefault(role, AgentStats()).add(reply)

    def begin_agent_call(self, role: str, activity: str) -> None:
        self.context.in_flight = role
        self.context.live_activity = activity

    def end_agent_call(self) -> None:
        self.context.in_flight = None

    def consume_live_activity(self) -> str | None:
        activity, self.context.live_activity = self.context.live_activity, None
        return activity

    def inject(self, text: str) -> None:
        self.context.pending_injection = text

    def consume_injection(self) -> str | None:
        injection, self.context.pending_injection = self.context.pending_injection, None
        return injection

    def session_for(self, role: str) -> AgentSession:
        return self.context.sessions.setdefault(role, AgentSession())

    def mark_session_initialized(self, role: str, session_id: str | None = None) -> None:
        self.session_for(role).mark_initialized(session_id)

    def reset_session(self, role: str) -> AgentSession:
        session = AgentSession()
        self.context.sessions[role] = session
        return session

    def attach_execution(self, execution: ExecutionStateMachine) -> None:
        """Start a new execution cycle driven by ``execution``."""
        self.execution = execution
        self.context.execution_cycles += 1
        logger.info(
            "Task %s execution cycle %d started",
            self.context.task_id,
            self.context.execution_cycles,
        )

    def detach_execution(self) -> ExecutionStateMachine | None:
        execution, self.execution = self.execution, None
        return execution

    def record_code_feedback(self, text: str | None) -> None:
        self.context.code_feedback = text

    def status(self) -> str:
        parts = [f"{self.context.task_id}: {self.state.value}"]
        if self.context.awaiting_human:
            parts.append(f"awaiting {self.context.awaiting_human} decision")
        if self.execution is not None:
            parts.append(f"execution {self.execution.state.value}")
            parts.append(f"{self.execution.context.chunks_completed} chunk(s) done")
        parts.append(f"${self.context.total_cost_usd:.4f}")
        return ", ".join(parts)

    def projection(self) -> dict[str, Any]:
        """Read-only view for UIs; mutating the result has no effect on the machine."""
        view: dict[str, Any] = {
            "task_id": self.context.task_id,
            "state": self.state.value,
            "task": self.context.task_to_use,
            "plan": self.context.plan_md,
            "awaiting_human": self.context.awaiting_human,
            "live_activity": self.context.live_activity,
            "curmudgeon_feedback": self.context.curmudgeon_feedback,
            "super_review": (
                asdict(self.context.super_review) if self.context.super_review else None
            ),
            "cost_usd": self.context.total_cost_usd,
            "execution": None,
        }
        if self.execution is not None:
            exec_ctx = self.execution.context
            view["execution"] = {
                "state": self.execution.state.value,
                "chunk": asdict(exec_ctx.current_chunk) if exec_ctx.current_chunk else None,
                "plan_attempts": exec_ctx.plan_attempts,
                "code_attempts": exec_ctx.code_attempts,
                "escalation": asdict(exec_ctx.escalation) if exec_ctx.escalation else None,
                "agent_summary": dict(exec_ctx.agent_summary),
                "chunks_completed": exec_ctx.chunks_completed,
            }
        return copy.deepcopy(view)

    def snapshot(self) -> dict[str, Any]:
        return {
            "kind": "task",
            "state": self.state.value,
            "context": self.context.to_dict(),
            "execution": self.execution.snapshot() if self.execution is not None else None,
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> TaskStateMachine:
        if snapshot.get("kind") != "task":
            raise ValueError(f"Not a task snapshot: {snapshot.get('kind')!r}")
        execution = snapshot.get("execution")
        return cls(
            context=TaskContext.from_dict(snapshot["context"]),
            state=TaskState(snapshot["state"]),
            execution=ExecutionStateMachine.from_snapshot(execution) if execution else None,
        )
