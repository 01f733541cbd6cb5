"""Driver loop: read state, call one agent, interpret, fire one event, checkpoint.

The loop is strictly sequential. Intents from a UI are applied only at safe
points between agent calls, so no machine is ever mutated while a call is in
flight.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from conductor.checkpoints import CheckpointStore, CheckpointTrigger
from conductor.config import ConductorConfig
from conductor.errors import (
    InterpretationAmbiguous,
    InvalidResponseError,
    ProtocolViolation,
    TransportError,
)
from conductor.execution import (
    Chunk,
    ExecutionEvent,
    ExecutionState,
    ExecutionStateMachine,
    Proposal,
)
from conductor.interpreter import Decision, Interpreter, Role, Verdict
from conductor.intents import DecisionRequest, HumanGate, Intent, IntentKind, IntentQueue
from conductor.invoker import AgentInvoker
from conductor.specialists import (
    BeanCounterAgent,
    CoderAgent,
    CurmudgeonAgent,
    PlannerAgent,
    RefinerAgent,
    ReviewerAgent,
    SpecialistResponse,
    SuperReviewerAgent,
)
from conductor.summarizer import Summarizer
from conductor.task import TaskEvent, TaskState, TaskStateMachine

logger = logging.getLogger(__name__)

AgentCall = Callable[[str | None], Awaitable[SpecialistResponse]]


@dataclass(slots=True)
class Specialists:
    refiner: RefinerAgent
    planner: PlannerAgent
    curmudgeon: CurmudgeonAgent
    bean_counter: BeanCounterAgent
    coder: CoderAgent
    reviewer: ReviewerAgent
    super_reviewer: SuperReviewerAgent

    @classmethod
    def build(cls, invoker: AgentInvoker, config: ConductorConfig) -> Specialists:
        agents = config.agents
        return cls(
            refiner=RefinerAgent(invoker, model=agents.planner_model),
            planner=PlannerAgent(invoker, model=agents.planner_model),
            curmudgeon=CurmudgeonAgent(invoker, model=agents.planner_model),
            bean_counter=BeanCounterAgent(invoker, model=agents.planner_model),
            coder=CoderAgent(invoker, model=agents.coder_model),
            reviewer=ReviewerAgent(invoker, model=agents.reviewer_model),
            super_reviewer=SuperReviewerAgent(invoker, model=agents.reviewer_model),
        )


@dataclass(slots=True)
class RunSummary:
    task_id: str
    state: str
    iterations: int
    chunks_completed: int
    cost_usd: float
    merge: str | None = None
    last_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.COMPLETE.value


class Orchestrator:
    def __init__(
        self,
        machine: TaskStateMachine,
        *,
        invoker: AgentInvoker,
        specialists: Specialists,
        interpreter: Interpreter,
        gate: HumanGate,
        checkpoints: CheckpointStore | None = None,
        intents: IntentQueue | None = None,
        summarizer: Summarizer | None = None,
        max_iterations: int = 200,
    ) -> None:
        self.machine = machine
        self.invoker = invoker
        self.specialists = specialists
        self.interpreter = interpreter
        self.gate = gate
        self.checkpoints = checkpoints
        self.intents = intents
        self.summarizer = summarizer
        self.max_iterations = max_iterations
        self._abort_requested = False
        self._merge: str | None = None
        self.invoker.on_reply = self.machine.record_agent_call
        self.invoker.on_session = self.machine.mark_session_initialized

    @classmethod
    def from_config(
        cls,
        machine: TaskStateMachine,
        invoker: AgentInvoker,
        config: ConductorConfig,
        *,
        gate: HumanGate,
        checkpoints: CheckpointStore | None = None,
        intents: IntentQueue | None = None,
    ) -> Orchestrator:
        return cls(
            machine,
            invoker=invoker,
            specialists=Specialists.build(invoker, config),
            interpreter=Interpreter(
                invoker,
                model=config.agents.interpreter_model,
                max_chars=config.agents.interpreter_max_chars,
            ),
            gate=gate,
            checkpoints=checkpoints,
            intents=intents,
            summarizer=(
                Summarizer(
                    invoker,
                    model=config.agents.summarizer_model,
                    max_chars=config.agents.interpreter_max_chars,
                )
                if config.workflow.summarize_outputs
                else None
            ),
            max_iterations=config.workflow.max_iterations,
        )

    # Bookkeeping

    def _checkpoint(self, trigger: CheckpointTrigger, description: str = "") -> None:
        if self.checkpoints is None:
            return
        self.checkpoints.create_checkpoint(self.machine, trigger, description)

    def _fire_task(
        self,
        event: TaskEvent,
        payload: dict[str, Any] | None = None,
        trigger: CheckpointTrigger = CheckpointTrigger.PHASE_TRANSITION,
    ) -> None:
        self.machine.fire(event, payload)
        if not self.machine.is_terminal:
            self._checkpoint(trigger, f"{event.value} -> {self.machine.state.value}")

    def _fire_execution(
        self,
        event: ExecutionEvent,
        payload: dict[str, Any] | None = None,
        trigger: CheckpointTrigger = CheckpointTrigger.PHASE_TRANSITION,
    ) -> None:
        execution = self._execution()
        execution.fire(event, payload)
        if execution.state is ExecutionState.COMPLETE:
            self._fire_task(TaskEvent.EXECUTION_COMPLETE)
        elif execution.state is ExecutionState.FAILED:
            self._fire_task(
                TaskEvent.EXECUTION_FAILED, {"reason": execution.context.last_error}
            )
        elif execution.state is ExecutionState.ABORTED:
            self._fire_task(TaskEvent.ERROR, {"reason": "execution aborted", "fatal": True})
        else:
            self._checkpoint(trigger, f"{event.value} -> {execution.state.value}")

    def _execution(self) -> ExecutionStateMachine:
        execution = self.machine.execution
        if execution is None:
            context = self.machine.context
            execution = ExecutionStateMachine.with_limits(
                context.max_plan_attempts, context.max_code_attempts
            )
            self.machine.attach_execution(execution)
        return execution

    def _apply_intents(self) -> None:
        if self.intents is None:
            return
        for intent in self.intents.drain():
            if intent.kind is IntentKind.INJECT and intent.text:
                self.machine.inject(intent.text)
                logger.info("Injection queued for the next agent call")
            elif intent.kind is IntentKind.ABORT:
                self._abort_requested = True
            else:
                logger.warning("Ignoring %s intent: no decision is pending", intent.kind)

    async def _ask(self, request: DecisionRequest) -> Intent:
        intent = await self.gate.decide(request, self.machine.inject)
        logger.info("Human decision at %s: %s", request.gate, intent.kind)
        return intent

    async def _call(self, role: str, activity: str, call: AgentCall) -> SpecialistResponse:
        """Run one agent call; transport failures go to the human as retry or abort."""
        while True:
            injection = self.machine.consume_injection()
            self.machine.begin_agent_call(role, activity)
            try:
                return await call(injection)
            except (TransportError, InvalidResponseError) as exc:
                failure = exc
            finally:
                self.machine.end_agent_call()

            logger.error("%s call failed: %s", role, failure)
            decision = await self._ask(
                DecisionRequest(
                    gate="transport_error",
                    summary=f"{role} could not be reached: {failure}",
                    choices=(IntentKind.RETRY, IntentKind.ABORT),
                )
            )
            if decision.kind is not IntentKind.RETRY:
                raise failure

    # Driver loop

    async def run(self) -> RunSummary:
        context = self.machine.context
        if self.machine.state is TaskState.INIT:
            self._fire_task(TaskEvent.START_TASK)

        while not self.machine.is_terminal:
            self._apply_intents()
            if self._abort_requested:
                self._abort()
                break
            if context.iteration >= self.max_iterations:
                logger.error("Iteration limit %d reached", self.max_iterations)
                self._fire_task(
                    TaskEvent.ERROR, {"reason": "iteration limit reached", "fatal": True}
                )
                break
            context.iteration += 1
            try:
                await self._step()
            except (TransportError, InvalidResponseError) as exc:
                self._fail(str(exc))
            except ProtocolViolation as exc:
                logger.error("Protocol violation, abandoning task: %s", exc)
                self._fire_task(TaskEvent.ERROR, {"reason": str(exc), "fatal": True})
            context = self.machine.context

        self._checkpoint(CheckpointTrigger.TERMINAL, self.machine.state.value)
        return self._summary()

    def _abort(self) -> None:
        logger.warning("Abort requested; stopping %s", self.machine.context.task_id)
        execution = self.machine.execution
        if (
            self.machine.state is TaskState.EXECUTING
            and execution is not None
            and not execution.is_terminal
        ):
            self._fire_execution(ExecutionEvent.USER_ABORT)
            return
        self._fire_task(TaskEvent.ERROR, {"reason": "aborted by user", "fatal": True})

    def _fail(self, reason: str) -> None:
        execution = self.machine.execution
        if (
            self.machine.state is TaskState.EXECUTING
            and execution is not None
            and not execution.is_terminal
            and not execution.needs_human
        ):
            self._fire_execution(ExecutionEvent.ERROR_OCCURRED, {"reason": reason})
            return
        self._fire_task(TaskEvent.ERROR, {"reason": reason, "fatal": True})

    def _summary(self) -> RunSummary:
        context = self.machine.context
        execution = self.machine.execution
        return RunSummary(
            task_id=context.task_id,
            state=self.machine.state.value,
            iterations=context.iteration,
            chunks_completed=execution.context.chunks_completed if execution else 0,
            cost_usd=context.total_cost_usd,
            merge=self._merge,
            last_error=context.last_error,
        )

    async def _step(self) -> None:
        state = self.machine.state
        awaiting = self.machine.awaiting_human
        if state is TaskState.REFINING:
            await self._refine()
        elif state is TaskState.PLANNING:
            await self._plan()
        elif state is TaskState.CURMUDGEONING:
            if awaiting == "plan":
                await self._plan_decision()
            else:
                await self._critique()
        elif state is TaskState.EXECUTING:
            await self._execution_step()
        elif state is TaskState.SUPER_REVIEWING:
            if awaiting == "super_review":
                await self._super_review_decision()
            else:
                await self._super_review()
        elif state is TaskState.FINALIZING:
            self._finalize()

    # Task phases

    async def _refine(self) -> None:
        context = self.machine.context
        response = await self._call(
            "refiner",
            "Refining task description",
            lambda injection: self.specialists.refiner.refine(
                context.original_description, injection=injection
            ),
        )
        if not response.content:
            self._fire_task(TaskEvent.REFINEMENT_CANCELLED)
            return
        decision = await self._ask(
            DecisionRequest(
                gate="refinement",
                summary=response.content,
                choices=(IntentKind.APPROVE, IntentKind.REJECT),
            )
        )
        if decision.kind is IntentKind.APPROVE:
            self._fire_task(TaskEvent.REFINEMENT_COMPLETE, {"text": response.content})
        else:
            self._fire_task(TaskEvent.REFINEMENT_CANCELLED)

    async def _plan(self) -> None:
        context = self.machine.context
        response = await self._call(
            "planner",
            "Planning",
            lambda injection: self.specialists.planner.plan(
                context.task_to_use,
                previous_plan=context.plan_md,
                curmudgeon_feedback=context.curmudgeon_feedback,
                retry_feedback=context.retry_feedback,
                injection=injection,
            ),
        )
        if not response.content:
            self._fire_task(TaskEvent.PLAN_FAILED, {"reason": "planner returned no plan"})
            return
        self._fire_task(TaskEvent.PLAN_CREATED, {"plan": response.content})

    async def _critique(self) -> None:
        context = self.machine.context
        plan = context.plan_md or ""
        response = await self._call(
            "curmudgeon",
            "Critiquing plan",
            lambda injection: self.specialists.curmudgeon.critique(
                context.task_to_use, plan, injection=injection
            ),
        )
        verdict = await self.interpreter.interpret(Role.CURMUDGEON, response.content)
        feedback = verdict.feedback or response.content
        if verdict.decision is Decision.APPROVE:
            self._fire_task(TaskEvent.CURMUDGEON_APPROVED, {"feedback": verdict.feedback or None})
        elif verdict.decision is Decision.SIMPLIFY:
            self._fire_task(TaskEvent.CURMUDGEON_SIMPLIFY, {"feedback": feedback})
        elif verdict.decision is Decision.REJECT:
            self._fire_task(TaskEvent.CURMUDGEON_REJECTED, {"feedback": feedback})
        else:
            # No usable critique: the plan goes to plan approval with the reason attached.
            reason = "Critique could not be interpreted"
            if verdict.decision is Decision.NEEDS_HUMAN:
                reason = "Critique asks for a human"
            logger.warning("%s: %s", reason, verdict.feedback)
            self._fire_task(
                TaskEvent.CURMUDGEON_APPROVED, {"feedback": f"{reason}: {feedback}"}
            )

    async def _plan_decision(self) -> None:
        context = self.machine.context
        decision = await self._ask(
            DecisionRequest(
                gate="plan",
                summary=context.plan_md or "",
                choices=(IntentKind.APPROVE, IntentKind.RETRY, IntentKind.ABANDON),
                feedback=context.curmudgeon_feedback,
            )
        )
        self._fire_human(decision)

    async def _super_review(self) -> None:
        context = self.machine.context
        execution = self._execution()
        response = await self._call(
            "super_reviewer",
            "Final quality review",
            lambda injection: self.specialists.super_reviewer.review(
                context.task_to_use,
                context.plan_md,
                chunks_completed=execution.context.chunks_completed,
                injection=injection,
            ),
        )
        verdict = await self.interpreter.interpret(Role.SUPER_REVIEW, response.content)
        issues = verdict.payload.get("issues")
        payload = {
            "summary": verdict.feedback or response.content,
            "issues": [str(item) for item in issues] if isinstance(issues, list) else [],
        }
        if verdict.decision is Decision.APPROVE:
            self._fire_task(TaskEvent.SUPER_REVIEW_PASSED, payload)
        else:
            self._fire_task(TaskEvent.SUPER_REVIEW_NEEDS_HUMAN, payload)

    async def _super_review_decision(self) -> None:
        review = self.machine.context.super_review
        summary = review.summary if review else ""
        if review and review.issues:
            summary = summary + "\n" + "\n".join(f"- {issue}" for issue in review.issues)
        decision = await self._ask(
            DecisionRequest(
                gate="super_review",
                summary=summary,
                choices=(IntentKind.APPROVE, IntentKind.RETRY, IntentKind.ABANDON),
            )
        )
        self._fire_human(decision)

    def _fire_human(self, decision: Intent) -> None:
        trigger = CheckpointTrigger.HUMAN_DECISION
        if decision.kind is IntentKind.APPROVE:
            self._fire_task(TaskEvent.HUMAN_APPROVED, trigger=trigger)
        elif decision.kind in {IntentKind.RETRY, IntentKind.REJECT}:
            self._fire_task(TaskEvent.HUMAN_RETRY, {"feedback": decision.text}, trigger=trigger)
        else:
            self._fire_task(TaskEvent.HUMAN_ABANDON, trigger=trigger)

    def _finalize(self) -> None:
        context = self.machine.context
        passed = context.super_review is not None and context.super_review.verdict == "approve"
        if context.auto_merge and passed:
            self._merge = "auto"
            logger.info("Task %s approved; merging automatically", context.task_id)
            self._fire_task(TaskEvent.AUTO_MERGE)
            return
        self._merge = "manual"
        logger.info(
            "Task %s finished in %s; review the changes and merge them manually",
            context.task_id,
            context.working_directory,
        )
        self._fire_task(TaskEvent.MANUAL_MERGE)

    # Execution cycle

    async def _execution_step(self) -> None:
        execution = self._execution()
        if execution.needs_human:
            await self._escalation_decision()
            return
        state = execution.state
        if state is ExecutionState.BEAN_COUNTING:
            await self._bean_count()
        elif state is ExecutionState.PLANNING:
            await self._propose()
        elif state is ExecutionState.PLAN_REVIEW:
            await self._review_plan()
        elif state is ExecutionState.IMPLEMENTING:
            await self._implement()
        elif state is ExecutionState.CODE_REVIEW:
            await self._review_code()
        elif state is ExecutionState.COMPLETE:
            self._fire_task(TaskEvent.EXECUTION_COMPLETE)
        elif state is ExecutionState.FAILED:
            self._fire_task(TaskEvent.EXECUTION_FAILED, {"reason": execution.context.last_error})
        else:
            self._fire_task(TaskEvent.ERROR, {"reason": "execution aborted", "fatal": True})

    def _current_chunk(self) -> Chunk:
        chunk = self._execution().context.current_chunk
        if chunk is None:
            raise RuntimeError("Execution has no current chunk.")
        return chunk

    async def _bean_count(self) -> None:
        context = self.machine.context
        execution = self._execution()
        session = self.machine.session_for("bean_counter")
        # A later cycle starts from a revised plan the ledger has not seen yet.
        plan_revised = (
            context.execution_cycles > 1
            and execution.context.chunks_completed == 0
            and execution.context.current_chunk is None
        )
        response = await self._call(
            "bean_counter",
            "Choosing the next chunk",
            lambda injection: self.specialists.bean_counter.next_chunk(
                context.task_to_use,
                context.plan_md or "",
                session=session,
                last_approval=execution.context.last_approval,
                plan_revised=plan_revised,
                injection=injection,
            ),
        )
        execution.record_output("bean_counter", response.content)
        verdict = await self.interpreter.interpret(Role.BEAN_COUNTER, response.content)
        try:
            verdict.require_clear()
        except InterpretationAmbiguous as exc:
            decision = await self._ask(
                DecisionRequest(
                    gate="bean_counter",
                    summary=f"Could not tell what the next chunk is: {exc.reason}",
                    choices=(IntentKind.RETRY, IntentKind.ABORT),
                    raw_output=response.content,
                )
            )
            if decision.kind is not IntentKind.RETRY:
                self._fire_execution(ExecutionEvent.USER_ABORT)
            return

        if verdict.decision is Decision.TASK_COMPLETE:
            self._fire_execution(ExecutionEvent.TASK_COMPLETE_SIGNAL)
            return
        chunk = Chunk.from_payload(verdict.payload, fallback=response.content)
        execution.record_output("bean_counter", response.content, chunk.description)
        self.machine.reset_session("coder")
        self.machine.reset_session("reviewer")
        self._fire_execution(ExecutionEvent.CHUNK_READY, {"chunk": chunk})

    async def _propose(self) -> None:
        execution = self._execution()
        chunk = self._current_chunk()
        session = self.machine.session_for("coder")
        response = await self._call(
            "coder",
            f"Proposing: {chunk.description}",
            lambda injection: self.specialists.coder.propose(
                chunk,
                session=session,
                feedback=execution.context.plan_feedback,
                injection=injection,
            ),
        )
        verdict = await self.interpreter.interpret(Role.CODER_PLAN, response.content)
        if verdict.is_ambiguous:
            # The reviewer judges the raw proposal; nothing is approved on this path.
            proposal = Proposal(description=response.content)
        elif verdict.decision is Decision.ALREADY_COMPLETE:
            proposal = Proposal(
                description=f"Already complete: {verdict.feedback or response.content}"
            )
        else:
            proposal = Proposal.from_payload(verdict.payload, fallback=response.content)
        execution.record_output("coder", response.content, proposal.description)
        self._fire_execution(ExecutionEvent.PLAN_PROPOSED, {"proposal": proposal})

    async def _review_plan(self) -> None:
        execution = self._execution()
        chunk = self._current_chunk()
        proposal = execution.context.current_proposal or Proposal(description=chunk.description)
        session = self.machine.session_for("reviewer")
        response = await self._call(
            "reviewer",
            f"Reviewing proposal: {chunk.description}",
            lambda injection: self.specialists.reviewer.review_plan(
                chunk, proposal, session=session, injection=injection
            ),
        )
        verdict = await self.interpreter.interpret(Role.PLAN_REVIEW, response.content)
        execution.record_output("reviewer", response.content, verdict.feedback or None)
        payload = {"feedback": response.content, "raw_output": response.content}
        if verdict.decision is Decision.APPROVE:
            self._fire_execution(ExecutionEvent.PLAN_APPROVED)
        elif verdict.decision is Decision.ALREADY_COMPLETE:
            self._fire_execution(
                ExecutionEvent.CODE_APPROVED,
                {"message": verdict.feedback or "Chunk was already complete."},
                trigger=CheckpointTrigger.CHUNK_APPROVED,
            )
        elif verdict.decision is Decision.REVISE:
            self._fire_execution(ExecutionEvent.PLAN_REVISION_REQUESTED, payload)
        elif verdict.decision is Decision.REJECT:
            self._fire_execution(ExecutionEvent.PLAN_REJECTED, payload)
        else:
            self._fire_execution(
                ExecutionEvent.PLAN_NEEDS_HUMAN, self._escalation_payload(verdict, response)
            )

    async def _implement(self) -> None:
        execution = self._execution()
        chunk = self._current_chunk()
        proposal = execution.context.current_proposal or Proposal(description=chunk.description)
        session = self.machine.session_for("coder")
        response = await self._call(
            "coder",
            f"Implementing: {chunk.description}",
            lambda injection: self.specialists.coder.implement(
                chunk,
                proposal,
                session=session,
                feedback=execution.context.code_feedback,
                feedback_kind=execution.context.code_feedback_kind,
                injection=injection,
            ),
        )
        verdict = await self.interpreter.interpret(Role.CODER_CODE, response.content)
        summary = str(verdict.payload.get("description") or "") or response.content
        condensed = await self._summarize("coder", response.content, summary)
        execution.record_output("coder", response.content, condensed)
        self._fire_execution(ExecutionEvent.CODE_APPLIED, {"summary": summary})

    async def _review_code(self) -> None:
        execution = self._execution()
        chunk = self._current_chunk()
        session = self.machine.session_for("reviewer")
        response = await self._call(
            "reviewer",
            f"Reviewing code: {chunk.description}",
            lambda injection: self.specialists.reviewer.review_code(
                chunk,
                execution.context.current_proposal,
                execution.context.implementation_summary,
                session=session,
                injection=injection,
            ),
        )
        verdict = await self.interpreter.interpret(Role.CODE_REVIEW, response.content)
        condensed = await self._summarize("reviewer", response.content, verdict.feedback or None)
        execution.record_output("reviewer", response.content, condensed)
        payload = {"feedback": response.content, "raw_output": response.content}
        if verdict.decision is Decision.APPROVE:
            self.machine.record_code_feedback(None)
            self._fire_execution(
                ExecutionEvent.CODE_APPROVED,
                {"message": verdict.feedback or response.content},
                trigger=CheckpointTrigger.CHUNK_APPROVED,
            )
        elif verdict.decision is Decision.REVISE:
            self.machine.record_code_feedback(response.content)
            self._fire_execution(ExecutionEvent.CODE_REVISION_REQUESTED, payload)
        elif verdict.decision is Decision.REJECT:
            self.machine.record_code_feedback(response.content)
            self._fire_execution(ExecutionEvent.CODE_REJECTED, payload)
        else:
            self._fire_execution(
                ExecutionEvent.CODE_NEEDS_HUMAN, self._escalation_payload(verdict, response)
            )

    async def _summarize(self, role: str, raw_output: str, default: str | None) -> str | None:
        if self.summarizer is None:
            return default
        return await self.summarizer.summarize(role, raw_output)

    @staticmethod
    def _escalation_payload(verdict: Verdict, response: SpecialistResponse) -> dict[str, Any]:
        feedback = verdict.feedback or response.content
        if verdict.is_ambiguous:
            feedback = f"Reviewer output could not be interpreted ({verdict.feedback})."
        return {"feedback": feedback, "raw_output": response.content}

    async def _escalation_decision(self) -> None:
        execution = self._execution()
        escalation = execution.context.escalation
        if escalation is None:
            return
        decision = await self._ask(
            DecisionRequest(
                gate=f"{escalation.kind}_escalation",
                summary=escalation.reason,
                choices=(IntentKind.APPROVE, IntentKind.REJECT, IntentKind.ABORT),
                feedback=escalation.feedback,
                attempts=escalation.attempts,
                raw_output=escalation.raw_output,
            )
        )
        if decision.kind is IntentKind.APPROVE:
            if escalation.kind == "plan":
                self._fire_execution(
                    ExecutionEvent.PLAN_APPROVED, trigger=CheckpointTrigger.HUMAN_DECISION
                )
            else:
                self._fire_execution(
                    ExecutionEvent.CODE_APPROVED,
                    {"message": "Approved by the user."},
                    trigger=CheckpointTrigger.CHUNK_APPROVED,
                )
        elif decision.kind in {IntentKind.REJECT, IntentKind.RETRY}:
            feedback = decision.text or escalation.feedback
            event = (
                ExecutionEvent.PLAN_REJECTED
                if escalation.kind == "plan"
                else ExecutionEvent.CODE_REJECTED
            )
            if escalation.kind == "code":
                self.machine.record_code_feedback(feedback)
            self._fire_execution(
                event, {"feedback": feedback}, trigger=CheckpointTrigger.HUMAN_DECISION
            )
        else:
            self._fire_execution(ExecutionEvent.USER_ABORT)
