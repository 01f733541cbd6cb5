import asyncio
import json
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, AgentReply, AgentRequest
from conductor.checkpoints import CheckpointStore, restore_task_state_machine
from conductor.config import ConductorConfig
from conductor.errors import ProtocolViolation, TransportError
from conductor.interpreter import ROLE_GUIDANCE, SYSTEM_PROMPT, Role
from conductor.intents import (
    AutoApproveGate,
    DecisionRequest,
    HumanGate,
    Intent,
    IntentKind,
    IntentQueue,
)
from conductor.invoker import AgentInvoker
from conductor.orchestrator import Orchestrator
from conductor.summarizer import SUMMARY_PROMPTS
from conductor.task import TaskContext, TaskState, TaskStateMachine

HAPPY_VERDICTS: dict[Role, list[dict[str, Any]]] = {
    Role.CURMUDGEON: [{"decision": "approve", "feedback": "small and focused"}],
    Role.BEAN_COUNTER: [
        {
            "decision": "work_chunk",
            "payload": {
                "description": "Add a comment to README",
                "requirements": ["one line", "top of file"],
            },
        },
        {"decision": "task_complete"},
    ],
    Role.CODER_PLAN: [
        {
            "decision": "proposed",
            "payload": {
                "description": "Insert a comment line",
                "steps": ["open README.md", "add comment"],
                "files": ["README.md"],
            },
        }
    ],
    Role.PLAN_REVIEW: [{"decision": "approve"}],
    Role.CODER_CODE: [{"decision": "implemented", "payload": {"description": "README.md edited"}}],
    Role.CODE_REVIEW: [{"decision": "approve", "feedback": "looks right"}],
    Role.SUPER_REVIEW: [{"decision": "approve", "feedback": "ready to merge"}],
}


def _next(script: dict[Any, list[Any]], key: Any, default: Any) -> Any:
    items = script.get(key)
    if not items:
        return default
    return items.pop(0) if len(items) > 1 else items[0]


class ScriptedBackend(AgentBackend):
    """Answers agent prompts from per-role scripts; the last entry of a script repeats."""

    def __init__(
        self,
        verdicts: dict[Role, list[dict[str, Any]]] | None = None,
        replies: dict[str, list[str]] | None = None,
        failures: dict[str, int] | None = None,
    ) -> None:
        merged = {role: list(items) for role, items in HAPPY_VERDICTS.items()}
        merged.update({role: list(items) for role, items in (verdicts or {}).items()})
        self.verdicts = merged
        self.replies = {role: list(items) for role, items in (replies or {}).items()}
        self.failures = dict(failures or {})
        self.roles: dict[str, str] = {}
        self.calls: list[tuple[str, AgentRequest]] = []

    def learn_roles(self, orchestrator: Orchestrator) -> None:
        specialists = orchestrator.specialists
        for agent in (
            specialists.refiner,
            specialists.planner,
            specialists.curmudgeon,
            specialists.bean_counter,
            specialists.coder,
            specialists.reviewer,
            specialists.super_reviewer,
        ):
            self.roles[agent.system_prompt] = agent.role

    def prompts(self, role: str) -> list[str]:
        return [request.prompt for name, request in self.calls if name == role]

    @property
    def agent_roles(self) -> list[str]:
        return [name for name, _ in self.calls if ":" not in name]

    async def query(self, request: AgentRequest) -> AgentReply:
        if request.system_prompt == SYSTEM_PROMPT:
            role = next(role for role, text in ROLE_GUIDANCE.items() if text in request.prompt)
            self.calls.append((f"interpret:{role}", request))
            verdict = _next(self.verdicts, role, {"decision": "ambiguous"})
            return AgentReply(text=json.dumps(verdict), cost_usd=0.001)
        for role, text in SUMMARY_PROMPTS.items():
            if request.system_prompt == text:
                self.calls.append((f"summarize:{role}", request))
                return AgentReply(text=f"{role} summary", cost_usd=0.0005)

        name = self.roles[request.system_prompt]
        self.calls.append((name, request))
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise TransportError(f"{name} backend unreachable", backend="fake", retriable=False)
        text = _next(self.replies, name, f"{name} output")
        return AgentReply(text=text, session_id=request.session_id, cost_usd=0.01)


class RecordingGate(HumanGate):
    def __init__(self, answers: list[Intent] | None = None) -> None:
        self.answers = list(answers or [])
        self.requests: list[DecisionRequest] = []

    async def decide(self, request: DecisionRequest, on_injection: Any) -> Intent:
        _ = on_injection
        self.requests.append(request)
        if not self.answers:
            raise AssertionError(f"unexpected human decision: {request.gate}")
        return self.answers.pop(0)


def _build(
    backend: ScriptedBackend,
    *,
    gate: HumanGate | None = None,
    interactive: bool = False,
    store: CheckpointStore | None = None,
    intents: IntentQueue | None = None,
    machine: TaskStateMachine | None = None,
    config: ConductorConfig | None = None,
) -> Orchestrator:
    machine = machine or TaskStateMachine(
        TaskContext(
            task_id="task-1",
            original_description="Add a comment to README",
            interactive=interactive,
        )
    )
    orchestrator = Orchestrator.from_config(
        machine,
        AgentInvoker(backend),
        config or ConductorConfig.default(),
        gate=gate or RecordingGate(),
        checkpoints=store,
        intents=intents,
    )
    backend.learn_roles(orchestrator)
    return orchestrator


def test_non_interactive_run_completes_without_human_decisions(tmp_path: Path) -> None:
    backend = ScriptedBackend()
    gate = RecordingGate()
    store = CheckpointStore(tmp_path)
    orchestrator = _build(backend, gate=gate, store=store)

    summary = asyncio.run(orchestrator.run())

    assert summary.succeeded
    assert summary.state == TaskState.COMPLETE.value
    assert summary.chunks_completed == 1
    assert summary.merge == "manual"
    assert summary.cost_usd > 0
    assert gate.requests == []
    assert backend.agent_roles == [
        "planner",
        "curmudgeon",
        "bean_counter",
        "coder",
        "reviewer",
        "coder",
        "reviewer",
        "bean_counter",
        "super_reviewer",
    ]
    stats = orchestrator.machine.context.agent_stats
    assert stats["coder"].calls == 2
    assert stats["interpreter"].calls == 8

    entries = store.list_checkpoints("task-1")
    triggers = [entry.trigger for entry in entries]
    assert "chunk_approved" in triggers
    assert "human_decision" not in triggers
    assert triggers[-1] == "terminal"
    assert entries[-1].recoverable is False
    assert all(entry.recoverable for entry in entries[:-1])


def test_bean_counter_keeps_one_session_and_coder_gets_the_chunk() -> None:
    backend = ScriptedBackend()
    asyncio.run(_build(backend).run())

    bean_requests = [request for name, request in backend.calls if name == "bean_counter"]
    assert bean_requests[0].resume is False
    assert bean_requests[1].resume is True
    assert bean_requests[0].session_id == bean_requests[1].session_id
    assert "Approved plan:" in bean_requests[0].prompt
    assert "looks right" in bean_requests[1].prompt

    proposal_prompt = backend.prompts("coder")[0]
    assert "Chunk: Add a comment to README" in proposal_prompt
    assert "- top of file" in proposal_prompt


def test_code_rejection_feedback_reaches_coder_verbatim() -> None:
    feedback = "Wrong file.\nUse docs/README.md, not README.md."
    backend = ScriptedBackend(
        verdicts={
            Role.CODE_REVIEW: [
                {"decision": "reject", "feedback": "wrong file"},
                {"decision": "approve"},
            ]
        },
        replies={"reviewer": ["Proposal is fine.", feedback, "Good now."]},
    )

    summary = asyncio.run(_build(backend).run())

    assert summary.succeeded
    implement_prompts = backend.prompts("coder")[1:]
    assert len(implement_prompts) == 2
    assert "rejected" in implement_prompts[1]
    assert feedback in implement_prompts[1]
    assert backend.agent_roles.count("bean_counter") == 2


def test_exhausted_revisions_escalate_to_a_human() -> None:
    backend = ScriptedBackend(
        verdicts={Role.CODE_REVIEW: [{"decision": "revise", "feedback": "again"}]},
    )
    gate = RecordingGate([Intent.approve()])

    summary = asyncio.run(_build(backend, gate=gate).run())

    assert summary.succeeded
    assert [request.gate for request in gate.requests] == ["code_escalation"]
    assert gate.requests[0].attempts == 3
    assert gate.requests[0].raw_output == "reviewer output"
    # Proposal, first implementation and three automated revisions.
    assert len(backend.prompts("coder")) == 5


def test_ambiguous_review_is_never_treated_as_approval() -> None:
    backend = ScriptedBackend(
        verdicts={
            Role.CODE_REVIEW: [{"decision": "maybe"}, {"decision": "approve"}],
        },
    )
    gate = RecordingGate([Intent(IntentKind.REJECT, "keep the diff to one line")])

    summary = asyncio.run(_build(backend, gate=gate).run())

    assert summary.succeeded
    assert gate.requests[0].gate == "code_escalation"
    assert "could not be interpreted" in (gate.requests[0].feedback or "")
    assert "keep the diff to one line" in backend.prompts("coder")[-1]


def test_interactive_plan_retry_replans_without_the_critic() -> None:
    backend = ScriptedBackend(replies={"refiner": ["Add a one-line comment to README.md"]})
    gate = RecordingGate(
        [
            Intent.approve(),
            Intent.retry("make it smaller"),
            Intent.approve(),
        ]
    )

    summary = asyncio.run(_build(backend, gate=gate, interactive=True).run())

    assert summary.succeeded
    assert [request.gate for request in gate.requests] == ["refinement", "plan", "plan"]
    assert backend.agent_roles.count("curmudgeon") == 1
    planner_prompts = backend.prompts("planner")
    assert "Add a one-line comment to README.md" in planner_prompts[0]
    assert "make it smaller" in planner_prompts[1]


def test_transport_failure_without_retry_abandons_the_task() -> None:
    backend = ScriptedBackend(failures={"planner": 1})

    summary = asyncio.run(_build(backend, gate=AutoApproveGate()).run())

    assert summary.state == TaskState.ABANDONED.value
    assert not summary.succeeded
    assert "planner backend unreachable" in (summary.last_error or "")


def test_transport_failure_can_be_retried() -> None:
    backend = ScriptedBackend(failures={"planner": 1})
    gate = RecordingGate([Intent.retry()])

    summary = asyncio.run(_build(backend, gate=gate).run())

    assert summary.succeeded
    assert gate.requests[0].gate == "transport_error"
    assert backend.agent_roles[:2] == ["planner", "planner"]


def test_protocol_violation_abandons_the_task() -> None:
    orchestrator = _build(ScriptedBackend())

    async def broken_step() -> None:
        raise ProtocolViolation("execution", "implementing", "chunk_ready")

    orchestrator._step = broken_step  # type: ignore[method-assign]  # noqa: SLF001
    summary = asyncio.run(orchestrator.run())

    assert summary.state == TaskState.ABANDONED.value
    assert "chunk_ready" in (summary.last_error or "")


def test_abort_intent_stops_before_any_agent_call() -> None:
    backend = ScriptedBackend()
    intents = IntentQueue()
    intents.put(Intent.abort())

    summary = asyncio.run(_build(backend, intents=intents).run())

    assert summary.state == TaskState.ABANDONED.value
    assert backend.calls == []


def test_injection_reaches_exactly_one_agent_call() -> None:
    backend = ScriptedBackend()
    intents = IntentQueue()
    intents.put(Intent.inject("mention the license"))

    asyncio.run(_build(backend, intents=intents).run())

    injected = [
        name for name, request in backend.calls if "mention the license" in request.prompt
    ]
    assert injected == ["planner"]


def test_resume_continues_from_latest_recoverable_checkpoint(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    failing = ScriptedBackend(failures={"reviewer": 1})
    first = asyncio.run(_build(failing, gate=AutoApproveGate(), store=store).run())
    assert first.state == TaskState.ABANDONED.value

    recovery = store.load_latest_recoverable("task-1")
    assert recovery.checkpoint is not None
    machine = restore_task_state_machine(recovery.checkpoint)
    assert machine.state is TaskState.EXECUTING
    assert machine.execution is not None
    assert machine.execution.state.value == "plan_review"

    healthy = ScriptedBackend(verdicts={Role.BEAN_COUNTER: [{"decision": "task_complete"}]})
    summary = asyncio.run(_build(healthy, store=store, machine=machine).run())

    assert summary.succeeded
    assert summary.chunks_completed == 1
    assert healthy.agent_roles[0] == "reviewer"
    assert "planner" not in healthy.agent_roles


def test_critic_rejection_abandons_a_non_interactive_task() -> None:
    backend = ScriptedBackend(
        verdicts={Role.CURMUDGEON: [{"decision": "reject", "feedback": "wrong approach"}]},
    )
    gate = RecordingGate()

    summary = asyncio.run(_build(backend, gate=gate).run())

    assert summary.state == TaskState.ABANDONED.value
    assert summary.last_error == "wrong approach"
    assert backend.agent_roles == ["planner", "curmudgeon"]
    assert gate.requests == []


def test_critic_rejection_goes_to_the_human_when_interactive() -> None:
    backend = ScriptedBackend(
        verdicts={Role.CURMUDGEON: [{"decision": "reject", "feedback": "wrong approach"}]},
    )
    gate = RecordingGate([Intent.approve(), Intent.approve()])

    summary = asyncio.run(_build(backend, gate=gate, interactive=True).run())

    assert summary.succeeded
    assert [request.gate for request in gate.requests] == ["refinement", "plan"]
    assert gate.requests[1].feedback == "wrong approach"


def test_uninterpretable_critique_proceeds_with_the_plan() -> None:
    backend = ScriptedBackend(verdicts={Role.CURMUDGEON: [{"decision": "maybe"}]})

    orchestrator = _build(backend)
    summary = asyncio.run(orchestrator.run())

    assert summary.succeeded
    feedback = orchestrator.machine.context.curmudgeon_feedback or ""
    assert feedback.startswith("Critique could not be interpreted")


def test_empty_plan_abandons_the_task() -> None:
    backend = ScriptedBackend(replies={"planner": ["   "]})

    summary = asyncio.run(_build(backend).run())

    assert summary.state == TaskState.ABANDONED.value
    assert summary.last_error == "planner returned no plan"
    assert backend.agent_roles == ["planner"]


def test_final_review_retry_starts_a_new_cycle_from_the_revised_plan() -> None:
    backend = ScriptedBackend(
        verdicts={
            Role.SUPER_REVIEW: [
                {"decision": "needs_human", "feedback": "no test for the comment"},
                {"decision": "approve"},
            ]
        },
        replies={"planner": ["1. edit README", "1. edit README\n2. add a test"]},
    )
    gate = RecordingGate([Intent.retry("add a test too")])

    orchestrator = _build(backend, gate=gate)
    summary = asyncio.run(orchestrator.run())

    assert summary.succeeded
    assert [request.gate for request in gate.requests] == ["super_review"]
    assert "no test for the comment" in gate.requests[0].summary
    assert orchestrator.machine.context.execution_cycles == 2

    planner_prompts = backend.prompts("planner")
    assert len(planner_prompts) == 2
    assert "add a test too" in planner_prompts[1]

    bean_requests = [request for name, request in backend.calls if name == "bean_counter"]
    assert len(bean_requests) == 3
    assert "Revised plan:\n1. edit README\n2. add a test" in bean_requests[2].prompt
    assert bean_requests[2].resume is True
    assert bean_requests[2].session_id == bean_requests[0].session_id


def test_auto_merge_applies_only_to_a_clean_final_review() -> None:
    def machine() -> TaskStateMachine:
        return TaskStateMachine(
            TaskContext(
                task_id="task-1",
                original_description="Add a comment to README",
                interactive=False,
                auto_merge=True,
            )
        )

    clean = asyncio.run(_build(ScriptedBackend(), machine=machine()).run())
    assert clean.succeeded
    assert clean.merge == "auto"

    backend = ScriptedBackend(
        verdicts={Role.SUPER_REVIEW: [{"decision": "needs_human", "feedback": "odd wording"}]},
    )
    gate = RecordingGate([Intent.approve()])
    reviewed = asyncio.run(_build(backend, gate=gate, machine=machine()).run())
    assert reviewed.succeeded
    assert reviewed.merge == "manual"


def test_unclear_next_chunk_asks_the_human_and_retries() -> None:
    backend = ScriptedBackend(
        verdicts={
            Role.BEAN_COUNTER: [
                {"decision": "maybe"},
                HAPPY_VERDICTS[Role.BEAN_COUNTER][0],
                {"decision": "task_complete"},
            ]
        },
    )
    gate = RecordingGate([Intent.retry()])

    summary = asyncio.run(_build(backend, gate=gate).run())

    assert summary.succeeded
    assert summary.chunks_completed == 1
    assert gate.requests[0].gate == "bean_counter"
    assert gate.requests[0].choices == (IntentKind.RETRY, IntentKind.ABORT)
    assert backend.agent_roles.count("bean_counter") == 3


def test_unclear_next_chunk_can_be_aborted() -> None:
    backend = ScriptedBackend(verdicts={Role.BEAN_COUNTER: [{"decision": "maybe"}]})
    gate = RecordingGate([Intent.abort()])

    summary = asyncio.run(_build(backend, gate=gate).run())

    assert summary.state == TaskState.ABANDONED.value
    assert "coder" not in backend.agent_roles


def test_coder_and_reviewer_output_is_summarized() -> None:
    backend = ScriptedBackend()
    orchestrator = _build(backend)

    asyncio.run(orchestrator.run())

    execution = orchestrator.machine.execution
    assert execution is not None
    assert execution.context.agent_summary["coder"] == "coder summary"
    assert execution.context.agent_summary["reviewer"] == "reviewer summary"
    summarized = [name for name, _ in backend.calls if name.startswith("summarize:")]
    assert summarized == ["summarize:coder", "summarize:reviewer"]
    assert orchestrator.machine.context.agent_stats["summarizer"].calls == 2


def test_summaries_can_be_turned_off() -> None:
    config = ConductorConfig.default()
    config.workflow.summarize_outputs = False
    backend = ScriptedBackend()
    orchestrator = _build(backend, config=config)

    asyncio.run(orchestrator.run())

    execution = orchestrator.machine.execution
    assert execution is not None
    assert execution.context.agent_summary["coder"] == "README.md edited"
    assert execution.context.agent_summary["reviewer"] == "looks right"
    assert not any(name.startswith("summarize:") for name, _ in backend.calls)
