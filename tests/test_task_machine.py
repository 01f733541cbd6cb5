import pytest

from conductor.errors import ProtocolViolation
from conductor.execution import ExecutionEvent, ExecutionState, ExecutionStateMachine
from conductor.task import (
    ALLOWED_EVENTS,
    TaskContext,
    TaskEvent,
    TaskState,
    TaskStateMachine,
    transition_task,
)


def _machine(interactive: bool = True, **overrides: object) -> TaskStateMachine:
    context = TaskContext(
        task_id="task-1",
        original_description="add a comment to README",
        interactive=interactive,
    )
    for key, value in overrides.items():
        setattr(context, key, value)
    return TaskStateMachine(context)


def _to_curmudgeoning(machine: TaskStateMachine) -> None:
    machine.fire(TaskEvent.START_TASK)
    if machine.state is TaskState.REFINING:
        machine.fire(TaskEvent.REFINEMENT_CANCELLED)
    machine.fire(TaskEvent.PLAN_CREATED, {"plan": "1. edit README"})


def test_events_outside_allow_list_raise_and_leave_context_untouched() -> None:
    for state in TaskState:
        context = TaskContext(task_id="t", original_description="d")
        before = context.to_dict()
        for event in TaskEvent:
            machine = TaskStateMachine(context, state=state)
            if machine.can_fire(event):
                continue
            with pytest.raises(ProtocolViolation):
                transition_task(state, event, context, {"plan": "p", "fatal": True})
            assert context.to_dict() == before


def test_every_non_terminal_state_accepts_error() -> None:
    for state, events in ALLOWED_EVENTS.items():
        if state in (TaskState.INIT, TaskState.COMPLETE, TaskState.ABANDONED):
            continue
        assert TaskEvent.ERROR in events


def test_terminal_states_accept_nothing() -> None:
    for state in (TaskState.COMPLETE, TaskState.ABANDONED):
        machine = TaskStateMachine(TaskContext(task_id="t", original_description="d"), state)
        for event in TaskEvent:
            with pytest.raises(ProtocolViolation):
                machine.fire(event)
        assert machine.state is state


def test_interactive_start_refines_first_and_non_interactive_skips_it() -> None:
    interactive = _machine()
    interactive.fire(TaskEvent.START_TASK)
    assert interactive.state is TaskState.REFINING

    batch = _machine(interactive=False)
    batch.fire(TaskEvent.START_TASK)
    assert batch.state is TaskState.PLANNING


def test_refinement_error_recovers_to_planning_with_original_description() -> None:
    machine = _machine()
    machine.fire(TaskEvent.START_TASK)
    machine.fire(TaskEvent.ERROR, {"reason": "refiner crashed"})

    assert machine.state is TaskState.PLANNING
    assert machine.context.task_to_use == "add a comment to README"


def test_fatal_error_abandons_from_any_active_state() -> None:
    machine = _machine()
    machine.fire(TaskEvent.START_TASK)
    machine.fire(TaskEvent.ERROR, {"reason": "aborted by user", "fatal": True})

    assert machine.state is TaskState.ABANDONED
    assert machine.context.last_error == "aborted by user"


def test_refinement_complete_uses_refined_text() -> None:
    machine = _machine()
    machine.fire(TaskEvent.START_TASK)
    machine.fire(TaskEvent.REFINEMENT_COMPLETE, {"text": "  Add a one-line comment.  "})

    assert machine.state is TaskState.PLANNING
    assert machine.context.task_to_use == "Add a one-line comment."


def test_simplification_cap_forces_plan_approval() -> None:
    machine = _machine()
    _to_curmudgeoning(machine)

    for expected in range(1, 5):
        assert machine.state is TaskState.CURMUDGEONING
        machine.fire(TaskEvent.CURMUDGEON_SIMPLIFY, {"feedback": "too much"})
        assert machine.state is TaskState.PLANNING
        assert machine.context.simplification_count == expected
        machine.fire(TaskEvent.PLAN_CREATED, {"plan": f"plan v{expected + 1}"})

    assert machine.context.simplification_count == 4
    assert machine.state is TaskState.CURMUDGEONING
    assert machine.awaiting_human == "plan"
    with pytest.raises(ProtocolViolation):
        machine.fire(TaskEvent.CURMUDGEON_SIMPLIFY, {"feedback": "still too much"})
    assert machine.context.simplification_count == 4


def test_simplification_count_never_exceeds_limit() -> None:
    machine = _machine(max_simplifications=1)
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_SIMPLIFY, {"feedback": "simpler"})
    machine.fire(TaskEvent.PLAN_CREATED, {"plan": "plan v2"})

    assert machine.awaiting_human == "plan"
    assert machine.context.simplification_count == 1


def test_human_retry_skips_critic_on_next_plan() -> None:
    machine = _machine()
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_REJECTED, {"feedback": "wrong file"})
    assert machine.awaiting_human == "plan"

    machine.fire(TaskEvent.HUMAN_RETRY, {"feedback": "edit docs/README.md instead"})
    assert machine.state is TaskState.PLANNING
    assert machine.context.retry_feedback == "edit docs/README.md instead"
    assert machine.context.curmudgeon_feedback is None
    assert machine.context.user_has_reviewed_plan is True

    machine.fire(TaskEvent.PLAN_CREATED, {"plan": "1. edit docs/README.md"})
    assert machine.state is TaskState.CURMUDGEONING
    assert machine.awaiting_human == "plan"
    assert machine.context.retry_feedback is None


def test_human_events_rejected_when_nothing_is_pending() -> None:
    machine = _machine()
    _to_curmudgeoning(machine)

    with pytest.raises(ProtocolViolation):
        machine.fire(TaskEvent.HUMAN_APPROVED)
    assert machine.state is TaskState.CURMUDGEONING


def test_plan_approval_starts_a_fresh_execution_cycle() -> None:
    machine = _machine()
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_APPROVED)
    machine.fire(TaskEvent.HUMAN_APPROVED)

    assert machine.state is TaskState.EXECUTING
    assert machine.execution is not None
    assert machine.execution.state is ExecutionState.BEAN_COUNTING
    assert machine.context.execution_cycles == 1


def test_non_interactive_critic_approval_goes_straight_to_execution() -> None:
    machine = _machine(interactive=False)
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_APPROVED)

    assert machine.state is TaskState.EXECUTING
    assert machine.awaiting_human is None


def test_critic_rejection_waits_for_a_human_when_interactive() -> None:
    machine = _machine()
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_REJECTED, {"feedback": "wrong module entirely"})

    assert machine.state is TaskState.CURMUDGEONING
    assert machine.awaiting_human == "plan"
    assert machine.context.curmudgeon_feedback == "wrong module entirely"
    assert machine.execution is None


def test_critic_rejection_abandons_a_non_interactive_task() -> None:
    machine = _machine(interactive=False)
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_REJECTED, {"feedback": "wrong module entirely"})

    assert machine.state is TaskState.ABANDONED
    assert machine.execution is None
    assert machine.context.last_error == "wrong module entirely"

    unexplained = _machine(interactive=False)
    _to_curmudgeoning(unexplained)
    unexplained.fire(TaskEvent.CURMUDGEON_REJECTED)
    assert unexplained.context.last_error == "curmudgeon rejected the plan"


def test_execution_attach_and_detach() -> None:
    machine = _machine()
    first = ExecutionStateMachine()
    machine.attach_execution(first)
    assert machine.execution is first
    assert machine.context.execution_cycles == 1

    assert machine.detach_execution() is first
    assert machine.execution is None
    assert machine.detach_execution() is None

    machine.attach_execution(ExecutionStateMachine())
    assert machine.context.execution_cycles == 2


def test_mark_session_initialized_adopts_engine_id() -> None:
    machine = _machine()
    local_id = machine.session_for("bean_counter").session_id

    machine.mark_session_initialized("bean_counter")
    assert machine.session_for("bean_counter").initialized is True
    assert machine.session_for("bean_counter").session_id == local_id

    machine.mark_session_initialized("coder", "engine-7")
    assert machine.session_for("coder").session_id == "engine-7"
    assert machine.session_for("coder").initialized is True


def test_execution_complete_requires_completed_execution() -> None:
    machine = _machine(interactive=False)
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_APPROVED)

    with pytest.raises(ProtocolViolation):
        machine.fire(TaskEvent.EXECUTION_COMPLETE)
    assert machine.state is TaskState.EXECUTING

    assert machine.execution is not None
    machine.execution.fire(ExecutionEvent.TASK_COMPLETE_SIGNAL)
    machine.fire(TaskEvent.EXECUTION_COMPLETE)
    assert machine.state is TaskState.SUPER_REVIEWING


def test_super_review_retry_replans_and_drops_execution() -> None:
    machine = _machine()
    machine.state = TaskState.SUPER_REVIEWING
    machine.context.plan_md = "1. edit README"
    machine.context.curmudgeon_feedback = "old critique"

    machine.fire(
        TaskEvent.SUPER_REVIEW_NEEDS_HUMAN,
        {"summary": "tests missing", "issues": ["no test for README"]},
    )
    assert machine.state is TaskState.SUPER_REVIEWING
    assert machine.awaiting_human == "super_review"
    assert machine.context.super_review is not None
    assert machine.context.super_review.issues == ["no test for README"]

    machine.fire(TaskEvent.HUMAN_RETRY, {"feedback": "add a test"})
    assert machine.state is TaskState.PLANNING
    assert machine.execution is None
    assert machine.context.retry_feedback == "add a test"
    assert machine.context.curmudgeon_feedback is None


def test_injection_is_consumed_exactly_once() -> None:
    machine = _machine()
    machine.inject("prefer tabs")

    assert machine.consume_injection() == "prefer tabs"
    assert machine.consume_injection() is None


def test_live_activity_is_cleared_on_read() -> None:
    machine = _machine()
    machine.begin_agent_call("planner", "Planning")
    assert machine.context.in_flight == "planner"
    machine.end_agent_call()

    assert machine.context.in_flight is None
    assert machine.consume_live_activity() == "Planning"
    assert machine.consume_live_activity() is None


def test_projection_is_a_copy() -> None:
    machine = _machine()
    _to_curmudgeoning(machine)
    view = machine.projection()
    view["plan"] = "tampered"

    assert machine.context.plan_md == "1. edit README"
    assert view["state"] == TaskState.CURMUDGEONING.value


def test_snapshot_roundtrip_preserves_state_and_context() -> None:
    machine = _machine(interactive=False)
    _to_curmudgeoning(machine)
    machine.fire(TaskEvent.CURMUDGEON_APPROVED, {"feedback": "fine"})
    machine.mark_session_initialized("bean_counter")

    restored = TaskStateMachine.from_snapshot(machine.snapshot())

    assert restored.state is TaskState.EXECUTING
    assert restored.context == machine.context
    assert restored.execution is not None
    assert restored.execution.snapshot() == machine.execution.snapshot()  # type: ignore[union-attr]
