from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

import click

from conductor import __version__
from conductor.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from conductor.checkpoints import CheckpointStore, restore_task_state_machine
from conductor.config import BackendName, ConductorConfig, load_config, save_config
from conductor.errors import CheckpointCorrupt, ConductorError
from conductor.intents import AutoApproveGate, HumanGate, Intent, IntentQueue, PromptGate
from conductor.invoker import AgentInvoker
from conductor.orchestrator import Orchestrator, RunSummary
from conductor.task import TaskContext, TaskStateMachine

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig

    @property
    def checkpoints(self) -> CheckpointStore:
        return CheckpointStore(self.repo_root / self.config.checkpoints.directory)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug("backend event: %s", event)


def _build_backend(config: ConductorConfig, repo_root: Path) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _build_gate(interactive: bool) -> HumanGate:
    return PromptGate() if interactive else AutoApproveGate()


async def _drive(orchestrator: Orchestrator, intents: IntentQueue) -> RunSummary:
    """Run the driver loop; Ctrl-C becomes an abort intent applied after the current call."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, intents.put, Intent.abort())
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT cannot be routed to the intent queue here")
        return await orchestrator.run()
    try:
        return await orchestrator.run()
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _execute(runtime: Runtime, machine: TaskStateMachine, inject: str | None) -> RunSummary:
    invoker = AgentInvoker(_build_backend(runtime.config, runtime.repo_root))
    intents = IntentQueue()
    if inject:
        intents.put(Intent.inject(inject))
    orchestrator = Orchestrator.from_config(
        machine,
        invoker,
        runtime.config,
        gate=_build_gate(machine.context.interactive),
        checkpoints=runtime.checkpoints if runtime.config.checkpoints.enabled else None,
        intents=intents,
    )
    try:
        return asyncio.run(_drive(orchestrator, intents))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc


def _report(ctx: click.Context, summary: RunSummary) -> None:
    click.echo(f"Task: {summary.task_id}")
    click.echo(f"State: {summary.state}")
    click.echo(f"Chunks: {summary.chunks_completed}")
    click.echo(f"Iterations: {summary.iterations}")
    click.echo(f"Cost: ${summary.cost_usd:.4f}")
    if summary.merge:
        click.echo(f"Merge: {summary.merge}")
    if summary.last_error:
        click.echo(f"Error: {summary.last_error}")
    if not summary.succeeded:
        ctx.exit(1)


@click.group()
@click.version_option(__version__, prog_name="conductor")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, config_value: str, log_level: str | None) -> None:
    """Conductor CLI."""
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    level = (log_level or config.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    ctx.obj = Runtime(repo_root=repo_root, config_path=config_path, config=config)


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.pass_obj
def init_command(runtime: Runtime, backend: str | None) -> None:
    if backend:
        runtime.config.backend.primary = backend  # type: ignore[assignment]
    save_config(runtime.config_path, runtime.config)
    (runtime.repo_root / runtime.config.checkpoints.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Conductor in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Backend: {runtime.config.backend.primary}")


@cli.command("run")
@click.argument("description")
@click.option("--task-id", default=None, help="Defaults to a generated id.")
@click.option("--interactive/--non-interactive", default=None)
@click.option("--auto-merge", is_flag=True, default=False)
@click.option("--inject", default=None, help="Extra instruction for the next agent call.")
@click.pass_context
def run_command(
    ctx: click.Context,
    description: str,
    task_id: str | None,
    interactive: bool | None,
    auto_merge: bool,
    inject: str | None,
) -> None:
    runtime: Runtime = ctx.obj
    workflow = runtime.config.workflow
    if not description.strip():
        raise click.ClickException("Task description must not be empty.")
    task_id = task_id or f"task-{uuid4().hex[:8]}"
    if runtime.checkpoints.task_dir(task_id).exists():
        raise click.ClickException(f"Task {task_id} already exists; use `conductor resume`.")

    machine = TaskStateMachine(
        TaskContext(
            task_id=task_id,
            original_description=description.strip(),
            working_directory=str(runtime.repo_root),
            interactive=workflow.interactive if interactive is None else interactive,
            auto_merge=auto_merge or workflow.auto_merge,
            max_simplifications=workflow.max_simplifications,
            max_plan_attempts=workflow.max_plan_attempts,
            max_code_attempts=workflow.max_code_attempts,
        )
    )
    click.echo(f"Starting {task_id}")
    _report(ctx, _execute(runtime, machine, inject))


@cli.command("resume")
@click.argument("task_id")
@click.option("--checkpoint", "sequence", type=int, default=None)
@click.option("--inject", default=None, help="Extra instruction for the next agent call.")
@click.option("--interactive/--non-interactive", default=None)
@click.pass_context
def resume_command(
    ctx: click.Context,
    task_id: str,
    sequence: int | None,
    inject: str | None,
    interactive: bool | None,
) -> None:
    runtime: Runtime = ctx.obj
    store = runtime.checkpoints
    try:
        if sequence is not None:
            checkpoint = store.load_checkpoint(task_id, sequence)
            if not checkpoint.recoverable:
                raise click.ClickException(f"Checkpoint #{sequence} is not recoverable.")
        else:
            result = store.load_latest_recoverable(task_id)
            for problem in result.problems:
                click.echo(f"Skipped checkpoint #{problem.sequence:06d}: {problem.error}", err=True)
            if result.checkpoint is None:
                raise click.ClickException(f"No recoverable checkpoint for {task_id}.")
            checkpoint = result.checkpoint
    except (CheckpointCorrupt, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc

    machine = restore_task_state_machine(checkpoint)
    if interactive is not None:
        machine.context.interactive = interactive
    click.echo(f"Resuming {task_id} from checkpoint #{checkpoint.sequence} ({machine.state})")
    _report(ctx, _execute(runtime, machine, inject))


@cli.command("checkpoints")
@click.argument("task_id")
@click.pass_obj
def checkpoints_command(runtime: Runtime, task_id: str) -> None:
    entries = runtime.checkpoints.list_checkpoints(task_id)
    if not entries:
        click.echo("No checkpoints found.")
        return
    for entry in entries:
        if entry.is_corrupt:
            click.echo(f"#{entry.sequence:06d} CORRUPT {entry.error}")
            continue
        flag = "recoverable" if entry.recoverable else "final"
        click.echo(
            f"#{entry.sequence:06d} {entry.timestamp} {entry.trigger:<16} "
            f"{entry.task_state:<22} {flag}"
        )


@cli.command("status")
@click.argument("task_id", required=False)
@click.pass_obj
def status_command(runtime: Runtime, task_id: str | None) -> None:
    store = runtime.checkpoints
    task_ids = [task_id] if task_id else store.list_tasks()
    if not task_ids:
        click.echo("No tasks found.")
        return
    for current in task_ids:
        usable = [entry for entry in store.list_checkpoints(current) if not entry.is_corrupt]
        if not usable:
            click.echo(f"{current}: no readable checkpoints")
            continue
        machine = restore_task_state_machine(store.load_checkpoint(current, usable[-1].sequence))
        if task_id:
            click.echo(json.dumps(machine.projection(), ensure_ascii=False, indent=2))
        else:
            click.echo(machine.status())


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.pass_obj
def backend_command(runtime: Runtime, backend_name: str) -> None:
    runtime.config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(runtime.config_path, runtime.config)
    click.echo(f"Primary backend set to {backend_name}")
