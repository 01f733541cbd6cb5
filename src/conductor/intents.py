"""UI boundary: intents in, read-only projections out.

A UI never touches machine context. It enqueues ``Intent`` objects which the
driver loop drains at safe points, and it answers human decisions through a
``HumanGate``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

import click

logger = logging.getLogger(__name__)

InjectionHandler = Callable[[str], None]


class IntentKind(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    RETRY = "retry"
    ABANDON = "abandon"
    INJECT = "inject"
    ABORT = "abort"


DECISION_KINDS = frozenset(
    {IntentKind.APPROVE, IntentKind.REJECT, IntentKind.RETRY, IntentKind.ABANDON, IntentKind.ABORT}
)


@dataclass(slots=True, frozen=True)
class Intent:
    kind: IntentKind
    text: str | None = None

    @classmethod
    def approve(cls) -> Intent:
        return cls(IntentKind.APPROVE)

    @classmethod
    def reject(cls, feedback: str) -> Intent:
        return cls(IntentKind.REJECT, feedback)

    @classmethod
    def retry(cls, feedback: str | None = None) -> Intent:
        return cls(IntentKind.RETRY, feedback)

    @classmethod
    def abandon(cls) -> Intent:
        return cls(IntentKind.ABANDON)

    @classmethod
    def inject(cls, text: str) -> Intent:
        return cls(IntentKind.INJECT, text)

    @classmethod
    def abort(cls) -> Intent:
        return cls(IntentKind.ABORT)


@dataclass(slots=True)
class DecisionRequest:
    """What a human is asked, with the context that triggered the question."""

    gate: str
    summary: str
    choices: tuple[IntentKind, ...]
    feedback: str | None = None
    attempts: int | None = None
    raw_output: str | None = None
    details: dict[str, str] = field(default_factory=dict)


class IntentQueue:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Intent] = asyncio.Queue()

    def put(self, intent: Intent) -> None:
        self._queue.put_nowait(intent)

    def drain(self) -> list[Intent]:
        intents: list[Intent] = []
        while True:
            try:
                intents.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return intents

    async def get(self) -> Intent:
        return await self._queue.get()


class HumanGate(ABC):
    @abstractmethod
    async def decide(self, request: DecisionRequest, on_injection: InjectionHandler) -> Intent:
        """Return one of ``request.choices``."""


class AutoApproveGate(HumanGate):
    """Answers every decision point the way a non-interactive run must."""

    async def decide(self, request: DecisionRequest, on_injection: InjectionHandler) -> Intent:
        _ = on_injection
        if IntentKind.APPROVE in request.choices:
            logger.info("Auto-approving %s decision", request.gate)
            return Intent.approve()
        # Only transport failures lack an approve choice; give up rather than loop.
        logger.warning("No approve choice for %s; aborting", request.gate)
        return Intent.abort()


class QueueGate(HumanGate):
    """Waits for a UI to enqueue a decision; injections received meanwhile are forwarded."""

    def __init__(self, queue: IntentQueue) -> None:
        self.queue = queue

    async def decide(self, request: DecisionRequest, on_injection: InjectionHandler) -> Intent:
        logger.info("Waiting for %s decision: %s", request.gate, request.summary)
        while True:
            intent = await self.queue.get()
            if intent.kind is IntentKind.INJECT:
                if intent.text:
                    on_injection(intent.text)
                continue
            if intent.kind in request.choices:
                return intent
            if intent.kind is IntentKind.REJECT and IntentKind.RETRY in request.choices:
                return Intent.retry(intent.text)
            if intent.kind is IntentKind.RETRY and IntentKind.REJECT in request.choices:
                return Intent(IntentKind.REJECT, intent.text)
            if intent.kind is IntentKind.ABORT and IntentKind.ABANDON in request.choices:
                return Intent.abandon()
            logger.warning("Ignoring %s intent at %s decision", intent.kind, request.gate)


class PromptGate(HumanGate):
    """Asks on the terminal through click prompts."""

    FEEDBACK_KINDS = frozenset({IntentKind.REJECT, IntentKind.RETRY})

    async def decide(self, request: DecisionRequest, on_injection: InjectionHandler) -> Intent:
        _ = on_injection
        return await asyncio.to_thread(self._ask, request)

    def _ask(self, request: DecisionRequest) -> Intent:
        click.echo("")
        click.secho(f"== {request.gate} ==", bold=True)
        click.echo(request.summary)
        if request.feedback:
            click.echo(f"Feedback: {request.feedback}")
        if request.attempts is not None:
            click.echo(f"Attempts: {request.attempts}")
        if request.raw_output:
            click.echo("Last agent output:")
            click.echo(request.raw_output[:4000])
        choice = click.prompt(
            "Decision",
            type=click.Choice([kind.value for kind in request.choices]),
            default=request.choices[0].value,
        )
        kind = IntentKind(choice)
        if kind in self.FEEDBACK_KINDS:
            feedback = click.prompt("Feedback", default="", show_default=False)
            return Intent(kind, feedback.strip() or None)
        return Intent(kind)
