import asyncio

import pytest

from conductor.backends.base import AgentBackend, AgentReply, AgentRequest
from conductor.errors import TransportError
from conductor.invoker import AgentInvoker
from conductor.summarizer import SUMMARY_PROMPTS, Summarizer


class FakeBackend(AgentBackend):
    def __init__(self, text: str = "Edited README.md.", fail: bool = False) -> None:
        self.text = text
        self.fail = fail
        self.requests: list[AgentRequest] = []

    async def query(self, request: AgentRequest) -> AgentReply:
        self.requests.append(request)
        if self.fail:
            raise TransportError("engine offline", backend="fake", retriable=False)
        return AgentReply(text=self.text, backend="fake")


def test_summary_is_a_stateless_read_only_call() -> None:
    backend = FakeBackend(text="  Edited README.md.\nNothing left open.  ")
    summarizer = Summarizer(AgentInvoker(backend), model="haiku", max_chars=20)

    summary = asyncio.run(summarizer.summarize("coder", "x" * 50))

    assert summary == "Edited README.md.\nNothing left open."
    request = backend.requests[0]
    assert request.system_prompt == SUMMARY_PROMPTS["coder"]
    assert request.model == "haiku"
    assert request.allowed_tools == []
    assert request.session_id is None
    assert request.prompt.endswith("x" * 20 + "\n[truncated]")


def test_engine_failure_degrades_to_a_fixed_line() -> None:
    summarizer = Summarizer(AgentInvoker(FakeBackend(fail=True)))

    summary = asyncio.run(summarizer.summarize("reviewer", "Looks fine."))

    assert summary.startswith("Reviewer provided feedback (summary error:")
    assert "engine offline" in summary


def test_empty_output_is_not_sent() -> None:
    backend = FakeBackend()
    summarizer = Summarizer(AgentInvoker(backend))

    assert asyncio.run(summarizer.summarize("coder", "  \n")) == (
        "Coder completed work (summary unavailable)"
    )
    assert backend.requests == []


def test_empty_summary_falls_back() -> None:
    summarizer = Summarizer(AgentInvoker(FakeBackend(text="   ")))

    summary = asyncio.run(summarizer.summarize("reviewer", "Needs work."))

    assert summary == "Reviewer provided feedback (summary unavailable)"


def test_unknown_role_is_refused() -> None:
    summarizer = Summarizer(AgentInvoker(FakeBackend()))

    with pytest.raises(ValueError, match="planner"):
        asyncio.run(summarizer.summarize("planner", "A plan."))
