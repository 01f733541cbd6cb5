from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from conductor.errors import TransportError, TransportProcessError


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: object) -> TokenUsage:
        if not isinstance(payload, dict):
            return cls()

        def _int(key: str) -> int:
            value = payload.get(key, 0)
            return value if isinstance(value, int) else 0

        return cls(
            input_tokens=_int("input_tokens"),
            output_tokens=_int("output_tokens"),
            cache_creation_tokens=_int("cache_creation_input_tokens"),
            cache_read_tokens=_int("cache_read_input_tokens"),
        )


@dataclass(slots=True)
class AgentRequest:
    prompt: str
    system_prompt: str = ""
    model: str | None = None
    session_id: str | None = None
    resume: bool = False
    allowed_tools: list[str] | None = None
    permission_mode: str | None = None


@dataclass(slots=True)
class AgentReply:
    text: str
    session_id: str | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    backend: str | None = None


@dataclass(slots=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str


async def run_process(
    command: list[str],
    *,
    backend: str,
    stdin_text: str | None = None,
    cwd: Path | None = None,
) -> ProcessResult:
    """Run a backend CLI to completion and raise TransportError on a non-zero exit."""
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.PIPE if stdin_text is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise TransportProcessError(
            f"{backend} binary not found: {command[0]}",
            backend=backend,
            retriable=False,
        ) from exc

    stdin_bytes = stdin_text.encode("utf-8") if stdin_text is not None else None
    try:
        stdout, stderr = await process.communicate(stdin_bytes)
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    result = ProcessResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )
    if result.exit_code != 0:
        raise TransportError(
            f"{backend} backend failed with exit code {result.exit_code}: {result.stderr}",
            backend=backend,
            exit_code=result.exit_code,
            retriable=True,
        )
    return result


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def query(self, request: AgentRequest) -> AgentReply:
        """Send one request to the reasoning engine and return its reply."""
