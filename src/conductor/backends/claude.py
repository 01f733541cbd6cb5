from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    TokenUsage,
    run_process,
)
from conductor.errors import InvalidResponseError, TransportError


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "-p", "--output-format", "json"]
        if request.permission_mode:
            command.extend(["--permission-mode", request.permission_mode])
        if request.model:
            command.extend(["--model", request.model])
        if request.session_id:
            flag = "--resume" if request.resume else "--session-id"
            command.extend([flag, request.session_id])
        if request.allowed_tools:
            command.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.system_prompt and not request.resume:
            command.extend(["--append-system-prompt", request.system_prompt])
        return command

    @staticmethod
    def parse_output(raw: str) -> AgentReply:
        stripped = raw.strip()
        try:
            payload: Any = json.loads(stripped)
        except json.JSONDecodeError as exc:
            if stripped:
                # Older CLI builds print the bare text on -p.
                return AgentReply(text=stripped, backend="claude")
            raise InvalidResponseError("Claude backend returned an empty response.") from exc

        if not isinstance(payload, dict):
            raise InvalidResponseError("Claude backend returned a non-object JSON payload.")
        if payload.get("is_error"):
            detail = payload.get("result") or payload.get("subtype")
            raise TransportError(
                f"Claude backend reported an error: {detail}",
                backend="claude",
                retriable=True,
            )
        result = payload.get("result")
        if not isinstance(result, str):
            raise InvalidResponseError("Claude backend response has no text result.")

        cost = payload.get("total_cost_usd", 0.0)
        duration = payload.get("duration_ms", 0)
        session_id = payload.get("session_id")
        return AgentReply(
            text=result,
            session_id=session_id if isinstance(session_id, str) else None,
            cost_usd=float(cost) if isinstance(cost, (int, float)) else 0.0,
            duration_ms=int(duration) if isinstance(duration, (int, float)) else 0,
            token_usage=TokenUsage.from_payload(payload.get("usage")),
            backend="claude",
        )

    async def query(self, request: AgentRequest) -> AgentReply:
        result = await run_process(
            self.build_command(request),
            backend=self.name,
            stdin_text=request.prompt,
            cwd=self.working_directory,
        )
        reply = self.parse_output(result.stdout)
        if reply.session_id is None:
            reply.session_id = request.session_id
        return reply
