from __future__ import annotations

import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    TokenUsage,
    run_process,
)
from conductor.errors import InvalidResponseError


class CodexBackend(AgentBackend):
    """Runs `codex exec --json` and folds its JSON-lines events into one reply."""

    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if request.system_prompt:
            command.extend(
                ["-c", f"instructions={json.dumps(request.system_prompt, ensure_ascii=False)}"]
            )
        if request.model and request.model.strip():
            command.extend(["-m", request.model.strip()])
        if request.session_id and request.resume:
            command.extend(["resume", request.session_id])
        command.append("-")
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") in {"agent_message", "assistant_message"}:
            text = item.get("text")
            if isinstance(text, str):
                return text
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for entry in content:
                if isinstance(entry, dict):
                    text = entry.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""

    def parse_output(self, raw: str) -> AgentReply:
        parts: list[str] = []
        session_id: str | None = None
        usage = TokenUsage()
        for raw_line in raw.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                continue
            if not isinstance(event, dict):
                continue
            for key in ("thread_id", "session_id"):
                value = event.get(key)
                if isinstance(value, str) and value:
                    session_id = value
            if isinstance(event.get("usage"), dict):
                usage = TokenUsage.from_payload(event["usage"])
            content = self._extract_content(event)
            if content:
                parts.append(content)

        if not parts:
            raise InvalidResponseError("Codex backend produced no message content.")
        return AgentReply(
            text="\n".join(parts).strip(),
            session_id=session_id,
            token_usage=usage,
            backend="codex",
        )

    async def query(self, request: AgentRequest) -> AgentReply:
        command = self.build_command(request)
        self._emit({"event": "codex_cli_start", "command": command[:3], "model": request.model})
        started = time.monotonic()
        result = await run_process(
            command,
            backend=self.name,
            stdin_text=request.prompt,
            cwd=self.working_directory,
        )
        reply = self.parse_output(result.stdout)
        reply.duration_ms = int((time.monotonic() - started) * 1000)
        self._emit({"event": "codex_cli_exit", "exit_code": result.exit_code})
        return reply
