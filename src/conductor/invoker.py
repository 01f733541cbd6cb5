from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from conductor.backends.base import AgentBackend, AgentReply, AgentRequest
from conductor.errors import InvalidResponseError

logger = logging.getLogger(__name__)

ReplyHook = Callable[[str, AgentReply], None]
SessionHook = Callable[[str, str | None], None]


@dataclass(slots=True)
class AgentSession:
    """Conversation handle for a role whose context must survive between calls."""

    session_id: str = field(default_factory=lambda: str(uuid4()))
    initialized: bool = False

    def mark_initialized(self, session_id: str | None = None) -> None:
        if session_id and session_id != self.session_id:
            self.session_id = session_id
        self.initialized = True

    def to_dict(self) -> dict[str, object]:
        return {"session_id": self.session_id, "initialized": self.initialized}

    @classmethod
    def from_dict(cls, payload: dict) -> AgentSession:
        return cls(
            session_id=str(payload["session_id"]),
            initialized=bool(payload.get("initialized", False)),
        )


class AgentInvoker:
    """Performs one request/response cycle with the reasoning engine."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        on_reply: ReplyHook | None = None,
        on_session: SessionHook | None = None,
    ) -> None:
        self.backend = backend
        self.on_reply = on_reply
        # When set, the session's owner records initialization instead of the invoker.
        self.on_session = on_session

    async def invoke(
        self,
        role: str,
        prompt: str,
        *,
        system_prompt: str = "",
        session: AgentSession | None = None,
        allowed_tools: list[str] | None = None,
        model: str | None = None,
        permission_mode: str | None = None,
    ) -> AgentReply:
        request = AgentRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            model=model,
            allowed_tools=allowed_tools,
            permission_mode=permission_mode,
        )
        if session is not None:
            request.session_id = session.session_id
            request.resume = session.initialized

        logger.debug(
            "Invoking %s (session=%s, resume=%s)", role, request.session_id, request.resume
        )
        reply = await self.backend.query(request)
        if not isinstance(reply.text, str):
            raise InvalidResponseError(f"{role} reply is not text.")

        if session is not None:
            if self.on_session is not None:
                self.on_session(role, reply.session_id)
            else:
                session.mark_initialized(reply.session_id)

        logger.info(
            "%s replied (backend=%s, cost=$%.4f, %d ms)",
            role,
            reply.backend,
            reply.cost_usd,
            reply.duration_ms,
        )
        if self.on_reply is not None:
            self.on_reply(role, reply)
        return reply
