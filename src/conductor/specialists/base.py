from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from conductor.invoker import AgentInvoker, AgentSession

READ_ONLY_TOOLS = ["Read", "Grep", "Glob", "LS"]
EDIT_TOOLS = ["Read", "Grep", "Glob", "LS", "Edit", "MultiEdit", "Write", "Bash"]


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software specialist."
    allowed_tools: list[str] | None = READ_ONLY_TOOLS
    permission_mode: str | None = "plan"

    def __init__(self, invoker: AgentInvoker, *, model: str | None = None) -> None:
        self.invoker = invoker
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("conductor.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    @staticmethod
    def with_injection(instruction: str, injection: str | None) -> str:
        if not injection:
            return instruction
        return f"{instruction}\n\nAdditional instruction from the user:\n{injection}"

    async def run(
        self,
        instruction: str,
        *,
        session: AgentSession | None = None,
        injection: str | None = None,
        allowed_tools: list[str] | None = None,
        permission_mode: str | None = None,
    ) -> SpecialistResponse:
        reply = await self.invoker.invoke(
            self.role,
            self.with_injection(instruction, injection),
            system_prompt=self.system_prompt,
            session=session,
            allowed_tools=allowed_tools if allowed_tools is not None else self.allowed_tools,
            model=self.model,
            permission_mode=permission_mode or self.permission_mode,
        )
        return SpecialistResponse(
            role=self.role,
            content=reply.text.strip(),
            metadata={
                "instruction": instruction,
                "injected": bool(injection),
                "session_id": reply.session_id,
                "backend": reply.backend,
                "cost_usd": reply.cost_usd,
            },
        )
