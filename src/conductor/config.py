from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    planner_model: str = "sonnet"
    coder_model: str = "sonnet"
    reviewer_model: str = "sonnet"
    interpreter_model: str = "sonnet"
    interpreter_max_chars: int = 12000
    summarizer_model: str = "haiku"


@dataclass(slots=True)
class WorkflowConfig:
    max_plan_attempts: int = 3
    max_code_attempts: int = 3
    max_simplifications: int = 4
    max_iterations: int = 200
    interactive: bool = True
    auto_merge: bool = False
    summarize_outputs: bool = True


@dataclass(slots=True)
class CheckpointConfig:
    enabled: bool = True
    directory: str = ".conductor"


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class ConductorConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            checkpoints=CheckpointConfig(**data.get("checkpoints", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "planner_model": self.agents.planner_model,
                "coder_model": self.agents.coder_model,
                "reviewer_model": self.agents.reviewer_model,
                "interpreter_model": self.agents.interpreter_model,
                "interpreter_max_chars": self.agents.interpreter_max_chars,
                "summarizer_model": self.agents.summarizer_model,
            },
            "workflow": {
                "max_plan_attempts": self.workflow.max_plan_attempts,
                "max_code_attempts": self.workflow.max_code_attempts,
                "max_simplifications": self.workflow.max_simplifications,
                "max_iterations": self.workflow.max_iterations,
                "interactive": self.workflow.interactive,
                "auto_merge": self.workflow.auto_merge,
                "summarize_outputs": self.workflow.summarize_outputs,
            },
            "checkpoints": {
                "enabled": self.checkpoints.enabled,
                "directory": self.checkpoints.directory,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["backend", "agents", "workflow", "checkpoints", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
