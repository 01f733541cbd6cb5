from __future__ import annotations

from pathlib import Path


class ConductorError(RuntimeError):
    """Base class for orchestration failures."""


class ProtocolViolation(ConductorError):
    """Raised when an event is fired in a state that cannot accept it."""

    def __init__(self, machine: str, state: str, event: str, reason: str | None = None) -> None:
        message = f"{machine}: event {event} is not valid in state {state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.machine = machine
        self.state = state
        self.event = event
        self.reason = reason


class TransportError(ConductorError):
    """Raised when the external reasoning engine cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class TransportTimeoutError(TransportError):
    """Raised when a backend call exceeds the configured timeout."""


class TransportProcessError(TransportError):
    """Raised when a backend process cannot be started or read."""


class InvalidResponseError(ConductorError):
    """Raised when a backend answer cannot be read as text."""


class InterpretationAmbiguous(ConductorError):
    def __init__(self, role: str, reason: str) -> None:
        super().__init__(f"Could not interpret {role} output: {reason}")
        self.role = role
        self.reason = reason


class AttemptsExhausted(ConductorError):
    def __init__(self, phase: str, attempts: int, maximum: int) -> None:
        super().__init__(f"{phase} attempts exhausted ({attempts}/{maximum})")
        self.phase = phase
        self.attempts = attempts
        self.maximum = maximum


class CheckpointCorrupt(ConductorError):
    """Raised when a checkpoint file is unreadable or schema-incompatible."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Checkpoint {path} is unusable: {reason}")
        self.path = path
        self.reason = reason
