from conductor.backends.base import (
    AgentBackend,
    AgentReply,
    AgentRequest,
    TokenUsage,
)
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.codex import CodexBackend
from conductor.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentReply",
    "AgentRequest",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
    "TokenUsage",
]
