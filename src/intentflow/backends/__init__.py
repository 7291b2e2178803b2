from intentflow.backends.base import (
    AgentBackend,
    AgentReply,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from intentflow.backends.claude import ClaudeCodeBackend
from intentflow.backends.codex import CodexBackend
from intentflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentReply",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
