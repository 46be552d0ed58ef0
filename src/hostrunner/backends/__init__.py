from hostrunner.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    SubprocessAgentBackend,
)
from hostrunner.backends.claude import ClaudeCodeBackend
from hostrunner.backends.codex import CodexBackend
from hostrunner.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
    "SubprocessAgentBackend",
]
