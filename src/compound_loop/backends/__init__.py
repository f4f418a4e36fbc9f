from compound_loop.backends.base import (
    AgentBackend,
    AgentResult,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from compound_loop.backends.claude import ClaudeCodeBackend
from compound_loop.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "AgentResult",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
]
