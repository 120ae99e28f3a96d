from conductor.backends.base import (
    AgentBackend,
    AgentTransportError,
    BackendProcessError,
    BackendTimeoutError,
)
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentTransportError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "ResilientBackend",
    "RetryPolicy",
]
