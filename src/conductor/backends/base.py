from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class AgentTransportError(RuntimeError):
    """Raised when an agent call fails before producing a usable response."""

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


class BackendTimeoutError(AgentTransportError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(AgentTransportError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    """Streams text for one agent turn.

    Besides prompt material, ``context`` may carry private keys that never reach the
    model: ``_session`` (``{"id": str, "resume": bool}``) selects the conversation to
    start or continue, ``_telemetry`` is a dict the backend fills with cost and
    token usage when it knows them, and ``_working_directory`` overrides where the
    agent runs.
    """

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""


def public_context(context: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in context.items() if not key.startswith("_")}
