from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from conductor.backends.base import AgentBackend, AgentTransportError, BackendTimeoutError

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Wraps a primary backend (and an optional fallback) with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        retry_policy: RetryPolicy,
        *,
        fallback_name: str | None = None,
        fallback_backend: AgentBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_plan(self) -> list[tuple[str, AgentBackend]]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if (
            self.fallback_backend is not None
            and self.fallback_name
            and self.fallback_name != self.primary_name
        ):
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    async def _collect_chunks(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        for backend_name, backend in self._attempt_plan():
            chunks = await self._attempt(
                backend_name, backend, errors, system_prompt, user_prompt, context
            )
            if chunks is None:
                continue
            if backend_name != self.primary_name:
                self._emit({"event": "backend_fallback_success", "backend": backend_name})
            for chunk in chunks:
                yield chunk
            return

        summary = "; ".join(errors[-6:])
        raise AgentTransportError(
            f"All backend attempts failed. {summary}",
            retriable=False,
        )

    async def _attempt(
        self,
        backend_name: str,
        backend: AgentBackend,
        errors: list[str],
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str] | None:
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": backend_name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await asyncio.sleep(delay)
            try:
                return await self._collect_chunks(
                    backend,
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    context=context,
                )
            except (AgentTransportError, OSError) as exc:
                retriable = exc.retriable if isinstance(exc, AgentTransportError) else True
                errors.append(f"{backend_name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": backend_name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": retriable,
                    }
                )
                if not retriable:
                    return None
        return None
