import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from conductor.backends import RetryPolicy
from conductor.backends.base import AgentBackend, AgentTransportError, public_context
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise AgentTransportError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield "ok"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(1)
        yield "late"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    async def read(self) -> bytes:
        return b"stderr detail"


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0) -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr()
        self.return_code = return_code

    async def wait(self) -> int:
        return self.return_code


def _collect(backend: AgentBackend, context: dict[str, Any]) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context=context):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", model="claude-sonnet-4-5")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "claude-sonnet-4-5"
    assert "--resume" not in command


def test_claude_build_command_starts_then_resumes_session() -> None:
    backend = ClaudeCodeBackend()

    started = backend.build_command("", "go", session={"id": "abc", "resume": False})
    resumed = backend.build_command("", "go", session={"id": "abc", "resume": True})

    assert started[-2:] == ["--session-id", "abc"]
    assert resumed[-2:] == ["--resume", "abc"]
    assert "--append-system-prompt" not in started


def test_public_context_hides_private_keys() -> None:
    context = {"goal": "x", "_session": {"id": "s"}, "_telemetry": {}}

    assert public_context(context) == {"goal": "x"}


def test_claude_backend_streams_text_and_records_telemetry(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess(
            [
                b'{"type":"system","subtype":"init"}\n',
                b'{"type":"assistant","message":{"content":[{"type":"text","text":"hel"}]}}\n',
                b'{"type":"assistant","message":{"content":[{"type":"text","text":"lo"}]}}\n',
                b'{"type":"result","result":"hello","total_cost_usd":0.25,'
                b'"duration_ms":1500,"usage":{"input_tokens":10,"output_tokens":4}}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    telemetry: dict[str, Any] = {}
    backend = ClaudeCodeBackend(working_directory=Path("/repo"))

    output = _collect(
        backend,
        {
            "model": "claude-haiku-4-5",
            "_telemetry": telemetry,
            "_working_directory": "/repo/.worktrees/task-1",
        },
    )

    assert output == "hello"
    assert telemetry["cost_usd"] == 0.25
    assert telemetry["duration_seconds"] == 1.5
    assert telemetry["token_usage"] == {"input_tokens": 10, "output_tokens": 4}
    assert captured["cwd"] == "/repo/.worktrees/task-1"
    assert "claude-haiku-4-5" in captured["args"]
    assert "Context JSON" not in captured["args"][2]


def test_claude_backend_uses_result_when_nothing_streamed(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([b'{"type":"result","result":"final answer"}\n'])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    assert _collect(ClaudeCodeBackend(), {}) == "final answer"


def test_claude_backend_nonzero_exit_is_retriable_transport_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([], return_code=2)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(AgentTransportError) as excinfo:
        _collect(ClaudeCodeBackend(), {})

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True
    assert "stderr detail" in str(excinfo.value)


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend, {})

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_stops_retrying_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(AgentTransportError) as excinfo:
        _collect(backend, {})

    assert primary.calls == 1
    assert excinfo.value.retriable is False
    assert "All backend attempts failed" in str(excinfo.value)


def test_resilient_backend_times_out_slow_attempts() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    with pytest.raises(AgentTransportError):
        _collect(backend, {})

    assert "timed out" in events[0]["error"]


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy(backoff_seconds=0.5)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]
