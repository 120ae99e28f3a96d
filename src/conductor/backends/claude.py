from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from conductor.backends.base import (
    AgentBackend,
    AgentTransportError,
    BackendProcessError,
    public_context,
)


class ClaudeCodeBackend(AgentBackend):
    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        session: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        if session and session.get("id"):
            flag = "--resume" if session.get("resume") else "--session-id"
            command.extend([flag, str(session["id"])])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _record_telemetry(event: dict[str, Any], telemetry: dict[str, Any] | None) -> None:
        if telemetry is None:
            return
        cost = event.get("total_cost_usd", event.get("cost_usd"))
        if isinstance(cost, int | float):
            telemetry["cost_usd"] = float(cost)
        duration_ms = event.get("duration_ms")
        if isinstance(duration_ms, int | float):
            telemetry["duration_seconds"] = duration_ms / 1000.0
        usage = event.get("usage")
        if isinstance(usage, dict):
            telemetry["token_usage"] = {
                key: int(value) for key, value in usage.items() if isinstance(value, int)
            }
        session_id = event.get("session_id")
        if isinstance(session_id, str):
            telemetry["session_id"] = session_id

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        prompt_context = public_context(context)
        model = prompt_context.pop("model", None)
        if prompt_context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(prompt_context, ensure_ascii=False, indent=2)}"
            )
        telemetry = context.get("_telemetry")
        working_directory = context.get("_working_directory") or self.working_directory
        command = self.build_command(
            system_prompt,
            user_prompt,
            session=context.get("_session"),
            model=model,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory) if working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        streamed = False
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                streamed = True
                yield line
                continue

            if not isinstance(event, dict):
                continue
            if event.get("type") == "result":
                self._record_telemetry(event, telemetry if isinstance(telemetry, dict) else None)
                result_text = event.get("result")
                if not streamed and isinstance(result_text, str) and result_text:
                    yield result_text
                continue
            if event.get("type") not in (None, "assistant", "text", "content_block_delta"):
                continue
            content = self._extract_content(event)
            if content:
                streamed = True
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise AgentTransportError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
