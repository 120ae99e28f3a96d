from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from conductor.backends.base import AgentBackend


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    token_usage: dict[str, int] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    system_prompt: str = "You are a software specialist."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
        resume: bool = False,
    ) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        if session_id:
            run_context["_session"] = {"id": session_id, "resume": resume}
        telemetry: dict[str, Any] = {}
        run_context["_telemetry"] = telemetry

        started = time.monotonic()
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt.strip(),
            user_prompt=instruction,
            context=run_context,
        ):
            chunks.append(chunk)
        elapsed = time.monotonic() - started

        return SpecialistResponse(
            role=self.role,
            content="".join(chunks).strip(),
            cost_usd=float(telemetry.get("cost_usd", 0.0)),
            duration_seconds=float(telemetry.get("duration_seconds", elapsed)),
            token_usage=dict(telemetry.get("token_usage", {})),
            metadata={"instruction": instruction, "session_id": session_id, "resume": resume},
        )
