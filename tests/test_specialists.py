import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from conductor.backends.base import AgentBackend
from conductor.specialists import (
    AgentInvoker,
    ClassifierAgent,
    CoderAgent,
    CommitWriterAgent,
    PlannerAgent,
    ReviewerAgent,
)


class FakeBackend(AgentBackend):
    def __init__(self) -> None:
        self.execute_calls = 0
        self.last_context: dict[str, Any] | None = None
        self.last_system_prompt = ""
        self.contexts: list[dict[str, Any]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.last_system_prompt = system_prompt
        self.last_context = context
        self.contexts.append(context)
        self.execute_calls += 1
        telemetry = context.get("_telemetry")
        if isinstance(telemetry, dict):
            telemetry["cost_usd"] = 0.5
            telemetry["token_usage"] = {"output_tokens": 12}
        yield "planned: "
        yield user_prompt


def test_specialist_run_streams_and_reports_telemetry() -> None:
    backend = FakeBackend()
    agent = PlannerAgent(backend, model="claude-sonnet-4-5")

    response = asyncio.run(agent.run("Plan the parser", {"repo": "demo"}, session_id="s-1"))

    assert response.role == "planner"
    assert response.content == "planned: Plan the parser"
    assert response.cost_usd == 0.5
    assert response.token_usage == {"output_tokens": 12}
    assert response.duration_seconds >= 0.0
    assert backend.last_context is not None
    assert backend.last_context["model"] == "claude-sonnet-4-5"
    assert backend.last_context["repo"] == "demo"
    assert backend.last_context["_session"] == {"id": "s-1", "resume": False}
    assert backend.last_system_prompt.startswith("You are the planner.")


def test_invoker_routes_roles_and_resumes_started_sessions() -> None:
    backend = FakeBackend()
    invoker = AgentInvoker.from_backend(
        backend, model="claude-sonnet-4-5", classifier_model="claude-haiku-4-5"
    )

    async def _run() -> None:
        await invoker.invoke("implementer", {"instruction": "first"}, "sess-1")
        await invoker.invoke("implementer", {"instruction": "second"}, "sess-1")
        await invoker.invoke("classifier", {"instruction": "classify"}, None)
        await invoker.invoke("commit_writer", {"instruction": "name it"}, None)

    asyncio.run(_run())

    assert isinstance(invoker.specialists["implementer"], CoderAgent)
    assert isinstance(invoker.specialists["reviewer"], ReviewerAgent)
    assert isinstance(invoker.specialists["classifier"], ClassifierAgent)
    assert backend.contexts[0]["_session"] == {"id": "sess-1", "resume": False}
    assert backend.contexts[1]["_session"] == {"id": "sess-1", "resume": True}
    assert "_session" not in backend.contexts[2]
    assert backend.contexts[2]["model"] == "claude-haiku-4-5"
    assert isinstance(invoker.specialists["commit_writer"], CommitWriterAgent)
    assert backend.contexts[3]["model"] == "claude-haiku-4-5"
    assert backend.last_system_prompt.startswith("You are the commit message writer.")
    assert invoker.has_session("sess-1")


def test_invoker_resumes_seeded_sessions_after_restart() -> None:
    backend = FakeBackend()
    invoker = AgentInvoker.from_backend(backend)
    invoker.seed_sessions(["restored", ""])

    reply = asyncio.run(invoker.invoke("reviewer", {"instruction": "again"}, "restored"))

    assert reply.session_id == "restored"
    assert reply.raw_text == "planned: again"
    assert backend.contexts[0]["_session"]["resume"] is True
    assert not invoker.has_session("")


def test_invoker_rejects_unknown_role() -> None:
    invoker = AgentInvoker.from_backend(FakeBackend())

    with pytest.raises(ValueError, match="No specialist"):
        asyncio.run(invoker.invoke("tester", {"instruction": "x"}))
