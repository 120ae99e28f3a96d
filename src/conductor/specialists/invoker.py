from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from conductor.backends.base import AgentBackend
from conductor.specialists.base import SpecialistAgent
from conductor.specialists.chunker import ChunkerAgent
from conductor.specialists.classifier import ClassifierAgent
from conductor.specialists.coder import CoderAgent
from conductor.specialists.commit_writer import CommitWriterAgent
from conductor.specialists.critic import CriticAgent
from conductor.specialists.documenter import DocumenterAgent
from conductor.specialists.planner import PlannerAgent
from conductor.specialists.quality_gate import QualityGateAgent
from conductor.specialists.refiner import RefinerAgent
from conductor.specialists.reviewer import ReviewerAgent

SPECIALIST_TYPES: tuple[type[SpecialistAgent], ...] = (
    RefinerAgent,
    PlannerAgent,
    CriticAgent,
    ChunkerAgent,
    CoderAgent,
    ReviewerAgent,
    QualityGateAgent,
    DocumenterAgent,
)


@dataclass(frozen=True, slots=True)
class AgentReply:
    role: str
    raw_text: str
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    token_usage: dict[str, int] = field(default_factory=dict)
    session_id: str | None = None


class AgentInvoker:
    """Routes a role to its specialist and keeps track of which sessions already exist.

    ``prompt_context`` carries the user-facing ``instruction`` plus any structured
    context for the agent. Calls that share a ``session_id`` continue the same
    conversation: the first one starts it, later ones resume it.
    """

    def __init__(self, specialists: Mapping[str, SpecialistAgent]) -> None:
        self.specialists = dict(specialists)
        self._started_sessions: set[str] = set()

    @classmethod
    def from_backend(
        cls,
        backend: AgentBackend,
        *,
        model: str | None = None,
        classifier_model: str | None = None,
    ) -> AgentInvoker:
        specialists: dict[str, SpecialistAgent] = {
            agent_type.role: agent_type(backend, model=model) for agent_type in SPECIALIST_TYPES
        }
        specialists[ClassifierAgent.role] = ClassifierAgent(
            backend, model=classifier_model or model
        )
        specialists[CommitWriterAgent.role] = CommitWriterAgent(
            backend, model=classifier_model or model
        )
        return cls(specialists)

    def seed_sessions(self, session_ids: Iterable[str]) -> None:
        self._started_sessions.update(sid for sid in session_ids if sid)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._started_sessions

    async def invoke(
        self,
        role: str,
        prompt_context: dict[str, Any],
        session_id: str | None = None,
    ) -> AgentReply:
        specialist = self.specialists.get(role)
        if specialist is None:
            raise ValueError(f"No specialist registered for role {role!r}.")

        context = dict(prompt_context)
        instruction = str(context.pop("instruction", ""))
        resume = bool(session_id) and session_id in self._started_sessions
        response = await specialist.run(
            instruction,
            context,
            session_id=session_id,
            resume=resume,
        )
        if session_id:
            self._started_sessions.add(session_id)
        return AgentReply(
            role=role,
            raw_text=response.content,
            cost_usd=response.cost_usd,
            duration_seconds=response.duration_seconds,
            token_usage=dict(response.token_usage),
            session_id=session_id,
        )
