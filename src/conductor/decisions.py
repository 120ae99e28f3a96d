from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from conductor.errors import EscalationRequired


class DecisionPoint(StrEnum):
    PLAN_CRITIQUE = "plan_critique"
    FINAL_REVIEW = "final_review"
    EXECUTION = "execution"


class DecisionKind(StrEnum):
    APPROVE = "approve"
    RETRY = "retry"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class DecisionRequest:
    """What the orchestrator is waiting for while paused at a human decision point."""

    point: DecisionPoint
    summary: str = ""
    issues: tuple[str, ...] = ()
    options: tuple[DecisionKind, ...] = (
        DecisionKind.APPROVE,
        DecisionKind.RETRY,
        DecisionKind.REJECT,
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "point": self.point.value,
            "summary": self.summary,
            "issues": list(self.issues),
            "options": [option.value for option in self.options],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionRequest:
        return cls(
            point=DecisionPoint(data["point"]),
            summary=str(data.get("summary", "")),
            issues=tuple(str(item) for item in data.get("issues", [])),
            options=tuple(DecisionKind(item) for item in data.get("options", list(DecisionKind))),
        )


@dataclass(frozen=True, slots=True)
class HumanDecision:
    kind: DecisionKind
    feedback: str = ""

    @classmethod
    def approve(cls) -> HumanDecision:
        return cls(DecisionKind.APPROVE)

    @classmethod
    def retry(cls, feedback: str) -> HumanDecision:
        return cls(DecisionKind.RETRY, feedback.strip())

    @classmethod
    def reject(cls) -> HumanDecision:
        return cls(DecisionKind.REJECT)


class DecisionIntake(ABC):
    @abstractmethod
    async def decide(self, request: DecisionRequest) -> HumanDecision:
        """Block until a decision is available, or raise ``EscalationRequired``."""

    async def answer(self, question: str) -> str | None:
        """Answer a clarifying question during refinement; ``None`` skips refinement."""
        _ = question
        return None


class DeferredDecisions(DecisionIntake):
    """Never decides in-process; the run pauses and is resumed with a decision later."""

    async def decide(self, request: DecisionRequest) -> HumanDecision:
        raise EscalationRequired(request.point.value, request.summary)


class ScriptedDecisions(DecisionIntake):
    def __init__(
        self,
        decisions: Iterable[HumanDecision] = (),
        answers: Iterable[str] = (),
    ) -> None:
        self.decisions: deque[HumanDecision] = deque(decisions)
        self.answers: deque[str] = deque(answers)
        self.requests: list[DecisionRequest] = []
        self.questions: list[str] = []

    async def decide(self, request: DecisionRequest) -> HumanDecision:
        self.requests.append(request)
        if not self.decisions:
            raise EscalationRequired(request.point.value, request.summary)
        decision = self.decisions.popleft()
        if decision.kind not in request.options:
            raise ValueError(
                f"Decision {decision.kind.value!r} is not allowed at {request.point.value}."
            )
        return decision

    async def answer(self, question: str) -> str | None:
        self.questions.append(question)
        return self.answers.popleft() if self.answers else None
