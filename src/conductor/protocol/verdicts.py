from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class AgentRole(StrEnum):
    CHUNKER = "chunker"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    QUALITY_GATE = "quality_gate"
    PLAN_CRITIC = "plan_critic"
    REFINER = "refiner"
    PLANNER = "planner"
    DOCUMENTER = "documenter"
    CLASSIFIER = "classifier"
    COMMIT_WRITER = "commit_writer"


class ChunkVerdict(StrEnum):
    WORK_CHUNK = "work_chunk"
    TASK_COMPLETE = "task_complete"


class ImplementationVerdict(StrEnum):
    PROPOSE = "propose"
    CONTINUE = "continue"
    IMPLEMENTED = "implemented"


class ReviewVerdict(StrEnum):
    APPROVE_CONTINUE = "approve_continue"
    APPROVE_COMPLETE = "approve_complete"
    REVISE = "revise"
    REJECT = "reject"
    ALREADY_COMPLETE = "already_complete"
    NEEDS_HUMAN = "needs_human"


class QualityGateVerdict(StrEnum):
    APPROVE = "approve"
    NEEDS_HUMAN = "needs_human"


class CritiqueVerdict(StrEnum):
    APPROVE = "approve"
    SIMPLIFY = "simplify"
    REJECT = "reject"
    NEEDS_HUMAN = "needs_human"


class RefinementVerdict(StrEnum):
    REFINED = "refined"
    QUESTION = "question"


# Scan order matters: the first keyword found in the signal wins, so the more
# conservative or more specific keywords come first.
VOCABULARY: dict[AgentRole, tuple[tuple[str, StrEnum], ...]] = {
    AgentRole.CHUNKER: (
        ("task_complete", ChunkVerdict.TASK_COMPLETE),
        ("work_chunk", ChunkVerdict.WORK_CHUNK),
    ),
    AgentRole.IMPLEMENTER: (
        ("implemented", ImplementationVerdict.IMPLEMENTED),
        ("propose", ImplementationVerdict.PROPOSE),
        ("continue", ImplementationVerdict.CONTINUE),
    ),
    AgentRole.REVIEWER: (
        ("needs_human", ReviewVerdict.NEEDS_HUMAN),
        ("reject", ReviewVerdict.REJECT),
        ("revise", ReviewVerdict.REVISE),
        ("already_complete", ReviewVerdict.ALREADY_COMPLETE),
        ("approve_complete", ReviewVerdict.APPROVE_COMPLETE),
        ("approve_continue", ReviewVerdict.APPROVE_CONTINUE),
        ("approve", ReviewVerdict.APPROVE_CONTINUE),
    ),
    AgentRole.QUALITY_GATE: (
        ("needs_human", QualityGateVerdict.NEEDS_HUMAN),
        ("approve", QualityGateVerdict.APPROVE),
    ),
    AgentRole.PLAN_CRITIC: (
        ("needs_human", CritiqueVerdict.NEEDS_HUMAN),
        ("reject", CritiqueVerdict.REJECT),
        ("simplify", CritiqueVerdict.SIMPLIFY),
        ("approve", CritiqueVerdict.APPROVE),
    ),
    AgentRole.REFINER: (
        ("question", RefinementVerdict.QUESTION),
        ("refined", RefinementVerdict.REFINED),
    ),
}

SAFE_DEFAULTS: dict[AgentRole, StrEnum] = {
    AgentRole.CHUNKER: ChunkVerdict.WORK_CHUNK,
    AgentRole.IMPLEMENTER: ImplementationVerdict.CONTINUE,
    AgentRole.REVIEWER: ReviewVerdict.NEEDS_HUMAN,
    AgentRole.QUALITY_GATE: QualityGateVerdict.NEEDS_HUMAN,
    AgentRole.PLAN_CRITIC: CritiqueVerdict.NEEDS_HUMAN,
    AgentRole.REFINER: RefinementVerdict.QUESTION,
}


@dataclass(frozen=True, slots=True)
class ChunkInterpretation:
    verdict: ChunkVerdict
    description: str = ""
    requirements: tuple[str, ...] = ()
    context: str = ""

    @property
    def is_complete(self) -> bool:
        return self.verdict is ChunkVerdict.TASK_COMPLETE

    def as_chunk(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "requirements": list(self.requirements),
            "context": self.context,
        }


@dataclass(frozen=True, slots=True)
class ImplementationInterpretation:
    verdict: ImplementationVerdict
    description: str = ""
    steps: tuple[str, ...] = ()
    files: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ReviewInterpretation:
    verdict: ReviewVerdict
    feedback: str = ""
    issues: tuple[str, ...] = ()

    @property
    def approved(self) -> bool:
        return self.verdict in (
            ReviewVerdict.APPROVE_CONTINUE,
            ReviewVerdict.APPROVE_COMPLETE,
            ReviewVerdict.ALREADY_COMPLETE,
        )

    @property
    def continue_next(self) -> bool:
        return self.verdict is ReviewVerdict.APPROVE_CONTINUE


@dataclass(frozen=True, slots=True)
class QualityGateInterpretation:
    verdict: QualityGateVerdict
    summary: str = ""
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "summary": self.summary,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityGateInterpretation:
        return cls(
            verdict=QualityGateVerdict(data["verdict"]),
            summary=str(data.get("summary", "")),
            issues=tuple(str(item) for item in data.get("issues", [])),
        )


@dataclass(frozen=True, slots=True)
class CritiqueInterpretation:
    verdict: CritiqueVerdict
    feedback: str = ""
    issues: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RefinementInterpretation:
    verdict: RefinementVerdict
    goal: str = ""
    context: str = ""
    constraints: str = ""
    success_criteria: str = ""
    question: str = ""
    raw: str = ""

    def refined_text(self) -> str:
        sections = [
            ("Goal", self.goal),
            ("Context", self.context),
            ("Constraints", self.constraints),
            ("Success Criteria", self.success_criteria),
        ]
        rendered = [f"## {title}\n{body}" for title, body in sections if body]
        return "\n\n".join(rendered) if rendered else self.raw


Interpretation = (
    ChunkInterpretation
    | ImplementationInterpretation
    | ReviewInterpretation
    | QualityGateInterpretation
    | CritiqueInterpretation
    | RefinementInterpretation
)
