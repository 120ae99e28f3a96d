from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from conductor.decisions import DecisionKind, DecisionRequest
from conductor.errors import TransitionError
from conductor.machines.execution_loop import ExecutionContext, ExecutionLoopMachine
from conductor.notifications import ChangeNotification, NotificationSink
from conductor.protocol.verdicts import QualityGateInterpretation

logger = logging.getLogger(__name__)


class TaskPhase(StrEnum):
    INIT = "init"
    REFINING = "refining"
    PLANNING = "planning"
    PLAN_CRITIQUE = "plan_critique"
    EXECUTING = "executing"
    FINAL_REVIEW = "final_review"
    DOCUMENTING = "documenting"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


class TaskEvent(StrEnum):
    START = "start"
    SKIP_REFINEMENT = "skip_refinement"
    REFINEMENT_COMPLETE = "refinement_complete"
    REFINEMENT_CANCELLED = "refinement_cancelled"
    PLAN_CREATED = "plan_created"
    PLAN_FAILED = "plan_failed"
    CRITIQUE_APPROVED = "critique_approved"
    CRITIQUE_SIMPLIFY = "critique_simplify"
    CRITIQUE_ESCALATED = "critique_escalated"
    EXECUTION_COMPLETE = "execution_complete"
    REVIEW_PASSED = "review_passed"
    REVIEW_ESCALATED = "review_escalated"
    DOCUMENTATION_DONE = "documentation_done"
    FINALIZED = "finalized"
    HUMAN_APPROVED = "human_approved"
    HUMAN_RETRY = "human_retry"
    HUMAN_ABANDON = "human_abandon"


TERMINAL_PHASES = frozenset({TaskPhase.COMPLETE, TaskPhase.ABANDONED})
HUMAN_EVENTS = frozenset({TaskEvent.HUMAN_APPROVED, TaskEvent.HUMAN_RETRY, TaskEvent.HUMAN_ABANDON})
HUMAN_EVENT_FOR_DECISION = {
    DecisionKind.APPROVE: TaskEvent.HUMAN_APPROVED,
    DecisionKind.RETRY: TaskEvent.HUMAN_RETRY,
    DecisionKind.REJECT: TaskEvent.HUMAN_ABANDON,
}

TRANSITIONS: dict[tuple[TaskPhase, TaskEvent], TaskPhase] = {
    (TaskPhase.INIT, TaskEvent.START): TaskPhase.REFINING,
    (TaskPhase.INIT, TaskEvent.SKIP_REFINEMENT): TaskPhase.PLANNING,
    (TaskPhase.REFINING, TaskEvent.REFINEMENT_COMPLETE): TaskPhase.PLANNING,
    (TaskPhase.REFINING, TaskEvent.REFINEMENT_CANCELLED): TaskPhase.PLANNING,
    (TaskPhase.PLANNING, TaskEvent.PLAN_CREATED): TaskPhase.PLAN_CRITIQUE,
    (TaskPhase.PLANNING, TaskEvent.PLAN_FAILED): TaskPhase.ABANDONED,
    (TaskPhase.PLAN_CRITIQUE, TaskEvent.CRITIQUE_APPROVED): TaskPhase.EXECUTING,
    (TaskPhase.PLAN_CRITIQUE, TaskEvent.CRITIQUE_SIMPLIFY): TaskPhase.PLANNING,
    (TaskPhase.PLAN_CRITIQUE, TaskEvent.CRITIQUE_ESCALATED): TaskPhase.PLAN_CRITIQUE,
    (TaskPhase.PLAN_CRITIQUE, TaskEvent.HUMAN_APPROVED): TaskPhase.EXECUTING,
    (TaskPhase.PLAN_CRITIQUE, TaskEvent.HUMAN_RETRY): TaskPhase.PLANNING,
    (TaskPhase.PLAN_CRITIQUE, TaskEvent.HUMAN_ABANDON): TaskPhase.ABANDONED,
    (TaskPhase.EXECUTING, TaskEvent.EXECUTION_COMPLETE): TaskPhase.FINAL_REVIEW,
    (TaskPhase.EXECUTING, TaskEvent.HUMAN_ABANDON): TaskPhase.ABANDONED,
    (TaskPhase.FINAL_REVIEW, TaskEvent.REVIEW_PASSED): TaskPhase.DOCUMENTING,
    (TaskPhase.FINAL_REVIEW, TaskEvent.REVIEW_ESCALATED): TaskPhase.FINAL_REVIEW,
    (TaskPhase.FINAL_REVIEW, TaskEvent.HUMAN_APPROVED): TaskPhase.DOCUMENTING,
    (TaskPhase.FINAL_REVIEW, TaskEvent.HUMAN_RETRY): TaskPhase.PLANNING,
    (TaskPhase.FINAL_REVIEW, TaskEvent.HUMAN_ABANDON): TaskPhase.ABANDONED,
    (TaskPhase.DOCUMENTING, TaskEvent.DOCUMENTATION_DONE): TaskPhase.FINALIZING,
    (TaskPhase.FINALIZING, TaskEvent.FINALIZED): TaskPhase.COMPLETE,
}


def next_phase(phase: TaskPhase, event: TaskEvent) -> TaskPhase:
    try:
        return TRANSITIONS[(phase, event)]
    except KeyError:
        raise TransitionError(TaskPhaseMachine.name, phase.value, event.value) from None


@dataclass(frozen=True, slots=True)
class DocumentationResult:
    success: bool
    summary: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "summary": self.summary, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentationResult:
        return cls(
            success=bool(data["success"]),
            summary=str(data.get("summary", "")),
            error=str(data.get("error", "")),
        )


@dataclass(frozen=True, slots=True)
class TaskContext:
    task_id: str
    task_text: str
    refined_task: str | None = None
    plan: str | None = None
    critique_feedback: str | None = None
    retry_feedback: str | None = None
    cycle_objective: str | None = None
    simplification_count: int = 0
    max_simplifications: int = 2
    final_review: QualityGateInterpretation | None = None
    documentation: DocumentationResult | None = None
    pending_decision: DecisionRequest | None = None
    cycle: int = 1
    workspace: dict[str, str] | None = None
    sessions: dict[str, str] = field(default_factory=dict)
    usage: dict[str, float] = field(default_factory=dict)

    def planning_input(self) -> tuple[str, str | None]:
        """Return ``(objective, reference)`` for the next planning call.

        Retry feedback, when present, is the only objective; the task text is then
        passed along purely as reference. Once planning has consumed it, the same
        feedback stays the objective of every re-plan within that cycle.
        """
        task = self.refined_task or self.task_text
        objective = self.retry_feedback or self.cycle_objective
        if objective:
            return objective, task
        return task, None

    def brief(self) -> str:
        objective, reference = self.planning_input()
        if reference:
            return f"{objective}\n\nOriginal task (reference only):\n{reference}"
        return objective

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_text": self.task_text,
            "refined_task": self.refined_task,
            "plan": self.plan,
            "critique_feedback": self.critique_feedback,
            "retry_feedback": self.retry_feedback,
            "cycle_objective": self.cycle_objective,
            "simplification_count": self.simplification_count,
            "max_simplifications": self.max_simplifications,
            "final_review": self.final_review.to_dict() if self.final_review else None,
            "documentation": self.documentation.to_dict() if self.documentation else None,
            "pending_decision": (
                self.pending_decision.to_dict() if self.pending_decision else None
            ),
            "cycle": self.cycle,
            "workspace": dict(self.workspace) if self.workspace is not None else None,
            "sessions": dict(self.sessions),
            "usage": dict(self.usage),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskContext:
        final_review = data.get("final_review")
        documentation = data.get("documentation")
        pending = data.get("pending_decision")
        workspace = data.get("workspace")
        return cls(
            task_id=str(data["task_id"]),
            task_text=str(data["task_text"]),
            refined_task=data.get("refined_task"),
            plan=data.get("plan"),
            critique_feedback=data.get("critique_feedback"),
            retry_feedback=data.get("retry_feedback"),
            cycle_objective=data.get("cycle_objective"),
            simplification_count=int(data.get("simplification_count", 0)),
            max_simplifications=int(data.get("max_simplifications", 2)),
            final_review=(
                QualityGateInterpretation.from_dict(final_review) if final_review else None
            ),
            documentation=DocumentationResult.from_dict(documentation) if documentation else None,
            pending_decision=DecisionRequest.from_dict(pending) if pending else None,
            cycle=int(data.get("cycle", 1)),
            workspace={str(k): str(v) for k, v in workspace.items()} if workspace else None,
            sessions={str(k): str(v) for k, v in data.get("sessions", {}).items()},
            usage={str(k): float(v) for k, v in data.get("usage", {}).items()},
        )


class TaskPhaseMachine:
    """Outer task lifecycle; owns the execution loop while the phase is EXECUTING.

    The context is an immutable value. Every change goes through ``_commit``, which
    swaps in the new value and then publishes one notification per changed field,
    followed by a transition notification when a transition caused it. Callers are
    expected to checkpoint after each transition.
    """

    name = "task_phase"

    def __init__(
        self,
        context: TaskContext,
        *,
        phase: TaskPhase = TaskPhase.INIT,
        execution: ExecutionLoopMachine | None = None,
        sink: NotificationSink | None = None,
        max_review_attempts: int = 7,
        max_continue_attempts: int = 7,
    ) -> None:
        if (execution is not None) != (phase is TaskPhase.EXECUTING):
            raise ValueError("An execution loop exists only while the task is executing.")
        self._context = context
        self._phase = phase
        self.execution = execution
        self.sink = sink
        self.max_review_attempts = max_review_attempts
        self.max_continue_attempts = max_continue_attempts
        if execution is not None:
            execution.sink = sink

    @property
    def phase(self) -> TaskPhase:
        return self._phase

    @property
    def context(self) -> TaskContext:
        return self._context

    @property
    def task_id(self) -> str:
        return self._context.task_id

    @property
    def is_terminal(self) -> bool:
        return self._phase in TERMINAL_PHASES

    @property
    def awaiting_decision(self) -> bool:
        return self._context.pending_decision is not None

    def _publish(self, notification: ChangeNotification) -> None:
        if self.sink is not None:
            self.sink(notification)

    def _commit(
        self, context: TaskContext, *, transition: tuple[TaskPhase, str] | None = None
    ) -> None:
        previous = self._context
        previous_phase = self._phase
        self._context = context
        if transition is not None:
            self._phase = transition[0]
        for item in dataclasses.fields(TaskContext):
            value = getattr(context, item.name)
            if value != getattr(previous, item.name):
                self._publish(
                    ChangeNotification.field_changed("task", self.task_id, item.name, value)
                )
        if transition is not None:
            self._publish(
                ChangeNotification.transitioned(
                    "task", self.task_id, previous_phase.value, self._phase.value, transition[1]
                )
            )

    def _update(self, **changes: Any) -> None:
        self._commit(dataclasses.replace(self._context, **changes))

    def _check_allowed(self, event: TaskEvent) -> TaskPhase:
        target = next_phase(self._phase, event)
        if event in HUMAN_EVENTS and self._phase is not TaskPhase.EXECUTING:
            if not self.awaiting_decision:
                raise TransitionError(self.name, self._phase.value, event.value)
        elif event not in HUMAN_EVENTS and self.awaiting_decision:
            raise TransitionError(self.name, self._phase.value, event.value)
        return target

    def transition(self, event: TaskEvent, **payload: Any) -> TaskPhase:
        target = self._check_allowed(event)
        changes: dict[str, Any] = {}

        if event in HUMAN_EVENTS:
            changes["pending_decision"] = None
        if event in (TaskEvent.CRITIQUE_ESCALATED, TaskEvent.REVIEW_ESCALATED):
            changes["pending_decision"] = payload["request"]
        if event is TaskEvent.CRITIQUE_SIMPLIFY:
            changes["simplification_count"] = min(
                self._context.simplification_count + 1, self._context.max_simplifications
            )
            changes["critique_feedback"] = payload.get("feedback") or None
        if event is TaskEvent.HUMAN_RETRY and self._phase is TaskPhase.PLAN_CRITIQUE:
            changes["critique_feedback"] = payload.get("feedback") or None
        if event is TaskEvent.HUMAN_RETRY and self._phase is TaskPhase.FINAL_REVIEW:
            changes["retry_feedback"] = payload["feedback"]
            changes["cycle_objective"] = payload["feedback"]
            changes["critique_feedback"] = None
            changes["simplification_count"] = 0
            changes["cycle"] = self._context.cycle + 1
        if event in (TaskEvent.CRITIQUE_APPROVED, TaskEvent.HUMAN_APPROVED) and (
            self._phase is TaskPhase.PLAN_CRITIQUE
        ):
            changes["critique_feedback"] = None
        if "final_review" in payload:
            changes["final_review"] = payload["final_review"]
        if "documentation" in payload:
            changes["documentation"] = payload["documentation"]

        source = self._phase
        if source is TaskPhase.EXECUTING and target is not TaskPhase.EXECUTING:
            self.execution = None
        if target is TaskPhase.EXECUTING and source is not TaskPhase.EXECUTING:
            self.execution = ExecutionLoopMachine(
                self.task_id,
                context=ExecutionContext(
                    max_review_attempts=self.max_review_attempts,
                    max_continue_attempts=self.max_continue_attempts,
                ),
                sink=self.sink,
            )

        logger.info("Task %s: %s --%s--> %s", self.task_id, source, event, target)
        self._commit(
            dataclasses.replace(self._context, **changes), transition=(target, event.value)
        )
        return target

    def set_workspace(self, workspace: dict[str, str]) -> None:
        self._update(workspace=dict(workspace))

    def set_refined_task(self, text: str) -> None:
        self._update(refined_task=text)

    def set_plan(self, plan: str) -> None:
        self._update(plan=plan)

    def clear_retry_feedback(self) -> None:
        if self._context.retry_feedback is not None:
            self._update(retry_feedback=None)

    def set_session(self, key: str, session_id: str) -> None:
        if self._context.sessions.get(key) != session_id:
            self._update(sessions={**self._context.sessions, key: session_id})

    def record_usage(
        self, *, cost_usd: float, duration_seconds: float, token_usage: dict[str, int]
    ) -> None:
        usage = dict(self._context.usage)
        usage["calls"] = usage.get("calls", 0.0) + 1
        usage["cost_usd"] = usage.get("cost_usd", 0.0) + cost_usd
        usage["duration_seconds"] = usage.get("duration_seconds", 0.0) + duration_seconds
        for key, value in token_usage.items():
            usage[key] = usage.get(key, 0.0) + value
        self._update(usage=usage)

    def request_decision(self, request: DecisionRequest) -> None:
        self._update(pending_decision=request)

    def clear_decision(self) -> None:
        self._update(pending_decision=None)

    def session_ids(self) -> list[str]:
        ids = list(self._context.sessions.values())
        if self.execution is not None:
            ids.extend(self.execution.context.sessions.values())
        return ids

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self._phase.value,
            "context": self._context.to_dict(),
            "execution": self.execution.snapshot() if self.execution is not None else None,
        }
