from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from conductor.checkpoints.models import SCHEMA_VERSION, Checkpoint
from conductor.checkpoints.store import CheckpointStore
from conductor.decisions import DecisionKind, DecisionPoint
from conductor.errors import CheckpointError, RestorationValidationError
from conductor.machines.execution_loop import (
    ExecutionContext,
    ExecutionLoopMachine,
    LoopState,
    ReviewTarget,
)
from conductor.machines.task_phase import TaskContext, TaskPhase, TaskPhaseMachine
from conductor.notifications import NotificationSink
from conductor.protocol.verdicts import QualityGateVerdict

logger = logging.getLogger(__name__)

TASK_COUNTERS = ("simplification_count", "max_simplifications", "cycle")
LOOP_COUNTERS = ("max_review_attempts", "max_continue_attempts")


@dataclass(slots=True)
class RestoredTask:
    machine: TaskPhaseMachine
    checkpoint: Checkpoint


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _member(enum_type: Any, value: Any) -> bool:
    return isinstance(value, str) and value in {item.value for item in enum_type}


def _validate_task_context(context: Any, task_id: str, problems: list[str]) -> None:
    if not isinstance(context, dict):
        problems.append("task context is missing")
        return
    if context.get("task_id") != task_id:
        problems.append(f"task context belongs to {context.get('task_id')!r}")
    if not isinstance(context.get("task_text"), str):
        problems.append("task text is missing")
    for counter in TASK_COUNTERS:
        if counter in context and not _is_count(context[counter]):
            problems.append(f"{counter} must be a non-negative integer")
    pending = context.get("pending_decision")
    if pending is not None:
        if not isinstance(pending, dict) or not _member(DecisionPoint, pending.get("point")):
            problems.append("pending decision has an unknown decision point")
        elif not all(_member(DecisionKind, item) for item in pending.get("options", [])):
            problems.append("pending decision has unknown options")
    final_review = context.get("final_review")
    if final_review is not None and (
        not isinstance(final_review, dict)
        or not _member(QualityGateVerdict, final_review.get("verdict"))
    ):
        problems.append("final review verdict is not a known verdict")
    for mapping in ("sessions", "usage"):
        if mapping in context and not isinstance(context[mapping], dict):
            problems.append(f"{mapping} must be a mapping")


def _validate_execution(execution: Any, problems: list[str]) -> None:
    if not isinstance(execution, dict):
        problems.append("execution section must be an object")
        return
    state = execution.get("state")
    if not _member(LoopState, state):
        problems.append(f"execution state {state!r} is not a known loop state")
    context = execution.get("context")
    if not isinstance(context, dict):
        problems.append("execution context is missing")
        return
    attempts = context.get("attempts", {})
    if not isinstance(attempts, dict):
        problems.append("attempt counters must be a mapping")
    else:
        for key, value in attempts.items():
            if not _is_count(value):
                problems.append(f"attempt counter {key!r} must be a non-negative integer")
    for counter in LOOP_COUNTERS:
        if counter in context and not _is_count(context[counter]):
            problems.append(f"{counter} must be a non-negative integer")
    target = context.get("review_target")
    if target is not None and not _member(ReviewTarget, target):
        problems.append(f"review target {target!r} is not known")
    if state == LoopState.REVIEWING.value and target is None:
        problems.append("reviewing state requires a review target")
    chunk = context.get("chunk")
    if chunk is not None and not isinstance(chunk, dict):
        problems.append("chunk must be an object")
    if state != LoopState.CHUNKING.value and chunk is None:
        problems.append(f"{state} state requires a current chunk")


class RestorationService:
    """Validates a stored checkpoint and rebuilds the machines from it.

    Restoration is all-or-nothing. Any structural problem raises
    ``RestorationValidationError`` listing every problem found, and the stored
    files are left exactly as they were.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        sink: NotificationSink | None = None,
        max_review_attempts: int = 7,
        max_continue_attempts: int = 7,
    ) -> None:
        self.store = store
        self.sink = sink
        self.max_review_attempts = max_review_attempts
        self.max_continue_attempts = max_continue_attempts

    def validate(self, data: Any, task_id: str) -> list[str]:
        problems: list[str] = []
        if not isinstance(data, dict):
            return ["checkpoint is not a JSON object"]
        version = data.get("schema_version")
        if not isinstance(version, int) or not 1 <= version <= SCHEMA_VERSION:
            problems.append(f"unsupported schema version {version!r}")
        sequence = data.get("sequence")
        if not isinstance(sequence, int) or isinstance(sequence, bool) or sequence < 1:
            problems.append(f"invalid sequence {sequence!r}")
        if data.get("task_id") != task_id:
            problems.append(f"checkpoint belongs to task {data.get('task_id')!r}")

        task = data.get("task")
        if not isinstance(task, dict):
            problems.append("task section is missing")
            return problems
        phase = task.get("phase")
        if not _member(TaskPhase, phase):
            problems.append(f"phase {phase!r} is not a known task phase")
        _validate_task_context(task.get("context"), task_id, problems)

        execution = data.get("execution")
        executing = phase == TaskPhase.EXECUTING.value
        if executing and execution is None:
            problems.append("executing phase requires an execution section")
        elif not executing and execution is not None:
            problems.append(f"phase {phase!r} must not carry an execution section")
        elif execution is not None:
            _validate_execution(execution, problems)
        return problems

    def build(self, checkpoint: Checkpoint) -> TaskPhaseMachine:
        """Build machines from an already validated checkpoint."""
        context = TaskContext.from_dict(checkpoint.task["context"])
        execution = None
        if checkpoint.execution is not None:
            execution = ExecutionLoopMachine(
                checkpoint.task_id,
                state=LoopState(checkpoint.execution["state"]),
                context=ExecutionContext.from_dict(checkpoint.execution["context"]),
            )
        return TaskPhaseMachine(
            context,
            phase=TaskPhase(checkpoint.task["phase"]),
            execution=execution,
            sink=self.sink,
            max_review_attempts=self.max_review_attempts,
            max_continue_attempts=self.max_continue_attempts,
        )

    def restore_checkpoint(self, data: Any, task_id: str) -> RestoredTask:
        problems = self.validate(data, task_id)
        if problems:
            raise RestorationValidationError(task_id, problems)
        try:
            checkpoint = Checkpoint.from_dict(data)
            machine = self.build(checkpoint)
        except (KeyError, TypeError, ValueError) as exc:
            raise RestorationValidationError(task_id, [f"malformed checkpoint: {exc}"]) from exc
        return RestoredTask(machine=machine, checkpoint=checkpoint)

    def restore(self, task_id: str, sequence: int | None = None) -> RestoredTask:
        try:
            if sequence is None:
                data = self.store.read_latest(task_id)
            else:
                data = self.store.read_sequence(task_id, sequence)
        except CheckpointError as exc:
            raise RestorationValidationError(task_id, [str(exc)]) from exc
        if data is None:
            raise RestorationValidationError(task_id, ["no checkpoint found"])

        restored = self.restore_checkpoint(data, task_id)
        floor = self.store.last_validated_sequence(task_id)
        if sequence is None and restored.checkpoint.sequence < floor:
            raise RestorationValidationError(
                task_id,
                [
                    f"checkpoint sequence {restored.checkpoint.sequence} is older than the last "
                    f"validated sequence {floor}"
                ],
            )
        self.store.mark_validated(task_id, restored.checkpoint.sequence)
        logger.info(
            "Restored task %s at %s (checkpoint #%d)",
            task_id,
            restored.checkpoint.phase,
            restored.checkpoint.sequence,
        )
        return restored
