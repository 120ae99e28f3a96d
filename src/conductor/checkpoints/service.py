from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from conductor.checkpoints.models import Checkpoint
from conductor.checkpoints.store import CheckpointStore
from conductor.errors import CheckpointError
from conductor.machines.task_phase import TaskPhaseMachine
from conductor.notifications import utc_now_iso

logger = logging.getLogger(__name__)


class CheckpointService:
    """Takes sequenced snapshots of a task's machines whenever they are quiescent.

    Agent calls are bracketed with ``agent_call()``; ``save`` refuses to run while
    one is outstanding, so a checkpoint never captures a half-finished transition.
    """

    def __init__(self, store: CheckpointStore, *, enabled: bool = True) -> None:
        self.store = store
        self.enabled = enabled
        self._last_sequence: dict[str, int] = {}
        self._calls_in_flight = 0

    @contextmanager
    def agent_call(self) -> Iterator[None]:
        self._calls_in_flight += 1
        try:
            yield
        finally:
            self._calls_in_flight -= 1

    @property
    def quiescent(self) -> bool:
        return self._calls_in_flight == 0

    def last_sequence(self, task_id: str) -> int:
        if task_id not in self._last_sequence:
            self._last_sequence[task_id] = self.store.last_sequence(task_id)
        return self._last_sequence[task_id]

    def capture(self, machine: TaskPhaseMachine, trigger: str, *, sequence: int) -> Checkpoint:
        snapshot = machine.snapshot()
        return Checkpoint(
            task_id=machine.task_id,
            sequence=sequence,
            created_at=utc_now_iso(),
            trigger=trigger,
            task={"phase": snapshot["phase"], "context": snapshot["context"]},
            execution=snapshot["execution"],
            description=f"{snapshot['phase']} after {trigger}",
        )

    def save(self, machine: TaskPhaseMachine, trigger: str) -> Checkpoint | None:
        if not self.enabled:
            return None
        if not self.quiescent:
            raise CheckpointError("Refusing to checkpoint while an agent call is outstanding.")
        checkpoint = self.capture(
            machine, trigger, sequence=self.last_sequence(machine.task_id) + 1
        )
        self.store.write(checkpoint)
        self._last_sequence[machine.task_id] = checkpoint.sequence
        logger.debug(
            "Checkpoint %s #%d (%s)", checkpoint.task_id, checkpoint.sequence, checkpoint.phase
        )
        return checkpoint

    def resume_from(self, checkpoint: Checkpoint) -> None:
        self._last_sequence[checkpoint.task_id] = max(
            self.store.last_sequence(checkpoint.task_id), checkpoint.sequence
        )

    def archive(self, task_id: str) -> None:
        if self.enabled:
            self.store.archive(task_id)
            self._last_sequence.pop(task_id, None)
