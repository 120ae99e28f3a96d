from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration failures."""


class InterpretationFailure(ConductorError):
    """Raised when an agent response could not be interpreted after a retry."""

    def __init__(self, role: str, message: str | None = None) -> None:
        super().__init__(message or f"Could not interpret {role} response.")
        self.role = role


class TransitionError(ConductorError):
    """Raised when an event has no defined transition from the current state."""

    def __init__(self, machine: str, state: str, event: str) -> None:
        super().__init__(f"{machine}: no transition for event {event!r} in state {state!r}.")
        self.machine = machine
        self.state = state
        self.event = event


class RestorationValidationError(ConductorError):
    def __init__(self, task_id: str, problems: list[str]) -> None:
        detail = "; ".join(problems) if problems else "unknown problem"
        super().__init__(f"Checkpoint for task {task_id!r} failed validation: {detail}")
        self.task_id = task_id
        self.problems = list(problems)


class CheckpointError(ConductorError):
    """Raised when a checkpoint cannot be written or read."""


class CheckpointSequenceError(CheckpointError):
    def __init__(self, task_id: str, sequence: int, last_sequence: int) -> None:
        super().__init__(
            f"Checkpoint sequence {sequence} for task {task_id!r} is not newer than "
            f"{last_sequence}."
        )
        self.sequence = sequence
        self.last_sequence = last_sequence


class SandboxError(ConductorError):
    """Raised when a sandbox operation fails."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class EscalationRequired(Exception):  # noqa: N818
    """Signals a pause until a human decision is supplied.

    This is not a failure. The orchestrator checkpoints the pending decision before
    awaiting it, so the run can be resumed later and asked the same question again.
    """

    def __init__(self, point: str, summary: str = "") -> None:
        super().__init__(f"Awaiting human decision at {point}.")
        self.point = point
        self.summary = summary
