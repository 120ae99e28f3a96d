from conductor.machines.execution_loop import (
    ExecutionContext,
    ExecutionLoopMachine,
    LoopEvent,
    LoopState,
    ReviewTarget,
)
from conductor.machines.task_phase import (
    DocumentationResult,
    TaskContext,
    TaskEvent,
    TaskPhase,
    TaskPhaseMachine,
)

__all__ = [
    "DocumentationResult",
    "ExecutionContext",
    "ExecutionLoopMachine",
    "LoopEvent",
    "LoopState",
    "ReviewTarget",
    "TaskContext",
    "TaskEvent",
    "TaskPhase",
    "TaskPhaseMachine",
]
