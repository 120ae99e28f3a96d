from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

SCHEMA_VERSION = 1


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """One immutable snapshot of both machines for a task.

    ``task`` holds ``{"phase", "context"}``; ``execution`` holds ``{"state", "context"}``
    and is present only while the task phase is ``executing``.
    """

    task_id: str
    sequence: int
    created_at: str
    trigger: str
    task: dict[str, Any]
    execution: dict[str, Any] | None = None
    description: str = ""
    schema_version: int = SCHEMA_VERSION

    @property
    def phase(self) -> str:
        return str(self.task.get("phase", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "task_id": self.task_id,
            "trigger": self.trigger,
            "description": self.description,
            "task": self.task,
            "execution": self.execution,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            task_id=str(data["task_id"]),
            sequence=int(data["sequence"]),
            created_at=str(data.get("created_at", "")),
            trigger=str(data.get("trigger", "")),
            task=dict(data["task"]),
            execution=dict(data["execution"]) if data.get("execution") is not None else None,
            description=str(data.get("description", "")),
            schema_version=int(data.get("schema_version", SCHEMA_VERSION)),
        )

    def summary(self) -> dict[str, Any]:
        execution = self.execution or {}
        context = self.task.get("context", {})
        return {
            "task_id": self.task_id,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "trigger": self.trigger,
            "phase": self.phase,
            "execution_state": execution.get("state"),
            "awaiting_decision": context.get("pending_decision"),
            "cycle": context.get("cycle"),
            "usage": context.get("usage", {}),
        }
