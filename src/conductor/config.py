from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

InterpreterMode = Literal["natural", "strict"]
SandboxMode = Literal["worktree", "local"]

CONFIG_FILENAME = "conductor.toml"


@dataclass(slots=True)
class BackendConfig:
    binary: str = "claude"
    fallback_binary: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = "claude-sonnet-4-5"
    classifier_model: str = "claude-haiku-4-5"


@dataclass(slots=True)
class WorkflowConfig:
    refine_task: bool = True
    auto_merge: bool = False
    max_simplifications: int = 2
    max_review_attempts: int = 7
    max_continue_attempts: int = 7
    max_refinement_rounds: int = 3
    max_iterations: int = 500
    interpreter_mode: InterpreterMode = "natural"
    agent_commit_messages: bool = False


@dataclass(slots=True)
class SandboxConfig:
    mode: SandboxMode = "worktree"
    worktree_root: str = ".worktrees"
    branch_prefix: str = "sandbox/"
    primary_branch: str = "main"
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class CheckpointConfig:
    enabled: bool = True
    directory: str = ".conductor"
    max_history: int = 10
    archive_on_complete: bool = False
    audit: bool = True


@dataclass(slots=True)
class ConductorConfig:
    backend: BackendConfig
    agents: AgentsConfig
    workflow: WorkflowConfig
    sandbox: SandboxConfig
    checkpoints: CheckpointConfig

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls(
            backend=BackendConfig(),
            agents=AgentsConfig(),
            workflow=WorkflowConfig(),
            sandbox=SandboxConfig(),
            checkpoints=CheckpointConfig(),
        )

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            sandbox=SandboxConfig(**data.get("sandbox", {})),
            checkpoints=CheckpointConfig(**data.get("checkpoints", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": {
                "binary": self.backend.binary,
                "fallback_binary": self.backend.fallback_binary,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "model": self.agents.model,
                "classifier_model": self.agents.classifier_model,
            },
            "workflow": {
                "refine_task": self.workflow.refine_task,
                "auto_merge": self.workflow.auto_merge,
                "max_simplifications": self.workflow.max_simplifications,
                "max_review_attempts": self.workflow.max_review_attempts,
                "max_continue_attempts": self.workflow.max_continue_attempts,
                "max_refinement_rounds": self.workflow.max_refinement_rounds,
                "max_iterations": self.workflow.max_iterations,
                "interpreter_mode": self.workflow.interpreter_mode,
                "agent_commit_messages": self.workflow.agent_commit_messages,
            },
            "sandbox": {
                "mode": self.sandbox.mode,
                "worktree_root": self.sandbox.worktree_root,
                "branch_prefix": self.sandbox.branch_prefix,
                "primary_branch": self.sandbox.primary_branch,
                "max_retries": self.sandbox.max_retries,
                "retry_backoff_seconds": self.sandbox.retry_backoff_seconds,
            },
            "checkpoints": {
                "enabled": self.checkpoints.enabled,
                "directory": self.checkpoints.directory,
                "max_history": self.checkpoints.max_history,
                "archive_on_complete": self.checkpoints.archive_on_complete,
                "audit": self.checkpoints.audit,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("backend", "agents", "workflow", "sandbox", "checkpoints"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
