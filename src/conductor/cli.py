from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor.audit import AuditTrail
from conductor.backends import (
    AgentBackend,
    AgentTransportError,
    ClaudeCodeBackend,
    ResilientBackend,
    RetryPolicy,
)
from conductor.checkpoints import (
    Checkpoint,
    CheckpointService,
    CheckpointStore,
    RestorationService,
)
from conductor.config import CONFIG_FILENAME, ConductorConfig, load_config, save_config
from conductor.decisions import (
    DecisionIntake,
    DecisionKind,
    DecisionRequest,
    DeferredDecisions,
    HumanDecision,
    ScriptedDecisions,
)
from conductor.errors import ConductorError
from conductor.machines import TaskPhaseMachine
from conductor.notifications import ChangeNotification, NotificationBus
from conductor.orchestrator import Orchestrator, RunSummary, new_task_machine
from conductor.protocol import build_interpreter
from conductor.sandbox import GitWorktreeSandbox, LocalSandbox, Sandbox
from conductor.specialists import AgentInvoker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    store: CheckpointStore
    checkpoints: CheckpointService
    restoration: RestorationService
    invoker: AgentInvoker
    sandbox: Sandbox
    notifications: NotificationBus


class PromptDecisions(DecisionIntake):
    """Asks on the terminal whenever the orchestrator needs a human."""

    async def decide(self, request: DecisionRequest) -> HumanDecision:
        click.echo(f"\nDecision needed at {request.point.value}:")
        if request.summary:
            click.echo(request.summary)
        for issue in request.issues:
            click.echo(f"  - {issue}")
        choice = click.prompt(
            "Decision",
            type=click.Choice([option.value for option in request.options]),
            default=DecisionKind.APPROVE.value,
        )
        if choice == DecisionKind.RETRY.value:
            return HumanDecision.retry(click.prompt("Feedback", default="", show_default=False))
        if choice == DecisionKind.REJECT.value:
            return HumanDecision.reject()
        return HumanDecision.approve()

    async def answer(self, question: str) -> str | None:
        click.echo(f"\nClarifying question: {question}")
        reply = click.prompt("Answer (empty to skip)", default="", show_default=False)
        return reply.strip() or None


class _ChainedDecisions(DecisionIntake):
    """Uses the supplied decision first, then falls back to the follow-up intake."""

    def __init__(self, first: ScriptedDecisions, then: DecisionIntake) -> None:
        self.first = first
        self.then = then

    async def decide(self, request: DecisionRequest) -> HumanDecision:
        if self.first.decisions:
            return await self.first.decide(request)
        return await self.then.decide(request)

    async def answer(self, question: str) -> str | None:
        return await self.then.answer(question)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "backend_event")
    if name == "backend_fallback_success":
        logger.info("Backend event %s: %s", name, event)
    else:
        logger.warning("Backend event %s: %s", name, event)


def _log_notification(notification: ChangeNotification) -> None:
    logger.debug("%s", notification.to_json())


def _build_backend(config: ConductorConfig, repo_root: Path) -> AgentBackend:
    primary = ClaudeCodeBackend(binary=config.backend.binary, working_directory=repo_root)
    fallback = None
    if config.backend.fallback_binary:
        fallback = ClaudeCodeBackend(
            binary=config.backend.fallback_binary, working_directory=repo_root
        )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.binary,
        primary_backend=primary,
        retry_policy=policy,
        fallback_name=config.backend.fallback_binary or None,
        fallback_backend=fallback,
        event_hook=_log_backend_event,
    )


def _build_sandbox(config: ConductorConfig, repo_root: Path) -> Sandbox:
    if config.sandbox.mode == "local":
        return LocalSandbox(repo_root)
    return GitWorktreeSandbox(
        repo_root,
        worktree_root=config.sandbox.worktree_root,
        branch_prefix=config.sandbox.branch_prefix,
        primary_branch=config.sandbox.primary_branch,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = CheckpointStore(
        repo_root / config.checkpoints.directory,
        max_history=config.checkpoints.max_history,
    )
    notifications = NotificationBus()
    notifications.subscribe(_log_notification)
    backend = _build_backend(config, repo_root)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        checkpoints=CheckpointService(store, enabled=config.checkpoints.enabled),
        restoration=RestorationService(
            store,
            sink=notifications,
            max_review_attempts=config.workflow.max_review_attempts,
            max_continue_attempts=config.workflow.max_continue_attempts,
        ),
        invoker=AgentInvoker.from_backend(
            backend,
            model=config.agents.model,
            classifier_model=config.agents.classifier_model,
        ),
        sandbox=_build_sandbox(config, repo_root),
        notifications=notifications,
    )


def _orchestrator(
    runtime: Runtime, machine: TaskPhaseMachine, decisions: DecisionIntake
) -> Orchestrator:
    audit = None
    if runtime.config.checkpoints.audit:
        audit = AuditTrail(runtime.store.task_dir(machine.task_id), machine.task_id)
        runtime.notifications.subscribe(audit)
    return Orchestrator(
        machine,
        invoker=runtime.invoker,
        interpreter=build_interpreter(runtime.config.workflow.interpreter_mode, runtime.invoker),
        checkpoints=runtime.checkpoints,
        sandbox=runtime.sandbox,
        decisions=decisions,
        config=runtime.config,
        audit=audit,
    )


def _restore(runtime: Runtime, task_id: str) -> TaskPhaseMachine:
    restored = runtime.restoration.restore(task_id)
    runtime.checkpoints.resume_from(restored.checkpoint)
    return restored.machine


def _drive(orchestrator: Orchestrator) -> RunSummary:
    try:
        return asyncio.run(orchestrator.run())
    except (ConductorError, AgentTransportError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Task: {summary.task_id}")
    click.echo(f"Status: {summary.status}")
    click.echo(f"Phase: {summary.phase}")
    click.echo(f"Cycle: {summary.cycle}")
    click.echo(f"Cost: ${summary.cost_usd:.4f}")
    if summary.checkpoint_sequence is not None:
        click.echo(f"Checkpoint: #{summary.checkpoint_sequence}")
    if summary.pending_decision:
        pending = summary.pending_decision
        click.echo(f"Awaiting decision at {pending['point']}: {pending.get('summary', '')}")
        click.echo(
            f"Continue with: conductor decide {summary.task_id} "
            "(--approve | --retry FEEDBACK | --reject)"
        )


def _decisions(non_interactive: bool) -> DecisionIntake:
    return DeferredDecisions() if non_interactive else PromptDecisions()


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Conductor CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    (repo_root / config.checkpoints.directory).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Sandbox: {config.sandbox.mode}")


@cli.command("run")
@click.argument("task")
@click.option("--task-id", default=None, help="Use a fixed task id instead of a generated one.")
@click.option("--non-interactive", is_flag=True, default=False)
@click.option("--auto-merge/--no-auto-merge", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    task: str,
    task_id: str | None,
    non_interactive: bool,
    auto_merge: bool | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    if auto_merge is not None:
        runtime.config.workflow.auto_merge = auto_merge
    if not task.strip():
        raise click.ClickException("Task text must not be empty.")
    if task_id and runtime.store.last_sequence(task_id):
        raise click.ClickException(f"Task {task_id} already exists; use `conductor resume`.")

    machine = new_task_machine(
        task, runtime.config, task_id=task_id, sink=runtime.notifications
    )
    summary = _drive(_orchestrator(runtime, machine, _decisions(non_interactive)))
    _echo_summary(summary)


@cli.command("resume")
@click.argument("task_id")
@click.option("--non-interactive", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resume_command(task_id: str, non_interactive: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        machine = _restore(runtime, task_id)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Resuming {task_id} at {machine.phase.value}")
    summary = _drive(_orchestrator(runtime, machine, _decisions(non_interactive)))
    _echo_summary(summary)


@cli.command("decide")
@click.argument("task_id")
@click.option("--approve", "kind", flag_value=DecisionKind.APPROVE.value)
@click.option("--reject", "kind", flag_value=DecisionKind.REJECT.value)
@click.option("--retry", "feedback", default=None, help="Retry with this feedback.")
@click.option("--non-interactive", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def decide_command(
    task_id: str,
    kind: str | None,
    feedback: str | None,
    non_interactive: bool,
    config_value: str,
) -> None:
    if feedback is not None and kind is not None:
        raise click.UsageError("Use exactly one of --approve, --retry, --reject.")
    if feedback is not None:
        decision = HumanDecision.retry(feedback)
    elif kind == DecisionKind.REJECT.value:
        decision = HumanDecision.reject()
    elif kind == DecisionKind.APPROVE.value:
        decision = HumanDecision.approve()
    else:
        raise click.UsageError("Use exactly one of --approve, --retry, --reject.")

    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        machine = _restore(runtime, task_id)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    request = machine.context.pending_decision
    if request is None:
        raise click.ClickException(f"Task {task_id} is not waiting for a decision.")
    if decision.kind not in request.options:
        raise click.ClickException(
            f"Decision {decision.kind.value!r} is not allowed at {request.point.value}."
        )

    follow_up = _decisions(non_interactive)
    scripted = ScriptedDecisions([decision])
    intake = _ChainedDecisions(scripted, follow_up)
    summary = _drive(_orchestrator(runtime, machine, intake))
    _echo_summary(summary)


@cli.command("status")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(task_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = CheckpointStore(repo_root / config.checkpoints.directory)
    try:
        data = store.read_latest(task_id)
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    if data is None:
        raise click.ClickException(f"No checkpoint found for task {task_id}.")
    try:
        payload = Checkpoint.from_dict(data).summary()
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise click.ClickException(
            f"Checkpoint for task {task_id} is malformed: {exc!r}"
        ) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("checkpoints")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def checkpoints_command(task_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = CheckpointStore(repo_root / config.checkpoints.directory)
    entries = store.list_history(task_id)
    if not entries:
        click.echo("No checkpoints found.")
        return
    for entry in entries:
        click.echo(
            f"#{entry['sequence']:<4} {entry['created_at']} {entry['phase']:<14} {entry['trigger']}"
        )
