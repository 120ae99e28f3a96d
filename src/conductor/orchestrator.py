from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from conductor.audit import AuditTrail
from conductor.checkpoints.service import CheckpointService
from conductor.config import ConductorConfig
from conductor.decisions import DecisionIntake, DecisionKind, DecisionPoint, DecisionRequest
from conductor.errors import (
    ConductorError,
    EscalationRequired,
    InterpretationFailure,
    SandboxError,
)
from conductor.machines.execution_loop import (
    ExecutionLoopMachine,
    LoopEvent,
    LoopState,
    ReviewTarget,
)
from conductor.machines.task_phase import (
    HUMAN_EVENT_FOR_DECISION,
    DocumentationResult,
    TaskContext,
    TaskEvent,
    TaskPhase,
    TaskPhaseMachine,
)
from conductor.notifications import NotificationSink, utc_now_iso
from conductor.protocol.extraction import extract_description
from conductor.protocol.interpreter import Interpreter
from conductor.protocol.verdicts import (
    AgentRole,
    CritiqueVerdict,
    ImplementationVerdict,
    Interpretation,
    QualityGateVerdict,
    RefinementVerdict,
    ReviewVerdict,
)
from conductor.sandbox import Sandbox
from conductor.specialists.invoker import AgentInvoker, AgentReply

logger = logging.getLogger(__name__)

REVIEW_EVENTS = {
    ReviewVerdict.APPROVE_CONTINUE: LoopEvent.APPROVED,
    ReviewVerdict.APPROVE_COMPLETE: LoopEvent.APPROVED,
    ReviewVerdict.ALREADY_COMPLETE: LoopEvent.ALREADY_COMPLETE,
    ReviewVerdict.REVISE: LoopEvent.REVISE,
    ReviewVerdict.REJECT: LoopEvent.REJECT,
    ReviewVerdict.NEEDS_HUMAN: LoopEvent.ESCALATE,
}


def new_task_id() -> str:
    return f"task-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def new_task_machine(
    task_text: str,
    config: ConductorConfig,
    *,
    task_id: str | None = None,
    sink: NotificationSink | None = None,
) -> TaskPhaseMachine:
    context = TaskContext(
        task_id=task_id or new_task_id(),
        task_text=task_text.strip(),
        max_simplifications=config.workflow.max_simplifications,
    )
    return TaskPhaseMachine(
        context,
        sink=sink,
        max_review_attempts=config.workflow.max_review_attempts,
        max_continue_attempts=config.workflow.max_continue_attempts,
    )


def _bullets(items: Any) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"


@dataclass(slots=True)
class RunSummary:
    task_id: str
    status: str
    phase: str
    started_at: str
    ended_at: str
    cycle: int
    checkpoint_sequence: int | None
    cost_usd: float
    pending_decision: dict[str, Any] | None = None


class Orchestrator:
    """Drives one task through its phases, one agent call at a time.

    Each step makes one specialist call, interprets the response, applies one transition,
    and checkpoints. Classification calls and, when enabled, commit-message calls come on
    top. A human decision point checkpoints the pending request before asking for it, so
    a run that stops with ``awaiting_decision`` resumes at exactly the same question.
    """

    def __init__(
        self,
        machine: TaskPhaseMachine,
        *,
        invoker: AgentInvoker,
        interpreter: Interpreter,
        checkpoints: CheckpointService,
        sandbox: Sandbox,
        decisions: DecisionIntake,
        config: ConductorConfig,
        audit: AuditTrail | None = None,
    ) -> None:
        self.machine = machine
        self.invoker = invoker
        self.interpreter = interpreter
        self.checkpoints = checkpoints
        self.sandbox = sandbox
        self.decisions = decisions
        self.config = config
        self.audit = audit
        self.last_sequence: int | None = None
        self.invoker.seed_sessions(machine.session_ids())

    @property
    def task_id(self) -> str:
        return self.machine.task_id

    @property
    def context(self) -> TaskContext:
        return self.machine.context

    @property
    def loop(self) -> ExecutionLoopMachine:
        if self.machine.execution is None:
            raise ConductorError(f"Task {self.task_id} has no active execution loop.")
        return self.machine.execution

    @property
    def workspace_path(self) -> Path:
        workspace = self.context.workspace
        if not workspace:
            raise ConductorError(f"Task {self.task_id} has no workspace yet.")
        return Path(workspace["path"])

    # -- plumbing ---------------------------------------------------------------------

    def _checkpoint(self, trigger: str) -> None:
        checkpoint = self.checkpoints.save(self.machine, trigger)
        if checkpoint is not None:
            self.last_sequence = checkpoint.sequence

    def _advance(self, event: TaskEvent, **payload: Any) -> None:
        self.machine.transition(event, **payload)
        self._checkpoint(event.value)

    async def _invoke(
        self,
        role: AgentRole,
        instruction: str,
        *,
        session_key: str | None = None,
        in_loop: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> AgentReply:
        session_id = None
        if session_key:
            sessions = self.loop.context.sessions if in_loop else self.context.sessions
            session_id = sessions.get(session_key) or str(uuid4())
        prompt: dict[str, Any] = {"instruction": instruction, **(extra or {})}
        if self.context.workspace:
            prompt["_working_directory"] = self.context.workspace["path"]

        with self.checkpoints.agent_call():
            reply = await self.invoker.invoke(role.value, prompt, session_id)

        if session_key and session_id:
            if in_loop:
                self.loop.set_session(session_key, session_id)
            else:
                self.machine.set_session(session_key, session_id)
        self._record_reply(reply)
        return reply

    def _record_reply(self, reply: AgentReply) -> None:
        self.machine.record_usage(
            cost_usd=reply.cost_usd,
            duration_seconds=reply.duration_seconds,
            token_usage=reply.token_usage,
        )
        if self.audit is not None:
            self.audit.record_agent_call(
                reply.role,
                cost_usd=reply.cost_usd,
                duration_seconds=reply.duration_seconds,
                token_usage=reply.token_usage,
                session_id=reply.session_id,
            )

    async def _interpret(self, role: AgentRole, raw_text: str) -> Interpretation:
        for attempt in (1, 2):
            with self.checkpoints.agent_call():
                result = await self.interpreter.interpret(
                    role, raw_text, on_reply=self._record_reply
                )
            if result is not None:
                if self.audit is not None:
                    self.audit.record_verdict(role.value, result.verdict)
                return result
            logger.warning("Could not interpret %s response (attempt %d)", role.value, attempt)
        raise InterpretationFailure(role.value)

    async def _commit_message(self, fallback: str) -> str:
        """Ask the commit writer for a subject line; any failure keeps ``fallback``."""
        if not self.config.workflow.agent_commit_messages:
            return fallback
        try:
            reply = await self._invoke(
                AgentRole.COMMIT_WRITER,
                f"Write the commit message for the uncommitted changes.\n\nWork done:\n{fallback}",
            )
        except Exception as exc:
            logger.warning("Commit message agent failed; using %r: %s", fallback, exc)
            return fallback
        for line in reply.raw_text.splitlines():
            subject = line.strip().strip("`\"'")
            if subject:
                return subject[:72]
        return fallback

    async def _sandbox_call(self, operation: str, *args: Any) -> Any:
        method = getattr(self.sandbox, operation)
        retries = self.config.sandbox.max_retries
        last_error: SandboxError | None = None
        for attempt in range(retries + 1):
            if attempt > 0:
                delay = self.config.sandbox.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning("Retrying sandbox %s in %.2fs", operation, delay)
                await asyncio.sleep(delay)
            try:
                return method(*args)
            except SandboxError as exc:
                last_error = exc
                logger.warning("Sandbox %s failed: %s", operation, exc)
        raise SandboxError(
            f"Sandbox {operation} failed after {retries + 1} attempts: {last_error}",
            operation=operation,
        ) from last_error

    # -- run loop ---------------------------------------------------------------------

    async def run(self) -> RunSummary:
        started_at = utc_now_iso()
        try:
            await self._run_steps()
        except EscalationRequired as pause:
            logger.info("Task %s is waiting for a human decision at %s", self.task_id, pause.point)
            self._close_audit("awaiting_decision")
            return self._summary("awaiting_decision", started_at)
        except Exception as exc:
            self._close_audit("failed", error=str(exc))
            raise

        self._close_audit(self.machine.phase.value)
        if self.machine.phase is TaskPhase.COMPLETE and self.config.checkpoints.archive_on_complete:
            self.checkpoints.archive(self.task_id)
        return self._summary(self.machine.phase.value, started_at)

    async def _run_steps(self) -> None:
        if self.checkpoints.enabled and self.checkpoints.last_sequence(self.task_id) == 0:
            self._checkpoint("created")
        steps = 0
        while not self.machine.is_terminal:
            steps += 1
            if steps > self.config.workflow.max_iterations:
                raise ConductorError(
                    f"Task {self.task_id} exceeded {self.config.workflow.max_iterations} steps."
                )
            if self.machine.awaiting_decision:
                await self._resolve_decision()
            else:
                await self._step()

    def _close_audit(self, status: str, *, error: str | None = None) -> None:
        if self.audit is not None:
            self.audit.complete(status, error=error)

    def _summary(self, status: str, started_at: str) -> RunSummary:
        pending = self.context.pending_decision
        return RunSummary(
            task_id=self.task_id,
            status=status,
            phase=self.machine.phase.value,
            started_at=started_at,
            ended_at=utc_now_iso(),
            cycle=self.context.cycle,
            checkpoint_sequence=self.last_sequence,
            cost_usd=float(self.context.usage.get("cost_usd", 0.0)),
            pending_decision=pending.to_dict() if pending else None,
        )

    async def _step(self) -> None:
        handlers = {
            TaskPhase.INIT: self._start,
            TaskPhase.REFINING: self._refine,
            TaskPhase.PLANNING: self._plan,
            TaskPhase.PLAN_CRITIQUE: self._critique,
            TaskPhase.EXECUTING: self._execute_step,
            TaskPhase.FINAL_REVIEW: self._final_review,
            TaskPhase.DOCUMENTING: self._document,
            TaskPhase.FINALIZING: self._finalize,
        }
        await handlers[self.machine.phase]()

    # -- task phases ------------------------------------------------------------------

    async def _start(self) -> None:
        workspace = await self._sandbox_call("ensure_isolated_workspace", self.task_id)
        self.machine.set_workspace(workspace.to_dict())
        if self.config.workflow.refine_task:
            self._advance(TaskEvent.START)
        else:
            self._advance(TaskEvent.SKIP_REFINEMENT)

    async def _refine(self) -> None:
        instruction = f"Refine this task:\n\n{self.context.task_text}"
        for _ in range(max(1, self.config.workflow.max_refinement_rounds)):
            reply = await self._invoke(AgentRole.REFINER, instruction, session_key="refiner")
            try:
                result = await self._interpret(AgentRole.REFINER, reply.raw_text)
            except InterpretationFailure:
                logger.warning("Refinement unreadable; planning from the original task")
                break
            if result.verdict is RefinementVerdict.REFINED:
                self.machine.set_refined_task(result.refined_text())
                self._advance(TaskEvent.REFINEMENT_COMPLETE)
                return
            answer = await self.decisions.answer(result.question)
            if not answer:
                break
            instruction = (
                f"Answer: {answer}\n\n"
                "Provide the refined task specification now, or ask one more question."
            )
        self._advance(TaskEvent.REFINEMENT_CANCELLED)

    async def _plan(self) -> None:
        objective, reference = self.context.planning_input()
        parts = [f"Objective:\n{objective}"]
        if reference:
            parts.append(f"Reference (background only, not the objective):\n{reference}")
        if self.context.critique_feedback:
            parts.append(f"Feedback on the previous plan:\n{self.context.critique_feedback}")
        reply = await self._invoke(
            AgentRole.PLANNER,
            "\n\n".join(parts),
            session_key=f"planner-{self.context.cycle}",
        )
        plan = reply.raw_text.strip()
        if not plan:
            logger.error("Planner returned nothing for task %s", self.task_id)
            self._advance(TaskEvent.PLAN_FAILED)
            return
        self.machine.set_plan(plan)
        self.machine.clear_retry_feedback()
        self._advance(TaskEvent.PLAN_CREATED)

    async def _critique(self) -> None:
        reply = await self._invoke(
            AgentRole.PLAN_CRITIC,
            f"Critique this plan.\n\nTask:\n{self.context.brief()}\n\nPlan:\n{self.context.plan}",
        )
        try:
            result = await self._interpret(AgentRole.PLAN_CRITIC, reply.raw_text)
        except InterpretationFailure:
            request = DecisionRequest(
                DecisionPoint.PLAN_CRITIQUE, summary="The plan critique could not be interpreted."
            )
            self._advance(TaskEvent.CRITIQUE_ESCALATED, request=request)
            return

        if result.verdict is CritiqueVerdict.APPROVE:
            self._advance(TaskEvent.CRITIQUE_APPROVED)
        elif result.verdict is CritiqueVerdict.SIMPLIFY:
            if self.context.simplification_count >= self.context.max_simplifications:
                logger.info(
                    "Simplification limit (%d) reached; accepting the current plan",
                    self.context.max_simplifications,
                )
                self._advance(TaskEvent.CRITIQUE_APPROVED)
            else:
                self._advance(TaskEvent.CRITIQUE_SIMPLIFY, feedback=result.feedback)
        else:
            request = DecisionRequest(
                DecisionPoint.PLAN_CRITIQUE, summary=result.feedback, issues=result.issues
            )
            self._advance(TaskEvent.CRITIQUE_ESCALATED, request=request)

    async def _final_review(self) -> None:
        reply = await self._invoke(
            AgentRole.QUALITY_GATE,
            f"Review the completed work.\n\nTask:\n{self.context.brief()}\n\n"
            f"Plan:\n{self.context.plan}",
        )
        try:
            result = await self._interpret(AgentRole.QUALITY_GATE, reply.raw_text)
        except InterpretationFailure:
            request = DecisionRequest(
                DecisionPoint.FINAL_REVIEW, summary="The final review could not be interpreted."
            )
            self._advance(TaskEvent.REVIEW_ESCALATED, request=request)
            return

        if result.verdict is QualityGateVerdict.APPROVE:
            self._advance(TaskEvent.REVIEW_PASSED, final_review=result)
        else:
            request = DecisionRequest(
                DecisionPoint.FINAL_REVIEW, summary=result.summary, issues=result.issues
            )
            self._advance(TaskEvent.REVIEW_ESCALATED, request=request, final_review=result)

    async def _document(self) -> None:
        try:
            reply = await self._invoke(
                AgentRole.DOCUMENTER,
                "Update the project documentation for the completed task.\n\n"
                f"Task:\n{self.context.brief()}\n\n"
                f"Plan:\n{self.context.plan}",
            )
            if reply.raw_text.strip():
                message = await self._commit_message("Update documentation")
                await self._sandbox_call("commit", self.workspace_path, message)
                result = DocumentationResult(True, summary=extract_description(reply.raw_text))
            else:
                result = DocumentationResult(False, error="Documentation agent returned nothing.")
        except Exception as exc:
            logger.exception("Documentation update failed for task %s", self.task_id)
            result = DocumentationResult(False, error=str(exc))
        self._advance(TaskEvent.DOCUMENTATION_DONE, documentation=result)

    async def _finalize(self) -> None:
        if self.config.workflow.auto_merge:
            await self._sandbox_call("merge_to_primary", self.task_id, self.workspace_path)
            await self._sandbox_call("cleanup", self.task_id, self.workspace_path)
        self._advance(TaskEvent.FINALIZED)

    # -- human decisions --------------------------------------------------------------

    async def _resolve_decision(self) -> None:
        request = self.context.pending_decision
        assert request is not None
        decision = await self.decisions.decide(request)
        logger.info("Human decision at %s: %s", request.point.value, decision.kind.value)

        if request.point is DecisionPoint.EXECUTION:
            if decision.kind is DecisionKind.REJECT:
                self._advance(TaskEvent.HUMAN_ABANDON)
                return
            self.machine.clear_decision()
            if decision.kind is DecisionKind.APPROVE:
                await self._loop_transition(LoopEvent.HUMAN_APPROVED)
            else:
                await self._loop_transition(LoopEvent.HUMAN_RETRY, feedback=decision.feedback)
            return

        feedback = decision.feedback
        if decision.kind is DecisionKind.RETRY and not feedback:
            feedback = self._default_retry_feedback(request)
        self._advance(HUMAN_EVENT_FOR_DECISION[decision.kind], feedback=feedback)

    def _default_retry_feedback(self, request: DecisionRequest) -> str:
        lines = [request.summary or "Address the review findings."]
        lines.extend(f"- {issue}" for issue in request.issues)
        return "\n".join(lines)

    # -- execution loop ---------------------------------------------------------------

    async def _loop_transition(self, event: LoopEvent, **payload: Any) -> None:
        loop = self.loop
        reviewed_code = (
            loop.state is LoopState.REVIEWING
            and loop.context.review_target is ReviewTarget.IMPLEMENTATION
        )
        if reviewed_code and event is LoopEvent.REJECT:
            await self._sandbox_call("discard_changes", self.workspace_path)
        if reviewed_code and event in (
            LoopEvent.APPROVED,
            LoopEvent.ALREADY_COMPLETE,
            LoopEvent.HUMAN_APPROVED,
        ):
            message = await self._commit_message(
                loop.context.chunk_description or "Complete chunk"
            )
            await self._sandbox_call("commit", self.workspace_path, message)
        loop.transition(event, **payload)
        self._checkpoint(f"execution:{event.value}")

    async def _execute_step(self) -> None:
        loop = self.loop
        if loop.completed:
            self._advance(TaskEvent.EXECUTION_COMPLETE)
            return
        if loop.needs_human:
            self.machine.request_decision(
                DecisionRequest(DecisionPoint.EXECUTION, summary=loop.context.human_context)
            )
            self._checkpoint("execution:awaiting_decision")
            return
        if loop.state is LoopState.CHUNKING:
            await self._chunk()
        elif loop.state is LoopState.IMPLEMENTING:
            await self._implement()
        else:
            await self._review()

    def _chunk_brief(self) -> str:
        chunk = self.loop.context.chunk or {}
        parts = [f"Chunk: {chunk.get('description', '')}"]
        if chunk.get("requirements"):
            parts.append(f"Requirements:\n{_bullets(chunk['requirements'])}")
        if chunk.get("context"):
            parts.append(f"Context:\n{chunk['context']}")
        return "\n\n".join(parts)

    async def _chunk(self) -> None:
        loop = self.loop
        done = loop.context.completed_chunks
        if done:
            instruction = (
                f"Completed so far:\n{_bullets(done)}\n\n"
                "Provide the next chunk, or TASK_COMPLETE if the plan is fully implemented."
            )
        else:
            instruction = f"Plan:\n{self.context.plan}\n\nProvide the first chunk of work."
        if loop.context.feedback:
            instruction += f"\n\nGuidance:\n{loop.context.feedback}"
        reply = await self._invoke(
            AgentRole.CHUNKER, instruction, session_key=f"chunker-{self.context.cycle}"
        )
        try:
            result = await self._interpret(AgentRole.CHUNKER, reply.raw_text)
        except InterpretationFailure:
            await self._loop_transition(
                LoopEvent.ESCALATE, reason="The chunking response could not be interpreted."
            )
            return

        if result.is_complete:
            loop.transition(LoopEvent.WORK_COMPLETE, output=reply.raw_text)
            self._advance(TaskEvent.EXECUTION_COMPLETE)
        else:
            await self._loop_transition(
                LoopEvent.CHUNK_READY, chunk=result.as_chunk(), output=reply.raw_text
            )

    async def _implement(self) -> None:
        context = self.loop.context
        if context.proposal:
            instruction = (
                f"[IMPLEMENTATION MODE]\n\n{self._chunk_brief()}\n\n"
                f"Your approved proposal:\n{context.proposal}\n\n"
                "Implement it now and list the files you changed."
            )
        else:
            instruction = (
                f"[PLAN MODE]\n\n{self._chunk_brief()}\n\n"
                "Propose how you will implement this chunk. Do not modify files yet."
            )
        if context.attempt("implement"):
            instruction = f"Continue where you left off.\n\n{instruction}"
        if context.feedback:
            instruction += f"\n\nFeedback:\n{context.feedback}"

        reply = await self._invoke(
            AgentRole.IMPLEMENTER, instruction, session_key="implementer", in_loop=True
        )
        try:
            result = await self._interpret(AgentRole.IMPLEMENTER, reply.raw_text)
        except InterpretationFailure:
            await self._loop_transition(
                LoopEvent.ESCALATE, reason="The implementation response could not be interpreted."
            )
            return

        if result.verdict is ImplementationVerdict.PROPOSE:
            await self._loop_transition(
                LoopEvent.PROPOSED, proposal=reply.raw_text, output=reply.raw_text
            )
        elif result.verdict is ImplementationVerdict.IMPLEMENTED:
            await self._loop_transition(
                LoopEvent.IMPLEMENTED, files=result.files, output=reply.raw_text
            )
        else:
            await self._loop_transition(LoopEvent.CONTINUED, output=reply.raw_text)

    async def _review(self) -> None:
        context = self.loop.context
        if context.review_target is ReviewTarget.PROPOSAL:
            instruction = (
                f"Review this proposed approach before any file is changed.\n\n"
                f"{self._chunk_brief()}\n\nProposal:\n{context.proposal}"
            )
        else:
            instruction = (
                f"Review the applied implementation.\n\n{self._chunk_brief()}\n\n"
                f"Implementer report:\n{context.last_outputs.get('implementer', '')}\n\n"
                f"Files changed:\n{_bullets(context.files)}"
            )
        reply = await self._invoke(
            AgentRole.REVIEWER, instruction, session_key="reviewer", in_loop=True
        )
        try:
            result = await self._interpret(AgentRole.REVIEWER, reply.raw_text)
        except InterpretationFailure:
            await self._loop_transition(
                LoopEvent.ESCALATE, reason="The review response could not be interpreted."
            )
            return

        event = REVIEW_EVENTS[result.verdict]
        feedback = result.feedback
        if result.issues:
            feedback = f"{feedback}\n{_bullets(result.issues)}".strip()
        if event is LoopEvent.ESCALATE:
            await self._loop_transition(event, reason=feedback, output=reply.raw_text)
        elif event in (LoopEvent.REVISE, LoopEvent.REJECT):
            await self._loop_transition(event, feedback=feedback, output=reply.raw_text)
        else:
            await self._loop_transition(event, output=reply.raw_text)
