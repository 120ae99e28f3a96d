"""Inner execution loop: chunk, implement, review, repeat.

The loop has no terminal state. It reports completion through ``completed`` and
asks for a human through ``needs_human``; the owning task machine reacts to both.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from conductor.errors import TransitionError
from conductor.notifications import ChangeNotification, NotificationSink

logger = logging.getLogger(__name__)


class LoopState(StrEnum):
    CHUNKING = "chunking"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"


class LoopEvent(StrEnum):
    CHUNK_READY = "chunk_ready"
    WORK_COMPLETE = "work_complete"
    PROPOSED = "proposed"
    IMPLEMENTED = "implemented"
    CONTINUED = "continued"
    APPROVED = "approved"
    ALREADY_COMPLETE = "already_complete"
    REVISE = "revise"
    REJECT = "reject"
    ESCALATE = "escalate"
    HUMAN_APPROVED = "human_approved"
    HUMAN_RETRY = "human_retry"


class ReviewTarget(StrEnum):
    PROPOSAL = "proposal"
    IMPLEMENTATION = "implementation"


HUMAN_EVENTS = frozenset({LoopEvent.HUMAN_APPROVED, LoopEvent.HUMAN_RETRY})


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    chunk: dict[str, Any] | None = None
    proposal: str = ""
    review_target: ReviewTarget | None = None
    feedback: str = ""
    files: tuple[str, ...] = ()
    last_outputs: dict[str, str] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    needs_human: bool = False
    human_context: str = ""
    completed_chunks: tuple[str, ...] = ()
    completed: bool = False
    sessions: dict[str, str] = field(default_factory=dict)
    max_review_attempts: int = 7
    max_continue_attempts: int = 7

    def attempt(self, key: str) -> int:
        return self.attempts.get(key, 0)

    @property
    def chunk_description(self) -> str:
        return str(self.chunk.get("description", "")) if self.chunk else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": dict(self.chunk) if self.chunk is not None else None,
            "proposal": self.proposal,
            "review_target": self.review_target.value if self.review_target else None,
            "feedback": self.feedback,
            "files": list(self.files),
            "last_outputs": dict(self.last_outputs),
            "attempts": dict(self.attempts),
            "needs_human": self.needs_human,
            "human_context": self.human_context,
            "completed_chunks": list(self.completed_chunks),
            "completed": self.completed,
            "sessions": dict(self.sessions),
            "max_review_attempts": self.max_review_attempts,
            "max_continue_attempts": self.max_continue_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionContext:
        target = data.get("review_target")
        chunk = data.get("chunk")
        return cls(
            chunk=dict(chunk) if isinstance(chunk, dict) else None,
            proposal=str(data.get("proposal", "")),
            review_target=ReviewTarget(target) if target else None,
            feedback=str(data.get("feedback", "")),
            files=tuple(str(item) for item in data.get("files", [])),
            last_outputs={str(k): str(v) for k, v in data.get("last_outputs", {}).items()},
            attempts={str(k): int(v) for k, v in data.get("attempts", {}).items()},
            needs_human=bool(data.get("needs_human", False)),
            human_context=str(data.get("human_context", "")),
            completed_chunks=tuple(str(item) for item in data.get("completed_chunks", [])),
            completed=bool(data.get("completed", False)),
            sessions={str(k): str(v) for k, v in data.get("sessions", {}).items()},
            max_review_attempts=int(data.get("max_review_attempts", 7)),
            max_continue_attempts=int(data.get("max_continue_attempts", 7)),
        )


Outcome = tuple[LoopState, ExecutionContext]
Handler = Callable[[ExecutionContext, dict[str, Any]], Outcome]


def _with_output(ctx: ExecutionContext, role: str, payload: dict[str, Any]) -> dict[str, str]:
    output = payload.get("output")
    if output is None:
        return ctx.last_outputs
    return {**ctx.last_outputs, role: str(output)}


def _chunk_ready(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    chunk = dict(payload["chunk"])
    return LoopState.IMPLEMENTING, dataclasses.replace(
        ctx,
        chunk=chunk,
        proposal="",
        review_target=None,
        feedback="",
        files=(),
        attempts={},
        sessions={},
        last_outputs=_with_output(ctx, "chunker", payload),
    )


def _work_complete(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return LoopState.CHUNKING, dataclasses.replace(
        ctx,
        chunk=None,
        completed=True,
        last_outputs=_with_output(ctx, "chunker", payload),
    )


def _proposed(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return LoopState.REVIEWING, dataclasses.replace(
        ctx,
        proposal=str(payload.get("proposal", payload.get("output", ""))),
        review_target=ReviewTarget.PROPOSAL,
        last_outputs=_with_output(ctx, "implementer", payload),
    )


def _implemented(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return LoopState.REVIEWING, dataclasses.replace(
        ctx,
        review_target=ReviewTarget.IMPLEMENTATION,
        files=tuple(payload.get("files", ())),
        last_outputs=_with_output(ctx, "implementer", payload),
    )


def _continued(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    count = ctx.attempt("implement") + 1
    attempts = {**ctx.attempts, "implement": count}
    outputs = _with_output(ctx, "implementer", payload)
    if count > ctx.max_continue_attempts:
        return LoopState.IMPLEMENTING, dataclasses.replace(
            ctx,
            attempts=attempts,
            last_outputs=outputs,
            needs_human=True,
            human_context=(
                f"Implementation of {ctx.chunk_description!r} did not settle after "
                f"{ctx.max_continue_attempts} continuation rounds."
            ),
        )
    return LoopState.IMPLEMENTING, dataclasses.replace(ctx, attempts=attempts, last_outputs=outputs)


def _finish_chunk(ctx: ExecutionContext, outputs: dict[str, str]) -> Outcome:
    completed = ctx.completed_chunks
    if ctx.chunk_description:
        completed = (*completed, ctx.chunk_description)
    return LoopState.CHUNKING, dataclasses.replace(
        ctx,
        chunk=None,
        proposal="",
        review_target=None,
        feedback="",
        files=(),
        attempts={},
        needs_human=False,
        human_context="",
        completed_chunks=completed,
        last_outputs=outputs,
    )


def _approved(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    outputs = _with_output(ctx, "reviewer", payload)
    if ctx.review_target is ReviewTarget.PROPOSAL:
        return LoopState.IMPLEMENTING, dataclasses.replace(
            ctx,
            review_target=None,
            feedback="",
            needs_human=False,
            human_context="",
            last_outputs=outputs,
        )
    return _finish_chunk(ctx, outputs)


def _already_complete(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return _finish_chunk(ctx, _with_output(ctx, "reviewer", payload))


def _send_back(ctx: ExecutionContext, payload: dict[str, Any], *, rejected: bool) -> Outcome:
    count = ctx.attempt("review") + 1
    attempts = {**ctx.attempts, "review": count}
    outputs = _with_output(ctx, "reviewer", payload)
    feedback = str(payload.get("feedback", ""))
    if count > ctx.max_review_attempts:
        return LoopState.REVIEWING, dataclasses.replace(
            ctx,
            attempts=attempts,
            last_outputs=outputs,
            needs_human=True,
            human_context=(
                f"Chunk {ctx.chunk_description!r} was sent back {count} times "
                f"(limit {ctx.max_review_attempts}). Last feedback: {feedback}"
            ),
        )
    keep_proposal = ctx.review_target is ReviewTarget.IMPLEMENTATION and not rejected
    if rejected:
        feedback = f"The previous attempt was rejected and discarded. {feedback}".strip()
    return LoopState.IMPLEMENTING, dataclasses.replace(
        ctx,
        proposal=ctx.proposal if keep_proposal else "",
        review_target=None,
        feedback=feedback,
        files=(),
        attempts=attempts,
        last_outputs=outputs,
    )


def _revise(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return _send_back(ctx, payload, rejected=False)


def _reject(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return _send_back(ctx, payload, rejected=True)


def _escalate_in(state: LoopState) -> Handler:
    def handler(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
        return state, dataclasses.replace(
            ctx,
            needs_human=True,
            human_context=str(payload.get("reason", "")) or "Escalated without a reason.",
        )

    return handler


def _resume_in(state: LoopState) -> Handler:
    def handler(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
        counter = "implement" if state is LoopState.IMPLEMENTING else None
        attempts = dict(ctx.attempts)
        if counter:
            attempts.pop(counter, None)
        return state, dataclasses.replace(
            ctx,
            needs_human=False,
            human_context="",
            feedback=str(payload.get("feedback", ctx.feedback)),
            attempts=attempts,
        )

    return handler


def _human_approved_review(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    return _approved(dataclasses.replace(ctx, needs_human=False, human_context=""), payload)


def _human_retry_review(ctx: ExecutionContext, payload: dict[str, Any]) -> Outcome:
    keep_proposal = ctx.review_target is ReviewTarget.IMPLEMENTATION
    return LoopState.IMPLEMENTING, dataclasses.replace(
        ctx,
        proposal=ctx.proposal if keep_proposal else "",
        review_target=None,
        feedback=str(payload.get("feedback", "")),
        files=(),
        attempts={**ctx.attempts, "review": 0},
        needs_human=False,
        human_context="",
    )


TRANSITIONS: dict[tuple[LoopState, LoopEvent], Handler] = {
    (LoopState.CHUNKING, LoopEvent.CHUNK_READY): _chunk_ready,
    (LoopState.CHUNKING, LoopEvent.WORK_COMPLETE): _work_complete,
    (LoopState.IMPLEMENTING, LoopEvent.PROPOSED): _proposed,
    (LoopState.IMPLEMENTING, LoopEvent.IMPLEMENTED): _implemented,
    (LoopState.IMPLEMENTING, LoopEvent.CONTINUED): _continued,
    (LoopState.REVIEWING, LoopEvent.APPROVED): _approved,
    (LoopState.REVIEWING, LoopEvent.ALREADY_COMPLETE): _already_complete,
    (LoopState.REVIEWING, LoopEvent.REVISE): _revise,
    (LoopState.REVIEWING, LoopEvent.REJECT): _reject,
    (LoopState.REVIEWING, LoopEvent.HUMAN_APPROVED): _human_approved_review,
    (LoopState.REVIEWING, LoopEvent.HUMAN_RETRY): _human_retry_review,
}
for _state in LoopState:
    TRANSITIONS[(_state, LoopEvent.ESCALATE)] = _escalate_in(_state)
    TRANSITIONS.setdefault((_state, LoopEvent.HUMAN_APPROVED), _resume_in(_state))
    TRANSITIONS.setdefault((_state, LoopEvent.HUMAN_RETRY), _resume_in(_state))


def is_allowed(state: LoopState, event: LoopEvent, *, needs_human: bool, completed: bool) -> bool:
    """Whether ``event`` is accepted in ``state`` given the escalation and completion flags."""
    if (state, event) not in TRANSITIONS or completed:
        return False
    if needs_human:
        return event in HUMAN_EVENTS
    return event not in HUMAN_EVENTS


class ExecutionLoopMachine:
    name = "execution_loop"

    def __init__(
        self,
        task_id: str,
        *,
        state: LoopState = LoopState.CHUNKING,
        context: ExecutionContext | None = None,
        sink: NotificationSink | None = None,
    ) -> None:
        self.task_id = task_id
        self._state = state
        self._context = context or ExecutionContext()
        self.sink = sink

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def completed(self) -> bool:
        return self._context.completed

    @property
    def needs_human(self) -> bool:
        return self._context.needs_human

    def _publish(self, notification: ChangeNotification) -> None:
        if self.sink is not None:
            self.sink(notification)

    def _commit(self, state: LoopState, context: ExecutionContext, event: str) -> None:
        previous_state, previous = self._state, self._context
        self._state, self._context = state, context
        for item in dataclasses.fields(ExecutionContext):
            value = getattr(context, item.name)
            if value != getattr(previous, item.name):
                self._publish(
                    ChangeNotification.field_changed("execution", self.task_id, item.name, value)
                )
        if event:
            self._publish(
                ChangeNotification.transitioned(
                    "execution", self.task_id, previous_state.value, state.value, event
                )
            )

    def transition(self, event: LoopEvent, **payload: Any) -> LoopState:
        if not is_allowed(
            self._state,
            event,
            needs_human=self._context.needs_human,
            completed=self._context.completed,
        ):
            raise TransitionError(self.name, self._state.value, event.value)
        target, context = TRANSITIONS[(self._state, event)](self._context, payload)
        logger.info("Execution loop: %s --%s--> %s", self._state, event, target)
        self._commit(target, context, event.value)
        return target

    def set_session(self, key: str, session_id: str) -> None:
        if self._context.sessions.get(key) == session_id:
            return
        sessions = {**self._context.sessions, key: session_id}
        self._commit(self._state, dataclasses.replace(self._context, sessions=sessions), "")

    def snapshot(self) -> dict[str, Any]:
        return {"state": self._state.value, "context": self._context.to_dict()}
