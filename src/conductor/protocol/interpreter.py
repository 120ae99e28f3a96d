from __future__ import annotations

import dataclasses
import json
import logging
import re
from collections.abc import Callable
from typing import Any, Protocol

from conductor.protocol.extraction import (
    extract_description,
    extract_files,
    extract_issues,
    extract_question,
    extract_section,
    extract_steps,
    is_garbled,
    labelled_value,
    normalize_signal,
)
from conductor.protocol.verdicts import (
    SAFE_DEFAULTS,
    VOCABULARY,
    AgentRole,
    ChunkInterpretation,
    CritiqueInterpretation,
    ImplementationInterpretation,
    Interpretation,
    QualityGateInterpretation,
    RefinementInterpretation,
    RefinementVerdict,
    ReviewInterpretation,
)
from conductor.specialists.invoker import AgentInvoker, AgentReply

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*$", re.MULTILINE)


ReplyHook = Callable[[AgentReply], None]


class Interpreter(Protocol):
    async def interpret(
        self,
        role: AgentRole | str,
        raw_text: str,
        *,
        on_reply: ReplyHook | None = None,
    ) -> Interpretation | None: ...


def _interpreted_role(role: AgentRole | str) -> AgentRole:
    resolved = AgentRole(role)
    if resolved not in VOCABULARY:
        raise ValueError(f"Role {resolved.value!r} has no interpretation vocabulary.")
    return resolved


def role_keywords(role: AgentRole) -> list[str]:
    return [verdict.value for verdict in type(SAFE_DEFAULTS[role])]


def match_verdict(role: AgentRole, signal: str) -> Any:
    """Map a keyword signal to the role's verdict; first vocabulary match wins."""
    normalized = normalize_signal(signal)
    for keyword, verdict in VOCABULARY[role]:
        if keyword in normalized:
            return verdict
    return SAFE_DEFAULTS[role]


def build_interpretation(role: AgentRole, verdict: Any, raw_text: str) -> Interpretation:
    if role is AgentRole.CHUNKER:
        return ChunkInterpretation(
            verdict=verdict,
            description=extract_description(raw_text),
            requirements=tuple(extract_steps(raw_text)),
            context=labelled_value(raw_text, "context") or extract_section(raw_text, "Context"),
        )
    if role is AgentRole.IMPLEMENTER:
        return ImplementationInterpretation(
            verdict=verdict,
            description=extract_description(raw_text),
            steps=tuple(extract_steps(raw_text)),
            files=tuple(extract_files(raw_text)),
        )
    if role is AgentRole.REVIEWER:
        return ReviewInterpretation(
            verdict=verdict,
            feedback=labelled_value(raw_text, "feedback") or extract_description(raw_text),
            issues=tuple(extract_issues(raw_text)),
        )
    if role is AgentRole.QUALITY_GATE:
        return QualityGateInterpretation(
            verdict=verdict,
            summary=labelled_value(raw_text, "summary") or extract_description(raw_text),
            issues=tuple(extract_issues(raw_text)),
        )
    if role is AgentRole.PLAN_CRITIC:
        return CritiqueInterpretation(
            verdict=verdict,
            feedback=labelled_value(raw_text, "feedback") or extract_description(raw_text),
            issues=tuple(extract_issues(raw_text)),
        )
    return RefinementInterpretation(
        verdict=verdict,
        goal=extract_section(raw_text, "Goal"),
        context=extract_section(raw_text, "Context"),
        constraints=extract_section(raw_text, "Constraints"),
        success_criteria=extract_section(raw_text, "Success Criteria"),
        question=extract_question(raw_text) if verdict is RefinementVerdict.QUESTION else "",
        raw=raw_text.strip(),
    )


class ResponseInterpreter:
    """Turns free-form agent text into a typed decision in two stages.

    Stage one asks the classifier agent, in a fresh session, for a single keyword
    and matches it against the role's vocabulary. Stage two pulls supplementary
    fields out of the original text with heuristics. Nothing is remembered between
    calls.

    ``interpret`` returns ``None`` instead of raising when the text is empty or
    garbled, when the classification call fails, or when its output is unusable.
    The classifier reply is handed to ``on_reply`` so callers can account for it.
    """

    def __init__(self, invoker: AgentInvoker) -> None:
        self.invoker = invoker

    @staticmethod
    def classification_instruction(role: AgentRole, raw_text: str) -> str:
        keywords = ", ".join(role_keywords(role))
        return (
            f"Classify the following response from the {role.value} agent.\n"
            f"Answer with exactly one keyword from: {keywords}.\n\n"
            f"Response:\n{raw_text}"
        )

    async def _classify(
        self, role: AgentRole, raw_text: str, on_reply: ReplyHook | None
    ) -> str | None:
        try:
            reply = await self.invoker.invoke(
                AgentRole.CLASSIFIER.value,
                {"instruction": self.classification_instruction(role, raw_text)},
                None,
            )
        except Exception as exc:
            logger.warning("Classification call for %s failed: %s", role.value, exc)
            return None
        if on_reply is not None:
            on_reply(reply)
        signal = reply.raw_text.strip()
        if not signal or is_garbled(signal):
            logger.warning("Classification output for %s is unusable: %r", role.value, signal)
            return None
        return signal

    async def interpret(
        self,
        role: AgentRole | str,
        raw_text: str,
        *,
        on_reply: ReplyHook | None = None,
    ) -> Interpretation | None:
        resolved = _interpreted_role(role)
        if not raw_text or not raw_text.strip() or is_garbled(raw_text):
            logger.warning("Empty or garbled %s response; nothing to interpret.", resolved.value)
            return None
        signal = await self._classify(resolved, raw_text, on_reply)
        if signal is None:
            return None
        verdict = match_verdict(resolved, signal)
        logger.debug("Signal %r for %s resolved to %s.", signal, resolved.value, verdict)
        return build_interpretation(resolved, verdict, raw_text)


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    unfenced = _CODE_FENCE.sub("", raw_text).strip()
    try:
        parsed = json.loads(unfenced)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        payloads.append(parsed)
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and parsed not in payloads:
            payloads.append(parsed)
    return payloads


class StrictSchemaInterpreter:
    """Reads decisions from a JSON object in the agent response.

    For agents that already answer with ``{"verdict": ...}`` or ``{"action": ...}``.
    The value must name one of the role's verdicts exactly; anything else is
    unparseable and yields ``None``. JSON fields override heuristic ones.
    """

    async def interpret(
        self,
        role: AgentRole | str,
        raw_text: str,
        *,
        on_reply: ReplyHook | None = None,
    ) -> Interpretation | None:
        resolved = _interpreted_role(role)
        if not raw_text or not raw_text.strip():
            return None
        verdicts = {verdict.value: verdict for verdict in type(SAFE_DEFAULTS[resolved])}
        for payload in extract_json_objects(raw_text):
            raw_verdict = payload.get("verdict", payload.get("action", payload.get("type")))
            if not isinstance(raw_verdict, str):
                continue
            verdict = verdicts.get(normalize_signal(raw_verdict))
            if verdict is None:
                continue
            interpretation = build_interpretation(resolved, verdict, raw_text)
            overrides: dict[str, Any] = {}
            for item in dataclasses.fields(interpretation):
                if item.name == "verdict" or item.name not in payload:
                    continue
                value = payload[item.name]
                if isinstance(value, list):
                    overrides[item.name] = tuple(str(entry) for entry in value)
                elif isinstance(value, str):
                    overrides[item.name] = value
            return dataclasses.replace(interpretation, **overrides)
        logger.warning("No %s verdict found in strict response.", resolved.value)
        return None


def build_interpreter(mode: str, invoker: AgentInvoker) -> Interpreter:
    if mode == "strict":
        return StrictSchemaInterpreter()
    if mode == "natural":
        return ResponseInterpreter(invoker)
    raise ValueError(f"Unknown interpreter mode: {mode!r}")
