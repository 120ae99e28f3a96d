import asyncio
from typing import Any

import pytest

from conductor.protocol import (
    AgentRole,
    ChunkVerdict,
    CritiqueVerdict,
    ImplementationVerdict,
    QualityGateVerdict,
    RefinementVerdict,
    ResponseInterpreter,
    ReviewVerdict,
    StrictSchemaInterpreter,
    build_interpreter,
)
from conductor.protocol.interpreter import extract_json_objects, match_verdict
from conductor.protocol.verdicts import SAFE_DEFAULTS, VOCABULARY
from conductor.specialists import AgentInvoker, AgentReply


class FakeClassifierInvoker(AgentInvoker):
    def __init__(self, signal: str | None = None, *, fail: bool = False) -> None:
        super().__init__({})
        self.signal = signal
        self.fail = fail
        self.calls: list[tuple[str, dict[str, Any], str | None]] = []

    async def invoke(
        self,
        role: str,
        prompt_context: dict[str, Any],
        session_id: str | None = None,
    ) -> AgentReply:
        self.calls.append((role, prompt_context, session_id))
        if self.fail:
            raise RuntimeError("classifier offline")
        return AgentReply(role=role, raw_text=self.signal or "")


def _interpret(invoker: AgentInvoker, role: AgentRole, raw_text: str) -> Any:
    return asyncio.run(ResponseInterpreter(invoker).interpret(role, raw_text))


def test_classifier_signal_selects_verdict_and_fields_come_from_raw_text() -> None:
    invoker = FakeClassifierInvoker("Approve-Complete")
    raw = "Looks right to me overall.\nFeedback: nice work\nIssue: missing docstring"

    result = _interpret(invoker, AgentRole.REVIEWER, raw)

    assert result.verdict is ReviewVerdict.APPROVE_COMPLETE
    assert result.feedback == "nice work"
    assert result.issues == ("missing docstring",)
    role, prompt, session_id = invoker.calls[0]
    assert role == "classifier"
    assert session_id is None
    assert "approve_continue" in prompt["instruction"]
    assert raw in prompt["instruction"]


def test_first_vocabulary_match_wins() -> None:
    assert match_verdict(AgentRole.REVIEWER, "reject or revise") is ReviewVerdict.REJECT
    assert match_verdict(AgentRole.REVIEWER, "approve") is ReviewVerdict.APPROVE_CONTINUE
    assert match_verdict(AgentRole.REVIEWER, "NEEDS HUMAN input") is ReviewVerdict.NEEDS_HUMAN
    assert match_verdict(AgentRole.CHUNKER, "Task complete") is ChunkVerdict.TASK_COMPLETE
    assert match_verdict(AgentRole.IMPLEMENTER, "implemented") is (
        ImplementationVerdict.IMPLEMENTED
    )


@pytest.mark.parametrize(
    ("role", "default"),
    [
        (AgentRole.CHUNKER, ChunkVerdict.WORK_CHUNK),
        (AgentRole.IMPLEMENTER, ImplementationVerdict.CONTINUE),
        (AgentRole.REVIEWER, ReviewVerdict.NEEDS_HUMAN),
        (AgentRole.QUALITY_GATE, QualityGateVerdict.NEEDS_HUMAN),
        (AgentRole.PLAN_CRITIC, CritiqueVerdict.NEEDS_HUMAN),
        (AgentRole.REFINER, RefinementVerdict.QUESTION),
    ],
)
def test_unmatched_signal_falls_back_to_safe_default(role: AgentRole, default: Any) -> None:
    result = _interpret(FakeClassifierInvoker("banana"), role, "Some substantial agent answer.")

    assert result.verdict is default
    assert SAFE_DEFAULTS[role] is default


def test_every_vocabulary_verdict_belongs_to_its_role() -> None:
    for role, entries in VOCABULARY.items():
        verdict_type = type(SAFE_DEFAULTS[role])
        assert {verdict for _, verdict in entries} <= set(verdict_type)
        assert {verdict.value for verdict in verdict_type} <= {keyword for keyword, _ in entries}


@pytest.mark.parametrize("raw", ["", "   \n", "{}[] 123 ---"])
def test_empty_or_garbled_text_returns_none_without_classifying(raw: str) -> None:
    invoker = FakeClassifierInvoker("approve")

    assert _interpret(invoker, AgentRole.REVIEWER, raw) is None
    assert invoker.calls == []


def test_classifier_failure_or_unusable_output_returns_none() -> None:
    text = "I approve this change."

    assert _interpret(FakeClassifierInvoker(fail=True), AgentRole.REVIEWER, text) is None
    assert _interpret(FakeClassifierInvoker(""), AgentRole.REVIEWER, text) is None
    assert _interpret(FakeClassifierInvoker("???"), AgentRole.REVIEWER, text) is None


def test_classifier_reply_is_handed_to_the_caller_even_when_unusable() -> None:
    seen: list[AgentReply] = []
    interpreter = ResponseInterpreter(FakeClassifierInvoker("???"))

    result = asyncio.run(
        interpreter.interpret(AgentRole.REVIEWER, "I approve this change.", on_reply=seen.append)
    )
    skipped = asyncio.run(interpreter.interpret(AgentRole.REVIEWER, "   ", on_reply=seen.append))

    assert result is None and skipped is None
    assert [reply.role for reply in seen] == ["classifier"]


def test_interpretation_is_idempotent() -> None:
    invoker = FakeClassifierInvoker("work_chunk")
    raw = (
        "Description: Add the tokenizer module\n"
        "- Read tokens from src/parser/tokens.py\n"
        "- Cover edge cases in tests/test_tokens.py\n"
        "Context: the grammar is LL(1)"
    )

    first = _interpret(invoker, AgentRole.CHUNKER, raw)
    second = _interpret(invoker, AgentRole.CHUNKER, raw)

    assert first == second
    assert first.description == "Add the tokenizer module"
    assert first.requirements == (
        "Read tokens from src/parser/tokens.py",
        "Cover edge cases in tests/test_tokens.py",
    )
    assert first.context == "the grammar is LL(1)"
    assert first.as_chunk()["description"] == "Add the tokenizer module"


def test_implementation_files_and_refinement_sections() -> None:
    implemented = _interpret(
        FakeClassifierInvoker("implemented"),
        AgentRole.IMPLEMENTER,
        "Implemented the change in src/app/main.py and docs/usage.md.",
    )
    refined = _interpret(
        FakeClassifierInvoker("refined"),
        AgentRole.REFINER,
        "## Goal\nAdd login\n\n## Success Criteria\nUsers can sign in\n",
    )
    question = _interpret(
        FakeClassifierInvoker("question"),
        AgentRole.REFINER,
        "Before refining: which identity provider should be used?",
    )

    assert implemented.files == ("src/app/main.py", "docs/usage.md")
    assert refined.refined_text() == "## Goal\nAdd login\n\n## Success Criteria\nUsers can sign in"
    assert question.question == "Before refining: which identity provider should be used?"


def test_uninterpreted_roles_are_rejected() -> None:
    with pytest.raises(ValueError):
        _interpret(FakeClassifierInvoker("approve"), AgentRole.PLANNER, "A plan.")
    with pytest.raises(ValueError):
        _interpret(FakeClassifierInvoker("approve"), AgentRole.COMMIT_WRITER, "Add lexer")


def test_strict_interpreter_reads_exact_json_verdicts() -> None:
    interpreter = StrictSchemaInterpreter()
    payload = '{"verdict": "revise", "feedback": "split the function", "issues": ["long"]}'
    raw = f"```json\n{payload}\n```"

    result = asyncio.run(interpreter.interpret(AgentRole.REVIEWER, raw))
    unknown = asyncio.run(interpreter.interpret(AgentRole.REVIEWER, '{"verdict": "maybe"}'))
    prose = asyncio.run(interpreter.interpret(AgentRole.REVIEWER, "I approve."))

    assert result.verdict is ReviewVerdict.REVISE
    assert result.feedback == "split the function"
    assert result.issues == ("long",)
    assert unknown is None
    assert prose is None


def test_extract_json_objects_reads_whole_text_and_lines() -> None:
    raw = 'Thinking...\n{"action": "propose"}\nnot json {\n{"action": "implemented"}'

    assert extract_json_objects(raw) == [{"action": "propose"}, {"action": "implemented"}]


def test_build_interpreter_modes() -> None:
    invoker = FakeClassifierInvoker("approve")

    assert isinstance(build_interpreter("natural", invoker), ResponseInterpreter)
    assert isinstance(build_interpreter("strict", invoker), StrictSchemaInterpreter)
    with pytest.raises(ValueError):
        build_interpreter("fuzzy", invoker)
