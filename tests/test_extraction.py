from conductor.protocol.extraction import (
    MAX_DESCRIPTION_LENGTH,
    extract_description,
    extract_files,
    extract_issues,
    extract_question,
    extract_section,
    extract_steps,
    is_garbled,
    normalize_signal,
)


def test_normalize_signal_folds_case_spaces_and_hyphens() -> None:
    assert normalize_signal("  Approve-Complete ") == "approve_complete"
    assert normalize_signal("NEEDS HUMAN") == "needs_human"


def test_is_garbled_requires_some_letters() -> None:
    assert is_garbled("{}[]--- 123")
    assert not is_garbled("ok")


def test_description_prefers_labelled_line() -> None:
    text = "Some preamble that is long enough to count.\nSummary: Add the tokenizer"

    assert extract_description(text) == "Add the tokenizer"


def test_description_falls_back_to_first_substantial_sentence() -> None:
    text = "Sure. Add a streaming tokenizer to the parser module. Then test it."

    assert extract_description(text) == "Add a streaming tokenizer to the parser module."


def test_description_is_bounded_and_tolerates_short_text() -> None:
    assert extract_description("Done.") == "Done."
    assert extract_description("") == ""
    assert len(extract_description("x" * 2000)) == MAX_DESCRIPTION_LENGTH


def test_extract_files_by_extension_and_prefix() -> None:
    text = (
        "Changed src/conductor/cli.py, README.md and tests/test_cli.py.\n"
        "Also touched scripts/release and see https://example.com/a.py for context."
    )

    files = extract_files(text)

    assert files == ["src/conductor/cli.py", "README.md", "tests/test_cli.py", "scripts/release"]


def test_extract_steps_reads_numbered_and_bulleted_lines() -> None:
    text = "Plan:\n1. Parse input\n2) Validate\n- Write tests\nNot a step"

    assert extract_steps(text) == ["Parse input", "Validate", "Write tests"]


def test_extract_question_order_of_preference() -> None:
    assert extract_question("Question: Which database?") == "Which database?"
    assert extract_question("I looked around. Should the CLI be async? Thanks.") == (
        "Should the CLI be async?"
    )
    assert extract_question("The task mentions an unnamed integration target.") == (
        "The task mentions an unnamed integration target."
    )


def test_extract_issues_only_reads_marked_lines() -> None:
    text = "VERDICT: needs_human\nISSUE: tests fail\n- Issue: docs stale\nissues are fine otherwise"

    assert extract_issues(text) == ["tests fail", "docs stale"]


def test_extract_section_reads_markdown_heading_body() -> None:
    text = "## Goal\nShip it\n\n## Constraints\nNo new deps\n"

    assert extract_section(text, "Goal") == "Ship it"
    assert extract_section(text, "constraints") == "No new deps"
    assert extract_section(text, "Context") == ""
