from agent_council.models import Agent
from agent_council.protocol import (
    ADVISOR_REVIEW,
    EXECUTION_REVIEW,
    EXECUTION_REVIEW_REQUEST_PREFIX,
    MAX_RAW_FEEDBACK_CHARS,
    build_advisor_review_summary,
    build_execution_review_prompt,
    extract_between_markers,
    format_block,
    parse_advisor_review,
    parse_ceo_verdict,
    parse_execution_review,
)


ADVISOR_APPROVE = """Looks fine overall.
=== ADVISOR_REVIEW_START ===
DECISION: APPROVE
CONFIDENCE: high
RATIONALE:
- Scope is clear
- Tests are specified
RISKS:
- None significant
=== ADVISOR_REVIEW_END ===
"""


def test_extract_between_markers_requires_both_markers_and_a_body() -> None:
    assert extract_between_markers("A body B", "A", "B") == "body"
    assert extract_between_markers("A body", "A", "B") is None
    assert extract_between_markers("body B", "A", "B") is None
    assert extract_between_markers("A   \n  B", "A", "B") is None


def test_valid_advisor_review_is_parsed_with_uppercased_scalars() -> None:
    parsed = parse_advisor_review(ADVISOR_APPROVE)
    assert parsed.valid
    assert parsed.errors == ()
    assert parsed.decision == "APPROVE"
    assert parsed.scalar("CONFIDENCE") == "HIGH"
    assert parsed.list_items("RATIONALE") == ("Scope is clear", "Tests are specified")
    assert parsed.list_items("RISKS") == ("None significant",)
    assert parsed.list_items("REQUIRED_CHANGES") == ()
    assert parsed.raw_text == ADVISOR_APPROVE


def test_missing_markers_yield_single_error_and_keep_raw_text() -> None:
    parsed = parse_advisor_review("I approve this plan.")
    assert not parsed.valid
    assert parsed.errors == ("Missing ADVISOR_REVIEW markers",)
    assert parsed.raw_text == "I approve this plan."
    assert parsed.decision is None


def test_invalid_decision_value_lists_expected_values() -> None:
    text = """=== ADVISOR_REVIEW_START ===
DECISION: MAYBE
CONFIDENCE: LOW
RATIONALE:
- unsure
=== ADVISOR_REVIEW_END ==="""
    parsed = parse_advisor_review(text)
    assert not parsed.valid
    assert "Invalid DECISION value: 'MAYBE'. Expected: APPROVE, REVISE, or REJECT" in parsed.errors
    assert parsed.scalars == {}


def test_missing_fields_and_empty_required_list_are_all_reported() -> None:
    text = """=== ADVISOR_REVIEW_START ===
RATIONALE:
=== ADVISOR_REVIEW_END ==="""
    parsed = parse_advisor_review(text)
    assert parsed.errors == (
        "Missing DECISION field",
        "Missing CONFIDENCE field",
        "RATIONALE must have at least 1 item",
    )


def test_revise_requires_required_changes() -> None:
    text = """=== ADVISOR_REVIEW_START ===
DECISION: REVISE
CONFIDENCE: MEDIUM
RATIONALE:
- Missing error handling
=== ADVISOR_REVIEW_END ==="""
    parsed = parse_advisor_review(text)
    assert not parsed.valid
    assert parsed.errors == ("REVISE decision requires at least 1 REQUIRED_CHANGES item",)


def test_inline_list_value_counts_as_item_unless_bulleted() -> None:
    text = """=== ADVISOR_REVIEW_START ===
DECISION: REVISE
CONFIDENCE: MEDIUM
RATIONALE: the plan skips migrations
REQUIRED_CHANGES: - ignored inline bullet
* Add a migration step
RISKS:
=== ADVISOR_REVIEW_END ==="""
    parsed = parse_advisor_review(text)
    assert parsed.valid
    assert parsed.list_items("RATIONALE") == ("the plan skips migrations",)
    assert parsed.list_items("REQUIRED_CHANGES") == ("Add a migration step",)
    assert parsed.list_items("RISKS") == ()


def test_execution_review_revise_requires_next_steps() -> None:
    body = format_block(EXECUTION_REVIEW, "REVISE", {"RATIONALE": ["tests fail"], "ISSUES": ["3 failures"]})
    parsed = parse_execution_review(body)
    assert parsed.errors == ("REVISE verdict requires at least 1 NEXT_STEPS item",)

    fixed = format_block(
        EXECUTION_REVIEW,
        "REVISE",
        {"RATIONALE": ["tests fail"], "NEXT_STEPS": ["fix the parser"]},
        confidence="LOW",
    )
    parsed = parse_execution_review(fixed)
    assert parsed.valid
    assert parsed.decision == "REVISE"
    assert parsed.scalar("CONFIDENCE") == "LOW"
    assert parsed.list_items("NEXT_STEPS") == ("fix the parser",)


def test_ceo_verdict_accepts_fail() -> None:
    text = """=== CEO_VERDICT_START ===
VERDICT: fail
CONFIDENCE: HIGH
RATIONALE:
- The build cannot satisfy the intent
=== CEO_VERDICT_END ==="""
    parsed = parse_ceo_verdict(text)
    assert parsed.valid
    assert parsed.decision == "FAIL"


def test_format_block_reads_back_through_parser() -> None:
    text = format_block(ADVISOR_REVIEW, "APPROVE", {"RATIONALE": ["ok"]}, confidence="MEDIUM")
    parsed = parse_advisor_review(text)
    assert parsed.valid
    assert parsed.decision == "APPROVE"
    assert parsed.list_items("RATIONALE") == ("ok",)


def test_review_summary_shows_valid_fields_and_truncated_raw_feedback() -> None:
    invalid_text = "x" * (MAX_RAW_FEEDBACK_CHARS + 50)
    summary = build_advisor_review_summary(
        {
            Agent.GEMINI: parse_advisor_review(invalid_text),
            Agent.CLAUDE: parse_advisor_review(ADVISOR_APPROVE),
        }
    )
    assert summary.startswith("=== ADVISOR REVIEWS SUMMARY ===")
    assert summary.endswith("=== END ADVISOR REVIEWS SUMMARY ===")
    assert "Claude (VALID):" in summary
    assert "  DECISION: APPROVE" in summary
    assert "  RISKS: None significant" in summary
    assert "Gemini (INVALID_SCHEMA):" in summary
    assert "x" * MAX_RAW_FEEDBACK_CHARS + "..." in summary
    assert "x" * (MAX_RAW_FEEDBACK_CHARS + 1) not in summary
    # Display order puts Claude ahead of Gemini.
    assert summary.index("Claude") < summary.index("Gemini")


def test_execution_review_prompt_embeds_prompt_and_results() -> None:
    prompt = build_execution_review_prompt("Build a CLI", "All tests passed")
    assert prompt.startswith(EXECUTION_REVIEW_REQUEST_PREFIX)
    assert "Build a CLI" in prompt
    assert "All tests passed" in prompt
    assert EXECUTION_REVIEW.start_marker in prompt
    assert EXECUTION_REVIEW.end_marker in prompt


def test_revise_block_with_two_required_changes_reads_back() -> None:
    changes = ["Add retries to the client", "Document the config flags"]
    text = format_block(ADVISOR_REVIEW, "REVISE", {"RATIONALE": ["incomplete"], "REQUIRED_CHANGES": changes})
    parsed = parse_advisor_review(text)
    assert parsed.valid
    assert parsed.decision == "REVISE"
    assert parsed.scalar("CONFIDENCE") == "HIGH"
    assert parsed.list_items("RATIONALE") == ("incomplete",)
    assert parsed.list_items("REQUIRED_CHANGES") == tuple(changes)


def test_parsing_the_same_text_twice_gives_equal_results() -> None:
    invalid = "=== ADVISOR_REVIEW_START ===\nDECISION: NO\n=== ADVISOR_REVIEW_END ==="
    for text in (ADVISOR_APPROVE, "no markers here", invalid):
        assert parse_advisor_review(text) == parse_advisor_review(text)


def test_field_lines_outside_the_first_block_are_ignored() -> None:
    second_block = format_block(
        ADVISOR_REVIEW, "REJECT", {"RATIONALE": ["second opinion"], "RISKS": ["data loss"]}, confidence="LOW"
    )
    text = "DECISION: REJECT\nRISKS:\n- preamble risk\n" + ADVISOR_APPROVE + "\nRATIONALE:\n- trailing note\n" + second_block
    parsed = parse_advisor_review(text)
    assert parsed.valid
    assert parsed.decision == "APPROVE"
    assert parsed.scalar("CONFIDENCE") == "HIGH"
    assert parsed.list_items("RATIONALE") == ("Scope is clear", "Tests are specified")
    assert parsed.list_items("RISKS") == ("None significant",)
