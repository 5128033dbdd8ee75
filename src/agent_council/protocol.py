"""Marker-delimited control protocol shared by every structured agent reply.

A block looks like::

    === ADVISOR_REVIEW_START ===
    DECISION: REVISE
    CONFIDENCE: HIGH
    RATIONALE:
    - the migration path is unclear
    REQUIRED_CHANGES:
    - add a rollback step
    === ADVISOR_REVIEW_END ===

One grammar-driven scanner handles all variants so that empty sections,
inline values and trailing prose behave identically everywhere.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .models import AGENT_DISPLAY_ORDER, Agent, ParsedBlock

CONFIDENCE_LABEL = "CONFIDENCE"
CONFIDENCE_VALUES: tuple[str, ...] = ("HIGH", "MEDIUM", "LOW")

_BULLET_RE = re.compile(r"^[-*]\s*")
MAX_RAW_FEEDBACK_CHARS = 500


@dataclass(frozen=True)
class ProtocolGrammar:
    """Field layout of one protocol variant.

    Attributes:
        name: Marker stem; the block is delimited by ``=== {name}_START ===``
            and ``=== {name}_END ===``.
        decision_label: Label of the enumerated decision/verdict field.
        decision_values: Allowed decision values, in display order.
        list_labels: Bulleted list labels, in the order they are emitted.
        required_lists: Lists that must hold at least one item.
        revise_value: Decision value that demands follow-up items.
        revise_list: List that must be non-empty when ``revise_value`` is chosen.
    """

    name: str
    decision_label: str
    decision_values: tuple[str, ...]
    list_labels: tuple[str, ...]
    required_lists: tuple[str, ...]
    revise_value: str
    revise_list: str

    @property
    def start_marker(self) -> str:
        return f"=== {self.name}_START ==="

    @property
    def end_marker(self) -> str:
        return f"=== {self.name}_END ==="

    @property
    def single_fields(self) -> dict[str, tuple[str, ...]]:
        return {self.decision_label: self.decision_values, CONFIDENCE_LABEL: CONFIDENCE_VALUES}

    @property
    def all_labels(self) -> tuple[str, ...]:
        return (self.decision_label, CONFIDENCE_LABEL, *self.list_labels)


ADVISOR_REVIEW = ProtocolGrammar(
    name="ADVISOR_REVIEW",
    decision_label="DECISION",
    decision_values=("APPROVE", "REVISE", "REJECT"),
    list_labels=("RATIONALE", "REQUIRED_CHANGES", "RISKS"),
    required_lists=("RATIONALE",),
    revise_value="REVISE",
    revise_list="REQUIRED_CHANGES",
)

EXECUTION_REVIEW = ProtocolGrammar(
    name="EXECUTION_REVIEW",
    decision_label="VERDICT",
    decision_values=("ACCEPT", "REVISE", "FAIL"),
    list_labels=("RATIONALE", "ISSUES", "NEXT_STEPS"),
    required_lists=("RATIONALE",),
    revise_value="REVISE",
    revise_list="NEXT_STEPS",
)

CEO_VERDICT = ProtocolGrammar(
    name="CEO_VERDICT",
    decision_label="VERDICT",
    decision_values=("ACCEPT", "REVISE", "FAIL"),
    list_labels=("RATIONALE", "NEXT_STEPS"),
    required_lists=("RATIONALE",),
    revise_value="REVISE",
    revise_list="NEXT_STEPS",
)


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


def extract_between_markers(text: str, start_marker: str, end_marker: str) -> str | None:
    """Return the trimmed text between the first start marker and the first end marker after it.

    Returns None when either marker is absent or the span is blank.
    """
    start = text.find(start_marker)
    if start == -1:
        return None
    body_start = start + len(start_marker)
    end = text.find(end_marker, body_start)
    if end == -1:
        return None
    body = text[body_start:end].strip()
    return body or None


def _label_of(line: str, labels: Iterable[str]) -> str | None:
    upper = line.strip().upper()
    for label in labels:
        if upper.startswith(f"{label}:"):
            return label
    return None


def _scan_single(lines: Sequence[str], label: str) -> str | None:
    prefix = f"{label}:"
    for line in lines:
        stripped = line.strip()
        if stripped.upper().startswith(prefix):
            value = stripped[len(prefix):].strip().upper()
            return value or None
    return None


def _scan_list(lines: Sequence[str], label: str, all_labels: Sequence[str]) -> tuple[str, ...]:
    items: list[str] = []
    prefix = f"{label}:"
    in_section = False
    for line in lines:
        stripped = line.strip()
        if stripped.upper().startswith(prefix):
            in_section = True
            inline = stripped[len(prefix):].strip()
            if inline and not inline.startswith(("-", "*")):
                items.append(inline)
            continue
        if not in_section:
            continue
        if _label_of(stripped, all_labels) is not None:
            break
        item = _BULLET_RE.sub("", stripped).strip()
        if item:
            items.append(item)
    return tuple(items)


def _expected(values: Sequence[str]) -> str:
    if len(values) == 1:
        return values[0]
    return f"{', '.join(values[:-1])}, or {values[-1]}"


def parse_block(text: str, grammar: ProtocolGrammar) -> ParsedBlock:
    """Parse one protocol block out of free-form agent text.

    Never raises on malformed input; problems are reported in ``errors``
    and the full input is preserved in ``raw_text``.

    Args:
        text: Complete agent reply.
        grammar: Protocol variant to parse against.

    Returns:
        A ParsedBlock whose ``valid`` flag is True iff no errors were found.
    """
    body = extract_between_markers(text, grammar.start_marker, grammar.end_marker)
    if body is None:
        return ParsedBlock(
            grammar=grammar.name,
            valid=False,
            errors=(f"Missing {grammar.name} markers",),
            raw_text=text,
        )

    lines = body.splitlines()
    errors: list[str] = []
    scalars: dict[str, str] = {}
    for label, allowed in grammar.single_fields.items():
        value = _scan_single(lines, label)
        if value is None:
            errors.append(f"Missing {label} field")
        elif value not in allowed:
            errors.append(f"Invalid {label} value: '{value}'. Expected: {_expected(allowed)}")
        else:
            scalars[label] = value

    lists = {label: _scan_list(lines, label, grammar.all_labels) for label in grammar.list_labels}
    for label in grammar.required_lists:
        if not lists[label]:
            errors.append(f"{label} must have at least 1 item")

    decision = scalars.get(grammar.decision_label)
    if decision == grammar.revise_value and not lists[grammar.revise_list]:
        errors.append(
            f"{grammar.revise_value} {grammar.decision_label.lower()} requires at least 1 {grammar.revise_list} item"
        )

    valid = not errors
    return ParsedBlock(
        grammar=grammar.name,
        valid=valid,
        errors=tuple(errors),
        raw_text=text,
        decision=decision if valid else None,
        scalars=scalars if valid else {},
        lists=lists if valid else {},
    )


def format_block(
    grammar: ProtocolGrammar,
    decision: str,
    lists: Mapping[str, Sequence[str]],
    *,
    confidence: str = "HIGH",
) -> str:
    """Render a block that ``parse_block`` reads back to the same fields."""
    lines = [
        grammar.start_marker,
        f"{grammar.decision_label}: {decision}",
        f"{CONFIDENCE_LABEL}: {confidence}",
    ]
    for label in grammar.list_labels:
        lines.append(f"{label}:")
        lines.extend(f"- {item}" for item in lists.get(label, ()))
    lines.append(grammar.end_marker)
    return "\n".join(lines)


def parse_advisor_review(text: str) -> ParsedBlock:
    return parse_block(text, ADVISOR_REVIEW)


def parse_execution_review(text: str) -> ParsedBlock:
    return parse_block(text, EXECUTION_REVIEW)


def parse_ceo_verdict(text: str) -> ParsedBlock:
    return parse_block(text, CEO_VERDICT)


# ---------------------------------------------------------------------------
# Prompt-side builders
# ---------------------------------------------------------------------------


def build_advisor_review_summary(reviews: Mapping[Agent, ParsedBlock]) -> str:
    """Deterministic digest of advisor reviews for the CEO's final round.

    Valid reviews show their structured fields; invalid ones show the parse
    errors and the raw reply truncated to ``MAX_RAW_FEEDBACK_CHARS``.
    """
    lines = ["=== ADVISOR REVIEWS SUMMARY ===", ""]
    for agent in AGENT_DISPLAY_ORDER:
        review = reviews.get(agent)
        if review is None:
            continue
        if review.valid:
            lines.append(f"{agent.label} (VALID):")
            lines.append(f"  DECISION: {review.decision}")
            lines.append(f"  CONFIDENCE: {review.scalar(CONFIDENCE_LABEL)}")
            lines.append(f"  RATIONALE: {'; '.join(review.list_items('RATIONALE'))}")
            required = review.list_items("REQUIRED_CHANGES")
            if required:
                lines.append(f"  REQUIRED_CHANGES: {'; '.join(required)}")
            risks = review.list_items("RISKS")
            lines.append(f"  RISKS: {'; '.join(risks) if risks else 'None identified'}")
        else:
            raw = review.raw_text
            if len(raw) > MAX_RAW_FEEDBACK_CHARS:
                raw = raw[:MAX_RAW_FEEDBACK_CHARS] + "..."
            lines.append(f"{agent.label} (INVALID_SCHEMA):")
            lines.append(f"  ERRORS: {'; '.join(review.errors)}")
            lines.append(f"  RAW_FEEDBACK: {raw}")
        lines.append("")
    lines.append("=== END ADVISOR REVIEWS SUMMARY ===")
    return "\n".join(lines)


EXECUTION_REVIEW_REQUEST_PREFIX = "=== EXECUTION REVIEW REQUEST ==="


def build_execution_review_prompt(execution_prompt: str, execution_results: str) -> str:
    return f"""{EXECUTION_REVIEW_REQUEST_PREFIX}

You are reviewing execution results for a delegated implementation task.
Provide a structured review of whether the execution was successful.

ORIGINAL EXECUTION PROMPT:
---
{execution_prompt}
---

EXECUTION RESULTS:
---
{execution_results}
---

Respond with EXACTLY this format:

{EXECUTION_REVIEW.start_marker}
VERDICT: ACCEPT or REVISE or FAIL
CONFIDENCE: HIGH or MEDIUM or LOW
RATIONALE:
- [assessment point 1]
- [assessment point 2]
ISSUES:
- [issue found, or "None"]
NEXT_STEPS:
- [recommended action]
{EXECUTION_REVIEW.end_marker}"""
