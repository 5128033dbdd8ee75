from __future__ import annotations

import re

from .models import CeoControlBlock, CeoPromptArtifact, ControlBlockKind, utc_now
from .protocol import extract_between_markers

PROMPT_START_MARKER = "=== CLAUDE_CODE_PROMPT_START ==="
PROMPT_END_MARKER = "=== CLAUDE_CODE_PROMPT_END ==="
STOP_NOW_MARKER = "=== STOP_NOW ==="
DRAFT_START_MARKER = "=== CEO_DRAFT_START ==="
DRAFT_END_MARKER = "=== CEO_DRAFT_END ==="
BLOCKED_START_MARKER = "=== CEO_BLOCKED_START ==="
BLOCKED_END_MARKER = "=== CEO_BLOCKED_END ==="

MAX_BLOCKED_QUESTIONS = 3

_QUESTION_PATTERNS = (
    re.compile(r"^Q\d+:\s*(.+)", re.IGNORECASE),
    re.compile(r"^\d+\.\s*(.+)"),
    re.compile(r"^[-*]\s*(.+)"),
)


def remove_marker_block(text: str, start_marker: str, end_marker: str) -> str:
    start = text.find(start_marker)
    if start == -1:
        return text
    end = text.find(end_marker, start)
    if end == -1:
        return text
    return (text[:start] + text[end + len(end_marker):]).strip()


def parse_blocked_questions(body: str) -> tuple[str, ...]:
    """Collect at most three clarification questions from a BLOCKED block."""
    questions: list[str] = []
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        for pattern in _QUESTION_PATTERNS:
            match = pattern.match(stripped)
            if match:
                questions.append(match.group(1).strip())
                break
        else:
            if stripped.endswith("?"):
                questions.append(stripped)
    return tuple(questions[:MAX_BLOCKED_QUESTIONS])


def parse_ceo_control_block(text: str) -> CeoControlBlock:
    """Classify a CEO reply by its control block.

    Precedence is FINAL > STOP > DRAFT > BLOCKED. Only the winning block is
    honored; it is stripped from ``display_content`` and everything else in
    the reply is left as-is.
    """
    prompt_text = extract_between_markers(text, PROMPT_START_MARKER, PROMPT_END_MARKER)
    if prompt_text:
        return CeoControlBlock(
            kind=ControlBlockKind.FINAL,
            prompt_text=prompt_text,
            display_content=remove_marker_block(text, PROMPT_START_MARKER, PROMPT_END_MARKER),
        )

    if STOP_NOW_MARKER in text:
        return CeoControlBlock(
            kind=ControlBlockKind.STOP,
            display_content=text.replace(STOP_NOW_MARKER, "", 1).strip(),
        )

    draft_text = extract_between_markers(text, DRAFT_START_MARKER, DRAFT_END_MARKER)
    if draft_text:
        return CeoControlBlock(
            kind=ControlBlockKind.DRAFT,
            draft_text=draft_text,
            display_content=remove_marker_block(text, DRAFT_START_MARKER, DRAFT_END_MARKER),
        )

    blocked_text = extract_between_markers(text, BLOCKED_START_MARKER, BLOCKED_END_MARKER)
    if blocked_text:
        return CeoControlBlock(
            kind=ControlBlockKind.BLOCKED,
            blocked_questions=parse_blocked_questions(blocked_text),
            display_content=remove_marker_block(text, BLOCKED_START_MARKER, BLOCKED_END_MARKER),
        )

    return CeoControlBlock(kind=ControlBlockKind.NONE, display_content=text)


def create_prompt_artifact(text: str, previous: CeoPromptArtifact | None) -> CeoPromptArtifact:
    version = previous.version + 1 if previous is not None else 1
    return CeoPromptArtifact(text=text, version=version, created_at=utc_now())
