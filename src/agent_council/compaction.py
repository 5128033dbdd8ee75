"""Key-notes compaction for long discussions.

Every ``COMPACTION_TRIGGER`` exchanges the older history is summarized into
``KeyNotes`` by an agent and only the newest ``KEEP_EXCHANGES`` stay verbatim.
"""

from __future__ import annotations

import json
import logging
from typing import Sequence

from pydantic import ValidationError

from .agent_runtime import extract_json_payload
from .models import AgentStatus, Exchange, KeyNotes

logger = logging.getLogger(__name__)

COMPACTION_TRIGGER = 40
KEEP_EXCHANGES = 10
MAX_KEY_NOTES_CHARS = 80_000
_SUMMARY_CONTENT_CHARS = 500
_TRUNCATED_NOTE_CHARS = 100

# Oldest entries are dropped from these sections first; decisions go last.
TRIM_ORDER: tuple[str, ...] = ("reasoning_chains", "agreements", "constraints", "open_questions", "decisions")


def should_compact(exchange_count: int) -> bool:
    return exchange_count > 0 and exchange_count % COMPACTION_TRIGGER == 0


def split_for_compaction(exchanges: Sequence[Exchange]) -> tuple[tuple[Exchange, ...], tuple[Exchange, ...]]:
    """Return ``(to_compact, to_keep)``."""
    if len(exchanges) <= KEEP_EXCHANGES:
        return (), tuple(exchanges)
    return tuple(exchanges[:-KEEP_EXCHANGES]), tuple(exchanges[-KEEP_EXCHANGES:])


def build_compaction_prompt(exchanges: Sequence[Exchange], existing: KeyNotes | None) -> str:
    summaries: list[str] = []
    for index, exchange in enumerate(exchanges, start=1):
        lines = [f"Exchange {index}:", f"  User: {exchange.user_prompt}"]
        for agent, response in exchange.responses_by_agent.items():
            if response.status == AgentStatus.SUCCESS and response.content:
                lines.append(f"  {agent.value.upper()}: {response.content[:_SUMMARY_CONTENT_CHARS]}...")
        summaries.append("\n".join(lines))

    existing_block = ""
    if existing is not None:
        existing_block = f"\nExisting key-notes to merge with:\n{existing.model_dump_json(indent=2)}\n"

    return (
        "You are summarizing a discussion for memory compaction. "
        "Extract and preserve the most important information.\n"
        f"{existing_block}\n"
        "Exchanges to summarize:\n"
        f"{chr(10).join(summaries)}\n\n"
        "Output ONLY valid JSON matching this exact schema (no markdown, no explanation):\n"
        + json.dumps(
            {
                "decisions": ["key decisions made"],
                "reasoning_chains": ["important reasoning processes"],
                "agreements": ["points agreed upon"],
                "constraints": ["constraints or limitations identified"],
                "open_questions": ["unresolved questions"],
            },
            indent=2,
        )
        + "\n\nGuidelines:\n"
        "- Preserve reasoning, not just conclusions\n"
        "- Keep entries concise but meaningful\n"
        "- Each array should have max 10 most important items"
    )


def parse_key_notes(text: str) -> KeyNotes | None:
    """Parse a compaction reply; returns None when it is not a valid KeyNotes object."""
    try:
        payload = extract_json_payload(text)
    except ValueError as exc:
        logger.warning("key_notes_unparseable error=%s", exc)
        return None
    try:
        return KeyNotes.model_validate(payload)
    except ValidationError as exc:
        logger.warning("key_notes_invalid errors=%d", exc.error_count())
        return None


def _size(sections: dict[str, list[str]]) -> int:
    return len(json.dumps(sections))


def enforce_size_cap(notes: KeyNotes, max_chars: int = MAX_KEY_NOTES_CHARS) -> KeyNotes:
    """Shrink key-notes under ``max_chars`` of JSON.

    Drops the oldest entry of the first section in ``TRIM_ORDER`` that has
    more than one, and once every section is down to one entry, shortens the
    remaining entries instead.
    """
    sections = {name: list(getattr(notes, name)) for name in TRIM_ORDER}
    if _size(sections) <= max_chars:
        return notes

    while _size(sections) > max_chars:
        name = next((name for name in TRIM_ORDER if len(sections[name]) > 1), None)
        if name is not None:
            sections[name].pop(0)
            continue
        name = next(
            (name for name in TRIM_ORDER if sections[name] and len(sections[name][0]) > _TRUNCATED_NOTE_CHARS),
            None,
        )
        if name is None:
            break
        sections[name][0] = sections[name][0][:_TRUNCATED_NOTE_CHARS] + "..."

    return KeyNotes(**{name: tuple(items) for name, items in sections.items()})


def merge_key_notes(existing: KeyNotes | None, incoming: KeyNotes) -> KeyNotes:
    if existing is None:
        return enforce_size_cap(incoming)
    merged = KeyNotes(
        **{name: (*getattr(existing, name), *getattr(incoming, name)) for name in TRIM_ORDER}
    )
    return enforce_size_cap(merged)
