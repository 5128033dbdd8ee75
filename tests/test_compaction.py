from datetime import UTC, datetime

from agent_council.compaction import (
    COMPACTION_TRIGGER,
    KEEP_EXCHANGES,
    build_compaction_prompt,
    enforce_size_cap,
    merge_key_notes,
    parse_key_notes,
    should_compact,
    split_for_compaction,
)
from agent_council.models import Agent, AgentResponse, Exchange, KeyNotes


def _exchange(index: int) -> Exchange:
    return Exchange(
        id=f"ex-{index}",
        user_prompt=f"q{index}",
        responses_by_agent={Agent.CLAUDE: AgentResponse.success(Agent.CLAUDE, f"a{index}")},
        timestamp=datetime(2026, 1, 1, tzinfo=UTC),
    )


def test_should_compact_every_trigger_multiple() -> None:
    assert not should_compact(0)
    assert not should_compact(COMPACTION_TRIGGER - 1)
    assert should_compact(COMPACTION_TRIGGER)
    assert should_compact(COMPACTION_TRIGGER * 2)


def test_split_keeps_the_newest_exchanges() -> None:
    exchanges = [_exchange(index) for index in range(COMPACTION_TRIGGER)]
    to_compact, to_keep = split_for_compaction(exchanges)
    assert len(to_keep) == KEEP_EXCHANGES
    assert to_keep[-1].id == f"ex-{COMPACTION_TRIGGER - 1}"
    assert len(to_compact) == COMPACTION_TRIGGER - KEEP_EXCHANGES
    assert split_for_compaction(exchanges[:3]) == ((), tuple(exchanges[:3]))


def test_compaction_prompt_lists_exchanges_and_existing_notes() -> None:
    prompt = build_compaction_prompt([_exchange(1)], KeyNotes(agreements=("ship weekly",)))
    assert "Exchange 1:" in prompt
    assert "CLAUDE: a1" in prompt
    assert "ship weekly" in prompt
    assert '"open_questions"' in prompt


def test_parse_key_notes_accepts_fenced_json_and_rejects_garbage() -> None:
    text = 'Sure:\n```json\n{"decisions": ["use sqlite"], "open_questions": ["backups?"]}\n```'
    notes = parse_key_notes(text)
    assert notes == KeyNotes(decisions=("use sqlite",), open_questions=("backups?",))
    assert parse_key_notes("no json here") is None
    assert parse_key_notes('{"decisions": "not a list"}') is None


def test_merge_appends_sections() -> None:
    merged = merge_key_notes(KeyNotes(decisions=("a",)), KeyNotes(decisions=("b",), constraints=("c",)))
    assert merged.decisions == ("a", "b")
    assert merged.constraints == ("c",)
    assert merge_key_notes(None, KeyNotes(decisions=("x",))).decisions == ("x",)


def test_size_cap_trims_reasoning_before_decisions() -> None:
    notes = KeyNotes(
        decisions=tuple(f"decision {i}" for i in range(3)),
        reasoning_chains=tuple("r" * 200 for _ in range(10)),
    )
    capped = enforce_size_cap(notes, max_chars=600)
    assert len(capped.reasoning_chains) < 10
    assert capped.decisions == notes.decisions


def test_size_cap_truncates_entries_when_sections_are_single() -> None:
    notes = KeyNotes(decisions=("d" * 1_000,))
    capped = enforce_size_cap(notes, max_chars=300)
    assert capped.decisions[0].endswith("...")
    assert len(capped.decisions[0]) == 103
