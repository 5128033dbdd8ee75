import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from agent_council.canonical import fingerprint, to_canonical_json
from agent_council.models import (
    Agent,
    AgentResponse,
    BrainMode,
    Carryover,
    DecisionRecord,
    EpochTerminalReason,
    Exchange,
    KeyNotes,
    ProjectStatus,
)
from agent_council.persistence import (
    ACTIVE_PROJECT_KEY,
    CARRYOVER_KEY,
    CarryoverStore,
    FileKeyValueStore,
    InMemoryKeyValueStore,
    ProjectStore,
    build_carryover,
    format_carryover_context,
    seal_decision,
)
from agent_council.reducer import initial_state, reduce
from agent_council.sequencing import AgentCompleted, SequenceCompleted, SubmitStart

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _exchange(index: int) -> Exchange:
    return Exchange(
        id=f"ex-{index}",
        user_prompt=f"q{index}",
        responses_by_agent={Agent.GPT: AgentResponse.success(Agent.GPT, f"a{index}")},
        timestamp=NOW,
    )


def _decision(*, blocked: bool, epoch_id: int = 1) -> DecisionRecord:
    return DecisionRecord(
        id=f"dec-{epoch_id}",
        created_at=NOW,
        mode=BrainMode.DECISION,
        epoch_id=epoch_id,
        terminal_reason=EpochTerminalReason.BLOCKED if blocked else EpochTerminalReason.PROMPT_DELIVERED,
        prompt_produced=not blocked,
        prompt_text=None if blocked else "build it",
        blocked=blocked,
        blocked_questions=("Which DB?",) if blocked else (),
        ceo_agent=Agent.GPT,
        advisors=(Agent.GEMINI, Agent.CLAUDE),
    )


def test_canonical_json_is_key_order_independent() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)
    assert fingerprint(left) == fingerprint(right)


def test_file_store_round_trips_and_removes(tmp_path: Path) -> None:
    store = FileKeyValueStore(tmp_path / "state")
    assert store.load("missing") is None
    assert store.save("council_project_proj-1", '{"a": 1}')
    assert store.path_for("council_project_proj-1").is_file()
    assert store.load("council_project_proj-1") == '{"a": 1}'
    store.remove("council_project_proj-1")
    assert store.load("council_project_proj-1") is None
    store.remove("council_project_proj-1")


def test_file_store_sanitizes_keys(tmp_path: Path) -> None:
    store = FileKeyValueStore(tmp_path)
    path = store.path_for("../../etc/passwd")
    assert path.parent == tmp_path
    with pytest.raises(ValueError):
        store.path_for("../..")


def test_file_store_save_failure_returns_false(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = FileKeyValueStore(blocker)
    assert store.save("key", "value") is False


def test_carryover_round_trip_and_exists() -> None:
    kv = InMemoryKeyValueStore()
    carryovers = CarryoverStore(kv)
    assert carryovers.load() is None
    assert not carryovers.exists()
    carryover = Carryover(
        from_session_id="session-1",
        created_at=NOW,
        key_notes=KeyNotes(agreements=("weekly releases",)),
        last_exchanges=(_exchange(1),),
    )
    assert carryovers.save(carryover)
    assert carryovers.load() == carryover
    assert carryovers.exists()
    carryovers.clear()
    assert kv.load(CARRYOVER_KEY) is None


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        json.dumps({"schema_version": 2, "from_session_id": "s", "created_at": NOW.isoformat()}),
        json.dumps({"schema_version": 1, "created_at": NOW.isoformat()}),
    ],
)
def test_invalid_carryover_is_discarded(payload: str) -> None:
    kv = InMemoryKeyValueStore()
    kv.save(CARRYOVER_KEY, payload)
    assert CarryoverStore(kv).load() is None
    assert kv.load(CARRYOVER_KEY) is None


def test_carryover_with_too_many_exchanges_is_discarded() -> None:
    kv = InMemoryKeyValueStore()
    payload = {
        "schema_version": 1,
        "from_session_id": "s",
        "created_at": NOW.isoformat(),
        "last_exchanges": [json.loads(_exchange(i).model_dump_json()) for i in range(11)],
    }
    kv.save(CARRYOVER_KEY, json.dumps(payload))
    assert CarryoverStore(kv).load() is None


def test_build_carryover_from_state_keeps_last_ten() -> None:
    assert build_carryover(initial_state()) is None
    state = initial_state()
    for index in range(12):
        run_id = f"run-{index}"
        state = reduce(state, SubmitStart(run_id=run_id, user_prompt=f"q{index}"))
        state = reduce(state, AgentCompleted(run_id, AgentResponse.success(Agent.GPT, f"a{index}")))
        state = reduce(state, SequenceCompleted(run_id))
    carryover = build_carryover(state)
    assert carryover is not None
    assert len(carryover.last_exchanges) == 10
    assert carryover.last_exchanges[-1].user_prompt == "q11"
    assert carryover.from_session_id == state.discussion_session.id
    context = format_carryover_context(carryover)
    assert "User: q11" in context
    assert "GPT: a11" in context


def test_project_create_list_and_active_pointer() -> None:
    projects = ProjectStore(InMemoryKeyValueStore())
    first = projects.create(title="first")
    second = projects.create(title="second")
    projects.update_title(first, "first renamed")

    listed = projects.list_projects()
    assert [project.id for project in listed] == [first.id, second.id]
    assert listed[0].title == "first renamed"

    assert projects.load_active() is None
    projects.set_active(second.id)
    active = projects.load_active()
    assert active is not None
    assert active.id == second.id


def test_append_decision_sets_status_and_fingerprint() -> None:
    projects = ProjectStore(InMemoryKeyValueStore())
    project = projects.create()

    project = projects.append_decision(project, _decision(blocked=True, epoch_id=1))
    assert project.status == ProjectStatus.BLOCKED
    assert project.last_decision_id == "dec-1"
    assert project.decisions[-1].fingerprint

    project = projects.append_decision(project, _decision(blocked=False, epoch_id=2))
    assert project.status == ProjectStatus.ACTIVE
    assert [decision.id for decision in project.decisions] == ["dec-1", "dec-2"]

    reloaded = projects.load(project.id)
    assert reloaded is not None
    assert reloaded.decisions == project.decisions
    assert seal_decision(reloaded.decisions[0]).fingerprint == reloaded.decisions[0].fingerprint


def test_update_memory_and_status() -> None:
    projects = ProjectStore(InMemoryKeyValueStore())
    project = projects.create()
    project = projects.update_memory(project, [_exchange(i) for i in range(12)], KeyNotes(decisions=("x",)))
    assert len(project.project_memory.recent_exchanges) == 10
    project = projects.update_status(project, ProjectStatus.COMPLETED)
    reloaded = projects.load(project.id)
    assert reloaded is not None
    assert reloaded.status == ProjectStatus.COMPLETED
    assert reloaded.project_memory.key_notes == KeyNotes(decisions=("x",))


def test_invalid_project_record_is_discarded_and_unlisted() -> None:
    kv = InMemoryKeyValueStore()
    projects = ProjectStore(kv)
    project = projects.create()
    projects.set_active(project.id)
    kv.save(f"council_project_{project.id}", '{"id": "broken"}')

    assert projects.load(project.id) is None
    assert projects.list_projects() == []
    assert kv.load(ACTIVE_PROJECT_KEY) is None


def test_project_store_on_disk(tmp_path: Path) -> None:
    projects = ProjectStore(FileKeyValueStore(tmp_path))
    project = projects.create(title="disk")
    project = projects.append_decision(project, _decision(blocked=False))
    reopened = ProjectStore(FileKeyValueStore(tmp_path))
    loaded = reopened.load(project.id)
    assert loaded is not None
    assert loaded.title == "disk"
    assert loaded.last_decision_id == "dec-1"
