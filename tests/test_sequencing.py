import pytest

from agent_council.models import (
    Agent,
    AgentResponse,
    AgentStatus,
    BrainMode,
    ErrorCode,
    KeyNotes,
    WarningState,
    WarningType,
)
from agent_council.reducer import initial_state, reduce
from agent_council.sequencing import (
    COMPACTION_MESSAGE,
    AgentCompleted,
    AgentStarted,
    CancelComplete,
    CancelRequested,
    Clear,
    CompactionCompleted,
    RehydrateDiscussion,
    SequenceCompleted,
    SetWarning,
    SubmitStart,
)


def _started(run_id: str = "run-1", prompt: str = "hello"):
    return reduce(initial_state(), SubmitStart(run_id=run_id, user_prompt=prompt, first_agent=Agent.GEMINI))


def test_submit_start_opens_a_pending_run() -> None:
    state = _started()
    assert state.is_processing
    assert state.pending_run is not None
    assert state.pending_run.run_id == "run-1"
    assert state.current_agent == Agent.GEMINI


def test_double_submit_is_rejected_with_the_same_object() -> None:
    state = _started()
    assert reduce(state, SubmitStart(run_id="run-2", user_prompt="again")) is state


@pytest.mark.parametrize(
    "action",
    [
        AgentStarted("stale", Agent.GPT),
        AgentCompleted("stale", AgentResponse.success(Agent.GPT, "late")),
        SequenceCompleted("stale"),
        CancelRequested("stale"),
        CancelComplete("stale"),
        SetWarning("stale", None),
    ],
)
def test_run_scoped_actions_with_stale_run_id_are_no_ops(action: object) -> None:
    state = _started()
    assert reduce(state, action) is state


def test_run_scoped_actions_without_a_pending_run_are_no_ops() -> None:
    state = initial_state()
    assert reduce(state, SequenceCompleted("run-1")) is state
    assert reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GPT, "x"))) is state


def test_repeated_completion_for_an_agent_replaces_its_response() -> None:
    state = _started()
    state = reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GEMINI, "first")))
    state = reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GEMINI, "second")))
    assert state.pending_run is not None
    responses = state.pending_run.responses_by_agent
    assert list(responses) == [Agent.GEMINI]
    assert responses[Agent.GEMINI].content == "second"


def test_completion_folds_the_run_into_an_exchange_with_transcript() -> None:
    state = _started(prompt="What should we build?")
    state = reduce(state, AgentStarted("run-1", Agent.GEMINI))
    state = reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GEMINI, "A CLI")))
    assert state.current_agent is None
    state = reduce(state, AgentCompleted("run-1", AgentResponse.error(Agent.CLAUDE, ErrorCode.NETWORK, "down")))
    state = reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GPT, "Agreed, a CLI")))
    state = reduce(state, SequenceCompleted("run-1"))

    assert not state.is_processing
    assert state.pending_run is None
    assert len(state.exchanges) == 1
    exchange = state.exchanges[0]
    assert exchange.user_prompt == "What should we build?"
    assert set(exchange.responses_by_agent) == {Agent.GEMINI, Agent.CLAUDE, Agent.GPT}
    assert state.discussion_session is not None
    assert state.discussion_session.exchange_count == 1
    # User first, then successful replies in display order; the failed reply is not transcribed.
    assert [entry.role for entry in state.transcript] == ["user", "gpt", "gemini"]
    assert all(entry.exchange_id == exchange.id for entry in state.transcript)


def test_cancel_keeps_partial_responses() -> None:
    state = _started()
    state = reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GEMINI, "first")))
    state = reduce(state, CancelRequested("run-1"))
    assert state.user_cancelled
    assert state.is_processing
    state = reduce(state, AgentCompleted("run-1", AgentResponse.terminal(Agent.CLAUDE, AgentStatus.CANCELLED)))
    state = reduce(state, CancelComplete("run-1"))

    assert not state.is_processing
    assert not state.user_cancelled
    responses = state.exchanges[-1].responses_by_agent
    assert responses[Agent.GEMINI].content == "first"
    assert responses[Agent.CLAUDE].status == AgentStatus.CANCELLED


def test_late_completion_after_fold_does_not_touch_the_next_run() -> None:
    state = _started()
    state = reduce(state, SequenceCompleted("run-1"))
    state = reduce(state, SubmitStart(run_id="run-2", user_prompt="second"))
    late = reduce(state, AgentCompleted("run-1", AgentResponse.success(Agent.GPT, "stale answer")))
    assert late is state
    assert late.pending_run is not None
    assert late.pending_run.responses_by_agent == {}


def test_set_warning_applies_to_current_run_and_clears_on_fold() -> None:
    state = _started()
    warning = WarningState(type=WarningType.CONTEXT_LIMIT, message="trimmed")
    state = reduce(state, SetWarning("run-1", warning))
    assert state.warning == warning
    state = reduce(state, SequenceCompleted("run-1"))
    assert state.warning is None


def test_clear_is_rejected_while_processing() -> None:
    state = _started()
    assert reduce(state, Clear()) is state


def test_clear_wipes_history_and_bumps_generation() -> None:
    state = reduce(_started(), SequenceCompleted("run-1"))
    cleared = reduce(state, Clear())
    assert cleared.exchanges == ()
    assert cleared.transcript == ()
    assert cleared.clear_generation == state.clear_generation + 1
    assert cleared.discussion_session is not None
    assert cleared.discussion_session.id != state.discussion_session.id
    assert cleared.mode == BrainMode.DISCUSSION


def test_rehydrate_and_compaction_are_rejected_mid_run() -> None:
    state = _started()
    assert reduce(state, RehydrateDiscussion(exchanges=(), session=None, transcript=(), key_notes=None)) is state
    assert reduce(state, CompactionCompleted(trimmed_exchanges=(), key_notes=KeyNotes())) is state


def test_compaction_replaces_history_and_adds_system_message() -> None:
    state = _started()
    state = reduce(state, SequenceCompleted("run-1"))
    notes = KeyNotes(decisions=("use sqlite",))
    compacted = reduce(state, CompactionCompleted(trimmed_exchanges=(), key_notes=notes))
    assert compacted.exchanges == ()
    assert compacted.key_notes == notes
    assert compacted.system_messages[-1].message == COMPACTION_MESSAGE


def test_unknown_action_type_raises() -> None:
    with pytest.raises(TypeError):
        reduce(initial_state(), object())
