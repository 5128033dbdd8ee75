"""Run-scoped sequencing transitions.

Every run-scoped action carries the run id it was issued for. A mismatch
against the pending run means the action is stale, and the transition
returns the incoming state object untouched.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import (
    AGENT_DISPLAY_ORDER,
    Agent,
    AgentResponse,
    AgentStatus,
    BrainState,
    DiscussionSession,
    Exchange,
    KeyNotes,
    PendingRun,
    SystemMessage,
    TranscriptEntry,
    WarningState,
    new_id,
    utc_now,
)

COMPACTION_MESSAGE = "Older messages compacted. Full history preserved."


@dataclass(frozen=True)
class SubmitStart:
    run_id: str
    user_prompt: str
    first_agent: Agent | None = None


@dataclass(frozen=True)
class AgentStarted:
    run_id: str
    agent: Agent


@dataclass(frozen=True)
class AgentCompleted:
    run_id: str
    response: AgentResponse


@dataclass(frozen=True)
class SequenceCompleted:
    run_id: str


@dataclass(frozen=True)
class CancelRequested:
    run_id: str


@dataclass(frozen=True)
class CancelComplete:
    run_id: str


@dataclass(frozen=True)
class SetWarning:
    run_id: str
    warning: WarningState | None


@dataclass(frozen=True)
class Clear:
    pass


@dataclass(frozen=True)
class RehydrateDiscussion:
    exchanges: tuple[Exchange, ...]
    session: DiscussionSession | None
    transcript: tuple[TranscriptEntry, ...]
    key_notes: KeyNotes | None


@dataclass(frozen=True)
class CompactionCompleted:
    trimmed_exchanges: tuple[Exchange, ...]
    key_notes: KeyNotes


def _run_matches(state: BrainState, run_id: str) -> bool:
    return state.pending_run is not None and state.pending_run.run_id == run_id


def transcript_entries(exchange: Exchange) -> tuple[TranscriptEntry, ...]:
    """User line first, then each successful agent reply in display order."""
    entries = [
        TranscriptEntry(
            id=new_id("tr"),
            exchange_id=exchange.id,
            role="user",
            content=exchange.user_prompt,
            timestamp=exchange.timestamp,
        )
    ]
    for agent in AGENT_DISPLAY_ORDER:
        response = exchange.responses_by_agent.get(agent)
        if response is None or response.status != AgentStatus.SUCCESS or not response.content:
            continue
        entries.append(
            TranscriptEntry(
                id=new_id("tr"),
                exchange_id=exchange.id,
                role=agent.value,
                content=response.content,
                timestamp=response.timestamp,
            )
        )
    return tuple(entries)


def _touch_session(existing: DiscussionSession | None, exchange_count: int) -> DiscussionSession:
    if existing is None:
        return DiscussionSession.start().model_copy(update={"exchange_count": exchange_count})
    return existing.model_copy(update={"last_updated_at": utc_now(), "exchange_count": exchange_count})


def _fold_pending(state: BrainState) -> BrainState:
    pending = state.pending_run
    assert pending is not None
    exchange = Exchange(
        id=new_id("ex"),
        user_prompt=pending.user_prompt,
        responses_by_agent=dict(pending.responses_by_agent),
        timestamp=utc_now(),
    )
    exchanges = (*state.exchanges, exchange)
    return state.model_copy(
        update={
            "exchanges": exchanges,
            "pending_run": None,
            "current_agent": None,
            "is_processing": False,
            "user_cancelled": False,
            "warning": None,
            "discussion_session": _touch_session(state.discussion_session, len(exchanges)),
            "transcript": (*state.transcript, *transcript_entries(exchange)),
        }
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def submit_start(state: BrainState, action: SubmitStart) -> BrainState:
    if state.is_processing:
        return state
    return state.model_copy(
        update={
            "pending_run": PendingRun(run_id=action.run_id, user_prompt=action.user_prompt),
            "current_agent": action.first_agent,
            "is_processing": True,
            "user_cancelled": False,
            "warning": None,
            "error": None,
        }
    )


def agent_started(state: BrainState, action: AgentStarted) -> BrainState:
    if not _run_matches(state, action.run_id) or not state.is_processing:
        return state
    return state.model_copy(update={"current_agent": action.agent})


def agent_completed(state: BrainState, action: AgentCompleted) -> BrainState:
    if not _run_matches(state, action.run_id):
        return state
    pending = state.pending_run
    responses = {**pending.responses_by_agent, action.response.agent: action.response}
    return state.model_copy(
        update={
            "pending_run": pending.model_copy(update={"responses_by_agent": responses}),
            "current_agent": None,
        }
    )


def sequence_completed(state: BrainState, action: SequenceCompleted) -> BrainState:
    if not _run_matches(state, action.run_id):
        return state
    return _fold_pending(state)


def cancel_requested(state: BrainState, action: CancelRequested) -> BrainState:
    if not _run_matches(state, action.run_id):
        return state
    return state.model_copy(update={"user_cancelled": True})


def cancel_complete(state: BrainState, action: CancelComplete) -> BrainState:
    if not _run_matches(state, action.run_id):
        return state
    return _fold_pending(state)


def set_warning(state: BrainState, action: SetWarning) -> BrainState:
    if not _run_matches(state, action.run_id):
        return state
    return state.model_copy(update={"warning": action.warning})


def clear(state: BrainState, action: Clear) -> BrainState:
    if state.is_processing:
        return state
    return state.model_copy(
        update={
            "exchanges": (),
            "pending_run": None,
            "current_agent": None,
            "is_processing": False,
            "user_cancelled": False,
            "warning": None,
            "error": None,
            "clear_generation": state.clear_generation + 1,
            "discussion_session": DiscussionSession.start(),
            "transcript": (),
            "key_notes": None,
            "system_messages": (),
            "decision_epoch": None,
        }
    )


def rehydrate_discussion(state: BrainState, action: RehydrateDiscussion) -> BrainState:
    if state.is_processing:
        return state
    return state.model_copy(
        update={
            "exchanges": tuple(action.exchanges),
            "discussion_session": action.session,
            "transcript": tuple(action.transcript),
            "key_notes": action.key_notes,
        }
    )


def compaction_completed(state: BrainState, action: CompactionCompleted) -> BrainState:
    if state.is_processing:
        return state
    message = SystemMessage(id=new_id("sys"), message=COMPACTION_MESSAGE, timestamp=utc_now())
    return state.model_copy(
        update={
            "exchanges": tuple(action.trimmed_exchanges),
            "key_notes": action.key_notes,
            "system_messages": (*state.system_messages, message),
        }
    )


HANDLERS = {
    SubmitStart: submit_start,
    AgentStarted: agent_started,
    AgentCompleted: agent_completed,
    SequenceCompleted: sequence_completed,
    CancelRequested: cancel_requested,
    CancelComplete: cancel_complete,
    SetWarning: set_warning,
    Clear: clear,
    RehydrateDiscussion: rehydrate_discussion,
    CompactionCompleted: compaction_completed,
}
