"""Decision Epoch machine.

An epoch deliberates one intent over a bounded number of rounds::

    ADVISORS -> CEO_DRAFT -> ADVISOR_REVIEW -> CEO_FINAL -> (terminal)

and ends in exactly one of EPOCH_COMPLETE, EPOCH_BLOCKED or EPOCH_STOPPED.
Illegal requests return the incoming state unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import (
    EPOCH_ABSOLUTE_MAX_ROUNDS,
    EPOCH_DEFAULT_MAX_ROUNDS,
    Agent,
    BrainMode,
    BrainState,
    DecisionEpoch,
    EpochPhase,
    EpochTerminalReason,
    utc_now,
)

# (from, to) pairs accepted by EpochAdvancePhase; ADVISORS -> CEO_FINAL also needs round >= 2.
LEGAL_PHASE_TRANSITIONS: frozenset[tuple[EpochPhase, EpochPhase]] = frozenset(
    {
        (EpochPhase.ADVISORS, EpochPhase.CEO_DRAFT),
        (EpochPhase.ADVISORS, EpochPhase.CEO_FINAL),
        (EpochPhase.CEO_DRAFT, EpochPhase.ADVISOR_REVIEW),
        (EpochPhase.ADVISOR_REVIEW, EpochPhase.CEO_FINAL),
    }
)

TERMINAL_PHASE_BY_REASON: dict[EpochTerminalReason, EpochPhase] = {
    EpochTerminalReason.PROMPT_DELIVERED: EpochPhase.EPOCH_COMPLETE,
    EpochTerminalReason.BLOCKED: EpochPhase.EPOCH_BLOCKED,
    EpochTerminalReason.STOPPED: EpochPhase.EPOCH_STOPPED,
    EpochTerminalReason.CANCELLED: EpochPhase.EPOCH_STOPPED,
}


@dataclass(frozen=True)
class EpochStart:
    intent: str
    ceo_agent: Agent
    ceo_only_mode: bool = False


@dataclass(frozen=True)
class EpochAdvancePhase:
    phase: EpochPhase


@dataclass(frozen=True)
class EpochAdvanceRound:
    pass


@dataclass(frozen=True)
class EpochExtendMaxRounds:
    pass


@dataclass(frozen=True)
class EpochComplete:
    reason: EpochTerminalReason


@dataclass(frozen=True)
class EpochReset:
    pass


def _active_epoch(state: BrainState) -> DecisionEpoch | None:
    epoch = state.decision_epoch
    if epoch is None or epoch.is_terminal:
        return None
    return epoch


def _with_epoch(state: BrainState, epoch: DecisionEpoch | None) -> BrainState:
    return state.model_copy(update={"decision_epoch": epoch})


def epoch_start(state: BrainState, action: EpochStart) -> BrainState:
    if state.mode != BrainMode.DECISION:
        return state
    if state.decision_epoch is not None and not state.decision_epoch.is_terminal:
        return state
    previous_id = state.decision_epoch.epoch_id if state.decision_epoch is not None else 0
    epoch_id = max(previous_id, state.last_epoch_id) + 1
    epoch = DecisionEpoch(
        epoch_id=epoch_id,
        round=1,
        phase=EpochPhase.CEO_DRAFT if action.ceo_only_mode else EpochPhase.ADVISORS,
        max_rounds=EPOCH_DEFAULT_MAX_ROUNDS,
        intent=action.intent,
        ceo_agent=action.ceo_agent,
        ceo_only_mode=action.ceo_only_mode,
        started_at=utc_now(),
    )
    return state.model_copy(update={"decision_epoch": epoch, "last_epoch_id": epoch_id})


def epoch_advance_phase(state: BrainState, action: EpochAdvancePhase) -> BrainState:
    epoch = _active_epoch(state)
    if epoch is None:
        return state
    if (epoch.phase, action.phase) not in LEGAL_PHASE_TRANSITIONS:
        return state
    if epoch.phase == EpochPhase.ADVISORS and action.phase == EpochPhase.CEO_FINAL and epoch.round < 2:
        return state
    return _with_epoch(state, epoch.model_copy(update={"phase": action.phase}))


def epoch_advance_round(state: BrainState, action: EpochAdvanceRound) -> BrainState:
    epoch = _active_epoch(state)
    if epoch is None or epoch.phase != EpochPhase.CEO_DRAFT:
        return state
    if epoch.round >= epoch.max_rounds:
        return state
    return _with_epoch(
        state,
        epoch.model_copy(update={"round": epoch.round + 1, "phase": EpochPhase.ADVISOR_REVIEW}),
    )


def epoch_extend_max_rounds(state: BrainState, action: EpochExtendMaxRounds) -> BrainState:
    epoch = _active_epoch(state)
    if epoch is None:
        return state
    if epoch.round != 2 or epoch.max_rounds != EPOCH_DEFAULT_MAX_ROUNDS:
        return state
    return _with_epoch(state, epoch.model_copy(update={"max_rounds": EPOCH_ABSOLUTE_MAX_ROUNDS}))


def epoch_complete(state: BrainState, action: EpochComplete) -> BrainState:
    epoch = _active_epoch(state)
    if epoch is None:
        return state
    return _with_epoch(
        state,
        epoch.model_copy(
            update={
                "phase": TERMINAL_PHASE_BY_REASON[action.reason],
                "completed_at": utc_now(),
                "terminal_reason": action.reason,
            }
        ),
    )


def epoch_reset(state: BrainState, action: EpochReset) -> BrainState:
    if state.decision_epoch is None:
        return state
    return _with_epoch(state, None)


HANDLERS = {
    EpochStart: epoch_start,
    EpochAdvancePhase: epoch_advance_phase,
    EpochAdvanceRound: epoch_advance_round,
    EpochExtendMaxRounds: epoch_extend_max_rounds,
    EpochComplete: epoch_complete,
    EpochReset: epoch_reset,
}
