"""The one entry point through which council state changes.

``reduce`` is pure: no I/O, no clock-dependent branching, no exceptions for
rejected actions. A rejected action returns the *same* state object, so
callers can detect a no-op with ``is``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from . import epoch, project, sequencing
from .models import ACTIVE_LOOP_STATES, BrainMode, BrainState, LoopState, ProjectState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetMode:
    mode: BrainMode


@dataclass(frozen=True)
class RehydrateProject:
    project: ProjectState


def set_mode(state: BrainState, action: SetMode) -> BrainState:
    if state.is_processing or state.loop_state in ACTIVE_LOOP_STATES:
        return state
    if action.mode == state.mode:
        return state
    update: dict[str, Any] = {"mode": action.mode}
    if state.mode == BrainMode.DECISION:
        update["decision_epoch"] = None
    if state.mode == BrainMode.PROJECT:
        update["project_run"] = None
        update["loop_state"] = LoopState.IDLE
    return state.model_copy(update=update)


def rehydrate_project(state: BrainState, action: RehydrateProject) -> BrainState:
    """Load a project's memory into the session and continue its epoch numbering."""
    if state.is_processing:
        return state
    record = action.project
    epoch_ids = [decision.epoch_id for decision in record.decisions if decision.epoch_id is not None]
    return state.model_copy(
        update={
            "active_project_id": record.id,
            "exchanges": record.project_memory.recent_exchanges,
            "key_notes": record.project_memory.key_notes,
            "decision_epoch": None,
            "last_epoch_id": max(epoch_ids, default=0),
        }
    )


Handler = Callable[[BrainState, Any], BrainState]

_HANDLERS: dict[type, Handler] = {
    **sequencing.HANDLERS,
    **epoch.HANDLERS,
    **project.HANDLERS,
    SetMode: set_mode,
    RehydrateProject: rehydrate_project,
}


def reduce(state: BrainState, action: object) -> BrainState:
    """Apply one action and return the next snapshot.

    Args:
        state: Current snapshot.
        action: Any action dataclass from ``sequencing``, ``epoch``,
            ``project`` or this module.

    Returns:
        The next snapshot, or ``state`` itself when the action is rejected.

    Raises:
        TypeError: If the action type is not part of the action surface.
    """
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"Unknown action type: {type(action).__name__}")
    next_state = handler(state, action)
    if next_state is state:
        logger.debug("action_rejected action=%s", type(action).__name__)
    return next_state


def initial_state(mode: BrainMode = BrainMode.DISCUSSION) -> BrainState:
    return BrainState(mode=mode)
