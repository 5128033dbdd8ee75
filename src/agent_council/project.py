"""Project phase machine: a long-running run with interrupts and a revision cap."""

from __future__ import annotations

from dataclasses import dataclass

from .models import (
    ACTIVE_LOOP_STATES,
    PROJECT_MAX_REVISIONS,
    BrainMode,
    BrainState,
    Interrupt,
    InterruptSeverity,
    LoopState,
    ProjectPhase,
    ProjectRun,
    new_id,
    utc_now,
)

REVISION_CAP_MESSAGE = f"Revision cap exceeded ({PROJECT_MAX_REVISIONS} per epoch). User direction required."
STOPPED_BY_USER = "Stopped by user"

_LOOP_STATE_FOR_TERMINAL: dict[ProjectPhase, LoopState] = {
    ProjectPhase.DONE: LoopState.COMPLETED,
    ProjectPhase.FAILED_REQUIRES_USER_DIRECTION: LoopState.FAILED,
}


@dataclass(frozen=True)
class ProjectStartEpoch:
    intent: str


@dataclass(frozen=True)
class ProjectSetPhase:
    phase: ProjectPhase


@dataclass(frozen=True)
class ProjectAddInterrupt:
    message: str
    severity: InterruptSeverity
    scope: str = "general"


@dataclass(frozen=True)
class ProjectProcessBlocker:
    pass


@dataclass(frozen=True)
class ProjectSetCeoArtifact:
    text: str


@dataclass(frozen=True)
class ProjectSetExecutorOutput:
    text: str


@dataclass(frozen=True)
class ProjectNewDirection:
    intent: str


@dataclass(frozen=True)
class ProjectMarkDone:
    pass


@dataclass(frozen=True)
class ProjectForceFail:
    reason: str = STOPPED_BY_USER


def _open_run(state: BrainState) -> ProjectRun | None:
    run = state.project_run
    if run is None or run.is_terminal:
        return None
    return run


def _fresh_run(epoch_id: int, intent: str) -> ProjectRun:
    return ProjectRun(
        phase=ProjectPhase.INTENT_RECEIVED,
        epoch_id=epoch_id,
        micro_epoch_id=1,
        revision_count=0,
        last_intent=intent,
    )


def _fail(state: BrainState, run: ProjectRun, reason: str, **changes: object) -> BrainState:
    failed = run.model_copy(
        update={"phase": ProjectPhase.FAILED_REQUIRES_USER_DIRECTION, "error": reason, **changes}
    )
    return state.model_copy(update={"project_run": failed, "loop_state": LoopState.FAILED})


def project_start_epoch(state: BrainState, action: ProjectStartEpoch) -> BrainState:
    if state.mode != BrainMode.PROJECT or state.loop_state in ACTIVE_LOOP_STATES:
        return state
    epoch_id = state.project_run.epoch_id + 1 if state.project_run is not None else 1
    return state.model_copy(
        update={
            "project_run": _fresh_run(epoch_id, action.intent),
            "loop_state": LoopState.RUNNING,
            "ceo_execution_prompt": None,
            "result_artifact": None,
        }
    )


def project_set_phase(state: BrainState, action: ProjectSetPhase) -> BrainState:
    run = _open_run(state)
    if run is None or run.phase == action.phase:
        return state
    update: dict[str, object] = {"project_run": run.model_copy(update={"phase": action.phase})}
    if action.phase in _LOOP_STATE_FOR_TERMINAL:
        update["loop_state"] = _LOOP_STATE_FOR_TERMINAL[action.phase]
    return state.model_copy(update=update)


def project_add_interrupt(state: BrainState, action: ProjectAddInterrupt) -> BrainState:
    run = _open_run(state)
    if run is None:
        return state
    interrupt = Interrupt(
        id=new_id("int"),
        message=action.message,
        severity=action.severity,
        scope=action.scope,
        timestamp=utc_now(),
    )
    update: dict[str, object] = {"project_run": run.model_copy(update={"interrupts": (*run.interrupts, interrupt)})}
    if action.severity == InterruptSeverity.BLOCKER:
        update["loop_state"] = LoopState.PAUSED
    return state.model_copy(update=update)


def project_process_blocker(state: BrainState, action: ProjectProcessBlocker) -> BrainState:
    """Restart the epoch from INTENT_RECEIVED to address pending blockers.

    The revision cap is a hard ceiling: the revision that exceeds it forces
    the run into FAILED_REQUIRES_USER_DIRECTION instead of restarting.
    """
    run = _open_run(state)
    if run is None:
        return state
    revision_count = run.revision_count + 1
    if revision_count > PROJECT_MAX_REVISIONS:
        return _fail(state, run, REVISION_CAP_MESSAGE, revision_count=revision_count)

    interrupts = tuple(
        item.model_copy(update={"processed": True})
        if item.severity == InterruptSeverity.BLOCKER and not item.processed
        else item
        for item in run.interrupts
    )
    restarted = run.model_copy(
        update={
            "phase": ProjectPhase.INTENT_RECEIVED,
            "micro_epoch_id": run.micro_epoch_id + 1,
            "revision_count": revision_count,
            "interrupts": interrupts,
        }
    )
    return state.model_copy(update={"project_run": restarted, "loop_state": LoopState.RUNNING})


def project_set_ceo_artifact(state: BrainState, action: ProjectSetCeoArtifact) -> BrainState:
    run = _open_run(state)
    if run is None:
        return state
    return state.model_copy(
        update={
            "project_run": run.model_copy(update={"ceo_prompt_artifact": action.text}),
            "ceo_execution_prompt": action.text,
        }
    )


def project_set_executor_output(state: BrainState, action: ProjectSetExecutorOutput) -> BrainState:
    run = _open_run(state)
    if run is None:
        return state
    return state.model_copy(
        update={
            "project_run": run.model_copy(update={"executor_output": action.text}),
            "result_artifact": action.text,
        }
    )


def project_new_direction(state: BrainState, action: ProjectNewDirection) -> BrainState:
    run = state.project_run
    if run is None or not run.is_terminal:
        return state
    fresh = _fresh_run(run.epoch_id + 1, action.intent).model_copy(update={"interrupts": run.interrupts})
    return state.model_copy(
        update={
            "project_run": fresh,
            "loop_state": LoopState.RUNNING,
            "ceo_execution_prompt": None,
            "result_artifact": None,
        }
    )


def project_mark_done(state: BrainState, action: ProjectMarkDone) -> BrainState:
    run = _open_run(state)
    if run is None:
        return state
    return state.model_copy(
        update={
            "project_run": run.model_copy(update={"phase": ProjectPhase.DONE}),
            "loop_state": LoopState.COMPLETED,
        }
    )


def project_force_fail(state: BrainState, action: ProjectForceFail) -> BrainState:
    if state.project_run is None:
        return state
    return _fail(state, state.project_run, action.reason)


HANDLERS = {
    ProjectStartEpoch: project_start_epoch,
    ProjectSetPhase: project_set_phase,
    ProjectAddInterrupt: project_add_interrupt,
    ProjectProcessBlocker: project_process_blocker,
    ProjectSetCeoArtifact: project_set_ceo_artifact,
    ProjectSetExecutorOutput: project_set_executor_output,
    ProjectNewDirection: project_new_direction,
    ProjectMarkDone: project_mark_done,
    ProjectForceFail: project_force_fail,
}
