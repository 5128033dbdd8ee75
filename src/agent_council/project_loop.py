"""Project Run driver.

One project epoch walks the phases

    INTENT_RECEIVED -> DELIBERATION -> [CONSENSUS_DRAFT] -> CEO_GATE
        -> CLAUDE_CODE_EXECUTION -> REVIEW -> USER_BUILD_GATE

as a LangGraph loop. A REVISE verdict files a blocker interrupt and restarts
the micro-epoch through the reducer, which enforces the revision cap.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .deliberation import ceo_control_turn
from .models import (
    ADVISOR_PRIORITY,
    Agent,
    BrainMode,
    ControlBlockKind,
    InterruptSeverity,
    LoopState,
    ParsedBlock,
    ProjectPhase,
    ProjectRun,
    VerdictResolution,
)
from .orchestrator import CouncilSession, agent_order
from .project import (
    ProjectAddInterrupt,
    ProjectForceFail,
    ProjectMarkDone,
    ProjectNewDirection,
    ProjectProcessBlocker,
    ProjectSetCeoArtifact,
    ProjectSetExecutorOutput,
    ProjectSetPhase,
    ProjectStartEpoch,
)
from .prompts import (
    advisor_system_prompt,
    build_ceo_synthesis_prompt,
    ceo_round_one_system_prompt,
    ceo_synthesis_system_prompt,
    execution_reviewer_system_prompt,
)
from .protocol import build_execution_review_prompt, parse_ceo_verdict, parse_execution_review
from .verdicts import apply_ceo_synthesis, resolve_verdicts

logger = logging.getLogger(__name__)

DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 600
MAX_EXECUTOR_OUTPUT_CHARS = 20_000
REVIEWERS_SPLIT_MESSAGE = "Reviewers could not agree on the execution result. User direction required."
CEO_STOPPED_MESSAGE = "CEO stopped the project. User direction required."
CEO_UNUSABLE_MESSAGE = "CEO gave no usable direction during deliberation. User direction required."
EXECUTION_FAILED_MESSAGE = "Reviewers judged the execution a failure. User direction required."
REVIEW_CANCELLED_MESSAGE = "Review cancelled by user"


class ExecutorError(RuntimeError):
    """The external build step could not produce a result."""


class Executor(Protocol):
    async def execute(self, prompt: str) -> str:
        ...


class ShellExecutor:
    """Pipe the execution prompt to a local command and capture its output."""

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        timeout_seconds: int = DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
        cwd: Path | None = None,
    ) -> None:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("Executor command must be non-empty")
        self.argv = argv
        self.timeout_seconds = timeout_seconds
        self.cwd = cwd

    async def execute(self, prompt: str) -> str:
        """Run the command with the prompt on stdin.

        Returns:
            Combined stdout and stderr, truncated to ``MAX_EXECUTOR_OUTPUT_CHARS``.

        Raises:
            ExecutorError: If the command cannot start, times out, or exits non-zero.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd is not None else None,
            )
        except OSError as exc:
            raise ExecutorError(f"Executor failed to start: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(prompt.encode("utf-8")), self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ExecutorError(f"Executor timed out after {self.timeout_seconds} seconds") from exc

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        output = (stdout_text + "\n" + stderr_text).strip() if stderr_text else stdout_text
        if proc.returncode != 0:
            raise ExecutorError(f"Executor exited with code {proc.returncode}: {output[:500]}")
        return output[:MAX_EXECUTOR_OUTPUT_CHARS] if output else "(no output)"


def _approve_all(prompt: str) -> bool:
    return True


class ProjectLoopState(TypedDict, total=False):
    intent: str
    ceo: Agent
    execution_prompt: str
    execution_output: str
    reviews: dict[Agent, ParsedBlock]
    resolution: VerdictResolution


@dataclass
class ProjectOutcome:
    run: ProjectRun
    resolution: VerdictResolution | None = None

    @property
    def needs_user(self) -> bool:
        return self.run.is_terminal or bool(self.run.pending_blockers) or self.run.phase == ProjectPhase.USER_BUILD_GATE


class ProjectLoopGraph:
    """deliberation -> ceo_gate -> execution -> review, looping on REVISE until the revision cap."""

    def __init__(
        self,
        session: CouncilSession,
        executor: Executor,
        *,
        approve_prompt: Callable[[str], bool] = _approve_all,
    ) -> None:
        self.session = session
        self.executor = executor
        self.approve_prompt = approve_prompt
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ProjectLoopState)
        graph.add_node("deliberation", self._deliberation)
        graph.add_node("ceo_gate", self._ceo_gate)
        graph.add_node("execution", self._execution)
        graph.add_node("review", self._review)
        graph.add_node("revise", self._revise)

        graph.add_edge(START, "deliberation")
        graph.add_edge("revise", "deliberation")
        return graph

    @property
    def run_state(self) -> ProjectRun:
        run = self.session.state.project_run
        assert run is not None
        return run

    def _pause(self, message: str) -> Command[str]:
        self.session.dispatch(ProjectAddInterrupt(message=message, severity=InterruptSeverity.BLOCKER))
        logger.info("project_paused phase=%s reason=%s", self.run_state.phase.value, message)
        return Command(goto=END)

    def _fail(self, reason: str, update: dict[str, Any] | None = None) -> Command[str]:
        self.session.dispatch(ProjectForceFail(reason))
        logger.info("project_failed phase=%s reason=%s", self.run_state.phase.value, reason)
        return Command(goto=END, update=update)

    def _halted(self) -> bool:
        """A blocker filed while a node was awaiting stops the loop where it stands."""
        if self.session.state.loop_state != LoopState.PAUSED:
            return False
        logger.info("project_halted_by_blocker phase=%s", self.run_state.phase.value)
        return True

    def _deliberation_prompt(self, intent: str) -> str:
        processed = [item.message for item in self.run_state.interrupts if item.processed]
        queued = [
            item.message
            for item in self.run_state.interrupts
            if item.severity == InterruptSeverity.IMPROVEMENT and not item.processed
        ]
        parts = [intent]
        if processed:
            parts.append("Address these revision requests:\n" + "\n".join(f"- {item}" for item in processed))
        if queued:
            parts.append("Queued improvements:\n" + "\n".join(f"- {item}" for item in queued))
        return "\n\n".join(parts)

    async def _deliberation(self, state: ProjectLoopState) -> Command[str]:
        ceo = state["ceo"]
        # One call budget per micro-epoch.
        self.session.reset_call_budget()
        self.session.dispatch(ProjectSetPhase(ProjectPhase.DELIBERATION))
        advisors = tuple(agent for agent in ADVISOR_PRIORITY if agent != ceo)
        turn = await ceo_control_turn(
            self.session,
            ceo=ceo,
            prompt=self._deliberation_prompt(state["intent"]),
            system_prompt=lambda agent: ceo_round_one_system_prompt() if agent == ceo else advisor_system_prompt(agent),
            agents=(*advisors, ceo),
            extra_context=self.session.carryover_context(),
        )
        if turn.cancelled:
            return self._pause("Deliberation cancelled by user")
        if self._halted():
            return Command(goto=END)
        control = turn.control
        if control is None:
            return self._pause("CEO produced no response during deliberation")
        if control.kind == ControlBlockKind.FINAL and control.prompt_text:
            self.session.dispatch(ProjectSetCeoArtifact(control.prompt_text))
            return Command(goto="ceo_gate", update={"execution_prompt": control.prompt_text})
        if control.kind == ControlBlockKind.DRAFT and control.draft_text:
            self.session.dispatch(ProjectSetPhase(ProjectPhase.CONSENSUS_DRAFT))
            self.session.dispatch(ProjectSetCeoArtifact(control.draft_text))
            return Command(goto="ceo_gate", update={"execution_prompt": control.draft_text})
        if control.kind == ControlBlockKind.BLOCKED and control.blocked_questions:
            return self._pause("\n".join(control.blocked_questions))
        if control.kind == ControlBlockKind.STOP:
            return self._fail(CEO_STOPPED_MESSAGE)
        return self._fail(CEO_UNUSABLE_MESSAGE)

    async def _ceo_gate(self, state: ProjectLoopState) -> Command[str]:
        self.session.dispatch(ProjectSetPhase(ProjectPhase.CEO_GATE))
        if not self.approve_prompt(state["execution_prompt"]):
            return self._pause("Execution prompt was not approved")
        if self._halted():
            return Command(goto=END)
        return Command(goto="execution")

    async def _execution(self, state: ProjectLoopState) -> Command[str]:
        self.session.dispatch(ProjectSetPhase(ProjectPhase.CLAUDE_CODE_EXECUTION))
        try:
            output = await self.executor.execute(state["execution_prompt"])
        except ExecutorError as exc:
            logger.warning("executor_failed error=%s", exc)
            return self._pause(str(exc))
        self.session.dispatch(ProjectSetExecutorOutput(output))
        if self._halted():
            return Command(goto=END, update={"execution_output": output})
        return Command(goto="review", update={"execution_output": output})

    async def _review(self, state: ProjectLoopState) -> Command[str]:
        ceo = state["ceo"]
        self.session.dispatch(ProjectSetPhase(ProjectPhase.REVIEW))
        result = await self.session.run_prompt(
            build_execution_review_prompt(state["execution_prompt"], state["execution_output"]),
            agents=agent_order(ceo),
            system_prompt=execution_reviewer_system_prompt,
            reset_budget=False,
        )
        if result.cancelled:
            return self._pause(REVIEW_CANCELLED_MESSAGE)
        if self._halted():
            return Command(goto=END)
        texts = {agent: result.content(agent) for agent in result.responses}
        reviews = {agent: parse_execution_review(text or "") for agent, text in texts.items() if text is not None}
        resolution = resolve_verdicts(reviews, ceo)
        if not resolution.resolved:
            synthesis = await self.session.run_prompt(
                build_ceo_synthesis_prompt(state["execution_prompt"], {a: t for a, t in texts.items() if t}),
                agents=(ceo,),
                system_prompt=lambda _agent: ceo_synthesis_system_prompt(),
                reset_budget=False,
            )
            if synthesis.cancelled:
                return self._pause(REVIEW_CANCELLED_MESSAGE)
            if self._halted():
                return Command(goto=END, update={"reviews": reviews})
            synthesis_text = synthesis.content(ceo)
            resolution = apply_ceo_synthesis(
                resolution, parse_ceo_verdict(synthesis_text) if synthesis_text is not None else None
            )
        logger.info(
            "execution_reviewed resolved=%s verdict=%s source=%s",
            resolution.resolved,
            resolution.verdict,
            resolution.source.value if resolution.source is not None else None,
        )

        update: dict[str, Any] = {"reviews": reviews, "resolution": resolution}
        if not resolution.resolved:
            self.session.dispatch(
                ProjectAddInterrupt(message=REVIEWERS_SPLIT_MESSAGE, severity=InterruptSeverity.BLOCKER)
            )
            return Command(goto=END, update=update)
        if resolution.verdict == "ACCEPT":
            self.session.dispatch(ProjectSetPhase(ProjectPhase.USER_BUILD_GATE))
            return Command(goto=END, update=update)
        if resolution.verdict == "FAIL":
            return self._fail(EXECUTION_FAILED_MESSAGE, update)
        return Command(goto="revise", update=update)

    async def _revise(self, state: ProjectLoopState) -> Command[str]:
        steps: list[str] = []
        for review in state.get("reviews", {}).values():
            if review.valid and review.decision == "REVISE":
                steps.extend(review.list_items("NEXT_STEPS"))
        message = "\n".join(dict.fromkeys(steps)) or "Reviewers requested a revision"
        self.session.dispatch(ProjectAddInterrupt(message=message, severity=InterruptSeverity.BLOCKER, scope="review"))
        self.session.dispatch(ProjectProcessBlocker())
        if self.run_state.is_terminal:
            logger.warning("project_revision_cap revision_count=%d", self.run_state.revision_count)
            return Command(goto=END)
        return Command(goto="deliberation")

    async def run(self, intent: str, *, ceo: Agent | None = None) -> ProjectOutcome:
        """Start (or redirect) a project epoch and drive it until it needs the user.

        Raises:
            RuntimeError: If the session is not in project mode or a loop is already active.
        """
        if self.session.state.mode != BrainMode.PROJECT:
            raise RuntimeError("Project runs require project mode")
        before = self.session.state
        current = before.project_run
        action = ProjectNewDirection(intent) if current is not None and current.is_terminal else ProjectStartEpoch(intent)
        if self.session.dispatch(action) is before:
            raise RuntimeError("Project epoch cannot start while a loop is active")
        logger.info("project_epoch_started epoch_id=%d", self.run_state.epoch_id)
        return await self._drive(intent, ceo or self.session.settings.ceo)

    async def resume(self, *, ceo: Agent | None = None) -> ProjectOutcome:
        """Process pending blockers and re-enter deliberation, or fail once the revision cap is hit."""
        run = self.session.state.project_run
        if run is None or run.is_terminal:
            raise RuntimeError("No open project run to resume")
        self.session.dispatch(ProjectProcessBlocker())
        if self.run_state.is_terminal:
            return ProjectOutcome(run=self.run_state)
        return await self._drive(self.run_state.last_intent, ceo or self.session.settings.ceo)

    def confirm_build(self) -> ProjectRun:
        """User accepts the build at USER_BUILD_GATE."""
        if self.run_state.phase != ProjectPhase.USER_BUILD_GATE:
            raise RuntimeError(f"Build can only be confirmed at {ProjectPhase.USER_BUILD_GATE.value}")
        self.session.dispatch(ProjectMarkDone())
        return self.run_state

    async def _drive(self, intent: str, ceo: Agent) -> ProjectOutcome:
        result = await self.graph.ainvoke({"intent": intent, "ceo": ceo, "reviews": {}})
        return ProjectOutcome(run=self.run_state, resolution=result.get("resolution"))
