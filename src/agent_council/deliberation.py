"""Decision Epoch driver.

One epoch is a small LangGraph::

    advisors -> ceo_draft -> (finish | advisor_review -> ceo_final -> finish)

Every phase change goes through the session's reducer; the graph only decides
which action to dispatch next based on parsed CEO control blocks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .control_block import create_prompt_artifact, parse_ceo_control_block
from .epoch import EpochAdvancePhase, EpochComplete, EpochStart
from .models import (
    ADVISOR_PRIORITY,
    Agent,
    BrainMode,
    CeoControlBlock,
    CeoPromptArtifact,
    ControlBlockKind,
    DecisionEpoch,
    DecisionRecord,
    EpochPhase,
    EpochTerminalReason,
    ParsedBlock,
    new_id,
    utc_now,
)
from .orchestrator import CouncilSession
from .persistence import ProjectStore
from .prompts import (
    CEO_REFORMAT_INSTRUCTION,
    advisor_review_system_prompt,
    advisor_system_prompt,
    ceo_final_round_system_prompt,
    ceo_round_one_system_prompt,
)
from .protocol import build_advisor_review_summary, parse_advisor_review

logger = logging.getLogger(__name__)

RECORDED_EXCHANGES = 10


@dataclass(frozen=True)
class CeoTurn:
    control: CeoControlBlock | None
    cancelled: bool = False
    reformatted: bool = False


async def ceo_control_turn(
    session: CouncilSession,
    *,
    ceo: Agent,
    prompt: str,
    system_prompt: Callable[[Agent], str],
    agents: tuple[Agent, ...] | None = None,
    skipped: tuple[Agent, ...] = (),
    allow_draft: bool = True,
    extra_context: str = "",
) -> CeoTurn:
    """Run the CEO (optionally after advisors) and parse its control block.

    A reply without a usable block gets one reformat request. ``control`` is
    None when the CEO produced no text at all.
    """
    result = await session.run_prompt(
        prompt,
        agents=agents or (ceo,),
        system_prompt=system_prompt,
        skipped=skipped,
        extra_context=extra_context,
        reset_budget=False,
    )
    if result.cancelled:
        return CeoTurn(control=None, cancelled=True)
    text = result.content(ceo)
    if text is None:
        logger.warning("ceo_no_output agent=%s", ceo.value)
        return CeoTurn(control=None)

    control = parse_ceo_control_block(text)
    if _usable(control, allow_draft):
        return CeoTurn(control=control)

    logger.info("ceo_reformat_requested agent=%s kind=%s", ceo.value, control.kind.value)
    retry = await session.run_prompt(
        f"{CEO_REFORMAT_INSTRUCTION}\n\nYour previous response was:\n{text}",
        agents=(ceo,),
        system_prompt=system_prompt,
        reset_budget=False,
    )
    if retry.cancelled:
        return CeoTurn(control=None, cancelled=True, reformatted=True)
    retry_text = retry.content(ceo)
    if retry_text is None:
        return CeoTurn(control=control, reformatted=True)
    return CeoTurn(control=parse_ceo_control_block(retry_text), reformatted=True)


def _usable(control: CeoControlBlock, allow_draft: bool) -> bool:
    if control.kind == ControlBlockKind.NONE:
        return False
    if control.kind == ControlBlockKind.BLOCKED and not control.blocked_questions:
        return False
    return allow_draft or control.kind != ControlBlockKind.DRAFT


def _terminal_reason(turn: CeoTurn) -> EpochTerminalReason:
    if turn.cancelled:
        return EpochTerminalReason.CANCELLED
    control = turn.control
    if control is None:
        return EpochTerminalReason.BLOCKED
    if control.kind == ControlBlockKind.FINAL:
        return EpochTerminalReason.PROMPT_DELIVERED
    if control.kind == ControlBlockKind.STOP:
        return EpochTerminalReason.STOPPED
    return EpochTerminalReason.BLOCKED


class EpochGraphState(TypedDict, total=False):
    intent: str
    ceo: Agent
    advisors: tuple[Agent, ...]
    ceo_only: bool
    carryover: str
    draft_text: str
    control: CeoControlBlock | None
    reviews: dict[Agent, ParsedBlock]
    review_summary: str
    terminal_reason: EpochTerminalReason


@dataclass
class EpochOutcome:
    epoch: DecisionEpoch
    terminal_reason: EpochTerminalReason
    control: CeoControlBlock | None = None
    prompt_artifact: CeoPromptArtifact | None = None
    reviews: dict[Agent, ParsedBlock] = field(default_factory=dict)
    decision: DecisionRecord | None = None

    @property
    def blocked_questions(self) -> tuple[str, ...]:
        return self.control.blocked_questions if self.control is not None else ()


class DecisionEpochGraph:
    """Nested deliberation graph: advisors -> CEO draft -> advisor review -> CEO final."""

    def __init__(self, session: CouncilSession, *, project_store: ProjectStore | None = None) -> None:
        self.session = session
        self.project_store = project_store
        self.last_artifact: CeoPromptArtifact | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(EpochGraphState)
        graph.add_node("advisors", self._advisors)
        graph.add_node("ceo_draft", self._ceo_draft)
        graph.add_node("advisor_review", self._advisor_review)
        graph.add_node("ceo_final", self._ceo_final)
        graph.add_node("finish", self._finish)

        graph.add_edge(START, "advisors")
        graph.add_edge("ceo_final", "finish")
        graph.add_edge("finish", END)
        return graph

    async def _advisors(self, state: EpochGraphState) -> Command[str]:
        if state["ceo_only"]:
            return Command(goto="ceo_draft")
        result = await self.session.run_prompt(
            state["intent"],
            agents=state["advisors"],
            system_prompt=advisor_system_prompt,
            extra_context=state.get("carryover", ""),
            reset_budget=False,
        )
        if result.cancelled:
            return Command(goto="finish", update={"terminal_reason": EpochTerminalReason.CANCELLED})
        self.session.dispatch(EpochAdvancePhase(EpochPhase.CEO_DRAFT))
        return Command(goto="ceo_draft")

    async def _ceo_draft(self, state: EpochGraphState) -> Command[str]:
        ceo = state["ceo"]
        # Advisors already spoke in their own run; in CEO-only mode they are recorded as skipped.
        advisors = state["advisors"] if state["ceo_only"] else ()
        turn = await ceo_control_turn(
            self.session,
            ceo=ceo,
            prompt=state["intent"],
            system_prompt=lambda _agent: ceo_round_one_system_prompt(),
            agents=(*advisors, ceo),
            skipped=advisors,
            extra_context=state.get("carryover", ""),
        )
        control = turn.control
        if control is not None and control.kind == ControlBlockKind.DRAFT and not turn.cancelled:
            self.session.dispatch(EpochAdvancePhase(EpochPhase.ADVISOR_REVIEW))
            return Command(goto="advisor_review", update={"control": control, "draft_text": control.draft_text or ""})
        return Command(goto="finish", update={"control": control, "terminal_reason": _terminal_reason(turn)})

    async def _advisor_review(self, state: EpochGraphState) -> Command[str]:
        advisors = state["advisors"]
        result = await self.session.run_prompt(
            f"Review the CEO's draft execution prompt for this intent.\n\nINTENT:\n{state['intent']}\n\n"
            f"DRAFT:\n{state['draft_text']}",
            agents=advisors,
            system_prompt=advisor_review_system_prompt,
            skipped=advisors if state["ceo_only"] else (),
            reset_budget=False,
        )
        if result.cancelled:
            return Command(goto="finish", update={"terminal_reason": EpochTerminalReason.CANCELLED})
        reviews = {
            agent: parse_advisor_review(result.content(agent) or "")
            for agent in advisors
            if agent in result.responses and not state["ceo_only"]
        }
        self.session.dispatch(EpochAdvancePhase(EpochPhase.CEO_FINAL))
        return Command(
            goto="ceo_final",
            update={"reviews": reviews, "review_summary": build_advisor_review_summary(reviews)},
        )

    async def _ceo_final(self, state: EpochGraphState) -> dict[str, Any]:
        prompt = f"INTENT:\n{state['intent']}\n\nYOUR DRAFT:\n{state['draft_text']}"
        if state.get("reviews"):
            prompt += f"\n\n{state['review_summary']}"
        turn = await ceo_control_turn(
            self.session,
            ceo=state["ceo"],
            prompt=prompt,
            system_prompt=lambda _agent: ceo_final_round_system_prompt(),
            allow_draft=False,
        )
        control = turn.control
        if control is not None and control.kind == ControlBlockKind.DRAFT:
            control = None
        return {"control": control, "terminal_reason": _terminal_reason(CeoTurn(control, turn.cancelled))}

    async def _finish(self, state: EpochGraphState) -> dict[str, Any]:
        reason = state["terminal_reason"]
        self.session.dispatch(EpochComplete(reason))
        control = state.get("control")
        if reason == EpochTerminalReason.PROMPT_DELIVERED and control is not None and control.prompt_text:
            self.last_artifact = create_prompt_artifact(control.prompt_text, self.last_artifact)
        logger.info("epoch_finished reason=%s", reason.value)
        return {}

    def _record(self, outcome: EpochOutcome, advisors: tuple[Agent, ...]) -> DecisionRecord | None:
        state = self.session.state
        if self.project_store is None or state.active_project_id is None:
            return None
        project = self.project_store.load(state.active_project_id)
        if project is None:
            logger.warning("decision_not_recorded project_id=%s reason=missing", state.active_project_id)
            return None
        record = DecisionRecord(
            id=new_id("dec"),
            created_at=utc_now(),
            mode=BrainMode.DECISION,
            epoch_id=outcome.epoch.epoch_id,
            terminal_reason=outcome.terminal_reason,
            prompt_produced=outcome.prompt_artifact is not None,
            prompt_text=outcome.prompt_artifact.text if outcome.prompt_artifact is not None else None,
            blocked=outcome.terminal_reason == EpochTerminalReason.BLOCKED,
            blocked_questions=outcome.blocked_questions,
            ceo_agent=outcome.epoch.ceo_agent,
            advisors=advisors,
            recent_exchanges=state.exchanges[-RECORDED_EXCHANGES:],
        )
        project = self.project_store.append_decision(project, record)
        self.project_store.update_memory(project, state.exchanges, state.key_notes)
        return project.decisions[-1]

    async def run(self, intent: str, *, ceo: Agent | None = None, ceo_only: bool = False) -> EpochOutcome:
        """Deliberate one intent to a terminal epoch phase.

        Raises:
            RuntimeError: If the session is not in decision mode or an epoch is still open.
        """
        ceo = ceo or self.session.settings.ceo
        before = self.session.state
        if self.session.dispatch(EpochStart(intent=intent, ceo_agent=ceo, ceo_only_mode=ceo_only)) is before:
            raise RuntimeError("Decision epoch cannot start: session must be in decision mode with no open epoch")
        self.session.reset_call_budget()
        advisors = tuple(agent for agent in ADVISOR_PRIORITY if agent != ceo)
        epoch = self.session.state.decision_epoch
        assert epoch is not None
        logger.info("epoch_started epoch_id=%d ceo=%s ceo_only=%s", epoch.epoch_id, ceo.value, ceo_only)

        artifact_before = self.last_artifact
        result = await self.graph.ainvoke(
            {
                "intent": intent,
                "ceo": ceo,
                "advisors": advisors,
                "ceo_only": ceo_only,
                "carryover": self.session.carryover_context(),
                "control": None,
                "reviews": {},
            }
        )
        final_epoch = self.session.state.decision_epoch
        assert final_epoch is not None
        outcome = EpochOutcome(
            epoch=final_epoch,
            terminal_reason=result["terminal_reason"],
            control=result.get("control"),
            prompt_artifact=self.last_artifact if self.last_artifact is not artifact_before else None,
            reviews=dict(result.get("reviews", {})),
        )
        outcome.decision = self._record(outcome, advisors)
        return outcome
