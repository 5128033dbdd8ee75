"""Async council session.

``CouncilSession`` owns the only ``BrainState`` reference. Agent calls are
made strictly one after another, advisors first and the CEO last, and every
result is recorded by dispatching an action tagged with the run id. Late
completions from a superseded run are fenced out by the reducer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Collection, Sequence

from .agent_runtime import AgentClient, AgentRequest, classify_error
from .compaction import build_compaction_prompt, merge_key_notes, parse_key_notes, should_compact, split_for_compaction
from .context import build_context
from .models import (
    ADVISOR_PRIORITY,
    Agent,
    AgentResponse,
    AgentStatus,
    BrainMode,
    BrainState,
    ErrorCode,
    WarningState,
    WarningType,
    new_id,
)
from .persistence import CarryoverStore, build_carryover, format_carryover_context
from .prompts import system_prompt_for
from .reducer import SetMode, initial_state, reduce
from .sequencing import (
    AgentCompleted,
    AgentStarted,
    CancelComplete,
    CancelRequested,
    CompactionCompleted,
    SequenceCompleted,
    SetWarning,
    SubmitStart,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

COMPACTION_SYSTEM_PROMPT = "You compress long discussions into structured key-notes. Reply with JSON only."


def agent_order(ceo: Agent) -> tuple[Agent, ...]:
    """Advisors by priority, then the CEO."""
    return (*(agent for agent in ADVISOR_PRIORITY if agent != ceo), ceo)


def cost_cap_message(limit: int) -> str:
    return f"Cost control: max agent calls ({limit}) exceeded"


@dataclass(frozen=True)
class RunResult:
    run_id: str
    responses: dict[Agent, AgentResponse] = field(default_factory=dict)
    cancelled: bool = False

    def content(self, agent: Agent) -> str | None:
        response = self.responses.get(agent)
        if response is None or response.status != AgentStatus.SUCCESS:
            return None
        return response.content


class CouncilSession:
    """Single mutation path over one council's state plus the async call sequencer."""

    def __init__(
        self,
        client: AgentClient,
        settings: RuntimeSettings | None = None,
        *,
        mode: BrainMode = BrainMode.DISCUSSION,
        carryover_store: CarryoverStore | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or RuntimeSettings()
        self.carryover_store = carryover_store
        self._state = initial_state(mode)
        self._inflight: asyncio.Task[AgentResponse] | None = None
        self._calls_used = 0

    @property
    def state(self) -> BrainState:
        return self._state

    @property
    def calls_used(self) -> int:
        return self._calls_used

    def dispatch(self, action: object) -> BrainState:
        self._state = reduce(self._state, action)
        return self._state

    def reset_call_budget(self) -> None:
        self._calls_used = 0

    # ------------------------------------------------------------------
    # Mode switching and carryover
    # ------------------------------------------------------------------

    def set_mode(self, mode: BrainMode) -> bool:
        """Switch mode, saving a discussion carryover first when one is configured.

        Returns:
            True when the reducer accepted the switch.
        """
        before = self._state
        if before.mode == BrainMode.DISCUSSION and mode != BrainMode.DISCUSSION and self.carryover_store is not None:
            carryover = build_carryover(before)
            if carryover is not None and not self.carryover_store.save(carryover):
                logger.warning("carryover_save_failed session_id=%s", carryover.from_session_id)
        return self.dispatch(SetMode(mode)) is not before

    def carryover_context(self) -> str:
        if self.carryover_store is None or self._state.mode == BrainMode.DISCUSSION:
            return ""
        carryover = self.carryover_store.load()
        return format_carryover_context(carryover) if carryover is not None else ""

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Request cancellation of the pending run and abort its in-flight call."""
        pending = self._state.pending_run
        if pending is None:
            return False
        self.dispatch(CancelRequested(pending.run_id))
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        logger.info("sequence_cancel_requested run_id=%s", pending.run_id)
        return True

    async def run_prompt(
        self,
        prompt: str,
        *,
        agents: Sequence[Agent] | None = None,
        system_prompt: Callable[[Agent], str] | None = None,
        skipped: Collection[Agent] = (),
        extra_context: str = "",
        reset_budget: bool = True,
    ) -> RunResult:
        """Run one prompt through the council and fold the result into history.

        Args:
            prompt: The user prompt for this run.
            agents: Call order; defaults to advisors by priority with the CEO last.
            system_prompt: Per-agent system prompt; defaults to the current mode's.
            skipped: Agents recorded as ``skipped`` without being called.
            extra_context: Text placed ahead of this run's accumulated agent output.
            reset_budget: Start a fresh call budget for this run.

        Returns:
            The responses recorded for the run and whether it was cancelled.

        Raises:
            RuntimeError: If another run is already in flight.
        """
        order = tuple(agents) if agents is not None else agent_order(self.settings.ceo)
        prompt_for = system_prompt or (lambda agent: system_prompt_for(agent, self._state.mode))
        run_id = new_id("run")
        before = self._state
        if self.dispatch(SubmitStart(run_id=run_id, user_prompt=prompt, first_agent=order[0] if order else None)) is before:
            raise RuntimeError("A council run is already in flight")
        if reset_budget:
            self.reset_call_budget()
        logger.info("sequence_start run_id=%s agents=%s", run_id, ",".join(agent.value for agent in order))

        run_context = extra_context.strip() + "\n\n" if extra_context.strip() else ""
        try:
            for agent in order:
                if self._state.user_cancelled:
                    break
                if agent in skipped:
                    self.dispatch(AgentCompleted(run_id, AgentResponse.terminal(agent, AgentStatus.SKIPPED)))
                    continue
                response = await self._call_agent(run_id, agent, prompt, prompt_for(agent), run_context)
                self.dispatch(AgentCompleted(run_id, response))
                logger.info("agent_completed run_id=%s agent=%s status=%s", run_id, agent.value, response.status.value)
                if response.status == AgentStatus.SUCCESS:
                    run_context += f"{agent.label}: {response.content}\n\n"
        except asyncio.CancelledError:
            self.dispatch(CancelRequested(run_id))
            self._finish(run_id)
            raise

        result = self._finish(run_id)
        if not result.cancelled and should_compact(len(self._state.exchanges)):
            await self.compact()
        return result

    def _finish(self, run_id: str) -> RunResult:
        pending = self._state.pending_run
        if pending is None or pending.run_id != run_id:
            logger.info("sequence_superseded run_id=%s", run_id)
            return RunResult(run_id=run_id)
        responses = dict(pending.responses_by_agent)
        if self._state.user_cancelled:
            self.dispatch(CancelComplete(run_id))
            logger.info("sequence_cancelled run_id=%s responses=%d", run_id, len(responses))
            return RunResult(run_id=run_id, responses=responses, cancelled=True)
        self.dispatch(SequenceCompleted(run_id))
        logger.info("sequence_completed run_id=%s responses=%d", run_id, len(responses))
        return RunResult(run_id=run_id, responses=responses)

    async def _call_agent(
        self, run_id: str, agent: Agent, prompt: str, system_prompt: str, run_context: str
    ) -> AgentResponse:
        if self._calls_used >= self.settings.max_agent_calls:
            logger.warning("agent_call_capped run_id=%s agent=%s limit=%d", run_id, agent.value, self.settings.max_agent_calls)
            return AgentResponse.error(agent, ErrorCode.API, cost_cap_message(self.settings.max_agent_calls))
        self._calls_used += 1

        self.dispatch(AgentStarted(run_id, agent))
        logger.info("agent_started run_id=%s agent=%s", run_id, agent.value)
        built = build_context(
            self._state.exchanges,
            run_context,
            prompt,
            max_context_chars=self.settings.max_context_chars,
            max_exchanges=self.settings.max_context_exchanges,
        )
        if built.prompt_truncated or built.history_truncated:
            self.dispatch(
                SetWarning(
                    run_id,
                    WarningState(type=WarningType.CONTEXT_LIMIT, message="Context was truncated to fit the budget."),
                )
            )
        request = AgentRequest(
            agent=agent, system_prompt=system_prompt, user_prompt=built.user_prompt, context=built.context
        )
        return await self._await_with_timeout(run_id, request)

    async def _await_with_timeout(self, run_id: str, request: AgentRequest) -> AgentResponse:
        timeout = self.settings.agent_timeout_seconds
        task = asyncio.ensure_future(asyncio.wait_for(self.client.call(request), timeout=timeout))
        self._inflight = task
        try:
            return await task
        except asyncio.TimeoutError:
            logger.warning("sequence_timeout run_id=%s agent=%s timeout_s=%s", run_id, request.agent.value, timeout)
            self.dispatch(
                SetWarning(
                    run_id,
                    WarningState(
                        type=WarningType.TIMEOUT_WARNING,
                        message=f"{request.agent.label} did not respond within {timeout}s.",
                    ),
                )
            )
            return AgentResponse.terminal(request.agent, AgentStatus.TIMEOUT)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return AgentResponse.terminal(request.agent, AgentStatus.CANCELLED)
        except Exception as exc:  # noqa: BLE001 - a misbehaving client must not strand the run.
            code = classify_error(exc)
            logger.warning("agent_call_failed run_id=%s agent=%s code=%s error=%s", run_id, request.agent.value, code.value, exc)
            return AgentResponse.error(request.agent, code, str(exc) or type(exc).__name__)
        finally:
            self._inflight = None

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(self) -> bool:
        """Summarize older exchanges into key-notes through the CEO seat.

        Returns:
            True when the history was compacted.
        """
        to_compact, to_keep = split_for_compaction(self._state.exchanges)
        if not to_compact:
            return False
        request = AgentRequest(
            agent=self.settings.ceo,
            system_prompt=COMPACTION_SYSTEM_PROMPT,
            user_prompt=build_compaction_prompt(to_compact, self._state.key_notes),
        )
        try:
            response = await asyncio.wait_for(self.client.call(request), timeout=self.settings.agent_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("compaction_timeout exchanges=%d", len(to_compact))
            return False
        if response.status != AgentStatus.SUCCESS or not response.content:
            logger.warning("compaction_failed status=%s", response.status.value)
            return False
        notes = parse_key_notes(response.content)
        if notes is None:
            return False
        before = self._state
        merged = merge_key_notes(before.key_notes, notes)
        if self.dispatch(CompactionCompleted(trimmed_exchanges=to_keep, key_notes=merged)) is before:
            return False
        logger.info("compaction_completed compacted=%d kept=%d", len(to_compact), len(to_keep))
        return True
