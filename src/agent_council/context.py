from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from .models import AGENT_DISPLAY_ORDER, Agent, AgentResponse, AgentStatus, Exchange

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[TRUNCATED]"
TRUNCATION_RESERVE = 50
HISTORY_PADDING = 100
DEFAULT_MAX_CONTEXT_CHARS = 12_000
DEFAULT_MAX_EXCHANGES = 10


@dataclass(frozen=True)
class ContextBuildResult:
    context: str
    user_prompt: str
    prompt_truncated: bool
    exchanges_dropped: int
    history_truncated: bool


def truncate_with_marker(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def serialize_response(agent: Agent, response: AgentResponse) -> str:
    if response.status == AgentStatus.SUCCESS and response.content:
        return f"{agent.value.upper()}: {response.content}"
    return f"{agent.value.upper()}: [{response.status.value}]"


def serialize_exchange(exchange: Exchange) -> str:
    parts = [f"User: {exchange.user_prompt}"]
    for agent in AGENT_DISPLAY_ORDER:
        response = exchange.responses_by_agent.get(agent)
        if response is not None:
            parts.append(serialize_response(agent, response))
    return "\n".join(parts)


def build_context(
    exchanges: Sequence[Exchange],
    current_run_context: str,
    user_prompt: str,
    *,
    max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
    max_exchanges: int = DEFAULT_MAX_EXCHANGES,
) -> ContextBuildResult:
    """Assemble the history/context payload for one agent call within a character budget.

    The prompt is truncated first, then the newest exchanges (at most
    ``max_exchanges``) are kept while they fit in what remains of the budget
    after the current run's context. Older exchanges are dropped whole.

    Args:
        exchanges: Completed exchanges, oldest first.
        current_run_context: Output of agents that already spoke in this run.
        user_prompt: The user's prompt for this run.
        max_context_chars: Total character budget.
        max_exchanges: Rolling history window.

    Returns:
        The assembled context and truncation bookkeeping.
    """
    max_prompt_chars = max_context_chars - TRUNCATION_RESERVE
    final_prompt = truncate_with_marker(user_prompt, max_prompt_chars)
    prompt_truncated = final_prompt != user_prompt

    available = max(0, max_context_chars - len(current_run_context) - len(final_prompt) - HISTORY_PADDING)
    selected = list(exchanges[-max_exchanges:]) if max_exchanges > 0 else []
    exchanges_dropped = len(exchanges) - len(selected)
    history_truncated = False

    history: list[str] = []
    used = 0
    for index in range(len(selected) - 1, -1, -1):
        serialized = serialize_exchange(selected[index])
        needed = used + len(serialized) + 4
        if needed > available:
            exchanges_dropped += index + 1
            history_truncated = True
            break
        history.insert(0, serialized)
        used = needed

    parts: list[str] = []
    if history:
        parts.append("--- Previous Exchanges ---")
        parts.append("\n\n".join(history))
    if current_run_context.strip():
        parts.append("--- Current Exchange ---")
        parts.append(current_run_context.strip())
    context = "\n\n".join(parts)

    if prompt_truncated or exchanges_dropped or history_truncated:
        logger.info(
            "context_truncated context_chars=%d prompt_chars=%d included=%d dropped=%d prompt_truncated=%s",
            len(context),
            len(final_prompt),
            len(history),
            exchanges_dropped,
            prompt_truncated,
        )
    return ContextBuildResult(
        context=context,
        user_prompt=final_prompt,
        prompt_truncated=prompt_truncated,
        exchanges_dropped=exchanges_dropped,
        history_truncated=history_truncated,
    )
