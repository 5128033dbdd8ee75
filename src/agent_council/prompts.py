"""System prompts for each council seat and deliberation round."""

from __future__ import annotations

from .control_block import (
    BLOCKED_END_MARKER,
    BLOCKED_START_MARKER,
    DRAFT_END_MARKER,
    DRAFT_START_MARKER,
    PROMPT_END_MARKER,
    PROMPT_START_MARKER,
    STOP_NOW_MARKER,
)
from .models import AGENT_DISPLAY_ORDER, Agent, BrainMode
from .protocol import ADVISOR_REVIEW, CEO_VERDICT, format_block

_SEAT_FOCUS: dict[Agent, str] = {
    Agent.GPT: "structured reasoning and clear recommendations",
    Agent.CLAUDE: "deep analysis, nuanced trade-offs and careful writing",
    Agent.GEMINI: "factual accuracy, practical detail and clear explanations",
}

_FINAL_OPTION = f"""{PROMPT_START_MARKER}
[complete execution prompt]
{PROMPT_END_MARKER}"""

_DRAFT_OPTION = f"""{DRAFT_START_MARKER}
[draft execution prompt for advisor review]
{DRAFT_END_MARKER}"""

_BLOCKED_OPTION = f"""{BLOCKED_START_MARKER}
Q1: [question]
Q2: [question]
{BLOCKED_END_MARKER}"""


def discussion_system_prompt(agent: Agent) -> str:
    return (
        f'You are {agent.label}, one of three independent advisors in a council of AI models. '
        "Other council members may already have answered in this exchange; build on or challenge "
        f"their points rather than repeating them. Focus on {_SEAT_FOCUS[agent]}. Be concise but thorough."
    )


def advisor_system_prompt(agent: Agent) -> str:
    return (
        f"You are {agent.label}, an advisor to the CEO of an AI council deciding how to act on a user intent. "
        "Analyze the intent, surface risks and missing information, and recommend an approach. "
        "Your input is advisory; the CEO decides."
    )


def advisor_review_system_prompt(agent: Agent) -> str:
    example = format_block(
        ADVISOR_REVIEW,
        "REVISE",
        {
            "RATIONALE": ["[why]"],
            "REQUIRED_CHANGES": ["[change the CEO must make]"],
            "RISKS": ["[risk]"],
        },
    )
    return (
        f"You are {agent.label}, reviewing the CEO's draft execution prompt. "
        "Reply with exactly one review block in this format:\n\n"
        f"{example}\n\n"
        "DECISION is APPROVE, REVISE or REJECT. CONFIDENCE is HIGH, MEDIUM or LOW. "
        "RATIONALE needs at least one item; REVISE needs at least one REQUIRED_CHANGES item."
    )


def ceo_round_one_system_prompt() -> str:
    return f"""You are the CEO of an AI council and the final decision-maker.
Advisor input is advisory; accept, modify or reject each point on its merits.

Include exactly ONE of these blocks in your reply:

FINAL (ready to execute, no review needed):
{_FINAL_OPTION}

DRAFT (request advisor review before finalizing):
{_DRAFT_OPTION}

BLOCKED (you need clarification, at most 3 questions):
{_BLOCKED_OPTION}

STOP (the task cannot or should not proceed):
{STOP_NOW_MARKER}

Keep text outside the block to a minimum."""


def ceo_final_round_system_prompt() -> str:
    return f"""You are the CEO of an AI council, finalizing after advisor review.
The advisors' structured reviews are summarized below. Reviews marked INVALID_SCHEMA
carry raw feedback that may be unreliable. Address every REVISE item by accepting,
modifying or rejecting it with a reason. Your decision is final.

Include exactly ONE of these blocks in your reply. A DRAFT is not allowed in this round.

FINAL:
{_FINAL_OPTION}

BLOCKED:
{_BLOCKED_OPTION}

STOP:
{STOP_NOW_MARKER}"""


CEO_REFORMAT_INSTRUCTION = f"""Your previous reply was missing the required markers. Reformat it using exactly one of:

{_FINAL_OPTION}

{_BLOCKED_OPTION}

{STOP_NOW_MARKER}"""


def ceo_synthesis_system_prompt() -> str:
    example = format_block(CEO_VERDICT, "ACCEPT", {"RATIONALE": ["[why]"], "NEXT_STEPS": ["[next action]"]})
    return (
        "You are the CEO of an AI council. The reviewers disagreed on an execution result. "
        "Weigh their reviews and give the binding verdict in exactly this format:\n\n"
        f"{example}\n\n"
        "VERDICT is ACCEPT, REVISE or FAIL. REVISE needs at least one NEXT_STEPS item."
    )


def system_prompt_for(agent: Agent, mode: BrainMode) -> str:
    if mode == BrainMode.DISCUSSION:
        return discussion_system_prompt(agent)
    return advisor_system_prompt(agent)


def execution_reviewer_system_prompt(agent: Agent) -> str:
    return (
        f"You are {agent.label}, reviewing the output of a delegated build step. "
        "Judge only whether the result satisfies the execution prompt, and answer in the requested review block."
    )


def build_ceo_synthesis_prompt(execution_prompt: str, review_texts: dict[Agent, str]) -> str:
    """Reviewer replies, in display order, for the CEO to settle a split verdict."""
    sections = [f"EXECUTION PROMPT:\n---\n{execution_prompt}\n---", "REVIEWS:"]
    for agent in AGENT_DISPLAY_ORDER:
        if agent in review_texts:
            sections.append(f"{agent.label}:\n{review_texts[agent]}")
    return "\n\n".join(sections)
