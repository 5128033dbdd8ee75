from __future__ import annotations

import logging
from typing import Mapping

from .models import Agent, ParsedBlock, VerdictResolution, VerdictSource

logger = logging.getLogger(__name__)


def resolve_verdicts(verdicts: Mapping[Agent, ParsedBlock], ceo_agent: Agent) -> VerdictResolution:
    """Combine per-agent parsed verdicts into one outcome.

    Only valid verdicts count. Unanimity among them resolves; the source is
    ``ceo_review`` when the CEO is part of the agreeing set and ``consensus``
    otherwise. No valid verdicts or any disagreement leaves it unresolved.

    Args:
        verdicts: Parsed verdict per agent.
        ceo_agent: The privileged agent for this run.

    Returns:
        The resolution.
    """
    valid = {agent: parsed.decision for agent, parsed in verdicts.items() if parsed.valid and parsed.decision}
    if not valid:
        return VerdictResolution(resolved=False)

    distinct = set(valid.values())
    if len(distinct) != 1:
        logger.info("verdicts_disagree values=%s", sorted(distinct))
        return VerdictResolution(resolved=False)

    verdict = distinct.pop()
    source = VerdictSource.CEO_REVIEW if ceo_agent in valid else VerdictSource.CONSENSUS
    return VerdictResolution(resolved=True, verdict=verdict, source=source)


def apply_ceo_synthesis(resolution: VerdictResolution, synthesis: ParsedBlock | None) -> VerdictResolution:
    """Break an unresolved outcome with the CEO's synthesis block, if it is valid."""
    if resolution.resolved:
        return resolution
    if synthesis is None or not synthesis.valid or synthesis.decision is None:
        return resolution
    return VerdictResolution(resolved=True, verdict=synthesis.decision, source=VerdictSource.CEO_SYNTHESIS)
