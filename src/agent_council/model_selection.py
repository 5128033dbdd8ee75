from __future__ import annotations

from dataclasses import dataclass

from .models import Agent
from .settings import RuntimeSettings

DEFAULT_MODELS_BY_AGENT: dict[Agent, str] = {
    Agent.GPT: "gpt-4o",
    Agent.CLAUDE: "gpt-4o",
    Agent.GEMINI: "gpt-4o-mini",
}


@dataclass(frozen=True)
class AgentModelBinding:
    model_name: str
    base_url: str | None = None


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps each council seat to the concrete model (and endpoint) that fills it.

    The three seats are independent identities; they may share a model name
    or point at different OpenAI-compatible endpoints.
    """

    by_agent: dict[Agent, AgentModelBinding]

    def __post_init__(self) -> None:
        """Validate that every seat is bound and no seat maps to an empty model name."""
        missing = set(Agent) - set(self.by_agent)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing agents: {', '.join(sorted(agent.value for agent in missing))}"
            )
        for agent, binding in self.by_agent.items():
            if not binding.model_name or not binding.model_name.strip():
                raise ValueError(f"RuntimeModelSelection agent '{agent.value}' has empty model name")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        by_agent = {}
        for agent in Agent:
            model_name = getattr(settings, f"model_{agent.value}") or DEFAULT_MODELS_BY_AGENT[agent]
            base_url = getattr(settings, f"base_url_{agent.value}") or None
            by_agent[agent] = AgentModelBinding(model_name=model_name, base_url=base_url)
        return cls(by_agent=by_agent)

    def resolve(self, agent: Agent) -> AgentModelBinding:
        """Return the binding for an agent.

        Raises:
            ValueError: If the agent has no binding.
        """
        if agent not in self.by_agent:
            raise ValueError(f"No model configured for agent '{agent}'")
        return self.by_agent[agent]
