from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import Agent


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    ceo_agent: str = "gpt"
    agent_timeout_seconds: int = 30
    max_agent_calls: int = 15
    max_context_chars: int = 12_000
    max_context_exchanges: int = 10
    state_store_root: str = "state_store"
    model_gpt: str = "gpt-4o"
    model_claude: str = "gpt-4o"
    model_gemini: str = "gpt-4o-mini"
    base_url_gpt: str = ""
    base_url_claude: str = ""
    base_url_gemini: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            ceo_agent=os.getenv("COUNCIL_CEO_AGENT", "gpt"),
            agent_timeout_seconds=_get_env_int("COUNCIL_AGENT_TIMEOUT_SECONDS", default=30, minimum=1, maximum=600),
            max_agent_calls=_get_env_int("COUNCIL_MAX_AGENT_CALLS", default=15, minimum=1, maximum=100),
            max_context_chars=_get_env_int("COUNCIL_MAX_CONTEXT_CHARS", default=12_000, minimum=1_000),
            max_context_exchanges=_get_env_int("COUNCIL_MAX_CONTEXT_EXCHANGES", default=10, minimum=0, maximum=100),
            state_store_root=os.getenv("COUNCIL_STATE_STORE_ROOT", "state_store"),
            model_gpt=os.getenv("COUNCIL_MODEL_GPT", "gpt-4o"),
            model_claude=os.getenv("COUNCIL_MODEL_CLAUDE", "gpt-4o"),
            model_gemini=os.getenv("COUNCIL_MODEL_GEMINI", "gpt-4o-mini"),
            base_url_gpt=os.getenv("COUNCIL_BASE_URL_GPT", ""),
            base_url_claude=os.getenv("COUNCIL_BASE_URL_CLAUDE", ""),
            base_url_gemini=os.getenv("COUNCIL_BASE_URL_GEMINI", ""),
        ).normalized()

    @property
    def ceo(self) -> Agent:
        return Agent(self.ceo_agent)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        ceo_agent = self.ceo_agent.strip().lower()
        valid_agents = sorted(agent.value for agent in Agent)
        if ceo_agent not in valid_agents:
            raise ValueError(f"COUNCIL_CEO_AGENT must be one of: {', '.join(valid_agents)}")

        models = {}
        for agent in Agent:
            name = getattr(self, f"model_{agent.value}").strip()
            if not name:
                raise ValueError(f"COUNCIL_MODEL_{agent.value.upper()} must be non-empty")
            models[f"model_{agent.value}"] = name

        if self.agent_timeout_seconds < 1:
            raise ValueError(f"COUNCIL_AGENT_TIMEOUT_SECONDS must be >= 1, got: {self.agent_timeout_seconds}")
        if self.max_agent_calls < 1:
            raise ValueError(f"COUNCIL_MAX_AGENT_CALLS must be >= 1, got: {self.max_agent_calls}")
        if not self.state_store_root.strip():
            raise ValueError("COUNCIL_STATE_STORE_ROOT must be non-empty")

        return RuntimeSettings(
            ceo_agent=ceo_agent,
            agent_timeout_seconds=self.agent_timeout_seconds,
            max_agent_calls=self.max_agent_calls,
            max_context_chars=self.max_context_chars,
            max_context_exchanges=self.max_context_exchanges,
            state_store_root=self.state_store_root,
            base_url_gpt=self.base_url_gpt.strip(),
            base_url_claude=self.base_url_claude.strip(),
            base_url_gemini=self.base_url_gemini.strip(),
            **models,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
