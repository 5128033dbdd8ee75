from pathlib import Path

import pytest

from agent_council.model_selection import DEFAULT_MODELS_BY_AGENT, AgentModelBinding, RuntimeModelSelection
from agent_council.models import Agent
from agent_council.settings import RuntimeSettings


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("COUNCIL_CEO_AGENT", "COUNCIL_AGENT_TIMEOUT_SECONDS", "COUNCIL_MAX_AGENT_CALLS"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.ceo == Agent.GPT
    assert settings.agent_timeout_seconds == 30
    assert settings.max_agent_calls == 15


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COUNCIL_CEO_AGENT", " Claude ")
    monkeypatch.setenv("COUNCIL_AGENT_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("COUNCIL_MAX_AGENT_CALLS", "9")
    monkeypatch.setenv("COUNCIL_MODEL_GEMINI", "local-model")
    monkeypatch.setenv("COUNCIL_BASE_URL_GEMINI", " http://localhost:8000/v1 ")
    settings = RuntimeSettings.from_env()
    assert settings.ceo == Agent.CLAUDE
    assert settings.agent_timeout_seconds == 5
    assert settings.max_agent_calls == 9
    assert settings.model_gemini == "local-model"
    assert settings.base_url_gemini == "http://localhost:8000/v1"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("COUNCIL_AGENT_TIMEOUT_SECONDS", "abc"),
        ("COUNCIL_AGENT_TIMEOUT_SECONDS", "0"),
        ("COUNCIL_MAX_AGENT_CALLS", "1000"),
        ("COUNCIL_MAX_CONTEXT_CHARS", "10"),
        ("COUNCIL_CEO_AGENT", "llama"),
        ("COUNCIL_MODEL_GPT", "  "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_state_store_path_resolves_relative_to_repo(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/unused")) == absolute


def test_model_selection_from_settings() -> None:
    settings = RuntimeSettings(model_claude="claude-proxy", base_url_claude="http://proxy/v1").normalized()
    selection = RuntimeModelSelection.from_settings(settings)
    assert selection.resolve(Agent.CLAUDE) == AgentModelBinding("claude-proxy", "http://proxy/v1")
    assert selection.resolve(Agent.GPT) == AgentModelBinding(DEFAULT_MODELS_BY_AGENT[Agent.GPT], None)


def test_model_selection_requires_every_seat() -> None:
    with pytest.raises(ValueError):
        RuntimeModelSelection(by_agent={Agent.GPT: AgentModelBinding("gpt-4o")})
    with pytest.raises(ValueError):
        RuntimeModelSelection(by_agent={agent: AgentModelBinding(" ") for agent in Agent})
