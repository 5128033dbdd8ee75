import asyncio
from pathlib import Path

import pytest
from langchain_core.messages import AIMessage

from agent_council.agent_runtime import (
    AgentRequest,
    ChatAgentClient,
    classify_error,
    extract_agent_text,
    extract_json_payload,
)
from agent_council.llm import ensure_openai_api_key, get_chat_model
from agent_council.models import Agent, AgentStatus, ErrorCode
from agent_council.settings import RuntimeSettings


class _FakeModel:
    def __init__(self, reply: object = None, exc: Exception | None = None) -> None:
        self.reply = reply
        self.exc = exc
        self.messages: list = []

    async def ainvoke(self, messages: list) -> object:
        self.messages = messages
        if self.exc is not None:
            raise self.exc
        return self.reply


def _client_with(model: _FakeModel) -> ChatAgentClient:
    client = ChatAgentClient(settings=RuntimeSettings())
    client._models = {agent: model for agent in Agent}  # type: ignore[dict-item]
    return client


def test_user_message_prepends_context() -> None:
    assert AgentRequest(Agent.GPT, "sys", "hello").user_message() == "hello"
    request = AgentRequest(Agent.GPT, "sys", "hello", context="--- Previous Exchanges ---\nx")
    assert request.user_message() == "--- Previous Exchanges ---\nx\n\n--- User Prompt ---\nhello"


def test_extract_agent_text_handles_blocks() -> None:
    assert extract_agent_text("plain") == "plain"
    assert extract_agent_text(AIMessage(content="from message")) == "from message"
    blocks = {"content": [{"type": "text", "text": "one"}, "two", {"content": "three"}]}
    assert extract_agent_text(blocks) == "one\ntwo\nthree"


def test_extract_json_payload_variants() -> None:
    assert extract_json_payload('{"a": 1}') == {"a": 1}
    assert extract_json_payload('text\n```json\n{"b": 2}\n```\nmore') == {"b": 2}
    assert extract_json_payload('prefix {"c": 3} suffix') == {"c": 3}
    with pytest.raises(ValueError):
        extract_json_payload("   ")
    with pytest.raises(ValueError):
        extract_json_payload("[1, 2, 3]")


def test_classify_error_maps_to_closed_codes() -> None:
    assert classify_error(ConnectionError("reset")) == ErrorCode.NETWORK
    assert classify_error(ValueError("odd")) == ErrorCode.UNKNOWN


def test_chat_client_returns_success() -> None:
    model = _FakeModel(reply=AIMessage(content="  an answer  "))
    response = asyncio.run(_client_with(model).call(AgentRequest(Agent.CLAUDE, "be brief", "hi", context="ctx")))
    assert response.status == AgentStatus.SUCCESS
    assert response.agent == Agent.CLAUDE
    assert response.content == "an answer"
    assert model.messages[0].content == "be brief"
    assert model.messages[1].content.endswith("--- User Prompt ---\nhi")


def test_chat_client_turns_failures_into_error_responses() -> None:
    failing = _FakeModel(exc=ConnectionError("connection reset"))
    response = asyncio.run(_client_with(failing).call(AgentRequest(Agent.GPT, "s", "u")))
    assert response.status == AgentStatus.ERROR
    assert response.error_code == ErrorCode.NETWORK
    assert response.error_message == "connection reset"

    empty = _FakeModel(reply=AIMessage(content="   "))
    response = asyncio.run(_client_with(empty).call(AgentRequest(Agent.GPT, "s", "u")))
    assert response.status == AgentStatus.ERROR
    assert response.error_code == ErrorCode.API


def test_missing_api_key_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        ensure_openai_api_key(tmp_path)


def test_api_key_loaded_from_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-test\n", encoding="utf-8")
    assert ensure_openai_api_key(tmp_path) == "sk-test"


def test_get_chat_model_rejects_blank_name() -> None:
    with pytest.raises(ValueError):
        get_chat_model(model_name=" ")
