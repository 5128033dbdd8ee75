from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import openai
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .llm import get_chat_model
from .model_selection import RuntimeModelSelection
from .models import Agent, AgentResponse, ErrorCode
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentRequest:
    """One call to one council seat."""

    agent: Agent
    system_prompt: str
    user_prompt: str
    context: str = ""

    def user_message(self) -> str:
        if not self.context:
            return self.user_prompt
        return f"{self.context}\n\n--- User Prompt ---\n{self.user_prompt}"


class AgentClient(Protocol):
    """Port to the model endpoints.

    Implementations must not raise for endpoint failures; they return an
    ``error`` response carrying a closed ``ErrorCode`` instead. Cancellation
    (``asyncio.CancelledError``) is allowed to propagate.
    """

    async def call(self, request: AgentRequest) -> AgentResponse:
        ...


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
            elif isinstance(item, dict) and item.get("content") is not None:
                chunks.append(_content_to_text(item["content"]))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict) and "content" in content:
        return _content_to_text(content["content"])
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Extract the text of a chat model reply (AIMessage, dict or plain string)."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict) and "content" in response:
        return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from agent text output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Args:
        text: Raw text output from an agent.

    Returns:
        Parsed JSON dict.

    Raises:
        ValueError: If no JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise ValueError("Agent returned empty output; expected JSON object")

    candidates = [body]
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        candidates.append(fenced.group(1))
    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end > start:
        candidates.append(body[start : end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise ValueError(f"Agent output did not contain a JSON object: {preview}")


def classify_error(exc: BaseException) -> ErrorCode:
    """Map an endpoint failure onto the closed error-code set."""
    if isinstance(exc, openai.RateLimitError):
        return ErrorCode.RATE_LIMIT
    if isinstance(exc, openai.APIStatusError):
        return ErrorCode.RATE_LIMIT if exc.status_code == 429 else ErrorCode.API
    if isinstance(exc, (openai.APIConnectionError, ConnectionError)):
        return ErrorCode.NETWORK
    return ErrorCode.UNKNOWN


class ChatAgentClient:
    """AgentClient backed by one LangChain ChatOpenAI model per seat."""

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        model_selection: RuntimeModelSelection | None = None,
        repo_root: Path | None = None,
    ) -> None:
        self.settings = settings
        self.model_selection = model_selection or RuntimeModelSelection.from_settings(settings)
        self.repo_root = repo_root
        self._models: dict[Agent, ChatOpenAI] = {}

    def model_for(self, agent: Agent) -> ChatOpenAI:
        if agent not in self._models:
            binding = self.model_selection.resolve(agent)
            self._models[agent] = get_chat_model(
                model_name=binding.model_name,
                base_url=binding.base_url,
                timeout=self.settings.agent_timeout_seconds,
                repo_root=self.repo_root,
            )
        return self._models[agent]

    async def call(self, request: AgentRequest) -> AgentResponse:
        model = self.model_for(request.agent)
        messages = [SystemMessage(content=request.system_prompt), HumanMessage(content=request.user_message())]
        try:
            reply = await model.ainvoke(messages)
        except Exception as exc:  # noqa: BLE001 - every endpoint failure becomes an error response.
            code = classify_error(exc)
            logger.warning("agent_call_failed agent=%s code=%s error=%s", request.agent.value, code.value, exc)
            return AgentResponse.error(request.agent, code, str(exc) or type(exc).__name__)

        text = extract_agent_text(reply).strip()
        if not text:
            return AgentResponse.error(request.agent, ErrorCode.API, "Empty response from model")
        return AgentResponse.success(request.agent, text)
