from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

# Retries are owned by the sequencer's timeout; the client should fail fast.
_DEFAULT_MAX_RETRIES: int = 0


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when it exists.

    ``repo_root`` defaults to the working directory. Values already present in
    the process environment win over the ``.env`` file.

    Raises:
        RuntimeError: When no non-blank key is available.
    """
    env_path = (repo_root or Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for live agent calls")
    return key


def get_chat_model(
    *,
    model_name: str,
    base_url: str | None = None,
    temperature: float = 0.7,
    timeout: int = 30,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Build the chat model backing one council seat.

    Args:
        model_name: Model identifier served by the endpoint.
        base_url: OpenAI-compatible endpoint for seats not served by OpenAI.
        temperature: Sampling temperature.
        timeout: Per-request timeout in seconds.
        max_retries: Client-side retries; zero leaves retry policy to the caller.
        max_completion_tokens: Completion cap, or the model default when None.
        repo_root: Where to look for a ``.env`` holding the API key.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If no API key is available.
    """
    if not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    options: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if base_url:
        options["base_url"] = base_url
    if max_completion_tokens is not None:
        options["max_completion_tokens"] = max_completion_tokens
    logger.debug("chat_model model=%s base_url=%s", model_name, base_url or "default")
    return ChatOpenAI(**options)
