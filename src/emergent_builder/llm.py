"""OpenAI chat model construction for the oracle backends."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 600
REQUEST_MAX_RETRIES = 3


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return ``OPENAI_API_KEY``, loading ``<repo_root or cwd>/.env`` first if present.

    Raises:
        RuntimeError: The key is unset or blank.
    """
    dotenv_file = (repo_root or Path.cwd()) / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)
    key = os.environ.get("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to build an oracle")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = REQUEST_TIMEOUT_SECONDS,
    max_retries: int = REQUEST_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Chat model shared by the analysis and worker prompts.

    Long agent turns are expected, so the per-request timeout is generous;
    ``EMERGENT_ORACLE_TIMEOUT_SECONDS`` bounds a whole oracle call separately.

    Raises:
        ValueError: ``model_name`` is blank.
        RuntimeError: No OpenAI API key is available.
    """
    name = model_name.strip() if model_name else ""
    if not name:
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root)
    logger.debug("Chat model %s: timeout=%ss retries=%s", name, timeout, max_retries)
    return ChatOpenAI(model=name, temperature=temperature, timeout=timeout, max_retries=max_retries)
