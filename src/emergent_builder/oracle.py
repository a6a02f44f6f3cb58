"""Oracle adapters: the external AI agent that turns prompts into text or edits.

Two backends are provided:

* ``chat`` calls a LangChain chat model directly. It only produces text.
* ``deepagent`` runs a ``deepagents`` agent whose filesystem is the working
  directory passed to ``propose``. The agent can read the codebase while
  planning and edit files in place when dispatched on a job.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Protocol

from deepagents import create_deep_agent

from .errors import OracleError
from .llm import get_chat_model
from .settings import RuntimeSettings
from .utils import slugify_name, suspend
from .workspace_backend import build_workspace_backend

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous software engineer improving an existing project. "
    "Follow the user's instructions exactly and keep changes within the requested scope."
)


class Oracle(Protocol):
    async def propose(self, prompt: str, *, workdir: Path | None = None) -> str:
        """Return the oracle's final text for *prompt*.

        *workdir* is the checkout the oracle may inspect or modify. Backends
        without filesystem access ignore it.
        """
        ...


def _flatten_content(content: Any) -> str:
    """Join the text parts of a message ``content`` value (a string or a list of blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        block_text = content.get("text")
        if isinstance(block_text, str):
            return block_text
        if content.get("content") is not None:
            return _flatten_content(content["content"])
        return json.dumps(content, sort_keys=True)
    if isinstance(content, list):
        parts = (_flatten_content(block) for block in content)
        return "\n".join(part for part in parts if part.strip())
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Final text of a chat model message or of a deep agent's result state."""
    if isinstance(response, dict):
        messages = response.get("messages") or []
        if messages:
            return extract_agent_text(messages[-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        return _flatten_content(response)
    return _flatten_content(getattr(response, "content", response))


def extract_json_array(text: str) -> list[Any] | None:
    """Return the first top-level JSON array embedded in *text*, or None.

    Scans forward from each ``[`` and tracks bracket depth outside of JSON
    string literals, so prose before or after the array (and brackets inside
    strings) does not confuse the match.
    """
    start = text.find("[")
    while start != -1:
        end = _balanced_end(text, start)
        parsed = None
        if end is not None:
            try:
                parsed = json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                parsed = None
        if isinstance(parsed, list):
            return parsed
        start = text.find("[", start + 1)
    return None


def _balanced_end(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return index
    return None


class ChatModelOracle:
    """Single-turn chat completion. Ignores ``workdir``."""

    def __init__(self, model: Any, *, timeout: float | None = None) -> None:
        self.model = model
        self.timeout = timeout

    async def propose(self, prompt: str, *, workdir: Path | None = None) -> str:
        try:
            response = await suspend(self.model.ainvoke(prompt), timeout=self.timeout)
        except Exception as exc:
            raise OracleError(f"chat model invocation failed: {exc}") from exc
        return extract_agent_text(response)


class DeepAgentOracle:
    """Tool-using agent rooted at ``workdir``.

    A fresh agent is built per call so concurrent jobs never share a
    backend or a conversation thread.
    """

    def __init__(
        self,
        model: Any,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        name: str = "emergent-builder",
        timeout: float | None = None,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self.name = name
        self.timeout = timeout

    def _build_agent(self, workdir: Path | None) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "tools": [],
            "system_prompt": self.system_prompt,
            "name": self.name,
        }
        if workdir is not None:
            kwargs["backend"] = build_workspace_backend(workdir)
        return create_deep_agent(**kwargs)

    async def propose(self, prompt: str, *, workdir: Path | None = None) -> str:
        agent = self._build_agent(workdir)
        thread_label = slugify_name(workdir.name) if workdir is not None else "detached"
        config = {"configurable": {"thread_id": f"{self.name}-{thread_label}-{uuid.uuid4().hex[:8]}"}}
        logger.debug("Invoking deep agent %s in %s", self.name, workdir)
        try:
            response = await suspend(
                agent.ainvoke({"messages": [{"role": "user", "content": prompt}]}, config=config),
                timeout=self.timeout,
            )
        except Exception as exc:
            raise OracleError(f"deep agent invocation failed: {exc}") from exc
        return extract_agent_text(response)


def build_oracle(settings: RuntimeSettings) -> Oracle:
    """Build the oracle selected by ``settings.oracle_backend``.

    Raises:
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    model = get_chat_model(model_name=settings.model)
    if settings.oracle_backend == "chat":
        logger.info("Using chat oracle with model %s", settings.model)
        return ChatModelOracle(model, timeout=settings.oracle_timeout_seconds)
    logger.info("Using deep agent oracle with model %s", settings.model)
    return DeepAgentOracle(model, timeout=settings.oracle_timeout_seconds)
