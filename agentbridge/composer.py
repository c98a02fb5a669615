"""
agentbridge Composer — the chat/LLM collaborator.

Routes summary prompts through LiteLLM so the bridge never knows which
vendor is backing it. Used only to phrase user-facing replies; it never
decides a governance outcome.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

import litellm
from loguru import logger
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential


class ComposerError(Exception):
    pass


class TextGenerator(Protocol):
    async def generate_text(self, prompt: str) -> str:
        ...


SYSTEM_PROMPT = (
    "You summarise the outcome of governed actions for a developer. "
    "Report what was executed, what was rejected and why, and what awaits approval. "
    "Do not invent outcomes that are not in the report. Be brief."
)


def _build_kwargs(model: str, prompt: str, max_tokens: int, temperature: float) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        "max_tokens": max_tokens,
    }

    # o-series reasoning models don't support temperature
    normalized = model.lower().replace("openai/", "")
    if not normalized.startswith(("o1", "o3", "o4", "gpt-5")):
        kwargs["temperature"] = temperature

    return kwargs


class ReplyComposer:
    """
    LiteLLM-backed text generator.

    `generate_text` runs the blocking completion in a worker thread and
    retries transient failures before giving up with ComposerError.
    """

    def __init__(self, model: str, max_tokens: int = 512, temperature: float = 0.2):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        litellm.suppress_debug_info = True

    async def generate_text(self, prompt: str) -> str:
        try:
            return await asyncio.to_thread(self._complete, prompt)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ComposerError(f"Completion via {self.model} failed: {cause}") from cause

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10))
    def _complete(self, prompt: str) -> str:
        start = time.monotonic()
        logger.debug(f"[COMPOSER] → {self.model} ({len(prompt)} chars)")

        response = litellm.completion(**_build_kwargs(self.model, prompt, self.max_tokens, self.temperature))
        content = response.choices[0].message.content or ""

        logger.debug(f"[COMPOSER] complete — {int((time.monotonic() - start) * 1000)}ms")
        return content
