# llm.py
# Language-model capability contract and its OpenRouter implementation.
#
# Components never talk to a client directly; they hold an LLMCapability,
# which a deterministic fake can replace in tests. Every call made through
# complete_with_timeout / stream_with_timeout carries an upper bound.

import asyncio
import logging
import os
from typing import AsyncIterator, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from task_engine.config import LLMSettings

logger = logging.getLogger(__name__)

Message = dict[str, str]


class LLMOptions(BaseModel):
    """Per-call options. purpose labels the call in logs and lets fakes route responses."""

    purpose: str = Field(default="general")
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_s: float = Field(default=60.0, gt=0)


class LLMCapability(Protocol):
    async def complete(self, messages: list[Message], opts: LLMOptions) -> str: ...

    def stream(self, messages: list[Message], opts: LLMOptions) -> AsyncIterator[str]: ...


async def complete_with_timeout(llm: LLMCapability, messages: list[Message], opts: LLMOptions) -> str:
    """Run llm.complete bounded by opts.timeout_s. Raises asyncio.TimeoutError."""
    return await asyncio.wait_for(llm.complete(messages, opts), timeout=opts.timeout_s)


async def stream_with_timeout(
    llm: LLMCapability, messages: list[Message], opts: LLMOptions
) -> AsyncIterator[str]:
    """Yield chunks from llm.stream, bounding the wait for each chunk by opts.timeout_s."""
    iterator = llm.stream(messages, opts).__aiter__()
    while True:
        try:
            chunk = await asyncio.wait_for(iterator.__anext__(), timeout=opts.timeout_s)
        except StopAsyncIteration:
            return
        yield chunk


# ---------------------------------------------------------------------------
# OpenRouter-backed implementation
# ---------------------------------------------------------------------------


class OpenAILLM:
    """
    LLMCapability over the OpenAI chat completions API.

    Defaults to OpenRouter, so any OpenRouter model string works:

        llm = OpenAILLM(LLMSettings(model="anthropic/claude-3.5-haiku"))
        text = await llm.complete(messages, LLMOptions(purpose="plan"))
    """

    def __init__(self, settings: LLMSettings) -> None:
        self._settings = settings
        self._client = AsyncOpenAI(
            base_url=settings.base_url,
            api_key=os.getenv(settings.api_key_env),
        )

    def _params(self, messages: list[Message], opts: LLMOptions) -> dict:
        params = {
            "model": self._settings.model,
            "messages": messages,
            "temperature": self._settings.temperature if opts.temperature is None else opts.temperature,
        }
        if opts.max_tokens is not None:
            params["max_tokens"] = opts.max_tokens
        return params

    async def complete(self, messages: list[Message], opts: LLMOptions) -> str:
        logger.debug("LLM complete (%s) with %d message(s)", opts.purpose, len(messages))
        response = await asyncio.wait_for(
            self._client.chat.completions.create(**self._params(messages, opts)),
            timeout=opts.timeout_s,
        )
        return (response.choices[0].message.content or "").strip()

    async def stream(self, messages: list[Message], opts: LLMOptions) -> AsyncIterator[str]:
        logger.debug("LLM stream (%s) with %d message(s)", opts.purpose, len(messages))
        response = await asyncio.wait_for(
            self._client.chat.completions.create(**self._params(messages, opts), stream=True),
            timeout=opts.timeout_s,
        )
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta

    async def close(self) -> None:
        await self._client.close()
