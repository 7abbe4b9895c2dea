"""Upstream gateway: OpenAI-compatible streaming chat completions.

Works with any OpenAI-compatible API (OpenAI, DeepSeek, vLLM, ...). SDK
chunk objects are normalized into ``UpstreamChunk`` so the relay never
touches SDK types, and every SDK failure is re-raised as ``UpstreamError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai

from streamrelay.config import UpstreamConfig, get_config
from streamrelay.errors import UpstreamError
from streamrelay.schemas import ChatMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChoiceDelta:
    """The part of one streamed choice the relay cares about."""

    content: str | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class UpstreamChunk:
    """One unit of the incremental response.

    The usage summary arrives by convention in a final chunk with no choices.
    """

    choices: list[ChoiceDelta] = field(default_factory=list)
    usage: dict[str, Any] | None = None

    @classmethod
    def from_openai(cls, chunk) -> UpstreamChunk:
        choices = [
            ChoiceDelta(
                content=getattr(choice.delta, "content", None) if choice.delta else None,
                finish_reason=choice.finish_reason,
            )
            for choice in (chunk.choices or [])
        ]
        usage = chunk.usage.model_dump() if getattr(chunk, "usage", None) else None
        return cls(choices=choices, usage=usage)


class ChatUpstream(Protocol):
    """Anything that can open a streamed completion for a message list."""

    async def open(self, messages: list[ChatMessage]) -> AsyncIterator[UpstreamChunk]:
        """Start the completion call. Returned iterator must support ``aclose()``."""
        ...


class OpenAIUpstream:
    """Wraps openai.AsyncOpenAI to implement the ChatUpstream protocol."""

    def __init__(self, config: UpstreamConfig) -> None:
        self._config = config
        self._client: openai.AsyncOpenAI | None = None

    @property
    def model(self) -> str:
        return self._config.model

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            kwargs: dict[str, Any] = {
                "api_key": self._config.api_key,
                "base_url": self._config.base_url,
            }
            if self._config.timeout is not None:
                kwargs["timeout"] = self._config.timeout
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def open(self, messages: list[ChatMessage]) -> AsyncGenerator[UpstreamChunk, None]:
        try:
            client = self._get_client()
            stream = await client.chat.completions.create(
                model=self._config.model,
                messages=[m.to_wire() for m in messages],  # dicts satisfy ChatCompletionMessageParam
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.OpenAIError as e:
            raise UpstreamError(f"Completion request failed: {e}") from e

        logger.debug(f"Upstream stream opened (model={self._config.model}, messages={len(messages)})")
        return self._iterate(stream)

    async def _iterate(self, stream) -> AsyncGenerator[UpstreamChunk, None]:
        try:
            async for chunk in stream:
                yield UpstreamChunk.from_openai(chunk)
        except openai.OpenAIError as e:
            raise UpstreamError(f"Completion stream failed: {e}") from e
        finally:
            # Releases the HTTP response; on early exit this aborts the call upstream.
            await stream.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ---------------------------------------------------------------------------
# Module-level gateway
# ---------------------------------------------------------------------------

_upstream: OpenAIUpstream | None = None


def get_upstream() -> OpenAIUpstream:
    """Return the gateway for the current config. FastAPI dependency."""
    global _upstream
    if _upstream is None:
        _upstream = OpenAIUpstream(get_config().upstream)
    return _upstream


async def reset_upstream() -> None:
    """Drop the cached gateway so the next request picks up new config."""
    global _upstream
    if _upstream is not None:
        await _upstream.close()
        _upstream = None
