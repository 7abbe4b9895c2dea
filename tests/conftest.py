"""Shared test fixtures and protocol-conforming fakes."""

from __future__ import annotations

import asyncio

import pytest

from streamrelay.prompt_cache import PromptCache
from streamrelay.schemas import ChatMessage
from streamrelay.upstream import ChoiceDelta, UpstreamChunk

# --- Chunk builders ---


def token_chunk(text: str | None, finish_reason: str | None = None) -> UpstreamChunk:
    return UpstreamChunk(choices=[ChoiceDelta(content=text, finish_reason=finish_reason)])


def stop_chunk() -> UpstreamChunk:
    return token_chunk(None, finish_reason="stop")


def usage_chunk(prompt_tokens: int = 12, completion_tokens: int = 3) -> UpstreamChunk:
    return UpstreamChunk(
        choices=[],
        usage={
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    )


# --- Protocol-conforming Fakes ---


class FakeUpstream:
    """Fake completion API, implements the ChatUpstream protocol."""

    def __init__(
        self,
        chunks: list[UpstreamChunk] | None = None,
        *,
        open_error: Exception | None = None,
        fail_with: Exception | None = None,
        stall: bool = False,
    ) -> None:
        self._chunks = list(chunks or [])
        self._open_error = open_error
        self._fail_with = fail_with
        self._stall = stall
        self.open_calls: list[list[ChatMessage]] = []
        self.yielded = 0
        self.closed = 0

    async def open(self, messages: list[ChatMessage]):
        self.open_calls.append(list(messages))
        if self._open_error is not None:
            raise self._open_error
        return self._iterate()

    async def _iterate(self):
        try:
            for chunk in self._chunks:
                yield chunk
                self.yielded += 1
            if self._fail_with is not None:
                raise self._fail_with
            if self._stall:
                await asyncio.Event().wait()
        finally:
            self.closed += 1

    def set_chunks(self, chunks: list[UpstreamChunk]) -> None:
        self._chunks = list(chunks)


# --- Standard Fixtures ---


@pytest.fixture
def prompt_cache() -> PromptCache:
    return PromptCache()


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream([token_chunk("Hel"), token_chunk("lo"), stop_chunk()])
