"""Stream relay: bridges one client connection to one upstream completion.

Per connection:

    START → COMPOSING → STREAMING → (DONE | FAILED) → CLOSED

1. Decode the client's percent-encoded JSON history.
2. Take the pending system prompt and prepend it to the history.
3. Open the upstream stream and classify each chunk into relay events.
4. Encode events to SSE frames and hand them to the HTTP layer.

A producer task runs steps 1-3 and pushes encoded frames into a bounded
queue; the response generator drains it. Any failure ends the stream
quietly (logged server-side), unless diagnostic frames are switched on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncGenerator
from contextlib import aclosing
from enum import Enum
from urllib.parse import unquote

from pydantic import TypeAdapter, ValidationError

from streamrelay.errors import DecodeError, RelayError, TransportError
from streamrelay.prompt_cache import PromptCache
from streamrelay.schemas import (
    ChatMessage,
    ConnectedEvent,
    DoneEvent,
    ErrorEvent,
    RelayEvent,
    TokenEvent,
)
from streamrelay.sse import encode
from streamrelay.upstream import ChatUpstream, UpstreamChunk

logger = logging.getLogger(__name__)

_history_adapter = TypeAdapter(list[ChatMessage])

# A '%' not followed by two hex digits.
_BAD_PERCENT = re.compile(r"%(?![0-9A-Fa-f]{2})")


class RelayState(str, Enum):
    START = "start"
    COMPOSING = "composing"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Pure steps
# ---------------------------------------------------------------------------


def decode_history(raw: str) -> list[ChatMessage]:
    """Decode a percent-encoded JSON array of ``{role, content}`` turns.

    Raises DecodeError on bad escapes, invalid UTF-8, invalid JSON, or a
    payload that is not a list of chat messages.
    """
    if _BAD_PERCENT.search(raw):
        raise DecodeError("Malformed percent-encoding in history")
    try:
        text = unquote(raw, errors="strict")
    except UnicodeDecodeError as e:
        raise DecodeError(f"History is not valid UTF-8: {e}") from e

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"History is not valid JSON: {e}") from e

    try:
        return _history_adapter.validate_python(payload)
    except ValidationError as e:
        raise DecodeError(f"History is not a list of chat messages: {e}") from e


def compose_messages(system_prompt: str, history: list[ChatMessage]) -> list[ChatMessage]:
    """System turn first, then the client's turns in their original order."""
    return [ChatMessage(role="system", content=system_prompt), *history]


def classify(chunk: UpstreamChunk) -> list[TokenEvent | DoneEvent]:
    """Turn one upstream chunk into zero or more relay events.

    A usage-only chunk and a "stop" finish reason each produce a DoneEvent;
    when both occur the client sees the sentinel twice.
    """
    if not chunk.choices:
        if chunk.usage is not None:
            logger.info(f"Upstream usage: {chunk.usage}")
            return [DoneEvent()]
        return []

    events: list[TokenEvent | DoneEvent] = []
    choice = chunk.choices[0]
    if choice.content:
        events.append(TokenEvent(text=choice.content))
    if choice.finish_reason == "stop":
        events.append(DoneEvent())
    return events


# ---------------------------------------------------------------------------
# Connection driver
# ---------------------------------------------------------------------------


class StreamRelay:
    """Drives one client connection end-to-end.

    Not reusable: create one per request.
    """

    def __init__(
        self,
        upstream: ChatUpstream,
        prompt_cache: PromptCache,
        *,
        session_id: str | None = None,
        queue_size: int = 64,
        diagnostic_errors: bool = False,
        announce_connection: bool = False,
    ) -> None:
        self._upstream = upstream
        self._prompt_cache = prompt_cache
        self._session_id = session_id
        self._queue_size = queue_size
        self._diagnostic_errors = diagnostic_errors
        self._announce_connection = announce_connection
        self.state = RelayState.START
        self.error: BaseException | None = None

    def _transition(self, state: RelayState) -> None:
        logger.debug(f"Relay {self.state.value} → {state.value}")
        self.state = state

    def _fail(self, error: BaseException) -> ErrorEvent | None:
        self.error = error
        self._transition(RelayState.FAILED)
        if isinstance(error, RelayError):
            logger.error(f"Relay failed ({error.kind}): {error}", exc_info=error)
            kind = error.kind
        else:
            logger.error(f"Relay failed unexpectedly: {error}", exc_info=error)
            kind = "internal"
        if self._diagnostic_errors:
            return ErrorEvent(kind=kind, message=str(error))
        return None

    async def events(self, raw_history: str) -> AsyncGenerator[RelayEvent, None]:
        """Yield relay events in upstream arrival order.

        Never raises for relay failures; they end the generator instead.
        """
        if self._announce_connection:
            yield ConnectedEvent()

        try:
            history = decode_history(raw_history)

            self._transition(RelayState.COMPOSING)
            system_prompt = self._prompt_cache.take(self._session_id)
            logger.info(
                f"Opening stream: history_turns={len(history)}, "
                f"prompt_length={len(system_prompt)}, session={self._session_id!r}"
            )
            chunks = await self._upstream.open(compose_messages(system_prompt, history))

            self._transition(RelayState.STREAMING)
            async with aclosing(chunks):
                async for chunk in chunks:
                    for event in classify(chunk):
                        yield event

            self._transition(RelayState.DONE)
        except Exception as e:
            diagnostic = self._fail(e)
            if diagnostic is not None:
                yield diagnostic

    async def _produce(self, raw_history: str, queue: asyncio.Queue[bytes | None]) -> None:
        try:
            async with aclosing(self.events(raw_history)) as events:
                async for event in events:
                    await queue.put(encode(event))
        except Exception as e:
            logger.error(f"Relay producer crashed: {e}", exc_info=True)
        # Not reached on cancellation; the consumer is gone by then.
        await queue.put(None)

    async def frames(self, raw_history: str) -> AsyncGenerator[bytes, None]:
        """Yield encoded SSE frames for the HTTP response body.

        The producer fills a bounded queue, so a slow client suspends the
        upstream read. If the client disconnects, the producer is cancelled
        and the upstream stream is closed.
        """
        queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=self._queue_size)
        producer = asyncio.create_task(self._produce(raw_history, queue))
        finished = False
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield frame
            finished = True
        finally:
            if not finished:
                self.error = TransportError("Client disconnected before the stream ended")
                logger.info("Client disconnected, stopping relay")
            if not producer.done():
                producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass
            self._transition(RelayState.CLOSED)
