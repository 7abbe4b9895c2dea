"""SSE transcoder: turns relay events into Server-Sent-Events bytes.

All framing lives here. Payloads are JSON-encoded before they hit the
wire, so a newline inside a token can never end a frame early.

    TokenEvent("Hel")  ->  data: "Hel"\\n\\n
    DoneEvent()        ->  data: "[DONE]"\\n\\n
    ConnectedEvent()   ->  event: connected\\ndata: {"status":"connected"}\\n\\n
    ErrorEvent(...)    ->  event: error\\ndata: {"error":...,"message":...}\\n\\n
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from streamrelay.schemas import ConnectedEvent, DoneEvent, ErrorEvent, RelayEvent, TokenEvent

DONE_SENTINEL = "[DONE]"

# SSE only recognises CR, LF and CRLF as line breaks.
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def _json(value) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class SSEFrame:
    data: str
    event: str | None = None

    def render(self) -> str:
        """Serialize to wire text, always ending in exactly one blank line.

        Multi-line data is split into one ``data:`` line per line, as the
        SSE format requires.
        """
        lines = []
        if self.event is not None:
            lines.append(f"event: {self.event}")
        for line in _LINE_BREAK.split(self.data):
            lines.append(f"data: {line}")
        return "\n".join(lines) + "\n\n"


def to_frame(event: RelayEvent) -> SSEFrame:
    """Map a relay event to its frame."""
    match event:
        case TokenEvent(text=text):
            return SSEFrame(data=_json(text))
        case DoneEvent():
            return SSEFrame(data=_json(DONE_SENTINEL))
        case ConnectedEvent():
            return SSEFrame(event="connected", data=_json({"status": "connected"}))
        case ErrorEvent(kind=kind, message=message):
            return SSEFrame(event="error", data=_json({"error": kind, "message": message}))
        case _:
            raise TypeError(f"Unknown relay event: {event!r}")


def encode(event: RelayEvent) -> bytes:
    """Frame and UTF-8 encode one event. One call yields one whole frame."""
    return to_frame(event).render().encode("utf-8")
