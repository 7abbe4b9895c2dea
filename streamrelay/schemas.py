"""Request/response models: the contract between the relay and its clients."""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict


class ChatMessage(BaseModel):
    """A single conversation turn, forwarded upstream verbatim."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class PromptRequest(BaseModel):
    """Body of ``POST /api/stream``.

    ``session_id`` is optional. Without it the prompt goes into the shared
    slot and is consumed by whichever stream opens next.
    """

    message: str
    session_id: str | None = None


class PromptAccepted(BaseModel):
    received: str


# ---------------------------------------------------------------------------
# Relay events: the closed set of things the transcoder knows how to frame
# ---------------------------------------------------------------------------


class TokenEvent(BaseModel):
    """One non-empty content fragment from the upstream delta."""

    model_config = ConfigDict(frozen=True)

    type: Literal["token"] = "token"
    text: str


class DoneEvent(BaseModel):
    """Logical end of generation. May be emitted more than once per stream."""

    model_config = ConfigDict(frozen=True)

    type: Literal["done"] = "done"


class ConnectedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["connected"] = "connected"


class ErrorEvent(BaseModel):
    """Opt-in diagnostic sent right before an abnormal close.

    kind: "decode" | "upstream" | "internal"
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    kind: str
    message: str


RelayEvent = Union[TokenEvent, DoneEvent, ConnectedEvent, ErrorEvent]
