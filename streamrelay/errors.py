"""Relay error types.

Every failure inside a relay connection is one of these; they are caught
once at the connection's task boundary and never reach the server process.
"""


class RelayError(Exception):
    """Base class for failures that end a relay connection."""

    kind = "internal"


class DecodeError(RelayError):
    """The client's history header is not valid percent-encoded JSON."""

    kind = "decode"


class UpstreamError(RelayError):
    """The completion API rejected the call or failed mid-stream."""

    kind = "upstream"


class TransportError(RelayError):
    """The client went away before the stream finished. Cleanup only."""

    kind = "transport"
