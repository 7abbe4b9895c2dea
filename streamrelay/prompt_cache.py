"""Prompt cache: holds a pending system prompt between a "set" call and
the stream that consumes it.

Two storage modes share one object:

- the shared slot (no key): one value process-wide, last write wins, and
  the next stream to read it takes it, whichever client that stream
  belongs to. Two clients interleaving set/stream calls can receive each
  other's prompts.
- keyed slots: the prompt is stored under a client-supplied session id
  with a deadline, and only a stream presenting the same id can take it.
  Expired entries read as empty and are dropped by ``sweep_expired``.

``take`` is a read-and-clear under a lock, so a value is handed out at
most once even with handlers running on several threads.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60.0


class PromptCache:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._shared = ""
        self._keyed: dict[str, tuple[str, float]] = {}

    def set(self, text: str, key: str | None = None) -> None:
        """Store ``text``, overwriting whatever was pending for the same slot."""
        with self._lock:
            if key is None:
                self._shared = text
            else:
                self._keyed[key] = (text, self._clock() + self.ttl_seconds)
        logger.debug(f"Prompt stored (key={key!r}, length={len(text)})")

    def take(self, key: str | None = None) -> str:
        """Return the pending prompt and reset the slot to empty.

        Returns "" when nothing is pending or the keyed entry has expired.
        """
        with self._lock:
            if key is None:
                text, self._shared = self._shared, ""
                return text

            entry = self._keyed.pop(key, None)
            if entry is None:
                return ""
            text, deadline = entry
            if self._clock() >= deadline:
                logger.info(f"Prompt for key {key!r} expired before it was read")
                return ""
            return text

    def sweep_expired(self) -> int:
        """Drop keyed entries past their deadline. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, deadline) in self._keyed.items() if now >= deadline]
            for key in expired:
                del self._keyed[key]
        if expired:
            logger.info(f"Swept {len(expired)} expired prompt(s)")
        return len(expired)

    def pending(self) -> int:
        """Number of prompts waiting to be taken, shared slot included."""
        with self._lock:
            return len(self._keyed) + (1 if self._shared else 0)

    def clear(self) -> None:
        with self._lock:
            self._shared = ""
            self._keyed.clear()


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_cache = PromptCache()


def get_prompt_cache() -> PromptCache:
    """Return the process-wide cache. FastAPI dependency."""
    return _cache
