from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

log = logging.getLogger(__name__)

SessionKey = tuple[str, str]  # (server address, panel username)


@dataclass
class _Entry:
    token: str
    expires_at: float


class SessionCache:
    """Panel session cookies keyed by (address, username), reused until TTL.

    Only touched from the event loop and every method is synchronous, so a
    fan-out of coroutines cannot interleave inside one access.
    """

    def __init__(self, ttl_seconds: float = 1800, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[SessionKey, _Entry] = {}

    def get(self, key: SessionKey) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.token

    def put(self, key: SessionKey, token: str, ttl: float | None = None) -> None:
        self._entries[key] = _Entry(token=token, expires_at=self._clock() + (ttl if ttl is not None else self.ttl_seconds))

    def invalidate(self, key: SessionKey) -> None:
        if self._entries.pop(key, None) is not None:
            log.info("panel_session_invalidated server=%s user=%s", key[0], key[1])

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
