from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Update

log = logging.getLogger(__name__)


class CorrelationIdMiddleware(BaseMiddleware):
    """Puts corr_id (and the sender's tg_id) into handler data for log extras."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        update: Update | None = data.get("event_update")
        if update:
            data["corr_id"] = f"u{update.update_id}"
        from_user = getattr(event, "from_user", None)
        if from_user:
            data["log_extra"] = {"corr_id": data.get("corr_id"), "tg_id": from_user.id}
        return await handler(event, data)


class RateLimitMiddleware(BaseMiddleware):
    """Drops repeated taps on the same button; provisioning runs take seconds."""

    def __init__(self, min_interval_sec: float = 1.0):
        self.min_interval_sec = min_interval_sec
        self._last: dict[tuple[int, str], float] = {}

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        cb = getattr(event, "data", None)
        from_user = getattr(event, "from_user", None)
        if cb and from_user:
            key = (from_user.id, cb)
            now = time.monotonic()
            last = self._last.get(key)
            if last and (now - last) < self.min_interval_sec:
                log.info("callback_throttled tg_id=%s data=%s", from_user.id, cb)
                return None
            self._prune(now)
            self._last[key] = now
        return await handler(event, data)

    def _prune(self, now: float) -> None:
        stale = [k for k, ts in self._last.items() if (now - ts) >= self.min_interval_sec]
        for k in stale:
            del self._last[k]
