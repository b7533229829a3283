"""Avito API rate limiting.

Avito counts requests per endpoint and client id over a one-minute window and
answers 429 (usually with ``Retry-After``) once the budget is spent. The limiter
follows the same model:

- a sliding 60s window of request times per (client id, endpoint), capped at
  ``AVITO_RATE_LIMIT_RPM``;
- ``block()`` puts an endpoint on hold for the ``Retry-After`` period, and
  every caller of that endpoint waits it out in ``acquire()``.

Endpoints are keyed by method and path template, ids replaced by ``{id}``.
State is per process: with several API / worker processes split the budget
between them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
MAX_RETRY_AFTER = 120.0
_DEFAULT_RPM = 120

# Path segments followed by an identifier
_ID_PARENTS = frozenset({"accounts", "chats", "items", "messages", "subscriptions"})


def endpoint_key(method: str, path: str) -> str:
    """``GET /messenger/v2/accounts/7/chats/abc`` -> ``GET /messenger/v2/accounts/{id}/chats/{id}``."""
    segments = [s for s in path.split("?", 1)[0].split("/") if s]
    templated = []
    parent = None
    for segment in segments:
        templated.append("{id}" if parent in _ID_PARENTS else segment)
        parent = segment
    return f"{method.upper()} /" + "/".join(templated)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds from a ``Retry-After`` header (delta-seconds or HTTP date), capped at MAX_RETRY_AFTER."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            until = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        seconds = (until - (now or datetime.now(timezone.utc))).total_seconds()
    if seconds != seconds:  # NaN
        return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER)


@dataclass
class _Window:
    limit: int
    sent: Deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class AvitoRateLimiter:
    """
    Per-endpoint request budget for one or more Avito client ids.

    Usage::

        limiter = get_rate_limiter()
        await limiter.acquire(client_id, endpoint_key("GET", path))
        ...
        limiter.block(client_id, endpoint, retry_after)  # on 429
    """

    def __init__(
        self,
        max_requests_per_minute: int = _DEFAULT_RPM,
        *,
        clock: Callable[[], float] = time.monotonic,
        window_seconds: float = WINDOW_SECONDS,
    ) -> None:
        self._default_rpm = max(1, int(max_requests_per_minute))
        self._clock = clock
        self._window_seconds = window_seconds
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._overrides: Dict[str, int] = {}

    def configure(self, endpoint: str, max_requests_per_minute: int) -> None:
        """Own limit for one endpoint template (all client ids)."""
        limit = max(1, int(max_requests_per_minute))
        self._overrides[endpoint] = limit
        for (_, key), window in self._windows.items():
            if key == endpoint:
                window.limit = limit

    def _window(self, client_id: str, endpoint: str) -> _Window:
        key = (client_id, endpoint)
        window = self._windows.get(key)
        if window is None:
            window = _Window(limit=self._overrides.get(endpoint, self._default_rpm))
            self._windows[key] = window
        return window

    def _delay(self, window: _Window, now: float) -> float:
        while window.sent and now - window.sent[0] >= self._window_seconds:
            window.sent.popleft()
        if window.blocked_until > now:
            return window.blocked_until - now
        if len(window.sent) >= window.limit:
            return window.sent[0] + self._window_seconds - now
        return 0.0

    async def acquire(self, client_id: str, endpoint: str) -> float:
        """Wait until *endpoint* has budget left and record the request. Returns seconds waited."""
        window = self._window(client_id, endpoint)
        waited = 0.0
        async with window.lock:
            delay = self._delay(window, self._clock())
            while delay > 0:
                await asyncio.sleep(delay)
                waited += delay
                delay = self._delay(window, self._clock())
            window.sent.append(self._clock())
        if waited > 0:
            logger.info("Rate limiter: %s waited %.2fs before Avito call %s", client_id, waited, endpoint)
        return waited

    def block(self, client_id: str, endpoint: str, seconds: float) -> None:
        """Hold *endpoint* for *seconds* (server-provided Retry-After)."""
        window = self._window(client_id, endpoint)
        window.blocked_until = max(window.blocked_until, self._clock() + max(0.0, seconds))
        logger.warning("Avito endpoint %s on hold for %.1fs", endpoint, seconds)

    def reset(self, client_id: Optional[str] = None) -> None:
        """Forget windows (one client id or all), mainly for tests."""
        if client_id is None:
            self._windows.clear()
            return
        for key in [k for k in self._windows if k[0] == client_id]:
            del self._windows[key]


_instance: Optional[AvitoRateLimiter] = None


def get_rate_limiter() -> AvitoRateLimiter:
    """Return the module-level singleton rate limiter."""
    global _instance
    if _instance is None:
        from app.config import get_settings

        _instance = AvitoRateLimiter(max_requests_per_minute=get_settings().AVITO_RATE_LIMIT_RPM)
    return _instance


def reset_rate_limiter() -> None:
    """Destroy the singleton (useful for tests)."""
    global _instance
    _instance = None
