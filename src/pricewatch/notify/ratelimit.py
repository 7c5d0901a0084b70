from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

import structlog

log = structlog.get_logger("ratelimit")

# --------- fixed-window limiter ----------

class WindowRateLimiter:
    """
    At most `max_calls` acquisitions per `window_s`. When the window is used up,
    acquire() waits for the window to reset instead of dropping the send.
    """
    def __init__(
        self,
        max_calls: int,
        window_s: float,
        *,
        name: str = "",
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = int(max_calls)
        self.window_s = float(window_s)
        self.name = name
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self._count = 0
        self._reset_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._reset_at is None or now >= self._reset_at:
                self._count = 0
                self._reset_at = now + self.window_s
            if self._count >= self.max_calls:
                wait_s = max(0.0, self._reset_at - now)
                log.info("rate_limit_wait", limiter=self.name, wait_s=round(wait_s, 3))
                await asyncio.sleep(wait_s)
                self._count = 0
                self._reset_at = self._clock() + self.window_s
            self._count += 1

    @property
    def remaining(self) -> int:
        if self._reset_at is None or self._clock() >= self._reset_at:
            return self.max_calls
        return max(0, self.max_calls - self._count)


# --------- per-client counter (inbound requests) ----------

class KeyedWindowLimiter:
    """
    Fixed-window counter per key (e.g. client address). Never waits:
    allow() answers whether this call fits in the key's current window.
    """
    def __init__(
        self,
        max_calls: int,
        window_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = int(max_calls)
        self.window_s = float(window_s)
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}  # key -> (reset_at, count)

    def allow(self, key: str) -> bool:
        now = self._clock()
        self._prune(now)
        reset_at, count = self._windows.get(key, (now + self.window_s, 0))
        if count >= self.max_calls:
            log.warning("client_rate_limited", key=key, retry_after_s=round(reset_at - now, 1))
            return False
        self._windows[key] = (reset_at, count + 1)
        return True

    def retry_after(self, key: str) -> float:
        entry = self._windows.get(key)
        if entry is None:
            return 0.0
        return max(0.0, entry[0] - self._clock())

    def _prune(self, now: float) -> None:
        for key in [k for k, (reset_at, _) in self._windows.items() if now >= reset_at]:
            del self._windows[key]
