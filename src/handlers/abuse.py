from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from functools import lru_cache

from pydantic import BaseModel

from src.config import Settings, get_settings

logger = logging.getLogger(__name__)


class RateLimitResult(BaseModel):
    allowed: bool
    reason: str | None = None
    retry_after_seconds: float | None = None


class VoteRateLimiter:
    """Fixed-window attempt counter keyed by (voter, item).

    Instance-local and best-effort: counts vanish on restart and are not shared between
    processes. Expired windows are swept lazily on access and the number of tracked keys
    is capped, evicting the oldest window first.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        window_seconds: float,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.max_keys = max(1, max_keys)
        self._clock = clock
        # key -> (window_start, count); insertion order tracks window age.
        self._windows: OrderedDict[Hashable, tuple[float, int]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        while self._windows:
            key, (started, _) = next(iter(self._windows.items()))
            if now - started < self.window_seconds:
                break
            del self._windows[key]

    def hit(self, key: Hashable) -> RateLimitResult:
        now = self._clock()
        self._sweep(now)

        window = self._windows.get(key)
        if window is None:
            while len(self._windows) >= self.max_keys:
                self._windows.popitem(last=False)
            self._windows[key] = (now, 1)
            return RateLimitResult(allowed=True)

        started, count = window
        if count >= self.max_attempts:
            retry_after = max(0.0, self.window_seconds - (now - started))
            logger.info(
                "Vote rate limit hit",
                extra={"event_type": "voting.rate_limit.blocked", "ops_payload": {"count": count}},
            )
            return RateLimitResult(
                allowed=False,
                reason="vote_rate_limited",
                retry_after_seconds=round(retry_after, 1),
            )
        self._windows[key] = (started, count + 1)
        return RateLimitResult(allowed=True)

    def reset(self) -> None:
        self._windows.clear()


@lru_cache
def get_vote_rate_limiter() -> VoteRateLimiter:
    return build_vote_rate_limiter(get_settings())


def build_vote_rate_limiter(settings: Settings) -> VoteRateLimiter:
    return VoteRateLimiter(
        max_attempts=settings.vote_rate_limit_attempts,
        window_seconds=settings.vote_rate_limit_window_seconds,
        max_keys=settings.vote_rate_limit_max_keys,
    )
