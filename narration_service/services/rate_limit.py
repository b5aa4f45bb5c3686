from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from narration_service.errors import RateLimited

LOCK_STRIPES = 64


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int


@dataclass
class _Window:
    start: int
    count: int
    window_ms: int

    @property
    def reset_time(self) -> int:
        return self.start + self.window_ms


class RateLimits:
    API_GENERAL = RateLimitPolicy("API_GENERAL", 60, 60_000)
    STORY_GENERATION = RateLimitPolicy("STORY_GENERATION", 5, 60_000)
    IMAGE_GENERATION = RateLimitPolicy("IMAGE_GENERATION", 3, 60_000)
    VIDEO_GENERATION = RateLimitPolicy("VIDEO_GENERATION", 5, 300_000)
    AUDIO_GENERATION = RateLimitPolicy("AUDIO_GENERATION", 5, 60_000)
    AUTH = RateLimitPolicy("AUTH", 10, 300_000)
    PAYMENT = RateLimitPolicy("PAYMENT", 5, 60_000)
    MUSIC_IMPORT = RateLimitPolicy("MUSIC_IMPORT", 10, 3_600_000)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Fixed-window request budget per identity and policy.

    All calls inside ``[start, start + window_ms)`` share one counter. A denied
    call does not consume budget, and ``reset_time`` stays the same for every
    call inside a window.
    """

    def __init__(
        self,
        clock: Callable[[], int] | None = None,
        logger: Optional[logging.Logger] = None,
        lock_stripes: int = LOCK_STRIPES,
    ) -> None:
        self.clock = clock or _epoch_ms
        self.log = logger or logging.getLogger(__name__)
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._locks: List[Lock] = [Lock() for _ in range(max(1, lock_stripes))]

    def check(self, identity: str, policy: RateLimitPolicy) -> RateLimitResult:
        key = (identity, policy.name)
        with self._identity_lock(identity):
            now = self.clock()
            window = self._windows.get(key)
            if window is None or now >= window.reset_time:
                window = _Window(start=now, count=0, window_ms=policy.window_ms)
                self._windows[key] = window
            if window.count >= policy.max_requests:
                return RateLimitResult(allowed=False, remaining=0, reset_time=window.reset_time)
            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests - window.count,
                reset_time=window.reset_time,
            )

    def enforce(self, identity: str, policy: RateLimitPolicy) -> RateLimitResult:
        result = self.check(identity, policy)
        if not result.allowed:
            retry_after = max(0, math.ceil((result.reset_time - self.clock()) / 1000))
            self.log.warning(
                "rate limit exceeded",
                extra={"user_id": identity, "policy": policy.name, "retry_after": retry_after},
            )
            raise RateLimited(reset_time=result.reset_time, retry_after=retry_after)
        return result

    def reset(self, identity: str, policy: RateLimitPolicy | None = None) -> None:
        with self._identity_lock(identity):
            if policy is not None:
                self._windows.pop((identity, policy.name), None)
                return
            for key in [key for key in list(self._windows) if key[0] == identity]:
                del self._windows[key]

    def purge_expired(self) -> int:
        now = self.clock()
        identities = {identity for identity, _ in list(self._windows)}
        purged = 0
        for identity in identities:
            with self._identity_lock(identity):
                expired = [
                    key
                    for key, window in list(self._windows.items())
                    if key[0] == identity and now >= window.reset_time
                ]
                for key in expired:
                    del self._windows[key]
                purged += len(expired)
        return purged

    def _identity_lock(self, identity: str) -> Lock:
        return self._locks[hash(identity) % len(self._locks)]
