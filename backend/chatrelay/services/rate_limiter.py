"""Per-client fixed-window rate limiting.

A window of ``window_seconds`` opens on a client's first request; up to
``capacity`` requests are admitted until it elapses. Bursts at window
boundaries are allowed: this is an approximate limiter with O(1) state per
client.

Two backends share the ``hit()`` contract:

- InMemoryRateLimiter: process-local table guarded by a lock.
- RedisRateLimiter: INCR + EXPIRE on ``rate_limit:{identity}`` keys, shared
  across processes.
"""
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as redis

from chatrelay.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


@dataclass
class RateState:
    window_start: float
    count: int


class RateLimiter(ABC):
    """Admit/reject decision per client identity."""

    @abstractmethod
    async def hit(self, identity: str, now: float | None = None) -> RateDecision:
        ...

    async def ping(self) -> None:
        """Raise if the backing store is unreachable."""

    async def close(self) -> None:
        pass


class InMemoryRateLimiter(RateLimiter):
    # Expired windows are pruned once the table grows past this many identities
    PRUNE_THRESHOLD = 10_000

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("Rate limit capacity must be at least 1.")
        if window_seconds <= 0:
            raise ValueError("Rate limit window must be positive.")
        self.capacity = capacity
        self.window_seconds = window_seconds
        self._clock = clock
        self._states: dict[str, RateState] = {}
        # Guards _states; the critical section never awaits
        self._lock = threading.Lock()

    def check(self, identity: str, now: float | None = None) -> RateDecision:
        """Record one request for ``identity`` and decide whether to admit it."""
        if now is None:
            now = self._clock()

        with self._lock:
            state = self._states.get(identity)
            if state is None or now >= state.window_start + self.window_seconds:
                if len(self._states) >= self.PRUNE_THRESHOLD:
                    self._prune(now)
                self._states[identity] = RateState(window_start=now, count=1)
                return RateDecision(allowed=True)

            state.count += 1
            if state.count <= self.capacity:
                return RateDecision(allowed=True)

            remaining = state.window_start + self.window_seconds - now
            return RateDecision(allowed=False, retry_after=max(1, math.ceil(remaining)))

    async def hit(self, identity: str, now: float | None = None) -> RateDecision:
        return self.check(identity, now)

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, state in self._states.items()
            if now >= state.window_start + self.window_seconds
        ]
        for key in expired:
            del self._states[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired rate-limit windows")


class RedisRateLimiter(RateLimiter):
    """Fixed-window limiter backed by Redis.

    INCR is atomic on the server, so concurrent hits from any number of
    processes are counted exactly once each. ``now`` is ignored: the window is
    the key's TTL.
    """

    KEY_PREFIX = "rate_limit"

    def __init__(self, client: redis.Redis, capacity: int, window_seconds: int):
        self.capacity = capacity
        self.window_seconds = int(window_seconds)
        self._client = client

    @classmethod
    def from_url(cls, url: str, capacity: int, window_seconds: int) -> "RedisRateLimiter":
        client = redis.from_url(url, decode_responses=True)
        return cls(client, capacity, window_seconds)

    async def hit(self, identity: str, now: float | None = None) -> RateDecision:
        key = f"{self.KEY_PREFIX}:{identity}"
        count = await self._client.incr(key)

        if count == 1:
            await self._client.expire(key, self.window_seconds)

        if count <= self.capacity:
            return RateDecision(allowed=True)

        ttl = await self._client.ttl(key)
        if ttl < 0:
            # Key lost its expiry (e.g. EXPIRE never ran); restart the window
            await self._client.expire(key, self.window_seconds)
            ttl = self.window_seconds
        return RateDecision(allowed=False, retry_after=max(ttl, 1))

    async def ping(self) -> None:
        await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Create the limiter selected by RATE_LIMIT_BACKEND."""
    backend = settings.rate_limit_backend.lower()

    if backend == "memory":
        return InMemoryRateLimiter(
            capacity=settings.rate_limit_capacity,
            window_seconds=settings.rate_limit_window_seconds,
        )

    elif backend == "redis":
        logger.info(f"Using Redis rate limiter at {settings.redis_url}")
        return RedisRateLimiter.from_url(
            settings.redis_url,
            capacity=settings.rate_limit_capacity,
            window_seconds=settings.rate_limit_window_seconds,
        )

    else:
        raise ValueError(
            f"Unknown rate limit backend: '{settings.rate_limit_backend}'. Supported: memory, redis."
        )
