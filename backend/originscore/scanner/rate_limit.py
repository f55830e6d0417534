# originscore/scanner/rate_limit.py
"""
Fixed-window rate limiting per (probe, target host).

Keeps the engine from hammering a target, or the third-party DNS resolvers
it relies on, when many users scan the same host at once. Each probe
declares its own per-minute ceiling: DNS lookups are cheap, TLS handshakes
are not.

The counters live in a CounterStore with atomic increment-and-expire:

    MemoryCounterStore   single process, guarded by a lock
    RedisCounterStore    shared by every worker that points at the same Redis

A denial is terminal for that probe invocation. The engine never waits for
the next window; re-queueing is the caller's decision.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
KEY_PREFIX = "originscore:ratelimit"

# Decrement only while the window key still exists, so a late release never
# leaves a negative counter without a TTL behind.
_RELEASE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""


class CounterStore(ABC):
    """Atomic counters that expire on their own."""

    @abstractmethod
    def incr(self, key: str, ttl: int) -> int:
        """Increment key, starting a fresh counter with the given TTL if absent."""
        ...

    @abstractmethod
    def decr(self, key: str) -> int:
        """Give one back. No-op on a missing or expired key."""
        ...


class MemoryCounterStore(CounterStore):
    """In-process counters. Suitable for a single worker and for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    def incr(self, key: str, ttl: int) -> int:
        with self._lock:
            now = self._clock()
            self._prune(now)
            count, expires_at = self._counters.get(key, (0, now + ttl))
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def decr(self, key: str) -> int:
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or entry[1] <= self._clock():
                return 0
            count = max(0, entry[0] - 1)
            self._counters[key] = (count, entry[1])
            return count

    def _prune(self, now: float):
        expired = [k for k, (_, expires_at) in self._counters.items() if expires_at <= now]
        for k in expired:
            del self._counters[k]


class RedisCounterStore(CounterStore):
    """
    Counters in Redis. SET NX EX and INCR run in one MULTI/EXEC so the TTL is
    attached exactly once, when the window's key is created.
    """

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        import redis

        return cls(redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2))

    def incr(self, key: str, ttl: int) -> int:
        pipe = self._client.pipeline(transaction=True)
        pipe.set(key, 0, ex=ttl, nx=True)
        pipe.incr(key)
        _created, count = pipe.execute()
        return int(count)

    def decr(self, key: str) -> int:
        return int(self._client.eval(_RELEASE_SCRIPT, 1, key))


def build_counter_store(redis_url: Optional[str] = None) -> CounterStore:
    """Redis when a URL is configured, in-memory otherwise."""
    if redis_url:
        logger.info("Rate limiter using Redis counter store")
        return RedisCounterStore.from_url(redis_url)
    return MemoryCounterStore()


@dataclass(frozen=True)
class Reservation:
    """A granted slot. key is None when limiting is disabled."""
    key: Optional[str] = None


class RateLimiter:
    """
    Per-(probe, host) fixed-window limiter.

    try_acquire() reserves one slot atomically and rolls the reservation back
    when the ceiling is exceeded, so two racing scans can never both take
    the last slot. The returned Reservation pins the window it was taken
    from; release() gives back exactly that slot.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        window_seconds: int = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or MemoryCounterStore()
        self.window_seconds = window_seconds
        self._clock = clock

    def _key(self, probe: str, host: str) -> str:
        window = int(self._clock() // self.window_seconds)
        return f"{KEY_PREFIX}:{probe}:{host.lower()}:{window}"

    def try_acquire(self, probe: str, host: str, limit: int) -> Optional[Reservation]:
        """
        Reserve one request, or return None when the ceiling is reached.
        A limit of 0 or less disables limiting.
        """
        if limit <= 0:
            return Reservation()

        key = self._key(probe, host)
        count = self.store.incr(key, self.window_seconds)
        if count > limit:
            self.store.decr(key)
            logger.info(f"Rate limit hit for {probe} on {host} ({limit}/{self.window_seconds}s)")
            return None
        return Reservation(key=key)

    def release(self, reservation: Reservation):
        """Return a reservation that never reached the target."""
        if reservation.key is not None:
            self.store.decr(reservation.key)
