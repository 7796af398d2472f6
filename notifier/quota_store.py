#!/usr/bin/env python3
"""
Quota Store - sliding-window token storage for the rate limiter.

Two implementations share one contract:

- RedisQuotaStore: sorted set per key, trimmed/counted/appended in a single
  server-side Lua script so concurrent callers on several processes never race
  between "check remaining" and "add token".
- InMemoryQuotaStore: single-process deployments. Per-key serialization uses
  lock striping so the lock table stays bounded.

Usage:
    store = RedisQuotaStore.from_url("redis://localhost:6379/1")
    window = store.acquire("rate_limit:notification_send:user1", now, 60, 100)
    if window.allowed:
        ...
"""

import bisect
import logging
import threading
import uuid
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

from redis import Redis
from redis.exceptions import RedisError

from notifier.exceptions import QuotaStoreUnavailable

logger = logging.getLogger(__name__)

# KEYS[1] = window key
# ARGV = now, window_seconds, limit, member
_ACQUIRE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    count = count + 1
    allowed = 1
end
if count > 0 then
    redis.call('PEXPIRE', key, math.ceil(window * 1000))
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = ''
if oldest[2] then
    oldest_score = oldest[2]
end
return {allowed, count, oldest_score}
"""


def _sanitize_url(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            sanitized = parsed._replace(
                netloc=f"{parsed.username or ''}:*@{parsed.hostname}:{parsed.port or 6379}"
            )
            return sanitized.geturl()
        return url
    except ValueError:
        return url


@dataclass
class QuotaWindow:
    """Snapshot of one key's sliding window after an acquire or peek."""
    allowed: bool
    count: int
    oldest: Optional[float] = None


class QuotaStore(ABC):
    """Shared, TTL-capable store of timestamped tokens."""

    @abstractmethod
    def acquire(self, key: str, now: float, window_seconds: float, limit: int) -> QuotaWindow:
        """
        Atomically trim expired tokens, count, and add a token if under limit.

        Raises:
            QuotaStoreUnavailable: if the store cannot be reached
        """
        pass

    @abstractmethod
    def peek(self, key: str, now: float, window_seconds: float) -> QuotaWindow:
        """Count live tokens without mutating anything. ``allowed`` is unused (False)."""
        pass

    @abstractmethod
    def clear(self, key: str) -> bool:
        """Drop the window for ``key``. Returns True if anything was removed."""
        pass

    def ping(self) -> bool:
        return True


class RedisQuotaStore(QuotaStore):
    """QuotaStore backed by Redis sorted sets and a Lua script."""

    def __init__(self, redis: Redis):
        self._redis = redis
        self._acquire = redis.register_script(_ACQUIRE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout: float = 2.0) -> "RedisQuotaStore":
        redis = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        logger.info(f"Quota store using Redis at {_sanitize_url(redis_url)}")
        return cls(redis)

    def acquire(self, key: str, now: float, window_seconds: float, limit: int) -> QuotaWindow:
        member = f"{now:.6f}-{uuid.uuid4().hex}"
        try:
            allowed, count, oldest = self._acquire(
                keys=[key],
                args=[repr(now), repr(float(window_seconds)), int(limit), member],
            )
        except RedisError as e:
            raise QuotaStoreUnavailable(f"Quota store acquire failed: {e}") from e
        return QuotaWindow(
            allowed=int(allowed) == 1,
            count=int(count),
            oldest=float(oldest) if oldest not in (None, '') else None,
        )

    def peek(self, key: str, now: float, window_seconds: float) -> QuotaWindow:
        floor = f"({now - window_seconds!r}"
        try:
            count = self._redis.zcount(key, floor, "+inf")
            oldest = self._redis.zrangebyscore(key, floor, "+inf", start=0, num=1, withscores=True)
        except RedisError as e:
            raise QuotaStoreUnavailable(f"Quota store peek failed: {e}") from e
        return QuotaWindow(
            allowed=False,
            count=int(count),
            oldest=float(oldest[0][1]) if oldest else None,
        )

    def clear(self, key: str) -> bool:
        try:
            return bool(self._redis.delete(key))
        except RedisError as e:
            raise QuotaStoreUnavailable(f"Quota store clear failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False


class InMemoryQuotaStore(QuotaStore):
    """
    Process-local QuotaStore. Suitable only for single-instance deployments.

    Each key expires one window after its newest token. Expired keys are
    purged at most once per ``purge_interval_seconds`` of store time, from
    ``acquire`` or an explicit ``purge_expired`` call.
    """

    def __init__(self, stripes: int = 64, purge_interval_seconds: float = 60.0):
        self._windows: Dict[str, List[float]] = {}
        self._expires_at: Dict[str, float] = {}
        self._stripes = [threading.Lock() for _ in range(stripes)]
        self._purge_interval = purge_interval_seconds
        self._purge_lock = threading.Lock()
        self._next_purge_at: Optional[float] = None

    def __len__(self) -> int:
        return len(self._windows)

    def _lock_for(self, key: str) -> threading.Lock:
        return self._stripes[zlib.crc32(key.encode('utf-8')) % len(self._stripes)]

    @staticmethod
    def _live(tokens: List[float], now: float, window_seconds: float) -> List[float]:
        # Tokens are kept sorted; everything at or before the cutoff has expired.
        return tokens[bisect.bisect_right(tokens, now - window_seconds):]

    def acquire(self, key: str, now: float, window_seconds: float, limit: int) -> QuotaWindow:
        with self._lock_for(key):
            tokens = self._live(self._windows.get(key, []), now, window_seconds)
            allowed = len(tokens) < limit
            if allowed:
                bisect.insort(tokens, now)
            if not tokens:
                self._windows.pop(key, None)
                self._expires_at.pop(key, None)
                window = QuotaWindow(allowed=allowed, count=0)
            else:
                self._windows[key] = tokens
                self._expires_at[key] = tokens[-1] + window_seconds
                window = QuotaWindow(allowed=allowed, count=len(tokens), oldest=tokens[0])

        self._maybe_purge(now)
        return window

    def _maybe_purge(self, now: float) -> None:
        with self._purge_lock:
            if self._next_purge_at is None:
                self._next_purge_at = now + self._purge_interval
                return
            if now < self._next_purge_at:
                return
            self._next_purge_at = now + self._purge_interval
        self.purge_expired(now)

    def purge_expired(self, now: float) -> int:
        """Drop every key whose newest token has left its window. Returns the number dropped."""
        removed = 0
        for key, expires_at in self._expires_at.copy().items():
            if expires_at > now:
                continue
            with self._lock_for(key):
                # Re-check under the key's lock; an acquire may have extended it.
                if self._expires_at.get(key, now + 1) <= now:
                    self._windows.pop(key, None)
                    del self._expires_at[key]
                    removed += 1
        if removed:
            logger.debug(f"Purged {removed} expired rate limit windows")
        return removed

    def peek(self, key: str, now: float, window_seconds: float) -> QuotaWindow:
        with self._lock_for(key):
            tokens = self._live(self._windows.get(key, []), now, window_seconds)
            return QuotaWindow(allowed=False, count=len(tokens), oldest=tokens[0] if tokens else None)

    def clear(self, key: str) -> bool:
        with self._lock_for(key):
            self._expires_at.pop(key, None)
            return self._windows.pop(key, None) is not None
