#!/usr/bin/env python3
"""
Integration Test: Sliding-window quota store with real Redis

Verifies the Lua acquire script, peek and clear against a live server, and
that several limiter instances sharing one Redis enforce a single quota.

Usage:
    REDIS_URL=redis://localhost:6379/1 \
    python -m pytest tests/integration/test_quota_store_redis.py -v

Skipped when REDIS_URL is unset or the server is unreachable.
"""

import threading
import unittest
import uuid

import pytest

from core.config_loader import OperationLimitConfig, RateLimitConfig
from notifier.quota_store import RedisQuotaStore
from notifier.rate_limiter import RateLimiter
from tests import TEST_REDIS_URL, check_redis_available


@pytest.mark.integration
@unittest.skipUnless(check_redis_available(), "Redis not available (set REDIS_URL)")
class TestRedisQuotaStore(unittest.TestCase):

    def setUp(self):
        self.store = RedisQuotaStore.from_url(TEST_REDIS_URL)
        # Unique prefix per test so parallel runs never share keys
        self.prefix = f"test_rate_limit:{uuid.uuid4().hex}"
        self.keys = []

    def tearDown(self):
        for key in self.keys:
            self.store.clear(key)

    def key(self, name):
        key = f"{self.prefix}:{name}"
        self.keys.append(key)
        return key

    def test_acquire_until_limit(self):
        key = self.key("basic")
        results = [self.store.acquire(key, 1000.0 + i, 60, 3) for i in range(4)]

        self.assertEqual([r.allowed for r in results], [True, True, True, False])
        self.assertEqual(results[3].count, 3)
        self.assertAlmostEqual(results[3].oldest, 1000.0)

    def test_window_slides(self):
        key = self.key("slide")
        for i in range(3):
            self.store.acquire(key, 1000.0 + i, 60, 3)

        self.assertFalse(self.store.acquire(key, 1059.9, 60, 3).allowed)
        # The token taken at 1000.0 leaves the window at exactly 1060.0
        self.assertTrue(self.store.acquire(key, 1060.0, 60, 3).allowed)

    def test_peek_does_not_consume(self):
        key = self.key("peek")
        self.store.acquire(key, 1000.0, 60, 5)

        for _ in range(3):
            window = self.store.peek(key, 1001.0, 60)
        self.assertEqual(window.count, 1)
        self.assertAlmostEqual(window.oldest, 1000.0)

    def test_same_timestamp_tokens_are_distinct(self):
        key = self.key("same_ts")
        for _ in range(3):
            self.store.acquire(key, 1000.0, 60, 10)
        self.assertEqual(self.store.peek(key, 1000.0, 60).count, 3)

    def test_clear(self):
        key = self.key("clear")
        self.store.acquire(key, 1000.0, 60, 5)

        self.assertTrue(self.store.clear(key))
        self.assertFalse(self.store.clear(key))
        self.assertEqual(self.store.peek(key, 1000.0, 60).count, 0)

    def test_ping(self):
        self.assertTrue(self.store.ping())

    def test_shared_quota_across_limiters(self):
        """Two limiter instances (two "processes") admit no more than the limit combined."""
        config = RateLimitConfig(
            key_prefix=self.prefix,
            limits={'bulk_notification': OperationLimitConfig(max_requests=20, window_seconds=60)},
        )
        self.keys.append(f"{self.prefix}:bulk_notification:shared")
        limiters = [
            RateLimiter(RedisQuotaStore.from_url(TEST_REDIS_URL), config),
            RateLimiter(RedisQuotaStore.from_url(TEST_REDIS_URL), config),
        ]

        allowed = []
        lock = threading.Lock()

        def worker(limiter):
            for _ in range(25):
                decision = limiter.allow("shared", "bulk_notification")
                with lock:
                    allowed.append(decision.allowed)

        threads = [threading.Thread(target=worker, args=(limiters[i % 2],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sum(allowed), 20)
        self.assertEqual(len(allowed), 100)


if __name__ == '__main__':
    unittest.main()
