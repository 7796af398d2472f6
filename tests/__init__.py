#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All tests can be run with standard Python tools:

    # Run all tests (unit + Redis if available)
    python -m pytest tests/ -v

    # Run only unit tests (no Redis required)
    python -m pytest tests/ -v -m "not integration"

    # Using unittest
    python -m unittest discover tests -v

Redis Setup:
    Integration tests run against a real Redis when REDIS_URL is set:

    export REDIS_URL="redis://localhost:6379/1"
"""

import os
from typing import Optional

TEST_REDIS_URL = os.environ.get("REDIS_URL")


def is_redis_available() -> bool:
    """
    Check if the test Redis is reachable.

    Returns False when REDIS_URL is unset.
    """
    if not TEST_REDIS_URL:
        return False

    try:
        from redis import Redis
        from redis.exceptions import RedisError

        client = Redis.from_url(TEST_REDIS_URL, socket_connect_timeout=1)
        try:
            return bool(client.ping())
        finally:
            client.close()
    except (RedisError, OSError):
        return False


# Global flag to cache Redis availability check
_redis_available: Optional[bool] = None


def check_redis_available() -> bool:
    """Cached check for Redis availability."""
    global _redis_available
    if _redis_available is None:
        _redis_available = is_redis_available()
    return _redis_available
