#!/usr/bin/env python3
"""
FastAPI dependencies for dependency injection.

The wired AppContext is attached to ``app.state.context`` by ``create_app``.
"""

from fastapi import Request

from core.app_context import AppContext
from notifier.circuit_breaker import CircuitBreakerRegistry
from notifier.dispatcher import Dispatcher
from notifier.rate_limiter import RateLimiter


def get_app_context(request: Request) -> AppContext:
    """
    FastAPI dependency that returns the application context.

    Usage:
        @router.get("/endpoint")
        def my_endpoint(context: AppContext = Depends(get_app_context)):
            ...
    """
    return request.app.state.context


def get_dispatcher(request: Request) -> Dispatcher:
    return get_app_context(request).dispatcher


def get_rate_limiter(request: Request) -> RateLimiter:
    return get_app_context(request).rate_limiter


def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return get_app_context(request).breakers
