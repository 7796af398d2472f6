#!/usr/bin/env python3
"""
Health endpoints - liveness and notification pipeline health.
"""

from fastapi import APIRouter, Depends

from notifier.dispatcher import Dispatcher
from ..dependencies import get_dispatcher
from ..models.responses import NotificationHealthResponse

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notifier-admin"}


@router.get("/api/health/notifications", response_model=NotificationHealthResponse)
def notification_health(dispatcher: Dispatcher = Depends(get_dispatcher)):
    """
    Rate limiter, circuit breaker and dedup health.

    Status is "degraded" when the quota store is unreachable or any circuit is open.
    """
    return NotificationHealthResponse(success=True, **dispatcher.health_status())
