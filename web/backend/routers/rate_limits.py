#!/usr/bin/env python3
"""
Rate limit endpoints - inspect and reset sliding windows (support/admin use).
"""

from fastapi import APIRouter, Depends, Query

from notifier.rate_limiter import RateLimiter
from ..dependencies import get_rate_limiter
from ..models.responses import RateLimitStatusResponse, RateLimitResetResponse

router = APIRouter(prefix="/api/rate-limits", tags=["rate-limits"])


@router.get("/{actor_id}/{operation_type}", response_model=RateLimitStatusResponse)
def get_rate_limit_status(
    actor_id: str,
    operation_type: str,
    role: str = Query("user", description="Role used to scale the base limit"),
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
):
    """
    Current quota for an actor without consuming a token.

    Unknown operation types return 404.
    """
    decision = rate_limiter.status(actor_id, operation_type, role)
    return RateLimitStatusResponse(
        actor_id=actor_id,
        operation_type=operation_type,
        role=role,
        allowed=decision.allowed,
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
    )


@router.delete("/{actor_id}/{operation_type}", response_model=RateLimitResetResponse)
def reset_rate_limit(
    actor_id: str,
    operation_type: str,
    rate_limiter: RateLimiter = Depends(get_rate_limiter)
):
    """Clear an actor's window early."""
    cleared = rate_limiter.reset(actor_id, operation_type)
    return RateLimitResetResponse(
        actor_id=actor_id,
        operation_type=operation_type,
        cleared=cleared,
    )
