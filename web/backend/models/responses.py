#!/usr/bin/env python3
"""
Response models for API endpoints.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional, Any


class RateLimitStatusResponse(BaseModel):
    """Remaining quota for one (actor, operation type) key."""
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": True,
                "actor_id": "user123",
                "operation_type": "notification_send",
                "role": "user",
                "allowed": True,
                "limit": 100,
                "remaining": 97,
                "reset_at": 1767225600.0
            }
        }
    )

    success: bool = True
    actor_id: str
    operation_type: str
    role: str
    allowed: bool
    limit: int = Field(ge=0)
    remaining: int = Field(ge=0)
    reset_at: Optional[float] = None


class RateLimitResetResponse(BaseModel):
    success: bool = True
    actor_id: str
    operation_type: str
    cleared: bool


class CircuitStatus(BaseModel):
    """State of one sink's circuit breaker."""
    name: str
    state: str
    consecutive_failures: int = Field(ge=0)
    failure_threshold: int = Field(ge=1)
    next_retry_at: Optional[float] = None
    last_error: Optional[str] = None


class CircuitStatusResponse(BaseModel):
    success: bool = True
    circuit: CircuitStatus


class CircuitListResponse(BaseModel):
    success: bool = True
    circuits: Dict[str, CircuitStatus]
    open_circuits: List[str]


class CircuitResetResponse(BaseModel):
    success: bool = True
    name: str
    message: str


class NotificationHealthResponse(BaseModel):
    """Pipeline health as reported by the dispatcher."""
    success: bool = True
    status: str
    rate_limiter: Dict[str, Any]
    circuit_breakers: Dict[str, CircuitStatus]
    open_circuits: List[str]
    dedup: Dict[str, int]
