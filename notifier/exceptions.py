#!/usr/bin/env python3
"""
Notifier exceptions.

Every error raised by the delivery pipeline derives from NotifierError so that
callers (and the web layer's exception handlers) can catch the whole family.
"""

from typing import Optional


class NotifierError(Exception):
    """Base exception for the notification pipeline."""
    pass


class NotificationValidationError(NotifierError):
    """Raised when a NotificationRequest is malformed. Never retried."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class UnknownOperationError(NotifierError, KeyError):
    """Raised when the rate limiter is asked about an unconfigured operation type."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown operation type"


class QuotaStoreUnavailable(NotifierError):
    """The shared quota store could not be reached. The limiter fails open."""
    pass


class CircuitOpenError(NotifierError):
    """
    The circuit for a sink is open; the call was not attempted.

    This is an expected control-flow signal, not a fault of the caller.
    """

    reason = "circuit_open"

    def __init__(self, sink_name: str, retry_at: Optional[float] = None):
        self.sink_name = sink_name
        self.retry_at = retry_at
        super().__init__(f"Circuit breaker is open for {sink_name}")


class SinkError(NotifierError):
    """Base class for delivery sink failures."""

    reason = "error"

    def __init__(self, sink_name: str, message: str):
        self.sink_name = sink_name
        super().__init__(f"[{sink_name}] {message}")


class SinkTimeoutError(SinkError):
    """The sink did not answer within its hard timeout."""

    reason = "timeout"


class SinkTransportError(SinkError):
    """Network-class or 5xx-class failure. Retried inside the sink."""

    reason = "transport_error"

    def __init__(self, sink_name: str, message: str, retry_after: Optional[float] = None):
        super().__init__(sink_name, message)
        self.retry_after = retry_after


class SinkRejectedError(SinkError):
    """4xx-class or validation failure reported by the downstream. Never retried."""

    reason = "rejected"

    def __init__(self, sink_name: str, message: str, status_code: Optional[int] = None):
        super().__init__(sink_name, message)
        self.status_code = status_code


class DispatchCancelledError(NotifierError):
    """The enclosing dispatch was abandoned while a sink call was in flight."""

    reason = "cancelled"
