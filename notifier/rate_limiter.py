#!/usr/bin/env python3
"""
Notification Rate Limiter - admission control.

Sliding-window limiter keyed by (actor, operation type). Each operation type
has its own base limit and window; the caller's role scales the base limit.
Bypass rules are checked before the quota store is touched, and an unreachable
store fails open so the notification path stays available.

Usage:
    limiter = RateLimiter(InMemoryQuotaStore(), RateLimitConfig())
    decision = limiter.allow("user123", "notification_send", role="manager")
    if not decision.allowed:
        # 429-equivalent; retry at decision.reset_at
        ...
"""

import logging
import math
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.config_loader import OperationLimitConfig, RateLimitConfig
from notifier.exceptions import QuotaStoreUnavailable, UnknownOperationError
from notifier.metrics import MetricsSink, record
from notifier.quota_store import QuotaStore

logger = logging.getLogger(__name__)

OUTCOME_ALLOWED = "allowed"
OUTCOME_BLOCKED = "blocked"
OUTCOME_BYPASSED = "bypassed"
OUTCOME_ERROR = "error"


@dataclass
class AdmissionDecision:
    """Result of an admission check."""
    allowed: bool
    remaining: int
    reset_at: Optional[float]
    limit: int
    operation_type: str
    outcome: str

    @property
    def retry_after(self) -> Optional[float]:
        """Seconds until a blocked caller may try again."""
        if self.allowed or self.reset_at is None:
            return None
        return max(0.0, self.reset_at - time.time())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'remaining': self.remaining,
            'reset_at': self.reset_at,
            'limit': self.limit,
            'operation_type': self.operation_type,
            'outcome': self.outcome,
        }


class RateLimiter:
    """
    Admission control for (actor, operation type) pairs.

    Thread-safe: all quota mutations happen inside the QuotaStore's atomic
    acquire, and the local counters are guarded by a lock.
    """

    def __init__(
        self,
        store: QuotaStore,
        config: Optional[RateLimitConfig] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.config = config or RateLimitConfig()
        self.metrics = metrics
        self._clock = clock
        self._counters: Counter = Counter()
        self._counter_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _key(self, actor_id: str, operation_type: str) -> str:
        return f"{self.config.key_prefix}:{operation_type}:{actor_id}"

    def _limit_config(self, operation_type: str) -> OperationLimitConfig:
        limit_config = self.config.limits.get(operation_type)
        if limit_config is None:
            raise UnknownOperationError(f"Unknown rate limit type: {operation_type}")
        return limit_config

    def effective_limit(self, operation_type: str, role: Optional[str] = None) -> int:
        """floor(base limit * role multiplier). Unknown roles get the base limit."""
        limit_config = self._limit_config(operation_type)
        multiplier = self.config.role_multipliers.get(role or 'user', 1.0)
        return int(math.floor(limit_config.max_requests * multiplier))

    def _count(self, outcome: str) -> None:
        with self._counter_lock:
            self._counters['total'] += 1
            self._counters[outcome] += 1

    def _emit(self, operation_type: str, outcome: str, role: Optional[str]) -> None:
        record(self.metrics, "rate_limit.decision", {
            'operation_type': operation_type,
            'outcome': outcome,
            'role': role or 'user',
        })

    def bypass_reason(
        self,
        role: Optional[str] = None,
        internal: bool = False,
        priority: Optional[str] = None,
        origin_ip: Optional[str] = None
    ) -> Optional[str]:
        """Return why this call skips the quota, or None if it does not."""
        if internal:
            return "internal"
        if priority and priority.lower() in self.config.bypass_priorities:
            return "priority"
        if role and role in self.config.bypass_roles:
            return "role"
        if origin_ip and origin_ip in self.config.bypass_ips:
            return "ip"
        return None

    # ------------------------------------------------------------------
    # Admission API
    # ------------------------------------------------------------------

    def allow(
        self,
        actor_id: str,
        operation_type: str,
        role: Optional[str] = "user",
        *,
        internal: bool = False,
        priority: Optional[str] = None,
        origin_ip: Optional[str] = None
    ) -> AdmissionDecision:
        """
        Decide whether ``actor_id`` may perform ``operation_type`` now.

        Args:
            actor_id: Calling actor
            operation_type: Configured operation type (e.g. "notification_send")
            role: Caller role, scales the base limit
            internal: System/internal caller flag, always bypasses
            priority: Request priority; "emergency"/"critical" bypass by default
            origin_ip: Caller network origin, checked against the bypass list

        Returns:
            AdmissionDecision

        Raises:
            UnknownOperationError: if operation_type is not configured
        """
        limit_config = self._limit_config(operation_type)
        limit = self.effective_limit(operation_type, role)

        if not self.config.enabled:
            return AdmissionDecision(True, limit, None, limit, operation_type, OUTCOME_ALLOWED)

        reason = self.bypass_reason(role, internal, priority, origin_ip)
        if reason:
            logger.debug(f"Rate limit bypassed ({reason}) for {actor_id} on {operation_type}")
            self._count(OUTCOME_BYPASSED)
            self._emit(operation_type, OUTCOME_BYPASSED, role)
            return AdmissionDecision(True, limit, None, limit, operation_type, OUTCOME_BYPASSED)

        now = self._clock()
        try:
            window = self.store.acquire(
                self._key(actor_id, operation_type),
                now,
                limit_config.window_seconds,
                limit,
            )
        except QuotaStoreUnavailable as e:
            logger.error(f"Rate limit check failed for {operation_type}, allowing request: {e}")
            self._count(OUTCOME_ERROR)
            self._emit(operation_type, OUTCOME_ERROR, role)
            return AdmissionDecision(True, limit, None, limit, operation_type, OUTCOME_ERROR)

        reset_at = window.oldest + limit_config.window_seconds if window.oldest is not None else None
        remaining = max(0, limit - window.count)

        if not window.allowed:
            logger.info(
                f"Rate limit exceeded for {actor_id} on {operation_type} "
                f"({window.count}/{limit}), resets at {reset_at}"
            )
            self._count(OUTCOME_BLOCKED)
            self._emit(operation_type, OUTCOME_BLOCKED, role)
            return AdmissionDecision(False, remaining, reset_at, limit, operation_type, OUTCOME_BLOCKED)

        self._count(OUTCOME_ALLOWED)
        self._emit(operation_type, OUTCOME_ALLOWED, role)
        return AdmissionDecision(True, remaining, reset_at, limit, operation_type, OUTCOME_ALLOWED)

    def status(self, actor_id: str, operation_type: str, role: Optional[str] = "user") -> AdmissionDecision:
        """Current remaining quota for a key, without consuming a token."""
        limit_config = self._limit_config(operation_type)
        limit = self.effective_limit(operation_type, role)
        try:
            window = self.store.peek(
                self._key(actor_id, operation_type),
                self._clock(),
                limit_config.window_seconds,
            )
        except QuotaStoreUnavailable as e:
            logger.error(f"Error getting rate limit status: {e}")
            return AdmissionDecision(True, limit, None, limit, operation_type, OUTCOME_ERROR)

        remaining = max(0, limit - window.count)
        reset_at = window.oldest + limit_config.window_seconds if window.oldest is not None else None
        outcome = OUTCOME_ALLOWED if remaining > 0 else OUTCOME_BLOCKED
        return AdmissionDecision(remaining > 0, remaining, reset_at, limit, operation_type, outcome)

    def reset(self, actor_id: str, operation_type: str) -> bool:
        """Clear a window early (support/admin use)."""
        self._limit_config(operation_type)
        try:
            cleared = self.store.clear(self._key(actor_id, operation_type))
        except QuotaStoreUnavailable as e:
            logger.error(f"Error resetting rate limit: {e}")
            return False
        logger.info(f"Rate limit reset for {actor_id} on {operation_type}")
        return cleared

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        with self._counter_lock:
            counters = dict(self._counters)
        total = counters.get('total', 0)
        blocked = counters.get(OUTCOME_BLOCKED, 0)
        return {
            'total_requests': total,
            'allowed_requests': counters.get(OUTCOME_ALLOWED, 0),
            'blocked_requests': blocked,
            'bypassed_requests': counters.get(OUTCOME_BYPASSED, 0),
            'error_count': counters.get(OUTCOME_ERROR, 0),
            'block_rate': f"{(blocked / total * 100) if total else 0:.2f}%",
        }

    def health_status(self) -> Dict[str, Any]:
        store_available = self.store.ping()
        return {
            'status': 'healthy' if store_available else 'degraded',
            'enabled': self.config.enabled,
            'store_available': store_available,
            'metrics': self.get_metrics(),
            'operation_types': sorted(self.config.limits.keys()),
        }
