"""
Tests for the sliding-window RateLimiter.
"""
import pytest
from unittest.mock import Mock

from core.config_loader import OperationLimitConfig, RateLimitConfig
from notifier.exceptions import QuotaStoreUnavailable, UnknownOperationError
from notifier.metrics import InMemoryMetricsSink
from notifier.quota_store import InMemoryQuotaStore
from notifier.rate_limiter import RateLimiter


class TestRateLimiter:
    """Test suite for RateLimiter admission decisions."""

    @pytest.fixture
    def metrics(self):
        return InMemoryMetricsSink()

    @pytest.fixture
    def limiter(self, clock, metrics):
        config = RateLimitConfig(limits={
            'notification_send': OperationLimitConfig(max_requests=100, window_seconds=60),
            'bulk_notification': OperationLimitConfig(max_requests=3, window_seconds=60),
            'system_announcement': OperationLimitConfig(max_requests=10, window_seconds=300),
        })
        return RateLimiter(InMemoryQuotaStore(), config, metrics=metrics, clock=clock)

    def test_allows_under_limit(self, limiter):
        decision = limiter.allow("user1", "bulk_notification")

        assert decision.allowed is True
        assert decision.remaining == 2
        assert decision.limit == 3
        assert decision.outcome == "allowed"

    def test_blocks_at_limit(self, limiter):
        for _ in range(3):
            assert limiter.allow("user1", "bulk_notification").allowed

        decision = limiter.allow("user1", "bulk_notification")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.outcome == "blocked"

    def test_quota_monotonicity(self, limiter):
        """Within one window, allowed calls never exceed the effective limit."""
        allowed = sum(limiter.allow("user1", "notification_send").allowed for _ in range(150))
        assert allowed == 100

    def test_role_scaling(self, limiter):
        """Base 100 x admin 5 = 500 per window."""
        assert limiter.effective_limit("notification_send", "admin") == 500
        assert limiter.effective_limit("notification_send", "manager") == 200
        assert limiter.effective_limit("notification_send", "user") == 100

        allowed = sum(limiter.allow("boss", "notification_send", "admin").allowed for _ in range(520))
        assert allowed == 500

    def test_unknown_role_uses_base_limit(self, limiter):
        assert limiter.effective_limit("notification_send", "auditor") == 100

    def test_multiplier_result_is_floored(self, clock):
        config = RateLimitConfig(
            limits={'bulk_notification': OperationLimitConfig(max_requests=5, window_seconds=60)},
            role_multipliers={'user': 1.0, 'trial': 0.5},
        )
        limiter = RateLimiter(InMemoryQuotaStore(), config, clock=clock)
        assert limiter.effective_limit("bulk_notification", "trial") == 2

    def test_window_rollover_at_reset_at(self, limiter, clock):
        """A blocked caller is allowed again at reset_at, and not before."""
        for _ in range(3):
            limiter.allow("user1", "bulk_notification")
            clock.advance(1)

        blocked = limiter.allow("user1", "bulk_notification")
        assert blocked.allowed is False
        assert blocked.reset_at == pytest.approx(1767614400.0 + 60)

        clock.now = blocked.reset_at - 0.001
        assert limiter.allow("user1", "bulk_notification").allowed is False

        clock.now = blocked.reset_at
        assert limiter.allow("user1", "bulk_notification").allowed is True

    def test_operation_types_are_independent(self, limiter):
        for _ in range(3):
            limiter.allow("user1", "bulk_notification")

        assert limiter.allow("user1", "bulk_notification").allowed is False
        assert limiter.allow("user1", "notification_send").allowed is True

    def test_actors_are_independent(self, limiter):
        for _ in range(3):
            limiter.allow("user1", "bulk_notification")

        assert limiter.allow("user2", "bulk_notification").allowed is True

    def test_unknown_operation_raises(self, limiter):
        with pytest.raises(UnknownOperationError):
            limiter.allow("user1", "carrier_pigeon")

    def test_emergency_bypass_consumes_no_token(self, limiter):
        decision = limiter.allow("user1", "bulk_notification", priority="emergency")

        assert decision.allowed is True
        assert decision.outcome == "bypassed"
        assert limiter.status("user1", "bulk_notification").remaining == 3

    def test_critical_priority_bypasses(self, limiter):
        for _ in range(3):
            limiter.allow("user1", "bulk_notification")

        assert limiter.allow("user1", "bulk_notification", priority="critical").allowed is True

    def test_high_priority_does_not_bypass(self, limiter):
        decision = limiter.allow("user1", "bulk_notification", priority="high")
        assert decision.outcome == "allowed"

    def test_internal_bypass(self, limiter):
        for _ in range(3):
            limiter.allow("user1", "bulk_notification")

        decision = limiter.allow("user1", "bulk_notification", internal=True)
        assert decision.allowed is True
        assert decision.outcome == "bypassed"

    def test_role_and_ip_bypass(self, clock):
        config = RateLimitConfig(
            limits={'bulk_notification': OperationLimitConfig(max_requests=0, window_seconds=60)},
            bypass_roles=['system'],
            bypass_ips=['10.0.0.5'],
        )
        limiter = RateLimiter(InMemoryQuotaStore(), config, clock=clock)

        assert limiter.allow("svc", "bulk_notification", "system").allowed is True
        assert limiter.allow("u", "bulk_notification", origin_ip="10.0.0.5").allowed is True
        assert limiter.allow("u", "bulk_notification", origin_ip="10.0.0.6").allowed is False

    def test_store_failure_fails_open(self, clock, metrics):
        store = Mock()
        store.acquire.side_effect = QuotaStoreUnavailable("redis down")
        store.ping.return_value = False
        limiter = RateLimiter(store, RateLimitConfig(), metrics=metrics, clock=clock)

        decision = limiter.allow("user1", "notification_send")

        assert decision.allowed is True
        assert decision.outcome == "error"
        assert limiter.get_metrics()['error_count'] == 1
        assert limiter.health_status()['status'] == 'degraded'

    def test_disabled_limiter_allows_everything(self, clock):
        config = RateLimitConfig(
            enabled=False,
            limits={'bulk_notification': OperationLimitConfig(max_requests=0, window_seconds=60)},
        )
        limiter = RateLimiter(InMemoryQuotaStore(), config, clock=clock)
        assert limiter.allow("user1", "bulk_notification").allowed is True

    def test_status_does_not_consume(self, limiter):
        limiter.allow("user1", "bulk_notification")

        for _ in range(5):
            status = limiter.status("user1", "bulk_notification")
        assert status.remaining == 2
        assert status.allowed is True

    def test_reset_clears_window(self, limiter):
        for _ in range(3):
            limiter.allow("user1", "bulk_notification")

        assert limiter.reset("user1", "bulk_notification") is True
        assert limiter.allow("user1", "bulk_notification").allowed is True

    def test_metrics_tags(self, limiter, metrics):
        limiter.allow("user1", "bulk_notification", "manager")
        limiter.allow("user1", "bulk_notification", priority="emergency")

        assert metrics.count("rate_limit.decision", outcome="allowed", role="manager",
                             operation_type="bulk_notification") == 1
        assert metrics.count("rate_limit.decision", outcome="bypassed") == 1

    def test_health_status_counts(self, limiter):
        for _ in range(4):
            limiter.allow("user1", "bulk_notification")

        health = limiter.health_status()
        assert health['status'] == 'healthy'
        assert health['metrics']['total_requests'] == 4
        assert health['metrics']['blocked_requests'] == 1
        assert health['metrics']['block_rate'] == "25.00%"
        assert 'bulk_notification' in health['operation_types']
