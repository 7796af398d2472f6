"""
Tests for CircuitBreaker state transitions and CircuitBreakerRegistry.execute.
"""
import threading
import time
import pytest

from core.config_loader import DeliveryConfig, SinkConfig
from notifier.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from notifier.exceptions import (
    CircuitOpenError, DispatchCancelledError, SinkRejectedError,
    SinkTimeoutError, SinkTransportError,
)
from notifier.metrics import InMemoryMetricsSink


def failing(cancel):
    raise SinkTransportError("email", "connection refused")


def succeeding(cancel):
    return "ok"


class TestCircuitBreakerRegistry:
    """Test suite for breaker transitions through execute()."""

    @pytest.fixture
    def metrics(self):
        return InMemoryMetricsSink()

    @pytest.fixture
    def registry(self, clock, metrics):
        config = DeliveryConfig(sinks={
            'email': SinkConfig(timeout_seconds=5.0, failure_threshold=5, reset_timeout_seconds=60),
            'slow': SinkConfig(timeout_seconds=0.2, failure_threshold=5, reset_timeout_seconds=60),
        })
        registry = CircuitBreakerRegistry(config, metrics=metrics, clock=clock, max_workers=4)
        yield registry
        registry.shutdown()

    def trip(self, registry, sink="email", times=5):
        for _ in range(times):
            with pytest.raises(SinkTransportError):
                registry.execute(sink, failing)

    def test_success_passes_result_through(self, registry):
        assert registry.execute("email", succeeding) == "ok"
        assert registry.status("email")['state'] == "closed"

    def test_trips_on_fifth_failure(self, registry):
        self.trip(registry, times=4)
        assert registry.status("email")['state'] == "closed"

        self.trip(registry, times=1)
        status = registry.status("email")
        assert status['state'] == "open"
        assert status['consecutive_failures'] == 5
        assert "connection refused" in status['last_error']

    def test_sixth_call_fails_fast(self, registry):
        self.trip(registry)
        called = []

        with pytest.raises(CircuitOpenError) as exc_info:
            registry.execute("email", lambda cancel: called.append(1))

        assert called == []
        assert exc_info.value.retry_at == pytest.approx(1767614400.0 + 60)

    def test_success_resets_consecutive_failures(self, registry):
        self.trip(registry, times=4)
        registry.execute("email", succeeding)
        self.trip(registry, times=4)

        assert registry.status("email")['state'] == "closed"

    def test_half_open_probe_success_closes(self, registry, clock):
        self.trip(registry)
        clock.advance(60)

        assert registry.execute("email", succeeding) == "ok"
        status = registry.status("email")
        assert status['state'] == "closed"
        assert status['consecutive_failures'] == 0

    def test_half_open_probe_failure_reopens(self, registry, clock):
        self.trip(registry)
        clock.advance(61)

        with pytest.raises(SinkTransportError):
            registry.execute("email", failing)

        status = registry.status("email")
        assert status['state'] == "open"
        assert status['next_retry_at'] == pytest.approx(clock() + 60)

    def test_half_open_admits_single_probe(self, registry, clock):
        self.trip(registry)
        clock.advance(60)

        release = threading.Event()
        probe_started = threading.Event()

        def probe(cancel):
            probe_started.set()
            release.wait(2)
            return "probed"

        results = []
        worker = threading.Thread(target=lambda: results.append(registry.execute("email", probe)))
        worker.start()
        assert probe_started.wait(1)

        with pytest.raises(CircuitOpenError):
            registry.execute("email", succeeding)

        release.set()
        worker.join(2)
        assert results == ["probed"]
        assert registry.status("email")['state'] == "closed"

    def test_rejection_does_not_count_as_failure(self, registry):
        def rejected(cancel):
            raise SinkRejectedError("email", "bad address", status_code=400)

        for _ in range(10):
            with pytest.raises(SinkRejectedError):
                registry.execute("email", rejected)

        status = registry.status("email")
        assert status['state'] == "closed"
        assert status['consecutive_failures'] == 0

    def test_unexpected_exception_wrapped_as_transport_error(self, registry):
        def broken(cancel):
            raise RuntimeError("boom")

        with pytest.raises(SinkTransportError):
            registry.execute("email", broken)
        assert registry.status("email")['consecutive_failures'] == 1

    def test_timeout_counts_as_failure_and_cancels_call(self, registry):
        seen_cancel = threading.Event()

        def hang(cancel):
            if cancel.wait(2):
                seen_cancel.set()

        started = time.monotonic()
        with pytest.raises(SinkTimeoutError):
            registry.execute("slow", hang)

        assert time.monotonic() - started < 1.0
        assert seen_cancel.wait(1)
        assert registry.status("slow")['consecutive_failures'] == 1

    def test_explicit_timeout_overrides_sink_default(self, registry):
        with pytest.raises(SinkTimeoutError):
            registry.execute("email", lambda cancel: cancel.wait(2), timeout=0.1)

    def test_dispatch_cancel_is_not_a_failure(self, registry):
        cancel_event = threading.Event()
        seen_cancel = threading.Event()

        def hang(cancel):
            if cancel.wait(2):
                seen_cancel.set()

        timer = threading.Timer(0.1, cancel_event.set)
        timer.start()
        with pytest.raises(DispatchCancelledError):
            registry.execute("email", hang, cancel_event=cancel_event)
        timer.join()

        assert seen_cancel.wait(1)
        assert registry.status("email")['consecutive_failures'] == 0

    def test_already_cancelled_never_calls(self, registry):
        cancel_event = threading.Event()
        cancel_event.set()
        called = []

        with pytest.raises(DispatchCancelledError):
            registry.execute("email", lambda cancel: called.append(1), cancel_event=cancel_event)
        assert called == []

    def test_breakers_are_independent(self, registry):
        self.trip(registry, "email")
        assert registry.execute("push", succeeding) == "ok"

    def test_configured_sinks_known_before_first_call(self, registry):
        statuses = registry.status_all()
        assert set(statuses) == {"email", "slow", "in_app", "websocket", "push", "chat"}
        assert all(s['state'] == "closed" for s in statuses.values())
        assert registry.reset("chat") is True

    def test_status_all_and_reset(self, registry):
        self.trip(registry)
        registry.execute("push", succeeding)

        statuses = registry.status_all()
        assert statuses["push"]['state'] == "closed"
        assert statuses["email"]['state'] == "open"

        assert registry.reset("email") is True
        assert registry.status("email")['state'] == "closed"
        assert registry.execute("email", succeeding) == "ok"

    def test_unknown_breaker(self, registry):
        assert registry.status("pigeon") is None
        assert registry.reset("pigeon") is False

    def test_transitions_emit_metrics(self, registry, metrics, clock):
        self.trip(registry)
        clock.advance(60)
        registry.execute("email", succeeding)

        assert metrics.count("circuit_breaker.transition", sink="email", to_state="open") == 1
        assert metrics.count("circuit_breaker.transition", sink="email", to_state="half_open") == 1
        assert metrics.count("circuit_breaker.transition", sink="email", to_state="closed") == 1


class TestSinkIsolation:
    """A hung sink must not starve or trip the breakers of other sinks."""

    @pytest.fixture
    def registry(self, clock):
        config = DeliveryConfig(sinks={
            'email': SinkConfig(timeout_seconds=0.2, failure_threshold=5),
            'in_app': SinkConfig(timeout_seconds=0.5, failure_threshold=1),
        })
        registry = CircuitBreakerRegistry(config, clock=clock, max_workers=1)
        yield registry
        registry.shutdown()

    def test_hung_sink_does_not_trip_healthy_sink(self, registry):
        stuck = threading.Event()
        try:
            # Ignores its cancel event and keeps email's only worker busy
            with pytest.raises(SinkTimeoutError):
                registry.execute("email", lambda cancel: stuck.wait(5))

            called = []
            registry.execute("in_app", lambda cancel: called.append(1))

            assert called == [1]
            assert registry.status("in_app")['state'] == "closed"
            assert registry.status("in_app")['consecutive_failures'] == 0
        finally:
            stuck.set()

    def test_call_queued_past_deadline_is_not_a_failure(self, registry):
        stuck = threading.Event()
        try:
            with pytest.raises(SinkTimeoutError):
                registry.execute("email", lambda cancel: stuck.wait(5))

            called = []
            with pytest.raises(SinkTimeoutError):
                registry.execute("email", lambda cancel: called.append(1))

            assert called == []
            assert registry.status("email")['consecutive_failures'] == 1
        finally:
            stuck.set()


class TestCircuitBreaker:
    """Direct state machine checks."""

    def test_only_open_transition_sets_next_retry_at(self, clock):
        breaker = CircuitBreaker("push", SinkConfig(failure_threshold=2, reset_timeout_seconds=30), clock=clock)

        breaker.record_failure(RuntimeError("x"))
        assert breaker.next_retry_at is None

        breaker.record_failure(RuntimeError("x"))
        assert breaker.state == CircuitState.OPEN
        assert breaker.next_retry_at == clock() + 30

        clock.advance(31)
        probe = breaker.before_call()
        assert probe is True
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.next_retry_at == clock() - 1

    def test_release_returns_probe_slot(self, clock):
        breaker = CircuitBreaker("push", SinkConfig(failure_threshold=1, reset_timeout_seconds=10), clock=clock)
        breaker.record_failure(RuntimeError("x"))
        clock.advance(10)

        assert breaker.before_call() is True
        breaker.release(True)
        assert breaker.before_call() is True
        assert breaker.state == CircuitState.HALF_OPEN
