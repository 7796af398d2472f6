#!/usr/bin/env python3
"""
Circuit Breaker - per-sink failure isolation with hard timeouts.

Each logical sink gets one breaker:

    closed --(failure_threshold consecutive failures)--> open
    open --(call after next_retry_at)--> half_open
    half_open --(probe succeeds)--> closed
    half_open --(probe fails)--> open (timeout restarts)

Each sink runs its calls on its own bounded worker pool, so a hung sink can
only exhaust its own workers. The caller waits at most the sink's timeout;
on timeout the per-call cancel event is set so the operation can abandon its
in-flight work. A call still queued at the deadline is withdrawn without
counting against the sink.

Usage:
    registry = CircuitBreakerRegistry(DeliveryConfig())
    registry.execute("email", lambda cancel: sink.deliver(delivery, cancel))
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Callable, Dict, Optional

from core.config_loader import DeliveryConfig, SinkConfig
from notifier.exceptions import (
    CircuitOpenError, DispatchCancelledError, SinkError,
    SinkRejectedError, SinkTimeoutError, SinkTransportError,
)
from notifier.metrics import MetricsSink, record

logger = logging.getLogger(__name__)

# How often a waiting caller checks the dispatch-wide cancel event
_POLL_INTERVAL_SECONDS = 0.05


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """State machine for one sink. All transitions happen under ``_lock``."""

    def __init__(
        self,
        name: str,
        config: Optional[SinkConfig] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsSink] = None
    ):
        self.name = name
        self.config = config or SinkConfig()
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.next_retry_at: Optional[float] = None
        self.last_error: Optional[str] = None
        self._probes_in_flight = 0

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        if new_state == CircuitState.OPEN:
            self.next_retry_at = self._clock() + self.config.reset_timeout_seconds
            logger.error(f"Circuit breaker opened for {self.name}: {self.last_error}")
        elif new_state == CircuitState.CLOSED:
            logger.info(f"Circuit breaker closed for {self.name}")
        else:
            logger.info(f"Circuit breaker half-open for {self.name}")
        record(self.metrics, "circuit_breaker.transition", {
            'sink': self.name,
            'from_state': old_state.value,
            'to_state': new_state.value,
        })

    def before_call(self) -> bool:
        """
        Admit or reject a call.

        Returns:
            True if the admitted call is a half-open probe

        Raises:
            CircuitOpenError: if the circuit is open or the probe slots are taken
        """
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.next_retry_at is not None and self._clock() < self.next_retry_at:
                    raise CircuitOpenError(self.name, self.next_retry_at)
                self._transition(CircuitState.HALF_OPEN)
                self._probes_in_flight = 0

            if self.state == CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.config.half_open_max_calls:
                    raise CircuitOpenError(self.name, self.next_retry_at)
                self._probes_in_flight += 1
                return True
            return False

    def record_success(self, probe: bool = False) -> None:
        with self._lock:
            if probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
            self.consecutive_failures = 0
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    def record_failure(self, error: BaseException, probe: bool = False) -> None:
        with self._lock:
            if probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
            self.consecutive_failures += 1
            self.last_error = str(error)
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (self.state == CircuitState.CLOSED
                  and self.consecutive_failures >= self.config.failure_threshold):
                self._transition(CircuitState.OPEN)

    def release(self, probe: bool = False) -> None:
        """Give back a probe slot without changing state (cancelled calls)."""
        if not probe:
            return
        with self._lock:
            self._probes_in_flight = max(0, self._probes_in_flight - 1)

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self.consecutive_failures = 0
            self.next_retry_at = None
            self.last_error = None
            self._probes_in_flight = 0

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'name': self.name,
                'state': self.state.value,
                'consecutive_failures': self.consecutive_failures,
                'failure_threshold': self.config.failure_threshold,
                'next_retry_at': self.next_retry_at,
                'last_error': self.last_error,
            }


class CircuitBreakerRegistry:
    """
    Holds one breaker and one worker pool per sink and runs sink operations
    through them.

    Breakers for every configured sink exist from construction; other sink
    names get theirs on first use. The operation receives a per-call
    ``threading.Event`` that is set when the call times out or the dispatch
    is cancelled.
    """

    def __init__(
        self,
        config: Optional[DeliveryConfig] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.time,
        max_workers: Optional[int] = None
    ):
        self.config = config or DeliveryConfig()
        self.metrics = metrics
        self._clock = clock
        self._max_workers = max_workers or self.config.max_workers
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._lock = threading.Lock()

        for sink_name in self.config.known_sinks():
            self._create(sink_name)

    def _create(self, sink_name: str) -> CircuitBreaker:
        breaker = CircuitBreaker(
            sink_name,
            self.config.sink_config(sink_name),
            clock=self._clock,
            metrics=self.metrics,
        )
        self._breakers[sink_name] = breaker
        return breaker

    def get(self, sink_name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(sink_name)
            if breaker is None:
                breaker = self._create(sink_name)
            return breaker

    def _executor_for(self, sink_name: str) -> ThreadPoolExecutor:
        with self._lock:
            executor = self._executors.get(sink_name)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix=f"sink-{sink_name}",
                )
                self._executors[sink_name] = executor
            return executor

    def execute(
        self,
        sink_name: str,
        operation: Callable[[threading.Event], Any],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Any:
        """
        Run ``operation`` for ``sink_name`` under its breaker and timeout.

        Raises:
            CircuitOpenError: circuit open, operation not attempted
            SinkTimeoutError: no answer within the timeout (counts as failure)
            SinkTransportError: operation failed (counts as failure)
            SinkRejectedError: downstream rejected the call (not a failure)
            DispatchCancelledError: ``cancel_event`` fired while waiting
        """
        breaker = self.get(sink_name)
        timeout = timeout if timeout is not None else breaker.config.timeout_seconds

        if cancel_event is not None and cancel_event.is_set():
            raise DispatchCancelledError(f"Dispatch cancelled before calling {sink_name}")

        probe = breaker.before_call()
        call_cancel = threading.Event()
        future = self._executor_for(sink_name).submit(operation, call_cancel)
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                call_cancel.set()
                error = SinkTimeoutError(sink_name, f"Request to {sink_name} timed out after {timeout}s")
                if future.cancel():
                    # Never started: the sink's own pool is saturated, the sink was not called.
                    logger.warning(f"{sink_name} call dropped after {timeout}s waiting for a worker")
                    breaker.release(probe)
                    raise error
                breaker.record_failure(error, probe)
                raise error

            done, _ = wait([future], timeout=min(_POLL_INTERVAL_SECONDS, remaining),
                           return_when=FIRST_COMPLETED)
            if done:
                break

            if cancel_event is not None and cancel_event.is_set():
                call_cancel.set()
                future.cancel()
                breaker.release(probe)
                raise DispatchCancelledError(f"Dispatch cancelled while calling {sink_name}")

        try:
            result = future.result()
        except SinkRejectedError:
            # The downstream answered; that is not a health signal against it.
            breaker.record_success(probe)
            raise
        except DispatchCancelledError:
            breaker.release(probe)
            raise
        except SinkError as e:
            breaker.record_failure(e, probe)
            raise
        except Exception as e:
            breaker.record_failure(e, probe)
            raise SinkTransportError(sink_name, str(e)) from e

        breaker.record_success(probe)
        return result

    def status(self, sink_name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            breaker = self._breakers.get(sink_name)
        return breaker.status() if breaker else None

    def status_all(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.status() for b in breakers}

    def reset(self, sink_name: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(sink_name)
        if breaker is None:
            return False
        breaker.reset()
        logger.info(f"Circuit breaker manually reset for {sink_name}")
        return True

    def shutdown(self, wait_for_calls: bool = False) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=wait_for_calls, cancel_futures=True)
