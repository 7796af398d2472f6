#!/usr/bin/env python3
"""
Dispatcher - orchestrates one notification through the pipeline.

    request -> RateLimiter.allow -> Deduplicator.admit
            -> PriorityEngine.score + resolve_preferences
            -> ChannelSelector.select
            -> per channel, concurrently: CircuitBreakerRegistry.execute(sink.deliver)

Every channel is attempted independently; one failing channel never stops
another, and nothing is rolled back. The per-channel outcome is reported in
the DispatchResult.

Usage:
    dispatcher = Dispatcher(limiter, dedup, engine, selector, breakers, sinks)
    result = dispatcher.dispatch({
        "recipient_id": "user123",
        "type": "task_assigned",
        "title": "New task",
        "body": "You have been assigned 'Quarterly report'",
        "priority_hint": "high",
    })
    if result.rate_limited:
        ...
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from functools import partial
from typing import Any, Dict, List, Optional, Union

from notifier.circuit_breaker import CircuitBreakerRegistry, CircuitState
from notifier.collaborators import PresenceLookup, PushTokenLookup
from notifier.dedup import Deduplicator
from notifier.exceptions import NotifierError, UnknownOperationError
from notifier.metrics import MetricsSink, record
from notifier.models import (
    ChannelFailure, ChannelPreference, Delivery, DispatchResult,
    NotificationRequest, RecipientContext,
)
from notifier.priority import PriorityEngine
from notifier.rate_limiter import RateLimiter
from notifier.selector import ChannelSelector
from notifier.sinks import DeliverySink

logger = logging.getLogger(__name__)

SEND_OPERATION = "notification_send"
ANNOUNCEMENT_OPERATION = "system_announcement"


class Dispatcher:
    """Runs admission, dedup, prioritization and fan-out for each request."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        deduplicator: Deduplicator,
        priority_engine: PriorityEngine,
        selector: ChannelSelector,
        breakers: CircuitBreakerRegistry,
        sinks: Dict[str, DeliverySink],
        channel_sinks: Optional[Dict[str, str]] = None,
        presence: Optional[PresenceLookup] = None,
        push_tokens: Optional[PushTokenLookup] = None,
        metrics: Optional[MetricsSink] = None,
        dispatch_workers: int = 8
    ):
        self.rate_limiter = rate_limiter
        self.deduplicator = deduplicator
        self.priority_engine = priority_engine
        self.selector = selector
        self.breakers = breakers
        self.sinks = sinks
        self.channel_sinks = channel_sinks or {}
        self.presence = presence
        self.push_tokens = push_tokens
        self.metrics = metrics
        self._executor = ThreadPoolExecutor(
            max_workers=dispatch_workers,
            thread_name_prefix="dispatch",
        )

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _complete_context(self, recipient_id: str, context: Optional[RecipientContext]) -> RecipientContext:
        """Fill unknown presence/push facts from the collaborators. Failures degrade to False."""
        context = replace(context) if context is not None else RecipientContext()

        if context.recipient_online is None:
            context.recipient_online = False
            if self.presence is not None:
                try:
                    context.recipient_online = bool(self.presence.is_online(recipient_id))
                except Exception as e:
                    logger.warning(f"Presence lookup failed for {recipient_id}, assuming offline: {e}")

        if context.has_push_tokens is None:
            context.has_push_tokens = False
            if self.push_tokens is not None:
                try:
                    context.has_push_tokens = bool(self.push_tokens.has_push_tokens(recipient_id))
                except Exception as e:
                    logger.warning(f"Push token lookup failed for {recipient_id}, assuming none: {e}")

        return context

    @staticmethod
    def operation_for(request: NotificationRequest) -> str:
        if request.type == 'system_announcement':
            return ANNOUNCEMENT_OPERATION
        return SEND_OPERATION

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        request: Union[NotificationRequest, Dict[str, Any]],
        context: Optional[RecipientContext] = None,
        *,
        actor_id: Optional[str] = None,
        role: Optional[str] = "user",
        internal: bool = False,
        origin_ip: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> DispatchResult:
        """
        Admit, deduplicate, prioritize and deliver one notification.

        Args:
            request: NotificationRequest or a dict to validate into one
            context: Recipient context; unknown presence/push facts are looked up
            actor_id: Who triggered the notification (defaults to the recipient)
            role: Actor role, scales the rate limit
            internal: System caller, bypasses the rate limit
            origin_ip: Actor network origin, checked against the bypass list
            cancel_event: Set to abandon in-flight sink calls

        Returns:
            DispatchResult with per-channel outcomes

        Raises:
            NotificationValidationError: if ``request`` is malformed
        """
        request = NotificationRequest.parse(request)
        return self._dispatch(
            request, context,
            actor_id=actor_id, role=role, internal=internal,
            origin_ip=origin_ip, cancel_event=cancel_event, deduplicate=True,
        )

    def _dispatch(
        self,
        request: NotificationRequest,
        context: Optional[RecipientContext],
        *,
        actor_id: Optional[str],
        role: Optional[str],
        internal: bool,
        origin_ip: Optional[str],
        cancel_event: Optional[threading.Event],
        deduplicate: bool
    ) -> DispatchResult:
        result = DispatchResult(request_type=request.type)

        if not request.is_known_type:
            logger.warning(f"Unknown notification type '{request.type}' accepted for {request.recipient_id}")
            record(self.metrics, "notification.unknown_type", {'type': request.type})

        operation = self.operation_for(request)
        priority = 'emergency' if request.emergency else request.priority_hint.value
        try:
            decision = self.rate_limiter.allow(
                actor_id or request.recipient_id,
                operation,
                role,
                internal=internal,
                priority=priority,
                origin_ip=origin_ip,
            )
        except UnknownOperationError:
            raise
        except Exception as e:
            logger.error(f"Rate limiter failed, allowing notification: {e}", exc_info=True)
            decision = None

        result.admission = decision
        if decision is not None and not decision.allowed:
            result.rate_limited = True
            record(self.metrics, "notification.dispatch", {'outcome': 'rate_limited', 'type': request.type})
            return result

        context = self._complete_context(request.recipient_id, context)

        if deduplicate:
            try:
                admitted = self.deduplicator.admit(request, context)
            except Exception as e:
                logger.warning(f"Deduplicator failed, treating notification as new: {e}")
                admitted = None
            if admitted is not None and admitted.suppressed:
                result.suppressed_as_duplicate = True
                record(self.metrics, "notification.dispatch", {'outcome': 'duplicate', 'type': request.type})
                return result

        self._deliver(request, context, result, cancel_event)
        return result

    def _deliver(
        self,
        request: NotificationRequest,
        context: RecipientContext,
        result: DispatchResult,
        cancel_event: Optional[threading.Event]
    ) -> None:
        score = self.priority_engine.score(request, context)
        prefs = self.priority_engine.resolve_preferences(request.recipient_id, request.type, context.timezone)
        channels = self.selector.select(prefs, score, context, request.type, request.requested_channels)

        result.score = score
        result.channels_attempted = list(channels)
        if not channels:
            logger.info(f"No channels selected for {request.type} to {request.recipient_id}")

        futures = {}
        for channel in channels:
            sink_name = self.channel_sinks.get(channel, channel)
            sink = self.sinks.get(sink_name)
            if sink is None:
                logger.error(f"No sink registered for channel {channel} ({sink_name})")
                result.channels_failed.append(ChannelFailure(channel, 'no_sink', f"No sink named {sink_name}"))
                continue
            delivery = Delivery(
                request=request,
                channel=channel,
                context=context,
                preference=prefs.get(channel) or ChannelPreference(),
                score=score,
            )
            futures[channel] = self._executor.submit(
                self.breakers.execute,
                sink_name,
                partial(sink.deliver, delivery),
                None,
                cancel_event,
            )

        for channel in channels:
            future = futures.get(channel)
            if future is None:
                continue
            try:
                future.result()
                result.channels_succeeded.append(channel)
                record(self.metrics, "notification.channel", {'channel': channel, 'outcome': 'success'})
            except NotifierError as e:
                reason = getattr(e, 'reason', 'error')
                logger.warning(f"Delivery via {channel} failed ({reason}): {e}")
                result.channels_failed.append(ChannelFailure(channel, reason, str(e)))
                record(self.metrics, "notification.channel", {'channel': channel, 'outcome': reason})
            except Exception as e:
                logger.error(f"Unexpected error delivering via {channel}: {e}", exc_info=True)
                result.channels_failed.append(ChannelFailure(channel, 'error', str(e)))
                record(self.metrics, "notification.channel", {'channel': channel, 'outcome': 'error'})

        if result.channels_failed and not result.channels_succeeded:
            outcome = 'failed'
        elif result.partial_failure:
            outcome = 'partial'
        else:
            outcome = 'delivered'
        record(self.metrics, "notification.dispatch", {'outcome': outcome, 'type': request.type})

    # ------------------------------------------------------------------
    # Digests
    # ------------------------------------------------------------------

    def flush_digests(self) -> List[DispatchResult]:
        """Send the digests of every closed dedup window. Digests bypass the quota."""
        results = []
        for pending in self.deduplicator.collect_expired():
            try:
                results.append(self._dispatch(
                    pending.request, pending.context,
                    actor_id=None, role=None, internal=True,
                    origin_ip=None, cancel_event=None, deduplicate=False,
                ))
            except NotifierError as e:
                logger.error(f"Failed to dispatch digest for group {pending.group_key}: {e}")
        return results

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_status(self) -> Dict[str, Any]:
        rate_limiter = self.rate_limiter.health_status()
        circuits = self.breakers.status_all()
        open_circuits = [n for n, s in circuits.items() if s['state'] == CircuitState.OPEN.value]
        healthy = rate_limiter['status'] == 'healthy' and not open_circuits
        return {
            'status': 'healthy' if healthy else 'degraded',
            'rate_limiter': rate_limiter,
            'circuit_breakers': circuits,
            'open_circuits': open_circuits,
            'dedup': {
                'active_groups': self.deduplicator.active_groups(),
                'pending_digests': self.deduplicator.pending_digests(),
            },
        }

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.breakers.shutdown()


class DigestSweeper:
    """Background thread that periodically flushes closed dedup windows."""

    def __init__(self, dispatcher: Dispatcher, interval_seconds: float = 30.0):
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        logger.info(f"Digest sweeper started (every {self.interval_seconds}s)")
        while not self._stop_event.wait(self.interval_seconds):
            try:
                sent = self.dispatcher.flush_digests()
                if sent:
                    logger.info(f"Digest sweeper dispatched {len(sent)} digest(s)")
            except Exception as e:
                logger.error(f"Digest sweep failed: {e}", exc_info=True)
        logger.info("Digest sweeper stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="digest-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
