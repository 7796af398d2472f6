"""
Notifier Module

Multi-channel notification delivery: admission control, prioritization,
channel selection, deduplication and resilient delivery.

Usage:
    from core.app_context import AppContext
    from core.config_loader import load_config

    context = AppContext.build(load_config())
    result = context.dispatcher.dispatch({
        'recipient_id': 'user123',
        'type': 'task_assigned',
        'title': 'New task',
        'body': 'You have been assigned a task',
    })
"""

from notifier.exceptions import (
    NotifierError,
    NotificationValidationError,
    UnknownOperationError,
    QuotaStoreUnavailable,
    CircuitOpenError,
    SinkError,
    SinkTimeoutError,
    SinkTransportError,
    SinkRejectedError,
    DispatchCancelledError,
)

from notifier.models import (
    NotificationRequest,
    PriorityHint,
    Channel,
    RecipientContext,
    ChannelPreference,
    ChannelPreferenceSet,
    UserPreferences,
    DispatchResult,
    ChannelFailure,
    Delivery,
)

from notifier.quota_store import QuotaStore, RedisQuotaStore, InMemoryQuotaStore
from notifier.rate_limiter import RateLimiter, AdmissionDecision
from notifier.priority import PriorityEngine
from notifier.selector import ChannelSelector
from notifier.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from notifier.dedup import Deduplicator, AdmitResult, PendingDigest
from notifier.sinks import (
    DeliverySink,
    EmailSink,
    PushSink,
    ChatWebhookSink,
    InAppSink,
    WebSocketSink,
    build_sinks,
)
from notifier.dispatcher import Dispatcher, DigestSweeper
from notifier.metrics import MetricsSink, MetricResult, InMemoryMetricsSink, LoggingMetricsSink

__all__ = [
    # Exceptions
    'NotifierError',
    'NotificationValidationError',
    'UnknownOperationError',
    'QuotaStoreUnavailable',
    'CircuitOpenError',
    'SinkError',
    'SinkTimeoutError',
    'SinkTransportError',
    'SinkRejectedError',
    'DispatchCancelledError',
    # Models
    'NotificationRequest',
    'PriorityHint',
    'Channel',
    'RecipientContext',
    'ChannelPreference',
    'ChannelPreferenceSet',
    'UserPreferences',
    'DispatchResult',
    'ChannelFailure',
    'Delivery',
    # Admission
    'QuotaStore',
    'RedisQuotaStore',
    'InMemoryQuotaStore',
    'RateLimiter',
    'AdmissionDecision',
    # Prioritization
    'PriorityEngine',
    'ChannelSelector',
    # Delivery
    'CircuitBreaker',
    'CircuitBreakerRegistry',
    'CircuitState',
    'DeliverySink',
    'EmailSink',
    'PushSink',
    'ChatWebhookSink',
    'InAppSink',
    'WebSocketSink',
    'build_sinks',
    # Dedup
    'Deduplicator',
    'AdmitResult',
    'PendingDigest',
    # Orchestration
    'Dispatcher',
    'DigestSweeper',
    # Metrics
    'MetricsSink',
    'MetricResult',
    'InMemoryMetricsSink',
    'LoggingMetricsSink',
]
