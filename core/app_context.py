from dataclasses import dataclass
from typing import Optional

from core.config_loader import AppConfig, RateLimitConfig
from notifier.circuit_breaker import CircuitBreakerRegistry
from notifier.collaborators import (
    InMemoryPreferenceStore, InMemoryPresence, InMemoryPushTokens,
    PreferenceStore, PresenceLookup, PushTokenLookup,
)
from notifier.dedup import Deduplicator
from notifier.dispatcher import Dispatcher
from notifier.metrics import LoggingMetricsSink, MetricsSink
from notifier.priority import PriorityEngine
from notifier.quota_store import InMemoryQuotaStore, QuotaStore, RedisQuotaStore
from notifier.rate_limiter import RateLimiter
from notifier.selector import ChannelSelector
from notifier.sinks import Publisher, build_sinks


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    This eliminates duplicate wiring code and provides a single source
    of truth for service instantiation. Collaborators default to the
    in-memory implementations; production deployments pass their own.
    """
    config: AppConfig
    rate_limiter: RateLimiter
    breakers: CircuitBreakerRegistry
    deduplicator: Deduplicator
    dispatcher: Dispatcher
    metrics: MetricsSink

    @classmethod
    def build(
        cls,
        config: AppConfig,
        preference_store: Optional[PreferenceStore] = None,
        presence: Optional[PresenceLookup] = None,
        push_tokens: Optional[PushTokenLookup] = None,
        quota_store: Optional[QuotaStore] = None,
        metrics: Optional[MetricsSink] = None,
        in_app_publisher: Optional[Publisher] = None,
        websocket_publisher: Optional[Publisher] = None
    ) -> "AppContext":
        """Build an AppContext from config.

        Args:
            config: Loaded application configuration
            preference_store: Stored user preferences (read-only)
            presence: Online/offline lookup
            push_tokens: Push token lookup
            quota_store: Overrides the store chosen from config
            metrics: Metrics sink (defaults to debug logging)

        Returns:
            Fully wired AppContext instance
        """
        metrics = metrics or LoggingMetricsSink()

        store = quota_store or cls._build_quota_store(config.rate_limits)
        rate_limiter = RateLimiter(store, config.rate_limits, metrics=metrics)

        breakers = CircuitBreakerRegistry(config.delivery, metrics=metrics)
        deduplicator = Deduplicator(config.dedup)
        priority_engine = PriorityEngine(config.priority, preference_store or InMemoryPreferenceStore())
        selector = ChannelSelector(config.priority)
        sinks = build_sinks(
            config.delivery,
            in_app_publisher=in_app_publisher,
            websocket_publisher=websocket_publisher,
        )

        dispatcher = Dispatcher(
            rate_limiter=rate_limiter,
            deduplicator=deduplicator,
            priority_engine=priority_engine,
            selector=selector,
            breakers=breakers,
            sinks=sinks,
            channel_sinks=config.delivery.channel_sinks,
            presence=presence or InMemoryPresence(),
            push_tokens=push_tokens or InMemoryPushTokens(),
            metrics=metrics,
            dispatch_workers=config.delivery.dispatch_workers,
        )

        return cls(
            config=config,
            rate_limiter=rate_limiter,
            breakers=breakers,
            deduplicator=deduplicator,
            dispatcher=dispatcher,
            metrics=metrics,
        )

    @staticmethod
    def _build_quota_store(rate_config: RateLimitConfig) -> QuotaStore:
        """Redis when configured, otherwise the single-process store."""
        if rate_config.redis_url:
            return RedisQuotaStore.from_url(rate_config.redis_url)
        return InMemoryQuotaStore()

    def close(self) -> None:
        self.dispatcher.close()
