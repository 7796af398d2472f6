#!/usr/bin/env python3
"""
Metrics sink interface.

Pipeline components never talk to a telemetry backend directly. They receive a
MetricsSink and record through ``record()``, which reports whether the event
was recorded, skipped (no sink configured) or failed, instead of silently
swallowing errors.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MetricResult(Enum):
    RECORDED = "recorded"
    SKIPPED = "skipped"
    FAILED = "failed"


class MetricsSink(ABC):
    """Receives counter increments tagged with low-cardinality labels."""

    @abstractmethod
    def increment(self, name: str, tags: Optional[Dict[str, str]] = None, value: int = 1) -> None:
        pass


class LoggingMetricsSink(MetricsSink):
    """Writes every metric event to the debug log."""

    def increment(self, name: str, tags: Optional[Dict[str, str]] = None, value: int = 1) -> None:
        logger.debug(f"metric {name} +{value} {tags or {}}")


class InMemoryMetricsSink(MetricsSink):
    """Thread-safe counters keyed by (name, sorted tags). Used by tests and the health view."""

    def __init__(self):
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str, tags: Optional[Dict[str, str]]) -> Tuple:
        return (name, tuple(sorted((tags or {}).items())))

    def increment(self, name: str, tags: Optional[Dict[str, str]] = None, value: int = 1) -> None:
        with self._lock:
            self._counts[self._key(name, tags)] += value

    def count(self, name: str, **tags: str) -> int:
        """Sum of all counters named ``name`` whose tags include ``tags``."""
        with self._lock:
            total = 0
            for (metric, metric_tags), value in self._counts.items():
                if metric != name:
                    continue
                tag_dict = dict(metric_tags)
                if all(tag_dict.get(k) == v for k, v in tags.items()):
                    total += value
            return total


def record(
    sink: Optional[MetricsSink],
    name: str,
    tags: Optional[Dict[str, str]] = None,
    value: int = 1
) -> MetricResult:
    """Record a metric, never letting telemetry failures escape into the pipeline."""
    if sink is None:
        return MetricResult.SKIPPED
    try:
        sink.increment(name, tags, value)
        return MetricResult.RECORDED
    except Exception as e:
        logger.warning(f"Failed to record metric {name}: {e}")
        return MetricResult.FAILED
