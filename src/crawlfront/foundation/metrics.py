"""Metrics collection for job orchestration."""

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Deque

from .logging import get_logger


@dataclass
class MetricValue:
    """Individual metric value with timestamp."""
    value: float
    timestamp: datetime = field(default_factory=datetime.utcnow)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Summary statistics for a metric."""
    name: str
    count: int
    sum: float
    min: float
    max: float
    avg: float
    latest: float

    @classmethod
    def from_values(cls, name: str, values: List[MetricValue]) -> "MetricSummary":
        """Create summary from list of metric values."""
        if not values:
            return cls(name=name, count=0, sum=0.0, min=0.0, max=0.0, avg=0.0, latest=0.0)

        numeric_values = [v.value for v in values]
        return cls(
            name=name,
            count=len(values),
            sum=sum(numeric_values),
            min=min(numeric_values),
            max=max(numeric_values),
            avg=sum(numeric_values) / len(numeric_values),
            latest=values[-1].value,
        )


class MetricsCollector:
    """Collects counters and timings for one orchestration context."""

    def __init__(self, max_values_per_metric: int = 1000):
        self.logger = get_logger(__name__)
        self.max_values_per_metric = max_values_per_metric

        self._metrics: Dict[str, Deque[MetricValue]] = defaultdict(
            lambda: deque(maxlen=self.max_values_per_metric)
        )
        self._counters: Dict[str, float] = defaultdict(float)

        self._lock = Lock()

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Record a metric value."""
        metric_value = MetricValue(value=value, tags=tags or {})
        with self._lock:
            self._metrics[name].append(metric_value)

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Increment a counter metric."""
        with self._lock:
            self._counters[name] += value
            current = self._counters[name]
        self.record_metric(name, current, tags)

    def record_timing(
        self,
        name: str,
        duration: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Record a timing metric."""
        self.record_metric(f"{name}.duration", duration, tags)
        self.increment_counter(f"{name}.count", tags=tags)

    @contextmanager
    def timer(self, name: str, tags: Optional[Dict[str, str]] = None):
        """Context manager for timing operations.

        Usage:
            with metrics.timer("queue.fetch"):
                await engine.fetch(url, options)
        """
        start_time = time.time()
        try:
            yield
        finally:
            self.record_timing(name, time.time() - start_time, tags)

    def get_metric_summary(self, name: str) -> Optional[MetricSummary]:
        """Get summary statistics for a metric, or None if never recorded."""
        with self._lock:
            if name not in self._metrics:
                return None
            values = list(self._metrics[name])
        return MetricSummary.from_values(name, values)

    def get_counter_value(self, name: str) -> float:
        """Get current counter value."""
        with self._lock:
            return self._counters.get(name, 0.0)
