"""
Metrics Collection

Prometheus metrics for the tile decorator: decorated tiles by outcome,
decoration latency, attribute cache hits and attribute store fetches.

Each collector owns its own registry so several decorators (and test
cases) can live in one process without colliding on metric names.
"""

import threading
from typing import Dict, List, Optional, Union
from dataclasses import dataclass, field
from collections import deque
from datetime import datetime, timezone
import json

import structlog
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest


@dataclass
class MetricValue:
    """Represents a single metric value with metadata."""
    name: str
    value: Union[int, float]
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Metrics collection for the decoration pipeline.

    Values are forwarded to Prometheus and kept in a bounded in-memory
    buffer for JSON export and summaries.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, buffer_size: int = 10000):
        """
        Initialize the metrics collector.

        Args:
            registry: Prometheus registry; a private one is created if omitted
            buffer_size: Number of recent values kept for export
        """
        self.logger = structlog.get_logger(collector_type="MetricsCollector")
        self.registry = registry or CollectorRegistry()

        self.metrics_buffer = deque(maxlen=buffer_size)
        self.lock = threading.RLock()

        self.counters: Dict[str, Counter] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.gauges: Dict[str, Gauge] = {}

        self._create_metric(
            'counter', 'tiles_decorated_total',
            'Decoration requests by outcome',
            ['status']
        )
        self._create_metric(
            'histogram', 'tile_decoration_duration_seconds',
            'Duration of a full decoration request'
        )
        self._create_metric(
            'counter', 'attribute_cache_hits_total',
            'Join values served from the local attribute cache'
        )
        self._create_metric(
            'counter', 'attribute_store_fetches_total',
            'Join values fetched from the attribute store'
        )
        self._create_metric(
            'gauge', 'attribute_cache_entries',
            'Entries currently held by the attribute cache'
        )

    def _create_metric(
        self,
        metric_type: str,
        name: str,
        description: str,
        labels: List[str] = None
    ) -> None:
        labels = labels or []

        if metric_type == 'counter':
            self.counters[name] = Counter(name, description, labels, registry=self.registry)
        elif metric_type == 'histogram':
            self.histograms[name] = Histogram(name, description, labels, registry=self.registry)
        elif metric_type == 'gauge':
            self.gauges[name] = Gauge(name, description, labels, registry=self.registry)
        else:
            raise ValueError(f"Unsupported metric type: {metric_type}")

    def _buffer(self, name: str, value: Union[int, float], labels: Dict[str, str]) -> None:
        self.metrics_buffer.append(MetricValue(
            name=name,
            value=value,
            timestamp=datetime.now(timezone.utc),
            labels=labels
        ))

    def increment_counter(
        self,
        name: str,
        value: Union[int, float] = 1,
        labels: Dict[str, str] = None
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name
            value: Value to increment by
            labels: Metric labels
        """
        labels = labels or {}

        with self.lock:
            self._buffer(name, value, labels)

            counter = self.counters.get(name)
            if counter is None:
                self.logger.warning("Unknown counter", metric_name=name)
                return
            if labels:
                counter.labels(**labels).inc(value)
            else:
                counter.inc(value)

    def record_histogram(
        self,
        name: str,
        value: Union[int, float],
        labels: Dict[str, str] = None
    ) -> None:
        """
        Record a histogram metric.

        Args:
            name: Metric name
            value: Value to record
            labels: Metric labels
        """
        labels = labels or {}

        with self.lock:
            self._buffer(name, value, labels)

            histogram = self.histograms.get(name)
            if histogram is None:
                self.logger.warning("Unknown histogram", metric_name=name)
                return
            if labels:
                histogram.labels(**labels).observe(value)
            else:
                histogram.observe(value)

    def set_gauge(
        self,
        name: str,
        value: Union[int, float],
        labels: Dict[str, str] = None
    ) -> None:
        labels = labels or {}

        with self.lock:
            self._buffer(name, value, labels)

            gauge = self.gauges.get(name)
            if gauge is None:
                self.logger.warning("Unknown gauge", metric_name=name)
                return
            if labels:
                gauge.labels(**labels).set(value)
            else:
                gauge.set(value)

    def export_metrics(self, format: str = "json") -> str:
        """Export metrics as JSON or in the Prometheus text format."""
        if format.lower() == "prometheus":
            return generate_latest(self.registry).decode('utf-8')

        if format.lower() == "json":
            with self.lock:
                recent_metrics = [
                    {
                        'name': m.name,
                        'value': m.value,
                        'timestamp': m.timestamp.isoformat(),
                        'labels': m.labels
                    }
                    for m in self.metrics_buffer
                ]
            return json.dumps({
                'export_timestamp': datetime.now(timezone.utc).isoformat(),
                'metrics_count': len(recent_metrics),
                'metrics': recent_metrics
            }, indent=2)

        raise ValueError(f"Unsupported export format: {format}")
