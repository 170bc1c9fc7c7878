"""
Monitoring Module

Prometheus metrics for the decoration pipeline.
"""

from .metrics import MetricsCollector, MetricValue

__all__ = [
    "MetricsCollector",
    "MetricValue"
]
