"""
Monitoring utilities for modguard.
"""

from modguard.monitoring.metrics import InMemoryMetricsCollector, MetricsSnapshot

__all__ = [
    "InMemoryMetricsCollector",
    "MetricsSnapshot",
]
