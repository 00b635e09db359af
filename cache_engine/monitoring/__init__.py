"""Cache metrics collection."""

from .cache_metrics import MetricsCollector

__all__ = ["MetricsCollector"]
