"""Monitoring and logging modules."""

from hodwatch.monitoring.logger import setup_logging
from hodwatch.monitoring.metrics import CycleMetrics, MetricsCollector

__all__ = ["setup_logging", "MetricsCollector", "CycleMetrics"]
