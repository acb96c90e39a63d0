"""Operational helpers."""

from tradecal.ops.logging import configure_logging
from tradecal.ops.metrics import InMemoryMetricsRecorder, MetricsRecorder, get_metrics_recorder

__all__ = ["configure_logging", "InMemoryMetricsRecorder", "MetricsRecorder", "get_metrics_recorder"]
