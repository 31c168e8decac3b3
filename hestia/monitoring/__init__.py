"""Drift detection, health aggregation and metrics."""

from .drift_monitor import DriftMonitor, DriftResult
from .health_check import HealthCheckService, HealthStatus
from .metrics import InMemoryMetricsEmitter

__all__ = [
    "DriftMonitor",
    "DriftResult",
    "HealthCheckService",
    "HealthStatus",
    "InMemoryMetricsEmitter",
]
