"""Measurement layer for the runtime error analysis pipeline.

Public API
----------
- :class:`MetricsCollector` -- per-component samples, reliability and health
- :class:`ExecutionEventCollector` -- subscribes to domain events and builds
  a :class:`RunLog` per correlation id
"""

from runtime_error_sage.measurement.collector import (
    ExecutionEventCollector,
    RunLog,
    RunLogEntry,
)
from runtime_error_sage.measurement.health import (
    ErrorObservation,
    MetricSample,
    MetricsCollector,
    ResourceProbe,
    default_resource_probe,
)

__all__ = [
    # Collector
    "ExecutionEventCollector",
    "RunLog",
    "RunLogEntry",
    # Health
    "ErrorObservation",
    "MetricSample",
    "MetricsCollector",
    "ResourceProbe",
    "default_resource_probe",
]
