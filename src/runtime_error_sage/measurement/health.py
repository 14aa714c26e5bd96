"""Per-component metrics and health scoring.

The :class:`MetricsCollector` keeps a bounded window of samples for every
``(component, metric)`` pair, request outcomes per component, and a short
history of observed errors.  Health is derived as follows:

1. an explicitly set health score wins; otherwise
2. the request success ratio (reliability) when requests were recorded;
   otherwise
3. the caller-supplied default.

The result is then multiplied by ``degradation_factor`` for each of
``cpu_usage``, ``memory_usage`` and ``disk_usage`` whose latest sample
exceeds its configured threshold.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import numpy as np

from runtime_error_sage.domain.enums import AggregationType
from runtime_error_sage.domain.values import ResourceSnapshot
from runtime_error_sage.infrastructure.config import MetricsConfig

logger = logging.getLogger(__name__)

CPU_USAGE = "cpu_usage"
MEMORY_USAGE = "memory_usage"
DISK_USAGE = "disk_usage"

ResourceProbe = Callable[[], ResourceSnapshot]


def default_resource_probe() -> ResourceSnapshot:
    """Snapshot built from interpreter counters only.

    ``cpu_usage`` is the process CPU time in seconds; memory is not sampled.
    """
    return ResourceSnapshot(
        timestamp=time.time(),
        cpu_usage=time.process_time(),
        memory_usage=0.0,
        thread_count=threading.active_count(),
    )


@dataclass(frozen=True)
class MetricSample:
    """One recorded value of a metric."""

    value: float
    timestamp: float


@dataclass(frozen=True)
class ErrorObservation:
    """An error seen on a component, kept for related-error search."""

    component_id: str
    error_type: str
    timestamp: float
    correlation_id: str = ""
    tags: tuple[str, ...] = ()


class MetricsCollector:
    """Thread-safe store of component metrics and derived health.

    Parameters
    ----------
    config:
        Window size, thresholds and error retention.
    resource_probe:
        Callable returning a :class:`ResourceSnapshot`; defaults to
        :func:`default_resource_probe`.
    clock:
        Wall clock used to timestamp samples.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        resource_probe: ResourceProbe | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or MetricsConfig()
        self._config.validate()
        self._probe = resource_probe or default_resource_probe
        self._clock = clock
        self._lock = threading.Lock()
        self._series: dict[tuple[str, str], deque[MetricSample]] = {}
        self._health: dict[str, float] = {}
        self._requests: dict[str, list[int]] = {}
        self._errors: deque[ErrorObservation] = deque()

    @property
    def config(self) -> MetricsConfig:
        return self._config

    # -- recording ------------------------------------------------------------

    def record_metric(
        self,
        component_id: str,
        name: str,
        value: float,
        timestamp: float | None = None,
    ) -> None:
        """Append one sample to the ``(component_id, name)`` window."""
        sample = MetricSample(float(value), timestamp if timestamp is not None else self._clock())
        with self._lock:
            series = self._series.get((component_id, name))
            if series is None:
                series = deque(maxlen=self._config.window_size)
                self._series[(component_id, name)] = series
            series.append(sample)

    def record_request(self, component_id: str, success: bool, latency: float | None = None) -> None:
        """Count one request against *component_id*'s reliability."""
        with self._lock:
            counts = self._requests.setdefault(component_id, [0, 0])
            counts[0 if success else 1] += 1
        if latency is not None:
            self.record_metric(component_id, "latency", latency)

    def set_health(self, component_id: str, score: float) -> None:
        """Pin *component_id*'s base health to *score*."""
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"health score must be in [0, 1], got {score}")
        with self._lock:
            self._health[component_id] = float(score)

    def record_error(
        self,
        component_id: str,
        error_type: str,
        correlation_id: str = "",
        tags: Iterable[str] = (),
        timestamp: float | None = None,
    ) -> None:
        """Remember an error on *component_id* for related-error search."""
        obs = ErrorObservation(
            component_id=component_id,
            error_type=error_type,
            timestamp=timestamp if timestamp is not None else self._clock(),
            correlation_id=correlation_id,
            tags=tuple(tags),
        )
        with self._lock:
            self._errors.append(obs)
            self._prune_errors()

    # -- queries ----------------------------------------------------------------

    def knows(self, component_id: str) -> bool:
        """``True`` when any health signal was recorded for *component_id*."""
        with self._lock:
            return component_id in self._health or component_id in self._requests or any(
                c == component_id for c, _ in self._series
            )

    def get_reliability(self, component_id: str) -> float:
        """Request success ratio; ``1.0`` without recorded requests."""
        with self._lock:
            ok, failed = self._requests.get(component_id, (0, 0))
        total = ok + failed
        return ok / total if total else 1.0

    def get_health(self, component_id: str, default: float = 1.0) -> float:
        """Health score in [0, 1] (see module docstring for the derivation)."""
        with self._lock:
            if component_id in self._health:
                base = self._health[component_id]
            elif component_id in self._requests:
                ok, failed = self._requests[component_id]
                base = ok / (ok + failed) if ok + failed else default
            else:
                base = default
            latest = {
                name: series[-1].value
                for (cid, name), series in self._series.items()
                if cid == component_id and series
            }
        cfg = self._config
        for name, threshold in (
            (CPU_USAGE, cfg.cpu_threshold),
            (MEMORY_USAGE, cfg.memory_threshold),
            (DISK_USAGE, cfg.disk_threshold),
        ):
            if latest.get(name, 0.0) > threshold:
                base *= cfg.degradation_factor
        return float(min(1.0, max(0.0, base)))

    def get_metrics(self, component_id: str) -> dict[str, float]:
        """Latest value of every metric recorded for *component_id*."""
        with self._lock:
            return {
                name: series[-1].value
                for (cid, name), series in self._series.items()
                if cid == component_id and series
            }

    def aggregate(
        self,
        component_id: str,
        name: str,
        aggregation: AggregationType = AggregationType.AVERAGE,
        window: float | None = None,
    ) -> float:
        """Reduce the samples of one metric, optionally over the last *window* seconds.

        Returns ``0.0`` when no sample qualifies.
        """
        with self._lock:
            series = list(self._series.get((component_id, name), ()))
        if window is not None:
            cutoff = self._clock() - window
            series = [s for s in series if s.timestamp >= cutoff]
        if aggregation == AggregationType.COUNT:
            return float(len(series))
        if not series:
            return 0.0
        values = np.fromiter((s.value for s in series), dtype=float, count=len(series))
        if aggregation == AggregationType.SUM:
            return float(np.sum(values))
        if aggregation == AggregationType.MIN:
            return float(np.min(values))
        if aggregation == AggregationType.MAX:
            return float(np.max(values))
        return float(np.mean(values))

    def recent_errors(
        self,
        component_ids: Iterable[str] | None = None,
        since: float | None = None,
    ) -> list[ErrorObservation]:
        """Errors still inside the retention window, newest first."""
        wanted = None if component_ids is None else set(component_ids)
        with self._lock:
            self._prune_errors()
            errors = list(self._errors)
        return sorted(
            (
                e for e in errors
                if (wanted is None or e.component_id in wanted)
                and (since is None or e.timestamp >= since)
            ),
            key=lambda e: e.timestamp,
            reverse=True,
        )

    def components(self) -> list[str]:
        with self._lock:
            known = set(self._health) | set(self._requests) | {c for c, _ in self._series}
        return sorted(known)

    def take_snapshot(self) -> ResourceSnapshot:
        """Resource snapshot from the configured probe."""
        try:
            return self._probe()
        except Exception:
            logger.exception("Resource probe failed; recording an empty snapshot")
            return ResourceSnapshot(timestamp=self._clock())

    def reset(self) -> None:
        with self._lock:
            self._series.clear()
            self._health.clear()
            self._requests.clear()
            self._errors.clear()

    def _prune_errors(self) -> None:
        # caller holds self._lock
        cutoff = self._clock() - self._config.error_window
        while self._errors and self._errors[0].timestamp < cutoff:
            self._errors.popleft()
