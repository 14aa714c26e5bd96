"""Event collector -- subscribes to domain events and builds run logs.

The :class:`ExecutionEventCollector` listens to the :class:`EventBus` and
accumulates one :class:`RunLog` per correlation id: the analysis verdict,
every action status change, the final remediation status and the rollback
outcome.  The CLI renders these logs and tests assert on them.

The collector is purely passive -- it never publishes events itself.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from runtime_error_sage.domain.enums import RemediationStatus, RollbackStatus
from runtime_error_sage.domain.events import (
    ActionStatusChanged,
    AnalysisCompleted,
    DomainEvent,
    RemediationCompleted,
    RollbackCompleted,
)
from runtime_error_sage.infrastructure.event_bus import EventBus


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class RunLogEntry:
    """One action status change."""

    timestamp: float
    action_id: str
    previous: RemediationStatus
    current: RemediationStatus
    error: str = ""


@dataclass
class RunLog:
    """Everything observed for one correlation id."""

    correlation_id: str
    category: str = ""
    confidence: float = 0.0
    degraded: bool = False
    entries: list[RunLogEntry] = field(default_factory=list)
    execution_ids: list[str] = field(default_factory=list)
    final_status: RemediationStatus | None = None
    rollback_status: RollbackStatus | None = None

    @property
    def num_transitions(self) -> int:
        return len(self.entries)

    def transitions_for(self, action_id: str) -> list[RemediationStatus]:
        """Statuses *action_id* moved through, in order."""
        return [e.current for e in self.entries if e.action_id == action_id]

    def actions_with(self, status: RemediationStatus) -> list[str]:
        """Action ids whose latest status is *status*."""
        latest: dict[str, RemediationStatus] = {}
        for e in self.entries:
            latest[e.action_id] = e.current
        return [aid for aid, st in latest.items() if st == status]


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------

class ExecutionEventCollector:
    """Subscribes to the event bus and builds :class:`RunLog` objects.

    Usage::

        bus = EventBus()
        collector = ExecutionEventCollector(bus)
        # ... run the pipeline ...
        log = collector.get_log("corr-1")
    """

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus
        self._lock = threading.Lock()
        self._logs: dict[str, RunLog] = {}
        self._by_execution: dict[str, str] = {}
        self._subscribe()

    # -- subscription ---------------------------------------------------------

    def _subscribe(self) -> None:
        self._event_bus.subscribe(AnalysisCompleted, self._on_analysis)
        self._event_bus.subscribe(ActionStatusChanged, self._on_action)
        self._event_bus.subscribe(RemediationCompleted, self._on_completed)
        self._event_bus.subscribe(RollbackCompleted, self._on_rollback)

    def close(self) -> None:
        """Detach from the event bus."""
        self._event_bus.unsubscribe(AnalysisCompleted, self._on_analysis)
        self._event_bus.unsubscribe(ActionStatusChanged, self._on_action)
        self._event_bus.unsubscribe(RemediationCompleted, self._on_completed)
        self._event_bus.unsubscribe(RollbackCompleted, self._on_rollback)

    # -- internal helpers -----------------------------------------------------

    def _ensure_log(self, correlation_id: str) -> RunLog:
        # caller holds self._lock
        log = self._logs.get(correlation_id)
        if log is None:
            log = RunLog(correlation_id=correlation_id)
            self._logs[correlation_id] = log
        return log

    def _track(self, correlation_id: str, execution_id: str) -> RunLog:
        log = self._ensure_log(correlation_id)
        if execution_id and execution_id not in self._by_execution:
            self._by_execution[execution_id] = correlation_id
            log.execution_ids.append(execution_id)
        return log

    # -- event handlers -------------------------------------------------------

    def _on_analysis(self, event: DomainEvent) -> None:
        assert isinstance(event, AnalysisCompleted)
        with self._lock:
            log = self._ensure_log(event.correlation_id)
            log.category = event.category
            log.confidence = event.confidence
            log.degraded = event.degraded

    def _on_action(self, event: DomainEvent) -> None:
        assert isinstance(event, ActionStatusChanged)
        with self._lock:
            log = self._track(event.correlation_id, event.execution_id)
            log.entries.append(RunLogEntry(
                timestamp=event.timestamp,
                action_id=event.action_id,
                previous=event.previous,
                current=event.current,
                error=event.error,
            ))

    def _on_completed(self, event: DomainEvent) -> None:
        assert isinstance(event, RemediationCompleted)
        with self._lock:
            log = self._track(event.correlation_id, event.execution_id)
            log.final_status = event.status

    def _on_rollback(self, event: DomainEvent) -> None:
        assert isinstance(event, RollbackCompleted)
        with self._lock:
            correlation_id = self._by_execution.get(event.execution_id)
            if correlation_id is None:
                return
            self._logs[correlation_id].rollback_status = event.status

    # -- public query API -----------------------------------------------------

    def get_log(self, correlation_id: str) -> RunLog | None:
        with self._lock:
            return self._logs.get(correlation_id)

    def get_all_logs(self) -> dict[str, RunLog]:
        with self._lock:
            return dict(self._logs)

    def clear(self) -> None:
        with self._lock:
            self._logs.clear()
            self._by_execution.clear()
