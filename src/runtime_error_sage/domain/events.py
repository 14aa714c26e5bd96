"""Domain events for the runtime error analysis pipeline.

Every event is a frozen dataclass inheriting from ``DomainEvent``.  Pipeline
components publish events on the :class:`EventBus`; listeners (the execution
event collector, the console, tests) react.

All events carry a ``timestamp`` and a ``source_id`` identifying the
originating component.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .enums import ConnectionState, RemediationStatus, RiskLevel, RollbackStatus

# ---------------------------------------------------------------------------
# Base event
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    timestamp: float = field(default_factory=time.time)
    source_id: str = ""


# ---------------------------------------------------------------------------
# Analysis events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GraphBuilt(DomainEvent):
    """A dependency graph was constructed for an error."""

    correlation_id: str = ""
    root_component: str = ""
    node_count: int = 0
    edge_count: int = 0


@dataclass(frozen=True)
class AnalysisCompleted(DomainEvent):
    """An error was analyzed and classified."""

    correlation_id: str = ""
    category: str = ""
    confidence: float = 0.0
    impacted_nodes: int = 0
    degraded: bool = False


@dataclass(frozen=True)
class RiskAssessed(DomainEvent):
    """A remediation action received a risk verdict."""

    correlation_id: str = ""
    action_id: str = ""
    risk_level: RiskLevel = RiskLevel.NONE


# ---------------------------------------------------------------------------
# Execution events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActionStatusChanged(DomainEvent):
    """A remediation action moved between states."""

    execution_id: str = ""
    correlation_id: str = ""
    action_id: str = ""
    previous: RemediationStatus = RemediationStatus.PENDING
    current: RemediationStatus = RemediationStatus.PENDING
    error: str = ""


@dataclass(frozen=True)
class RemediationCompleted(DomainEvent):
    """An execution reached a terminal status."""

    execution_id: str = ""
    correlation_id: str = ""
    status: RemediationStatus = RemediationStatus.COMPLETED
    completed_steps: int = 0
    total_steps: int = 0


@dataclass(frozen=True)
class RollbackCompleted(DomainEvent):
    """Completed actions of a halted execution were unwound."""

    execution_id: str = ""
    correlation_id: str = ""
    status: RollbackStatus = RollbackStatus.NOT_REQUIRED
    rolled_back: int = 0
    failed: int = 0


# ---------------------------------------------------------------------------
# Pattern store events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PatternSaved(DomainEvent):
    """An error pattern was written to the store."""

    service_name: str = ""
    pattern_id: str = ""


@dataclass(frozen=True)
class PatternDeleted(DomainEvent):
    """An error pattern was removed from the store."""

    service_name: str = ""
    pattern_id: str = ""
    expired: bool = False


@dataclass(frozen=True)
class StoreStateChanged(DomainEvent):
    """The pattern store's connection state changed."""

    previous: ConnectionState = ConnectionState.DISCONNECTED
    current: ConnectionState = ConnectionState.DISCONNECTED
