"""Domain enumerations for the runtime error analysis pipeline.

These enums capture the fixed vocabularies used across the domain layer:
dependency kinds, impact severities and scopes, risk levels, remediation and
rollback statuses, pattern-store connection states, and the error kinds
carried by pipeline results.

Enums deriving from ``RankedEnum`` are ordered by declaration, so
``RiskLevel.HIGH > RiskLevel.MEDIUM`` holds and ``max()`` works as expected.
"""

from enum import Enum


class RankedEnum(Enum):
    """Enum whose members compare by declaration order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.rank < other.rank  # type: ignore[attr-defined]

    def __le__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.rank <= other.rank  # type: ignore[attr-defined]

    def __gt__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.rank > other.rank  # type: ignore[attr-defined]

    def __ge__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.rank >= other.rank  # type: ignore[attr-defined]


class DependencyType(Enum):
    """Kind of relationship carried by a dependency edge."""

    RUNTIME = "runtime"
    COMPILE = "compile"
    DEVELOPMENT = "development"
    TEST = "test"


class ErrorSeverity(RankedEnum):
    """Severity reported at the failure site."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def score(self) -> float:
        """Numeric severity: 0.25 (LOW) up to 1.0 (CRITICAL)."""
        return (self.rank + 1) / 4


class ImpactSeverity(RankedEnum):
    """How badly a node is affected by a propagating error."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ImpactScope(RankedEnum):
    """How far an error has travelled from its source."""

    LOCAL = "local"  # the source itself
    COMPONENT = "component"  # direct neighbour
    SERVICE = "service"  # two or more hops inside one service
    SYSTEM = "system"  # crossed a declared service boundary


class RiskLevel(RankedEnum):
    """Discrete ranking of how dangerous a remediation action is."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RemediationStatus(Enum):
    """Lifecycle status of a remediation action or a whole execution."""

    PENDING = "pending"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    RemediationStatus.COMPLETED,
    RemediationStatus.FAILED,
    RemediationStatus.CANCELLED,
    RemediationStatus.SKIPPED,
})


class RollbackStatus(Enum):
    """Outcome of unwinding an execution."""

    NOT_REQUIRED = "not_required"
    FULLY_ROLLED_BACK = "fully_rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class ConnectionState(Enum):
    """Connection state of the pattern store client."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ValidationSeverity(Enum):
    """Severity of a single validation issue."""

    WARNING = "warning"
    ERROR = "error"


class AggregationType(Enum):
    """Reduction applied to a window of metric samples."""

    SUM = "sum"
    AVERAGE = "average"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


class ErrorKind(Enum):
    """Error kinds carried by structured pipeline results."""

    INVALID_CONTEXT = "invalid_context"
    GRAPH_CONSTRUCTION = "graph_construction"
    CLASSIFICATION = "classification"
    VALIDATION = "validation"
    APPROVAL_REQUIRED = "approval_required"
    EXECUTION = "execution"
    ROLLBACK = "rollback"
    STORE_CONNECTIVITY = "store_connectivity"
    CANCELLED = "cancelled"
