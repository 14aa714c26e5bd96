"""Value objects for the runtime error analysis pipeline.

All types here are frozen dataclasses -- immutable, compared by value.
They represent captured failures, graph elements, analysis outputs, and
risk/validation verdicts that have no identity beyond their content.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .enums import (
    DependencyType,
    ErrorSeverity,
    ImpactScope,
    ImpactSeverity,
    RiskLevel,
    RollbackStatus,
    ValidationSeverity,
)

UNKNOWN_CATEGORY = "Unknown"


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be in [0, 1], got {value}")


# ---------------------------------------------------------------------------
# ErrorContext
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorContext:
    """Immutable snapshot of a runtime failure, captured at the failure site.

    ``component_graph`` maps each known component to the components it
    depends on; ``service_boundaries`` optionally maps components to the
    service that owns them.  The only sanctioned change after capture is
    attaching an analysis through :meth:`with_analysis`.
    """

    correlation_id: str
    service_name: str
    error_type: str
    message: str = ""
    operation_name: str = ""
    timestamp: float = field(default_factory=time.time)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    error_source: str = ""
    tags: tuple[str, ...] = ()
    additional_context: Mapping[str, Any] = field(default_factory=dict)
    component_graph: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    service_boundaries: Mapping[str, str] = field(default_factory=dict)
    stack_trace: str = ""
    analysis: str | None = None

    def __post_init__(self) -> None:
        # frozen=True blocks normal assignment; normalise collections in place
        object.__setattr__(self, "tags", tuple(self.tags or ()))
        object.__setattr__(
            self,
            "component_graph",
            {str(k): tuple(v or ()) for k, v in (self.component_graph or {}).items()},
        )
        if self.additional_context is None:
            object.__setattr__(self, "additional_context", {})
        if self.service_boundaries is None:
            object.__setattr__(self, "service_boundaries", {})

    @property
    def source_component(self) -> str:
        """Component the failure originated in, falling back to the service."""
        return self.error_source or self.service_name

    @property
    def category_hint(self) -> str:
        """Caller-supplied category, if any."""
        return str(self.additional_context.get("category", ""))

    def with_analysis(self, analysis: str) -> ErrorContext:
        """Return a copy of this context with *analysis* attached."""
        return replace(self, analysis=analysis)

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "service_name": self.service_name,
            "error_type": self.error_type,
            "message": self.message,
            "operation_name": self.operation_name,
            "timestamp": self.timestamp,
            "severity": self.severity.value,
            "error_source": self.error_source,
            "tags": list(self.tags),
            "additional_context": dict(self.additional_context),
            "component_graph": {k: list(v) for k, v in self.component_graph.items()},
            "service_boundaries": dict(self.service_boundaries),
            "stack_trace": self.stack_trace,
            "analysis": self.analysis,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ErrorContext:
        return cls(
            correlation_id=str(data.get("correlation_id", "")),
            service_name=str(data.get("service_name", "")),
            error_type=str(data.get("error_type", "")),
            message=str(data.get("message", "")),
            operation_name=str(data.get("operation_name", "")),
            timestamp=float(data.get("timestamp", time.time())),
            severity=ErrorSeverity(data.get("severity", ErrorSeverity.MEDIUM.value)),
            error_source=str(data.get("error_source", "")),
            tags=tuple(data.get("tags", ())),
            additional_context=dict(data.get("additional_context", {})),
            component_graph={
                k: tuple(v) for k, v in dict(data.get("component_graph", {})).items()
            },
            service_boundaries=dict(data.get("service_boundaries", {})),
            stack_trace=str(data.get("stack_trace", "")),
            analysis=data.get("analysis"),
        )


# ---------------------------------------------------------------------------
# Graph elements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DependencyNode:
    """A component in the dependency graph."""

    node_id: str
    component_id: str
    name: str = ""
    is_error_source: bool = False
    health_score: float = 1.0
    service_name: str = ""
    is_critical: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.node_id:
            raise ValueError("node_id must not be empty")
        _check_unit("health_score", self.health_score)


@dataclass(frozen=True)
class DependencyEdge:
    """Directed edge ``source -> target``: *source* depends on *target*."""

    source_id: str
    target_id: str
    dependency_type: DependencyType = DependencyType.RUNTIME
    weight: float = 1.0

    def __post_init__(self) -> None:
        _check_unit("weight", self.weight)


# ---------------------------------------------------------------------------
# Analysis outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImpactResult:
    """Impact of an error on a single reachable node."""

    node_id: str
    severity: ImpactSeverity
    scope: ImpactScope
    distance: int
    score: float


@dataclass(frozen=True)
class RelatedError:
    """Another recent error found near the current one in the graph."""

    node_id: str
    error_type: str
    relationship: str
    timestamp: float
    confidence: float
    correlation_id: str = ""


@dataclass(frozen=True)
class ImpactAnalysisResult:
    """Error-level view over a dependency graph.

    Holds one :class:`ImpactResult` per node reachable from the error source,
    most severe first, plus the related errors discovered nearby.
    """

    correlation_id: str
    source_node_ids: tuple[str, ...]
    impacts: tuple[ImpactResult, ...] = ()
    related_errors: tuple[RelatedError, ...] = ()

    @property
    def impacted_node_ids(self) -> tuple[str, ...]:
        return tuple(r.node_id for r in self.impacts)

    @property
    def total_impact(self) -> float:
        return float(sum(r.score for r in self.impacts))

    @property
    def max_severity(self) -> ImpactSeverity | None:
        if not self.impacts:
            return None
        return max(r.severity for r in self.impacts)

    def by_scope(self, scope: ImpactScope) -> tuple[ImpactResult, ...]:
        return tuple(r for r in self.impacts if r.scope == scope)

    def get(self, node_id: str) -> ImpactResult | None:
        for r in self.impacts:
            if r.node_id == node_id:
                return r
        return None


@dataclass(frozen=True)
class PotentialErrorSource:
    """Candidate root-cause node for an error."""

    node_id: str
    confidence: float
    severity: ImpactSeverity
    scope: ImpactScope
    evidence: Mapping[str, Any] = field(default_factory=dict)
    threatened_nodes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)


@dataclass(frozen=True)
class GraphMetrics:
    """Graph-level structural statistics."""

    node_count: int = 0
    edge_count: int = 0
    average_degree: float = 0.0
    density: float = 0.0
    clustering_coefficient: float = 0.0
    cycle_count: int = 0


@dataclass(frozen=True)
class GraphAnalysis:
    """Graph-level analysis of a dependency graph.

    Error-level impact results are computed as a view over the same graph
    (see :class:`ImpactAnalysisResult`).
    """

    metrics: GraphMetrics
    centrality: Mapping[str, float] = field(default_factory=dict)
    cycles: tuple[tuple[str, ...], ...] = ()
    critical_paths: tuple[tuple[str, ...], ...] = ()
    high_risk_nodes: tuple[str, ...] = ()


@dataclass(frozen=True)
class ErrorClassification:
    """Category assigned to an error by matching it against stored patterns."""

    category: str
    confidence: float
    severity: float = 0.0
    pattern_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_unit("confidence", self.confidence)

    @classmethod
    def unknown(cls, **metadata: Any) -> ErrorClassification:
        return cls(category=UNKNOWN_CATEGORY, confidence=0.0, metadata=metadata)

    @property
    def is_unknown(self) -> bool:
        return self.category == UNKNOWN_CATEGORY


# ---------------------------------------------------------------------------
# Remediation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemediationAction:
    """A single operation proposed to resolve an error.

    ``depends_on`` lists action ids that must appear earlier in the plan.
    ``affected_components`` declares components touched beyond the target.
    """

    name: str
    target_component: str
    action_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    parameters: Mapping[str, Any] = field(default_factory=dict)
    expected_effect: str = ""
    reversible: bool = True
    inverse_name: str | None = None
    depends_on: tuple[str, ...] = ()
    affected_components: tuple[str, ...] = ()
    max_retries: int | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("action name must not be empty")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

    def inverse(self) -> RemediationAction:
        """Return the action that undoes this one."""
        if not self.reversible or not self.inverse_name:
            raise ValueError(f"action {self.action_id!r} has no inverse")
        return replace(
            self,
            name=self.inverse_name,
            action_id=f"{self.action_id}:rollback",
            inverse_name=self.name,
            depends_on=(),
        )


@dataclass(frozen=True)
class RemediationPlan:
    """Ordered list of actions proposed for one error."""

    correlation_id: str
    actions: tuple[RemediationAction, ...] = ()
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    strategy: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def action_ids(self) -> tuple[str, ...]:
        return tuple(a.action_id for a in self.actions)

    @property
    def target_components(self) -> frozenset[str]:
        return frozenset(a.target_component for a in self.actions)

    def get_action(self, action_id: str) -> RemediationAction:
        for action in self.actions:
            if action.action_id == action_id:
                return action
        raise KeyError(f"Action '{action_id}' not in plan {self.plan_id}")

    def __len__(self) -> int:
        return len(self.actions)


@dataclass(frozen=True)
class RiskAssessment:
    """Risk verdict for one remediation action."""

    action_id: str
    risk_level: RiskLevel
    blast_radius: float = 0.0
    potential_issues: tuple[str, ...] = ()
    mitigation_steps: tuple[str, ...] = ()
    confidence: float = 0.5
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_unit("blast_radius", self.blast_radius)
        _check_unit("confidence", self.confidence)
        # lists are never None, possibly empty
        object.__setattr__(self, "potential_issues", tuple(self.potential_issues or ()))
        object.__setattr__(self, "mitigation_steps", tuple(self.mitigation_steps or ()))


@dataclass(frozen=True)
class ValidationIssue:
    """A single problem found while validating a context, plan or action."""

    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    component_id: str = ""
    code: str = ""
    action_id: str = ""


@dataclass(frozen=True)
class RemediationValidationResult:
    """Verdict of a pre- or post-execution validation."""

    is_valid: bool
    issues: tuple[ValidationIssue, ...] = ()
    requires_approval: bool = False
    approval_reason: str = ""

    @classmethod
    def from_issues(
        cls,
        issues: list[ValidationIssue],
        requires_approval: bool = False,
        approval_reason: str = "",
    ) -> RemediationValidationResult:
        """Valid exactly when no issue has ERROR severity."""
        valid = not any(i.severity == ValidationSeverity.ERROR for i in issues)
        return cls(
            is_valid=valid,
            issues=tuple(issues),
            requires_approval=requires_approval,
            approval_reason=approval_reason,
        )

    @property
    def errors(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == ValidationSeverity.ERROR)

    @property
    def warnings(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == ValidationSeverity.WARNING)

    def summary(self) -> str:
        if not self.issues:
            return "valid" if self.is_valid else "invalid"
        return "; ".join(i.message for i in self.issues)


@dataclass(frozen=True)
class ResourceSnapshot:
    """Process resource usage at a point in time."""

    timestamp: float = field(default_factory=time.time)
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    thread_count: int = 0


@dataclass(frozen=True)
class ActionRollbackOutcome:
    """Result of invoking the inverse of one completed action."""

    action_id: str
    inverse_name: str
    success: bool
    error: str = ""


@dataclass(frozen=True)
class RollbackRecord:
    """Record of unwinding one execution."""

    execution_id: str
    status: RollbackStatus
    outcomes: tuple[ActionRollbackOutcome, ...] = ()
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def rolled_back_action_ids(self) -> tuple[str, ...]:
        return tuple(o.action_id for o in self.outcomes if o.success)

    @property
    def errors(self) -> tuple[str, ...]:
        return tuple(o.error for o in self.outcomes if not o.success)
