"""Structured results returned by the orchestrator's inbound operations.

Failures inside the pipeline never escape as exceptions; they are carried in
a :class:`PipelineError` whose :class:`ErrorKind` lets the caller decide
whether to re-raise the original exception.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .aggregates import DependencyGraph
from .entities import RemediationExecution
from .enums import ErrorKind, RemediationStatus, RiskLevel, ValidationSeverity
from .values import (
    ErrorClassification,
    ErrorContext,
    GraphAnalysis,
    ImpactAnalysisResult,
    PotentialErrorSource,
    RemediationPlan,
    RemediationValidationResult,
    RiskAssessment,
    ValidationIssue,
)


@dataclass(frozen=True)
class PipelineError:
    """Why a pipeline operation did not succeed."""

    kind: ErrorKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContextValidationResult:
    """Sanity verdict on an inbound :class:`ErrorContext`."""

    is_valid: bool
    issues: tuple[ValidationIssue, ...] = ()

    @property
    def errors(self) -> tuple[ValidationIssue, ...]:
        return tuple(i for i in self.issues if i.severity == ValidationSeverity.ERROR)


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of ``Orchestrator.analyze_error``.

    ``degraded`` is set when the language-model analysis was unavailable and
    classification fell back to stored patterns only.
    """

    correlation_id: str
    context: ErrorContext
    graph: DependencyGraph | None = None
    impact: ImpactAnalysisResult | None = None
    classification: ErrorClassification | None = None
    potential_sources: tuple[PotentialErrorSource, ...] = ()
    graph_analysis: GraphAnalysis | None = None
    llm_analysis: str | None = None
    suggested_actions: tuple[str, ...] = ()
    pattern_id: str | None = None
    degraded: bool = False
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def root_cause(self) -> PotentialErrorSource | None:
        return self.potential_sources[0] if self.potential_sources else None


@dataclass(frozen=True)
class RemediationResult:
    """Outcome of ``Orchestrator.remediate_error``."""

    correlation_id: str
    analysis: AnalysisResult | None = None
    plan: RemediationPlan | None = None
    assessments: tuple[RiskAssessment, ...] = ()
    validation: RemediationValidationResult | None = None
    execution: RemediationExecution | None = None
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and (
            self.execution is not None
            and self.execution.status == RemediationStatus.COMPLETED
        )

    @property
    def status(self) -> RemediationStatus | None:
        return None if self.execution is None else self.execution.status

    @property
    def aggregate_risk(self) -> RiskLevel:
        if not self.assessments:
            return RiskLevel.NONE
        return max(a.risk_level for a in self.assessments)
