"""Capability interfaces of the pipeline components.

The orchestrator depends on these protocols rather than on the concrete
services, which are wired explicitly by :func:`build_orchestrator` (or by
the caller).  Each protocol lists only what the orchestrator uses.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Protocol

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.entities import ErrorPattern, RemediationExecution
from runtime_error_sage.domain.results import ContextValidationResult
from runtime_error_sage.domain.values import (
    ErrorClassification,
    ErrorContext,
    GraphAnalysis,
    ImpactAnalysisResult,
    PotentialErrorSource,
    RemediationPlan,
    RemediationValidationResult,
    RiskAssessment,
    RollbackRecord,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.measurement.health import ErrorObservation

# Receives the plan and its validation verdict; returns True to approve.
ApprovalGate = Callable[[RemediationPlan, RemediationValidationResult, CancellationToken], bool]


class GraphBuilding(Protocol):
    def build(
        self, context: ErrorContext, cancel_token: CancellationToken | None = None
    ) -> DependencyGraph: ...


class GraphAnalyzing(Protocol):
    def analyze_impact(
        self,
        context: ErrorContext,
        graph: DependencyGraph,
        history: Iterable[ErrorObservation] | None = None,
    ) -> ImpactAnalysisResult: ...

    def find_potential_sources(
        self,
        context: ErrorContext,
        graph: DependencyGraph,
        probabilities: Mapping[str, float] | None = None,
    ) -> tuple[PotentialErrorSource, ...]: ...

    def analyze_graph(
        self, graph: DependencyGraph, probabilities: Mapping[str, float] | None = None
    ) -> GraphAnalysis: ...


class ErrorClassifying(Protocol):
    def classify(
        self, context: ErrorContext, cancel_token: CancellationToken | None = None
    ) -> ErrorClassification: ...

    def error_probabilities(
        self,
        graph: DependencyGraph,
        patterns: Iterable[ErrorPattern] = (),
        health: Mapping[str, float] | None = None,
    ) -> dict[str, float]: ...


class RiskAssessing(Protocol):
    def assess_plan(
        self,
        plan: RemediationPlan,
        graph: DependencyGraph,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[RiskAssessment, ...]: ...


class RemediationValidating(Protocol):
    def validate_context(self, context: ErrorContext) -> ContextValidationResult: ...

    def validate_plan(
        self,
        plan: RemediationPlan,
        graph: DependencyGraph,
        assessments: Sequence[RiskAssessment] = (),
    ) -> RemediationValidationResult: ...


class RemediationExecuting(Protocol):
    def execute(
        self,
        plan: RemediationPlan,
        validation: RemediationValidationResult | None = None,
        approval_gate: ApprovalGate | None = None,
        cancel_token: CancellationToken | None = None,
        execution_id: str | None = None,
    ) -> RemediationExecution: ...

    def was_denied(self, execution_id: str) -> bool: ...


class RollingBack(Protocol):
    def rollback(self, execution: RemediationExecution, plan: RemediationPlan) -> RollbackRecord: ...

    def is_rolling_back(self, execution_id: str) -> bool: ...

    def close(self) -> None: ...


class PatternStoring(Protocol):
    def get_pattern(
        self,
        pattern_id: str,
        service_name: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ErrorPattern | None: ...

    def save_pattern(
        self, pattern: ErrorPattern, cancel_token: CancellationToken | None = None
    ) -> None: ...

    def get_patterns_by_service(
        self, service_name: str, cancel_token: CancellationToken | None = None
    ) -> list[ErrorPattern]: ...
