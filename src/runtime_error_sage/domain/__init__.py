"""Domain layer for the runtime error analysis pipeline.

Re-exports all public domain types so that consumers can write::

    from runtime_error_sage.domain import ErrorContext, DependencyGraph, RiskLevel
"""

# -- Enumerations -------------------------------------------------------------
from .enums import (
    AggregationType,
    ConnectionState,
    DependencyType,
    ErrorKind,
    ErrorSeverity,
    ImpactScope,
    ImpactSeverity,
    RemediationStatus,
    RiskLevel,
    RollbackStatus,
    ValidationSeverity,
)

# -- Value Objects ------------------------------------------------------------
from .values import (
    UNKNOWN_CATEGORY,
    ActionRollbackOutcome,
    DependencyEdge,
    DependencyNode,
    ErrorClassification,
    ErrorContext,
    GraphAnalysis,
    GraphMetrics,
    ImpactAnalysisResult,
    ImpactResult,
    PotentialErrorSource,
    RelatedError,
    RemediationAction,
    RemediationPlan,
    RemediationValidationResult,
    ResourceSnapshot,
    RiskAssessment,
    RollbackRecord,
    ValidationIssue,
)

# -- Entities -----------------------------------------------------------------
from .entities import (
    ErrorPattern,
    RemediationActionExecution,
    RemediationExecution,
    RemediationMetrics,
    tokenize,
)

# -- Aggregates ---------------------------------------------------------------
from .aggregates import DependencyGraph

# -- Results ------------------------------------------------------------------
from .results import (
    AnalysisResult,
    ContextValidationResult,
    PipelineError,
    RemediationResult,
)

# -- Exceptions ---------------------------------------------------------------
from .exceptions import (
    ClassificationError,
    ExecutionError,
    GraphConstructionError,
    InvalidTransitionError,
    OperationCancelledError,
    RollbackError,
    RuntimeErrorSageError,
    StoreConnectivityError,
    ValidationFailure,
)

__all__ = [
    # enums
    "AggregationType",
    "ConnectionState",
    "DependencyType",
    "ErrorKind",
    "ErrorSeverity",
    "ImpactScope",
    "ImpactSeverity",
    "RemediationStatus",
    "RiskLevel",
    "RollbackStatus",
    "ValidationSeverity",
    # values
    "UNKNOWN_CATEGORY",
    "ActionRollbackOutcome",
    "DependencyEdge",
    "DependencyNode",
    "ErrorClassification",
    "ErrorContext",
    "GraphAnalysis",
    "GraphMetrics",
    "ImpactAnalysisResult",
    "ImpactResult",
    "PotentialErrorSource",
    "RelatedError",
    "RemediationAction",
    "RemediationPlan",
    "RemediationValidationResult",
    "ResourceSnapshot",
    "RiskAssessment",
    "RollbackRecord",
    "ValidationIssue",
    # entities
    "ErrorPattern",
    "RemediationActionExecution",
    "RemediationExecution",
    "RemediationMetrics",
    "tokenize",
    # aggregates
    "DependencyGraph",
    # results
    "AnalysisResult",
    "ContextValidationResult",
    "PipelineError",
    "RemediationResult",
    # exceptions
    "ClassificationError",
    "ExecutionError",
    "GraphConstructionError",
    "InvalidTransitionError",
    "OperationCancelledError",
    "RollbackError",
    "RuntimeErrorSageError",
    "StoreConnectivityError",
    "ValidationFailure",
]
