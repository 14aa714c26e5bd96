"""Service layer of the runtime error analysis pipeline.

Re-exports the pipeline components for convenient top-level access::

    from runtime_error_sage.services import (
        GraphBuilder, GraphAnalyzer, ErrorClassifier,
        RiskAssessmentService, RemediationValidator,
        RemediationExecutor, RollbackManager, RemediationPlanner,
        Orchestrator, build_orchestrator,
    )
"""

from runtime_error_sage.services.classification import ErrorClassifier
from runtime_error_sage.services.execution import ComponentLocks, RemediationExecutor
from runtime_error_sage.services.graph_analysis import GraphAnalyzer, severity_for
from runtime_error_sage.services.graph_builder import (
    ComponentDependency,
    GraphBuilder,
    StaticTopology,
    TopologyProvider,
)
from runtime_error_sage.services.llm_analysis import ErrorAnalysisOutput, LLMErrorAnalyzer
from runtime_error_sage.services.orchestrator import (
    Orchestrator,
    build_orchestrator,
    pipeline_error,
)
from runtime_error_sage.services.planning import RemediationPlanner
from runtime_error_sage.services.protocols import ApprovalGate
from runtime_error_sage.services.risk_assessment import RiskAssessmentService
from runtime_error_sage.services.rollback import RollbackManager
from runtime_error_sage.services.validation import RemediationValidator

__all__ = [
    # Graph
    "ComponentDependency",
    "GraphAnalyzer",
    "GraphBuilder",
    "StaticTopology",
    "TopologyProvider",
    "severity_for",
    # Classification
    "ErrorClassifier",
    "ErrorAnalysisOutput",
    "LLMErrorAnalyzer",
    # Planning and risk
    "RemediationPlanner",
    "RiskAssessmentService",
    "RemediationValidator",
    # Execution
    "ApprovalGate",
    "ComponentLocks",
    "RemediationExecutor",
    "RollbackManager",
    # Pipeline
    "Orchestrator",
    "build_orchestrator",
    "pipeline_error",
]
