"""Runtime Error Sage.

Analyzes runtime errors against a live dependency topology, classifies them
against learned error patterns, and runs risk-gated remediation plans with
validation and best-effort rollback.
"""

__version__ = "0.3.0"

from runtime_error_sage.domain import (
    AnalysisResult,
    ErrorContext,
    RemediationResult,
)
from runtime_error_sage.services.orchestrator import Orchestrator, build_orchestrator

__all__ = [
    "AnalysisResult",
    "ErrorContext",
    "Orchestrator",
    "RemediationResult",
    "build_orchestrator",
]
