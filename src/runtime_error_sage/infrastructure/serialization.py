"""Serialization utilities for pipeline results.

Provides JSON-ready ``dict`` views of analysis and remediation results, plus
loaders for error contexts captured as JSON documents.  Every ``*_to_dict``
output is JSON-serializable (no enums, no tuples of dataclasses, no numpy).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any

from runtime_error_sage.domain.events import DomainEvent
from runtime_error_sage.domain.results import AnalysisResult, PipelineError, RemediationResult
from runtime_error_sage.domain.values import (
    ErrorClassification,
    ErrorContext,
    GraphAnalysis,
    ImpactAnalysisResult,
    PotentialErrorSource,
    RemediationPlan,
    RemediationValidationResult,
    RiskAssessment,
)

logger = logging.getLogger(__name__)


# =========================================================================== #
#  Generic helpers                                                             #
# =========================================================================== #

def _enum_val(v: Any) -> Any:
    """Return the ``.value`` if *v* is an enum member, else *v* unchanged."""
    if hasattr(v, "value"):
        return v.value
    return v


def error_to_dict(error: PipelineError | None) -> dict[str, Any] | None:
    if error is None:
        return None
    return {"kind": error.kind.value, "message": error.message, "details": dict(error.details)}


# =========================================================================== #
#  Analysis                                                                    #
# =========================================================================== #

def classification_to_dict(c: ErrorClassification | None) -> dict[str, Any] | None:
    if c is None:
        return None
    return {
        "category": c.category,
        "confidence": c.confidence,
        "severity": c.severity,
        "pattern_id": c.pattern_id,
        "metadata": dict(c.metadata),
    }


def impact_to_dict(impact: ImpactAnalysisResult | None) -> dict[str, Any] | None:
    if impact is None:
        return None
    return {
        "source_node_ids": list(impact.source_node_ids),
        "total_impact": impact.total_impact,
        "max_severity": _enum_val(impact.max_severity),
        "impacts": [
            {
                "node_id": r.node_id,
                "severity": r.severity.value,
                "scope": r.scope.value,
                "distance": r.distance,
                "score": r.score,
            }
            for r in impact.impacts
        ],
        "related_errors": [
            {
                "node_id": e.node_id,
                "error_type": e.error_type,
                "relationship": e.relationship,
                "timestamp": e.timestamp,
                "confidence": e.confidence,
                "correlation_id": e.correlation_id,
            }
            for e in impact.related_errors
        ],
    }


def source_to_dict(s: PotentialErrorSource) -> dict[str, Any]:
    return {
        "node_id": s.node_id,
        "confidence": s.confidence,
        "severity": s.severity.value,
        "scope": s.scope.value,
        "evidence": dict(s.evidence),
        "threatened_nodes": list(s.threatened_nodes),
    }


def graph_analysis_to_dict(g: GraphAnalysis | None) -> dict[str, Any] | None:
    if g is None:
        return None
    m = g.metrics
    return {
        "metrics": {
            "node_count": m.node_count,
            "edge_count": m.edge_count,
            "average_degree": m.average_degree,
            "density": m.density,
            "clustering_coefficient": m.clustering_coefficient,
            "cycle_count": m.cycle_count,
        },
        "centrality": dict(g.centrality),
        "cycles": [list(c) for c in g.cycles],
        "critical_paths": [list(p) for p in g.critical_paths],
        "high_risk_nodes": list(g.high_risk_nodes),
    }


def analysis_to_dict(result: AnalysisResult) -> dict[str, Any]:
    """Serialize an :class:`AnalysisResult` into a JSON-compatible dict."""
    return {
        "correlation_id": result.correlation_id,
        "context": result.context.to_dict(),
        "graph": None if result.graph is None else result.graph.to_dict(),
        "impact": impact_to_dict(result.impact),
        "classification": classification_to_dict(result.classification),
        "potential_sources": [source_to_dict(s) for s in result.potential_sources],
        "graph_analysis": graph_analysis_to_dict(result.graph_analysis),
        "llm_analysis": result.llm_analysis,
        "suggested_actions": list(result.suggested_actions),
        "pattern_id": result.pattern_id,
        "degraded": result.degraded,
        "error": error_to_dict(result.error),
    }


# =========================================================================== #
#  Remediation                                                                 #
# =========================================================================== #

def plan_to_dict(plan: RemediationPlan | None) -> dict[str, Any] | None:
    if plan is None:
        return None
    return {
        "plan_id": plan.plan_id,
        "correlation_id": plan.correlation_id,
        "strategy": plan.strategy,
        "created_at": plan.created_at,
        "actions": [
            {
                "action_id": a.action_id,
                "name": a.name,
                "target_component": a.target_component,
                "parameters": dict(a.parameters),
                "reversible": a.reversible,
                "inverse_name": a.inverse_name,
                "depends_on": list(a.depends_on),
                "affected_components": list(a.affected_components),
            }
            for a in plan.actions
        ],
    }


def assessment_to_dict(a: RiskAssessment) -> dict[str, Any]:
    return {
        "action_id": a.action_id,
        "risk_level": a.risk_level.value,
        "blast_radius": a.blast_radius,
        "potential_issues": list(a.potential_issues),
        "mitigation_steps": list(a.mitigation_steps),
        "confidence": a.confidence,
    }


def validation_to_dict(v: RemediationValidationResult | None) -> dict[str, Any] | None:
    if v is None:
        return None
    return {
        "is_valid": v.is_valid,
        "requires_approval": v.requires_approval,
        "approval_reason": v.approval_reason,
        "issues": [
            {
                "message": i.message,
                "severity": i.severity.value,
                "component_id": i.component_id,
                "code": i.code,
                "action_id": i.action_id,
            }
            for i in v.issues
        ],
    }


def remediation_to_dict(result: RemediationResult) -> dict[str, Any]:
    """Serialize a :class:`RemediationResult` into a JSON-compatible dict."""
    return {
        "correlation_id": result.correlation_id,
        "status": _enum_val(result.status),
        "aggregate_risk": result.aggregate_risk.value,
        "analysis": None if result.analysis is None else analysis_to_dict(result.analysis),
        "plan": plan_to_dict(result.plan),
        "assessments": [assessment_to_dict(a) for a in result.assessments],
        "validation": validation_to_dict(result.validation),
        "execution": None if result.execution is None else result.execution.to_dict(),
        "error": error_to_dict(result.error),
    }


def event_to_dict(event: DomainEvent) -> dict[str, Any]:
    data = {k: _enum_val(v) for k, v in asdict(event).items()}
    data["event"] = type(event).__name__
    return data


def events_to_list(events: Sequence[DomainEvent]) -> list[dict[str, Any]]:
    return [event_to_dict(e) for e in events]


# =========================================================================== #
#  JSON convenience                                                            #
# =========================================================================== #

def to_json(data: Mapping[str, Any], indent: int | None = 2) -> str:
    return json.dumps(data, indent=indent, sort_keys=True, default=str)


def load_context(source: str | Path) -> ErrorContext:
    """Load an :class:`ErrorContext` from a JSON file path or JSON text."""
    text = str(source)
    path = Path(text)
    if not text.lstrip().startswith("{") and path.exists():
        text = path.read_text(encoding="utf-8")
    raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("Error context JSON must be an object")
    return ErrorContext.from_dict(raw)
