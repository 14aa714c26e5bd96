"""Risk assessment of remediation actions.

Each action is scored from three signals:

* **blast radius** -- fraction of graph nodes reachable from the action's
  target (and any declared affected components),
* **irreversibility** -- no inverse action to roll it back,
* **historical failure rate** -- from outcomes recorded on stored patterns
  for the action name (a fixed prior when there is no history).

The weighted score is mapped onto :class:`RiskLevel` with fixed thresholds.
An irreversible action whose blast radius exceeds ``wide_blast_radius`` is
``CRITICAL`` regardless of history.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.enums import RiskLevel
from runtime_error_sage.domain.events import RiskAssessed
from runtime_error_sage.domain.exceptions import StoreConnectivityError
from runtime_error_sage.domain.values import RemediationAction, RemediationPlan, RiskAssessment
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.config import RiskConfig
from runtime_error_sage.infrastructure.event_bus import EventBus
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry

logger = logging.getLogger(__name__)

PRE_CHECK = "Verify system state before execution"
POST_CHECK = "Validate system state after execution"


class RiskAssessmentService:
    """Scores remediation actions against a dependency graph.

    Parameters
    ----------
    store:
        Source of historical outcomes per action name.
    config:
        Weights and thresholds.
    registry:
        Consulted for inverses the action itself does not declare.
    event_bus:
        Receives :class:`RiskAssessed`.
    """

    def __init__(
        self,
        store: PatternStore | None = None,
        config: RiskConfig | None = None,
        registry: ActionHandlerRegistry | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._config = config or RiskConfig()
        self._config.validate()
        self._registry = registry
        self._bus = event_bus

    # -- signals ----------------------------------------------------------------

    def blast_radius(self, action: RemediationAction, graph: DependencyGraph) -> float:
        """Fraction of graph nodes reachable from the action's targets."""
        if len(graph) == 0:
            return 0.0
        targets = [c for c in (action.target_component, *action.affected_components) if c in graph]
        if not targets:
            return 0.0
        return len(graph.reachable_from(targets)) / len(graph)

    def is_reversible(self, action: RemediationAction) -> bool:
        if not action.reversible:
            return False
        if action.inverse_name:
            return True
        return self._registry is not None and self._registry.inverse_of(action.name) is not None

    def history(
        self,
        action_name: str,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[float | None, int]:
        """``(success_rate, outcome_count)`` for *action_name* across patterns."""
        if self._store is None:
            return None, 0
        try:
            patterns = self._store.get_patterns_by_action(action_name, cancel_token)
        except StoreConnectivityError as exc:
            logger.warning(
                "RiskAssessmentService: no history for %s, store unavailable: %s",
                action_name,
                exc,
            )
            return None, 0
        successes = sum(p.action_successes.get(action_name, 0) for p in patterns)
        total = sum(p.outcome_count(action_name) for p in patterns)
        if total == 0:
            return None, 0
        return successes / total, total

    def level_for(self, score: float) -> RiskLevel:
        cfg = self._config
        if score < cfg.low_threshold:
            return RiskLevel.LOW
        if score < cfg.medium_threshold:
            return RiskLevel.MEDIUM
        if score < cfg.high_threshold:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    # -- assessment -------------------------------------------------------------

    def assess(
        self,
        action: RemediationAction,
        graph: DependencyGraph,
        correlation_id: str = "",
        cancel_token: CancellationToken | None = None,
    ) -> RiskAssessment:
        """Risk verdict for *action* on *graph*."""
        cfg = self._config
        issues: list[str] = []
        mitigations: list[str] = [PRE_CHECK]

        in_graph = action.target_component in graph
        blast = self.blast_radius(action, graph)
        reversible = self.is_reversible(action)
        rate, outcomes = self.history(action.name, cancel_token)
        failure_rate = cfg.unknown_failure_rate if rate is None else 1.0 - rate

        score = (
            cfg.blast_weight * blast
            + cfg.irreversibility_weight * (0.0 if reversible else 1.0)
            + cfg.failure_weight * failure_rate
        )
        level = self.level_for(score)

        if not in_graph:
            issues.append(
                f"Target component '{action.target_component}' is not part of the dependency graph"
            )
            mitigations.append("Confirm the target component before running the action")
            level = max(level, RiskLevel.MEDIUM)
        if not reversible:
            issues.append(f"Action '{action.name}' cannot be rolled back")
            mitigations.append("Take a backup or snapshot of the affected state")
        if blast > cfg.wide_blast_radius:
            issues.append(f"Wide blast radius: {blast:.0%} of components reachable")
            mitigations.append("Stage the change on a subset of components first")
            if not reversible:
                level = RiskLevel.CRITICAL
        if rate is None:
            issues.append(f"No execution history for action '{action.name}'")
        elif rate < 0.5:
            issues.append(f"Historical success rate of '{action.name}' is {rate:.0%}")
            mitigations.append("Prepare a manual fallback procedure")
        critical = [
            nid for nid in graph.reachable_from(
                [c for c in (action.target_component, *action.affected_components) if c in graph]
            )
            if graph.get_node(nid).is_critical
        ]
        if critical:
            issues.append(f"Critical components affected: {', '.join(sorted(critical))}")
            mitigations.append("Notify the owners of affected critical components")
        mitigations.append(POST_CHECK)

        confidence = 0.5
        if in_graph:
            confidence += 0.2
        if outcomes >= cfg.min_history:
            confidence += 0.3
        elif outcomes > 0:
            confidence += 0.15

        assessment = RiskAssessment(
            action_id=action.action_id,
            risk_level=level,
            blast_radius=round(blast, 6),
            potential_issues=tuple(issues),
            mitigation_steps=tuple(mitigations),
            confidence=round(min(1.0, confidence), 6),
            context={
                "score": round(score, 6),
                "failure_rate": failure_rate,
                "history": outcomes,
                "reversible": reversible,
            },
        )
        logger.debug(
            "RiskAssessmentService: %s on %s -> %s (score=%.3f, blast=%.2f)",
            action.name,
            action.target_component,
            level.value,
            score,
            blast,
        )
        if self._bus is not None:
            self._bus.publish(RiskAssessed(
                source_id="risk_assessment",
                correlation_id=correlation_id,
                action_id=action.action_id,
                risk_level=level,
            ))
        return assessment

    def assess_plan(
        self,
        plan: RemediationPlan,
        graph: DependencyGraph,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[RiskAssessment, ...]:
        return tuple(
            self.assess(a, graph, plan.correlation_id, cancel_token) for a in plan.actions
        )

    @staticmethod
    def aggregate(assessments: Sequence[RiskAssessment]) -> RiskLevel:
        """Highest risk level among *assessments* (``NONE`` when empty)."""
        if not assessments:
            return RiskLevel.NONE
        return max(a.risk_level for a in assessments)
