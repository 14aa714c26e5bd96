"""Remediation planning.

:class:`RemediationPlanner` turns an analyzed error into an ordered
:class:`RemediationPlan`.  Candidate action names are gathered, best first,
from:

1. the actions recorded on the matched error pattern, ranked by their
   historical success rate,
2. the language model's suggestions,
3. the configured default strategy for the error type (or its category).

Only names with a registered handler survive.  Every action targets the most
likely root cause, declares the registry's inverse and depends on the action
before it, so the plan runs as a chain.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.entities import ErrorPattern
from runtime_error_sage.domain.exceptions import StoreConnectivityError
from runtime_error_sage.domain.values import (
    ErrorClassification,
    ErrorContext,
    PotentialErrorSource,
    RemediationAction,
    RemediationPlan,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry

logger = logging.getLogger(__name__)

# Success-rate prior for actions never tried against a pattern.
_UNTRIED_RATE = 0.5


class RemediationPlanner:
    """Builds remediation plans from patterns, analysis and defaults.

    Parameters
    ----------
    registry:
        Handlers that may appear in a plan; also the source of inverses.
    store:
        Source of the matched pattern's outcome history.
    strategies:
        Default action names per error type or category.
    max_actions:
        Upper bound on plan length.
    """

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        store: PatternStore | None = None,
        strategies: Mapping[str, Sequence[str]] | None = None,
        max_actions: int = 5,
    ) -> None:
        if max_actions < 1:
            raise ValueError(f"max_actions must be >= 1, got {max_actions}")
        self._registry = registry
        self._store = store
        self._strategies = {k.lower(): list(v) for k, v in (strategies or {}).items()}
        self._max_actions = max_actions

    def matched_pattern(
        self,
        classification: ErrorClassification | None,
        cancel_token: CancellationToken | None = None,
    ) -> ErrorPattern | None:
        if self._store is None or classification is None or not classification.pattern_id:
            return None
        try:
            return self._store.get_pattern(
                classification.pattern_id,
                classification.metadata.get("service_name") or None,
                cancel_token,
            )
        except StoreConnectivityError as exc:
            logger.warning("RemediationPlanner: pattern lookup failed: %s", exc)
            return None

    def candidate_actions(
        self,
        context: ErrorContext,
        classification: ErrorClassification | None = None,
        llm_actions: Iterable[str] = (),
        pattern: ErrorPattern | None = None,
    ) -> list[str]:
        """Registered action names in priority order, without duplicates."""
        names: list[str] = []
        if pattern is not None:
            rates = {a: pattern.success_rate(a) for a in pattern.known_actions}
            names.extend(sorted(
                rates, key=lambda a: -(_UNTRIED_RATE if rates[a] is None else rates[a])
            ))
        elif classification is not None:
            names.extend(classification.metadata.get("suggested_actions", ()))
        names.extend(llm_actions)
        for key in (context.error_type, context.category_hint,
                    classification.category if classification else ""):
            names.extend(self._strategies.get(key.lower(), ()) if key else ())

        ordered: list[str] = []
        for name in names:
            if name in ordered:
                continue
            if name not in self._registry:
                logger.debug("RemediationPlanner: dropping unregistered action '%s'", name)
                continue
            ordered.append(name)
        return ordered[:self._max_actions]

    @staticmethod
    def target_for(
        context: ErrorContext,
        graph: DependencyGraph,
        sources: Sequence[PotentialErrorSource] = (),
    ) -> str:
        for source in sources:
            if source.node_id in graph:
                return source.node_id
        return context.source_component

    def plan(
        self,
        context: ErrorContext,
        graph: DependencyGraph,
        classification: ErrorClassification | None = None,
        sources: Sequence[PotentialErrorSource] = (),
        llm_actions: Iterable[str] = (),
        cancel_token: CancellationToken | None = None,
    ) -> RemediationPlan:
        """Build the plan for *context*; it may be empty."""
        llm_actions = list(llm_actions)
        pattern = self.matched_pattern(classification, cancel_token)
        names = self.candidate_actions(context, classification, llm_actions, pattern)
        target = self.target_for(context, graph, sources)

        actions: list[RemediationAction] = []
        for index, name in enumerate(names, start=1):
            spec = self._registry.get(name)
            actions.append(RemediationAction(
                name=name,
                target_component=target,
                action_id=f"{index:02d}-{name}",
                parameters={
                    "correlation_id": context.correlation_id,
                    "error_type": context.error_type,
                },
                expected_effect=spec.description or f"Resolve {context.error_type} on {target}",
                reversible=spec.reversible,
                inverse_name=spec.inverse,
                depends_on=(actions[-1].action_id,) if actions else (),
            ))

        strategy = "pattern" if pattern is not None else ("llm" if llm_actions else "default")
        plan = RemediationPlan(
            correlation_id=context.correlation_id,
            actions=tuple(actions),
            strategy=strategy if actions else "none",
        )
        logger.info(
            "RemediationPlanner: plan %s for %s targets %s with %d action(s): %s",
            plan.plan_id,
            context.correlation_id,
            target,
            len(actions),
            ", ".join(names) or "-",
        )
        return plan
