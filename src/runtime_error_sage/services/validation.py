"""Pre- and post-execution validation of remediation.

:class:`RemediationValidator` is consulted three times per run:

1. :meth:`validate_context` -- is the inbound error context usable at all?
2. :meth:`validate_plan` -- may this plan run against this graph, and does
   it need approval first?
3. :meth:`verify_action` -- after an action reports success, did its target
   actually get healthier within the grace period?

:meth:`validate_execution` additionally checks a finished execution's
bookkeeping.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.entities import RemediationExecution
from runtime_error_sage.domain.enums import RemediationStatus, RiskLevel, ValidationSeverity
from runtime_error_sage.domain.results import ContextValidationResult
from runtime_error_sage.domain.values import (
    ErrorContext,
    RemediationAction,
    RemediationPlan,
    RemediationValidationResult,
    RiskAssessment,
    ValidationIssue,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken, ensure_token
from runtime_error_sage.infrastructure.config import ValidatorConfig
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry
from runtime_error_sage.measurement.health import MetricsCollector

logger = logging.getLogger(__name__)

_ERROR = ValidationSeverity.ERROR
_WARNING = ValidationSeverity.WARNING


class RemediationValidator:
    """Admits or rejects contexts, plans and executed actions.

    Parameters
    ----------
    config:
        Risk ceiling, approval level and verification timing.
    metrics:
        Health source for :meth:`verify_action`.
    registry:
        When given, plans naming unregistered actions are rejected.
    clock:
        Wall clock used for timestamp sanity checks.
    """

    def __init__(
        self,
        config: ValidatorConfig | None = None,
        metrics: MetricsCollector | None = None,
        registry: ActionHandlerRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ValidatorConfig()
        self._config.validate()
        self._metrics = metrics
        self._registry = registry
        self._clock = clock

    # ------------------------------------------------------------------ #
    #  Context                                                            #
    # ------------------------------------------------------------------ #

    def validate_context(self, context: ErrorContext) -> ContextValidationResult:
        """Sanity-check an inbound :class:`ErrorContext`."""
        issues: list[ValidationIssue] = []
        if not context.correlation_id.strip():
            issues.append(ValidationIssue("Correlation id is required", code="missing_correlation_id"))
        if not context.error_type.strip():
            issues.append(ValidationIssue("Error type is required", code="missing_error_type"))
        if not context.source_component:
            issues.append(ValidationIssue(
                "Either the error source or the service name is required",
                code="missing_source",
            ))
        if ":" in context.service_name:
            issues.append(ValidationIssue(
                f"Service name '{context.service_name}' must not contain ':'",
                code="invalid_service_name",
                component_id=context.service_name,
            ))
        if context.timestamp <= 0:
            issues.append(ValidationIssue("Timestamp must be positive", code="invalid_timestamp"))
        elif context.timestamp > self._clock() + self._config.max_clock_skew:
            issues.append(ValidationIssue(
                "Timestamp lies in the future beyond the allowed clock skew",
                code="future_timestamp",
            ))
        if not context.message.strip():
            issues.append(ValidationIssue(
                "Error message is empty; classification will rely on type and tags",
                severity=_WARNING,
                code="empty_message",
            ))
        for component, deps in context.component_graph.items():
            if component in deps:
                issues.append(ValidationIssue(
                    f"Component '{component}' lists itself as a dependency",
                    severity=_WARNING,
                    component_id=component,
                    code="self_dependency",
                ))
        valid = not any(i.severity == _ERROR for i in issues)
        return ContextValidationResult(is_valid=valid, issues=tuple(issues))

    # ------------------------------------------------------------------ #
    #  Plan                                                                #
    # ------------------------------------------------------------------ #

    def validate_plan(
        self,
        plan: RemediationPlan,
        graph: DependencyGraph,
        assessments: Sequence[RiskAssessment] = (),
    ) -> RemediationValidationResult:
        """Admit *plan* for execution on *graph*.

        Rejects unknown targets, duplicate action ids, ``depends_on`` entries
        that are unknown or ordered after the dependent action, unregistered
        handlers and aggregate risk above the ceiling.  Aggregate risk at or
        above the approval level sets ``requires_approval``.
        """
        cfg = self._config
        issues: list[ValidationIssue] = []
        if not plan.actions:
            issues.append(ValidationIssue("Plan has no actions", severity=_WARNING, code="empty_plan"))

        seen: set[str] = set()
        all_ids = set(plan.action_ids)
        for action in plan.actions:
            if action.action_id in seen:
                issues.append(ValidationIssue(
                    f"Duplicate action id '{action.action_id}'",
                    code="duplicate_action_id",
                    action_id=action.action_id,
                ))
            if action.target_component not in graph:
                issues.append(ValidationIssue(
                    f"Target component '{action.target_component}' of '{action.name}' "
                    "is not in the dependency graph",
                    component_id=action.target_component,
                    code="unknown_target",
                    action_id=action.action_id,
                ))
            for dep in action.depends_on:
                if dep not in all_ids:
                    issues.append(ValidationIssue(
                        f"Action '{action.action_id}' depends on unknown action '{dep}'",
                        code="unknown_dependency",
                        action_id=action.action_id,
                    ))
                elif dep not in seen:
                    issues.append(ValidationIssue(
                        f"Action '{action.action_id}' runs before its dependency '{dep}'",
                        code="dependency_order",
                        action_id=action.action_id,
                    ))
            if self._registry is not None and not self._registry.has(action.name):
                issues.append(ValidationIssue(
                    f"No handler registered for action '{action.name}'",
                    code="unknown_handler",
                    action_id=action.action_id,
                ))
            seen.add(action.action_id)

        assessed = {a.action_id for a in assessments}
        missing = [aid for aid in plan.action_ids if aid not in assessed]
        if missing:
            issues.append(ValidationIssue(
                f"No risk assessment for {len(missing)} action(s)",
                severity=_WARNING,
                code="missing_assessment",
            ))

        aggregate = max((a.risk_level for a in assessments), default=RiskLevel.NONE)
        requires_approval = False
        reason = ""
        if aggregate > cfg.ceiling:
            issues.append(ValidationIssue(
                f"Aggregate risk {aggregate.value} exceeds the ceiling {cfg.ceiling.value}",
                code="risk_ceiling",
            ))
        elif aggregate >= cfg.approval:
            requires_approval = True
            reason = f"Aggregate risk is {aggregate.value}"

        result = RemediationValidationResult.from_issues(issues, requires_approval, reason)
        if not result.is_valid:
            logger.info(
                "RemediationValidator: plan %s rejected: %s", plan.plan_id, result.summary()
            )
        return result

    # ------------------------------------------------------------------ #
    #  Post-execution                                                      #
    # ------------------------------------------------------------------ #

    def verify_action(
        self,
        action: RemediationAction,
        before_health: float,
        cancel_token: CancellationToken | None = None,
    ) -> RemediationValidationResult:
        """Poll the target's health until it improves or the grace period ends."""
        if self._metrics is None:
            return RemediationValidationResult.from_issues([ValidationIssue(
                "No health source; action effect not verified",
                severity=_WARNING,
                component_id=action.target_component,
                code="unverified",
                action_id=action.action_id,
            )])
        cfg = self._config
        token = ensure_token(cancel_token)
        deadline = time.monotonic() + cfg.grace_period
        target = before_health + cfg.min_improvement
        while True:
            health = self._metrics.get_health(action.target_component)
            if health >= target or health >= cfg.healthy_threshold:
                return RemediationValidationResult(is_valid=True)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if token.wait(min(cfg.poll_interval, remaining)):
                token.raise_if_cancelled(f"verification of {action.action_id}")

        return RemediationValidationResult.from_issues([ValidationIssue(
            f"Health of '{action.target_component}' did not improve after '{action.name}' "
            f"(before {before_health:.2f}, after {health:.2f})",
            component_id=action.target_component,
            code="no_improvement",
            action_id=action.action_id,
        )])

    def validate_execution(self, execution: RemediationExecution) -> RemediationValidationResult:
        """Check a finished execution's bookkeeping."""
        issues: list[ValidationIssue] = []
        m = execution.metrics
        if m.finished_steps + m.cancelled_steps > m.total_steps:
            issues.append(ValidationIssue(
                f"{m.finished_steps} finished steps exceed {m.total_steps} total",
                code="counter_overflow",
            ))
        if execution.end_time is not None and execution.end_time < execution.start_time:
            issues.append(ValidationIssue("Execution ends before it starts", code="negative_duration"))
        unfinished = [
            ae.action_id for ae in execution.action_executions
            if ae.status in (RemediationStatus.PENDING, RemediationStatus.RUNNING)
        ]
        if execution.is_terminal and unfinished:
            issues.append(ValidationIssue(
                f"Terminal execution has unfinished actions: {', '.join(unfinished)}",
                code="unfinished_actions",
            ))
        if execution.status == RemediationStatus.COMPLETED and len(execution.completed_actions) != m.total_steps:
            issues.append(ValidationIssue(
                "Execution completed without completing every action",
                code="incomplete",
            ))
        if execution.failed_action is not None and execution.rollback is None:
            issues.append(ValidationIssue(
                "Failed execution has no rollback record",
                severity=_WARNING,
                code="missing_rollback",
            ))
        return RemediationValidationResult.from_issues(issues)
