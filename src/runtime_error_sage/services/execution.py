"""Remediation plan execution.

:class:`RemediationExecutor` runs the actions of a validated plan strictly in
order.  Each action moves through the state machine::

    PENDING -> [WAITING_FOR_APPROVAL] -> RUNNING -> COMPLETED | FAILED | CANCELLED
    PENDING -> SKIPPED | CANCELLED

Execution is fail-fast: once an action fails, the remaining actions are
skipped and the completed ones are handed to the :class:`RollbackManager`.
Cancellation is cooperative through a :class:`CancellationToken`; pending
actions become CANCELLED and completed ones are still rolled back.

Actions on the same component never run concurrently across executions:
component locks are taken in sorted order, so two plans touching the same
components cannot deadlock.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Iterable, Iterator
from dataclasses import replace

from runtime_error_sage.domain.entities import RemediationExecution, RemediationMetrics
from runtime_error_sage.domain.enums import RemediationStatus
from runtime_error_sage.domain.events import ActionStatusChanged, RemediationCompleted
from runtime_error_sage.domain.exceptions import (
    ExecutionError,
    OperationCancelledError,
    ValidationFailure,
)
from runtime_error_sage.domain.values import (
    RemediationAction,
    RemediationPlan,
    RemediationValidationResult,
    ResourceSnapshot,
)
from runtime_error_sage.infrastructure.cancellation import (
    CancellationToken,
    await_future,
    ensure_token,
    run_in_thread,
)
from runtime_error_sage.infrastructure.config import ExecutorConfig
from runtime_error_sage.infrastructure.event_bus import EventBus
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry, invoke_handler
from runtime_error_sage.measurement.health import MetricsCollector
from runtime_error_sage.services.protocols import ApprovalGate, RollingBack
from runtime_error_sage.services.validation import RemediationValidator

logger = logging.getLogger(__name__)

_S = RemediationStatus


class ComponentLocks:
    """Process-wide exclusive locks keyed by component id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock(self, component_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(component_id, threading.Lock())

    @contextlib.contextmanager
    def hold(self, components: Iterable[str]) -> Iterator[None]:
        """Hold the locks of *components*, acquired in sorted order."""
        locks = [self._lock(c) for c in sorted(set(components))]
        acquired: list[threading.Lock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class RemediationExecutor:
    """Runs remediation plans through the action state machine.

    Parameters
    ----------
    registry:
        Handlers for the plan's action names.
    rollback_manager:
        Unwinds completed actions when an execution halts.
    validator:
        Verifies each action's effect and the finished execution.  Without
        one, handler success is taken at face value.
    metrics:
        Receives request outcomes and resource snapshots.
    config:
        Retry, timeout and approval policy.
    event_bus:
        Receives :class:`ActionStatusChanged` and :class:`RemediationCompleted`.
    component_locks:
        Shared between executors that may touch the same components.
    """

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        rollback_manager: RollingBack,
        validator: RemediationValidator | None = None,
        metrics: MetricsCollector | None = None,
        config: ExecutorConfig | None = None,
        event_bus: EventBus | None = None,
        component_locks: ComponentLocks | None = None,
    ) -> None:
        self._registry = registry
        self._rollback = rollback_manager
        self._validator = validator
        self._metrics = metrics
        self._config = config or ExecutorConfig()
        self._config.validate()
        self._bus = event_bus
        self._component_locks = component_locks or ComponentLocks()
        self._lock = threading.Lock()
        self._executions: dict[str, RemediationExecution] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._denied: set[str] = set()
        # finished execution ids, oldest first
        self._finished: OrderedDict[str, None] = OrderedDict()

    # ------------------------------------------------------------------ #
    #  Execution                                                          #
    # ------------------------------------------------------------------ #

    def execute(
        self,
        plan: RemediationPlan,
        validation: RemediationValidationResult | None = None,
        approval_gate: ApprovalGate | None = None,
        cancel_token: CancellationToken | None = None,
        execution_id: str | None = None,
    ) -> RemediationExecution:
        """Run *plan* to a terminal status and return its execution record.

        Raises
        ------
        ValidationFailure
            When *validation* rejects the plan, or requires approval and no
            *approval_gate* is given.
        """
        if validation is not None and not validation.is_valid:
            raise ValidationFailure(
                f"Plan {plan.plan_id} failed validation",
                issues=[i.message for i in validation.errors],
            )
        if validation is not None and validation.requires_approval and approval_gate is None:
            raise ValidationFailure(
                f"Plan {plan.plan_id} requires approval: {validation.approval_reason}",
                requires_approval=True,
            )

        execution = RemediationExecution.for_plan(plan, execution_id)
        execution.pre_validation = validation
        token = ensure_token(cancel_token).child()
        with self._lock:
            existing = self._executions.get(execution.execution_id)
            if existing is not None and not existing.is_terminal:
                raise ValidationFailure(
                    f"Execution {execution.execution_id} is already running"
                )
            if self._rollback.is_rolling_back(execution.execution_id):
                raise ValidationFailure(
                    f"Execution {execution.execution_id} is being rolled back"
                )
            self._executions[execution.execution_id] = execution
            self._tokens[execution.execution_id] = token
            self._finished.pop(execution.execution_id, None)
            self._denied.discard(execution.execution_id)

        logger.info(
            "RemediationExecutor: starting execution %s of plan %s (%d actions)",
            execution.execution_id,
            plan.plan_id,
            len(plan),
        )
        execution.start()
        execution.metrics.start_snapshot = self._snapshot()

        if validation is not None and validation.requires_approval and plan.actions:
            if not self._await_approval(execution, plan, validation, approval_gate, token):
                self._skip_remaining(execution, plan, _S.SKIPPED, "approval denied")
                return self._conclude(execution, _S.CANCELLED, "Approval denied")

        halted: RemediationStatus | None = None
        for action in plan.actions:
            if halted is None and token.cancelled:
                halted = _S.CANCELLED
            if halted is not None:
                break
            with self._component_locks.hold((action.target_component, *action.affected_components)):
                outcome = self._run_action(execution, action, token)
            if outcome != _S.COMPLETED:
                halted = outcome

        error = ""
        if halted is not None:
            remaining = _S.SKIPPED if halted == _S.FAILED else _S.CANCELLED
            self._skip_remaining(execution, plan, remaining, f"halted: {halted.value}")
            failed = execution.failed_action
            error = failed.error if failed is not None else "Execution cancelled"
            self._rollback.rollback(execution, plan)

        return self._conclude(execution, execution.derive_status(), error)

    def _await_approval(
        self,
        execution: RemediationExecution,
        plan: RemediationPlan,
        validation: RemediationValidationResult,
        gate: ApprovalGate,
        token: CancellationToken,
    ) -> bool:
        first = plan.actions[0].action_id
        self._move(execution, first, _S.WAITING_FOR_APPROVAL)
        future = run_in_thread(
            gate, plan, validation, token, name=f"approval-{execution.execution_id}"
        )
        try:
            if await_future(future, token, self._config.approval_timeout, "approval"):
                approved = bool(future.result())
            else:
                logger.warning(
                    "RemediationExecutor: approval for %s timed out", execution.execution_id
                )
                approved = False
        except OperationCancelledError:
            logger.info(
                "RemediationExecutor: approval for %s abandoned on cancellation",
                execution.execution_id,
            )
            approved = False
        except Exception as exc:
            logger.warning(
                "RemediationExecutor: approval gate for %s raised %s: %s",
                execution.execution_id,
                type(exc).__name__,
                exc,
            )
            approved = False
        if not approved:
            with self._lock:
                self._denied.add(execution.execution_id)
            logger.info("RemediationExecutor: execution %s not approved", execution.execution_id)
        return approved

    def _run_action(
        self,
        execution: RemediationExecution,
        action: RemediationAction,
        token: CancellationToken,
    ) -> RemediationStatus:
        """Run one action with bounded retries, then verify its effect."""
        cfg = self._config
        spec = self._registry.get_or_none(action.name)
        if spec is None:
            self._move(execution, action.action_id, _S.RUNNING)
            return self._move(
                execution, action.action_id, _S.FAILED,
                f"No handler registered for action '{action.name}'",
            )
        if spec.default_parameters:
            action = replace(action, parameters={**spec.default_parameters, **action.parameters})
        retries = cfg.max_retries if action.max_retries is None else action.max_retries
        timeout = action.timeout or cfg.action_timeout
        before = (
            self._metrics.get_health(action.target_component)
            if self._metrics is not None else 1.0
        )

        self._move(execution, action.action_id, _S.RUNNING)
        started = time.monotonic()
        last: ExecutionError | None = None
        try:
            for attempt in range(retries + 1):
                execution.record_attempt(action.action_id)
                try:
                    invoke_handler(spec.handler, action, token, timeout)
                    last = None
                    break
                except ExecutionError as exc:
                    last = exc
                    logger.warning(
                        "RemediationExecutor: %s attempt %d/%d failed: %s",
                        action.action_id,
                        attempt + 1,
                        retries + 1,
                        exc,
                    )
                    if attempt < retries:
                        execution.record_retry(action.action_id)
                        delay = min(cfg.max_retry_delay, cfg.base_retry_delay * (2 ** attempt))
                        if token.wait(delay):
                            token.raise_if_cancelled(f"retry of {action.action_id}")
            if last is not None:
                self._record_request(action.target_component, False, started)
                return self._move(execution, action.action_id, _S.FAILED, str(last))

            if self._validator is not None:
                verdict = self._validator.verify_action(action, before, token)
                execution.record_validation(action.action_id, verdict)
                if not verdict.is_valid:
                    self._record_request(action.target_component, False, started)
                    return self._move(execution, action.action_id, _S.FAILED, verdict.summary())
        except OperationCancelledError as exc:
            return self._move(execution, action.action_id, _S.CANCELLED, str(exc))

        self._record_request(action.target_component, True, started)
        return self._move(execution, action.action_id, _S.COMPLETED)

    def _skip_remaining(
        self,
        execution: RemediationExecution,
        plan: RemediationPlan,
        status: RemediationStatus,
        reason: str,
    ) -> None:
        for action in plan.actions:
            current = execution.get(action.action_id).status
            if current in (_S.PENDING, _S.WAITING_FOR_APPROVAL):
                self._move(execution, action.action_id, status, reason)

    def _move(
        self,
        execution: RemediationExecution,
        action_id: str,
        target: RemediationStatus,
        error: str = "",
    ) -> RemediationStatus:
        previous = execution.get(action_id).status
        execution.transition(action_id, target, error)
        logger.debug(
            "RemediationExecutor: %s/%s %s -> %s",
            execution.execution_id,
            action_id,
            previous.value,
            target.value,
        )
        if self._bus is not None:
            self._bus.publish(ActionStatusChanged(
                source_id="remediation_executor",
                execution_id=execution.execution_id,
                correlation_id=execution.correlation_id,
                action_id=action_id,
                previous=previous,
                current=target,
                error=error,
            ))
        return target

    def _conclude(
        self,
        execution: RemediationExecution,
        status: RemediationStatus,
        error: str,
    ) -> RemediationExecution:
        if status not in (_S.COMPLETED, _S.FAILED, _S.CANCELLED):
            status = _S.CANCELLED
        execution.finish(status, error)
        execution.metrics.end_snapshot = self._snapshot()
        self._retire(execution.execution_id)
        if self._validator is not None:
            execution.post_validation = self._validator.validate_execution(execution)
        logger.info(
            "RemediationExecutor: execution %s finished %s (%d/%d completed)",
            execution.execution_id,
            status.value,
            execution.metrics.completed_steps,
            execution.metrics.total_steps,
        )
        if self._bus is not None:
            self._bus.publish(RemediationCompleted(
                source_id="remediation_executor",
                execution_id=execution.execution_id,
                correlation_id=execution.correlation_id,
                status=status,
                completed_steps=execution.metrics.completed_steps,
                total_steps=execution.metrics.total_steps,
            ))
        return execution

    def _retire(self, execution_id: str) -> None:
        """Drop the token of a finished execution and evict the oldest past history_size."""
        with self._lock:
            self._tokens.pop(execution_id, None)
            self._finished[execution_id] = None
            while len(self._finished) > self._config.history_size:
                evicted, _ = self._finished.popitem(last=False)
                self._executions.pop(evicted, None)
                self._denied.discard(evicted)

    def _snapshot(self) -> ResourceSnapshot | None:
        return self._metrics.take_snapshot() if self._metrics is not None else None

    def _record_request(self, component_id: str, success: bool, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_request(component_id, success, time.monotonic() - started)

    # ------------------------------------------------------------------ #
    #  Queries and control                                                 #
    # ------------------------------------------------------------------ #

    def get_execution(self, execution_id: str) -> RemediationExecution:
        with self._lock:
            try:
                return self._executions[execution_id]
            except KeyError:
                raise KeyError(f"Unknown execution '{execution_id}'") from None

    def get_status(self, execution_id: str) -> RemediationStatus:
        return self.get_execution(execution_id).status

    def get_metrics(self, execution_id: str) -> RemediationMetrics:
        return self.get_execution(execution_id).metrics

    def was_denied(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._denied

    def cancel(self, execution_id: str, reason: str = "cancelled") -> bool:
        """Request cancellation; ``False`` if the execution already finished."""
        execution = self.get_execution(execution_id)
        if execution.is_terminal:
            return False
        with self._lock:
            token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info("RemediationExecutor: cancel requested for %s (%s)", execution_id, reason)
        return True

    def close(self) -> None:
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel("executor closed")
        self._rollback.close()
