"""Best-effort rollback of halted remediation executions.

:class:`RollbackManager` unwinds an execution by invoking the inverse of
every COMPLETED action, most recent first.  A failing inverse is recorded as
a :class:`RollbackError` and logged, and the walk continues with the next
action.  The resulting :class:`RollbackRecord` is attached to the execution.

Each execution is unwound under its own exclusive lock.  While that lock is
held :meth:`RollbackManager.is_rolling_back` reports ``True`` so the
executor can refuse further retries on the plan.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace

from runtime_error_sage.domain.entities import RemediationExecution
from runtime_error_sage.domain.enums import RemediationStatus, RollbackStatus
from runtime_error_sage.domain.events import RollbackCompleted
from runtime_error_sage.domain.exceptions import (
    ExecutionError,
    OperationCancelledError,
    RollbackError,
)
from runtime_error_sage.domain.values import (
    ActionRollbackOutcome,
    RemediationAction,
    RemediationPlan,
    RollbackRecord,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.event_bus import EventBus
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry, invoke_handler

logger = logging.getLogger(__name__)


class RollbackManager:
    """Unwinds completed actions of failed or cancelled executions.

    Parameters
    ----------
    registry:
        Source of inverse handlers.
    event_bus:
        Receives :class:`RollbackCompleted`.
    action_timeout:
        Seconds each inverse handler may run.
    """

    def __init__(
        self,
        registry: ActionHandlerRegistry,
        event_bus: EventBus | None = None,
        action_timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._bus = event_bus
        self._action_timeout = action_timeout
        self._guard = threading.Lock()
        # execution id -> (lock, callers holding or waiting on it)
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._active: set[str] = set()
        self._shutdown = CancellationToken()

    def is_rolling_back(self, execution_id: str) -> bool:
        with self._guard:
            return execution_id in self._active

    def _claim_lock(self, execution_id: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(execution_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[execution_id] = (lock, users + 1)
            return lock

    def _release_lock(self, execution_id: str) -> None:
        with self._guard:
            lock, users = self._locks[execution_id]
            if users <= 1:
                del self._locks[execution_id]
            else:
                self._locks[execution_id] = (lock, users - 1)

    def rollback(self, execution: RemediationExecution, plan: RemediationPlan) -> RollbackRecord:
        """Invoke inverses of *execution*'s completed actions in reverse order.

        Rollback ignores the execution's cancellation so that a cancelled
        execution is still unwound; only :meth:`close` interrupts it.
        """
        lock = self._claim_lock(execution.execution_id)
        try:
            with lock:
                with self._guard:
                    self._active.add(execution.execution_id)
                try:
                    record = self._unwind(execution, plan)
                finally:
                    with self._guard:
                        self._active.discard(execution.execution_id)
        finally:
            self._release_lock(execution.execution_id)

        execution.attach_rollback(record)
        logger.info(
            "RollbackManager: execution %s -> %s (%d rolled back, %d failed)",
            execution.execution_id,
            record.status.value,
            len(record.rolled_back_action_ids),
            len(record.errors),
        )
        if self._bus is not None:
            self._bus.publish(RollbackCompleted(
                source_id="rollback_manager",
                execution_id=execution.execution_id,
                correlation_id=execution.correlation_id,
                status=record.status,
                rolled_back=len(record.rolled_back_action_ids),
                failed=len(record.errors),
            ))
        return record

    def _unwind(self, execution: RemediationExecution, plan: RemediationPlan) -> RollbackRecord:
        started = time.time()
        completed = execution.actions_with(RemediationStatus.COMPLETED)
        if not completed:
            return RollbackRecord(
                execution_id=execution.execution_id,
                status=RollbackStatus.NOT_REQUIRED,
                started_at=started,
                completed_at=time.time(),
            )

        outcomes: list[ActionRollbackOutcome] = []
        token = self._shutdown.child()
        for ae in reversed(completed):
            action = plan.get_action(ae.action_id)
            outcomes.append(self._undo(execution.execution_id, action, token))

        succeeded = sum(1 for o in outcomes if o.success)
        if succeeded == len(outcomes):
            status = RollbackStatus.FULLY_ROLLED_BACK
        elif succeeded == 0:
            status = RollbackStatus.ROLLBACK_FAILED
        else:
            status = RollbackStatus.PARTIALLY_ROLLED_BACK
        return RollbackRecord(
            execution_id=execution.execution_id,
            status=status,
            outcomes=tuple(outcomes),
            started_at=started,
            completed_at=time.time(),
        )

    def _undo(
        self,
        execution_id: str,
        action: RemediationAction,
        token: CancellationToken,
    ) -> ActionRollbackOutcome:
        inverse_name = action.inverse_name or self._registry.inverse_of(action.name)
        try:
            if not action.reversible or not inverse_name:
                raise RollbackError(
                    f"Action '{action.name}' has no inverse",
                    execution_id=execution_id,
                    action_id=action.action_id,
                )
            spec = self._registry.get_or_none(inverse_name)
            if spec is None:
                raise RollbackError(
                    f"No handler registered for inverse '{inverse_name}'",
                    execution_id=execution_id,
                    action_id=action.action_id,
                )
            inverse = replace(action, inverse_name=inverse_name).inverse()
            try:
                invoke_handler(spec.handler, inverse, token, self._action_timeout)
            except (ExecutionError, OperationCancelledError) as exc:
                raise RollbackError(
                    f"Inverse '{inverse_name}' of '{action.action_id}' failed: {exc}",
                    execution_id=execution_id,
                    action_id=action.action_id,
                ) from exc
        except RollbackError as exc:
            logger.warning("RollbackManager: %s", exc)
            return ActionRollbackOutcome(
                action_id=action.action_id,
                inverse_name=inverse_name or "",
                success=False,
                error=str(exc),
            )
        return ActionRollbackOutcome(
            action_id=action.action_id, inverse_name=inverse_name, success=True
        )

    def close(self) -> None:
        """Abandon inverses still running; later rollbacks fail fast."""
        self._shutdown.cancel("rollback manager closed")
