"""Domain entities for the runtime error analysis pipeline.

Entities have *identity* and a mutable lifecycle.  ``ErrorPattern`` is the
durable, learned record of a recurring error.  ``RemediationExecution`` is the
run-time record of executing a plan and owns the per-action state machine::

    PENDING -> [WAITING_FOR_APPROVAL ->] RUNNING -> COMPLETED | FAILED | CANCELLED
    PENDING -> SKIPPED | CANCELLED

Illegal transitions raise :class:`InvalidTransitionError`.
"""

from __future__ import annotations

import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .enums import RemediationStatus
from .exceptions import InvalidTransitionError
from .values import (
    RemediationPlan,
    RemediationValidationResult,
    ResourceSnapshot,
    RollbackRecord,
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> tuple[str, ...]:
    """Lower-case alphanumeric tokens of *text*, de-duplicated in order."""
    seen: dict[str, None] = {}
    for tok in _TOKEN_RE.findall(text.lower()):
        if len(tok) > 1:
            seen.setdefault(tok, None)
    return tuple(seen)


# ---------------------------------------------------------------------------
# ErrorPattern
# ---------------------------------------------------------------------------

@dataclass
class ErrorPattern:
    """A stored, reusable signature of a recurring error.

    Keyed by ``(service_name, pattern_id)``.  ``action_successes`` and
    ``action_failures`` hold the historical remediation outcomes per action
    name; ``remediation_actions`` lists the action names known to help, best
    first.
    """

    service_name: str
    error_type: str
    pattern_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    category: str = ""
    operation_name: str = ""
    component_id: str = ""
    message_tokens: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    severity: float = 0.5
    occurrence_count: int = 1
    first_seen: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)
    remediation_actions: list[str] = field(default_factory=list)
    action_successes: dict[str, int] = field(default_factory=dict)
    action_failures: dict[str, int] = field(default_factory=dict)
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("service_name", "pattern_id"):
            value = getattr(self, name)
            if not value:
                raise ValueError(f"{name} must not be empty")
            if ":" in value:
                raise ValueError(f"{name} must not contain ':', got {value!r}")
        if not 0.0 <= self.severity <= 1.0:
            raise ValueError(f"severity must be in [0, 1], got {self.severity}")
        self.message_tokens = tuple(self.message_tokens)
        self.tags = tuple(self.tags)

    @property
    def key(self) -> tuple[str, str]:
        """Natural key ``(service_name, pattern_id)``."""
        return (self.service_name, self.pattern_id)

    # -- lifecycle -----------------------------------------------------------

    def record_occurrence(self, at: float | None = None) -> None:
        """Count one more matching observation."""
        self.occurrence_count += 1
        self.last_updated = at if at is not None else time.time()

    def record_outcome(self, action_name: str, success: bool, at: float | None = None) -> None:
        """Record the outcome of running *action_name* against this error."""
        bucket = self.action_successes if success else self.action_failures
        bucket[action_name] = bucket.get(action_name, 0) + 1
        if success and action_name not in self.remediation_actions:
            self.remediation_actions.append(action_name)
        self.remediation_actions.sort(key=lambda n: -(self.success_rate(n) or 0.0))
        self.last_updated = at if at is not None else time.time()

    def deactivate(self) -> None:
        self.is_active = False
        self.last_updated = time.time()

    # -- queries -------------------------------------------------------------

    def outcome_count(self, action_name: str) -> int:
        return self.action_successes.get(action_name, 0) + self.action_failures.get(action_name, 0)

    def success_rate(self, action_name: str) -> float | None:
        """Historical success rate of *action_name*, or ``None`` without history."""
        total = self.outcome_count(action_name)
        if total == 0:
            return None
        return self.action_successes.get(action_name, 0) / total

    @property
    def known_actions(self) -> tuple[str, ...]:
        names = dict.fromkeys(self.remediation_actions)
        names.update(dict.fromkeys(self.action_successes))
        names.update(dict.fromkeys(self.action_failures))
        return tuple(names)

    def is_expired(self, retention_seconds: float, now: float | None = None) -> bool:
        now = now if now is not None else time.time()
        return now - self.last_updated > retention_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "service_name": self.service_name,
            "error_type": self.error_type,
            "category": self.category,
            "operation_name": self.operation_name,
            "component_id": self.component_id,
            "message_tokens": list(self.message_tokens),
            "tags": list(self.tags),
            "severity": self.severity,
            "occurrence_count": self.occurrence_count,
            "first_seen": self.first_seen,
            "last_updated": self.last_updated,
            "remediation_actions": list(self.remediation_actions),
            "action_successes": dict(self.action_successes),
            "action_failures": dict(self.action_failures),
            "is_active": self.is_active,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorPattern:
        return cls(
            pattern_id=data["pattern_id"],
            service_name=data["service_name"],
            error_type=data.get("error_type", ""),
            category=data.get("category", ""),
            operation_name=data.get("operation_name", ""),
            component_id=data.get("component_id", ""),
            message_tokens=tuple(data.get("message_tokens", ())),
            tags=tuple(data.get("tags", ())),
            severity=float(data.get("severity", 0.5)),
            occurrence_count=int(data.get("occurrence_count", 1)),
            first_seen=float(data.get("first_seen", time.time())),
            last_updated=float(data.get("last_updated", time.time())),
            remediation_actions=list(data.get("remediation_actions", [])),
            action_successes={k: int(v) for k, v in data.get("action_successes", {}).items()},
            action_failures={k: int(v) for k, v in data.get("action_failures", {}).items()},
            is_active=bool(data.get("is_active", True)),
            metadata=dict(data.get("metadata", {})),
        )


# ---------------------------------------------------------------------------
# Remediation execution
# ---------------------------------------------------------------------------

_ALLOWED_TRANSITIONS: dict[RemediationStatus, frozenset[RemediationStatus]] = {
    RemediationStatus.PENDING: frozenset({
        RemediationStatus.RUNNING,
        RemediationStatus.WAITING_FOR_APPROVAL,
        RemediationStatus.SKIPPED,
        RemediationStatus.CANCELLED,
    }),
    RemediationStatus.WAITING_FOR_APPROVAL: frozenset({
        RemediationStatus.RUNNING,
        RemediationStatus.SKIPPED,
        RemediationStatus.CANCELLED,
    }),
    RemediationStatus.RUNNING: frozenset({
        RemediationStatus.COMPLETED,
        RemediationStatus.FAILED,
        RemediationStatus.CANCELLED,
    }),
    RemediationStatus.COMPLETED: frozenset(),
    RemediationStatus.FAILED: frozenset(),
    RemediationStatus.CANCELLED: frozenset(),
    RemediationStatus.SKIPPED: frozenset(),
}


def can_transition(current: RemediationStatus, target: RemediationStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass
class RemediationActionExecution:
    """Run-time state of one action inside an execution."""

    action_id: str
    action_name: str
    target_component: str
    status: RemediationStatus = RemediationStatus.PENDING
    attempts: int = 0
    started_at: float | None = None
    ended_at: float | None = None
    error: str = ""
    validation: RemediationValidationResult | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass
class RemediationMetrics:
    """Counters and timings for one execution."""

    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    cancelled_steps: int = 0
    step_durations: dict[str, float] = field(default_factory=dict)
    step_retries: dict[str, int] = field(default_factory=dict)
    start_snapshot: ResourceSnapshot | None = None
    end_snapshot: ResourceSnapshot | None = None

    @property
    def finished_steps(self) -> int:
        return self.completed_steps + self.failed_steps + self.skipped_steps

    @property
    def total_retries(self) -> int:
        return sum(self.step_retries.values())

    @property
    def total_duration(self) -> float:
        return float(sum(self.step_durations.values()))

    @property
    def success_rate(self) -> float:
        return self.completed_steps / self.total_steps if self.total_steps else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "failed_steps": self.failed_steps,
            "skipped_steps": self.skipped_steps,
            "cancelled_steps": self.cancelled_steps,
            "step_durations": dict(self.step_durations),
            "step_retries": dict(self.step_retries),
            "total_retries": self.total_retries,
        }


@dataclass
class RemediationExecution:
    """Run-time record of executing a :class:`RemediationPlan`.

    Every mutation goes through a method (:meth:`transition`, :meth:`finish`,
    :meth:`attach_rollback` and the ``record_*`` helpers) holding the
    execution's own lock.  Counters are owned by this run and
    never shared across runs.
    """

    correlation_id: str
    plan_id: str
    action_executions: list[RemediationActionExecution] = field(default_factory=list)
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: RemediationStatus = RemediationStatus.PENDING
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    metrics: RemediationMetrics = field(default_factory=RemediationMetrics)
    pre_validation: RemediationValidationResult | None = None
    post_validation: RemediationValidationResult | None = None
    rollback: RollbackRecord | None = None
    error: str = ""
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @classmethod
    def for_plan(cls, plan: RemediationPlan, execution_id: str | None = None) -> RemediationExecution:
        """Create a PENDING execution with one PENDING entry per plan action."""
        execution = cls(
            correlation_id=plan.correlation_id,
            plan_id=plan.plan_id,
            action_executions=[
                RemediationActionExecution(
                    action_id=a.action_id,
                    action_name=a.name,
                    target_component=a.target_component,
                )
                for a in plan.actions
            ],
        )
        if execution_id:
            execution.execution_id = execution_id
        execution.metrics.total_steps = len(plan.actions)
        return execution

    # -- queries -------------------------------------------------------------

    def get(self, action_id: str) -> RemediationActionExecution:
        for ae in self.action_executions:
            if ae.action_id == action_id:
                return ae
        raise KeyError(f"Action '{action_id}' not in execution {self.execution_id}")

    def actions_with(self, status: RemediationStatus) -> list[RemediationActionExecution]:
        return [ae for ae in self.action_executions if ae.status == status]

    @property
    def completed_actions(self) -> list[RemediationActionExecution]:
        return self.actions_with(RemediationStatus.COMPLETED)

    @property
    def failed_action(self) -> RemediationActionExecution | None:
        failed = self.actions_with(RemediationStatus.FAILED)
        return failed[0] if failed else None

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            RemediationStatus.COMPLETED,
            RemediationStatus.FAILED,
            RemediationStatus.CANCELLED,
        )

    @property
    def duration(self) -> float | None:
        return None if self.end_time is None else self.end_time - self.start_time

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self.status != RemediationStatus.PENDING:
                raise InvalidTransitionError(
                    f"Execution {self.execution_id} already started",
                    entity_id=self.execution_id,
                    from_state=self.status.value,
                    to_state=RemediationStatus.RUNNING.value,
                )
            self.status = RemediationStatus.RUNNING
            self.start_time = time.time()

    def transition(
        self,
        action_id: str,
        target: RemediationStatus,
        error: str = "",
    ) -> RemediationActionExecution:
        """Move one action to *target*, updating timings and counters."""
        with self._lock:
            ae = self.get(action_id)
            if not can_transition(ae.status, target):
                raise InvalidTransitionError(
                    f"Action {action_id}: {ae.status.value} -> {target.value} is not allowed",
                    entity_id=action_id,
                    from_state=ae.status.value,
                    to_state=target.value,
                )
            now = time.time()
            ae.status = target
            if target == RemediationStatus.WAITING_FOR_APPROVAL:
                self.status = RemediationStatus.WAITING_FOR_APPROVAL
            elif target == RemediationStatus.RUNNING:
                ae.started_at = now
                self.status = RemediationStatus.RUNNING
            elif target.is_terminal:
                ae.ended_at = max(now, ae.started_at) if ae.started_at is not None else now
                if error:
                    ae.error = error
                self._count(target)
                if ae.duration is not None:
                    self.metrics.step_durations[action_id] = ae.duration
            self._check_counters()
            return ae

    def finish(self, status: RemediationStatus, error: str = "") -> None:
        """Mark the whole execution terminal with *status*."""
        with self._lock:
            if status not in (
                RemediationStatus.COMPLETED,
                RemediationStatus.FAILED,
                RemediationStatus.CANCELLED,
            ):
                raise InvalidTransitionError(
                    f"{status.value} is not a terminal execution status",
                    entity_id=self.execution_id,
                    from_state=self.status.value,
                    to_state=status.value,
                )
            if status == RemediationStatus.COMPLETED and (
                self.failed_action is not None and self.rollback is None
            ):
                raise InvalidTransitionError(
                    "Cannot complete an execution with a failed action and no rollback record",
                    entity_id=self.execution_id,
                    from_state=self.status.value,
                    to_state=status.value,
                )
            self.status = status
            self.end_time = max(time.time(), self.start_time)
            if error:
                self.error = error

    def derive_status(self) -> RemediationStatus:
        """Plan-level status mirroring the worst action outcome."""
        with self._lock:
            statuses = {ae.status for ae in self.action_executions}
            if RemediationStatus.FAILED in statuses:
                return RemediationStatus.FAILED
            if RemediationStatus.CANCELLED in statuses:
                return RemediationStatus.CANCELLED
            if RemediationStatus.WAITING_FOR_APPROVAL in statuses:
                return RemediationStatus.WAITING_FOR_APPROVAL
            if RemediationStatus.RUNNING in statuses:
                return RemediationStatus.RUNNING
            if statuses <= {RemediationStatus.COMPLETED}:
                return RemediationStatus.COMPLETED
            return RemediationStatus.PENDING

    def record_attempt(self, action_id: str) -> int:
        """Count one more handler attempt for *action_id*; return the total."""
        with self._lock:
            ae = self.get(action_id)
            ae.attempts += 1
            return ae.attempts

    def record_retry(self, action_id: str) -> int:
        with self._lock:
            count = self.metrics.step_retries.get(action_id, 0) + 1
            self.metrics.step_retries[action_id] = count
            return count

    def record_validation(
        self, action_id: str, verdict: RemediationValidationResult
    ) -> None:
        with self._lock:
            self.get(action_id).validation = verdict

    def attach_rollback(self, record: RollbackRecord) -> None:
        """Attach the outcome of unwinding this execution."""
        with self._lock:
            if record.execution_id != self.execution_id:
                raise ValueError(
                    f"Rollback record for {record.execution_id} does not belong to "
                    f"execution {self.execution_id}"
                )
            self.rollback = record

    def _count(self, status: RemediationStatus) -> None:
        m = self.metrics
        if status == RemediationStatus.COMPLETED:
            m.completed_steps += 1
        elif status == RemediationStatus.FAILED:
            m.failed_steps += 1
        elif status == RemediationStatus.SKIPPED:
            m.skipped_steps += 1
        elif status == RemediationStatus.CANCELLED:
            m.cancelled_steps += 1

    def _check_counters(self) -> None:
        m = self.metrics
        if m.finished_steps + m.cancelled_steps > m.total_steps:
            raise InvalidTransitionError(
                f"Execution {self.execution_id}: {m.finished_steps} finished steps "
                f"exceed {m.total_steps} total",
                entity_id=self.execution_id,
            )

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "execution_id": self.execution_id,
                "correlation_id": self.correlation_id,
                "plan_id": self.plan_id,
                "status": self.status.value,
                "start_time": self.start_time,
                "end_time": self.end_time,
                "error": self.error,
                "actions": [
                    {
                        "action_id": ae.action_id,
                        "action_name": ae.action_name,
                        "target_component": ae.target_component,
                        "status": ae.status.value,
                        "attempts": ae.attempts,
                        "error": ae.error,
                        "duration": ae.duration,
                    }
                    for ae in self.action_executions
                ],
                "metrics": self.metrics.to_dict(),
                "rollback": None if self.rollback is None else {
                    "status": self.rollback.status.value,
                    "rolled_back": list(self.rollback.rolled_back_action_ids),
                    "errors": list(self.rollback.errors),
                },
            }
