"""Tests for RemediationExecutor and ComponentLocks."""

from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from runtime_error_sage.domain.enums import (
    RemediationStatus,
    RollbackStatus,
    ValidationSeverity,
)
from runtime_error_sage.domain.events import ActionStatusChanged, RemediationCompleted
from runtime_error_sage.domain.exceptions import ValidationFailure
from runtime_error_sage.domain.values import (
    RemediationAction,
    RemediationPlan,
    RemediationValidationResult,
    ValidationIssue,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry
from runtime_error_sage.measurement.health import MetricsCollector
from runtime_error_sage.services.execution import ComponentLocks, RemediationExecutor
from runtime_error_sage.services.rollback import RollbackManager
from runtime_error_sage.services.validation import RemediationValidator
from tests.conftest import FAST_EXECUTOR
from tests.helpers.fakes import HandlerLog, make_registry

S = RemediationStatus


def _make_plan(*names: str) -> RemediationPlan:
    actions = tuple(
        RemediationAction(name=name, target_component="orders", action_id=f"a{i}")
        for i, name in enumerate(names, start=1)
    )
    return RemediationPlan(correlation_id="corr-1", actions=actions, plan_id="plan-1")


def _make_executor(registry: ActionHandlerRegistry, **kwargs) -> RemediationExecutor:
    config = kwargs.pop("config", FAST_EXECUTOR)
    return RemediationExecutor(
        registry,
        RollbackManager(registry, event_bus=kwargs.get("event_bus"), action_timeout=5.0),
        config=config,
        **kwargs,
    )


def _approval(required: bool = True) -> RemediationValidationResult:
    return RemediationValidationResult(
        is_valid=True, requires_approval=required, approval_reason="risk is high"
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSuccessfulExecution:
    def test_runs_actions_in_order(self, registry, handler_log: HandlerLog) -> None:
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("restart_service", "clear_cache", "scale_up"))

        assert execution.status == S.COMPLETED
        assert handler_log.calls == ["restart_service", "clear_cache", "scale_up"]
        assert [ae.status for ae in execution.action_executions] == [S.COMPLETED] * 3
        assert execution.rollback is None
        executor.close()

    def test_metrics(self, registry) -> None:
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("restart_service", "clear_cache"))

        m = execution.metrics
        assert m.total_steps == 2
        assert m.completed_steps == 2
        assert m.finished_steps == 2
        assert m.success_rate == pytest.approx(1.0)
        assert set(m.step_durations) == {"a1", "a2"}
        assert execution.end_time is not None
        assert execution.end_time >= execution.start_time
        executor.close()

    def test_empty_plan_completes(self, registry) -> None:
        executor = _make_executor(registry)
        execution = executor.execute(RemediationPlan(correlation_id="corr-1"))
        assert execution.status == S.COMPLETED
        assert execution.metrics.total_steps == 0
        executor.close()

    def test_default_parameters_merged(self, handler_log: HandlerLog) -> None:
        registry = ActionHandlerRegistry()

        def scale(action: RemediationAction, token: CancellationToken) -> bool:
            handler_log.record(action)
            return True

        registry.register_handler("scale_up", scale, default_parameters={"replicas": 2, "zone": "a"})
        executor = _make_executor(registry)
        plan = RemediationPlan(
            correlation_id="corr-1",
            actions=(RemediationAction("scale_up", "orders", parameters={"replicas": 5}),),
        )
        executor.execute(plan)

        assert dict(handler_log.actions[0].parameters) == {"replicas": 5, "zone": "a"}
        executor.close()

    def test_events_published(self, registry, event_bus, event_store) -> None:
        executor = _make_executor(registry, event_bus=event_bus)
        executor.execute(_make_plan("restart_service"))

        changes = event_store.query(event_type=ActionStatusChanged)
        assert [(e.previous, e.current) for e in changes] == [
            (S.PENDING, S.RUNNING),
            (S.RUNNING, S.COMPLETED),
        ]
        completed = event_store.query(event_type=RemediationCompleted)
        assert len(completed) == 1
        assert completed[0].status == S.COMPLETED
        assert completed[0].completed_steps == 1
        executor.close()

    def test_records_requests_and_snapshots(self, registry) -> None:
        metrics = MetricsCollector()
        executor = _make_executor(registry, metrics=metrics)
        execution = executor.execute(_make_plan("restart_service"))

        assert metrics.get_reliability("orders") == pytest.approx(1.0)
        assert execution.metrics.start_snapshot is not None
        assert execution.metrics.end_snapshot is not None
        executor.close()

    def test_validator_post_validation(self, registry) -> None:
        executor = _make_executor(registry, validator=RemediationValidator())
        execution = executor.execute(_make_plan("restart_service"))

        assert execution.status == S.COMPLETED
        assert execution.get("a1").validation is not None
        assert execution.get("a1").validation.is_valid
        assert execution.post_validation is not None
        assert execution.post_validation.is_valid
        executor.close()


# ---------------------------------------------------------------------------
# Failure and retries
# ---------------------------------------------------------------------------


class TestFailure:
    def test_second_action_fails(self, handler_log: HandlerLog) -> None:
        registry = make_registry(handler_log, failing=("clear_cache",))
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("restart_service", "clear_cache", "scale_up"))

        assert [ae.status for ae in execution.action_executions] == [
            S.COMPLETED,
            S.FAILED,
            S.SKIPPED,
        ]
        assert execution.status == S.FAILED
        assert "reported failure" in execution.error
        assert execution.rollback is not None
        assert execution.rollback.status == RollbackStatus.FULLY_ROLLED_BACK
        assert execution.rollback.rolled_back_action_ids == ("a1",)
        # scale_up never ran; restart_service was undone by stop_service
        assert handler_log.calls == ["restart_service", "clear_cache", "stop_service"]
        executor.close()

    def test_failure_metrics(self, handler_log: HandlerLog) -> None:
        registry = make_registry(handler_log, failing=("clear_cache",))
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("restart_service", "clear_cache", "scale_up"))

        m = execution.metrics
        assert (m.completed_steps, m.failed_steps, m.skipped_steps) == (1, 1, 1)
        assert m.finished_steps == m.total_steps == 3
        executor.close()

    def test_unknown_handler_fails(self, registry) -> None:
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("reboot_universe"))

        assert execution.status == S.FAILED
        assert "No handler registered" in execution.get("a1").error
        assert execution.rollback.status == RollbackStatus.NOT_REQUIRED
        executor.close()

    def test_retries_until_success(self, handler_log: HandlerLog) -> None:
        registry = ActionHandlerRegistry()
        outcomes = iter([False, False, True])

        def flaky(action: RemediationAction, token: CancellationToken) -> bool:
            handler_log.record(action)
            return next(outcomes)

        registry.register_handler("restart_service", flaky)
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, max_retries=2))
        execution = executor.execute(_make_plan("restart_service"))

        assert execution.status == S.COMPLETED
        assert execution.get("a1").attempts == 3
        assert execution.metrics.step_retries == {"a1": 2}
        assert execution.metrics.total_retries == 2
        executor.close()

    def test_retries_exhausted(self, handler_log: HandlerLog) -> None:
        registry = make_registry(handler_log, failing=("restart_service",))
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, max_retries=2))
        execution = executor.execute(_make_plan("restart_service"))

        assert execution.status == S.FAILED
        assert execution.get("a1").attempts == 3
        assert handler_log.calls.count("restart_service") == 3
        executor.close()

    def test_action_overrides_retries(self, handler_log: HandlerLog) -> None:
        registry = make_registry(handler_log, failing=("restart_service",))
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, max_retries=3))
        plan = RemediationPlan(
            correlation_id="corr-1",
            actions=(RemediationAction("restart_service", "orders", max_retries=0),),
        )
        execution = executor.execute(plan)

        assert handler_log.calls == ["restart_service"]
        assert execution.status == S.FAILED
        executor.close()

    def test_handler_exception_is_failure(self) -> None:
        registry = ActionHandlerRegistry()

        def broken(action: RemediationAction, token: CancellationToken) -> bool:
            raise RuntimeError("disk on fire")

        registry.register_handler("restart_service", broken)
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("restart_service"))

        assert execution.status == S.FAILED
        assert "disk on fire" in execution.get("a1").error
        executor.close()

    def test_handler_timeout(self) -> None:
        registry = ActionHandlerRegistry()
        released = threading.Event()

        def slow(action: RemediationAction, token: CancellationToken) -> bool:
            token.wait(5.0)
            released.set()
            return True

        registry.register_handler("restart_service", slow)
        executor = _make_executor(registry)
        plan = RemediationPlan(
            correlation_id="corr-1",
            actions=(RemediationAction("restart_service", "orders", action_id="a1", timeout=0.1),),
        )
        execution = executor.execute(plan)

        assert execution.status == S.FAILED
        assert "timed out" in execution.get("a1").error
        # the handler's token was cancelled at the deadline
        assert released.wait(2.0)
        executor.close()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_during_second_action(self, handler_log: HandlerLog) -> None:
        registry = make_registry(handler_log)
        token = CancellationToken()

        def cancelling(action: RemediationAction, t: CancellationToken) -> bool:
            handler_log.record(action)
            token.cancel("operator abort")
            return True

        registry.register_handler("clear_cache", cancelling, inverse="warm_cache", overwrite=True)
        executor = _make_executor(registry)
        execution = executor.execute(
            _make_plan("restart_service", "clear_cache", "scale_up"), cancel_token=token
        )

        assert [ae.status for ae in execution.action_executions] == [
            S.COMPLETED,
            S.CANCELLED,
            S.CANCELLED,
        ]
        assert execution.status == S.CANCELLED
        assert execution.rollback.status == RollbackStatus.FULLY_ROLLED_BACK
        assert execution.rollback.rolled_back_action_ids == ("a1",)
        assert "scale_up" not in handler_log.calls
        assert handler_log.calls[-1] == "stop_service"
        executor.close()

    def test_cancelled_before_start(self, registry, handler_log: HandlerLog) -> None:
        token = CancellationToken()
        token.cancel()
        executor = _make_executor(registry)
        execution = executor.execute(_make_plan("restart_service", "clear_cache"), cancel_token=token)

        assert execution.status == S.CANCELLED
        assert handler_log.calls == []
        assert execution.metrics.cancelled_steps == 2
        assert execution.rollback.status == RollbackStatus.NOT_REQUIRED
        executor.close()

    def test_cancel_by_id(self, handler_log: HandlerLog) -> None:
        registry = ActionHandlerRegistry()
        entered = threading.Event()

        def waiting(action: RemediationAction, token: CancellationToken) -> bool:
            entered.set()
            token.wait(5.0)
            return True

        registry.register_handler("restart_service", waiting)
        executor = _make_executor(registry)
        result: list = []
        worker = threading.Thread(
            target=lambda: result.append(
                executor.execute(_make_plan("restart_service"), execution_id="ex-1")
            )
        )
        worker.start()
        assert entered.wait(2.0)
        assert executor.cancel("ex-1", "operator") is True
        worker.join(5.0)

        assert result[0].status == S.CANCELLED
        assert executor.get_status("ex-1") == S.CANCELLED
        assert executor.cancel("ex-1") is False
        executor.close()

    def test_cancel_while_handler_ignores_token(self) -> None:
        registry = ActionHandlerRegistry()
        release = threading.Event()

        def stubborn(action: RemediationAction, token: CancellationToken) -> bool:
            release.wait(2.0)
            return True

        registry.register_handler("restart_service", stubborn)
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, action_timeout=0.5))
        token = CancellationToken()
        timer = threading.Timer(0.1, token.cancel, args=("operator abort",))
        timer.start()
        execution = executor.execute(_make_plan("restart_service"), cancel_token=token)
        release.set()
        timer.join()

        assert execution.get("a1").status == S.CANCELLED
        assert execution.status == S.CANCELLED
        assert "timed out" not in execution.get("a1").error
        executor.close()


# ---------------------------------------------------------------------------
# Validation and approval
# ---------------------------------------------------------------------------


class TestApproval:
    def test_invalid_plan_rejected(self, registry, handler_log: HandlerLog) -> None:
        executor = _make_executor(registry)
        verdict = RemediationValidationResult.from_issues(
            [ValidationIssue("bad target", ValidationSeverity.ERROR, code="unknown_target")]
        )
        with pytest.raises(ValidationFailure) as exc_info:
            executor.execute(_make_plan("restart_service"), validation=verdict)
        assert exc_info.value.issues == ["bad target"]
        assert handler_log.calls == []
        executor.close()

    def test_approval_required_without_gate(self, registry) -> None:
        executor = _make_executor(registry)
        with pytest.raises(ValidationFailure) as exc_info:
            executor.execute(_make_plan("restart_service"), validation=_approval())
        assert exc_info.value.requires_approval
        executor.close()

    def test_approved(self, registry, handler_log: HandlerLog) -> None:
        seen: list[str] = []

        def gate(plan, validation, token) -> bool:
            seen.append(validation.approval_reason)
            return True

        executor = _make_executor(registry)
        execution = executor.execute(
            _make_plan("restart_service"), validation=_approval(), approval_gate=gate
        )

        assert seen == ["risk is high"]
        assert execution.status == S.COMPLETED
        assert handler_log.calls == ["restart_service"]
        executor.close()

    def test_denied(self, registry, handler_log: HandlerLog) -> None:
        executor = _make_executor(registry)
        execution = executor.execute(
            _make_plan("restart_service", "clear_cache"),
            validation=_approval(),
            approval_gate=lambda plan, validation, token: False,
            execution_id="ex-denied",
        )

        assert execution.status == S.CANCELLED
        assert [ae.status for ae in execution.action_executions] == [S.SKIPPED, S.SKIPPED]
        assert handler_log.calls == []
        assert executor.was_denied("ex-denied")
        executor.close()

    def test_gate_error_is_denial(self, registry) -> None:
        def gate(plan, validation, token) -> bool:
            raise RuntimeError("approval service down")

        executor = _make_executor(registry)
        execution = executor.execute(
            _make_plan("restart_service"),
            validation=_approval(),
            approval_gate=gate,
            execution_id="ex-2",
        )
        assert execution.status == S.CANCELLED
        assert executor.was_denied("ex-2")
        executor.close()

    def test_approval_timeout(self, registry) -> None:
        release = threading.Event()

        def gate(plan, validation, token) -> bool:
            release.wait(5.0)
            return True

        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, approval_timeout=0.1))
        execution = executor.execute(
            _make_plan("restart_service"), validation=_approval(), approval_gate=gate
        )
        release.set()
        assert execution.status == S.CANCELLED
        executor.close()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_lookup(self, registry) -> None:
        executor = _make_executor(registry)
        executor.execute(_make_plan("restart_service"), execution_id="ex-1")

        assert executor.get_execution("ex-1").plan_id == "plan-1"
        assert executor.get_status("ex-1") == S.COMPLETED
        assert executor.get_metrics("ex-1").completed_steps == 1
        assert not executor.was_denied("ex-1")
        executor.close()

    def test_unknown_execution(self, registry) -> None:
        executor = _make_executor(registry)
        with pytest.raises(KeyError, match="Unknown execution"):
            executor.get_execution("missing")
        executor.close()

    def test_finished_id_can_be_reused(self, registry, handler_log: HandlerLog) -> None:
        executor = _make_executor(registry)
        executor.execute(_make_plan("restart_service"), execution_id="ex-1")
        executor.execute(_make_plan("clear_cache"), execution_id="ex-1")
        assert handler_log.calls == ["restart_service", "clear_cache"]
        executor.close()

    def test_finished_executions_bounded(self, registry) -> None:
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, history_size=3))
        for i in range(6):
            executor.execute(_make_plan("restart_service"), execution_id=f"ex-{i}")

        for i in range(3):
            with pytest.raises(KeyError, match="Unknown execution"):
                executor.get_execution(f"ex-{i}")
        assert [executor.get_status(f"ex-{i}") for i in range(3, 6)] == [S.COMPLETED] * 3
        assert len(executor._executions) == 3
        assert executor._tokens == {}
        executor.close()

    def test_denied_flag_evicted_with_execution(self, registry) -> None:
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, history_size=1))
        executor.execute(
            _make_plan("restart_service"),
            validation=_approval(),
            approval_gate=lambda plan, validation, token: False,
            execution_id="ex-denied",
        )
        assert executor.was_denied("ex-denied")
        executor.execute(_make_plan("restart_service"), execution_id="ex-next")
        assert not executor.was_denied("ex-denied")
        assert executor._denied == set()
        executor.close()


# ---------------------------------------------------------------------------
# Component locks
# ---------------------------------------------------------------------------


class TestComponentLocks:
    def test_hold_is_exclusive(self) -> None:
        locks = ComponentLocks()
        inside = threading.Event()
        release = threading.Event()
        order: list[str] = []

        def first() -> None:
            with locks.hold(["db", "cache"]):
                order.append("first")
                inside.set()
                release.wait(2.0)

        def second() -> None:
            with locks.hold(["cache"]):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        assert inside.wait(2.0)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.1)
        assert order == ["first"]
        release.set()
        t1.join(2.0)
        t2.join(2.0)
        assert order == ["first", "second"]

    def test_duplicates_are_collapsed(self) -> None:
        locks = ComponentLocks()
        with locks.hold(["db", "db"]):
            pass
        with locks.hold(["db"]):
            pass


# ---------------------------------------------------------------------------
# Unrelated plans
# ---------------------------------------------------------------------------


def _single(name: str, component: str, action_id: str) -> RemediationPlan:
    return RemediationPlan(
        correlation_id=f"corr-{component}",
        actions=(RemediationAction(name, component, action_id=action_id),),
    )


class TestUnrelatedPlans:
    def test_stuck_handler_does_not_starve_other_plans(self, handler_log: HandlerLog) -> None:
        registry = make_registry(handler_log)
        entered = threading.Event()
        release = threading.Event()

        def stuck(action: RemediationAction, token: CancellationToken) -> bool:
            entered.set()
            release.wait(3.0)
            return True

        registry.register_handler("drain_queue", stuck)
        executor = _make_executor(registry, config=replace(FAST_EXECUTOR, action_timeout=0.3))

        first = executor.execute(_single("drain_queue", "queue", "q1"))
        assert entered.is_set()
        assert first.status == S.FAILED
        assert "timed out" in first.get("q1").error

        # the abandoned handler is still blocked while the next plan runs
        second = executor.execute(_single("clear_cache", "cache", "c1"))
        assert second.status == S.COMPLETED
        assert "timed out" not in second.get("c1").error
        release.set()
        executor.close()

    def test_pending_approval_does_not_block_other_plans(self, registry) -> None:
        gate_entered = threading.Event()
        release = threading.Event()

        def slow_gate(plan, validation, token) -> bool:
            gate_entered.set()
            release.wait(3.0)
            return True

        executor = _make_executor(registry)
        result: list = []
        worker = threading.Thread(target=lambda: result.append(executor.execute(
            _single("restart_service", "orders", "o1"),
            validation=_approval(),
            approval_gate=slow_gate,
        )))
        worker.start()
        assert gate_entered.wait(2.0)

        other = executor.execute(_single("clear_cache", "cache", "c1"))
        assert other.status == S.COMPLETED

        release.set()
        worker.join(5.0)
        assert result[0].status == S.COMPLETED
        executor.close()
