"""Tests for ActionHandlerRegistry and handler invocation."""

from __future__ import annotations

import threading
import time

import pytest

from runtime_error_sage.domain.exceptions import ExecutionError, OperationCancelledError
from runtime_error_sage.domain.values import RemediationAction
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry, invoke_handler


def _ok(action: RemediationAction, token: CancellationToken) -> bool:
    """Always succeeds."""
    return True


class TestActionHandlerRegistry:
    """Test register, get, has, decorator, duplicates."""

    def test_register_handler_and_get(self) -> None:
        reg = ActionHandlerRegistry()
        reg.register_handler("restart_service", _ok, inverse="stop_service")
        spec = reg.get("restart_service")
        assert spec.handler is _ok
        assert spec.reversible
        assert spec.description == "Always succeeds."
        assert reg.inverse_of("restart_service") == "stop_service"

    def test_get_missing_raises(self) -> None:
        reg = ActionHandlerRegistry()
        with pytest.raises(KeyError, match="not registered"):
            reg.get("missing")

    def test_get_or_none_and_has(self) -> None:
        reg = ActionHandlerRegistry()
        assert reg.get_or_none("clear_cache") is None
        assert not reg.has("clear_cache")
        reg.register_handler("clear_cache", _ok)
        assert reg.has("clear_cache")
        assert "clear_cache" in reg
        assert reg.inverse_of("clear_cache") is None

    def test_register_decorator(self) -> None:
        reg = ActionHandlerRegistry()

        @reg.register("scale_up", inverse="scale_down", default_parameters={"by": 1})
        def scale_up(action, token):
            return True

        assert reg.get("scale_up").handler is scale_up
        assert reg.get("scale_up").default_parameters == {"by": 1}

    def test_duplicate_registration_raises(self) -> None:
        reg = ActionHandlerRegistry()
        reg.register_handler("restart_service", _ok)
        with pytest.raises(ValueError, match="already registered"):
            reg.register_handler("restart_service", _ok)

    def test_overwrite_allowed(self) -> None:
        reg = ActionHandlerRegistry()
        reg.register_handler("restart_service", _ok)
        replacement = lambda action, token: True  # noqa: E731
        reg.register_handler("restart_service", replacement, overwrite=True)
        assert reg.get("restart_service").handler is replacement

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            ActionHandlerRegistry().register_handler("", _ok)

    def test_list_and_unregister(self) -> None:
        reg = ActionHandlerRegistry()
        reg.register_handler("b", _ok)
        reg.register_handler("a", _ok)
        assert reg.list_actions() == ["a", "b"]
        reg.unregister("a")
        assert len(reg) == 1
        with pytest.raises(KeyError):
            reg.unregister("a")


class TestInvokeHandler:

    def _action(self) -> RemediationAction:
        return RemediationAction(name="restart_service", target_component="orders")

    def test_success(self) -> None:
        invoke_handler(_ok, self._action(), CancellationToken(), 1.0)

    def test_false_is_failure(self) -> None:
        with pytest.raises(ExecutionError, match="reported failure"):
            invoke_handler(lambda a, t: False, self._action(), CancellationToken(), 1.0)

    def test_none_is_success(self) -> None:
        invoke_handler(lambda a, t: None, self._action(), CancellationToken(), 1.0)

    def test_exception_is_failure(self) -> None:
        def boom(action, token):
            raise RuntimeError("pod not found")

        with pytest.raises(ExecutionError, match="pod not found"):
            invoke_handler(boom, self._action(), CancellationToken(), 1.0)

    def test_handler_timeout_error_is_failure(self) -> None:
        def gives_up(action, token):
            raise TimeoutError("upstream took too long")

        with pytest.raises(ExecutionError, match="raised TimeoutError"):
            invoke_handler(gives_up, self._action(), CancellationToken(), 1.0)

    def test_timeout_cancels_child_token(self) -> None:
        seen: list[CancellationToken] = []
        done = threading.Event()

        def slow(action, token):
            seen.append(token)
            token.wait(5.0)
            done.set()
            return True

        with pytest.raises(ExecutionError, match="timed out"):
            invoke_handler(slow, self._action(), CancellationToken(), 0.05)
        assert done.wait(2.0)
        assert seen[0].cancelled

    def test_cancellation_during_handler(self) -> None:
        token = CancellationToken()

        def cancels(action, child):
            token.cancel("operator abort")
            return True

        with pytest.raises(OperationCancelledError):
            invoke_handler(cancels, self._action(), token, 1.0)

    def test_cancellation_wins_over_stubborn_handler(self) -> None:
        token = CancellationToken()
        release = threading.Event()

        def stubborn(action, child):
            release.wait(2.0)
            return True

        timer = threading.Timer(0.05, token.cancel)
        timer.start()
        started = time.monotonic()
        with pytest.raises(OperationCancelledError):
            invoke_handler(stubborn, self._action(), token, 1.0)
        assert time.monotonic() - started < 0.9
        release.set()
        timer.join()

    def test_abandoned_handler_keeps_no_shared_capacity(self) -> None:
        release = threading.Event()

        def stuck(action, token):
            release.wait(2.0)
            return True

        for _ in range(3):
            with pytest.raises(ExecutionError, match="timed out"):
                invoke_handler(stuck, self._action(), CancellationToken(), 0.05)
        invoke_handler(_ok, self._action(), CancellationToken(), 0.2)
        release.set()
