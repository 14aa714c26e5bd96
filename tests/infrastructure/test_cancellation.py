"""Tests for cooperative cancellation tokens."""

from __future__ import annotations

import threading
import time

import pytest

from runtime_error_sage.domain.exceptions import OperationCancelledError
from runtime_error_sage.infrastructure.cancellation import (
    CancellationToken,
    await_future,
    ensure_token,
    run_in_thread,
)


class TestCancellationToken:

    def test_cancel(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("shutdown")
        assert token.cancelled
        with pytest.raises(OperationCancelledError, match="shutdown"):
            token.raise_if_cancelled("store read")

    def test_child_follows_parent(self) -> None:
        parent = CancellationToken()
        child = parent.child()
        parent.cancel()
        assert child.cancelled

    def test_child_does_not_cancel_parent(self) -> None:
        parent = CancellationToken()
        child = parent.child()
        child.cancel()
        assert not parent.cancelled

    def test_wait_wakes_on_cancel(self) -> None:
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        started = time.monotonic()
        assert token.wait(5.0) is True
        assert time.monotonic() - started < 2.0

    def test_child_wait_wakes_on_parent_cancel(self) -> None:
        parent = CancellationToken()
        child = parent.child()
        threading.Timer(0.05, parent.cancel).start()
        assert child.wait(5.0) is True

    def test_wait_times_out(self) -> None:
        assert CancellationToken().wait(0.01) is False

    def test_ensure_token(self) -> None:
        token = CancellationToken()
        assert ensure_token(token) is token
        assert isinstance(ensure_token(None), CancellationToken)


class TestThreadedCalls:

    def test_result_and_exception(self) -> None:
        ok = run_in_thread(lambda x: x * 2, 21, name="double")
        assert await_future(ok, CancellationToken(), 2.0)
        assert ok.result() == 42

        def boom() -> None:
            raise KeyError("missing")

        failed = run_in_thread(boom)
        assert await_future(failed, CancellationToken(), 2.0)
        with pytest.raises(KeyError):
            failed.result()

    def test_deadline(self) -> None:
        release = threading.Event()
        future = run_in_thread(release.wait, 2.0)
        assert await_future(future, CancellationToken(), 0.05) is False
        assert not future.done()
        release.set()
        assert future.result(timeout=2.0) is True

    def test_cancellation_interrupts_wait(self) -> None:
        release = threading.Event()
        token = CancellationToken()
        future = run_in_thread(release.wait, 2.0)
        threading.Timer(0.05, token.cancel, args=("abort",)).start()
        started = time.monotonic()
        with pytest.raises(OperationCancelledError, match="approval cancelled: abort"):
            await_future(future, token, 5.0, "approval")
        assert time.monotonic() - started < 1.0
        release.set()
