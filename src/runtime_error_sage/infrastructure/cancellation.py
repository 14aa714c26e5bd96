"""Cooperative cancellation for blocking pipeline calls.

A :class:`CancellationToken` wraps a ``threading.Event``.  Every blocking
call in the pipeline (store I/O, LLM calls, action handlers, backoff sleeps)
accepts one and either polls :attr:`CancellationToken.cancelled` or sleeps
through :meth:`CancellationToken.wait`, which wakes early on cancellation.

Calls that cannot be interrupted (third-party action handlers, approval
gates) run on their own thread through :func:`run_in_thread`; the caller
waits on them with :func:`await_future`, which honours both a deadline and
the token.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures
from typing import Any

from runtime_error_sage.domain.exceptions import OperationCancelledError

_POLL_INTERVAL = 0.05


class CancellationToken:
    """Thread-safe cancellation flag, optionally linked to a parent token."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        if reason and not self.reason:
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self.cancelled:
            raise OperationCancelledError(
                f"{what} cancelled" + (f": {self.reason}" if self.reason else "")
            )

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` if cancelled."""
        if self._parent is None:
            return self._event.wait(timeout)
        # poll so that a parent's cancellation also wakes us
        remaining = timeout
        step = 0.05
        while remaining > 0:
            if self.cancelled:
                return True
            self._event.wait(min(step, remaining))
            remaining -= step
        return self.cancelled

    def child(self) -> CancellationToken:
        """A token that is cancelled whenever this one is."""
        return CancellationToken(parent=self)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    """Return *token* or a fresh, never-cancelled token."""
    return token if token is not None else CancellationToken()


def run_in_thread(fn: Callable[..., Any], *args: Any, name: str = "worker") -> Future:
    """Start ``fn(*args)`` on a dedicated daemon thread.

    The returned future carries the call's result or exception.  Threads are
    not pooled: a call that outlives its caller's deadline keeps only its own
    thread busy.
    """
    future: Future = Future()

    def runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=runner, name=name, daemon=True).start()
    return future


def await_future(
    future: Future,
    token: CancellationToken,
    timeout: float,
    what: str = "operation",
) -> bool:
    """Wait up to *timeout* seconds for *future*; ``False`` once the deadline passes.

    The wait is sliced so that cancelling *token* is noticed within a poll
    interval.

    Raises
    ------
    OperationCancelledError
        As soon as *token* is cancelled before *future* finishes.
    """
    deadline = time.monotonic() + timeout
    while not future.done():
        token.raise_if_cancelled(what)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        wait_futures([future], timeout=min(_POLL_INTERVAL, remaining))
    return True
