"""Remediation action handler registry.

Remediation actions are plain data; the code that actually restarts a pod,
flushes a cache or toggles a feature flag is a *handler* registered here by
action name -- either via the ``@registry.register(...)`` decorator or the
imperative ``registry.register_handler(...)`` API.  A handler may declare the
name of its inverse, which the rollback manager invokes to undo it.

Registries are always constructed explicitly and injected into the planner,
validator, executor and rollback manager; there is no global instance.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from runtime_error_sage.domain.exceptions import ExecutionError, OperationCancelledError
from runtime_error_sage.domain.values import RemediationAction
from runtime_error_sage.infrastructure.cancellation import (
    CancellationToken,
    await_future,
    run_in_thread,
)

logger = logging.getLogger(__name__)

# A handler returns ``False`` to report failure, anything else means success.
# Raising is also a failure.
ActionHandler = Callable[[RemediationAction, CancellationToken], Any]


@dataclass(frozen=True)
class HandlerSpec:
    """A registered handler and what is known about it."""

    name: str
    handler: ActionHandler
    inverse: str | None = None
    description: str = ""
    default_parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def reversible(self) -> bool:
        return self.inverse is not None


class ActionHandlerRegistry:
    """Thread-safe map of action name -> :class:`HandlerSpec`.

    Usage -- decorator style::

        @registry.register("restart_service", inverse="noop")
        def restart(action, token):
            ...

    Usage -- imperative style::

        registry.register_handler("clear_cache", clear_cache, inverse="warm_cache")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._specs: dict[str, HandlerSpec] = {}

    # ------------------------------------------------------------------ #
    #  Registration                                                       #
    # ------------------------------------------------------------------ #

    def register(
        self,
        name: str,
        *,
        inverse: str | None = None,
        description: str = "",
        default_parameters: dict[str, Any] | None = None,
        overwrite: bool = False,
    ) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator that registers the decorated callable under *name*.

        Raises ``ValueError`` on duplicates unless *overwrite* is set.
        """

        def decorator(fn: ActionHandler) -> ActionHandler:
            self.register_handler(
                name,
                fn,
                inverse=inverse,
                description=description,
                default_parameters=default_parameters,
                overwrite=overwrite,
            )
            return fn

        return decorator

    def register_handler(
        self,
        name: str,
        handler: ActionHandler,
        *,
        inverse: str | None = None,
        description: str = "",
        default_parameters: dict[str, Any] | None = None,
        overwrite: bool = False,
    ) -> None:
        """Imperatively register *handler* under *name*."""
        if not name:
            raise ValueError("handler name must not be empty")
        spec = HandlerSpec(
            name=name,
            handler=handler,
            inverse=inverse,
            description=description or (handler.__doc__ or "").strip().split("\n")[0],
            default_parameters=dict(default_parameters or {}),
        )
        with self._lock:
            if not overwrite and name in self._specs:
                raise ValueError(
                    f"Handler '{name}' is already registered as "
                    f"{self._specs[name].handler!r}. Pass overwrite=True to replace."
                )
            self._specs[name] = spec
        logger.debug("Registered action handler %s (inverse=%s)", name, inverse)

    # ------------------------------------------------------------------ #
    #  Lookup                                                              #
    # ------------------------------------------------------------------ #

    def get(self, name: str) -> HandlerSpec:
        """Return the spec registered under *name*.

        Raises ``KeyError`` if not found.
        """
        with self._lock:
            try:
                return self._specs[name]
            except KeyError:
                available = sorted(self._specs)
                raise KeyError(
                    f"Action handler '{name}' not registered. Available: {available}"
                ) from None

    def get_or_none(self, name: str) -> HandlerSpec | None:
        with self._lock:
            return self._specs.get(name)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._specs

    def inverse_of(self, name: str) -> str | None:
        """Declared inverse of *name*, or ``None``."""
        spec = self.get_or_none(name)
        return None if spec is None else spec.inverse

    def list_actions(self) -> list[str]:
        with self._lock:
            return sorted(self._specs)

    # ------------------------------------------------------------------ #
    #  Removal                                                             #
    # ------------------------------------------------------------------ #

    def unregister(self, name: str) -> HandlerSpec:
        """Remove and return the spec. Raises ``KeyError`` if missing."""
        with self._lock:
            try:
                return self._specs.pop(name)
            except KeyError:
                raise KeyError(f"Cannot unregister '{name}': not found.") from None

    def clear(self) -> None:
        with self._lock:
            self._specs.clear()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._specs)

    def __repr__(self) -> str:
        return f"<ActionHandlerRegistry {self.list_actions()}>"


# ===================================================================== #
#  Invocation                                                            #
# ===================================================================== #

def invoke_handler(
    handler: ActionHandler,
    action: RemediationAction,
    token: CancellationToken,
    timeout: float,
) -> None:
    """Run *handler* on its own thread and wait at most *timeout* seconds.

    The handler receives a child of *token* that is cancelled when the
    deadline passes or *token* is cancelled, so cooperative handlers stop
    early.  The deadline starts once the handler's thread is running.

    Raises
    ------
    OperationCancelledError
        When *token* is cancelled while the handler runs.
    ExecutionError
        When the handler raises, returns ``False`` or times out.
    """
    child = token.child()
    future = run_in_thread(handler, action, child, name=f"action-{action.action_id}")
    try:
        finished = await_future(future, token, timeout, f"action {action.action_id}")
    except OperationCancelledError:
        child.cancel("cancelled")
        raise
    if not finished:
        child.cancel("timed out")
        if token.cancelled:
            raise OperationCancelledError(f"action {action.action_id} cancelled")
        raise ExecutionError(
            f"Action '{action.name}' timed out after {timeout}s",
            action_id=action.action_id,
        )
    try:
        result = future.result()
    except OperationCancelledError:
        raise
    except Exception as exc:
        if token.cancelled:
            raise OperationCancelledError(f"action {action.action_id} cancelled") from exc
        raise ExecutionError(
            f"Action '{action.name}' raised {type(exc).__name__}: {exc}",
            action_id=action.action_id,
        ) from exc
    if token.cancelled:
        raise OperationCancelledError(f"action {action.action_id} cancelled")
    if result is False:
        raise ExecutionError(
            f"Action '{action.name}' reported failure",
            action_id=action.action_id,
        )
