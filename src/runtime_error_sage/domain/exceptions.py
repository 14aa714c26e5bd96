"""Domain exceptions for the runtime error analysis pipeline.

All domain-specific exceptions inherit from ``RuntimeErrorSageError`` so
callers can catch the full family with a single ``except`` clause when needed.

The orchestrator never lets these escape its inbound operations: each one is
mapped onto an :class:`~runtime_error_sage.domain.enums.ErrorKind` and returned
inside a structured result.  ``InvalidTransitionError`` is the exception to
that rule -- it signals a programming error and is allowed to propagate.
"""

from __future__ import annotations

from typing import Any


class RuntimeErrorSageError(Exception):
    """Base exception for all pipeline domain errors."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class GraphConstructionError(RuntimeErrorSageError):
    """Raised when the dependency topology around an error cannot be resolved.

    Fatal to the current analysis.  Graph construction is all-or-nothing, so
    no partial graph accompanies this error.
    """

    def __init__(
        self,
        message: str = "Dependency graph construction failed",
        component_id: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.component_id = component_id


class ClassificationError(RuntimeErrorSageError):
    """Raised when classification cannot consult the pattern store.

    Non-fatal: the classifier degrades to an ``Unknown`` classification.
    """

    def __init__(
        self,
        message: str = "Classification failed",
        error_type: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.error_type = error_type


class ValidationFailure(RuntimeErrorSageError):
    """Raised when a remediation plan is rejected or needs approval."""

    def __init__(
        self,
        message: str = "Remediation plan rejected",
        issues: list[str] | None = None,
        requires_approval: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.issues: list[str] = issues or []
        self.requires_approval = requires_approval


class ExecutionError(RuntimeErrorSageError):
    """Raised when a remediation action fails to execute or to verify."""

    def __init__(
        self,
        message: str = "Remediation action failed",
        action_id: str = "",
        attempts: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.action_id = action_id
        self.attempts = attempts


class RollbackError(RuntimeErrorSageError):
    """Raised when the inverse of a completed action fails.

    Rollback is best-effort: this error is recorded and logged, and never
    masks the execution failure that triggered the rollback.
    """

    def __init__(
        self,
        message: str = "Rollback failed",
        execution_id: str = "",
        action_id: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.execution_id = execution_id
        self.action_id = action_id


class StoreConnectivityError(RuntimeErrorSageError):
    """Raised by the pattern store when its backing service is unreachable."""

    def __init__(
        self,
        message: str = "Pattern store unreachable",
        state: str = "",
        operation: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.state = state
        self.operation = operation


class OperationCancelledError(RuntimeErrorSageError):
    """Raised when a blocking call observes a cancelled token."""


class InvalidTransitionError(RuntimeErrorSageError):
    """Raised on an illegal remediation state transition.

    This is a programming error, not an operational failure.
    """

    def __init__(
        self,
        message: str = "Illegal state transition",
        entity_id: str = "",
        from_state: str = "",
        to_state: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
