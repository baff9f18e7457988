"""Workflow error taxonomy.

Workflows never raise these to their caller. A failed run ends in the
Aborted state with one of these recorded on the result and a Fail entry
in its report naming the resource key and the provider error text.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .provider import ProviderError

if TYPE_CHECKING:
    from .diff_engine import DiffResult


class WorkflowError(Exception):
    """Base class for workflow failures.

    Attributes:
        key: Resource key the failure concerns, if any.
        provider_error: Underlying provider error, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        provider_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.key = key
        self.provider_error = provider_error


class PreconditionFailed(WorkflowError):
    """A validation check failed before any mutation."""

    pass


class DiffError(WorkflowError):
    """Observation failed in a way that makes the whole diff unusable."""

    pass


class ApplyFailed(WorkflowError):
    """A create, update, or delete call was rejected by the provider."""

    pass


class ConvergenceTimedOut(WorkflowError):
    """An asynchronous resource did not converge before its deadline."""

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        attempts: int = 0,
        provider_error: BaseException | None = None,
    ) -> None:
        super().__init__(message, key=key, provider_error=provider_error)
        self.attempts = attempts


class PostValidationFailed(WorkflowError):
    """Resources still drift from their desired state after apply.

    Attributes:
        drifting_keys: Keys not in their desired state.
        results: The full diff that was checked.
    """

    def __init__(
        self,
        message: str,
        *,
        drifting_keys: list[str],
        results: list[DiffResult] | None = None,
    ) -> None:
        super().__init__(message, key=drifting_keys[0] if drifting_keys else None)
        self.drifting_keys = drifting_keys
        self.results = results or []


class Cancelled(WorkflowError):
    """The run was declined at confirmation or cancelled by signal."""

    pass


def describe(error: BaseException) -> str:
    """Error text for a report entry, including the provider error when chained."""
    if isinstance(error, WorkflowError) and error.provider_error is not None:
        return f"{error}: {error.provider_error}"
    return str(error)


__all__ = [
    "ApplyFailed",
    "Cancelled",
    "ConvergenceTimedOut",
    "DiffError",
    "PostValidationFailed",
    "PreconditionFailed",
    "ProviderError",
    "WorkflowError",
    "describe",
]
