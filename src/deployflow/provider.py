"""Provider collaborator interfaces.

The orchestration core never calls a cloud API directly. It consumes an
injected `Provider` that carries its own authenticated context:

- observe(key)          read current state, or ABSENT
- apply(node)           create or update a resource to match its spec
- delete(key)           request deletion (may return before it completes)
- check_converged(node) kind-specific readiness predicate
- list_links(key)       optional: live child links attached to a container
- purge(key)            optional: permanently remove a soft-deleted resource

Provider methods are synchronous, like the Azure SDK clients they usually
wrap. The workflows run them off the event loop with a timeout.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .graph import ResourceNode


class _Absent:
    """Sentinel type for a resource the provider does not have."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


class ObservedState:
    """Read-only snapshot of a resource's provider-reported configuration.

    Observed fields may include computed or read-only values the desired
    spec never mentions; the diff engine ignores those.
    """

    __slots__ = ("_fields", "key")

    def __init__(self, key: str, fields: Mapping[str, Any]) -> None:
        self.key = key
        self._fields = MappingProxyType(dict(fields))

    @property
    def fields(self) -> Mapping[str, Any]:
        """The observed fields."""
        return self._fields

    def __repr__(self) -> str:
        return f"ObservedState(key={self.key!r}, fields={dict(self._fields)!r})"


class ProviderError(Exception):
    """Raised by a provider call that failed.

    Attributes:
        key: Resource key involved, if known.
        transient: True for throttling, timeouts and other failures that may
            succeed on retry.
    """

    def __init__(self, message: str, *, key: str | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.key = key
        self.transient = transient


class CheckErrorKind(str, Enum):
    """How the poller should treat a failed readiness check."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


class CheckError(Exception):
    """Raised by a readiness check.

    Unclassified exceptions from a check are treated as retryable; raise
    this with `CheckErrorKind.FATAL` to stop polling immediately.
    """

    def __init__(self, message: str, kind: CheckErrorKind = CheckErrorKind.RETRYABLE) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def fatal(self) -> bool:
        return self.kind == CheckErrorKind.FATAL


@runtime_checkable
class Provider(Protocol):
    """Injected cloud provider."""

    def observe(self, key: str) -> ObservedState | _Absent:
        ...

    def apply(self, node: ResourceNode) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def check_converged(self, node: ResourceNode) -> bool:
        ...


def list_links(provider: Provider, key: str) -> list[str]:
    """Call the provider's optional `list_links`, or return no links."""
    method = getattr(provider, "list_links", None)
    if method is None:
        return []
    return list(method(key))


def supports_purge(provider: Provider) -> bool:
    """Check whether the provider implements the optional `purge`."""
    return callable(getattr(provider, "purge", None))
