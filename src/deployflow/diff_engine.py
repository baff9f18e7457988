"""Desired vs observed state classification.

For every declared node the engine reads live state through an injected
`observe` callable and classifies the node as one of:

- Create:   the resource does not exist
- Modify:   one or more declared fields differ from the observed ones
- NoChange: every declared field matches (after normalization)
- Unknown:  observation failed transiently, so nothing can be concluded

Delete is only ever produced for keys passed explicitly in `prune`. A
resource that is live but undeclared is never deleted implicitly.

DESIGN PHILOSOPHY:
- Declared fields are authoritative, observed extras are not drift.
  Providers report computed and read-only values (IDs, timestamps,
  provisioning state) that no spec mentions.
- Nested mappings are compared field by field so a Modify result lists
  the dotted paths that actually differ (e.g. "properties.sku.name").
- Lists and scalars are compared as whole values after normalization.
- Live state is re-read on every call. Nothing is cached.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .diff_normalizer import DiffNormalizer
from .errors import DiffError
from .graph import ResourceKind, ResourceNode
from .provider import ABSENT, ObservedState, ProviderError, _Absent

logger = logging.getLogger(__name__)

DEFAULT_OBSERVE_TIMEOUT_SECONDS = 60.0

ObserveFn = Callable[[str], "ObservedState | _Absent | Awaitable[ObservedState | _Absent]"]


class ChangeType(str, Enum):
    """Classification of a single resource."""

    CREATE = "Create"
    MODIFY = "Modify"
    DELETE = "Delete"
    NO_CHANGE = "NoChange"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class FieldDelta:
    """A declared field whose observed value differs."""

    path: str
    desired: Any
    observed: Any

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "desired": self.desired, "observed": self.observed}


@dataclass(frozen=True)
class DiffResult:
    """Classification of one resource key.

    Attributes:
        key: Resource key.
        change_type: What a deployment would do with this resource.
        kind: Resource kind, or None for pruned keys that are not declared.
        deltas: Differing fields (Modify only).
        summary: One-line human-readable description.
        error: Observation error (Unknown only).
        normalized_count: Differences suppressed by normalization.
    """

    key: str
    change_type: ChangeType
    kind: ResourceKind | None = None
    deltas: tuple[FieldDelta, ...] = ()
    summary: str = ""
    error: ProviderError | None = None
    normalized_count: int = 0

    @property
    def is_no_change(self) -> bool:
        return self.change_type == ChangeType.NO_CHANGE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "key": self.key,
            "change_type": self.change_type.value,
            "kind": self.kind.value if self.kind else None,
            "summary": self.summary,
            "deltas": [delta.to_dict() for delta in self.deltas],
            "error": str(self.error) if self.error else None,
            "normalized_count": self.normalized_count,
        }


class DiffEngine:
    """Classifies declared resources against live state.

    Args:
        normalizer: Normalization rules applied before comparing values.
        observe_timeout_seconds: Per-call timeout for `observe`. A timeout
            counts as a transient failure.
        log_normalizations: Log each suppressed difference at DEBUG.
    """

    def __init__(
        self,
        normalizer: DiffNormalizer | None = None,
        *,
        observe_timeout_seconds: float = DEFAULT_OBSERVE_TIMEOUT_SECONDS,
        log_normalizations: bool = True,
    ) -> None:
        self._normalizer = normalizer or DiffNormalizer()
        self._observe_timeout = observe_timeout_seconds
        self._log_normalizations = log_normalizations

    async def diff(
        self,
        desired: Iterable[ResourceNode],
        observe: ObserveFn,
        prune: Iterable[str] | None = None,
    ) -> list[DiffResult]:
        """Classify every declared node, then every pruned key.

        Args:
            desired: Declared nodes (a ResourceGraph or any iterable of nodes).
            observe: Reads live state for a key. Synchronous callables run
                in the default executor.
            prune: Keys the caller explicitly wants deleted.

        Returns:
            One DiffResult per node, in input order, followed by one per
            pruned key.

        Raises:
            DiffError: If observation fails non-transiently, or a pruned key
                is also declared.
        """
        nodes = list(desired)
        declared = {node.key for node in nodes}
        prune_keys = list(dict.fromkeys(prune or ()))

        conflicting = [key for key in prune_keys if key in declared]
        if conflicting:
            raise DiffError(
                f"Cannot prune declared resources: {conflicting}",
                key=conflicting[0],
            )

        results: list[DiffResult] = []
        for node in nodes:
            observed = await self._observe_or_unknown(observe, node.key, node.kind)
            if isinstance(observed, DiffResult):
                results.append(observed)
            else:
                results.append(self.compare(node, observed))

        for key in prune_keys:
            observed = await self._observe_or_unknown(observe, key, None)
            if isinstance(observed, DiffResult):
                results.append(observed)
            elif observed is ABSENT:
                results.append(
                    DiffResult(key=key, change_type=ChangeType.NO_CHANGE, summary="already absent")
                )
            else:
                results.append(
                    DiffResult(
                        key=key,
                        change_type=ChangeType.DELETE,
                        summary="Pruned resource is live and will be deleted",
                    )
                )

        counts: dict[str, int] = {}
        for result in results:
            counts[result.change_type.value] = counts.get(result.change_type.value, 0) + 1
        logger.info("Diff complete", extra={"resources": len(results), "changes": counts})
        return results

    def compare(self, node: ResourceNode, observed: ObservedState | _Absent) -> DiffResult:
        """Classify a node against an already observed state."""
        if isinstance(observed, _Absent):
            return DiffResult(
                key=node.key,
                change_type=ChangeType.CREATE,
                kind=node.kind,
                summary="Resource does not exist and will be created",
            )

        deltas: list[FieldDelta] = []
        normalized: list[tuple[str, str]] = []
        self._compare_mapping(node.kind.value, node.spec, observed.fields, "", deltas, normalized)

        if self._log_normalizations:
            for path, reason in normalized:
                logger.debug(
                    "Normalized difference",
                    extra={"key": node.key, "path": path, "reason": reason},
                )

        if not deltas:
            summary = "In sync"
            if normalized:
                summary += f" ({len(normalized)} difference(s) normalized)"
            return DiffResult(
                key=node.key,
                change_type=ChangeType.NO_CHANGE,
                kind=node.kind,
                summary=summary,
                normalized_count=len(normalized),
            )

        paths = ", ".join(delta.path for delta in deltas)
        return DiffResult(
            key=node.key,
            change_type=ChangeType.MODIFY,
            kind=node.kind,
            deltas=tuple(deltas),
            summary=f"{len(deltas)} field(s) differ: {paths}",
            normalized_count=len(normalized),
        )

    def _compare_mapping(
        self,
        kind: str,
        desired: Mapping[str, Any],
        observed: Mapping[str, Any],
        prefix: str,
        deltas: list[FieldDelta],
        normalized: list[tuple[str, str]],
    ) -> None:
        for name, desired_value in desired.items():
            path = f"{prefix}.{name}" if prefix else str(name)
            if self._normalizer.ignore_reason(kind, path):
                continue

            observed_value = observed.get(name)
            if isinstance(desired_value, Mapping) and isinstance(observed_value, Mapping):
                self._compare_mapping(
                    kind, desired_value, observed_value, path, deltas, normalized
                )
                continue

            equivalent, reason = self._normalizer.are_equivalent(
                desired_value, observed_value, kind, path
            )
            if equivalent:
                if reason:
                    normalized.append((path, reason))
                continue
            deltas.append(FieldDelta(path=path, desired=desired_value, observed=observed_value))

    async def _observe_or_unknown(
        self,
        observe: ObserveFn,
        key: str,
        kind: ResourceKind | None,
    ) -> ObservedState | _Absent | DiffResult:
        """Observe a key, turning transient failures into an Unknown result."""
        try:
            return await self._observe(observe, key)
        except ProviderError as e:
            if not e.transient:
                logger.error(
                    "Observation failed",
                    extra={"key": key, "error": str(e)},
                )
                raise DiffError(
                    f"Cannot observe '{key}'", key=key, provider_error=e
                ) from e
            logger.warning(
                "Observation failed transiently, state unknown",
                extra={"key": key, "error": str(e)},
            )
            return DiffResult(
                key=key,
                change_type=ChangeType.UNKNOWN,
                kind=kind,
                summary=f"Could not observe current state: {e}",
                error=e,
            )

    async def _observe(self, observe: ObserveFn, key: str) -> ObservedState | _Absent:
        try:
            if inspect.iscoroutinefunction(observe):
                result: Any = await asyncio.wait_for(observe(key), timeout=self._observe_timeout)
            else:
                loop = asyncio.get_running_loop()
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, observe, key),
                    timeout=self._observe_timeout,
                )
        except TimeoutError as e:
            raise ProviderError(
                f"observe timed out after {self._observe_timeout}s",
                key=key,
                transient=True,
            ) from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"observe raised {type(e).__name__}: {e}", key=key) from e
        if result is not ABSENT and not isinstance(result, ObservedState):
            raise ProviderError(
                f"observe returned {type(result).__name__}, expected ObservedState or ABSENT",
                key=key,
            )
        return result
