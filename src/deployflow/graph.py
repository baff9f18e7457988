"""Resource dependency graph and ordering.

This module models a deployment as a directed acyclic graph of resources:
1. Nodes are declared resources with a unique key and a desired spec
2. Edges are explicit "depends on" relationships
3. Topological order drives apply, its reverse drives teardown
4. Cycles are detected explicitly and reported by participating keys

DESIGN PHILOSOPHY:
- Dependencies must be added before dependents (no forward references)
- Kahn's algorithm (in-degree counting) instead of recursive DFS, so the
  nodes left over when no progress is possible are exactly the cycle members
- Ties are broken by insertion order, so the same graph always yields the
  same order

EXAMPLE:
```python
graph = ResourceGraph()
graph.add_node(ResourceNode(key="vnet", kind=ResourceKind.NETWORK))
graph.add_node(ResourceNode(key="subnet", kind=ResourceKind.SUBNET, depends_on=("vnet",)))
graph.add_node(
    ResourceNode(
        key="pe-kv",
        kind=ResourceKind.ENDPOINT,
        depends_on=("subnet",),
        asynchronous=True,
    )
)
[n.key for n in graph.topological_order()]  # ["vnet", "subnet", "pe-kv"]
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Kinds of managed resources.

    The kind drives convergence defaults and teardown special cases; it says
    nothing about what a resource's configuration means.
    """

    RESOURCE_GROUP = "ResourceGroup"
    NETWORK = "Network"
    SUBNET = "Subnet"
    LINK = "Link"  # Hub-to-spoke connections, DNS zone links
    ENDPOINT = "Endpoint"
    DNS = "Dns"
    IDENTITY = "Identity"
    CREDENTIAL = "Credential"  # Key vaults and other secret stores
    ROLE_BINDING = "RoleBinding"
    COMPUTE_OR_STORAGE = "ComputeOrStorage"


# Kinds that act as containers other resources attach to via links
CONTAINER_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.NETWORK, ResourceKind.RESOURCE_GROUP}
)


class GraphError(Exception):
    """Base class for resource graph errors."""

    pass


class DuplicateKeyError(GraphError):
    """Raised when a node key is added twice."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Duplicate resource key: '{key}'")
        self.key = key


class UnknownDependencyError(GraphError):
    """Raised when a node depends on a key that has not been added yet."""

    def __init__(self, key: str, dependency: str) -> None:
        super().__init__(
            f"Resource '{key}' depends on unknown resource '{dependency}' "
            "(dependencies must be added before dependents)"
        )
        self.key = key
        self.dependency = dependency


class CycleDetectedError(GraphError):
    """Raised when the dependency edges contain a cycle."""

    def __init__(self, keys: list[str]) -> None:
        super().__init__(f"Circular dependency detected involving: {keys}")
        self.keys = keys


@dataclass(frozen=True)
class ConvergencePolicy:
    """How long and how often to poll an asynchronous resource."""

    timeout_seconds: float
    interval_seconds: float

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds cannot be negative")


@dataclass(frozen=True)
class ResourceNode:
    """A single managed resource in a deployment.

    Attributes:
        key: Unique resource key (an ARM resource ID for the Azure provider).
        kind: Resource kind.
        spec: Desired configuration. Opaque to the engine except for diffing.
        depends_on: Keys that must exist and converge before this node.
        asynchronous: True if the provider acknowledges the request before
            the resource is usable (DNS records, role assignments, deletes).
        convergence: Per-node poll policy override.
        metadata: Hints for provider adapters and probes. Never diffed.
    """

    key: str
    kind: ResourceKind
    spec: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    asynchronous: bool = False
    convergence: ConvergencePolicy | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("key cannot be empty")
        if self.key in self.depends_on:
            raise ValueError(f"Resource '{self.key}' cannot depend on itself")
        # Freeze mutable inputs so the node cannot change once a run begins
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "spec", MappingProxyType(dict(self.spec)))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


class ResourceGraph:
    """Directed acyclic graph of resource nodes.

    The graph exclusively owns its nodes. Insertion order is preserved and
    used to break ordering ties.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, ResourceNode] = {}

    @classmethod
    def from_nodes(cls, nodes: Iterable[ResourceNode], *, strict: bool = True) -> ResourceGraph:
        """Build a graph from nodes.

        Args:
            nodes: Nodes to add, in declaration order.
            strict: If True, nodes are added with `add_node` and must list
                dependencies before dependents. If False, nodes may appear in
                any order (and may form cycles, reported later by
                `topological_order`); dependencies must still exist somewhere
                in the input.

        Raises:
            DuplicateKeyError: If a key appears twice.
            UnknownDependencyError: If a dependency key is never declared.
        """
        graph = cls()
        if strict:
            for node in nodes:
                graph.add_node(node)
            return graph

        pending = list(nodes)
        for node in pending:
            if node.key in graph._nodes:
                raise DuplicateKeyError(node.key)
            graph._nodes[node.key] = node
        for node in pending:
            for dep in node.depends_on:
                if dep not in graph._nodes:
                    raise UnknownDependencyError(node.key, dep)
        return graph

    def add_node(self, node: ResourceNode) -> None:
        """Add a node to the graph.

        Raises:
            DuplicateKeyError: If the key already exists.
            UnknownDependencyError: If a dependency has not been added yet.
        """
        if node.key in self._nodes:
            raise DuplicateKeyError(node.key)
        for dep in node.depends_on:
            if dep not in self._nodes:
                raise UnknownDependencyError(node.key, dep)
        self._nodes[node.key] = node

    def get(self, key: str) -> ResourceNode:
        """Get a node by key.

        Raises:
            KeyError: If the key is not in the graph.
        """
        return self._nodes[key]

    def keys(self) -> list[str]:
        """Node keys in insertion order."""
        return list(self._nodes)

    def dependents_of(self, key: str) -> list[ResourceNode]:
        """Nodes that directly depend on `key`, in insertion order."""
        return [node for node in self._nodes.values() if key in node.depends_on]

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def levels(self) -> list[list[ResourceNode]]:
        """Group nodes into Kahn layers.

        Every node's dependencies are in earlier layers, and no two nodes in
        the same layer are connected by a dependency path.

        Raises:
            CycleDetectedError: If a cycle is detected.
        """
        in_degree: dict[str, int] = {key: 0 for key in self._nodes}
        dependents: dict[str, list[str]] = {key: [] for key in self._nodes}
        for node in self._nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.key)
                in_degree[node.key] += 1

        layers: list[list[ResourceNode]] = []
        current = [key for key, degree in in_degree.items() if degree == 0]
        processed = 0

        while current:
            layers.append([self._nodes[key] for key in current])
            processed += len(current)
            ready: set[str] = set()
            for key in current:
                for dependent in dependents[key]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.add(dependent)
            # Keep insertion order within a layer
            current = [key for key in self._nodes if key in ready]

        if processed != len(self._nodes):
            cycle_keys = self._cycle_members(
                {key for key, degree in in_degree.items() if degree > 0}
            )
            logger.error(
                "Dependency cycle detected",
                extra={"cycle_keys": cycle_keys},
            )
            raise CycleDetectedError(cycle_keys)

        return layers

    def _cycle_members(self, blocked: set[str]) -> list[str]:
        """Strip nodes that are only downstream of a cycle.

        Kahn's algorithm leaves behind cycle members plus everything that
        depends on them; peel off blocked nodes that nothing blocked depends on.
        """
        remaining = set(blocked)
        changed = True
        while changed:
            changed = False
            for key in list(remaining):
                has_blocked_dependent = any(
                    key in self._nodes[other].depends_on for other in remaining if other != key
                )
                if not has_blocked_dependent:
                    remaining.discard(key)
                    changed = True
        return [key for key in self._nodes if key in remaining]

    def topological_order(self) -> list[ResourceNode]:
        """Return nodes with every dependency before its dependents.

        Raises:
            CycleDetectedError: If a cycle is detected.
        """
        return [node for layer in self.levels() for node in layer]

    def reverse_order(self) -> list[ResourceNode]:
        """Return nodes with every dependent before its dependencies.

        Exactly the reverse of `topological_order()`; used for teardown.

        Raises:
            CycleDetectedError: If a cycle is detected.
        """
        return list(reversed(self.topological_order()))
