"""Resource dependency graph and ordering.

Nodes declare the ids they depend on. The graph:
1. Rejects duplicate ids and dependencies on undeclared ids
2. Detects cycles (Kahn's algorithm)
3. Produces a topological order in which every dependency precedes its
   dependents, breaking ties by declaration order so the sequence is stable

EXAMPLE:
    graph = ResourceGraph()
    graph.add_node(resource_group)                      # depends_on: ()
    graph.add_node(vnet)                                # depends_on: ("resource-group",)
    graph.add_node(subnet)                              # depends_on: ("vnet",)
    [n.id for n in graph.topological_order()]
    # ["resource-group", "vnet", "subnet"]
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .nodes import ResourceNode

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when the resource graph is malformed."""

    pass


class CycleError(DependencyError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, message: str, *, nodes: list[str]) -> None:
        super().__init__(message)
        self.nodes = nodes


class DuplicateNodeError(DependencyError):
    """Raised when two nodes share an id."""

    pass


class UnknownDependencyError(DependencyError):
    """Raised when a node depends on an id that was never declared."""

    pass


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes, kept in declaration order."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    @classmethod
    def from_nodes(cls, nodes: Iterable[ResourceNode]) -> ResourceGraph:
        """Build and validate a graph in one step.

        Raises:
            DependencyError: If the nodes do not form a valid DAG.
        """
        graph = cls()
        for node in nodes:
            graph.add_node(node)
        graph.validate()
        return graph

    def add_node(self, node: ResourceNode) -> None:
        """Add a node. Dependencies may reference nodes declared later.

        Raises:
            DuplicateNodeError: If a node with the same id exists.
            CycleError: If the node depends on itself.
        """
        if node.id in self.nodes:
            raise DuplicateNodeError(f"Duplicate resource node id: {node.id}")
        if node.id in node.depends_on:
            raise CycleError(f"Node '{node.id}' depends on itself", nodes=[node.id])
        self.nodes[node.id] = node

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def get(self, node_id: str) -> ResourceNode:
        return self.nodes[node_id]

    def validate(self) -> None:
        """Check that every dependency is declared and the graph is acyclic.

        Raises:
            UnknownDependencyError: If a dependency id is not in the graph.
            CycleError: If a cycle is detected.
        """
        for node in self.nodes.values():
            missing = [dep for dep in node.depends_on if dep not in self.nodes]
            if missing:
                raise UnknownDependencyError(
                    f"Node '{node.id}' depends on undeclared node(s): {missing}"
                )
        self._kahn_order()

    def topological_order(self) -> list[ResourceNode]:
        """Return nodes with dependencies first, ties broken by declaration order.

        Raises:
            DependencyError: If the graph is invalid.
        """
        self.validate()
        return [self.nodes[node_id] for node_id in self._kahn_order()]

    def dependencies_of(self, node_id: str) -> set[str]:
        """Return all transitive dependencies of a node."""
        seen: set[str] = set()
        stack = list(self.nodes[node_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].depends_on)
        return seen

    def _kahn_order(self) -> list[str]:
        position = {node_id: index for index, node_id in enumerate(self.nodes)}
        dependents: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        in_degree: dict[str, int] = {node_id: 0 for node_id in self.nodes}

        for node in self.nodes.values():
            for dep in set(node.depends_on):
                dependents[dep].append(node.id)
                in_degree[node.id] += 1

        # Min-heap on declaration position keeps the order stable
        ready = [(position[node_id], node_id) for node_id, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        order: list[str] = []

        while ready:
            _, current = heapq.heappop(ready)
            order.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (position[dependent], dependent))

        if len(order) != len(self.nodes):
            cycle_nodes = [node_id for node_id, degree in in_degree.items() if degree > 0]
            raise CycleError(
                f"Circular dependency detected involving: {cycle_nodes}",
                nodes=cycle_nodes,
            )

        return order
