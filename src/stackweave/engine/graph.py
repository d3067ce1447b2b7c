"""
Dependency graph of resource nodes.

Edges are first-class: they are read off OutputRef objects in node inputs
(data dependencies) plus explicit depends_on hints when the graph is
validated, never discovered as a side effect of evaluating an input.
Validation happens before anything is dispatched, so a malformed
declaration (unknown reference, cycle) never causes a provider call.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from .dag import DAGResolver
from .exceptions import CycleError, DuplicateNodeError, UnknownReferenceError
from .node import ResourceDeclaration, ResourceNode
from .references import OutputRef, build_input_cell
from .value_cell import ValueCell

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Owns the nodes (and their value cells) for one run."""

    def __init__(self) -> None:
        self.nodes: dict[str, ResourceNode] = {}
        self._layers: list[set[str]] | None = None
        self._input_cells: dict[str, ValueCell[dict[str, Any]]] = {}

    @classmethod
    def from_declarations(cls, declarations: Iterable[ResourceDeclaration]) -> DependencyGraph:
        """
        Build and validate a graph from declarations.

        Raises:
            DuplicateNodeError: Same id declared twice
            UnknownReferenceError: Input references a missing node or output
            CycleError: Dependencies are cyclic
        """
        graph = cls()
        for declaration in declarations:
            graph.add_node(declaration.to_node())
        graph.validate()
        return graph

    def add_node(self, node: ResourceNode) -> None:
        """Add a node; edges are derived from its inputs on validation."""
        if node.id in self.nodes:
            raise DuplicateNodeError(node.id)
        self.nodes[node.id] = node
        self._layers = None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, node_id: str) -> ResourceNode:
        return self.nodes[node_id]

    # Edges

    def edges(self) -> dict[str, set[str]]:
        """Mapping of node id to the node ids it depends on."""
        return {node_id: node.dependencies for node_id, node in self.nodes.items()}

    def validate(self) -> None:
        """
        Check every reference and compute the topological layers.

        Raises:
            UnknownReferenceError: Input references a missing node or output
            CycleError: Dependencies are cyclic
        """
        for node in self.nodes.values():
            for ref in node.references:
                target = self.nodes.get(ref.node_id)
                if target is None:
                    raise UnknownReferenceError(
                        node.id,
                        ref.node_id,
                        ref.output,
                        hint=f"Available resources: {sorted(self.nodes)}",
                    )
                if ref.output not in target.output_names:
                    raise UnknownReferenceError(
                        node.id,
                        ref.node_id,
                        ref.output,
                        hint=f"Declared outputs of '{target.id}': {sorted(target.output_names)}",
                    )
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise UnknownReferenceError(node.id, dep)

        edges = self.edges()
        result = DAGResolver(list(self.nodes), edges).get_layers()
        if not result.is_success:
            unordered = result.metadata.get("unordered", [])
            raise CycleError(self._cycle_members(set(unordered), edges))

        assert result.value is not None
        self._layers = result.value
        logger.debug(f"Resolved {len(self.nodes)} resources into {len(self._layers)} layers")

    @staticmethod
    def _cycle_members(unordered: set[str], edges: dict[str, set[str]]) -> list[str]:
        """Drop nodes that are merely downstream of a cycle."""
        remaining = set(unordered)
        changed = True
        while changed:
            changed = False
            for node_id in list(remaining):
                has_dependent = any(
                    node_id in edges[other] for other in remaining if other != node_id
                )
                self_loop = node_id in edges[node_id]
                if not has_dependent and not self_loop:
                    remaining.discard(node_id)
                    changed = True
        return sorted(remaining or unordered)

    def topological_layers(self) -> list[set[str]]:
        """
        Layers of node ids; every dependency of a node lies in an earlier layer.

        Order within a layer is unspecified.
        """
        if self._layers is None:
            self.validate()
        assert self._layers is not None
        return [set(layer) for layer in self._layers]

    def reverse_layers(self) -> list[set[str]]:
        """Layers in teardown order (dependents before their dependencies)."""
        return list(reversed(self.topological_layers()))

    def dependents_of(self, node_id: str) -> set[str]:
        """All nodes that transitively depend on node_id."""
        edges = self.edges()
        found: set[str] = set()
        frontier = [node_id]
        while frontier:
            current = frontier.pop()
            for other, deps in edges.items():
                if current in deps and other not in found:
                    found.add(other)
                    frontier.append(other)
        return found

    # Cells

    def output_cell(self, ref: OutputRef) -> ValueCell[Any]:
        """Cell for the referenced output."""
        return self.nodes[ref.node_id].outputs[ref.output]

    def input_cell(self, node_id: str) -> ValueCell[dict[str, Any]]:
        """
        Aggregated cell resolving to the node's fully materialized inputs.

        Secret if any referenced cell or literal inside the inputs is secret.
        """
        cell = self._input_cells.get(node_id)
        if cell is None:
            inputs = self.nodes[node_id].inputs
            cell = build_input_cell(inputs, self.output_cell, f"{node_id}.inputs")
            self._input_cells[node_id] = cell
        return cell


__all__ = ["DependencyGraph"]
