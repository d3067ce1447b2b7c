"""
DAG ordering for resource provisioning.

ARCHITECTURAL DECISION: This module is intentionally SYNCHRONOUS.

Rationale:
- Pure in-memory graph algorithms (Kahn's topological sort, layer computation)
- No I/O or provider calls
- Used as the planning step before async provider dispatch

Design Pattern:
    1. DAGResolver.get_layers() -> synchronous planning
    2. ApplyEngine.apply() -> async dispatch of planned layers
"""

from collections import deque

from .load_result import LoadResult


class DAGResolver:
    """Resolves provisioning order for resources based on their dependencies."""

    def __init__(self, nodes: list[str], dependencies: dict[str, set[str]]):
        """
        Initialize DAG resolver.

        Args:
            nodes: Resource ids
            dependencies: Mapping of resource id to the ids it depends on
        """
        self.nodes = nodes
        self.dependencies = dependencies

    def _check_known(self) -> LoadResult[None] | None:
        known = set(self.nodes)
        for node, deps in self.dependencies.items():
            if node not in known:
                return LoadResult.failure(f"Resource '{node}' in dependencies but not in node list")
            for dep in deps:
                if dep not in known:
                    return LoadResult.failure(
                        f"Dependency '{dep}' for resource '{node}' not found in node list",
                        metadata={"node": node, "missing": dep},
                    )
        return None

    def topological_sort(self) -> LoadResult[list[str]]:
        """
        Perform topological sort to determine provisioning order.

        Returns:
            Result containing ordered resource ids, or a failure whose metadata
            lists the ids left unordered when a cycle exists
        """
        unknown = self._check_known()
        if unknown is not None:
            return LoadResult.failure(
                unknown.error or "unknown dependency", metadata=unknown.metadata
            )

        in_degree = {node: 0 for node in self.nodes}
        adj_list: dict[str, list[str]] = {node: [] for node in self.nodes}

        for node, deps in self.dependencies.items():
            for dep in deps:
                adj_list[dep].append(node)
                in_degree[node] += 1

        # Kahn's algorithm
        queue = deque(node for node in self.nodes if in_degree[node] == 0)
        result = []

        while queue:
            current = queue.popleft()
            result.append(current)

            for neighbor in adj_list[current]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(self.nodes):
            unordered = sorted(set(self.nodes) - set(result))
            return LoadResult.failure(
                "Cyclic dependency detected between resources",
                metadata={"unordered": unordered},
            )

        return LoadResult.success(result)

    def get_layers(self) -> LoadResult[list[set[str]]]:
        """
        Group resources into layers that can be provisioned concurrently.

        Every dependency of a resource lies in a strictly earlier layer.

        Returns:
            Result containing the list of layers
        """
        unknown = self._check_known()
        if unknown is not None:
            return LoadResult.failure(
                unknown.error or "unknown dependency", metadata=unknown.metadata
            )

        layers: list[set[str]] = []
        completed: set[str] = set()
        remaining = set(self.nodes)

        while remaining:
            # Resources whose dependencies are all completed
            ready = {
                node
                for node in remaining
                if all(dep in completed for dep in self.dependencies.get(node, ()))
            }

            if not ready:
                return LoadResult.failure(
                    "Cyclic dependency detected between resources",
                    metadata={"unordered": sorted(remaining)},
                )

            layers.append(ready)
            completed.update(ready)
            remaining.difference_update(ready)

        return LoadResult.success(layers)
