"""
Stack declarations.

A Stack is the explicit entry point that replaces a global run context: it
collects resource declarations and export bindings, and every build()
produces a fresh DependencyGraph (fresh nodes, fresh pending cells) plus an
ExportSurface bound to those cells. The same Stack can therefore be applied
any number of times, by any number of engines, in isolation.

Example:
    stack = Stack("demo")
    network = stack.resource("network", "vpc", {"cidr_block": "10.0.0.0/16"})
    cluster = stack.resource("cluster", "eks_cluster", {"vpc_id": network.id})
    role = stack.resource(
        "role",
        "iam_role",
        {"principal": cluster["oidc_url"]},
        outputs=["arn"],
        secret_outputs=["arn"],
    )
    stack.export("cluster_id", cluster.id)
    stack.export("role_arn", role["arn"])
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .exceptions import DuplicateNodeError, UnknownKindError, UnknownReferenceError
from .export import ExportSurface
from .graph import DependencyGraph
from .node import ID_OUTPUT, ResourceDeclaration
from .provider import ProviderRegistry
from .references import OutputRef, build_input_cell, collect_references
from .secrets.audit import SecretAuditLog

logger = logging.getLogger(__name__)


class ResourceHandle:
    """Declared resource; produces references to its outputs."""

    def __init__(self, declaration: ResourceDeclaration) -> None:
        self.declaration = declaration

    @property
    def id(self) -> OutputRef:
        """Reference to the provider-assigned resource id."""
        return OutputRef(self.declaration.id, ID_OUTPUT)

    def output(self, name: str) -> OutputRef:
        return OutputRef(self.declaration.id, name)

    def __getitem__(self, name: str) -> OutputRef:
        return self.output(name)

    def __repr__(self) -> str:
        return f"ResourceHandle({self.declaration.id!r}, kind={self.declaration.kind!r})"


@dataclass
class StackBuild:
    """Result of building a stack for one run."""

    graph: DependencyGraph
    exports: ExportSurface


class Stack:
    """Declarations and exports of one stack."""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._declarations: dict[str, ResourceDeclaration] = {}
        self._exports: dict[str, Any] = {}
        # Ids whose output names come from the provider registry at build time
        self._default_outputs: set[str] = set()

    def resource(
        self,
        id: str,
        kind: str,
        inputs: dict[str, Any] | None = None,
        depends_on: Iterable[str | ResourceHandle] = (),
        outputs: Iterable[str] | None = None,
        secret_outputs: Iterable[str] = (),
    ) -> ResourceHandle:
        """
        Declare a resource.

        Args:
            id: Unique resource id within the stack
            kind: Provider kind
            inputs: Literals, OutputRefs, Derived values or Secrets (nested dict/list allowed)
            depends_on: Explicit ordering dependencies (ids or handles)
            outputs: Output names; defaults to the provider's declared outputs at build time
            secret_outputs: Output names always tagged secret

        Raises:
            DuplicateNodeError: If the id is already declared
        """
        if id in self._declarations:
            raise DuplicateNodeError(id)
        deps = frozenset(
            d.declaration.id if isinstance(d, ResourceHandle) else d for d in depends_on
        )
        declaration = ResourceDeclaration(
            id=id,
            kind=kind,
            inputs=dict(inputs or {}),
            depends_on=deps,
            outputs=frozenset(outputs) if outputs is not None else frozenset(),
            secret_outputs=frozenset(secret_outputs),
        )
        self._declarations[id] = declaration
        if outputs is None:
            self._default_outputs.add(id)
        return ResourceHandle(declaration)

    def export(self, name: str, value: Any) -> None:  # noqa: ANN401
        """
        Export a value (usually an OutputRef) under a name.

        Raises:
            ValueError: If the name is already exported
        """
        if name in self._exports:
            raise ValueError(f"Export '{name}' is already defined")
        self._exports[name] = value

    @property
    def declarations(self) -> list[ResourceDeclaration]:
        return list(self._declarations.values())

    @property
    def exports(self) -> dict[str, Any]:
        return dict(self._exports)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._declarations

    def __len__(self) -> int:
        return len(self._declarations)

    def resolved_declarations(
        self, registry: ProviderRegistry | None = None
    ) -> list[ResourceDeclaration]:
        """
        Declarations with provider defaults applied.

        With a registry, resources declared without explicit outputs get the
        adapter's output names, and every resource inherits the adapter's
        always-secret outputs.

        Raises:
            UnknownKindError: If a kind is not registered
        """
        if registry is None:
            return self.declarations

        resolved: list[ResourceDeclaration] = []
        for declaration in self._declarations.values():
            if not registry.has(declaration.kind):
                raise UnknownKindError(declaration.id, declaration.kind, registry.list_kinds())
            adapter = registry.get(declaration.kind)
            outputs = declaration.outputs
            if declaration.id in self._default_outputs:
                outputs = adapter.output_names() | adapter.secret_outputs
            resolved.append(
                ResourceDeclaration(
                    id=declaration.id,
                    kind=declaration.kind,
                    inputs=declaration.inputs,
                    depends_on=declaration.depends_on,
                    outputs=outputs,
                    secret_outputs=declaration.secret_outputs | adapter.secret_outputs,
                )
            )
        return resolved

    def build(
        self,
        registry: ProviderRegistry | None = None,
        audit_log: SecretAuditLog | None = None,
    ) -> StackBuild:
        """
        Build a fresh graph and export surface.

        Raises:
            GraphBuildError: Unknown kind, unknown reference, duplicate id or cycle
        """
        graph = DependencyGraph.from_declarations(self.resolved_declarations(registry))

        surface = ExportSurface(self.name, audit_log)
        for name, value in self._exports.items():
            for ref in collect_references(value):
                if ref.node_id not in graph:
                    raise UnknownReferenceError(f"export:{name}", ref.node_id, ref.output)
                if ref.output not in graph[ref.node_id].output_names:
                    raise UnknownReferenceError(
                        f"export:{name}",
                        ref.node_id,
                        ref.output,
                        hint=f"Declared outputs: {sorted(graph[ref.node_id].output_names)}",
                    )
            surface.export(name, build_input_cell(value, graph.output_cell, f"export.{name}"))

        logger.debug(
            f"Built stack '{self.name}': {len(graph)} resources, {len(self._exports)} exports"
        )
        return StackBuild(graph=graph, exports=surface)

    def __repr__(self) -> str:
        return f"Stack({self.name!r}, resources={len(self._declarations)})"


__all__ = ["Stack", "StackBuild", "ResourceHandle"]
