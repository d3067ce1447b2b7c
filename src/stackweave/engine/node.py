"""Resource nodes, their lifecycle states and the actions taken on them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import FailureKind, InvalidTransitionError
from .references import OutputRef, collect_references
from .value_cell import ValueCell

ID_OUTPUT = "id"
"""Every resource exposes the provider-assigned resource id under this output name."""


class NodeState(str, Enum):
    """
    Lifecycle state of a resource node within one run.

    PLANNED -> CREATING -> CREATED | FAILED
    CREATED -> UPDATING -> CREATED | FAILED
    CREATED -> DELETING -> DELETED | FAILED

    A fresh node whose stored record already exists goes straight from
    PLANNED to UPDATING (changed), CREATED (unchanged) or DELETING (removed).
    """

    PLANNED = "planned"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        """Check if no further transition happens in this run."""
        return self in (NodeState.CREATED, NodeState.DELETED, NodeState.FAILED)

    def is_failed(self) -> bool:
        """Check if the node failed."""
        return self == NodeState.FAILED


_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.PLANNED: frozenset(
        {
            NodeState.CREATING,
            NodeState.UPDATING,
            NodeState.DELETING,
            NodeState.CREATED,
            NodeState.FAILED,
        }
    ),
    NodeState.CREATING: frozenset({NodeState.CREATED, NodeState.FAILED}),
    NodeState.UPDATING: frozenset({NodeState.CREATED, NodeState.FAILED}),
    NodeState.CREATED: frozenset({NodeState.UPDATING, NodeState.DELETING}),
    NodeState.DELETING: frozenset({NodeState.DELETED, NodeState.FAILED}),
    NodeState.DELETED: frozenset(),
    NodeState.FAILED: frozenset(),
}


class NodeAction(str, Enum):
    """Decision taken (or planned) for a node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    UNCHANGED = "unchanged"
    DELETE = "delete"


@dataclass(frozen=True)
class ResourceDeclaration:
    """
    Immutable declaration of one resource.

    Attributes:
        id: Unique resource id within the stack
        kind: Provider kind (e.g. "vpc", "eks_cluster")
        inputs: Desired inputs; values may be literals or references
        depends_on: Explicit ordering hints (resource ids)
        outputs: Declared output names ("id" is always implied)
        secret_outputs: Output names that are always secret
    """

    id: str
    kind: str
    inputs: dict[str, Any] = field(default_factory=dict)
    depends_on: frozenset[str] = frozenset()
    outputs: frozenset[str] = frozenset()
    secret_outputs: frozenset[str] = frozenset()

    def to_node(self) -> ResourceNode:
        """Create a fresh node (with fresh pending output cells) for one run."""
        return ResourceNode(
            id=self.id,
            kind=self.kind,
            inputs=dict(self.inputs),
            output_names=self.outputs | {ID_OUTPUT},
            depends_on=self.depends_on,
            secret_outputs=self.secret_outputs,
        )


@dataclass(eq=False)
class ResourceNode:
    """A unit of desired state plus its per-run lifecycle and output cells."""

    id: str
    kind: str
    inputs: dict[str, Any]
    output_names: frozenset[str]
    depends_on: frozenset[str] = frozenset()
    secret_outputs: frozenset[str] = frozenset()
    state: NodeState = NodeState.PLANNED
    action: NodeAction | None = None
    resource_id: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    outputs: dict[str, ValueCell[Any]] = field(init=False)

    def __post_init__(self) -> None:
        self.outputs = {
            name: ValueCell(f"{self.id}.{name}", secret=name in self.secret_outputs)
            for name in sorted(self.output_names)
        }

    @property
    def references(self) -> list[OutputRef]:
        """All output references held in this node's inputs."""
        return collect_references(self.inputs)

    @property
    def dependencies(self) -> set[str]:
        """Node ids this node depends on (data references plus explicit hints)."""
        return {ref.node_id for ref in self.references} | set(self.depends_on)

    @property
    def resource_id_secret(self) -> bool:
        """True when the provider id is tainted and must not be shown or stored in plaintext."""
        cell = self.outputs.get(ID_OUTPUT)
        return cell is not None and cell.secret

    def transition(self, target: NodeState) -> None:
        """
        Move to a new lifecycle state.

        Raises:
            InvalidTransitionError: If the state machine does not allow it
        """
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.id, self.state.value, target.value)
        self.state = target

    def mark_failed(self, kind: FailureKind, reason: str) -> None:
        """Fail the node and every still-pending output cell."""
        self.transition(NodeState.FAILED)
        self.failure_kind = kind
        self.error = reason
        for cell in self.outputs.values():
            if cell.is_pending:
                cell.fail(reason)

    def taint_outputs(self) -> None:
        """Mark every output secret (used when any resolved input was secret)."""
        for cell in self.outputs.values():
            cell.mark_secret()

    def __repr__(self) -> str:
        return f"ResourceNode(id={self.id!r}, kind={self.kind!r}, state={self.state.value})"


__all__ = [
    "ID_OUTPUT",
    "NodeState",
    "NodeAction",
    "ResourceDeclaration",
    "ResourceNode",
]
