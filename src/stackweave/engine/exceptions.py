"""Exception hierarchy for stack building and apply.

Exception Hierarchy:
    StackError (base)
    ├── GraphBuildError (fatal at build time, no provider call is ever made)
    │   ├── CycleError
    │   ├── UnknownReferenceError
    │   ├── DuplicateNodeError
    │   ├── UnknownKindError
    │   └── PolicyViolationError
    ├── ProviderError (one node's create/update/delete failed)
    ├── UpstreamFailure (a dependency failed, provider never called)
    ├── ApplyCancelled (apply cancelled before or during dispatch)
    ├── StateError (persisted state unreadable or of an unknown version)
    ├── CellAlreadySettledError
    ├── CellFailedError
    └── InvalidTransitionError
"""

from __future__ import annotations

from enum import Enum


class StackError(Exception):
    """Base exception for all stackweave errors."""

    pass


class GraphBuildError(StackError):
    """Dependency graph could not be built from the declaration."""

    pass


class CycleError(GraphBuildError):
    """
    Dependency edges contain a cycle.

    Attributes:
        nodes: Node ids that could not be ordered (members of, or blocked by, a cycle)
    """

    def __init__(self, nodes: list[str]):
        self.nodes = sorted(nodes)
        super().__init__(f"Cyclic dependency detected between resources: {', '.join(self.nodes)}")

    def __repr__(self) -> str:
        return f"CycleError(nodes={self.nodes!r})"


class UnknownReferenceError(GraphBuildError):
    """
    An input references a node or output name that does not exist.

    Attributes:
        node_id: Node holding the bad reference
        target: Referenced node id
        output: Referenced output name (None for explicit depends_on entries)
    """

    def __init__(self, node_id: str, target: str, output: str | None = None, hint: str = ""):
        self.node_id = node_id
        self.target = target
        self.output = output

        if output is None:
            message = f"Resource '{node_id}' depends on unknown resource '{target}'"
        else:
            message = f"Resource '{node_id}' references unknown output '{target}.{output}'"
        if hint:
            message += f". {hint}"
        super().__init__(message)


class DuplicateNodeError(GraphBuildError):
    """Two resources were declared with the same id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Resource '{node_id}' is declared more than once")


class UnknownKindError(GraphBuildError):
    """A resource uses a kind with no registered provider adapter."""

    def __init__(self, node_id: str, kind: str, available: list[str]):
        self.node_id = node_id
        self.kind = kind
        super().__init__(
            f"Resource '{node_id}' has unknown kind '{kind}'. Available: {sorted(available)}"
        )


class PolicyViolationError(GraphBuildError):
    """Mandatory resource policies were violated before any provider call."""

    def __init__(self, violations: list[str]):
        self.violations = violations
        super().__init__("Policy violations: " + "; ".join(violations))


class ProviderError(StackError):
    """
    A provider operation failed for a specific node.

    Non-fatal to the run, fatal to the node and every node depending on it.

    Attributes:
        node_id: Node whose provider call failed (may be empty when raised by an adapter)
        operation: create, update, delete or read
        details: Error text reported by the provider
    """

    def __init__(self, details: str, node_id: str = "", operation: str = ""):
        self.node_id = node_id
        self.operation = operation
        self.details = details

        prefix = f"{operation} failed" if operation else "Provider error"
        if node_id:
            prefix += f" for '{node_id}'"
        super().__init__(f"{prefix}: {details}")


class UpstreamFailure(StackError):
    """A dependency of this node failed, so its provider was never called."""

    def __init__(self, node_id: str, upstream: list[str]):
        self.node_id = node_id
        self.upstream = sorted(upstream)
        super().__init__(
            f"Resource '{node_id}' not applied: upstream failure in {', '.join(self.upstream)}"
        )


class ApplyCancelled(StackError):  # noqa: N818
    """Apply was cancelled (timeout or explicit cancel) before this node completed."""

    def __init__(self, node_id: str = ""):
        self.node_id = node_id
        super().__init__(f"Resource '{node_id}' cancelled" if node_id else "Apply cancelled")


class StateError(StackError):
    """Persisted stack state cannot be read or has an unsupported version."""

    pass


class CellAlreadySettledError(StackError):
    """A value cell was assigned twice."""

    pass


class CellFailedError(StackError):
    """Awaited value cell settled as failed."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Value '{name}' failed: {reason}")


class InvalidTransitionError(StackError):
    """Node lifecycle transition not allowed by the state machine."""

    def __init__(self, node_id: str, current: str, target: str):
        self.node_id = node_id
        self.current = current
        self.target = target
        super().__init__(f"Resource '{node_id}' cannot move from {current} to {target}")


class FailureKind(str, Enum):
    """Why a node ended FAILED."""

    PROVIDER_ERROR = "provider_error"
    UPSTREAM_FAILURE = "upstream_failure"
    CANCELLED = "cancelled"
    INPUT_ERROR = "input_error"
    STATE_ERROR = "state_error"
    POLICY_VIOLATION = "policy_violation"
