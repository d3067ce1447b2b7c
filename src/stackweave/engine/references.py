"""
Input references between resources.

Declarations never evaluate another resource's attributes directly. Instead
an input holds a reference object, and dependency edges are read off those
objects when the graph is built:

- OutputRef: "output `name` of resource `node_id`"
- Derived: a value computed from other inputs (refs, secrets, literals)
- Secret: a literal that must be treated as secret

At apply time build_input_cell() turns an input structure into one ValueCell
that resolves when every referenced cell has resolved, carrying the secret
taint of anything inside it.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .value_cell import ValueCell, all_cells


@dataclass(frozen=True)
class OutputRef:
    """Reference to an output of another resource."""

    node_id: str
    output: str

    def apply(self, fn: Callable[[Any], Any], name: str = "") -> Derived:
        """Derive a value from this output once it is known."""
        return Derived(sources=(self,), fn=fn, name=name or f"{self}.apply")

    def __str__(self) -> str:
        return f"{self.node_id}.{self.output}"


@dataclass(frozen=True)
class Derived:
    """Value computed from resolved sources: fn(*resolved_sources)."""

    sources: tuple[Any, ...]
    fn: Callable[..., Any] = field(compare=False)
    name: str = "derived"


@dataclass(frozen=True)
class Secret:
    """Literal input value that must be tagged secret."""

    value: Any

    def __repr__(self) -> str:
        return "Secret(<redacted>)"


def derive(fn: Callable[..., Any], *sources: Any, name: str = "derived") -> Derived:
    """Build a Derived value from any mix of refs, secrets and literals."""
    return Derived(sources=tuple(sources), fn=fn, name=name)


def template(*parts: Any) -> Derived:
    """Concatenate literal text and references into one string value."""
    return Derived(
        sources=parts, fn=lambda *values: "".join(str(v) for v in values), name="template"
    )


def collect_references(value: Any) -> list[OutputRef]:
    """Return every OutputRef inside an input structure (depth-first, duplicates kept)."""
    if isinstance(value, OutputRef):
        return [value]
    if isinstance(value, Derived):
        return [ref for source in value.sources for ref in collect_references(source)]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in collect_references(item)]
    if isinstance(value, (list, tuple)):
        return [ref for item in value for ref in collect_references(item)]
    return []


def collect_secrets(value: Any) -> list[Secret]:
    """Return every Secret literal inside an input structure."""
    if isinstance(value, Secret):
        return [value]
    if isinstance(value, Derived):
        return [s for source in value.sources for s in collect_secrets(source)]
    if isinstance(value, dict):
        return [s for item in value.values() for s in collect_secrets(item)]
    if isinstance(value, (list, tuple)):
        return [s for item in value for s in collect_secrets(item)]
    return []


def build_input_cell(
    value: Any,
    lookup: Callable[[OutputRef], ValueCell[Any]],
    name: str = "inputs",
) -> ValueCell[Any]:
    """
    Turn an input structure into a single cell.

    Args:
        value: Literal, OutputRef, Derived, Secret, ValueCell or nested dict/list of them
        lookup: Maps an OutputRef to the producing node's output cell
        name: Name for the resulting cell

    Returns:
        Cell resolving to the fully materialized structure
    """
    if isinstance(value, ValueCell):
        return value
    if isinstance(value, OutputRef):
        return lookup(value)
    if isinstance(value, Secret):
        return ValueCell.resolved(value.value, name=name, secret=True)
    if isinstance(value, Derived):
        sources = [build_input_cell(s, lookup, f"{name}[{i}]") for i, s in enumerate(value.sources)]
        fn = value.fn
        return all_cells(sources, name).apply(lambda values: fn(*values), name=value.name)
    if isinstance(value, dict):
        keys = list(value.keys())
        cells = [build_input_cell(value[k], lookup, f"{name}.{k}") for k in keys]
        return all_cells(cells, name).apply(lambda values: dict(zip(keys, values)), name=name)
    if isinstance(value, (list, tuple)):
        cells = [build_input_cell(item, lookup, f"{name}[{i}]") for i, item in enumerate(value)]
        return all_cells(cells, name).apply(list, name=name)
    return ValueCell.resolved(value, name=name)


__all__ = [
    "OutputRef",
    "Derived",
    "Secret",
    "derive",
    "template",
    "collect_references",
    "collect_secrets",
    "build_input_cell",
]
