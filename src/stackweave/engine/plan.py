"""Side-effect-free preview of an apply."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .node import NodeAction


@dataclass
class PlannedChange:
    """
    Action an apply would take for one resource.

    Attributes:
        node_id: Resource id
        kind: Resource kind (stored kind for deletions)
        action: create, update, replace, unchanged or delete
        known: False when the decision depends on values only an apply can produce
        reason: Short explanation
    """

    node_id: str
    kind: str
    action: NodeAction
    known: bool = True
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "action": self.action.value}
        if not self.known:
            data["known"] = False
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class StackPlan:
    """Planned changes for a stack, in apply order (deletions last).

    Mandatory policy violations set error; advisory ones are listed in warnings.
    """

    stack_name: str
    changes: list[PlannedChange] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def has_changes(self) -> bool:
        return any(change.action != NodeAction.UNCHANGED for change in self.changes)

    def get(self, node_id: str) -> PlannedChange | None:
        for change in self.changes:
            if change.node_id == node_id:
                return change
        return None

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for change in self.changes:
            counts[change.action.value] = counts.get(change.action.value, 0) + 1
        return counts

    def to_response(self) -> dict[str, Any]:
        if self.error is not None:
            return {"status": "build_failed", "error": self.error}
        response: dict[str, Any] = {
            "status": "success",
            "stack": self.stack_name,
            "has_changes": self.has_changes,
            "summary": self.summary(),
            "changes": {change.node_id: change.to_dict() for change in self.changes},
        }
        if self.warnings:
            response["warnings"] = list(self.warnings)
        return response


__all__ = ["PlannedChange", "StackPlan"]
