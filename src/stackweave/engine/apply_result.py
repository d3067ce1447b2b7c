"""
Run-level result monad for apply and destroy.

Aligned with LoadResult pattern - provides type-safe result handling with
the per-node outcome always preserved for debugging.

Design Principles:
- Status distinguishes full success, partial failure and build failure
- build_failed guarantees that no provider call was made
- Factory methods ensure valid state combinations
- to_response() is single source of truth for formatting
- Error text passes through the SecretRedactor before it leaves the result
"""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from .exceptions import FailureKind
from .export import REDACTED, ExportSurface
from .node import NodeAction, NodeState, ResourceNode
from .secrets.redactor import SecretRedactor

logger = logging.getLogger(__name__)


@dataclass
class NodeResult:
    """Outcome of one node in a run."""

    node_id: str
    kind: str
    state: NodeState
    action: NodeAction | None = None
    resource_id: str | None = None
    error: str | None = None
    failure_kind: FailureKind | None = None

    @classmethod
    def from_node(cls, node: ResourceNode) -> NodeResult:
        return cls(
            node_id=node.id,
            kind=node.kind,
            state=node.state,
            action=node.action,
            resource_id=REDACTED if node.resource_id_secret else node.resource_id,
            error=node.error,
            failure_kind=node.failure_kind,
        )

    @property
    def failed(self) -> bool:
        return self.state.is_failed()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "state": self.state.value,
            "action": self.action.value if self.action else None,
        }
        if self.resource_id:
            data["resource_id"] = self.resource_id
        if self.failed:
            data["failure"] = self.failure_kind.value if self.failure_kind else None
            data["error"] = self.error
        return data


@dataclass
class ApplyResult:
    """
    Monad for run results (success/partial/build_failed).

    Example Usage:
        result = await engine.apply(stack)
        if result.is_success:
            print(result.outputs)
        else:
            for node_id, node in result.failed_nodes.items():
                print(node_id, node.failure_kind, node.error)

        # Format for MCP tool
        return result.to_response()
    """

    status: Literal["success", "partial", "build_failed"]
    stack_name: str
    operation: Literal["apply", "destroy"] = "apply"
    exports: ExportSurface | None = None
    nodes: dict[str, NodeResult] = field(default_factory=dict)
    error: str | None = None
    provider_calls: int = 0
    secret_redactor: SecretRedactor | None = None
    warnings: list[str] = field(default_factory=list)

    # Factory Methods (Type-Safe Construction)

    @staticmethod
    def success(
        stack_name: str,
        nodes: dict[str, NodeResult],
        exports: ExportSurface | None = None,
        operation: Literal["apply", "destroy"] = "apply",
        provider_calls: int = 0,
        secret_redactor: SecretRedactor | None = None,
        warnings: list[str] | None = None,
    ) -> ApplyResult:
        """Every node reached its target state."""
        return ApplyResult(
            status="success",
            stack_name=stack_name,
            operation=operation,
            exports=exports,
            nodes=nodes,
            provider_calls=provider_calls,
            secret_redactor=secret_redactor,
            warnings=list(warnings or []),
        )

    @staticmethod
    def partial(
        stack_name: str,
        nodes: dict[str, NodeResult],
        exports: ExportSurface | None = None,
        operation: Literal["apply", "destroy"] = "apply",
        provider_calls: int = 0,
        secret_redactor: SecretRedactor | None = None,
        warnings: list[str] | None = None,
    ) -> ApplyResult:
        """
        Some nodes failed; all unaffected branches were still completed.

        The error summarizes failed nodes; details are in nodes.
        """
        failed = sorted(node_id for node_id, node in nodes.items() if node.failed)
        error = f"{len(failed)} resource(s) failed: {', '.join(failed)}"
        return ApplyResult(
            status="partial",
            stack_name=stack_name,
            operation=operation,
            exports=exports,
            nodes=nodes,
            error=error,
            provider_calls=provider_calls,
            secret_redactor=secret_redactor,
            warnings=list(warnings or []),
        )

    @staticmethod
    def build_failed(
        stack_name: str,
        error: str,
        operation: Literal["apply", "destroy"] = "apply",
    ) -> ApplyResult:
        """Graph could not be built; no side effects occurred."""
        return ApplyResult(
            status="build_failed", stack_name=stack_name, operation=operation, error=error
        )

    # Accessors

    @property
    def is_success(self) -> bool:
        return self.status == "success"

    @property
    def failed_nodes(self) -> dict[str, NodeResult]:
        return {node_id: node for node_id, node in self.nodes.items() if node.failed}

    @property
    def outputs(self) -> dict[str, Any]:
        """Exported values, secrets redacted."""
        return self.exports.outputs() if self.exports else {}

    @property
    def secret_outputs(self) -> dict[str, bool]:
        return self.exports.secrets() if self.exports else {}

    def actions(self) -> dict[str, int]:
        """Count of nodes per action taken."""
        counts: dict[str, int] = {}
        for node in self.nodes.values():
            if node.action is not None:
                counts[node.action.value] = counts.get(node.action.value, 0) + 1
        return counts

    # Formatting Methods

    def to_response(self, debug: bool = False) -> dict[str, Any]:
        """
        Format result for MCP tool response.

        Examples:
            # Success
            {"status": "success", "outputs": {...}, "secret_outputs": {...}}

            # Partial
            {"status": "partial", "outputs": {...}, "secret_outputs": {...},
             "failed": {"role": {"failure": "provider_error", "error": "..."}},
             "error": "1 resource(s) failed: role"}

            # Advisory policy violations ride along on success or partial
            {"status": "success", ..., "warnings": ["[advisory] require-non-root-deployment: ..."]}

            # Build failed (no side effects)
            {"status": "build_failed", "error": "Cyclic dependency ..."}
        """
        response: dict[str, Any] = {"status": self.status}

        if self.status == "build_failed":
            response["error"] = self._redact(self.error)
            return response

        response["outputs"] = self.outputs
        response["secret_outputs"] = self.secret_outputs
        response["actions"] = self.actions()

        if self.status == "partial":
            response["failed"] = {
                node_id: {
                    "failure": node.failure_kind.value if node.failure_kind else None,
                    "error": self._redact(node.error),
                }
                for node_id, node in sorted(self.failed_nodes.items())
            }
            response["error"] = self.error

        if self.warnings:
            response["warnings"] = [self._redact(warning) for warning in self.warnings]

        if debug:
            response["logfile"] = self._write_debug_file()

        return response

    def _redact(self, text: str | None) -> str | None:
        if text is None or self.secret_redactor is None:
            return text
        return str(self.secret_redactor.redact(text))

    def _build_debug_data(self) -> dict[str, Any]:
        """
        Full per-node detail.

        SECURITY: exports are already redacted and error text is scrubbed by
        the redactor.
        """
        data: dict[str, Any] = {
            "status": self.status,
            "stack": self.stack_name,
            "operation": self.operation,
            "outputs": self.outputs,
            "secret_outputs": self.secret_outputs,
            "error": self.error,
            "provider_calls": self.provider_calls,
            "warnings": self.warnings,
            "resources": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }
        if self.secret_redactor:
            data = self.secret_redactor.redact(data)
        return data

    def _write_debug_file(self) -> str:
        """Write full run details to a temp file and return its path."""
        debug_data = self._build_debug_data()

        safe_name = "".join(c if c.isalnum() or c in "-_" else "-" for c in self.stack_name)
        timestamp_ms = int(datetime.now().timestamp() * 1000)
        filename = Path(tempfile.gettempdir()) / f"{safe_name or 'stack'}-{timestamp_ms}.json"

        try:
            with open(filename, "w", encoding="utf-8") as f:
                json.dump(debug_data, f, indent=2, default=str, ensure_ascii=False)

            logger.info(f"Debug file written: {filename}")
            return str(filename)

        except OSError as e:
            logger.error(f"Failed to write debug file {filename}: {e}")
            return f"ERROR: Failed to write debug file: {e}"


__all__ = ["ApplyResult", "NodeResult"]
