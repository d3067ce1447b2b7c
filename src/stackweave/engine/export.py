"""Caller-visible stack exports.

An ExportSurface binds export names to value cells. Reading it never yields
plaintext of a secret cell: outputs() shows "<redacted>" and secrets() says
which names are secret. The single path to plaintext is reveal(), which the
caller must invoke with a reason and which is recorded in the audit log.

Example:
    >>> surface = ExportSurface("demo")
    >>> surface.export("cluster_id", ValueCell.resolved("clu-1"))
    >>> surface.export("role_arn", ValueCell.resolved("arn:aws:iam::1:role/r", secret=True))
    >>> surface.outputs()
    {'cluster_id': 'clu-1', 'role_arn': '<redacted>'}
    >>> surface.secrets()
    {'cluster_id': False, 'role_arn': True}
"""

from __future__ import annotations

import logging
from typing import Any

from .secrets.audit import SecretAuditLog
from .secrets.redactor import SecretRedactor
from .value_cell import ValueCell

logger = logging.getLogger(__name__)

REDACTED = SecretRedactor.REDACTION_MARKER


class ExportSurface:
    """Named exports of one applied stack."""

    def __init__(self, stack_name: str = "", audit_log: SecretAuditLog | None = None) -> None:
        self.stack_name = stack_name
        self.audit_log = audit_log or SecretAuditLog()
        self._cells: dict[str, ValueCell[Any]] = {}

    def export(self, name: str, cell: ValueCell[Any]) -> None:
        """
        Bind an export name to a cell.

        Raises:
            ValueError: If the name is already exported
        """
        if name in self._cells:
            raise ValueError(f"Export '{name}' is already defined")
        self._cells[name] = cell

    @property
    def names(self) -> list[str]:
        return list(self._cells)

    def is_secret(self, name: str) -> bool:
        return self._cells[name].secret

    def outputs(self) -> dict[str, Any]:
        """Resolved exports, with secret values replaced by the redaction marker."""
        result: dict[str, Any] = {}
        for name, cell in self._cells.items():
            if not cell.is_resolved:
                continue
            result[name] = REDACTED if cell.secret else cell.value
        return result

    def secrets(self) -> dict[str, bool]:
        """Secret flag for every export name."""
        return {name: cell.secret for name, cell in self._cells.items()}

    def failed(self) -> list[str]:
        """Export names whose cell failed."""
        return [name for name, cell in self._cells.items() if cell.is_failed]

    def failure_reason(self, name: str) -> str | None:
        return self._cells[name].reason

    def reveal(self, name: str, reason: str) -> Any:  # noqa: ANN401
        """
        Return the plaintext of an export.

        Secret reveals are recorded in the audit log together with the reason.

        Raises:
            KeyError: Unknown export name
            ValueError: Empty reason, or export not resolved
        """
        if name not in self._cells:
            raise KeyError(f"Unknown export: {name}. Available: {self.names}")
        cell = self._cells[name]

        if cell.secret and not reason.strip():
            self.audit_log.log_reveal(
                self.stack_name, name, reason, success=False, error_message="reason is required"
            )
            raise ValueError("A reason is required to reveal a secret export")

        if not cell.is_resolved:
            state = "failed" if cell.is_failed else "not resolved"
            if cell.secret:
                self.audit_log.log_reveal(
                    self.stack_name, name, reason, success=False, error_message=f"export {state}"
                )
            raise ValueError(f"Export '{name}' is {state}")

        if cell.secret:
            self.audit_log.log_reveal(self.stack_name, name, reason, success=True)
        return cell.value

    def __repr__(self) -> str:
        return f"ExportSurface(stack={self.stack_name!r}, outputs={self.outputs()!r})"


__all__ = ["ExportSurface", "REDACTED"]
