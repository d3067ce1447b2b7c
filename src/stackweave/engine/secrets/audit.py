"""Audit log of deliberate secret reveals.

Revealing a secret export in plaintext is always an explicit caller action.
Each reveal (and each refused reveal) is recorded here so operators can see
who asked for which value and why. Values themselves are never recorded.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class SecretAccessEvent(BaseModel):
    """A single reveal of a secret export."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(description="ISO 8601 timestamp of the reveal")
    stack_name: str = Field(description="Stack the export belongs to")
    export_name: str = Field(description="Name of the revealed export")
    reason: str = Field(description="Caller-supplied justification")
    success: bool = Field(description="Whether a value was returned")
    error_message: str | None = Field(default=None, description="Why the reveal was refused")


class SecretAuditLog:
    """In-memory audit log of secret reveals with optional JSON export."""

    def __init__(self) -> None:
        self.events: list[SecretAccessEvent] = []

    def log_reveal(
        self,
        stack_name: str,
        export_name: str,
        reason: str,
        success: bool,
        error_message: str | None = None,
    ) -> SecretAccessEvent:
        """Record a reveal attempt."""
        event = SecretAccessEvent(
            timestamp=datetime.now(UTC).isoformat(),
            stack_name=stack_name,
            export_name=export_name,
            reason=reason,
            success=success,
            error_message=error_message,
        )
        self.events.append(event)

        if success:
            logger.info(f"Secret export revealed: {stack_name}.{export_name} ({reason})")
        else:
            logger.warning(
                f"Secret export reveal refused: {stack_name}.{export_name}: {error_message}"
            )
        return event

    def get_events(
        self, stack_name: str | None = None, export_name: str | None = None
    ) -> list[SecretAccessEvent]:
        """Filter recorded events."""
        events = self.events
        if stack_name is not None:
            events = [e for e in events if e.stack_name == stack_name]
        if export_name is not None:
            events = [e for e in events if e.export_name == export_name]
        return events

    def export_to_file(self, path: str | Path) -> None:
        """Write all events to a JSON file."""
        data: list[dict[str, Any]] = [event.model_dump() for event in self.events]
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)


__all__ = ["SecretAccessEvent", "SecretAuditLog"]
