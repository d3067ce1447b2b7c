"""
Single-assignment value cells for resource attributes.

A ValueCell holds a value that may only become known after a remote
operation completes (a VPC id, a cluster's OIDC issuer URL, ...). It moves
exactly once from PENDING to RESOLVED or FAILED and can be observed either by
awaiting it or by registering a continuation.

Secret taint is carried on the cell itself. It is sticky: once a cell is
secret it stays secret, and every cell derived from it via apply() or
all_cells() is secret too, including cells derived before the source was
marked.

Example:
    >>> vpc_id = ValueCell("vpc.id")
    >>> subnet_name = vpc_id.apply(lambda v: f"{v}-public")
    >>> vpc_id.resolve("vpc-123")
    >>> subnet_name.value
    'vpc-123-public'
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, Generic, TypeVar

from .exceptions import CellAlreadySettledError, CellFailedError

T = TypeVar("T")
U = TypeVar("U")


class CellStatus(str, Enum):
    """Resolution state of a value cell."""

    PENDING = "pending"
    """Value not known yet."""

    RESOLVED = "resolved"
    """Value assigned."""

    FAILED = "failed"
    """Producer failed, no value will ever be assigned."""

    def is_pending(self) -> bool:
        """Check if the cell is still pending."""
        return self == CellStatus.PENDING

    def is_resolved(self) -> bool:
        """Check if the cell holds a value."""
        return self == CellStatus.RESOLVED

    def is_failed(self) -> bool:
        """Check if the cell failed."""
        return self == CellStatus.FAILED


class ValueCell(Generic[T]):  # noqa: UP046
    """Single-assignment, possibly asynchronous container with a secret taint bit."""

    def __init__(self, name: str = "", secret: bool = False) -> None:
        self.name = name
        self._secret = secret
        self._status = CellStatus.PENDING
        self._value: T | None = None
        self._reason: str | None = None
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[ValueCell[T]], None]] = []
        self._derived: list[ValueCell[Any]] = []

    # Construction helpers

    @classmethod
    def resolved(cls, value: T, name: str = "", secret: bool = False) -> ValueCell[T]:
        """Create a cell that is already resolved."""
        cell: ValueCell[T] = cls(name, secret=secret)
        cell.resolve(value)
        return cell

    @classmethod
    def failed(cls, reason: str, name: str = "", secret: bool = False) -> ValueCell[T]:
        """Create a cell that has already failed."""
        cell: ValueCell[T] = cls(name, secret=secret)
        cell.fail(reason)
        return cell

    # State accessors

    @property
    def status(self) -> CellStatus:
        return self._status

    @property
    def secret(self) -> bool:
        return self._secret

    @property
    def is_pending(self) -> bool:
        return self._status.is_pending()

    @property
    def is_resolved(self) -> bool:
        return self._status.is_resolved()

    @property
    def is_failed(self) -> bool:
        return self._status.is_failed()

    @property
    def reason(self) -> str | None:
        """Failure reason (None unless FAILED)."""
        return self._reason

    @property
    def value(self) -> T:
        """
        Resolved value.

        Raises:
            CellFailedError: If the cell failed
            RuntimeError: If the cell is still pending
        """
        if self._status.is_failed():
            raise CellFailedError(self.name, self._reason or "unknown")
        if self._status.is_pending():
            raise RuntimeError(f"Value '{self.name}' is not resolved yet")
        return self._value  # type: ignore[return-value]

    # Transitions

    def mark_secret(self) -> None:
        """Taint this cell (and everything already derived from it) as secret."""
        if self._secret:
            return
        self._secret = True
        for derived in self._derived:
            derived.mark_secret()

    def resolve(self, value: T, secret: bool = False) -> None:
        """
        Assign the value (PENDING -> RESOLVED).

        Args:
            value: The resolved value
            secret: Also taint the cell as secret

        Raises:
            CellAlreadySettledError: If the cell was already resolved or failed
        """
        self._ensure_pending()
        if secret:
            self.mark_secret()
        self._value = value
        self._status = CellStatus.RESOLVED
        self._settle()

    def fail(self, reason: str) -> None:
        """
        Mark the cell failed (PENDING -> FAILED).

        Raises:
            CellAlreadySettledError: If the cell was already resolved or failed
        """
        self._ensure_pending()
        self._reason = reason
        self._status = CellStatus.FAILED
        self._settle()

    def _ensure_pending(self) -> None:
        if not self._status.is_pending():
            raise CellAlreadySettledError(
                f"Value '{self.name}' is already {self._status.value}; cells are single-assignment"
            )

    def _settle(self) -> None:
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    # Observation

    async def wait(self) -> T:
        """
        Wait until the cell settles and return its value.

        Raises:
            CellFailedError: If the cell failed
        """
        if self._status.is_pending():
            await self._event.wait()
        return self.value

    def on_settled(self, callback: Callable[[ValueCell[T]], None]) -> None:
        """Register a continuation; runs immediately if the cell is already settled."""
        if self._status.is_pending():
            self._callbacks.append(callback)
        else:
            callback(self)

    # Transforms

    def apply(self, fn: Callable[[T], U], name: str | None = None) -> ValueCell[U]:
        """
        Derive a new cell by applying fn to this cell's value.

        The derived cell inherits the secret taint, fails when this cell fails,
        and fails when fn raises.
        """
        derived: ValueCell[U] = ValueCell(name or f"{self.name}.apply", secret=self._secret)
        self._derived.append(derived)

        def propagate(source: ValueCell[T]) -> None:
            if source.is_failed:
                derived.fail(source.reason or "upstream value failed")
                return
            try:
                result = fn(source.value)
            except Exception as e:
                derived.fail(f"transform failed: {e}")
                return
            derived.resolve(result)

        self.on_settled(propagate)
        return derived

    def __repr__(self) -> str:
        if self._status.is_resolved():
            shown = "<redacted>" if self._secret else repr(self._value)
            return f"ValueCell(name={self.name!r}, resolved={shown})"
        if self._status.is_failed():
            return f"ValueCell(name={self.name!r}, failed={self._reason!r})"
        return f"ValueCell(name={self.name!r}, pending)"


def all_cells(cells: Sequence[ValueCell[Any]], name: str = "all") -> ValueCell[list[Any]]:
    """
    Combine cells into one cell resolving to the list of their values.

    Secret if any source is secret (now or later). Fails with the first
    failure reason as soon as any source fails.
    """
    combined: ValueCell[list[Any]] = ValueCell(name, secret=any(c.secret for c in cells))
    for cell in cells:
        cell._derived.append(combined)

    if not cells:
        combined.resolve([])
        return combined

    remaining = len(cells)

    def on_source(source: ValueCell[Any]) -> None:
        nonlocal remaining
        if not combined.is_pending:
            return
        if source.is_failed:
            combined.fail(source.reason or f"value '{source.name}' failed")
            return
        remaining -= 1
        if remaining == 0:
            combined.resolve([c.value for c in cells])

    for cell in cells:
        cell.on_settled(on_source)
    return combined


__all__ = ["CellStatus", "ValueCell", "all_cells"]
