"""Error monad for declaration loading, registry and DAG planning.

Used where a failure is an expected outcome the caller must inspect (bad
YAML, a cycle found while ordering). Apply runs use ApplyResult instead, and
graph construction turns these failures into typed GraphBuildError exceptions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class LoadStatus(str, Enum):
    """Outcome of a load/validation step."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class LoadResult(Generic[T]):  # noqa: UP046
    """
    Success-with-value or failure-with-error.

    Usage:
        result = load_stack_from_file("stacks/eks.yaml")
        if result.is_success:
            stack = result.value
        else:
            logger.error(result.error)

    Attributes:
        status: SUCCESS or FAILED
        value: Payload on success
        error: Human-readable message on failure
        source: Where the input came from (file path, "<string>", stack name)
        metadata: Structured details (e.g. {"unordered": [...]} for cycles)
    """

    status: LoadStatus
    value: T | None = None
    error: str | None = None
    source: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status == LoadStatus.SUCCESS and self.value is None:
            raise ValueError("Success result must have a value")
        if self.status == LoadStatus.FAILED and not self.error:
            raise ValueError("Failed result must have an error message")

    @property
    def is_success(self) -> bool:
        return self.status == LoadStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status == LoadStatus.FAILED

    @classmethod
    def success(
        cls, value: T, source: str | None = None, metadata: dict[str, Any] | None = None
    ) -> "LoadResult[T]":
        return cls(status=LoadStatus.SUCCESS, value=value, source=source, metadata=metadata or {})

    @classmethod
    def failure(
        cls, error: str, source: str | None = None, metadata: dict[str, Any] | None = None
    ) -> "LoadResult[T]":
        return cls(status=LoadStatus.FAILED, error=error, source=source, metadata=metadata or {})

    def __bool__(self) -> bool:
        return self.is_success

    def unwrap(self) -> T:
        """Get value or raise ValueError carrying the load error."""
        if not self.is_success or self.value is None:
            where = f" ({self.source})" if self.source else ""
            raise ValueError(f"Cannot unwrap failed result{where}: {self.error}")
        return self.value


__all__ = ["LoadResult", "LoadStatus"]
