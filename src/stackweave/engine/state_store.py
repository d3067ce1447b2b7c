"""State storage implementations.

A StateStore holds the StackState of exactly one stack. The engine loads it
once at the start of a run, works on a copy, and saves checkpoints after
every layer. Stores never interpret records; secret outputs arrive already
sealed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError

from .exceptions import StateError
from .state import StackState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateStore(ABC):
    """Abstract base class for stack state storage."""

    @abstractmethod
    async def load(self) -> StackState:
        """
        Load the stored state, or an empty state if nothing was saved yet.

        Raises:
            StateError: If the stored document is not a supported state document
        """
        ...

    @abstractmethod
    async def save(self, state: StackState) -> None:
        """Replace the stored state."""
        ...


class InMemoryStateStore(StateStore):
    """In-memory state storage for tests and sandbox runs.

    Stores a serialized copy, so later mutation of the saved object does not
    leak into the store.
    """

    def __init__(self, state: StackState | None = None) -> None:
        self._document: dict[str, Any] | None = state.model_dump() if state else None
        self._lock = asyncio.Lock()
        self.save_count = 0

    async def load(self) -> StackState:
        async with self._lock:
            if self._document is None:
                return StackState.empty()
            try:
                return StackState.model_validate(self._document)
            except ValidationError as e:
                raise StateError(f"Cannot read stored state: {e}") from e

    async def save(self, state: StackState) -> None:
        async with self._lock:
            self._document = state.model_dump()
            self.save_count += 1

    @property
    def document(self) -> dict[str, Any] | None:
        """Raw stored document (what a file store would write)."""
        return self._document


class JsonFileStateStore(StateStore):
    """Stack state persisted as one JSON file.

    Writes use the temp file + rename pattern, so a crash mid-write leaves
    the previous state intact. File I/O runs in the default executor.

    Example:
        store = JsonFileStateStore(StateConfig.get_state_path("demo-stack"))
        state = await store.load()
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def load(self) -> StackState:
        """
        Load the state document.

        Raises:
            StateError: If the file is not valid JSON or not a supported state document
        """

        def _read() -> StackState:
            if not self.path.exists():
                return StackState.empty()
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
                return StackState.model_validate(data)
            except (json.JSONDecodeError, ValidationError) as e:
                raise StateError(f"Cannot read state file {self.path}: {e}") from e

        state = await self._run_in_executor(_read)
        logger.debug(f"Loaded state for {len(state.nodes)} resources from {self.path}")
        return state

    async def save(self, state: StackState) -> None:
        document = state.model_dump()

        def _write() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(".json.tmp")

            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, default=str, ensure_ascii=False)

            # Atomic rename (POSIX guarantee)
            temp_file.replace(self.path)

        await self._run_in_executor(_write)
        logger.debug(f"Saved state for {len(state.nodes)} resources to {self.path}")

    async def _run_in_executor(self, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)


__all__ = ["StateStore", "InMemoryStateStore", "JsonFileStateStore"]
