"""
Stack registry for managing loaded stack declarations.

Central registry of StackSchema instances loaded from YAML files, used by the
MCP tools to list, describe and compile stacks by name.

Features:
- Register stacks with duplicate detection
- Retrieve stacks by name
- List all stacks or filter by tags
- Load stacks from multiple directories with priority ordering
- Track the source directory of each stack
"""

import logging
from pathlib import Path
from typing import Any, Literal

from .load_result import LoadResult
from .loader import load_stack_from_file
from .schema import StackSchema

logger = logging.getLogger(__name__)


class StackRegistry:
    """
    Central registry for loaded stack declarations.

    Example:
        registry = StackRegistry()
        registry.load_from_directories(["templates/", "~/.stackweave/stacks"])

        schema = registry.get("eks-alb-stack")
        stack = compile_stack(schema).unwrap()
    """

    def __init__(self) -> None:
        self._stacks: dict[str, StackSchema] = {}
        self._stack_sources: dict[str, Path] = {}

    def register(self, stack: StackSchema, source_dir: Path | None = None) -> None:
        """
        Register a stack schema.

        Raises:
            ValueError: If a stack with the same name already exists
        """
        if stack.name in self._stacks:
            raise ValueError(
                f"Stack '{stack.name}' already registered. Use clear() or unregister() first."
            )

        self._stacks[stack.name] = stack
        if source_dir is not None:
            self._stack_sources[stack.name] = source_dir

        logger.info(f"Registered stack: {stack.name}")

    def unregister(self, name: str) -> None:
        """
        Unregister a stack by name.

        Raises:
            KeyError: If stack not found
        """
        if name not in self._stacks:
            raise KeyError(f"Stack '{name}' not found in registry")

        del self._stacks[name]
        self._stack_sources.pop(name, None)
        logger.info(f"Unregistered stack: {name}")

    def get(self, name: str) -> StackSchema:
        """
        Get stack by name.

        Raises:
            KeyError: If stack not found
        """
        if name not in self._stacks:
            available = sorted(self._stacks.keys())
            raise KeyError(f"Stack '{name}' not found. Available stacks: {available}")

        return self._stacks[name]

    def exists(self, name: str) -> bool:
        return name in self._stacks

    def list_all(self) -> list[StackSchema]:
        return list(self._stacks.values())

    def list_names(self, tags: list[str] | None = None) -> list[str]:
        """
        List stack names, optionally filtered by tags.

        Args:
            tags: Stacks matching ALL tags are included (AND logic)

        Returns:
            Sorted list of stack names
        """
        if not tags:
            return sorted(self._stacks.keys())

        required_tags = set(tags)
        return sorted(
            name
            for name, stack in self._stacks.items()
            if required_tags.issubset(set(stack.tags or []))
        )

    def get_stack_metadata(self, name: str, detailed: bool = False) -> dict[str, Any]:
        """
        Get stack metadata as dictionary (for MCP tools).

        Default mode returns name, description, tags and resource count.
        Detailed mode adds each resource's kind and dependencies, the export
        names, and the source directory.

        Raises:
            KeyError: If stack not found
        """
        stack = self.get(name)

        metadata: dict[str, Any] = {
            "name": stack.name,
            "description": stack.description,
            "tags": stack.tags or [],
            "resources": len(stack.resources),
        }

        if detailed:
            dependencies = stack.dependencies()
            resources: dict[str, Any] = {}
            for resource in stack.resources:
                info: dict[str, Any] = {
                    "kind": resource.kind,
                    "depends_on": sorted(dependencies[resource.id]),
                }
                if resource.secret_outputs:
                    info["secret_outputs"] = resource.secret_outputs
                resources[resource.id] = info
            metadata["resources"] = resources
            metadata["exports"] = sorted(stack.exports.keys())
            source = self._stack_sources.get(name)
            if source is not None:
                metadata["source"] = str(source)

        return metadata

    def list_all_metadata(self, detailed: bool = False) -> list[dict[str, Any]]:
        return [
            self.get_stack_metadata(name, detailed=detailed) for name in sorted(self._stacks.keys())
        ]

    def get_stack_source(self, name: str) -> Path | None:
        return self._stack_sources.get(name)

    def load_from_directory(self, directory: str | Path) -> LoadResult[int]:
        """
        Load all stacks from a directory (recursive).

        Invalid files and duplicate names are logged and skipped.

        Returns:
            LoadResult.success(count) with number of stacks loaded
            LoadResult.failure(error_message) if directory doesn't exist
        """
        result = self.load_from_directories([directory], on_duplicate="skip")
        if not result.is_success:
            return LoadResult.failure(result.error or "load failed")

        counts = result.unwrap()
        dir_key = str(Path(directory).expanduser().resolve())
        if dir_key in result.metadata.get("missing", []):
            return LoadResult.failure(f"Directory not found: {dir_key}")
        return LoadResult.success(counts.get(dir_key, 0))

    def load_from_directories(
        self,
        directories: list[str | Path],
        on_duplicate: Literal["skip", "overwrite", "error"] = "skip",
    ) -> LoadResult[dict[str, int]]:
        """
        Load stacks from multiple directories in priority order.

        on_duplicate controls repeated stack names:
        - "skip": Keep first loaded stack (default)
        - "overwrite": Replace with later version
        - "error": Fail on duplicate

        Returns:
            LoadResult.success(dict) with stacks loaded per directory; metadata
            "missing" lists directories that did not exist
            LoadResult.failure(error_message) on error
        """
        if not directories:
            return LoadResult.failure("No directories provided")

        dir_paths = [Path(d).expanduser().resolve() for d in directories]

        results: dict[str, int] = {}
        missing: list[str] = []

        logger.info(
            f"Loading stacks from {len(dir_paths)} directories (on_duplicate={on_duplicate})"
        )

        for dir_path in dir_paths:
            if not dir_path.is_dir():
                logger.warning(f"Directory not found: {dir_path}")
                missing.append(str(dir_path))
                results[str(dir_path)] = 0
                continue

            yaml_files = sorted(list(dir_path.glob("**/*.yaml")) + list(dir_path.glob("**/*.yml")))

            loaded_count = 0
            for yaml_file in yaml_files:
                stack_result = load_stack_from_file(yaml_file)

                if not stack_result.is_success:
                    logger.warning(
                        f"Failed to load stack from {yaml_file.name}: {stack_result.error}"
                    )
                    continue

                stack = stack_result.unwrap()

                if stack.name in self._stacks:
                    existing = self._stack_sources.get(stack.name, "unknown")
                    if on_duplicate == "skip":
                        logger.info(
                            f"Skipping duplicate stack '{stack.name}' from {dir_path} "
                            f"(keeping existing from {existing})"
                        )
                        continue
                    elif on_duplicate == "overwrite":
                        logger.info(
                            f"Overwriting stack '{stack.name}' from {existing} "
                            f"with version from {dir_path}"
                        )
                        self.unregister(stack.name)
                    else:
                        error_msg = (
                            f"Duplicate stack '{stack.name}' found in {dir_path} "
                            f"(already exists from {existing})"
                        )
                        logger.error(error_msg)
                        return LoadResult.failure(error_msg)

                self.register(stack, source_dir=dir_path)
                loaded_count += 1

            results[str(dir_path)] = loaded_count
            logger.info(
                f"Loaded {loaded_count} stacks from {dir_path} ({len(yaml_files)} YAML files found)"
            )

        return LoadResult.success(results, metadata={"missing": missing})

    def clear(self) -> None:
        count = len(self._stacks)
        self._stacks.clear()
        self._stack_sources.clear()
        logger.info(f"Cleared {count} stacks from registry")

    def __len__(self) -> int:
        return len(self._stacks)

    def __contains__(self, name: object) -> bool:
        return name in self._stacks

    def __repr__(self) -> str:
        return f"<StackRegistry: {len(self._stacks)} stacks>"


__all__ = ["StackRegistry"]
