"""
YAML stack declaration schema.

Pydantic models validating stack documents before they are compiled into a
Stack. Structural checks live here (unique ids, known dependencies,
well-formed expressions); reference targets against provider outputs are
checked later, when the Stack is built against a provider registry.

Example YAML:
    name: demo-stack
    description: Network and cluster
    resources:
      - id: vpc
        kind: vpc
        inputs:
          cidr_block: "10.0.0.0/16"
      - id: cluster
        kind: eks_cluster
        inputs:
          name: "cluster-{{resources.vpc.id}}"
          vpc_id: "{{resources.vpc.id}}"
        secret_outputs: [kubeconfig]
    exports:
      cluster_id: "{{resources.cluster.id}}"
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .dag import DAGResolver
from .load_result import LoadResult

EXPRESSION_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
"""Matches one {{ ... }} expression; group 1 is the trimmed expression body."""

RESOURCE_EXPRESSION = re.compile(
    r"^resources\.([a-zA-Z_][a-zA-Z0-9_-]*)\.([a-zA-Z_][a-zA-Z0-9_]*)$"
)
SECRET_EXPRESSION = re.compile(r"^secrets\.([a-zA-Z_][a-zA-Z0-9_]*)$")


def iter_strings(value: Any, context: str) -> list[tuple[str, str]]:
    """Return (context, string) for every string leaf of a nested value."""
    if isinstance(value, str):
        return [(context, value)]
    if isinstance(value, dict):
        return [pair for k, v in value.items() for pair in iter_strings(v, f"{context}.{k}")]
    if isinstance(value, list):
        return [pair for i, v in enumerate(value) for pair in iter_strings(v, f"{context}[{i}]")]
    return []


class ResourceSchema(BaseModel):
    """
    One resource declaration.

    Attributes:
        id: Unique resource id within the stack
        kind: Provider kind (must be registered when the stack is applied)
        description: Optional human-readable note
        inputs: Input values; strings may contain {{resources.x.y}} and {{secrets.NAME}}
        depends_on: Explicit ordering dependencies
        outputs: Output names; omitted means the provider's declared outputs
        secret_outputs: Output names always tagged secret
    """

    id: str = Field(pattern=r"^[a-zA-Z_][a-zA-Z0-9_-]*$", min_length=1, max_length=100)
    kind: str = Field(min_length=1)
    description: str | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    outputs: list[str] | None = None
    secret_outputs: list[str] = Field(default_factory=list)

    model_config = {"extra": "forbid"}

    @field_validator("depends_on")
    @classmethod
    def validate_unique_dependencies(cls, v: list[str]) -> list[str]:
        duplicates = sorted({dep for dep in v if v.count(dep) > 1})
        if duplicates:
            raise ValueError(f"Duplicate dependencies: {duplicates}")
        return v


class StackSchema(BaseModel):
    """
    Complete YAML stack schema.

    Attributes:
        name: Stack name (also names its state file)
        description: Stack description
        tags: Searchable tags
        resources: Resource declarations
        exports: Export name -> value (usually a single {{resources.x.y}} expression)
    """

    name: str = Field(pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$", min_length=1, max_length=100)
    description: str = Field(default="")
    tags: list[str] = Field(default_factory=list)
    resources: list[ResourceSchema] = Field(min_length=1)
    exports: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @field_validator("resources")
    @classmethod
    def validate_unique_resource_ids(cls, v: list[ResourceSchema]) -> list[ResourceSchema]:
        ids = [resource.id for resource in v]
        if len(ids) != len(set(ids)):
            duplicates = sorted({rid for rid in ids if ids.count(rid) > 1})
            raise ValueError(f"Duplicate resource IDs found: {duplicates}")
        return v

    @property
    def resource_ids(self) -> list[str]:
        return [resource.id for resource in self.resources]

    def dependencies(self) -> dict[str, set[str]]:
        """Explicit plus expression-derived dependencies per resource."""
        deps: dict[str, set[str]] = {}
        for resource in self.resources:
            targets = set(resource.depends_on)
            for _, text in iter_strings(resource.inputs, resource.id):
                for expression in EXPRESSION_PATTERN.findall(text):
                    match = RESOURCE_EXPRESSION.match(expression)
                    if match:
                        targets.add(match.group(1))
            deps[resource.id] = targets
        return deps

    @model_validator(mode="after")
    def validate_dependencies_exist(self) -> StackSchema:
        ids = set(self.resource_ids)
        for resource in self.resources:
            for dep in resource.depends_on:
                if dep not in ids:
                    raise ValueError(
                        f"Resource '{resource.id}' depends on non-existent resource '{dep}'. "
                        f"Available resources: {sorted(ids)}"
                    )
        return self

    @model_validator(mode="after")
    def validate_expressions(self) -> StackSchema:
        """Every {{...}} must be a resources.<id>.<output> or secrets.<NAME> expression."""
        ids = set(self.resource_ids)

        def check(context: str, text: str) -> None:
            for expression in EXPRESSION_PATTERN.findall(text):
                match = RESOURCE_EXPRESSION.match(expression)
                if match:
                    if match.group(1) not in ids:
                        raise ValueError(
                            f"{context}: reference to unknown resource '{match.group(1)}'. "
                            f"Available resources: {sorted(ids)}"
                        )
                    continue
                if SECRET_EXPRESSION.match(expression):
                    continue
                raise ValueError(
                    f"{context}: invalid expression '{{{{{expression}}}}}'. "
                    "Expected resources.<id>.<output> or secrets.<NAME>"
                )

        for resource in self.resources:
            for context, text in iter_strings(resource.inputs, f"Resource '{resource.id}' inputs"):
                check(context, text)
        for context, text in iter_strings(self.exports, "Exports"):
            check(context, text)
        return self

    @model_validator(mode="after")
    def validate_no_cyclic_dependencies(self) -> StackSchema:
        resolver = DAGResolver(self.resource_ids, self.dependencies())
        result = resolver.topological_sort()
        if not result.is_success:
            unordered = result.metadata.get("unordered", [])
            raise ValueError(f"Invalid stack dependencies: {result.error}: {unordered}")
        return self

    @staticmethod
    def validate_yaml_dict(data: dict[str, Any]) -> LoadResult[StackSchema]:
        """
        Validate a loaded YAML dictionary.

        Returns:
            LoadResult.success(StackSchema) if valid
            LoadResult.failure(error_message) with the validation errors
        """
        try:
            return LoadResult.success(StackSchema(**data))
        except Exception as e:
            error_msg = str(e)
            if "validation error" in error_msg.lower():
                return LoadResult.failure(f"Stack validation failed:\n{error_msg}")
            return LoadResult.failure(f"Stack validation failed: {error_msg}")


__all__ = [
    "EXPRESSION_PATTERN",
    "RESOURCE_EXPRESSION",
    "SECRET_EXPRESSION",
    "ResourceSchema",
    "StackSchema",
    "iter_strings",
]
