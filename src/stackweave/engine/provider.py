"""Provider adapter architecture.

A provider adapter performs create/read/update/delete for one resource kind
against a remote system. The engine treats every call as an opaque,
potentially slow remote operation; it never retries. Retry policy, if any,
belongs to the adapter.

Key principles:
- One adapter instance serves every node of its kind
- Calls return outputs directly (pydantic model or plain dict)
- Exceptions indicate failure of that node only
- Output names are declared through the adapter's output_type model
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, PrivateAttr

from .exceptions import ProviderError


class ProviderOutput(BaseModel):
    """Base model for provider outputs; every resource reports its id."""

    model_config = ConfigDict(extra="allow")

    id: str


class ProviderAdapter(ABC):
    """Base class for per-kind provider adapters.

    Subclasses must:
    1. Set kind (and usually output_type)
    2. Implement create(), update() and delete()
    3. Optionally implement read() and override cancel_in_flight

    Example:
        class VpcOutput(ProviderOutput):
            cidr_block: str

        class VpcAdapter(ProviderAdapter):
            kind = "vpc"
            output_type = VpcOutput

            async def create(self, inputs: dict[str, Any]) -> VpcOutput:
                vpc = await ec2.create_vpc(CidrBlock=inputs["cidr_block"])
                return VpcOutput(id=vpc["VpcId"], cidr_block=inputs["cidr_block"])
    """

    kind: ClassVar[str]
    output_type: ClassVar[type[ProviderOutput]] = ProviderOutput

    # Optional pydantic model validating desired inputs (see validate_inputs)
    input_type: ClassVar[type[BaseModel] | None] = None

    # Outputs of this kind that are always secret (e.g. kubeconfig)
    secret_outputs: ClassVar[frozenset[str]] = frozenset()

    # When an apply is cancelled, cancel calls already in flight instead of
    # letting them finish
    cancel_in_flight: ClassVar[bool] = False

    @abstractmethod
    async def create(self, inputs: dict[str, Any]) -> BaseModel | dict[str, Any]:
        """Create the resource and return its outputs (must include "id")."""
        pass

    async def read(self, resource_id: str) -> BaseModel | dict[str, Any]:
        """Read current outputs of an existing resource.

        Raises:
            NotImplementedError: By default (adapter cannot read back state)
        """
        raise NotImplementedError(f"{self.kind} adapter does not support read")

    @abstractmethod
    async def update(self, resource_id: str, inputs: dict[str, Any]) -> BaseModel | dict[str, Any]:
        """Update the resource in place and return its outputs."""
        pass

    @abstractmethod
    async def delete(self, resource_id: str) -> None:
        """Delete the resource."""
        pass

    @classmethod
    def supports_read(cls) -> bool:
        """True if the adapter overrides read()."""
        return cls.read is not ProviderAdapter.read

    @classmethod
    def output_names(cls) -> frozenset[str]:
        """Output names declared by output_type."""
        return frozenset(cls.output_type.model_fields)

    def normalize_outputs(self, raw: BaseModel | dict[str, Any]) -> dict[str, Any]:
        """
        Validate a create/read/update result against output_type.

        Raises:
            ProviderError: If the result is not a valid output document
        """
        data = raw.model_dump() if isinstance(raw, BaseModel) else dict(raw)
        try:
            validated = self.output_type.model_validate(data)
        except ValueError as e:
            raise ProviderError(f"invalid outputs from {self.kind} adapter: {e}") from e
        return validated.model_dump()

    def validate_inputs(self, inputs: dict[str, Any]) -> dict[str, Any]:
        """
        Validate desired inputs against input_type (no-op without one).

        Raises:
            ProviderError: If the inputs do not match input_type
        """
        if self.input_type is None:
            return dict(inputs)
        try:
            return self.input_type.model_validate(inputs).model_dump()
        except ValueError as e:
            raise ProviderError(f"invalid inputs for {self.kind}: {e}") from e

    def get_output_schema(self) -> dict[str, Any]:
        """JSON Schema of this kind's outputs."""
        return self.output_type.model_json_schema()


class ProviderRegistry(BaseModel):
    """
    Registry of provider adapters.

    Maps resource kinds to adapter instances.
    """

    model_config = {"arbitrary_types_allowed": True}

    _adapters: dict[str, ProviderAdapter] = PrivateAttr(default_factory=dict)

    def register(self, adapter: ProviderAdapter) -> None:
        """Register adapter using adapter.kind as key."""
        if adapter.kind in self._adapters:
            raise ValueError(f"Provider already registered for kind: {adapter.kind}")
        self._adapters[adapter.kind] = adapter

    def get(self, kind: str) -> ProviderAdapter:
        """Get adapter by kind."""
        if kind not in self._adapters:
            available = sorted(self._adapters)
            raise ValueError(f"Unknown resource kind: {kind}. Available: {available}")
        return self._adapters[kind]

    def has(self, kind: str) -> bool:
        """Check if a kind is registered."""
        return kind in self._adapters

    def list_kinds(self) -> list[str]:
        """List registered kinds."""
        return sorted(self._adapters)


__all__ = ["ProviderOutput", "ProviderAdapter", "ProviderRegistry"]
