"""Sandbox provider adapters.

Deterministic in-memory stand-ins for the resource kinds of an EKS stack
with the AWS Load Balancer Controller: network (vpc, internet_gateway,
route_table, subnet, route_table_association), cluster (eks_cluster),
identity (iam_role, iam_policy, iam_role_policy_attachment) and in-cluster
workloads (k8s_namespace, k8s_service_account, helm_release).

All adapters share one SandboxCloud, which hands out sequential ids per
prefix ("vpc-1", "clu-1", ...) and keeps the current inputs of every live
resource. Nothing leaves the process, so stacks can be planned, applied and
destroyed end to end in demos and tests.

Example:
    registry = create_sandbox_registry()
    engine = ApplyEngine(registry, InMemoryStateStore())
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ProviderError
from .provider import ProviderAdapter, ProviderOutput, ProviderRegistry

logger = logging.getLogger(__name__)

SANDBOX_ACCOUNT = "000000000000"


class SandboxCloud:
    """Shared in-memory backend of all sandbox adapters."""

    def __init__(self, region: str = "eu-central-1", latency: float = 0.0) -> None:
        """
        Args:
            region: Region used in generated ARNs and endpoints
            latency: Seconds every call sleeps, to simulate slow remote APIs
        """
        self.region = region
        self.latency = latency
        self.resources: dict[str, dict[str, Any]] = {}
        self.kinds: dict[str, str] = {}
        self._counters: dict[str, int] = {}
        self._failures: dict[str, str] = {}

    def next_id(self, prefix: str) -> str:
        self._counters[prefix] = self._counters.get(prefix, 0) + 1
        return f"{prefix}-{self._counters[prefix]}"

    def inject_failure(self, kind: str, message: str) -> None:
        """Make every call for kind fail with message until cleared."""
        self._failures[kind] = message

    def clear_failures(self) -> None:
        self._failures.clear()

    async def call(self, kind: str) -> None:
        """Simulate one remote call (latency, injected failure)."""
        if self.latency:
            await asyncio.sleep(self.latency)
        message = self._failures.get(kind)
        if message is not None:
            raise ProviderError(message)

    def live(self, kind: str | None = None) -> dict[str, dict[str, Any]]:
        """Live resources, optionally filtered by kind."""
        return {
            resource_id: inputs
            for resource_id, inputs in self.resources.items()
            if kind is None or self.kinds[resource_id] == kind
        }


class SandboxAdapter(ProviderAdapter):
    """
    Base class for sandbox adapters.

    Subclasses set kind, prefix, input_type and output_type and implement
    describe(), which derives outputs from the resource id and its inputs.
    """

    prefix: ClassVar[str]

    def __init__(self, cloud: SandboxCloud) -> None:
        self.cloud = cloud

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        """Outputs of a live resource."""
        return {"id": resource_id}

    async def create(self, inputs: dict[str, Any]) -> dict[str, Any]:
        validated = self.validate_inputs(inputs)
        await self.cloud.call(self.kind)
        resource_id = self.cloud.next_id(self.prefix)
        self.cloud.resources[resource_id] = validated
        self.cloud.kinds[resource_id] = self.kind
        logger.debug(f"sandbox: created {self.kind} {resource_id}")
        return self.describe(resource_id, validated)

    async def read(self, resource_id: str) -> dict[str, Any]:
        await self.cloud.call(self.kind)
        return self.describe(resource_id, self._existing(resource_id))

    async def update(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        validated = self.validate_inputs(inputs)
        await self.cloud.call(self.kind)
        self._existing(resource_id)
        self.cloud.resources[resource_id] = validated
        logger.debug(f"sandbox: updated {self.kind} {resource_id}")
        return self.describe(resource_id, validated)

    async def delete(self, resource_id: str) -> None:
        await self.cloud.call(self.kind)
        self._existing(resource_id)
        del self.cloud.resources[resource_id]
        del self.cloud.kinds[resource_id]
        logger.debug(f"sandbox: deleted {self.kind} {resource_id}")

    def _existing(self, resource_id: str) -> dict[str, Any]:
        if self.cloud.kinds.get(resource_id) != self.kind:
            raise ProviderError(f"{self.kind} {resource_id} does not exist")
        return self.cloud.resources[resource_id]

    def _arn(self, service: str, path: str) -> str:
        region = "" if service == "iam" else self.cloud.region
        return f"arn:aws:{service}:{region}:{SANDBOX_ACCOUNT}:{path}"


class _Inputs(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Network


class VpcInput(_Inputs):
    cidr_block: str = Field(description="IPv4 CIDR of the VPC")
    tags: dict[str, str] = Field(default_factory=dict)


class VpcOutput(ProviderOutput):
    arn: str
    cidr_block: str


class VpcAdapter(SandboxAdapter):
    kind = "vpc"
    prefix = "vpc"
    input_type = VpcInput
    output_type = VpcOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": resource_id,
            "arn": self._arn("ec2", f"vpc/{resource_id}"),
            "cidr_block": inputs["cidr_block"],
        }


class InternetGatewayInput(_Inputs):
    vpc_id: str
    tags: dict[str, str] = Field(default_factory=dict)


class InternetGatewayOutput(ProviderOutput):
    vpc_id: str


class InternetGatewayAdapter(SandboxAdapter):
    kind = "internet_gateway"
    prefix = "igw"
    input_type = InternetGatewayInput
    output_type = InternetGatewayOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {"id": resource_id, "vpc_id": inputs["vpc_id"]}


class Route(BaseModel):
    cidr_block: str
    gateway_id: str


class RouteTableInput(_Inputs):
    vpc_id: str
    routes: list[Route] = Field(default_factory=list)


class RouteTableOutput(ProviderOutput):
    vpc_id: str


class RouteTableAdapter(SandboxAdapter):
    kind = "route_table"
    prefix = "rtb"
    input_type = RouteTableInput
    output_type = RouteTableOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {"id": resource_id, "vpc_id": inputs["vpc_id"]}


class SubnetInput(_Inputs):
    vpc_id: str
    cidr_block: str
    availability_zone: str
    map_public_ip_on_launch: bool = False
    assign_ipv6_address_on_creation: bool = False
    tags: dict[str, str] = Field(default_factory=dict)


class SubnetOutput(ProviderOutput):
    arn: str
    vpc_id: str
    cidr_block: str
    availability_zone: str


class SubnetAdapter(SandboxAdapter):
    kind = "subnet"
    prefix = "subnet"
    input_type = SubnetInput
    output_type = SubnetOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": resource_id,
            "arn": self._arn("ec2", f"subnet/{resource_id}"),
            "vpc_id": inputs["vpc_id"],
            "cidr_block": inputs["cidr_block"],
            "availability_zone": inputs["availability_zone"],
        }


class RouteTableAssociationInput(_Inputs):
    route_table_id: str
    subnet_id: str


class RouteTableAssociationAdapter(SandboxAdapter):
    kind = "route_table_association"
    prefix = "rtbassoc"
    input_type = RouteTableAssociationInput


# Cluster


class EksClusterInput(_Inputs):
    name: str
    vpc_id: str
    subnet_ids: list[str] = Field(default_factory=list)
    instance_type: str = "t3.medium"
    desired_capacity: int = Field(default=2, ge=0)
    min_size: int = Field(default=1, ge=0)
    max_size: int = Field(default=3, ge=1)
    create_oidc_provider: bool = True


class EksClusterOutput(ProviderOutput):
    name: str
    vpc_id: str
    endpoint: str
    oidc_url: str
    oidc_arn: str
    kubeconfig: str


class EksClusterAdapter(SandboxAdapter):
    kind = "eks_cluster"
    prefix = "clu"
    input_type = EksClusterInput
    output_type = EksClusterOutput
    secret_outputs = frozenset({"kubeconfig"})

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        issuer = hashlib.sha256(resource_id.encode()).hexdigest()[:32].upper()
        oidc_url = f"oidc.eks.{self.cloud.region}.amazonaws.com/id/{issuer}"
        endpoint = f"https://{issuer.lower()}.gr7.{self.cloud.region}.eks.amazonaws.com"
        return {
            "id": resource_id,
            "name": inputs["name"],
            "vpc_id": inputs["vpc_id"],
            "endpoint": endpoint,
            "oidc_url": oidc_url,
            "oidc_arn": self._arn("iam", f"oidc-provider/{oidc_url}"),
            "kubeconfig": _kubeconfig(inputs["name"], endpoint, issuer),
        }


def _kubeconfig(cluster_name: str, endpoint: str, token: str) -> str:
    return (
        "apiVersion: v1\n"
        "kind: Config\n"
        f"clusters:\n- name: {cluster_name}\n  cluster:\n    server: {endpoint}\n"
        f"users:\n- name: {cluster_name}-admin\n  user:\n    token: {token}\n"
        f"contexts:\n- name: {cluster_name}\n  context:\n"
        f"    cluster: {cluster_name}\n    user: {cluster_name}-admin\n"
        f"current-context: {cluster_name}\n"
    )


# Identity


class IamRoleInput(_Inputs):
    name: str = ""
    assume_role_policy: str = Field(description="Trust policy document (JSON)")


class IamRoleOutput(ProviderOutput):
    name: str
    arn: str


class IamRoleAdapter(SandboxAdapter):
    kind = "iam_role"
    prefix = "role"
    input_type = IamRoleInput
    output_type = IamRoleOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        name = inputs.get("name") or resource_id
        return {"id": resource_id, "name": name, "arn": self._arn("iam", f"role/{name}")}


class IamPolicyInput(_Inputs):
    name: str = ""
    policy: str = Field(description="Policy document (JSON)")


class IamPolicyOutput(ProviderOutput):
    arn: str


class IamPolicyAdapter(SandboxAdapter):
    kind = "iam_policy"
    prefix = "policy"
    input_type = IamPolicyInput
    output_type = IamPolicyOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        name = inputs.get("name") or resource_id
        return {"id": resource_id, "arn": self._arn("iam", f"policy/{name}")}


class IamRolePolicyAttachmentInput(_Inputs):
    role: str
    policy_arn: str


class IamRolePolicyAttachmentAdapter(SandboxAdapter):
    kind = "iam_role_policy_attachment"
    prefix = "attach"
    input_type = IamRolePolicyAttachmentInput


# Cluster workloads


class K8sNamespaceInput(_Inputs):
    name: str
    kubeconfig: str
    labels: dict[str, str] = Field(default_factory=dict)


class K8sNamespaceOutput(ProviderOutput):
    name: str


class K8sNamespaceAdapter(SandboxAdapter):
    kind = "k8s_namespace"
    prefix = "ns"
    input_type = K8sNamespaceInput
    output_type = K8sNamespaceOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {"id": resource_id, "name": inputs["name"]}


class K8sServiceAccountInput(_Inputs):
    name: str
    namespace: str
    kubeconfig: str
    annotations: dict[str, str] = Field(default_factory=dict)


class K8sServiceAccountOutput(ProviderOutput):
    name: str
    namespace: str


class K8sServiceAccountAdapter(SandboxAdapter):
    kind = "k8s_service_account"
    prefix = "sa"
    input_type = K8sServiceAccountInput
    output_type = K8sServiceAccountOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {"id": resource_id, "name": inputs["name"], "namespace": inputs["namespace"]}


class HelmReleaseInput(_Inputs):
    chart: str
    version: str
    namespace: str
    repository: str = ""
    kubeconfig: str
    values: dict[str, Any] = Field(default_factory=dict)


class HelmReleaseOutput(ProviderOutput):
    name: str
    namespace: str
    version: str
    status: str


class HelmReleaseAdapter(SandboxAdapter):
    kind = "helm_release"
    prefix = "release"
    input_type = HelmReleaseInput
    output_type = HelmReleaseOutput

    def describe(self, resource_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": resource_id,
            "name": inputs["chart"],
            "namespace": inputs["namespace"],
            "version": inputs["version"],
            "status": "deployed",
        }


SANDBOX_ADAPTERS: tuple[type[SandboxAdapter], ...] = (
    VpcAdapter,
    InternetGatewayAdapter,
    RouteTableAdapter,
    SubnetAdapter,
    RouteTableAssociationAdapter,
    EksClusterAdapter,
    IamRoleAdapter,
    IamPolicyAdapter,
    IamRolePolicyAttachmentAdapter,
    K8sNamespaceAdapter,
    K8sServiceAccountAdapter,
    HelmReleaseAdapter,
)


def create_sandbox_registry(cloud: SandboxCloud | None = None) -> ProviderRegistry:
    """Registry with every sandbox adapter bound to one cloud."""
    cloud = cloud or SandboxCloud()
    registry = ProviderRegistry()
    for adapter_cls in SANDBOX_ADAPTERS:
        registry.register(adapter_cls(cloud))
    return registry


__all__ = [
    "SandboxCloud",
    "SandboxAdapter",
    "SANDBOX_ADAPTERS",
    "create_sandbox_registry",
]
