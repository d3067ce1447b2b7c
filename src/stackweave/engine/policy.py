"""Resource policies evaluated before provider calls.

A PolicyPack groups ResourcePolicy checks. Each policy applies to one
resource kind and inspects a node's resolved inputs, returning a violation
message or None. Enforcement decides what a violation does:

- mandatory: the resource is not applied. A violation found before the run
  starts (inputs built from literals only) fails the whole apply as a build
  failure, so no provider call is made.
- advisory: the run continues and the violation is reported as a warning.

Bundled packs (enable with STACKWEAVE_POLICY_PACKS=aws-network,kubernetes):
    aws-network   vpc-check-cidr (mandatory)
    kubernetes    require-non-root-deployment (advisory)

Example:
    >>> pack = PolicyPack(name="tags", policies=[
    ...     ResourcePolicy(
    ...         name="vpc-needs-name",
    ...         kind="vpc",
    ...         enforcement=EnforcementLevel.ADVISORY,
    ...         check=lambda inputs: None if inputs.get("name") else "VPC should be named",
    ...     )
    ... ])
    >>> [str(v) for v in pack.evaluate("vpc", "vpc", {"cidr_block": "10.0.0.0/16"})]
    ["[advisory] vpc-needs-name: resource 'vpc' (vpc): VPC should be named"]
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

POLICY_PACKS_ENV = "STACKWEAVE_POLICY_PACKS"

PolicyCheck = Callable[[dict[str, Any]], str | None]


class EnforcementLevel(str, Enum):
    """What a violation of a policy does to the run."""

    MANDATORY = "mandatory"
    ADVISORY = "advisory"


class PolicyViolation(BaseModel):
    """One policy reported against one resource."""

    model_config = ConfigDict(frozen=True)

    policy: str
    node_id: str
    kind: str
    enforcement: EnforcementLevel
    message: str

    @property
    def is_mandatory(self) -> bool:
        return self.enforcement == EnforcementLevel.MANDATORY

    def __str__(self) -> str:
        return (
            f"[{self.enforcement.value}] {self.policy}: "
            f"resource '{self.node_id}' ({self.kind}): {self.message}"
        )


class ResourcePolicy(BaseModel):
    """A check over the resolved inputs of every resource of one kind."""

    name: str = Field(pattern=r"^[a-z0-9][a-z0-9-]*$")
    description: str = ""
    kind: str
    enforcement: EnforcementLevel = EnforcementLevel.ADVISORY
    check: PolicyCheck = Field(exclude=True)

    def evaluate(self, node_id: str, kind: str, inputs: dict[str, Any]) -> PolicyViolation | None:
        if kind != self.kind:
            return None
        try:
            message = self.check(inputs)
        except Exception as e:
            # A check that cannot read the inputs counts as a violation of its policy
            message = f"policy check raised {type(e).__name__}: {e}"
        if message is None:
            return None
        return PolicyViolation(
            policy=self.name,
            node_id=node_id,
            kind=kind,
            enforcement=self.enforcement,
            message=message,
        )


class PolicyPack(BaseModel):
    """Named collection of resource policies."""

    name: str
    policies: list[ResourcePolicy] = Field(default_factory=list)

    def evaluate(self, node_id: str, kind: str, inputs: dict[str, Any]) -> list[PolicyViolation]:
        violations = []
        for policy in self.policies:
            violation = policy.evaluate(node_id, kind, inputs)
            if violation is not None:
                violations.append(violation)
        return violations


def evaluate_policies(
    packs: Sequence[PolicyPack], node_id: str, kind: str, inputs: dict[str, Any]
) -> list[PolicyViolation]:
    """Violations of every pack for one resource."""
    return [v for pack in packs for v in pack.evaluate(node_id, kind, inputs)]


# =============================================================================
# Bundled packs
# =============================================================================

VPC_CIDR_BLOCK = "172.31.0.0/16"


def _check_vpc_cidr(inputs: dict[str, Any]) -> str | None:
    if inputs.get("cidr_block") != VPC_CIDR_BLOCK:
        return f"VPC CIDR block must be set to {VPC_CIDR_BLOCK}"
    return None


def _check_non_root(inputs: dict[str, Any]) -> str | None:
    values = inputs.get("values") or {}
    security_context = values.get("securityContext") or {}
    if security_context.get("runAsNonRoot") is not True:
        return "release should not run as root (set values.securityContext.runAsNonRoot: true)"
    return None


BUNDLED_POLICY_PACKS: dict[str, PolicyPack] = {
    "aws-network": PolicyPack(
        name="aws-network",
        policies=[
            ResourcePolicy(
                name="vpc-check-cidr",
                description="Checks that the VPC CIDR block is set to a valid value",
                kind="vpc",
                enforcement=EnforcementLevel.MANDATORY,
                check=_check_vpc_cidr,
            )
        ],
    ),
    "kubernetes": PolicyPack(
        name="kubernetes",
        policies=[
            ResourcePolicy(
                name="require-non-root-deployment",
                description="Helm releases must not run as root",
                kind="helm_release",
                enforcement=EnforcementLevel.ADVISORY,
                check=_check_non_root,
            )
        ],
    ),
}


def get_policy_pack(name: str) -> PolicyPack:
    """
    Look up a bundled policy pack.

    Raises:
        KeyError: If no pack has that name
    """
    if name not in BUNDLED_POLICY_PACKS:
        raise KeyError(
            f"Unknown policy pack '{name}'. Available: {', '.join(sorted(BUNDLED_POLICY_PACKS))}"
        )
    return BUNDLED_POLICY_PACKS[name]


__all__ = [
    "POLICY_PACKS_ENV",
    "EnforcementLevel",
    "PolicyViolation",
    "ResourcePolicy",
    "PolicyPack",
    "PolicyCheck",
    "evaluate_policies",
    "BUNDLED_POLICY_PACKS",
    "VPC_CIDR_BLOCK",
    "get_policy_pack",
]
