"""Dependency-aware provisioning engine.

Key Components:

- ValueCell: Single-assignment async value with sticky secret taint
- Stack: Resource declarations and exports; build() yields a fresh graph per run
- DependencyGraph / DAGResolver: Edges from references, topological layers (Kahn's algorithm)
- ProviderAdapter / ProviderRegistry: Per-kind create/read/update/delete
- ApplyEngine: Layered, bounded-concurrency apply, destroy and plan
- StackState / StateStore: Versioned applied-state document with sealed secret outputs
- PolicyPack / ResourcePolicy: Checks over resolved inputs, run before provider calls
- ExportSurface: Redacted outputs plus explicit, audited reveal
- ApplyResult: Monad for run results (success/partial/build_failed)
- StackSchema / StackRegistry: YAML declarations validated by pydantic
- LoadResult: Error monad for loader/registry operations

Architecture:
- Build errors abort before any provider call (ApplyResult.build_failed)
- A failed node fails its dependents only; sibling branches still complete
- Re-applying an unchanged stack makes zero provider calls
- Secret values never reach logs, results or the persisted document in plaintext
"""

from .apply_result import ApplyResult, NodeResult
from .dag import DAGResolver
from .engine import ApplyEngine, EngineConfig
from .exceptions import (
    ApplyCancelled,
    CellAlreadySettledError,
    CellFailedError,
    CycleError,
    DuplicateNodeError,
    FailureKind,
    GraphBuildError,
    InvalidTransitionError,
    PolicyViolationError,
    ProviderError,
    StackError,
    StateError,
    UnknownKindError,
    UnknownReferenceError,
    UpstreamFailure,
)
from .export import REDACTED, ExportSurface
from .graph import DependencyGraph
from .load_result import LoadResult, LoadStatus
from .loader import (
    compile_stack,
    compile_value,
    discover_stacks,
    load_stack_from_file,
    load_stack_from_yaml,
)
from .node import ID_OUTPUT, NodeAction, NodeState, ResourceDeclaration, ResourceNode
from .plan import PlannedChange, StackPlan
from .policy import (
    BUNDLED_POLICY_PACKS,
    POLICY_PACKS_ENV,
    EnforcementLevel,
    PolicyPack,
    PolicyViolation,
    ResourcePolicy,
    get_policy_pack,
)
from .provider import ProviderAdapter, ProviderOutput, ProviderRegistry
from .providers_sandbox import SANDBOX_ADAPTERS, SandboxCloud, create_sandbox_registry
from .references import OutputRef, Secret, derive, template
from .registry import StackRegistry
from .schema import ResourceSchema, StackSchema
from .stack import ResourceHandle, Stack, StackBuild
from .state import NodeRecord, StackState, StoredOutput, compute_input_hash
from .state_config import StateConfig, load_state_cipher
from .state_store import InMemoryStateStore, JsonFileStateStore, StateStore
from .value_cell import CellStatus, ValueCell, all_cells

__all__ = [
    # Results
    "ApplyResult",
    "NodeResult",
    "LoadResult",
    "LoadStatus",
    "StackPlan",
    "PlannedChange",
    # Engine
    "ApplyEngine",
    "EngineConfig",
    # Declarations
    "Stack",
    "StackBuild",
    "ResourceHandle",
    "OutputRef",
    "Secret",
    "derive",
    "template",
    "StackSchema",
    "ResourceSchema",
    "StackRegistry",
    "load_stack_from_file",
    "load_stack_from_yaml",
    "discover_stacks",
    "compile_stack",
    "compile_value",
    # Graph
    "DAGResolver",
    "DependencyGraph",
    "ResourceDeclaration",
    "ResourceNode",
    "NodeState",
    "NodeAction",
    "ID_OUTPUT",
    "ValueCell",
    "CellStatus",
    "all_cells",
    # Providers
    "ProviderAdapter",
    "ProviderOutput",
    "ProviderRegistry",
    "SandboxCloud",
    "SANDBOX_ADAPTERS",
    "create_sandbox_registry",
    # State
    "StackState",
    "NodeRecord",
    "StoredOutput",
    "compute_input_hash",
    "StateConfig",
    "load_state_cipher",
    "StateStore",
    "InMemoryStateStore",
    "JsonFileStateStore",
    # Policies
    "PolicyPack",
    "ResourcePolicy",
    "PolicyViolation",
    "EnforcementLevel",
    "BUNDLED_POLICY_PACKS",
    "POLICY_PACKS_ENV",
    "get_policy_pack",
    # Exports
    "ExportSurface",
    "REDACTED",
    # Exceptions
    "StackError",
    "GraphBuildError",
    "CycleError",
    "UnknownReferenceError",
    "DuplicateNodeError",
    "UnknownKindError",
    "ProviderError",
    "UpstreamFailure",
    "ApplyCancelled",
    "StateError",
    "CellAlreadySettledError",
    "CellFailedError",
    "InvalidTransitionError",
    "PolicyViolationError",
    "FailureKind",
]
