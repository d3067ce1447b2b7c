"""
Apply engine (ApplyEngine).

Walks a stack's dependency graph layer by layer, deciding per node whether
to create, update, replace or skip it, dispatching provider calls for one
layer concurrently and resolving output cells as results arrive. Nodes that
disappeared from the declaration are deleted afterwards, dependents first.

Design Principles:
- Explicit instance with explicit lifecycle (build -> apply -> export); no globals
- Layers strictly sequential; siblings bounded by a semaphore
- Only the coordinating task mutates node state and StackState
- Provider calls report back through their return value only
- A failing node never aborts sibling branches; no automatic retry
- Error text is redacted before it reaches results or logs
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from .apply_result import ApplyResult, NodeResult
from .dag import DAGResolver
from .exceptions import (
    ApplyCancelled,
    CellFailedError,
    FailureKind,
    GraphBuildError,
    PolicyViolationError,
    ProviderError,
    StateError,
    UpstreamFailure,
)
from .export import REDACTED, ExportSurface
from .graph import DependencyGraph
from .node import ID_OUTPUT, NodeAction, NodeState, ResourceNode
from .plan import PlannedChange, StackPlan
from .policy import PolicyPack, PolicyViolation, evaluate_policies
from .provider import ProviderAdapter, ProviderRegistry
from .references import collect_secrets
from .secrets.audit import SecretAuditLog
from .secrets.cipher import SecretCipher
from .secrets.exceptions import SecretDecryptionError
from .secrets.redactor import SecretRedactor
from .stack import Stack
from .state import NodeRecord, StackState, StoredOutput, compute_input_hash
from .state_config import load_state_cipher
from .state_store import StateStore

logger = logging.getLogger(__name__)

MAX_CONCURRENCY_ENV = "STACKWEAVE_MAX_CONCURRENCY"
MAX_CONCURRENCY_LIMIT = 64


@dataclass
class EngineConfig:
    """
    Engine knobs.

    Attributes:
        max_concurrency: Provider calls in flight per layer (clamped to 1..64)
        checkpoint_every_layer: Save StackState after every layer, not only at the end
    """

    max_concurrency: int = 4
    checkpoint_every_layer: bool = True

    def __post_init__(self) -> None:
        self.max_concurrency = max(1, min(MAX_CONCURRENCY_LIMIT, self.max_concurrency))

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Read STACKWEAVE_MAX_CONCURRENCY (invalid values fall back to the default)."""
        raw = os.getenv(MAX_CONCURRENCY_ENV)
        if not raw:
            return cls()
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Invalid {MAX_CONCURRENCY_ENV}={raw!r}, using default")
            return cls()
        return cls(max_concurrency=value)


@dataclass
class _Run:
    """Bookkeeping of one apply or destroy, owned by the coordinating task."""

    stack_name: str
    state: StackState
    semaphore: asyncio.Semaphore
    cancel_event: asyncio.Event
    provider_calls: int = 0
    deleted: dict[str, ResourceNode] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    policy_checked: set[str] = field(default_factory=set)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ApplyEngine:
    """
    Idempotent, layered apply of a Stack against provider adapters.

    Usage:
        engine = ApplyEngine(registry, JsonFileStateStore(path), cipher)
        result = await engine.apply(stack)
        result.outputs        # {"cluster_id": "clu-1", "role_arn": "<redacted>"}
        result.to_response()  # MCP-ready dict

    One engine runs one operation at a time; concurrent calls queue up.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        cipher: SecretCipher | None = None,
        config: EngineConfig | None = None,
        audit_log: SecretAuditLog | None = None,
        redactor: SecretRedactor | None = None,
        policies: Sequence[PolicyPack] = (),
    ) -> None:
        self.registry = registry
        self.store = store
        # Same key as the server: STACKWEAVE_STATE_KEY or the state directory key file
        self.cipher = cipher if cipher is not None else load_state_cipher()
        self.config = config or EngineConfig()
        self.audit_log = audit_log or SecretAuditLog()
        self.redactor = redactor or SecretRedactor()
        self.policies = list(policies)
        self._run_lock = asyncio.Lock()
        self._cancel_event: asyncio.Event | None = None

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> None:
        """
        Cancel the current run.

        Nodes not yet dispatched end FAILED(cancelled). Calls in flight finish
        unless their adapter sets cancel_in_flight.
        """
        if self._cancel_event is not None and not self._cancel_event.is_set():
            logger.info("Cancellation requested")
            self._cancel_event.set()

    # Operations

    async def apply(self, stack: Stack, timeout: float | None = None) -> ApplyResult:
        """
        Converge the stack to its declaration.

        Args:
            stack: Stack to apply
            timeout: Seconds after which the run is cancelled

        Returns:
            ApplyResult: success, partial (failed nodes listed) or build_failed
            (no provider call was made)

        Raises:
            asyncio.CancelledError: If the calling task is cancelled; resources
                finished so far are saved first
        """
        try:
            build = stack.build(self.registry, self.audit_log)
        except GraphBuildError as e:
            logger.error(f"Stack '{stack.name}' failed to build: {e}")
            return ApplyResult.build_failed(stack.name, str(e))

        graph = build.graph
        self._learn_secret_literals(graph)

        # Inputs known before the run are checked up front, so mandatory
        # violations stop the apply before any provider call
        violations, checked = self._preflight_policies(graph)
        mandatory = [str(v) for v in violations if v.is_mandatory]
        if mandatory:
            error = self._redact(str(PolicyViolationError(mandatory)))
            logger.error(f"Stack '{stack.name}' violates mandatory policies: {error}")
            return ApplyResult.build_failed(stack.name, error)

        async with self._run_lock:
            try:
                run = await self._start_run(stack.name)
                removed = [node_id for node_id in run.state.nodes if node_id not in graph]
                deletion_layers = self._deletion_layers(run.state, removed)
            except StateError as e:
                logger.error(f"Stack '{stack.name}' state is unusable: {e}")
                return ApplyResult.build_failed(stack.name, str(e))

            run.policy_checked = checked
            run.warnings.extend(self._policy_warnings(violations))

            layers = graph.topological_layers()
            logger.info(
                f"Applying stack '{stack.name}': {len(graph)} resources in {len(layers)} layers"
            )

            timer = self._arm_timeout(timeout)
            try:
                for layer_idx, layer in enumerate(layers):
                    logger.debug(f"Layer {layer_idx}: {sorted(layer)}")
                    await self._apply_layer(run, graph, layer)
                    if self.config.checkpoint_every_layer:
                        await self.store.save(run.state)

                if deletion_layers:
                    await self._delete_nodes(run, deletion_layers)
                await self.store.save(run.state)
            except asyncio.CancelledError:
                logger.warning(f"Stack '{stack.name}' apply interrupted; saving finished resources")
                await self.store.save(run.state)
                raise
            finally:
                if timer is not None:
                    timer.cancel()
                self._cancel_event = None

        nodes = {node.id: NodeResult.from_node(node) for node in graph}
        nodes.update({node_id: NodeResult.from_node(n) for node_id, n in run.deleted.items()})
        return self._finish(run, nodes, build.exports, "apply")

    async def destroy(self, stack: Stack, timeout: float | None = None) -> ApplyResult:
        """Delete every recorded resource of the stack, dependents first."""
        async with self._run_lock:
            try:
                run = await self._start_run(stack.name)
                deletion_layers = self._deletion_layers(run.state, list(run.state.nodes))
            except StateError as e:
                logger.error(f"Stack '{stack.name}' state is unusable: {e}")
                return ApplyResult.build_failed(stack.name, str(e), operation="destroy")

            logger.info(f"Destroying stack '{stack.name}': {len(run.state.nodes)} resources")

            timer = self._arm_timeout(timeout)
            try:
                if deletion_layers:
                    await self._delete_nodes(run, deletion_layers)
                await self.store.save(run.state)
            except asyncio.CancelledError:
                logger.warning(f"Stack '{stack.name}' destroy interrupted; saving remaining state")
                await self.store.save(run.state)
                raise
            finally:
                if timer is not None:
                    timer.cancel()
                self._cancel_event = None

        nodes = {node_id: NodeResult.from_node(n) for node_id, n in run.deleted.items()}
        return self._finish(run, nodes, None, "destroy")

    async def plan(self, stack: Stack) -> StackPlan:
        """
        Preview the actions an apply would take, without provider calls.

        Nodes whose inputs can be computed from literals and the stored outputs
        of unchanged upstreams are classified exactly. Others are create (no
        record) or update with known=False.
        """
        try:
            build = stack.build(self.registry, self.audit_log)
            state = await self.store.load()
            removed = [node_id for node_id in state.nodes if node_id not in build.graph]
            deletion_layers = self._deletion_layers(state, removed)
        except (GraphBuildError, StateError) as e:
            return StackPlan(stack.name, error=str(e))

        graph = build.graph
        plan = StackPlan(stack.name)
        mandatory: list[str] = []

        for layer in graph.topological_layers():
            for node_id in sorted(layer):
                node = graph[node_id]
                plan.changes.append(self._plan_node(graph, node, state.get(node_id)))

                input_cell = graph.input_cell(node_id)
                if self.policies and input_cell.is_resolved:
                    violations = evaluate_policies(
                        self.policies, node_id, node.kind, input_cell.value
                    )
                    mandatory.extend(str(v) for v in violations if v.is_mandatory)
                    plan.warnings.extend(self._policy_warnings(violations))

        if mandatory:
            plan.error = self._redact(str(PolicyViolationError(mandatory)))
            return plan

        for layer in deletion_layers:
            for node_id in sorted(layer):
                record = state.nodes[node_id]
                plan.changes.append(
                    PlannedChange(
                        node_id, record.kind, NodeAction.DELETE, reason="no longer declared"
                    )
                )

        logger.debug(f"Planned stack '{stack.name}': {plan.summary()}")
        return plan

    async def read_exports(self, stack: Stack) -> ExportSurface:
        """
        Export surface of the last applied state, without provider calls.

        Exports of resources that were never applied report as failed.

        Raises:
            GraphBuildError: If the stack does not build
            StateError: If the state cannot be read
            SecretDecryptionError: If a secret output cannot be decrypted
        """
        build = stack.build(self.registry, self.audit_log)
        state = await self.store.load()

        for node in build.graph:
            record = state.get(node.id)
            if record is None:
                for cell in node.outputs.values():
                    cell.fail(f"resource '{node.id}' has not been applied")
                continue

            opened = record.open_outputs(node.id, self.cipher)
            for name, cell in node.outputs.items():
                if name not in opened:
                    cell.fail(f"output '{name}' is not recorded for '{node.id}'")
                    continue
                value, secret = opened[name]
                cell.resolve(value, secret=secret)
                if cell.secret:
                    self.redactor.add_secret(value)

        return build.exports

    # Run setup

    async def _start_run(self, stack_name: str) -> _Run:
        state = await self.store.load()
        state.stack = stack_name
        self._cancel_event = asyncio.Event()
        return _Run(
            stack_name=stack_name,
            state=state,
            semaphore=asyncio.Semaphore(self.config.max_concurrency),
            cancel_event=self._cancel_event,
        )

    def _arm_timeout(self, timeout: float | None) -> asyncio.TimerHandle | None:
        if timeout is None:
            return None
        return asyncio.get_running_loop().call_later(timeout, self.cancel)

    def _finish(
        self,
        run: _Run,
        nodes: dict[str, NodeResult],
        exports: ExportSurface | None,
        operation: Literal["apply", "destroy"],
    ) -> ApplyResult:
        failed = any(node.failed for node in nodes.values())
        factory = ApplyResult.partial if failed else ApplyResult.success
        result = factory(
            run.stack_name,
            nodes,
            exports=exports,
            operation=operation,
            provider_calls=run.provider_calls,
            secret_redactor=self.redactor,
            warnings=run.warnings,
        )
        logger.info(
            f"Stack '{run.stack_name}' {operation} finished: {result.status} {result.actions()}"
        )
        return result

    def _learn_secret_literals(self, graph: DependencyGraph) -> None:
        for node in graph:
            for secret in collect_secrets(node.inputs):
                self.redactor.add_secret(secret.value)

    # Policies

    def _preflight_policies(self, graph: DependencyGraph) -> tuple[list[PolicyViolation], set[str]]:
        """Evaluate policies for every node whose inputs are already resolved."""
        violations: list[PolicyViolation] = []
        checked: set[str] = set()
        if not self.policies:
            return violations, checked

        for node in graph:
            input_cell = graph.input_cell(node.id)
            if input_cell.is_resolved:
                checked.add(node.id)
                violations.extend(
                    evaluate_policies(self.policies, node.id, node.kind, input_cell.value)
                )
        return violations, checked

    def _policy_warnings(self, violations: list[PolicyViolation]) -> list[str]:
        warnings = []
        for violation in violations:
            if violation.is_mandatory:
                continue
            warning = self._redact(str(violation))
            logger.warning(f"Policy warning: {warning}")
            warnings.append(warning)
        return warnings

    # Apply pass

    async def _apply_layer(self, run: _Run, graph: DependencyGraph, layer: set[str]) -> None:
        """Decide every node of the layer, then dispatch the ones needing a provider call."""
        tasks = []
        dispatched: list[tuple[ResourceNode, str, bool]] = []

        for node_id in sorted(layer):
            node = graph[node_id]

            if run.cancelled:
                self._fail(node, FailureKind.CANCELLED, str(ApplyCancelled(node.id)))
                continue

            failed_upstream = [dep for dep in node.dependencies if graph[dep].state.is_failed()]
            if failed_upstream:
                reason = str(UpstreamFailure(node.id, failed_upstream))
                self._fail(node, FailureKind.UPSTREAM_FAILURE, reason)
                continue

            input_cell = graph.input_cell(node.id)
            try:
                inputs = await input_cell.wait()
            except CellFailedError as e:
                reason = self._redact(f"input evaluation failed: {e.reason}")
                self._fail(node, FailureKind.INPUT_ERROR, reason)
                continue

            inputs_secret = input_cell.secret
            if inputs_secret:
                node.taint_outputs()

            if self.policies and node.id not in run.policy_checked:
                violations = evaluate_policies(self.policies, node.id, node.kind, inputs)
                run.warnings.extend(self._policy_warnings(violations))
                mandatory = [str(v) for v in violations if v.is_mandatory]
                if mandatory:
                    reason = self._redact(str(PolicyViolationError(mandatory)))
                    self._fail(node, FailureKind.POLICY_VIOLATION, reason)
                    continue

            input_hash = compute_input_hash(node.kind, inputs)
            record = run.state.get(node.id)
            node.action = self._decide(node, record, input_hash)

            if node.action == NodeAction.UNCHANGED and record is not None:
                if record.covers(node.output_names):
                    self._skip_unchanged(run, node, record, inputs_secret)
                    continue

            if node.action in (NodeAction.CREATE, NodeAction.REPLACE):
                node.transition(NodeState.CREATING)
            elif node.action == NodeAction.UPDATE:
                node.transition(NodeState.UPDATING)

            run.provider_calls += 2 if node.action == NodeAction.REPLACE else 1
            tasks.append(self._dispatch(run, node, node.action, inputs, record))
            dispatched.append((node, input_hash, inputs_secret))

        if not tasks:
            return

        results, interrupted = await self._gather_calls(run, tasks)

        for (node, input_hash, inputs_secret), result in zip(dispatched, results):
            if isinstance(result, BaseException):
                self._handle_failure(run, node, result)
            else:
                self._complete(run, node, result, input_hash, inputs_secret)

        if interrupted:
            raise asyncio.CancelledError

    async def _gather_calls(
        self, run: _Run, calls: list[Awaitable[Any]]
    ) -> tuple[list[Any], bool]:
        """
        Await a layer's provider calls, collecting results and exceptions.

        If the coordinating task itself is cancelled, the unfinished calls are
        cancelled too and the results of the finished ones are still returned,
        with interrupted=True, so they can be recorded before the cancellation
        propagates.
        """
        tasks = [asyncio.ensure_future(call) for call in calls]
        try:
            return await asyncio.gather(*tasks, return_exceptions=True), False
        except asyncio.CancelledError:
            run.cancel_event.set()
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)
            results: list[Any] = []
            for task in tasks:
                if task.cancelled():
                    results.append(asyncio.CancelledError())
                else:
                    results.append(task.exception() or task.result())
            return results, True

    def _decide(self, node: ResourceNode, record: NodeRecord | None, input_hash: str) -> NodeAction:
        if record is None:
            return NodeAction.CREATE
        if record.kind != node.kind:
            return NodeAction.REPLACE
        if record.input_hash != input_hash:
            return NodeAction.UPDATE
        if record.covers(node.output_names):
            return NodeAction.UNCHANGED
        # Newly declared outputs: read them back if the adapter can, else update
        if self.registry.get(node.kind).supports_read():
            return NodeAction.UNCHANGED
        return NodeAction.UPDATE

    def _skip_unchanged(
        self, run: _Run, node: ResourceNode, record: NodeRecord, inputs_secret: bool
    ) -> None:
        try:
            opened = self._rehydrate(node, record)
        except SecretDecryptionError as e:
            self._fail(node, FailureKind.STATE_ERROR, str(e))
            return

        node.transition(NodeState.CREATED)

        # Outputs that became secret since they were stored get re-sealed
        if any(
            cell.secret and not record.outputs[name].secret for name, cell in node.outputs.items()
        ):
            values = {name: value for name, (value, _) in opened.items()}
            run.state.put(node.id, self._record(node, record.input_hash, values, inputs_secret))

        logger.debug(f"Resource '{node.id}' ({node.kind}) unchanged")

    async def _dispatch(
        self,
        run: _Run,
        node: ResourceNode,
        action: NodeAction,
        inputs: dict[str, Any],
        record: NodeRecord | None,
    ) -> dict[str, Any]:
        """Run the provider call(s) for one node and return its validated outputs."""
        adapter = self.registry.get(node.kind)

        async with run.semaphore:
            if run.cancelled:
                raise ApplyCancelled(node.id)

            if action == NodeAction.CREATE:
                raw = await self._invoke(
                    run, node.id, "create", adapter, lambda: adapter.create(inputs)
                )
                return self._validate_outputs(node, adapter, raw, "create")

            assert record is not None
            resource_id = record.open_resource_id(node.id, self.cipher)

            if action == NodeAction.UPDATE:
                raw = await self._invoke(
                    run, node.id, "update", adapter, lambda: adapter.update(resource_id, inputs)
                )
                return self._validate_outputs(node, adapter, raw, "update")

            if action == NodeAction.REPLACE:
                old = self._adapter_for(node.id, record.kind)
                await self._invoke(run, node.id, "delete", old, lambda: old.delete(resource_id))
                raw = await self._invoke(
                    run, node.id, "create", adapter, lambda: adapter.create(inputs)
                )
                return self._validate_outputs(node, adapter, raw, "create")

            raw = await self._invoke(
                run, node.id, "read", adapter, lambda: adapter.read(resource_id)
            )
            return self._validate_outputs(node, adapter, raw, "read")

    async def _invoke(
        self,
        run: _Run,
        node_id: str,
        operation: str,
        adapter: ProviderAdapter,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:  # noqa: ANN401
        """Await one provider call, wrapping failures in ProviderError."""
        try:
            if adapter.cancel_in_flight:
                return await self._cancellable(run, node_id, call())
            return await call()
        except ApplyCancelled:
            raise
        except ProviderError as e:
            raise ProviderError(e.details, node_id, operation) from e
        except Exception as e:
            raise ProviderError(str(e) or type(e).__name__, node_id, operation) from e

    async def _cancellable(
        self, run: _Run, node_id: str, call: Awaitable[Any]
    ) -> Any:  # noqa: ANN401
        """Await a call, cancelling it if the run is cancelled first."""
        call_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(run.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if call_task in done:
            return call_task.result()

        call_task.cancel()
        await asyncio.wait({call_task})
        raise ApplyCancelled(node_id)

    def _adapter_for(self, node_id: str, kind: str) -> ProviderAdapter:
        if not self.registry.has(kind):
            raise ProviderError(
                f"no adapter registered for stored kind '{kind}'", node_id, "delete"
            )
        return self.registry.get(kind)

    def _validate_outputs(
        self,
        node: ResourceNode,
        adapter: ProviderAdapter,
        raw: Any,  # noqa: ANN401
        operation: str,
    ) -> dict[str, Any]:
        try:
            outputs = adapter.normalize_outputs(raw)
        except ProviderError as e:
            raise ProviderError(e.details, node.id, operation) from e

        missing = sorted(name for name in node.output_names if name not in outputs)
        if missing:
            raise ProviderError(
                f"result is missing declared outputs: {', '.join(missing)}", node.id, operation
            )
        return outputs

    def _complete(
        self,
        run: _Run,
        node: ResourceNode,
        outputs: dict[str, Any],
        input_hash: str,
        inputs_secret: bool,
    ) -> None:
        node.transition(NodeState.CREATED)
        node.resource_id = str(outputs[ID_OUTPUT])

        for name, cell in node.outputs.items():
            cell.resolve(outputs[name], secret=inputs_secret or name in node.secret_outputs)
            if cell.secret:
                self.redactor.add_secret(cell.value)

        run.state.put(node.id, self._record(node, input_hash, outputs, inputs_secret))
        action = node.action.value if node.action else "apply"
        shown_id = REDACTED if node.resource_id_secret else node.resource_id
        logger.info(f"Resource '{node.id}' ({node.kind}) {action} complete: {shown_id}")

    def _handle_failure(self, run: _Run, node: ResourceNode, error: BaseException) -> None:
        if isinstance(error, (ApplyCancelled, asyncio.CancelledError)):
            self._fail(node, FailureKind.CANCELLED, str(ApplyCancelled(node.id)))
            return

        if isinstance(error, (SecretDecryptionError, StateError)):
            self._fail(node, FailureKind.STATE_ERROR, self._redact(str(error)))
            return

        if (
            node.action == NodeAction.REPLACE
            and isinstance(error, ProviderError)
            and error.operation != "delete"
        ):
            # Old resource is gone; forget it so the next run creates afresh
            run.state.remove(node.id)

        self._fail(node, FailureKind.PROVIDER_ERROR, self._redact(str(error)))

    def _fail(self, node: ResourceNode, kind: FailureKind, reason: str) -> None:
        node.mark_failed(kind, reason)
        if kind == FailureKind.CANCELLED:
            logger.info(f"Resource '{node.id}' cancelled")
        else:
            logger.warning(f"Resource '{node.id}' ({node.kind}) failed [{kind.value}]: {reason}")

    def _redact(self, text: str) -> str:
        return str(self.redactor.redact(text))

    # State records

    def _record(
        self,
        node: ResourceNode,
        input_hash: str,
        outputs: dict[str, Any],
        inputs_secret: bool,
    ) -> NodeRecord:
        stored: dict[str, StoredOutput] = {}
        for name, value in outputs.items():
            cell = node.outputs.get(name)
            if cell is not None:
                secret = cell.secret
            else:
                secret = inputs_secret or name in node.secret_outputs
            if secret:
                self.redactor.add_secret(value)
            stored[name] = StoredOutput.seal(value, secret, self.cipher)

        stored_id = stored.get(ID_OUTPUT)
        if stored_id is not None and stored_id.secret:
            resource_id = None
        else:
            resource_id = node.resource_id or str(outputs.get(ID_OUTPUT, ""))

        return NodeRecord(
            kind=node.kind,
            input_hash=input_hash,
            resource_id=resource_id,
            outputs=stored,
            dependencies=sorted(node.dependencies),
        )

    def _rehydrate(self, node: ResourceNode, record: NodeRecord) -> dict[str, tuple[Any, bool]]:
        """Resolve the node's cells from stored outputs."""
        opened = record.open_outputs(node.id, self.cipher)
        if ID_OUTPUT in opened:
            node.resource_id = str(opened[ID_OUTPUT][0])
        else:
            node.resource_id = record.resource_id
        for name, cell in node.outputs.items():
            value, secret = opened[name]
            cell.resolve(value, secret=secret)
            if cell.secret:
                self.redactor.add_secret(value)
        return opened

    # Deletion pass

    @staticmethod
    def _deletion_layers(state: StackState, node_ids: list[str]) -> list[set[str]]:
        """
        Teardown order of recorded nodes: dependents before their dependencies.

        Raises:
            StateError: If the stored dependencies are cyclic
        """
        if not node_ids:
            return []
        selected = set(node_ids)
        deps = {
            node_id: {d for d in state.nodes[node_id].dependencies if d in selected}
            for node_id in node_ids
        }
        result = DAGResolver(list(node_ids), deps).get_layers()
        if not result.is_success or result.value is None:
            raise StateError(f"Stored dependencies cannot be ordered: {result.error}")
        return list(reversed(result.value))

    async def _delete_nodes(self, run: _Run, layers: list[set[str]]) -> None:
        """Delete recorded nodes layer by layer; a failed delete blocks its dependencies."""
        records = {node_id: run.state.nodes[node_id] for layer in layers for node_id in layer}
        nodes: dict[str, ResourceNode] = {}
        for node_id, record in records.items():
            node = ResourceNode(
                id=node_id,
                kind=record.kind,
                inputs={},
                output_names=frozenset(record.outputs),
            )
            for name, stored in record.outputs.items():
                if stored.secret:
                    node.outputs[name].mark_secret()
            # None when the id is sealed; it is opened only for the delete call
            node.resource_id = record.resource_id
            node.action = NodeAction.DELETE
            nodes[node_id] = node
        run.deleted.update(nodes)

        for layer in layers:
            tasks = []
            batch: list[ResourceNode] = []

            for node_id in sorted(layer):
                node = nodes[node_id]

                if run.cancelled:
                    self._fail(node, FailureKind.CANCELLED, str(ApplyCancelled(node.id)))
                    continue

                blockers = [
                    other
                    for other, record in records.items()
                    if node_id in record.dependencies and nodes[other].state.is_failed()
                ]
                if blockers:
                    reason = str(UpstreamFailure(node_id, blockers))
                    self._fail(node, FailureKind.UPSTREAM_FAILURE, reason)
                    continue

                node.transition(NodeState.DELETING)
                run.provider_calls += 1
                tasks.append(self._dispatch_delete(run, node, records[node_id]))
                batch.append(node)

            if tasks:
                results, interrupted = await self._gather_calls(run, tasks)
                for node, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        self._handle_failure(run, node, result)
                    else:
                        node.transition(NodeState.DELETED)
                        run.state.remove(node.id)
                        logger.info(f"Resource '{node.id}' ({node.kind}) deleted")
                if interrupted:
                    raise asyncio.CancelledError

            if self.config.checkpoint_every_layer:
                await self.store.save(run.state)

    async def _dispatch_delete(self, run: _Run, node: ResourceNode, record: NodeRecord) -> None:
        async with run.semaphore:
            if run.cancelled:
                raise ApplyCancelled(node.id)
            adapter = self._adapter_for(node.id, record.kind)
            resource_id = record.open_resource_id(node.id, self.cipher)
            await self._invoke(run, node.id, "delete", adapter, lambda: adapter.delete(resource_id))

    # Planning

    def _plan_node(
        self, graph: DependencyGraph, node: ResourceNode, record: NodeRecord | None
    ) -> PlannedChange:
        input_cell = graph.input_cell(node.id)

        if not input_cell.is_resolved:
            if record is None:
                return PlannedChange(
                    node.id, node.kind, NodeAction.CREATE, reason="not yet created"
                )
            if record.kind != node.kind:
                return PlannedChange(
                    node.id,
                    node.kind,
                    NodeAction.REPLACE,
                    reason=f"kind changed from {record.kind}",
                )
            reason = (
                "input evaluation failed"
                if input_cell.is_failed
                else "inputs depend on values known only after apply"
            )
            return PlannedChange(node.id, node.kind, NodeAction.UPDATE, known=False, reason=reason)

        if input_cell.secret:
            node.taint_outputs()

        action = self._decide(node, record, compute_input_hash(node.kind, input_cell.value))

        if action == NodeAction.CREATE:
            return PlannedChange(node.id, node.kind, action, reason="not yet created")
        assert record is not None
        if action == NodeAction.REPLACE:
            reason = f"kind changed from {record.kind}"
            return PlannedChange(node.id, node.kind, action, reason=reason)
        if action == NodeAction.UPDATE:
            return PlannedChange(node.id, node.kind, action, reason="inputs changed")

        if not record.covers(node.output_names):
            return PlannedChange(node.id, node.kind, action, reason="new outputs read back")
        try:
            self._rehydrate(node, record)
        except SecretDecryptionError:
            return PlannedChange(
                node.id,
                node.kind,
                NodeAction.UNCHANGED,
                known=False,
                reason="stored outputs cannot be decrypted",
            )
        return PlannedChange(node.id, node.kind, action)


__all__ = ["ApplyEngine", "EngineConfig"]
