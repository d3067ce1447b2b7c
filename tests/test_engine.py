"""Tests for ApplyEngine: idempotent apply, failure isolation, secrets, cancellation.

Every test drives the engine through the recording FakeAdapter, so the
assertions are about which provider calls a run made, in which order, and
what ended up in the persisted state document.
"""

import asyncio
import json
import logging

import pytest
from fakes import FakeAdapter, make_registry

from stackweave.engine import (
    ApplyEngine,
    EnforcementLevel,
    EngineConfig,
    FailureKind,
    InMemoryStateStore,
    NodeAction,
    NodeState,
    PolicyPack,
    ResourcePolicy,
    Secret,
    Stack,
    derive,
)
from stackweave.engine.secrets import SecretCipher


def chain_stack(a_value="one", b_value="two", c_value="three") -> Stack:
    """a <- b <- c, each exporting its value."""
    stack = Stack("chain")
    a = stack.resource("a", "fake", {"name": "a", "value": a_value}, outputs=["value"])
    b = stack.resource(
        "b", "fake", {"name": "b", "value": b_value, "upstream": a.id}, outputs=["value"]
    )
    c = stack.resource(
        "c", "fake", {"name": "c", "value": c_value, "upstream": b.id}, outputs=["value"]
    )
    stack.export("a_value", a["value"])
    stack.export("c_value", c["value"])
    return stack


# =============================================================================
# Idempotence and change detection
# =============================================================================


class TestApply:
    @pytest.mark.asyncio
    async def test_first_apply_creates_in_dependency_order(self, engine, fake):
        result = await engine.apply(chain_stack())

        assert result.status == "success"
        assert result.actions() == {"create": 3}
        assert fake.names("create") == ["a", "b", "c"]
        assert result.outputs == {"a_value": "one", "c_value": "three"}
        assert result.nodes["b"].resource_id == "fake-2"

    @pytest.mark.asyncio
    async def test_second_apply_makes_no_provider_calls(self, engine, fake):
        first = await engine.apply(chain_stack())
        calls_after_first = len(fake.calls)

        second = await engine.apply(chain_stack())

        assert second.status == "success"
        assert second.provider_calls == 0
        assert len(fake.calls) == calls_after_first
        assert second.actions() == {"unchanged": 3}
        assert second.outputs == first.outputs

    @pytest.mark.asyncio
    async def test_leaf_change_updates_only_the_leaf(self, engine, fake):
        await engine.apply(chain_stack())
        fake.calls.clear()

        result = await engine.apply(chain_stack(c_value="changed"))

        assert result.provider_calls == 1
        assert [(call.operation, call.resource_id) for call in fake.calls] == [
            ("update", "fake-3")
        ]
        assert result.nodes["c"].action == NodeAction.UPDATE
        assert result.outputs["c_value"] == "changed"

    @pytest.mark.asyncio
    async def test_upstream_change_reaches_dependents_only_when_their_inputs_change(
        self, engine, fake
    ):
        await engine.apply(chain_stack())
        fake.calls.clear()

        result = await engine.apply(chain_stack(a_value="uno"))

        # a's id does not change on update, so b and c see identical inputs
        assert fake.operations() == ["update"]
        assert result.actions() == {"update": 1, "unchanged": 2}
        assert result.outputs["a_value"] == "uno"

    @pytest.mark.asyncio
    async def test_changed_upstream_output_updates_dependent(self, engine, fake):
        stack = Stack("pair")
        a = stack.resource("a", "fake", {"name": "a", "value": "one"}, outputs=["value"])
        stack.resource("b", "fake", {"name": "b", "from_a": a["value"]})
        await engine.apply(stack)
        fake.calls.clear()

        changed = Stack("pair")
        a = changed.resource("a", "fake", {"name": "a", "value": "uno"}, outputs=["value"])
        changed.resource("b", "fake", {"name": "b", "from_a": a["value"]})
        result = await engine.apply(changed)

        assert [(call.operation, call.name) for call in fake.calls] == [
            ("update", "a"),
            ("update", "b"),
        ]
        assert fake.live["fake-2"]["from_a"] == "uno"
        assert result.is_success

    @pytest.mark.asyncio
    async def test_kind_change_replaces_resource(self, store, cipher):
        old = FakeAdapter("queue_v1", prefix="q1")
        new = FakeAdapter("queue_v2", prefix="q2")
        engine = ApplyEngine(make_registry(old, new), store, cipher=cipher)

        first = Stack("queues")
        first.resource("queue", "queue_v1", {"name": "jobs"})
        await engine.apply(first)

        second = Stack("queues")
        handle = second.resource("queue", "queue_v2", {"name": "jobs"})
        second.export("queue_id", handle.id)
        result = await engine.apply(second)

        assert result.nodes["queue"].action == NodeAction.REPLACE
        assert result.provider_calls == 2
        assert old.operations() == ["create", "delete"]
        assert new.operations() == ["create"]
        assert old.live == {}
        assert result.outputs == {"queue_id": "q2-1"}

    @pytest.mark.asyncio
    async def test_declaring_an_already_recorded_output_needs_no_call(self, engine, fake):
        first = Stack("read")
        first.resource("a", "fake", {"name": "a", "value": "v"})
        await engine.apply(first)
        fake.calls.clear()

        # The record already holds every output the adapter returned
        second = Stack("read")
        handle = second.resource("a", "fake", {"name": "a", "value": "v"}, outputs=["value"])
        second.export("value", handle["value"])
        result = await engine.apply(second)

        assert fake.calls == []
        assert result.outputs == {"value": "v"}

    @pytest.mark.asyncio
    async def test_missing_output_triggers_read(self, store, cipher):
        adapter = FakeAdapter()
        engine = ApplyEngine(make_registry(adapter), store, cipher=cipher)

        # Record the resource while the adapter does not report "endpoint" yet
        first = Stack("read")
        first.resource("a", "fake", {"name": "a"})
        await engine.apply(first)
        adapter.extra_outputs = {"endpoint": lambda rid, _: f"https://{rid}"}
        adapter.calls.clear()

        second = Stack("read")
        handle = second.resource("a", "fake", {"name": "a"}, outputs=["endpoint"])
        second.export("endpoint", handle["endpoint"])
        result = await engine.apply(second)

        assert adapter.operations() == ["read"]
        assert result.outputs == {"endpoint": "https://fake-1"}
        assert result.nodes["a"].action == NodeAction.UNCHANGED

    @pytest.mark.asyncio
    async def test_state_checkpointed_after_every_layer(self, engine, store):
        await engine.apply(chain_stack())

        # three layers plus the final save
        assert store.save_count == 4
        assert set(store.document["nodes"]) == {"a", "b", "c"}
        assert store.document["nodes"]["c"]["dependencies"] == ["b"]

    @pytest.mark.asyncio
    async def test_concurrency_bounded_per_layer(self, store, cipher):
        adapter = FakeAdapter(delay=0.02)
        engine = ApplyEngine(
            make_registry(adapter), store, cipher=cipher, config=EngineConfig(max_concurrency=2)
        )
        stack = Stack("wide")
        for i in range(5):
            stack.resource(f"r{i}", "fake", {"name": f"r{i}"})

        result = await engine.apply(stack)

        assert result.is_success
        assert adapter.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_siblings_run_concurrently(self, store, cipher):
        adapter = FakeAdapter(delay=0.02)
        engine = ApplyEngine(make_registry(adapter), store, cipher=cipher)
        stack = Stack("wide")
        for i in range(3):
            stack.resource(f"r{i}", "fake", {"name": f"r{i}"})

        await engine.apply(stack)

        assert adapter.max_in_flight == 3


# =============================================================================
# Failure isolation
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_cascades_to_dependents_only(self, engine, fake):
        stack = chain_stack()
        stack.resource("d", "fake", {"name": "d"})
        fake.inject_failure("quota exceeded", operation="create", name="b")

        result = await engine.apply(stack)

        assert result.status == "partial"
        assert set(result.failed_nodes) == {"b", "c"}
        assert result.nodes["a"].state == NodeState.CREATED
        assert result.nodes["d"].state == NodeState.CREATED
        assert result.nodes["b"].failure_kind == FailureKind.PROVIDER_ERROR
        assert "quota exceeded" in (result.nodes["b"].error or "")
        assert result.nodes["c"].failure_kind == FailureKind.UPSTREAM_FAILURE
        assert "c" not in fake.names("create")
        assert result.outputs == {"a_value": "one"}

        response = result.to_response()
        assert response["failed"]["c"]["failure"] == "upstream_failure"
        assert response["error"] == "2 resource(s) failed: b, c"

    @pytest.mark.asyncio
    async def test_rerun_after_failure_creates_only_what_is_missing(self, engine, fake):
        fake.inject_failure("quota exceeded", operation="create", name="b")
        await engine.apply(chain_stack())
        fake.clear_failures()
        fake.calls.clear()

        result = await engine.apply(chain_stack())

        assert result.is_success
        assert fake.names("create") == ["b", "c"]
        assert result.actions() == {"unchanged": 1, "create": 2}

    @pytest.mark.asyncio
    async def test_missing_declared_output_fails_node(self, engine):
        stack = Stack("bad-outputs")
        stack.resource("a", "fake", {"name": "a"}, outputs=["arn"])

        result = await engine.apply(stack)

        assert result.nodes["a"].failure_kind == FailureKind.PROVIDER_ERROR
        assert "missing declared outputs: arn" in (result.nodes["a"].error or "")

    @pytest.mark.asyncio
    async def test_failing_transform_is_an_input_error(self, engine, fake):
        stack = Stack("bad-input")
        a = stack.resource("a", "fake", {"name": "a"})
        stack.resource("b", "fake", {"name": "b", "ratio": derive(lambda _: 1 / 0, a.id)})

        result = await engine.apply(stack)

        assert result.nodes["b"].failure_kind == FailureKind.INPUT_ERROR
        assert "division by zero" in (result.nodes["b"].error or "")
        assert fake.names("create") == ["a"]

    @pytest.mark.asyncio
    async def test_build_failure_makes_no_provider_calls(self, engine, fake, store):
        stack = Stack("cyclic")
        stack.resource("a", "fake", {"name": "a"}, depends_on=["b"])
        stack.resource("b", "fake", {"name": "b"}, depends_on=["a"])

        result = await engine.apply(stack)

        assert result.status == "build_failed"
        assert "Cyclic dependency" in (result.error or "")
        assert fake.calls == []
        assert store.save_count == 0
        assert result.to_response() == {"status": "build_failed", "error": result.error}

    @pytest.mark.asyncio
    async def test_unknown_kind_is_a_build_failure(self, engine, fake):
        stack = Stack("unknown")
        stack.resource("a", "nope")

        result = await engine.apply(stack)

        assert result.status == "build_failed"
        assert "unknown kind 'nope'" in (result.error or "")
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_corrupt_state_is_a_build_failure(self, fake_registry, cipher, fake):
        store = InMemoryStateStore()
        store._document = {"version": 99, "stack": "chain", "nodes": {}}
        engine = ApplyEngine(fake_registry, store, cipher=cipher)

        result = await engine.apply(chain_stack())

        assert result.status == "build_failed"
        assert "unsupported state version" in (result.error or "")
        assert fake.calls == []


# =============================================================================
# Secrets
# =============================================================================


class TestSecrets:
    @pytest.mark.asyncio
    async def test_taint_flows_through_three_levels(self, engine, store):
        stack = Stack("tainted")
        a = stack.resource(
            "a", "fake", {"name": "a", "token": Secret("super-secret-token")}, outputs=["token"]
        )
        b = stack.resource("b", "fake", {"name": "b", "token": a["token"]})
        c = stack.resource("c", "fake", {"name": "c", "from_b": b.id})
        stack.export("c_id", c.id)

        result = await engine.apply(stack)

        assert result.is_success
        assert result.outputs == {"c_id": "<redacted>"}
        assert result.secret_outputs == {"c_id": True}

        document = json.dumps(store.document)
        assert "super-secret-token" not in document
        stored_c_id = store.document["nodes"]["c"]["outputs"]["id"]
        assert stored_c_id["secret"] is True
        assert stored_c_id["value"] is None
        assert stored_c_id["ciphertext"]
        assert store.document["nodes"]["c"]["resource_id"] is None
        assert "fake-3" not in document
        assert result.nodes["c"].resource_id == "<redacted>"

    @pytest.mark.asyncio
    async def test_sealed_resource_ids_are_opened_for_delete(self, engine, fake, store):
        stack = Stack("tainted")
        a = stack.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        stack.resource("b", "fake", {"name": "b", "upstream": a.id})
        await engine.apply(stack)
        fake.calls.clear()

        result = await engine.destroy(stack)

        assert result.status == "success"
        assert [(call.operation, call.resource_id) for call in fake.calls] == [
            ("delete", "fake-2"),
            ("delete", "fake-1"),
        ]
        assert fake.live == {}
        assert result.nodes["a"].resource_id == "<redacted>"

    @pytest.mark.asyncio
    async def test_changed_tainted_node_is_updated_by_sealed_id(self, engine, fake):
        first = Stack("tainted")
        first.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        await engine.apply(first)
        fake.calls.clear()

        second = Stack("tainted")
        second.resource("a", "fake", {"name": "a", "token": Secret("rotated-secret-token")})
        result = await engine.apply(second)

        assert result.is_success
        assert [(call.operation, call.resource_id) for call in fake.calls] == [
            ("update", "fake-1")
        ]

    @pytest.mark.asyncio
    async def test_secret_resource_id_is_not_logged(self, engine, caplog):
        caplog.set_level(logging.DEBUG, logger="stackweave")
        stack = Stack("tainted")
        stack.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        stack.resource("public", "fake", {"name": "p"})

        await engine.apply(stack)

        assert "Resource 'a' (fake) create complete: <redacted>" in caplog.text
        assert "Resource 'public' (fake) create complete: fake-2" in caplog.text
        assert "fake-1" not in caplog.text

    @pytest.mark.asyncio
    async def test_short_secret_echoed_in_error_is_redacted(self, engine, fake, caplog):
        caplog.set_level(logging.DEBUG, logger="stackweave")
        stack = Stack("leaky")
        stack.resource("a", "fake", {"name": "a", "password": Secret("hunter2")})
        fake.inject_failure("rejected token hunter2", operation="create")

        result = await engine.apply(stack)

        response = result.to_response()
        assert response["failed"]["a"]["error"].endswith("rejected token <redacted>")
        assert "hunter2" not in json.dumps(response)
        assert "hunter2" not in caplog.text

    @pytest.mark.asyncio
    async def test_default_engines_share_the_state_key(
        self, fake_registry, store, fake, isolated_state_dir
    ):
        stack = Stack("tainted")
        a = stack.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        stack.resource("b", "fake", {"name": "b", "upstream": a.id})

        first = await ApplyEngine(fake_registry, store).apply(stack)
        fake.calls.clear()
        second = await ApplyEngine(fake_registry, store).apply(stack)

        assert first.is_success
        assert second.is_success
        assert second.actions() == {"unchanged": 2}
        assert fake.calls == []
        assert (isolated_state_dir / "state.key").exists()

    @pytest.mark.asyncio
    async def test_public_branch_stays_public(self, engine):
        stack = Stack("mixed")
        stack.resource("secret_leaf", "fake", {"name": "s", "token": Secret("super-secret-token")})
        public = stack.resource("public", "fake", {"name": "p"})
        stack.export("public_id", public.id)

        result = await engine.apply(stack)

        assert result.outputs["public_id"].startswith("fake-")
        assert result.secret_outputs == {"public_id": False}

    @pytest.mark.asyncio
    async def test_secret_taint_survives_unchanged_rerun(self, engine, fake):
        stack = Stack("tainted")
        a = stack.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        stack.export("a_id", a.id)
        await engine.apply(stack)
        fake.calls.clear()

        result = await engine.apply(stack)

        assert fake.calls == []
        assert result.outputs == {"a_id": "<redacted>"}

    @pytest.mark.asyncio
    async def test_provider_error_text_is_redacted(self, engine, fake):
        stack = Stack("leaky")
        stack.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        fake.inject_failure("rejected token super-secret-token", operation="create")

        result = await engine.apply(stack)

        error = result.nodes["a"].error or ""
        assert "super-secret-token" not in error
        assert "<redacted>" in error
        assert "super-secret-token" not in json.dumps(result.to_response())

    @pytest.mark.asyncio
    async def test_wrong_state_key_fails_nodes_with_sealed_outputs(
        self, fake_registry, store, fake
    ):
        stack = Stack("tainted")
        a = stack.resource("a", "fake", {"name": "a", "token": Secret("super-secret-token")})
        stack.resource("b", "fake", {"name": "b", "upstream": a.id})
        first = ApplyEngine(fake_registry, store, cipher=SecretCipher(SecretCipher.generate_key()))
        await first.apply(stack)
        fake.calls.clear()

        other = ApplyEngine(fake_registry, store, cipher=SecretCipher(SecretCipher.generate_key()))
        result = await other.apply(stack)

        assert result.nodes["a"].failure_kind == FailureKind.STATE_ERROR
        assert "STACKWEAVE_STATE_KEY" in (result.nodes["a"].error or "")
        assert result.nodes["b"].failure_kind == FailureKind.UPSTREAM_FAILURE
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_reveal_is_audited(self, engine):
        stack = Stack("tainted")
        a = stack.resource(
            "a", "fake", {"name": "a", "token": Secret("super-secret-token")}, outputs=["token"]
        )
        stack.export("token", a["token"])

        result = await engine.apply(stack)

        assert result.exports is not None
        assert result.exports.reveal("token", "rotate credentials") == "super-secret-token"
        events = engine.audit_log.get_events(stack_name="tainted")
        assert [(e.export_name, e.success) for e in events] == [("token", True)]


# =============================================================================
# Concrete scenario
# =============================================================================


def cluster_registry() -> tuple:
    network = FakeAdapter("network", prefix="net")
    cluster = FakeAdapter(
        "cluster",
        prefix="clu",
        extra_outputs={"oidc_url": lambda rid, _: f"oidc.eks.example.com/id/{rid.upper()}"},
    )
    role = FakeAdapter(
        "role",
        prefix="role",
        extra_outputs={"arn": lambda rid, _: f"arn:aws:iam::000000000000:role/{rid}"},
    )
    return make_registry(network, cluster, role), (network, cluster, role)


def cluster_stack() -> Stack:
    stack = Stack("cluster")
    network = stack.resource("network", "network", {"cidr": "10.0.0.0/16"})
    cluster = stack.resource("cluster", "cluster", {"vpc": network.id}, outputs=["oidc_url"])
    role = stack.resource(
        "role",
        "role",
        {"principal": cluster["oidc_url"]},
        outputs=["arn"],
        secret_outputs=["arn"],
    )
    stack.export("cluster_id", cluster.id)
    stack.export("role_arn", role["arn"])
    return stack


@pytest.mark.asyncio
async def test_cluster_scenario_exports_and_is_idempotent(store, cipher):
    registry, adapters = cluster_registry()
    engine = ApplyEngine(registry, store, cipher=cipher)

    first = await engine.apply(cluster_stack())
    second = await engine.apply(cluster_stack())

    assert first.outputs == {"cluster_id": "clu-1", "role_arn": "<redacted>"}
    assert first.nodes["network"].resource_id == "net-1"
    assert second.provider_calls == 0
    assert sum(len(adapter.calls) for adapter in adapters) == 3
    assert second.outputs == {"cluster_id": "clu-1", "role_arn": "<redacted>"}
    assert "arn:aws:iam" not in json.dumps(store.document)


# =============================================================================
# Deletion
# =============================================================================


class TestDeletion:
    @pytest.mark.asyncio
    async def test_removed_resource_is_deleted(self, engine, fake, store):
        await engine.apply(chain_stack())
        fake.calls.clear()

        stack = Stack("chain")
        a = stack.resource("a", "fake", {"name": "a", "value": "one"}, outputs=["value"])
        b = stack.resource(
            "b", "fake", {"name": "b", "value": "two", "upstream": a.id}, outputs=["value"]
        )
        stack.export("b_value", b["value"])
        result = await engine.apply(stack)

        assert result.is_success
        assert [(call.operation, call.resource_id) for call in fake.calls] == [
            ("delete", "fake-3")
        ]
        assert result.nodes["c"].action == NodeAction.DELETE
        assert result.nodes["c"].state == NodeState.DELETED
        assert "c" not in store.document["nodes"]

    @pytest.mark.asyncio
    async def test_destroy_deletes_dependents_first(self, engine, fake, store):
        await engine.apply(chain_stack())
        fake.calls.clear()

        result = await engine.destroy(chain_stack())

        assert result.status == "success"
        assert result.operation == "destroy"
        assert [call.resource_id for call in fake.calls] == ["fake-3", "fake-2", "fake-1"]
        assert fake.live == {}
        assert store.document["nodes"] == {}

    @pytest.mark.asyncio
    async def test_failed_delete_blocks_its_dependencies(self, engine, fake, store):
        await engine.apply(chain_stack())
        fake.inject_failure("resource in use", operation="delete", name="c")

        result = await engine.destroy(chain_stack())

        assert result.status == "partial"
        assert result.nodes["c"].failure_kind == FailureKind.PROVIDER_ERROR
        assert result.nodes["b"].failure_kind == FailureKind.UPSTREAM_FAILURE
        assert result.nodes["a"].failure_kind == FailureKind.UPSTREAM_FAILURE
        assert fake.operations().count("delete") == 1
        assert set(store.document["nodes"]) == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_destroy_of_empty_state_is_a_no_op(self, engine, fake):
        result = await engine.destroy(chain_stack())

        assert result.is_success
        assert result.nodes == {}
        assert fake.calls == []


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_call_finish(self, engine, fake, store):
        gate = fake.hold()
        task = asyncio.create_task(engine.apply(chain_stack()))
        await fake.entered.wait()

        assert engine.running
        engine.cancel()
        gate.set()
        result = await task

        assert not engine.running
        assert result.status == "partial"
        assert result.nodes["a"].state == NodeState.CREATED
        assert result.nodes["b"].failure_kind == FailureKind.CANCELLED
        assert result.nodes["c"].failure_kind == FailureKind.CANCELLED
        assert fake.names("create") == ["a"]
        assert set(store.document["nodes"]) == {"a"}

    @pytest.mark.asyncio
    async def test_cancel_in_flight_adapter_is_interrupted(self, store, cipher):
        adapter = FakeAdapter(cancel_in_flight=True)
        engine = ApplyEngine(make_registry(adapter), store, cipher=cipher)
        adapter.hold()
        task = asyncio.create_task(engine.apply(chain_stack()))
        await adapter.entered.wait()

        engine.cancel()
        result = await task

        assert result.nodes["a"].failure_kind == FailureKind.CANCELLED
        assert adapter.live == {}
        assert adapter.in_flight == 0
        assert store.document["nodes"] == {}

    @pytest.mark.asyncio
    async def test_timeout_cancels_the_run(self, store, cipher):
        adapter = FakeAdapter(cancel_in_flight=True)
        engine = ApplyEngine(make_registry(adapter), store, cipher=cipher)
        adapter.hold()

        result = await engine.apply(chain_stack(), timeout=0.05)

        assert result.status == "partial"
        assert {node.failure_kind for node in result.nodes.values()} == {FailureKind.CANCELLED}

    @pytest.mark.asyncio
    async def test_cancelled_task_saves_finished_siblings(self, store, cipher):
        fast = FakeAdapter("fast")
        slow = FakeAdapter("slow")
        slow.hold()
        engine = ApplyEngine(make_registry(fast, slow), store, cipher=cipher)
        stack = Stack("siblings")
        stack.resource("a", "fast", {"name": "a"})
        stack.resource("b", "slow", {"name": "b"})

        task = asyncio.create_task(engine.apply(stack))
        await slow.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not engine.running
        assert set(store.document["nodes"]) == {"a"}
        assert store.document["nodes"]["a"]["resource_id"] == "fast-1"
        assert list(fast.live) == ["fast-1"]
        assert slow.live == {}
        assert slow.in_flight == 0

        slow.gate = None
        result = await engine.apply(stack)

        assert result.is_success
        assert result.nodes["a"].action == NodeAction.UNCHANGED
        assert fast.names("create") == ["a"]
        assert slow.names("create") == ["b", "b"]

    @pytest.mark.asyncio
    async def test_cancelled_destroy_keeps_undeleted_records(self, store, cipher):
        fast = FakeAdapter("fast")
        slow = FakeAdapter("slow")
        engine = ApplyEngine(make_registry(fast, slow), store, cipher=cipher)
        stack = Stack("siblings")
        stack.resource("a", "fast", {"name": "a"})
        stack.resource("b", "slow", {"name": "b"})
        await engine.apply(stack)
        slow.entered.clear()
        slow.hold()

        task = asyncio.create_task(engine.destroy(stack))
        await slow.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert set(store.document["nodes"]) == {"b"}
        assert fast.live == {}
        assert list(slow.live) == ["slow-1"]

    @pytest.mark.asyncio
    async def test_cancel_without_run_is_harmless(self, engine):
        engine.cancel()

        result = await engine.apply(chain_stack())

        assert result.is_success

    @pytest.mark.asyncio
    async def test_runs_on_one_engine_are_serialized(self, store, cipher):
        adapter = FakeAdapter(delay=0.01)
        engine = ApplyEngine(make_registry(adapter), store, cipher=cipher)

        first, second = await asyncio.gather(
            engine.apply(chain_stack()), engine.apply(chain_stack())
        )

        assert first.actions() == {"create": 3}
        assert second.actions() == {"unchanged": 3}


# =============================================================================
# Policies
# =============================================================================


def forbidden_value_pack(enforcement: EnforcementLevel) -> PolicyPack:
    """Flags fake resources whose "copied" input is "forbidden"."""
    return PolicyPack(
        name="values",
        policies=[
            ResourcePolicy(
                name="no-forbidden-copy",
                kind="fake",
                enforcement=enforcement,
                check=lambda inputs: (
                    "copied value is forbidden" if inputs.get("copied") == "forbidden" else None
                ),
            )
        ],
    )


def copy_stack(literal: bool = False) -> Stack:
    """b copies a's value (or the literal), c depends on b."""
    stack = Stack("copies")
    a = stack.resource("a", "fake", {"name": "a", "value": "forbidden"}, outputs=["value"])
    copied = "forbidden" if literal else a["value"]
    b = stack.resource("b", "fake", {"name": "b", "copied": copied})
    stack.resource("c", "fake", {"name": "c", "upstream": b.id})
    return stack


class TestPolicies:
    @pytest.mark.asyncio
    async def test_mandatory_violation_known_before_run_makes_no_calls(
        self, fake_registry, store, cipher, fake
    ):
        engine = ApplyEngine(
            fake_registry,
            store,
            cipher=cipher,
            policies=[forbidden_value_pack(EnforcementLevel.MANDATORY)],
        )

        result = await engine.apply(copy_stack(literal=True))

        assert result.status == "build_failed"
        assert "no-forbidden-copy" in (result.error or "")
        assert "resource 'b'" in (result.error or "")
        assert fake.calls == []
        assert store.document is None

    @pytest.mark.asyncio
    async def test_mandatory_violation_found_at_dispatch_fails_dependents(
        self, fake_registry, store, cipher, fake
    ):
        engine = ApplyEngine(
            fake_registry,
            store,
            cipher=cipher,
            policies=[forbidden_value_pack(EnforcementLevel.MANDATORY)],
        )

        result = await engine.apply(copy_stack())

        assert result.status == "partial"
        assert result.nodes["a"].state == NodeState.CREATED
        assert result.nodes["b"].failure_kind == FailureKind.POLICY_VIOLATION
        assert "no-forbidden-copy" in (result.nodes["b"].error or "")
        assert result.nodes["c"].failure_kind == FailureKind.UPSTREAM_FAILURE
        assert fake.names("create") == ["a"]

    @pytest.mark.asyncio
    async def test_advisory_violation_is_reported_as_warning(
        self, fake_registry, store, cipher, fake
    ):
        engine = ApplyEngine(
            fake_registry,
            store,
            cipher=cipher,
            policies=[forbidden_value_pack(EnforcementLevel.ADVISORY)],
        )

        result = await engine.apply(copy_stack())

        assert result.is_success
        assert fake.names("create") == ["a", "b", "c"]
        assert len(result.warnings) == 1
        assert result.to_response()["warnings"] == [
            "[advisory] no-forbidden-copy: resource 'b' (fake): copied value is forbidden"
        ]

    @pytest.mark.asyncio
    async def test_plan_reports_violations_it_can_see(self, fake_registry, store, cipher):
        mandatory = ApplyEngine(
            fake_registry,
            store,
            cipher=cipher,
            policies=[forbidden_value_pack(EnforcementLevel.MANDATORY)],
        )
        advisory = ApplyEngine(
            fake_registry,
            store,
            cipher=cipher,
            policies=[forbidden_value_pack(EnforcementLevel.ADVISORY)],
        )

        blocked = await mandatory.plan(copy_stack(literal=True))
        warned = await advisory.plan(copy_stack(literal=True))

        assert not blocked.is_valid
        assert "no-forbidden-copy" in (blocked.error or "")
        assert warned.is_valid
        assert warned.to_response()["warnings"] == [
            "[advisory] no-forbidden-copy: resource 'b' (fake): copied value is forbidden"
        ]

    @pytest.mark.asyncio
    async def test_policy_check_that_raises_counts_as_violation(self, fake_registry, store, cipher):
        def broken(inputs):
            return inputs["missing"]

        pack = PolicyPack(
            name="broken",
            policies=[ResourcePolicy(name="needs-missing", kind="fake", check=broken)],
        )
        engine = ApplyEngine(fake_registry, store, cipher=cipher, policies=[pack])

        result = await engine.apply(copy_stack())

        assert result.is_success
        assert len(result.warnings) == 3
        assert all("policy check raised KeyError" in warning for warning in result.warnings)


# =============================================================================
# Plan and exports
# =============================================================================


class TestPlan:
    @pytest.mark.asyncio
    async def test_plan_of_new_stack_creates_everything(self, engine, fake):
        plan = await engine.plan(chain_stack())

        assert plan.summary() == {"create": 3}
        assert plan.has_changes
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_plan_after_apply_has_no_changes(self, engine, fake):
        await engine.apply(chain_stack())
        fake.calls.clear()

        plan = await engine.plan(chain_stack())

        assert not plan.has_changes
        assert plan.summary() == {"unchanged": 3}
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_plan_leaf_change_is_known(self, engine):
        await engine.apply(chain_stack())

        plan = await engine.plan(chain_stack(c_value="changed"))

        change = plan.get("c")
        assert change is not None
        assert change.action == NodeAction.UPDATE
        assert change.known

    @pytest.mark.asyncio
    async def test_plan_downstream_of_update_is_unknown(self, engine):
        await engine.apply(chain_stack())

        plan = await engine.plan(chain_stack(a_value="uno"))

        assert plan.get("a").action == NodeAction.UPDATE
        downstream = plan.get("b")
        assert downstream.action == NodeAction.UPDATE
        assert downstream.known is False
        assert plan.to_response()["changes"]["b"]["known"] is False

    @pytest.mark.asyncio
    async def test_plan_lists_deletions_last(self, engine):
        await engine.apply(chain_stack())
        stack = Stack("chain")
        stack.resource("a", "fake", {"name": "a", "value": "one"}, outputs=["value"])

        plan = await engine.plan(stack)

        assert [(c.node_id, c.action) for c in plan.changes] == [
            ("a", NodeAction.UNCHANGED),
            ("c", NodeAction.DELETE),
            ("b", NodeAction.DELETE),
        ]

    @pytest.mark.asyncio
    async def test_plan_of_invalid_stack_reports_error(self, engine):
        stack = Stack("unknown")
        stack.resource("a", "nope")

        plan = await engine.plan(stack)

        assert not plan.is_valid
        assert plan.to_response()["status"] == "build_failed"

    @pytest.mark.asyncio
    async def test_read_exports_from_state(self, fake_registry, store, cipher, fake):
        await ApplyEngine(fake_registry, store, cipher=cipher).apply(chain_stack())
        fake.calls.clear()

        surface = await ApplyEngine(fake_registry, store, cipher=cipher).read_exports(
            chain_stack()
        )

        assert surface.outputs() == {"a_value": "one", "c_value": "three"}
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_read_exports_before_apply_reports_failures(self, engine):
        surface = await engine.read_exports(chain_stack())

        assert surface.outputs() == {}
        assert sorted(surface.failed()) == ["a_value", "c_value"]
        assert "has not been applied" in (surface.failure_reason("a_value") or "")


# =============================================================================
# Configuration
# =============================================================================


class TestEngineConfig:
    def test_concurrency_clamped(self):
        assert EngineConfig(max_concurrency=0).max_concurrency == 1
        assert EngineConfig(max_concurrency=1000).max_concurrency == 64

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("STACKWEAVE_MAX_CONCURRENCY", "8")
        assert EngineConfig.from_env().max_concurrency == 8

    def test_from_env_invalid_falls_back(self, monkeypatch):
        monkeypatch.setenv("STACKWEAVE_MAX_CONCURRENCY", "many")
        assert EngineConfig.from_env().max_concurrency == EngineConfig().max_concurrency
