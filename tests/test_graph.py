"""Tests for DAG ordering, graph construction and stack builds."""

import pytest
from fakes import FakeAdapter, make_registry

from stackweave.engine import (
    CycleError,
    DAGResolver,
    DependencyGraph,
    DuplicateNodeError,
    OutputRef,
    ResourceDeclaration,
    Stack,
    UnknownKindError,
    UnknownReferenceError,
    ValueCell,
    derive,
)

# =============================================================================
# DAGResolver
# =============================================================================


class TestDAGResolver:
    def test_topological_sort_orders_dependencies_first(self):
        resolver = DAGResolver(
            ["cluster", "vpc", "role"],
            {"cluster": {"vpc"}, "role": {"cluster"}, "vpc": set()},
        )

        result = resolver.topological_sort()

        assert result.is_success
        assert result.unwrap() == ["vpc", "cluster", "role"]

    def test_layers_group_independent_resources(self):
        resolver = DAGResolver(
            ["vpc", "subnet_a", "subnet_b", "cluster"],
            {"subnet_a": {"vpc"}, "subnet_b": {"vpc"}, "cluster": {"subnet_a", "subnet_b"}},
        )

        layers = resolver.get_layers().unwrap()

        assert layers == [{"vpc"}, {"subnet_a", "subnet_b"}, {"cluster"}]

    def test_cycle_reported_with_unordered_nodes(self):
        resolver = DAGResolver(["a", "b", "c"], {"a": {"b"}, "b": {"a"}, "c": set()})

        result = resolver.get_layers()

        assert result.is_failure
        assert "Cyclic dependency" in (result.error or "")
        assert result.metadata["unordered"] == ["a", "b"]

    def test_unknown_dependency_fails(self):
        result = DAGResolver(["a"], {"a": {"ghost"}}).topological_sort()

        assert result.is_failure
        assert result.metadata == {"node": "a", "missing": "ghost"}


# =============================================================================
# DependencyGraph
# =============================================================================


def _declaration(node_id, inputs=None, depends_on=(), outputs=()):
    return ResourceDeclaration(
        id=node_id,
        kind="fake",
        inputs=inputs or {},
        depends_on=frozenset(depends_on),
        outputs=frozenset(outputs),
    )


class TestDependencyGraph:
    def test_edges_come_from_references_and_depends_on(self):
        graph = DependencyGraph.from_declarations(
            [
                _declaration("vpc"),
                _declaration("cluster", {"vpc_id": OutputRef("vpc", "id")}),
                _declaration("addon", depends_on=["cluster"]),
            ]
        )

        assert graph.edges() == {"vpc": set(), "cluster": {"vpc"}, "addon": {"cluster"}}
        assert graph.topological_layers() == [{"vpc"}, {"cluster"}, {"addon"}]
        assert graph.reverse_layers() == [{"addon"}, {"cluster"}, {"vpc"}]

    def test_references_inside_nested_and_derived_inputs(self):
        graph = DependencyGraph.from_declarations(
            [
                _declaration("vpc"),
                _declaration("igw"),
                _declaration(
                    "route_table",
                    {
                        "routes": [{"gateway_id": OutputRef("igw", "id")}],
                        "name": derive(lambda v: f"rt-{v}", OutputRef("vpc", "id")),
                    },
                ),
            ]
        )

        assert graph["route_table"].dependencies == {"vpc", "igw"}

    def test_dependents_of_is_transitive(self):
        graph = DependencyGraph.from_declarations(
            [
                _declaration("a"),
                _declaration("b", {"x": OutputRef("a", "id")}),
                _declaration("c", {"x": OutputRef("b", "id")}),
                _declaration("d"),
            ]
        )

        assert graph.dependents_of("a") == {"b", "c"}
        assert graph.dependents_of("d") == set()

    def test_duplicate_id_rejected(self):
        with pytest.raises(DuplicateNodeError):
            DependencyGraph.from_declarations([_declaration("a"), _declaration("a")])

    def test_reference_to_missing_node_rejected(self):
        with pytest.raises(UnknownReferenceError) as exc_info:
            DependencyGraph.from_declarations([_declaration("a", {"x": OutputRef("ghost", "id")})])

        assert exc_info.value.target == "ghost"
        assert "Available resources" in str(exc_info.value)

    def test_reference_to_undeclared_output_rejected(self):
        with pytest.raises(UnknownReferenceError, match="Declared outputs of 'a'"):
            DependencyGraph.from_declarations(
                [_declaration("a"), _declaration("b", {"x": OutputRef("a", "arn")})]
            )

    def test_unknown_depends_on_rejected(self):
        with pytest.raises(UnknownReferenceError, match="unknown resource 'ghost'"):
            DependencyGraph.from_declarations([_declaration("a", depends_on=["ghost"])])

    def test_cycle_lists_only_cycle_members(self):
        with pytest.raises(CycleError) as exc_info:
            DependencyGraph.from_declarations(
                [
                    _declaration("a", {"x": OutputRef("b", "id")}),
                    _declaration("b", {"x": OutputRef("a", "id")}),
                    _declaration("downstream", {"x": OutputRef("a", "id")}),
                ]
            )

        assert exc_info.value.nodes == ["a", "b"]

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            DependencyGraph.from_declarations([_declaration("a", depends_on=["a"])])

        assert exc_info.value.nodes == ["a"]

    def test_input_cell_resolves_with_referenced_outputs(self):
        graph = DependencyGraph.from_declarations(
            [
                _declaration("vpc"),
                _declaration("subnet", {"vpc_id": OutputRef("vpc", "id"), "cidr": "10.0.1.0/24"}),
            ]
        )
        cell = graph.input_cell("subnet")

        assert cell.is_pending
        graph["vpc"].outputs["id"].resolve("vpc-1")

        assert cell.value == {"vpc_id": "vpc-1", "cidr": "10.0.1.0/24"}
        assert graph.input_cell("subnet") is cell


# =============================================================================
# Stack
# =============================================================================


class TestStackBuild:
    def test_each_build_has_fresh_cells(self):
        stack = Stack("demo")
        stack.resource("a", "fake", {"name": "a"})
        registry = make_registry(FakeAdapter())

        first = stack.build(registry)
        second = stack.build(registry)

        first.graph["a"].outputs["id"].resolve("fake-1")
        assert second.graph["a"].outputs["id"].is_pending

    def test_default_outputs_come_from_provider(self):
        stack = Stack("demo")
        stack.resource("cluster", "fake")
        registry = make_registry(FakeAdapter(secret_outputs=("kubeconfig",)))

        node = stack.build(registry).graph["cluster"]

        assert node.output_names == frozenset({"id", "kubeconfig"})
        assert node.outputs["kubeconfig"].secret
        assert not node.outputs["id"].secret

    def test_declared_secret_outputs_are_tainted(self):
        stack = Stack("demo")
        stack.resource("role", "fake", outputs=["arn"], secret_outputs=["arn"])

        node = stack.build(make_registry(FakeAdapter())).graph["role"]

        assert node.outputs["arn"].secret

    def test_unknown_kind_fails_build(self):
        stack = Stack("demo")
        stack.resource("a", "does_not_exist")

        with pytest.raises(UnknownKindError, match="does_not_exist"):
            stack.build(make_registry(FakeAdapter()))

    def test_duplicate_resource_rejected_at_declaration(self):
        stack = Stack("demo")
        stack.resource("a", "fake")

        with pytest.raises(DuplicateNodeError):
            stack.resource("a", "fake")

    def test_export_of_unknown_output_fails_build(self):
        stack = Stack("demo")
        handle = stack.resource("a", "fake")
        stack.export("arn", handle["arn"])

        with pytest.raises(UnknownReferenceError, match="export:arn"):
            stack.build(make_registry(FakeAdapter()))

    def test_duplicate_export_rejected(self):
        stack = Stack("demo")
        handle = stack.resource("a", "fake")
        stack.export("a_id", handle.id)

        with pytest.raises(ValueError, match="already defined"):
            stack.export("a_id", handle.id)

    def test_export_cells_follow_output_cells(self):
        stack = Stack("demo")
        handle = stack.resource("a", "fake")
        stack.export("a_id", handle.id)
        stack.export("a_url", derive(lambda rid: f"https://{rid}.example", handle.id))

        build = stack.build(make_registry(FakeAdapter()))
        build.graph["a"].outputs["id"].resolve("fake-7")

        assert build.exports.outputs() == {"a_id": "fake-7", "a_url": "https://fake-7.example"}

    def test_prebuilt_cell_as_input(self):
        stack = Stack("demo")
        stack.resource("a", "fake", {"token": ValueCell.resolved("t", secret=True)})

        build = stack.build(make_registry(FakeAdapter()))

        assert build.graph.input_cell("a").secret
