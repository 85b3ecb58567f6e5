import pytest
from conftest import make_package

from qpkg.errors import (
    DependencyCycleError,
    DuplicatePackageError,
    GraphError,
    UnknownDependencyError,
)
from qpkg.graph import build_graph


def test_two_node_cycle_reports_both_names() -> None:
    with pytest.raises(DependencyCycleError) as excinfo:
        build_graph([make_package("a", "b"), make_package("b", "a")])

    assert set(excinfo.value.path) == {"a", "b"}
    assert excinfo.value.path[0] == excinfo.value.path[-1]


def test_longer_cycle_path_lists_the_cycle_only() -> None:
    packages = [
        make_package("base"),
        make_package("x", "base", "y"),
        make_package("y", "z"),
        make_package("z", "x"),
    ]

    with pytest.raises(DependencyCycleError) as excinfo:
        build_graph(packages)

    assert excinfo.value.path == ("x", "y", "z", "x")
    assert "x -> y -> z -> x" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(DependencyCycleError) as excinfo:
        build_graph([make_package("a", "a")])

    assert excinfo.value.path == ("a", "a")


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError) as excinfo:
        build_graph([make_package("app", "libfoo")])

    assert excinfo.value.name == "libfoo"
    assert excinfo.value.dependent == "app"


def test_duplicate_names_are_a_declaration_error() -> None:
    with pytest.raises(DuplicatePackageError):
        build_graph([make_package("a"), make_package("a")])


def test_invalid_names_are_rejected() -> None:
    with pytest.raises(GraphError):
        build_graph([make_package("../escape")])


def test_dependencies_sharing_an_env_variable_are_rejected() -> None:
    packages = [make_package("foo-bar"), make_package("foo_bar"), make_package("app", "foo-bar", "foo_bar")]

    with pytest.raises(GraphError) as excinfo:
        build_graph(packages)

    assert excinfo.value.context["package"] == "app"
    assert excinfo.value.context["variable"] == "QPKG_DEP_FOO_BAR"


def test_similar_names_are_fine_when_no_package_depends_on_both() -> None:
    graph = build_graph([make_package("foo-bar"), make_package("foo_bar"), make_package("app", "foo-bar")])

    assert len(graph) == 3


def test_order_places_dependencies_first_and_breaks_ties_by_name() -> None:
    packages = [
        make_package("app", "libb", "liba"),
        make_package("libb", "base"),
        make_package("liba", "base"),
        make_package("base"),
        make_package("tool"),
    ]

    graph = build_graph(packages)

    assert graph.order == ("base", "liba", "libb", "app", "tool")
    position = {name: index for index, name in enumerate(graph.order)}
    for package in packages:
        for dependency in package.dependencies:
            assert position[dependency] < position[package.name]


def test_order_is_independent_of_declaration_order() -> None:
    packages = [make_package("c", "a"), make_package("b"), make_package("a")]

    assert build_graph(packages).order == build_graph(list(reversed(packages))).order


def test_edges_are_index_pairs_from_dependency_to_dependent() -> None:
    graph = build_graph([make_package("a"), make_package("b", "a")])

    assert graph.edges == ((graph.index["a"], graph.index["b"]),)
    assert graph.dependents_of("a") == ("b",)
    assert graph.dependencies_of("b") == ("a",)


def test_transitive_dependents_follow_every_path() -> None:
    graph = build_graph(
        [
            make_package("a"),
            make_package("b", "a"),
            make_package("c", "b"),
            make_package("d"),
        ]
    )

    assert graph.transitive_dependents("a") == {"b", "c"}
    assert graph.transitive_dependents("d") == frozenset()


def test_subgraph_keeps_targets_and_their_dependencies() -> None:
    graph = build_graph(
        [
            make_package("a"),
            make_package("b", "a"),
            make_package("c", "b"),
            make_package("d"),
        ]
    )

    sub = graph.subgraph(["b"])

    assert sub.order == ("a", "b")
    assert "c" not in sub
    with pytest.raises(GraphError):
        graph.subgraph(["missing"])


def test_deep_chain_does_not_hit_recursion_limit() -> None:
    packages = [make_package("p0000")]
    packages += [make_package(f"p{i:04d}", f"p{i - 1:04d}") for i in range(1, 3000)]

    graph = build_graph(packages)

    assert graph.order[0] == "p0000"
    assert graph.order[-1] == "p2999"
