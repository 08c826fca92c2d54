"""Topological ordering and cycle detection tests."""

from __future__ import annotations

import pytest

from core.errors import CircularDependencyError
from planner.dependency_graph import DependencyGraph


def test_topological_order_puts_dependencies_first() -> None:
    graph = DependencyGraph.from_mapping({"d": ["c"], "c": ["b"], "b": ["a"], "a": []})

    order = graph.topological_order()

    assert order == ["a", "b", "c", "d"]


def test_independent_nodes_keep_input_order() -> None:
    graph = DependencyGraph.from_mapping({"x": [], "y": [], "z": ["x"]})

    assert graph.topological_order() == ["x", "y", "z"]


def test_cycle_raises_with_path() -> None:
    graph = DependencyGraph.from_mapping({"a": ["b"], "b": ["a"]})

    with pytest.raises(CircularDependencyError) as excinfo:
        graph.topological_order()

    assert excinfo.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(excinfo.value)
    assert graph.find_cycle() == ["a", "b", "a"]


def test_missing_dependencies_are_reported_not_traversed() -> None:
    graph = DependencyGraph.from_mapping({"a": ["ghost"], "b": ["a"]})

    assert graph.missing_dependencies() == {"a": ["ghost"]}
    assert graph.topological_order() == ["a", "b"]
    assert graph.dependents_of("a") == ["b"]
    assert graph.dependencies_of("a") == ["ghost"]


def test_long_chain_given_dependents_first_orders_without_recursion() -> None:
    count = 1500
    graph = DependencyGraph.from_mapping(
        {f"n{i}": [f"n{i + 1}"] if i + 1 < count else [] for i in range(count)}
    )

    order = graph.topological_order()

    assert order == [f"n{i}" for i in reversed(range(count))]
    assert graph.find_cycle() is None


def test_cycle_at_the_end_of_a_long_chain_is_found() -> None:
    count = 1500
    mapping = {f"n{i}": [f"n{i + 1}"] for i in range(count - 1)}
    mapping[f"n{count - 1}"] = ["n0"]
    graph = DependencyGraph.from_mapping(mapping)

    with pytest.raises(CircularDependencyError) as excinfo:
        graph.topological_order()

    assert len(excinfo.value.cycle) == count + 1
    assert excinfo.value.cycle[0] == excinfo.value.cycle[-1] == "n0"
