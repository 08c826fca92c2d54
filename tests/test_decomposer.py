"""Goal decomposition tests."""

from __future__ import annotations

import itertools

import pytest

from core.errors import ValidationError
from planner.goal_tree import GoalClassification
from planner.task_decomposer import (
    DecompositionStrategy,
    GoalDecomposer,
    assess_complexity,
    classify_goal,
    infer_capability,
)
from workers.base_worker import Capability


def _ids() -> itertools.count:
    return itertools.count(1)


def _decomposer(**kwargs) -> GoalDecomposer:
    counter = _ids()
    return GoalDecomposer(id_factory=lambda: f"g{next(counter)}", **kwargs)


def test_complex_concrete_goal_uses_hierarchical_template() -> None:
    tree = _decomposer().decompose(
        "Build a machine learning pipeline",
        classification=GoalClassification.CONCRETE,
        complexity=0.8,
    )

    root = tree.get_goal(tree.root_id)
    children = tree.get_children(tree.root_id)

    assert len(tree) == 5
    assert root.classification == GoalClassification.CONCRETE
    assert len(children) == 4
    assert children[0].description == "Break down high-level goal: Build a machine learning pipeline"
    assert children[1].description == "Identify dependencies and requirements"
    for child in children:
        assert child.estimated_effort == pytest.approx(child.complexity * 10)
        assert child.metadata["strategy"] == "hierarchical"


def test_concrete_goal_is_sequential_and_chained() -> None:
    tree = _decomposer().decompose("Build a web app")

    children = tree.get_children(tree.root_id)

    assert [c.description.split(":")[0] for c in children] == [
        "Analyze and plan",
        "Implement core functionality",
        "Test and validate",
        "Deploy and monitor",
    ]
    assert children[0].dependencies == []
    for previous, current in zip(children, children[1:]):
        assert current.dependencies == [previous.id]
    assert [c.capability for c in children] == [
        Capability.PLANNING,
        Capability.GENERAL,
        Capability.TESTING,
        Capability.DEVOPS,
    ]


def test_abstract_goal_is_parallel_without_dependencies() -> None:
    tree = _decomposer().decompose("Improve team morale")

    children = tree.get_children(tree.root_id)

    assert children[0].description.startswith("Research approach for:")
    assert all(c.dependencies == [] for c in children)


def test_subgoal_priority_decreases_by_index() -> None:
    tree = _decomposer(priority_decrement=0.5).decompose("Build a web app", priority=8.0)

    priorities = [c.priority for c in tree.get_children(tree.root_id)]

    assert priorities == pytest.approx([8.0, 7.5, 7.0, 6.5])


def test_depth_cap_bounds_recursive_expansion() -> None:
    decomposer = _decomposer(complexity_fn=lambda _: 0.9, max_depth=2)

    tree = decomposer.decompose("Coordinate everything")

    assert len(tree) == 1 + 4 + 16
    assert max(tree.depth(g.id) for g in tree) == 2


def test_zero_depth_keeps_only_root() -> None:
    tree = _decomposer().decompose("Build a web app", max_depth=0)

    assert len(tree) == 1


def test_forced_and_custom_strategies() -> None:
    decomposer = _decomposer()
    tree = decomposer.decompose("Set up CI, write docs; add tests", strategy="conjunctive")
    assert [c.description for c in tree.get_children(tree.root_id)] == [
        "Set up CI",
        "write docs",
        "add tests",
    ]

    decomposer.register_strategy(
        DecompositionStrategy("pair", lambda d, _c: [f"first {d}", f"second {d}"], False)
    )
    paired = decomposer.decompose("ship", strategy="pair")
    assert len(paired.get_children(paired.root_id)) == 2


def test_invalid_input_is_rejected() -> None:
    decomposer = _decomposer()

    with pytest.raises(ValidationError):
        decomposer.decompose("   ")
    with pytest.raises(ValidationError):
        decomposer.decompose("Build a web app", strategy="unknown")
    with pytest.raises(ValidationError):
        decomposer.decompose("Build a web app", complexity=3.0)
    with pytest.raises(ValidationError):
        decomposer.decompose("Build a web app", complexity=-0.1)


def test_constraints_are_recorded_on_goals() -> None:
    tree = _decomposer().decompose("Build a web app", constraints=["budget < 1k"])

    assert all(g.metadata["constraints"] == ["budget < 1k"] for g in tree)


def test_classification_and_complexity_heuristics() -> None:
    assert classify_goal("Improve onboarding") == GoalClassification.ABSTRACT
    assert classify_goal("Deploy the service") == GoalClassification.CONCRETE
    assert classify_goal("Build and optimize the cache") == GoalClassification.HYBRID
    assert assess_complexity("Orchestrate services") == pytest.approx(0.4)
    assert assess_complexity("x" * 400) == pytest.approx(0.7)


def test_capability_inference() -> None:
    assert infer_capability("Analyze and plan: Build a REST API") == Capability.PLANNING
    assert infer_capability("Test and validate: Build a REST API") == Capability.TESTING
    assert infer_capability("Design the database schema") == Capability.DATABASE
    assert infer_capability("Build a REST API") == Capability.BACKEND
    assert infer_capability("Create UI mockups") == Capability.UI_DESIGN
    assert infer_capability("Write a poem") == Capability.GENERAL
