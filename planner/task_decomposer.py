"""Goal-to-subgoal decomposition with pluggable template strategies.

Strategy selection is deterministic: highly complex goals are broken down
hierarchically, concrete goals sequentially, everything else in parallel.
Subgoals that are themselves complex are expanded again, up to an explicit
depth cap.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from core.errors import ValidationError
from planner.goal_tree import GoalClassification, GoalNode, GoalTree
from workers.base_worker import Capability

logger = logging.getLogger("go.decomposer")

ABSTRACT_KEYWORDS = ("improve", "enhance", "optimize", "understand", "learn")
CONCRETE_KEYWORDS = ("create", "build", "implement", "deploy", "test")
COMPLEX_KEYWORDS = ("integrate", "optimize", "coordinate", "synchronize", "orchestrate")

COMPLEXITY_THRESHOLD = 0.7

# First match wins, so more specific capabilities come first.
_CAPABILITY_PATTERNS: list[tuple[Capability, re.Pattern[str]]] = [
    (Capability.TESTING, re.compile(r"\b(test\w*|validat\w*|verif\w*|quality)\b")),
    (Capability.DEVOPS, re.compile(r"\b(deploy\w*|infrastructure|release|docker|ci/cd)\b")),
    (Capability.DATABASE, re.compile(r"\b(database\w*|schemas?|storage|migrations?)\b")),
    (Capability.FRONTEND, re.compile(r"\b(frontend|front-end|web pages?|client-side)\b")),
    (Capability.UI_DESIGN, re.compile(r"\b(ui|ux|user interface|mockups?|themes?)\b")),
    (Capability.BACKEND, re.compile(r"\b(backend|back-end|apis?|servers?|endpoints?)\b")),
    (Capability.PLANNING, re.compile(r"\b(analy[sz]e|plan|research|break down|identify|architecture)\b")),
]


@dataclass(frozen=True)
class DecompositionStrategy:
    """Named template producing ordered subgoal descriptions."""

    name: str
    decompose: Callable[[str, Sequence[str]], list[str]]
    chain_dependencies: bool = True


def _sequential(description: str, constraints: Sequence[str]) -> list[str]:
    _ = constraints
    return [
        f"Analyze and plan: {description}",
        f"Implement core functionality: {description}",
        f"Test and validate: {description}",
        f"Deploy and monitor: {description}",
    ]


def _parallel(description: str, constraints: Sequence[str]) -> list[str]:
    _ = constraints
    return [
        f"Research approach for: {description}",
        f"Design architecture for: {description}",
        f"Setup infrastructure for: {description}",
        f"Prepare documentation for: {description}",
    ]


def _hierarchical(description: str, constraints: Sequence[str]) -> list[str]:
    _ = constraints
    return [
        f"Break down high-level goal: {description}",
        "Identify dependencies and requirements",
        "Create detailed implementation plan",
        "Execute and integrate components",
    ]


def _conjunctive(description: str, constraints: Sequence[str]) -> list[str]:
    """Split on 'and', commas and semicolons."""
    _ = constraints
    parts = [
        p.strip()
        for p in re.split(r"\band\b|,|;", description, flags=re.IGNORECASE)
        if p.strip()
    ]
    return parts or [description]


def default_strategies() -> dict[str, DecompositionStrategy]:
    return {
        "sequential": DecompositionStrategy("sequential", _sequential, chain_dependencies=True),
        "parallel": DecompositionStrategy("parallel", _parallel, chain_dependencies=False),
        "hierarchical": DecompositionStrategy("hierarchical", _hierarchical, chain_dependencies=True),
        "conjunctive": DecompositionStrategy("conjunctive", _conjunctive, chain_dependencies=True),
    }


def classify_goal(description: str) -> GoalClassification:
    desc_l = description.lower()
    has_abstract = any(kw in desc_l for kw in ABSTRACT_KEYWORDS)
    has_concrete = any(kw in desc_l for kw in CONCRETE_KEYWORDS)
    if has_abstract and has_concrete:
        return GoalClassification.HYBRID
    if has_concrete:
        return GoalClassification.CONCRETE
    return GoalClassification.ABSTRACT


def assess_complexity(description: str) -> float:
    """Length-based score (at most 0.7) plus 0.3 for coordination keywords."""
    complexity = min(len(description) / 200, COMPLEXITY_THRESHOLD)
    if any(kw in description.lower() for kw in COMPLEX_KEYWORDS):
        complexity += 0.3
    return min(complexity, 1.0)


def estimate_effort(complexity: float) -> float:
    """Estimated hours of work."""
    return complexity * 10


def infer_capability(description: str) -> Capability:
    """Pick the worker capability for a goal description.

    Template subgoals read "<action>: <parent goal>", so the action prefix is
    matched before the full text.
    """
    desc_l = description.lower()
    candidates = [desc_l.split(":", 1)[0], desc_l] if ":" in desc_l else [desc_l]
    for text in candidates:
        for capability, pattern in _CAPABILITY_PATTERNS:
            if pattern.search(text):
                return capability
    return Capability.GENERAL


def _new_goal_id() -> str:
    return f"goal_{uuid.uuid4().hex[:12]}"


class GoalDecomposer:
    """Builds a goal tree from a free-text goal description."""

    def __init__(
        self,
        max_depth: int = 2,
        priority_decrement: float = 0.1,
        strategies: dict[str, DecompositionStrategy] | None = None,
        complexity_fn: Callable[[str], float] = assess_complexity,
        id_factory: Callable[[], str] = _new_goal_id,
    ) -> None:
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        self.max_depth = max_depth
        self.priority_decrement = priority_decrement
        self.strategies = strategies or default_strategies()
        self.complexity_fn = complexity_fn
        self.id_factory = id_factory

    def register_strategy(self, strategy: DecompositionStrategy) -> None:
        self.strategies[strategy.name] = strategy

    def decompose(
        self,
        description: str,
        constraints: Sequence[str] = (),
        priority: float = 5.0,
        *,
        classification: GoalClassification | None = None,
        complexity: float | None = None,
        strategy: str | None = None,
        max_depth: int | None = None,
    ) -> GoalTree:
        """Create a goal tree rooted at ``description``.

        ``classification`` and ``complexity`` override the heuristics for the
        root only. ``strategy`` forces the root's strategy by name.
        """
        normalized = description.strip()
        if not normalized:
            raise ValidationError("Goal description must not be empty.")
        depth_cap = self.max_depth if max_depth is None else max_depth
        if strategy is not None and strategy not in self.strategies:
            raise ValidationError(f"Unknown decomposition strategy: {strategy}")
        if complexity is not None and not 0.0 <= complexity <= 1.0:
            raise ValidationError(f"Complexity must be within [0, 1], got {complexity}")

        root = self._make_node(normalized, priority, constraints)
        if classification is not None:
            root.classification = GoalClassification(classification)
        if complexity is not None:
            root.complexity = complexity
            root.estimated_effort = estimate_effort(complexity)
        root.metadata["constraints"] = list(constraints)

        tree = GoalTree(root)
        if depth_cap > 0:
            self._expand(tree, root, constraints, level=1, max_depth=depth_cap, forced=strategy)
        logger.info(
            "Decomposed goal %r into %d nodes (max depth %d)", normalized, len(tree), depth_cap
        )
        return tree

    def select_strategy(self, goal: GoalNode) -> DecompositionStrategy:
        if goal.complexity > COMPLEXITY_THRESHOLD:
            return self.strategies["hierarchical"]
        if goal.classification == GoalClassification.CONCRETE:
            return self.strategies["sequential"]
        return self.strategies["parallel"]

    def generate_subgoals(
        self,
        parent: GoalNode,
        constraints: Sequence[str] = (),
        strategy: DecompositionStrategy | None = None,
    ) -> list[GoalNode]:
        """Wrap the strategy's descriptions into goal nodes under ``parent``."""
        chosen = strategy or self.select_strategy(parent)
        descriptions = chosen.decompose(parent.description, constraints)
        subgoals: list[GoalNode] = []
        for index, text in enumerate(descriptions):
            node = self._make_node(text, parent.priority - index * self.priority_decrement, constraints)
            node.parent_id = parent.id
            if chosen.chain_dependencies and subgoals:
                node.dependencies = [subgoals[-1].id]
            node.metadata["strategy"] = chosen.name
            subgoals.append(node)
        logger.debug(
            "Strategy %s produced %d subgoals for %s", chosen.name, len(subgoals), parent.id
        )
        return subgoals

    def _expand(
        self,
        tree: GoalTree,
        parent: GoalNode,
        constraints: Sequence[str],
        level: int,
        max_depth: int,
        forced: str | None = None,
    ) -> None:
        strategy = self.strategies[forced] if forced else None
        subgoals = self.generate_subgoals(parent, constraints, strategy=strategy)
        for subgoal in subgoals:
            tree.add_goal(subgoal, parent.id)
        if level >= max_depth:
            return
        for subgoal in subgoals:
            if subgoal.complexity > COMPLEXITY_THRESHOLD:
                self._expand(tree, subgoal, constraints, level + 1, max_depth)

    def _make_node(self, description: str, priority: float, constraints: Sequence[str]) -> GoalNode:
        complexity = self.complexity_fn(description)
        return GoalNode(
            id=self.id_factory(),
            description=description,
            classification=classify_goal(description),
            priority=priority,
            complexity=complexity,
            estimated_effort=estimate_effort(complexity),
            capability=infer_capability(description),
            metadata={"constraints": list(constraints)} if constraints else {},
        )
