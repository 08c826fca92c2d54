"""Run-owned state registry: goal trees, plan history and run results."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from core.errors import ValidationError
from planner.execution_plan import ExecutionPlan
from planner.goal_tree import GoalTree

if TYPE_CHECKING:
    from executor.scheduler import OrchestrationResult


@dataclass
class OrchestrationState:
    """Mutable in-memory state for a single orchestration run."""

    trees: dict[str, GoalTree] = field(default_factory=dict)
    plans: dict[str, ExecutionPlan] = field(default_factory=dict)
    plan_history: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    results: dict[str, list[OrchestrationResult]] = field(default_factory=lambda: defaultdict(list))


class StateManager:
    """Wraps orchestration state and provides lookups that fail loudly."""

    def __init__(self) -> None:
        self.state = OrchestrationState()
        self._lock = threading.RLock()

    # ── Goals ────────────────────────────────────────────────────────

    def add_tree(self, tree: GoalTree) -> str:
        if tree.root_id is None:
            raise ValidationError("Cannot register an empty goal tree.")
        with self._lock:
            if tree.root_id in self.state.trees:
                raise ValidationError(f"Goal already registered: {tree.root_id}")
            self.state.trees[tree.root_id] = tree
            return tree.root_id

    def get_tree(self, goal_id: str) -> GoalTree:
        with self._lock:
            tree = self.state.trees.get(goal_id)
        if tree is None:
            raise ValidationError(f"Goal tree not found for ID: {goal_id}")
        return tree

    def goal_ids(self) -> list[str]:
        with self._lock:
            return list(self.state.trees)

    # ── Plans ────────────────────────────────────────────────────────

    def add_plan(self, plan: ExecutionPlan) -> None:
        with self._lock:
            if plan.goal_id not in self.state.trees:
                raise ValidationError(f"Goal tree not found for ID: {plan.goal_id}")
            self.state.plans[plan.id] = plan
            self.state.plan_history[plan.goal_id].append(plan.id)

    def get_plan(self, plan_id: str) -> ExecutionPlan:
        with self._lock:
            plan = self.state.plans.get(plan_id)
        if plan is None:
            raise ValidationError(f"Execution plan not found for ID: {plan_id}")
        return plan

    def current_plan(self, goal_id: str) -> ExecutionPlan | None:
        """The most recent plan for a goal; older ones are history."""
        with self._lock:
            history = self.state.plan_history.get(goal_id)
            if not history:
                return None
            return self.state.plans[history[-1]]

    def plan_history(self, goal_id: str) -> list[ExecutionPlan]:
        with self._lock:
            return [self.state.plans[pid] for pid in self.state.plan_history.get(goal_id, [])]

    # ── Results ──────────────────────────────────────────────────────

    def record_result(self, goal_id: str, result: OrchestrationResult) -> None:
        with self._lock:
            self.state.results[goal_id].append(result)

    def last_result(self, goal_id: str) -> OrchestrationResult | None:
        with self._lock:
            results = self.state.results.get(goal_id)
            return results[-1] if results else None
