"""Hierarchical goal tree with an overlaid dependency graph."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from core.errors import CircularDependencyError, ValidationError
from workers.base_worker import Capability


class GoalClassification(str, Enum):
    ABSTRACT = "abstract"
    CONCRETE = "concrete"
    HYBRID = "hybrid"


class GoalStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class GoalNode(BaseModel):
    """One unit of intent in the goal tree."""

    id: str
    description: str
    classification: GoalClassification = GoalClassification.ABSTRACT
    priority: float = 5.0
    complexity: float = Field(default=0.0, ge=0.0, le=1.0)
    status: GoalStatus = GoalStatus.PENDING
    parent_id: str | None = None
    children_ids: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    estimated_effort: float = 0.0
    actual_effort: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    capability: Capability = Capability.GENERAL
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (GoalStatus.COMPLETED, GoalStatus.FAILED)


# Edges owned by the tree itself; callers change them through add/remove.
_STRUCTURAL_FIELDS = {"id", "parent_id", "children_ids"}


class GoalTree:
    """Owns goal nodes and keeps parent/child and dependency invariants.

    Mutations are serialized by a re-entrant lock. Readers that need a
    consistent view while other threads write should call ``snapshot()``.
    """

    def __init__(self, root: GoalNode | None = None) -> None:
        self._lock = threading.RLock()
        self._nodes: dict[str, GoalNode] = {}
        self.root_id: str | None = None
        if root is not None:
            self.add_goal(root)

    # ── Mutation ─────────────────────────────────────────────────────

    def add_goal(self, node: GoalNode, parent_id: str | None = None) -> GoalNode:
        with self._lock:
            if node.id in self._nodes:
                raise ValidationError(f"Goal id already exists: {node.id}")
            if parent_id is None:
                if self.root_id is not None:
                    raise ValidationError(
                        f"Tree already has root {self.root_id}; goal {node.id} needs a parent."
                    )
            elif parent_id not in self._nodes:
                raise ValidationError(f"Parent goal not found: {parent_id}")
            if node.children_ids:
                raise ValidationError("New goals must not declare children; add them individually.")
            self._check_acyclic(node.id, node.dependencies)

            node.parent_id = parent_id
            self._nodes[node.id] = node
            if parent_id is None:
                self.root_id = node.id
            else:
                self._nodes[parent_id].children_ids.append(node.id)
            return node

    def remove_goal(self, goal_id: str) -> list[str]:
        """Remove a goal and its subtree; return the removed ids."""
        with self._lock:
            goal = self._require(goal_id)
            removed = [goal_id, *(d.id for d in self.get_descendants(goal_id))]
            if goal.parent_id is not None and goal.parent_id in self._nodes:
                parent = self._nodes[goal.parent_id]
                parent.children_ids = [cid for cid in parent.children_ids if cid != goal_id]
            for rid in removed:
                del self._nodes[rid]
            gone = set(removed)
            for node in self._nodes.values():
                if any(dep in gone for dep in node.dependencies):
                    node.dependencies = [dep for dep in node.dependencies if dep not in gone]
            if self.root_id in gone:
                self.root_id = None
            return removed

    def update_goal(self, goal_id: str, **changes: Any) -> GoalNode:
        with self._lock:
            goal = self._require(goal_id)
            structural = _STRUCTURAL_FIELDS.intersection(changes)
            if structural:
                raise ValidationError(
                    f"Cannot update structural fields {sorted(structural)}; use add/remove."
                )
            unknown = set(changes) - set(GoalNode.model_fields)
            if unknown:
                raise ValidationError(f"Unknown goal fields: {sorted(unknown)}")
            if "dependencies" in changes:
                self._check_acyclic(goal_id, list(changes["dependencies"]))
            try:
                updated = GoalNode.model_validate({**goal.model_dump(), **changes})
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid update for goal {goal_id}: {exc}") from exc
            for name in changes:
                setattr(goal, name, getattr(updated, name))
            return goal

    # ── Queries ──────────────────────────────────────────────────────

    def get_goal(self, goal_id: str) -> GoalNode | None:
        return self._nodes.get(goal_id)

    def get_children(self, goal_id: str) -> list[GoalNode]:
        goal = self._nodes.get(goal_id)
        if goal is None:
            return []
        return [self._nodes[cid] for cid in goal.children_ids if cid in self._nodes]

    def get_parent(self, goal_id: str) -> GoalNode | None:
        goal = self._nodes.get(goal_id)
        if goal is None or goal.parent_id is None:
            return None
        return self._nodes.get(goal.parent_id)

    def get_descendants(self, goal_id: str) -> list[GoalNode]:
        """Return the subtree below a goal in depth-first pre-order."""
        descendants: list[GoalNode] = []
        stack = list(reversed(self.get_children(goal_id)))
        while stack:
            child = stack.pop()
            descendants.append(child)
            stack.extend(reversed(self.get_children(child.id)))
        return descendants

    def get_path(self, goal_id: str) -> list[GoalNode]:
        """Return goals from the root down to ``goal_id`` inclusive."""
        path: list[GoalNode] = []
        current = self._nodes.get(goal_id)
        while current is not None:
            path.insert(0, current)
            current = self._nodes.get(current.parent_id) if current.parent_id else None
        return path

    def depth(self, goal_id: str) -> int:
        return len(self.get_path(goal_id)) - 1

    def leaves(self, goal_id: str | None = None) -> list[GoalNode]:
        start = goal_id or self.root_id
        if start is None or start not in self._nodes:
            return []
        subtree = [self._nodes[start], *self.get_descendants(start)]
        return [node for node in subtree if not node.children_ids]

    def get_progress(self, goal_id: str) -> float:
        """Recursive mean of child progress, computed bottom-up over a stack."""
        if goal_id not in self._nodes:
            return 0.0
        progress: dict[str, float] = {}
        stack: list[tuple[str, bool]] = [(goal_id, False)]
        while stack:
            current, expanded = stack.pop()
            goal = self._nodes[current]
            children = self.get_children(current)
            if goal.status == GoalStatus.COMPLETED:
                progress[current] = 1.0
            elif goal.status == GoalStatus.FAILED:
                progress[current] = 0.0
            elif not children:
                progress[current] = 0.5 if goal.status == GoalStatus.IN_PROGRESS else 0.0
            elif expanded:
                progress[current] = sum(progress[c.id] for c in children) / len(children)
            else:
                stack.append((current, True))
                stack.extend((child.id, False) for child in children)
        return progress[goal_id]

    def is_blocked(self, goal_id: str) -> bool:
        goal = self._nodes.get(goal_id)
        if goal is None:
            return False
        if goal.status == GoalStatus.BLOCKED:
            return True
        return any(not self._dependency_met(dep) for dep in goal.dependencies)

    def can_start(self, goal_id: str) -> bool:
        goal = self._nodes.get(goal_id)
        if goal is None or goal.status != GoalStatus.PENDING:
            return False
        return all(self._dependency_met(dep) for dep in goal.dependencies)

    def get_critical_path(self, limit: int = 5) -> list[str]:
        """Highest-priority, highest-effort incomplete goals.

        A ranking heuristic rather than a longest-path computation.
        """
        incomplete = [node for node in self._nodes.values() if not node.is_terminal]
        incomplete.sort(key=lambda n: (-n.priority, -n.estimated_effort))
        return [node.id for node in incomplete[:limit]]

    def snapshot(self) -> GoalTree:
        """Return an independent deep copy taken under the write lock."""
        with self._lock:
            copy = GoalTree()
            copy._nodes = {gid: node.model_copy(deep=True) for gid, node in self._nodes.items()}
            copy.root_id = self.root_id
            return copy

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "root_id": self.root_id,
                "nodes": [node.model_dump(mode="json") for node in self._nodes.values()],
            }

    def __contains__(self, goal_id: object) -> bool:
        return goal_id in self._nodes

    def __iter__(self) -> Iterator[GoalNode]:
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)

    # ── Internals ────────────────────────────────────────────────────

    def _require(self, goal_id: str) -> GoalNode:
        goal = self._nodes.get(goal_id)
        if goal is None:
            raise ValidationError(f"Goal not found: {goal_id}")
        return goal

    def _dependency_met(self, dep_id: str) -> bool:
        dep = self._nodes.get(dep_id)
        return dep is not None and dep.status == GoalStatus.COMPLETED

    def _check_acyclic(self, goal_id: str, dependencies: list[str]) -> None:
        """Raise if giving ``goal_id`` these dependencies would close a cycle.

        The existing graph is acyclic, so only paths from a new dependency
        back to ``goal_id`` need checking.
        """
        if goal_id in dependencies:
            raise CircularDependencyError([goal_id, goal_id])
        came_from: dict[str, str] = {}
        stack: list[str] = []
        for dep in dependencies:
            if dep not in came_from:
                came_from[dep] = goal_id
                stack.append(dep)
        while stack:
            current = stack.pop()
            node = self._nodes.get(current)
            if node is None:
                continue
            for dep in node.dependencies:
                if dep == goal_id:
                    path = [current]
                    while came_from[path[-1]] != goal_id:
                        path.append(came_from[path[-1]])
                    raise CircularDependencyError([goal_id, *reversed(path), goal_id])
                if dep not in came_from:
                    came_from[dep] = current
                    stack.append(dep)
