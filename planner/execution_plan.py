"""Execution plan models and the planner that derives them from a goal tree."""

from __future__ import annotations

import logging
import math
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from planner.goal_tree import GoalNode, GoalTree

if TYPE_CHECKING:
    from core.progress_monitor import ProgressMetrics

logger = logging.getLogger("go.planner")


def utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionPhase(BaseModel):
    """Goals at one tree depth, executed as a group."""

    id: str
    name: str
    description: str = ""
    goal_ids: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    estimated_duration: float = 0.0
    actual_duration: float | None = None
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ResourceRequirement(BaseModel):
    id: str
    type: str
    description: str
    quantity: float
    unit: str
    availability: str = "available"
    priority: int = 5


class Milestone(BaseModel):
    id: str
    name: str
    goal_ids: list[str] = Field(default_factory=list)
    deadline: datetime
    completed: bool = False
    completed_at: datetime | None = None


class Timeline(BaseModel):
    start: datetime
    estimated_end: datetime
    actual_end: datetime | None = None
    milestones: list[Milestone] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)


class ContingencyPlan(BaseModel):
    """Declarative response template; never executed by the engine itself."""

    id: str
    trigger: str
    condition: str
    actions: list[str] = Field(default_factory=list)
    priority: int = 5
    activated: bool = False


class ExecutionPlan(BaseModel):
    id: str
    goal_id: str
    strategy: ExecutionStrategy
    phases: list[ExecutionPhase] = Field(default_factory=list)
    resource_requirements: list[ResourceRequirement] = Field(default_factory=list)
    timeline: Timeline
    contingency_plans: list[ContingencyPlan] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_modified: datetime = Field(default_factory=utc_now)
    status: PlanStatus = PlanStatus.DRAFT
    supersedes: str | None = None
    reason: str = ""

    def set_status(self, status: PlanStatus, now: datetime | None = None) -> None:
        self.status = status
        self.last_modified = now or utc_now()


class ExecutionPlanner:
    """Turns a goal tree into phases, resources, a timeline and contingencies."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock

    def create_plan(
        self,
        tree: GoalTree,
        reason: str = "",
        supersedes: str | None = None,
    ) -> ExecutionPlan:
        """Build a fresh draft plan for the tree's root goal."""
        if tree.root_id is None:
            raise ValueError("Cannot plan an empty goal tree.")
        view = tree.snapshot()
        phases = self.create_execution_phases(view)
        now = self.clock()
        plan = ExecutionPlan(
            id=f"plan_{uuid.uuid4().hex[:12]}",
            goal_id=view.root_id,
            strategy=self.determine_execution_strategy(view),
            phases=phases,
            resource_requirements=self.identify_resource_requirements(view),
            timeline=self.create_timeline(view, phases),
            contingency_plans=self.create_contingency_plans(view),
            created_at=now,
            last_modified=now,
            supersedes=supersedes,
            reason=reason,
        )
        logger.info(
            "Created plan %s for goal %s: %d phases, strategy=%s",
            plan.id,
            plan.goal_id,
            len(phases),
            plan.strategy.value,
        )
        return plan

    def create_execution_phases(self, tree: GoalTree) -> list[ExecutionPhase]:
        """One phase per tree depth, found breadth-first from the root."""
        if tree.root_id is None:
            return []
        levels: list[list[GoalNode]] = []
        queue: deque[tuple[str, int]] = deque([(tree.root_id, 0)])
        while queue:
            goal_id, level = queue.popleft()
            goal = tree.get_goal(goal_id)
            if goal is None:
                continue
            if len(levels) <= level:
                levels.append([])
            levels[level].append(goal)
            queue.extend((child.id, level + 1) for child in tree.get_children(goal_id))

        return [
            ExecutionPhase(
                id=f"phase_{index}",
                name=f"Phase {index + 1}",
                description=f"Execute level {index} goals",
                goal_ids=[goal.id for goal in level],
                dependencies=[f"phase_{index - 1}"] if index > 0 else [],
                estimated_duration=sum(goal.estimated_effort for goal in level),
            )
            for index, level in enumerate(levels)
        ]

    def identify_resource_requirements(self, tree: GoalTree) -> list[ResourceRequirement]:
        goals = list(tree)
        return [
            ResourceRequirement(
                id="resource_compute",
                type="computational",
                description="Processing power for goal execution",
                quantity=sum(goal.complexity for goal in goals),
                unit="compute-units",
                priority=8,
            ),
            ResourceRequirement(
                id="resource_agents",
                type="agent",
                description="Workers for task execution",
                quantity=math.ceil(len(goals) / 3),
                unit="agents",
                priority=9,
            ),
            ResourceRequirement(
                id="resource_time",
                type="time",
                description="Time allocation for goal completion",
                quantity=sum(goal.estimated_effort for goal in goals),
                unit="hours",
                priority=10,
            ),
        ]

    def create_timeline(self, tree: GoalTree, phases: list[ExecutionPhase]) -> Timeline:
        start = self.clock()
        milestones: list[Milestone] = []
        elapsed = 0.0
        for index, phase in enumerate(phases):
            elapsed += phase.estimated_duration
            milestones.append(
                Milestone(
                    id=f"milestone_{index}",
                    name=f"{phase.name} Complete",
                    goal_ids=list(phase.goal_ids),
                    deadline=start + timedelta(hours=elapsed),
                )
            )
        return Timeline(
            start=start,
            estimated_end=start + timedelta(hours=elapsed),
            milestones=milestones,
            critical_path=tree.get_critical_path(),
        )

    def create_contingency_plans(self, tree: GoalTree) -> list[ContingencyPlan]:
        _ = tree
        return [
            ContingencyPlan(
                id="contingency_blocker",
                trigger="Goal becomes blocked",
                condition="blockers > 0",
                actions=[
                    "Identify blocking dependencies",
                    "Attempt to resolve blockers",
                    "Reorder execution if possible",
                    "Escalate to user if unresolvable",
                ],
                priority=9,
            ),
            ContingencyPlan(
                id="contingency_slow_progress",
                trigger="Progress velocity too low",
                condition="velocity < 0.3",
                actions=[
                    "Analyze bottlenecks",
                    "Allocate additional resources",
                    "Simplify goal decomposition",
                    "Request additional worker capacity",
                ],
                priority=7,
            ),
            ContingencyPlan(
                id="contingency_high_risk",
                trigger="Critical risk detected",
                condition="any risk severity == critical",
                actions=[
                    "Pause execution",
                    "Assess risk impact",
                    "Create mitigation plan",
                    "Request user approval to continue",
                ],
                priority=10,
            ),
        ]

    def determine_execution_strategy(self, tree: GoalTree) -> ExecutionStrategy:
        """Advisory hint from the mean dependency count per goal."""
        goals = list(tree)
        if not goals:
            return ExecutionStrategy.PARALLEL
        average = sum(len(goal.dependencies) for goal in goals) / len(goals)
        if average > 0.5:
            return ExecutionStrategy.SEQUENTIAL
        if average > 0.2:
            return ExecutionStrategy.HYBRID
        return ExecutionStrategy.PARALLEL

    def evaluate_contingencies(
        self, plan: ExecutionPlan, metrics: ProgressMetrics
    ) -> list[ContingencyPlan]:
        """Mark and return the contingency templates whose trigger holds."""
        triggered = {
            "contingency_blocker": bool(metrics.blockers),
            "contingency_slow_progress": metrics.velocity < 0.3,
            "contingency_high_risk": any(r.severity == "critical" for r in metrics.risks),
        }
        activated: list[ContingencyPlan] = []
        for contingency in plan.contingency_plans:
            if triggered.get(contingency.id):
                contingency.activated = True
                activated.append(contingency)
        if activated:
            plan.last_modified = self.clock()
            logger.warning(
                "Plan %s activated contingencies: %s",
                plan.id,
                ", ".join(c.id for c in activated),
            )
        activated.sort(key=lambda c: -c.priority)
        return activated
