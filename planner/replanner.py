"""Replanning: refresh the execution plan and unblock goals where possible."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from planner.execution_plan import ExecutionPlan, ExecutionPlanner, PlanStatus
from planner.goal_tree import GoalStatus, GoalTree

logger = logging.getLogger("go.replanner")

# Statuses a replan never rewrites.
_SETTLED = {GoalStatus.COMPLETED, GoalStatus.FAILED, GoalStatus.IN_PROGRESS}


class ReplanOutcome(BaseModel):
    goal_id: str
    reason: str
    progress: float
    plan: ExecutionPlan
    previous_plan_id: str | None = None
    unblocked: list[str] = Field(default_factory=list)
    still_blocked: list[str] = Field(default_factory=list)


class Replanner:
    """Creates a superseding plan and re-evaluates blocked goals.

    Dependencies that no longer resolve to a goal are dropped; a goal left
    with none becomes pending again, the rest stay blocked. Running it twice
    without new information leaves goal state unchanged.
    """

    def __init__(self, planner: ExecutionPlanner) -> None:
        self.planner = planner

    def replan(
        self,
        goal_id: str,
        tree: GoalTree,
        reason: str,
        previous_plan: ExecutionPlan | None = None,
    ) -> ReplanOutcome:
        logger.info("Replanning goal %s. Reason: %s", goal_id, reason)
        progress = tree.get_progress(goal_id)
        blocked = [goal for goal in tree if tree.is_blocked(goal.id) and goal.status not in _SETTLED]

        plan = self.planner.create_plan(
            tree,
            reason=reason,
            supersedes=previous_plan.id if previous_plan else None,
        )
        if previous_plan is not None and previous_plan.status != PlanStatus.ABANDONED:
            previous_plan.set_status(PlanStatus.ABANDONED, now=plan.created_at)

        unblocked: list[str] = []
        still_blocked: list[str] = []
        for goal in blocked:
            valid = [dep for dep in goal.dependencies if dep in tree]
            status = GoalStatus.PENDING if not valid else GoalStatus.BLOCKED
            tree.update_goal(goal.id, dependencies=valid, status=status)
            if status == GoalStatus.PENDING:
                unblocked.append(goal.id)
            else:
                still_blocked.append(goal.id)

        logger.info(
            "Replanned %s as %s: %d unblocked, %d still blocked",
            goal_id,
            plan.id,
            len(unblocked),
            len(still_blocked),
        )
        return ReplanOutcome(
            goal_id=goal_id,
            reason=reason,
            progress=progress,
            plan=plan,
            previous_plan_id=previous_plan.id if previous_plan else None,
            unblocked=unblocked,
            still_blocked=still_blocked,
        )
