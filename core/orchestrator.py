"""Top-level orchestration facade and runtime wiring."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from core.control_loop import ControlLoop
from core.errors import OrchestrationError, ValidationError
from core.event_bus import EventBus
from core.policy_runtime import Settings, ensure_runtime_dirs, load_effective_config
from core.progress_monitor import ProgressMetrics, ProgressMonitor, utc_now
from core.state_manager import StateManager
from executor.safe_runner import SafeRunner
from executor.scheduler import AbortCheck, ErrorKind, OrchestrationResult, Scheduler
from governance.audit_logger import AuditLogger
from governance.risk_scoring import RiskFactor
from planner.execution_plan import (
    ContingencyPlan,
    ExecutionPlan,
    ExecutionPlanner,
    PhaseStatus,
    PlanStatus,
)
from planner.goal_tree import GoalNode, GoalStatus, GoalTree
from planner.project_template import ProjectRequirements, build_project_tasks
from planner.replanner import Replanner, ReplanOutcome
from planner.task_decomposer import GoalDecomposer
from workers.base_worker import Task
from workers.worker_registry import WorkerRegistry, build_default_registry

logger = logging.getLogger("go.orchestrator")

# Leaf statuses picked up by the next execution round.
_RUNNABLE = {GoalStatus.PENDING, GoalStatus.BLOCKED, GoalStatus.IN_PROGRESS}

# Error kinds that leave a goal waiting rather than failed.
_WAITING_KINDS = {ErrorKind.DEPENDENCY_FAILED, ErrorKind.CANCELLED}


class MonitorReport(BaseModel):
    """Outcome of one monitoring tick."""

    goal_id: str
    metrics: ProgressMetrics
    new_risks: list[RiskFactor] = Field(default_factory=list)
    bottlenecks: list[str] = Field(default_factory=list)
    should_replan: bool = False
    activated_contingencies: list[ContingencyPlan] = Field(default_factory=list)


class Orchestrator:
    """Entry points for decomposing, planning, executing, monitoring and replanning goals.

    One instance owns the state of one orchestration run. Goals are keyed by
    the id of their tree's root.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        decomposer: GoalDecomposer | None = None,
        planner: ExecutionPlanner | None = None,
        monitor: ProgressMonitor | None = None,
        event_bus: EventBus | None = None,
        safe_runner: SafeRunner | None = None,
        max_concurrency: int = 4,
        task_timeout_s: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.clock = clock
        self.state = StateManager()
        self.event_bus = event_bus or EventBus()
        self.decomposer = decomposer or GoalDecomposer()
        self.planner = planner or ExecutionPlanner(clock=clock)
        self.monitor = monitor or ProgressMonitor(clock=clock)
        self.scheduler = Scheduler(
            registry,
            safe_runner=safe_runner,
            event_bus=self.event_bus,
            max_concurrency=max_concurrency,
            task_timeout_s=task_timeout_s,
        )
        self.replanner = Replanner(self.planner)
        self._executing: set[str] = set()
        self._lock = threading.Lock()

    # ── Decompose and plan ───────────────────────────────────────────

    def decompose_goal(
        self,
        description: str,
        constraints: Sequence[str] = (),
        priority: float = 5.0,
        **options: Any,
    ) -> GoalTree:
        tree = self.decomposer.decompose(description, constraints, priority, **options)
        goal_id = self.state.add_tree(tree)
        self.event_bus.emit("goal_decomposed", {"goal_id": goal_id, "goals": len(tree)})
        return tree

    def create_execution_plan(self, goal_id: str, reason: str = "initial plan") -> ExecutionPlan:
        tree = self.state.get_tree(goal_id)
        previous = self.state.current_plan(goal_id)
        plan = self.planner.create_plan(
            tree, reason=reason, supersedes=previous.id if previous else None
        )
        if previous is not None and previous.status not in (PlanStatus.ABANDONED, PlanStatus.COMPLETED):
            previous.set_status(PlanStatus.ABANDONED, now=plan.created_at)
        self.state.add_plan(plan)
        self.event_bus.emit("plan_created", {"goal_id": goal_id, "plan_id": plan.id})
        return plan

    # ── Execute ──────────────────────────────────────────────────────

    def execute_goal(self, goal_id: str, should_abort: AbortCheck | None = None) -> OrchestrationResult:
        """Run every runnable leaf of the goal's tree through the scheduler."""
        tree = self.state.get_tree(goal_id)
        with self._lock:
            if goal_id in self._executing:
                raise ValidationError(f"Goal {goal_id} is already executing")
            self._executing.add(goal_id)
        try:
            plan = self.state.current_plan(goal_id) or self.create_execution_plan(goal_id)
            tasks, upstream = self._build_tasks(tree)
            plan.set_status(PlanStatus.ACTIVE, now=self.clock())
            tracker = self._status_tracker(tree, {task.id for task in tasks}, plan.id)
            self.event_bus.subscribe("*", tracker)
            try:
                result = self.scheduler.execute(
                    tasks, plan_id=plan.id, upstream_failures=upstream, should_abort=should_abort
                )
            except OrchestrationError:
                plan.set_status(PlanStatus.PAUSED, now=self.clock())
                raise
            finally:
                self.event_bus.unsubscribe("*", tracker)

            self._apply_result(tree, tasks, result)
            if tree.root_id is not None:
                self._roll_up(tree, tree.root_id)
            self._finish_plan(goal_id, tree)
            self.state.record_result(goal_id, result)
            return result
        finally:
            with self._lock:
                self._executing.discard(goal_id)

    def execute_plan(self, plan_id: str, should_abort: AbortCheck | None = None) -> OrchestrationResult:
        plan = self.state.get_plan(plan_id)
        if plan.status == PlanStatus.ABANDONED:
            raise ValidationError(f"Execution plan {plan_id} was abandoned")
        return self.execute_goal(plan.goal_id, should_abort=should_abort)

    def orchestrate_project(
        self,
        requirements: ProjectRequirements | dict[str, Any],
        should_abort: AbortCheck | None = None,
    ) -> OrchestrationResult:
        """Run the requirements-driven planning-to-deployment DAG for one project."""
        try:
            requirements = ProjectRequirements.model_validate(requirements)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid project requirements: {exc}") from exc
        plan_id = f"orchestration_{uuid.uuid4().hex[:12]}"
        tasks = build_project_tasks(requirements, plan_id, context={"project": requirements.name})
        self.event_bus.emit(
            "project_planned", {"plan_id": plan_id, "tasks": [task.id for task in tasks]}
        )
        result = self.scheduler.execute(tasks, plan_id=plan_id, should_abort=should_abort)
        self.state.record_result(plan_id, result)
        logger.info(
            "Project %s orchestrated with confidence %.2f", requirements.name, result.confidence
        )
        return result

    # ── Monitor and replan ───────────────────────────────────────────

    def monitor_progress(self, goal_id: str) -> MonitorReport:
        tree = self.state.get_tree(goal_id)
        previous = self.monitor.get_progress(goal_id)
        known = {risk.id for risk in previous.risks} if previous else set()
        metrics = self.monitor.observe(goal_id, tree)
        plan = self.state.current_plan(goal_id)
        activated = self.planner.evaluate_contingencies(plan, metrics) if plan else []
        report = MonitorReport(
            goal_id=goal_id,
            metrics=metrics,
            new_risks=[risk for risk in metrics.risks if risk.id not in known],
            bottlenecks=self.monitor.identify_bottlenecks(),
            should_replan=self.monitor.should_replan(goal_id),
            activated_contingencies=activated,
        )
        self.event_bus.emit(
            "progress_observed",
            {
                "goal_id": goal_id,
                "progress": metrics.overall_progress,
                "risk_score": metrics.risk_score,
                "should_replan": report.should_replan,
            },
        )
        return report

    def replan(self, goal_id: str, reason: str) -> ReplanOutcome:
        tree = self.state.get_tree(goal_id)
        outcome = self.replanner.replan(
            goal_id, tree, reason, previous_plan=self.state.current_plan(goal_id)
        )
        self.state.add_plan(outcome.plan)
        self.event_bus.emit(
            "replanned",
            {
                "goal_id": goal_id,
                "plan_id": outcome.plan.id,
                "supersedes": outcome.previous_plan_id,
                "reason": reason,
            },
        )
        return outcome

    # ── Task building ────────────────────────────────────────────────

    def _build_tasks(self, tree: GoalTree) -> tuple[list[Task], dict[str, str]]:
        """Turn runnable leaves into tasks wired to the leaves they wait on.

        A leaf waits on the leaves under every goal that it, or one of its
        ancestors, depends on. Completed upstream leaves are dropped; failed
        ones, and dependency ids missing from the tree, are handed to the
        scheduler as upstream failures.
        """
        view = tree.snapshot()
        runnable = [leaf for leaf in view.leaves() if leaf.status in _RUNNABLE]
        runnable_ids = {leaf.id for leaf in runnable}
        upstream: dict[str, str] = {}
        tasks: list[Task] = []
        for leaf in runnable:
            path = view.get_path(leaf.id)
            deps: list[str] = []
            for node in path:
                for dep_goal in node.dependencies:
                    if dep_goal not in view:
                        # Waits until a replan drops the dangling id.
                        upstream[dep_goal] = f"Dependency {dep_goal} is not in the goal tree"
                        if dep_goal not in deps:
                            deps.append(dep_goal)
                        continue
                    for up in view.leaves(dep_goal):
                        if up.id == leaf.id or up.id in deps:
                            continue
                        if up.id in runnable_ids:
                            deps.append(up.id)
                        elif up.status != GoalStatus.COMPLETED:
                            upstream[up.id] = f"Upstream goal {up.id} is {up.status.value}"
                            deps.append(up.id)
            tasks.append(
                Task(
                    id=leaf.id,
                    type=leaf.capability,
                    payload={
                        "description": leaf.description,
                        "estimated_effort": leaf.estimated_effort,
                        "goal_id": leaf.id,
                        "complexity": leaf.complexity,
                        "constraints": list(leaf.metadata.get("constraints", [])),
                    },
                    priority=leaf.priority,
                    dependencies=deps,
                    context={"root_goal_id": view.root_id, "path": [node.id for node in path]},
                )
            )
        return tasks, upstream

    # ── Status bookkeeping ───────────────────────────────────────────

    def _status_tracker(
        self, tree: GoalTree, task_ids: set[str], plan_id: str
    ) -> Callable[[str, dict[str, Any]], None]:
        """Event handler mirroring task progress into the tree while a run is live."""

        def track(event: str, payload: dict[str, Any]) -> None:
            task_id = payload.get("task_id")
            if payload.get("plan_id") != plan_id or task_id not in task_ids:
                return
            if event == "task_dispatched":
                tree.update_goal(task_id, status=GoalStatus.IN_PROGRESS, started_at=self.clock())
            elif event == "task_completed":
                tree.update_goal(task_id, status=GoalStatus.COMPLETED, completed_at=self.clock())
            elif event == "task_failed":
                waiting = ErrorKind(payload["kind"]) in _WAITING_KINDS
                tree.update_goal(
                    task_id, status=GoalStatus.BLOCKED if waiting else GoalStatus.FAILED
                )

        return track

    def _apply_result(self, tree: GoalTree, tasks: Iterable[Task], result: OrchestrationResult) -> None:
        now = self.clock()
        for task in tasks:
            goal = tree.get_goal(task.id)
            if goal is None:
                continue
            if task.id in result.errors:
                error = result.errors[task.id]
                changes: dict[str, Any] = {
                    "metadata": {
                        **goal.metadata,
                        "last_error": {"kind": error.kind.value, "reason": error.reason},
                    }
                }
                if error.kind in _WAITING_KINDS:
                    changes["status"] = GoalStatus.BLOCKED
                else:
                    changes["status"] = GoalStatus.FAILED
                    changes["completed_at"] = now
                tree.update_goal(task.id, **changes)
            elif task.id in result.results:
                data = result.results[task.id].data
                effort = data.get("actual_effort") if isinstance(data, dict) else None
                tree.update_goal(
                    task.id,
                    status=GoalStatus.COMPLETED,
                    started_at=goal.started_at or now,
                    completed_at=goal.completed_at or now,
                    actual_effort=float(effort) if effort is not None else goal.estimated_effort,
                )

    def _roll_up(self, tree: GoalTree, goal_id: str) -> None:
        """Derive internal goal statuses from their children, bottom-up."""
        root = tree.get_goal(goal_id)
        if root is None:
            raise ValidationError(f"Goal not found: {goal_id}")
        # Reversed pre-order visits every child before its parent.
        for goal in reversed([root, *tree.get_descendants(goal_id)]):
            children = tree.get_children(goal.id)
            if not children:
                continue
            status = _rolled_status([child.status for child in children])
            changes: dict[str, Any] = {"status": status}
            started = [child.started_at for child in children if child.started_at is not None]
            if started and goal.started_at is None:
                changes["started_at"] = min(started)
            if status == GoalStatus.COMPLETED and goal.completed_at is None:
                changes["completed_at"] = self.clock()
                changes["actual_effort"] = sum(child.actual_effort or 0.0 for child in children)
            tree.update_goal(goal.id, **changes)

    def _finish_plan(self, goal_id: str, tree: GoalTree) -> None:
        plan = self.state.current_plan(goal_id)
        if plan is None:
            return
        now = self.clock()
        for phase in plan.phases:
            goals = [g for g in (tree.get_goal(gid) for gid in phase.goal_ids) if g is not None]
            phase.status = _phase_status(goals)
            starts = [g.started_at for g in goals if g.started_at is not None]
            if starts and phase.started_at is None:
                phase.started_at = min(starts)
            if phase.status == PhaseStatus.COMPLETED and phase.completed_at is None:
                phase.completed_at = now
                phase.actual_duration = sum(g.actual_effort or 0.0 for g in goals)
        for milestone in plan.timeline.milestones:
            goals = [tree.get_goal(gid) for gid in milestone.goal_ids]
            done = all(g is not None and g.status == GoalStatus.COMPLETED for g in goals)
            if done and not milestone.completed:
                milestone.completed = True
                milestone.completed_at = now
        root = tree.get_goal(goal_id)
        if root is not None and root.status == GoalStatus.COMPLETED:
            plan.timeline.actual_end = now
            plan.set_status(PlanStatus.COMPLETED, now=now)
            logger.info("Goal %s completed under plan %s", goal_id, plan.id)
        else:
            plan.last_modified = now


def _rolled_status(statuses: list[GoalStatus]) -> GoalStatus:
    if all(status == GoalStatus.COMPLETED for status in statuses):
        return GoalStatus.COMPLETED
    if any(status in (GoalStatus.FAILED, GoalStatus.BLOCKED) for status in statuses):
        return GoalStatus.BLOCKED
    if any(status in (GoalStatus.IN_PROGRESS, GoalStatus.COMPLETED) for status in statuses):
        return GoalStatus.IN_PROGRESS
    return GoalStatus.PENDING


def _phase_status(goals: list[GoalNode]) -> PhaseStatus:
    if goals and all(goal.status == GoalStatus.COMPLETED for goal in goals):
        return PhaseStatus.COMPLETED
    if any(goal.status in (GoalStatus.FAILED, GoalStatus.BLOCKED) for goal in goals):
        return PhaseStatus.FAILED
    if any(goal.status in (GoalStatus.IN_PROGRESS, GoalStatus.COMPLETED) for goal in goals):
        return PhaseStatus.IN_PROGRESS
    return PhaseStatus.PENDING


# ── Runtime wiring ───────────────────────────────────────────────────


@dataclass
class RuntimeBundle:
    """Holds initialized runtime components."""

    settings: Settings
    registry: WorkerRegistry
    orchestrator: Orchestrator
    control_loop: ControlLoop


def build_runtime(
    settings: Settings | None = None,
    root: Path | None = None,
    fail_keywords: Iterable[str] = (),
    registry: WorkerRegistry | None = None,
) -> RuntimeBundle:
    """Create and wire runtime components from validated settings."""
    settings = settings or load_effective_config()
    paths = ensure_runtime_dirs((root or Path.cwd()).resolve(), settings)
    registry = registry or build_default_registry(settings.worker_config(), fail_keywords)
    orchestrator = Orchestrator(
        registry=registry,
        decomposer=GoalDecomposer(
            max_depth=settings.decomposition.max_depth,
            priority_decrement=settings.decomposition.priority_decrement,
        ),
        monitor=ProgressMonitor(
            velocity_window=settings.monitor.velocity_window,
            min_sample_interval_s=settings.monitor.min_sample_interval_s,
        ),
        safe_runner=SafeRunner(AuditLogger(paths["audit_log_path"])),
        max_concurrency=settings.scheduler.max_concurrency,
        task_timeout_s=settings.scheduler.task_timeout_s,
    )
    control_loop = ControlLoop(
        orchestrator,
        max_iterations=settings.control_loop.max_iterations,
        tick_interval_s=settings.monitor.tick_interval_s,
    )
    return RuntimeBundle(
        settings=settings,
        registry=registry,
        orchestrator=orchestrator,
        control_loop=control_loop,
    )
