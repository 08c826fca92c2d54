"""Adaptive control loop: Decompose → Plan → Execute → Monitor → Replan → Repeat.

The loop runs until the root goal completes, no runnable work remains, or
``max_iterations`` rounds have been spent. A ``MonitoringTicker`` can watch
progress on its own thread while a round is executing; a critical risk
raised during the round stops further dispatch.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from core.errors import OrchestrationError
from planner.goal_tree import GoalStatus

if TYPE_CHECKING:
    from core.event_bus import EventBus
    from core.orchestrator import MonitorReport, Orchestrator
    from executor.scheduler import OrchestrationResult
    from planner.replanner import ReplanOutcome

logger = logging.getLogger("go.control_loop")


@dataclass
class LoopResult:
    """Result of a full control-loop execution."""

    goal: str
    goal_id: str | None = None
    iterations: int = 0
    completed: bool = False
    progress: float = 0.0
    runs: list[OrchestrationResult] = field(default_factory=list)
    reports: list[MonitorReport] = field(default_factory=list)
    replans: list[ReplanOutcome] = field(default_factory=list)
    evaluation: str = ""


class MonitoringTicker:
    """Runs ``monitor_progress`` for one goal every ``interval_s`` on a daemon thread."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        goal_id: str,
        interval_s: float = 5.0,
        auto_replan: bool = True,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.orchestrator = orchestrator
        self.goal_id = goal_id
        self.interval_s = interval_s
        self.auto_replan = auto_replan
        self.reports: list[MonitorReport] = []
        self.replans: list[ReplanOutcome] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"go-ticker-{self.goal_id}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def tick(self) -> MonitorReport:
        report = self.orchestrator.monitor_progress(self.goal_id)
        self.reports.append(report)
        if report.should_replan and self.auto_replan:
            self.replans.append(
                self.orchestrator.replan(self.goal_id, reason="Monitoring tick requested replan")
            )
        return report

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.tick()
            except OrchestrationError as exc:
                logger.warning("Monitoring tick for %s failed: %s", self.goal_id, exc)

    def __enter__(self) -> MonitoringTicker:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


class ControlLoop:
    """Adaptive loop over the orchestration facade."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        max_iterations: int = 5,
        tick_interval_s: float | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.max_iterations = max_iterations
        self.tick_interval_s = tick_interval_s

    @property
    def event_bus(self) -> EventBus:
        return self.orchestrator.event_bus

    # ── Main entry point ─────────────────────────────────────────────

    def run_goal(
        self,
        goal: str,
        constraints: Sequence[str] = (),
        priority: float = 5.0,
        max_iterations: int | None = None,
    ) -> LoopResult:
        """Decompose and plan ``goal``, then execute, monitor and replan until done."""
        cap = max_iterations or self.max_iterations
        result = LoopResult(goal=goal)
        self.event_bus.emit("loop_started", {"goal": goal})

        # ── DECOMPOSE + PLAN ──
        tree = self.orchestrator.decompose_goal(goal, constraints, priority)
        goal_id = tree.root_id
        result.goal_id = goal_id
        plan = self.orchestrator.create_execution_plan(goal_id)
        logger.info(
            "Goal: %s decomposed into %d goals, plan %s", goal, len(tree), plan.id
        )

        iteration = 0
        while iteration < cap:
            iteration += 1
            logger.info("Iteration %d/%d for goal %s", iteration, cap, goal_id)

            # ── EXECUTE ──
            run = self._execute_round(goal_id)
            result.runs.append(run)

            # ── MONITOR ──
            report = self.orchestrator.monitor_progress(goal_id)
            result.reports.append(report)

            root = tree.get_goal(goal_id)
            if root is not None and root.status == GoalStatus.COMPLETED:
                result.completed = True
                result.evaluation = f"Goal '{goal}' completed at iteration {iteration}."
                logger.info("Goal COMPLETE at iteration %d", iteration)
                break
            if run.cancelled:
                result.evaluation = f"Goal '{goal}' stopped: {run.cancel_reason}."
                break
            if not run.dispatch_order:
                result.evaluation = (
                    f"Goal '{goal}': no runnable work remains after {iteration} iterations."
                )
                break

            # ── REPLAN ──
            if report.should_replan:
                outcome = self.orchestrator.replan(
                    goal_id, reason=f"Iteration {iteration}: monitor requested replan"
                )
                result.replans.append(outcome)

        result.iterations = iteration
        result.progress = tree.get_progress(goal_id)
        if not result.evaluation:
            result.evaluation = f"Goal '{goal}': max iterations ({cap}) reached."

        self.event_bus.emit(
            "loop_completed",
            {
                "goal": goal,
                "goal_id": goal_id,
                "iterations": iteration,
                "completed": result.completed,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
        return result

    # ── Helpers ──────────────────────────────────────────────────────

    def _execute_round(self, goal_id: str) -> OrchestrationResult:
        def abort_reason() -> str | None:
            if self.orchestrator.monitor.has_critical_risk(goal_id):
                return "Critical risk detected"
            return None

        if self.tick_interval_s is None:
            return self.orchestrator.execute_goal(goal_id, should_abort=abort_reason)
        ticker = MonitoringTicker(
            self.orchestrator, goal_id, interval_s=self.tick_interval_s, auto_replan=False
        )
        with ticker:
            return self.orchestrator.execute_goal(goal_id, should_abort=abort_reason)
