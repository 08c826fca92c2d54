"""Progress tracking, velocity estimation, risk detection and replan signals."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from governance.risk_scoring import (
    DEFAULT_RULES,
    RiskFactor,
    RiskRule,
    RiskSeverity,
    score_goal_risk,
)
from planner.goal_tree import GoalNode, GoalStatus, GoalTree

logger = logging.getLogger("go.monitor")

DEFAULT_VELOCITY = 1.0
NO_VELOCITY_HORIZON = timedelta(days=7)
UNKNOWN_GOAL_HORIZON = timedelta(days=1)
MAX_HORIZON_HOURS = 24 * 365 * 10

_ALERT_TYPES = {"velocity": "delay", "blockers": "blocker", "failures": "risk"}


def utc_now() -> datetime:
    return datetime.now(UTC)


class ProgressMetrics(BaseModel):
    """Latest observation for one goal; superseded on every update."""

    goal_id: str
    overall_progress: float = 0.0
    completed_subgoals: int = 0
    failed_subgoals: int = 0
    total_subgoals: int = 0
    estimated_completion: datetime
    velocity: float = DEFAULT_VELOCITY
    efficiency: float = 1.0
    blockers: list[str] = Field(default_factory=list)
    risks: list[RiskFactor] = Field(default_factory=list)
    risk_score: float = 0.0
    last_updated: datetime


class Alert(BaseModel):
    id: str
    type: str
    severity: RiskSeverity
    goal_id: str
    message: str
    timestamp: datetime
    resolved: bool = False
    risk_id: str | None = None


def find_blockers(tree: GoalTree) -> list[str]:
    """Goals marked blocked, plus pending goals waiting on failed or missing goals."""
    blockers: list[str] = []
    for goal in tree:
        if goal.status == GoalStatus.BLOCKED:
            blockers.append(goal.id)
        elif goal.status == GoalStatus.PENDING:
            for dep_id in goal.dependencies:
                dep = tree.get_goal(dep_id)
                if dep is None or dep.status == GoalStatus.FAILED:
                    blockers.append(goal.id)
                    break
    return blockers


class ProgressMonitor:
    """Observes goal progress over time and decides when to replan.

    Velocity is measured in progress fraction per hour. All state is guarded
    by one lock so monitoring ticks can run on their own thread.
    """

    def __init__(
        self,
        rules: Iterable[RiskRule] = DEFAULT_RULES,
        velocity_window: int = 5,
        min_sample_interval_s: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.rules = list(rules)
        self.velocity_window = velocity_window
        self.min_sample_interval_s = min_sample_interval_s
        self.clock = clock
        self._lock = threading.RLock()
        self._metrics: dict[str, ProgressMetrics] = {}
        self._risks: dict[str, RiskFactor] = {}
        self._alerts: list[Alert] = []
        self._velocity_history: dict[str, list[float]] = defaultdict(list)
        self._last_sample: dict[str, tuple[datetime, float]] = {}

    # ── Progress ─────────────────────────────────────────────────────

    def update_progress(
        self,
        goal_id: str,
        progress: float,
        *,
        blockers: list[str] | None = None,
        completed: int | None = None,
        failed: int | None = None,
        total: int | None = None,
        efficiency: float | None = None,
    ) -> ProgressMetrics:
        progress = max(0.0, min(1.0, progress))
        with self._lock:
            now = self.clock()
            self._sample_velocity(goal_id, progress, now)
            existing = self._metrics.get(goal_id)
            velocity = self.calculate_velocity(goal_id)
            risks = self._risks_for(goal_id)
            metrics = ProgressMetrics(
                goal_id=goal_id,
                overall_progress=progress,
                completed_subgoals=_pick(completed, existing, "completed_subgoals", 0),
                failed_subgoals=_pick(failed, existing, "failed_subgoals", 0),
                total_subgoals=_pick(total, existing, "total_subgoals", 0),
                estimated_completion=self._estimate(progress, velocity, now),
                velocity=velocity,
                efficiency=_pick(efficiency, existing, "efficiency", 1.0),
                blockers=list(_pick(blockers, existing, "blockers", [])),
                risks=risks,
                risk_score=score_goal_risk(risks),
                last_updated=now,
            )
            self._metrics[goal_id] = metrics
            return metrics

    def observe(self, goal_id: str, tree: GoalTree) -> ProgressMetrics:
        """Run one monitoring tick against a snapshot of ``tree``."""
        view = tree.snapshot()
        if view.root_id is None:
            return self.update_progress(goal_id, 0.0, blockers=[])
        subgoals = [goal for goal in view if goal.id != view.root_id]
        completed = [g for g in subgoals if g.status == GoalStatus.COMPLETED]
        failed = [g for g in subgoals if g.status == GoalStatus.FAILED]
        self.update_progress(
            goal_id,
            view.get_progress(view.root_id),
            blockers=find_blockers(view),
            completed=len(completed),
            failed=len(failed),
            total=len(subgoals),
            efficiency=_efficiency(completed),
        )
        for risk in self.detect_risks(goal_id):
            self.add_risk(risk)
        metrics = self.get_progress(goal_id)
        logger.debug(
            "Tick %s: progress=%.2f velocity=%.2f blockers=%d risks=%d",
            goal_id,
            metrics.overall_progress,
            metrics.velocity,
            len(metrics.blockers),
            len(metrics.risks),
        )
        return metrics

    def get_progress(self, goal_id: str) -> ProgressMetrics | None:
        with self._lock:
            metrics = self._metrics.get(goal_id)
            return metrics.model_copy(deep=True) if metrics else None

    def get_all_progress(self) -> dict[str, ProgressMetrics]:
        with self._lock:
            return {gid: m.model_copy(deep=True) for gid, m in self._metrics.items()}

    # ── Velocity ─────────────────────────────────────────────────────

    def record_velocity(self, goal_id: str, sample: float) -> None:
        with self._lock:
            self._velocity_history[goal_id].append(sample)
            if goal_id in self._metrics:
                self._metrics[goal_id].velocity = self.calculate_velocity(goal_id)

    def calculate_velocity(self, goal_id: str) -> float:
        """Mean of the most recent samples; 1.0 when nothing was recorded."""
        with self._lock:
            history = self._velocity_history.get(goal_id)
            if not history:
                return DEFAULT_VELOCITY
            recent = history[-self.velocity_window:]
            return sum(recent) / len(recent)

    def estimate_completion(self, goal_id: str) -> datetime:
        with self._lock:
            now = self.clock()
            metrics = self._metrics.get(goal_id)
            if metrics is None:
                return now + UNKNOWN_GOAL_HORIZON
            return self._estimate(metrics.overall_progress, self.calculate_velocity(goal_id), now)

    # ── Risks ────────────────────────────────────────────────────────

    def detect_risks(self, goal_id: str) -> list[RiskFactor]:
        """Evaluate every rule against the latest metrics without storing."""
        with self._lock:
            metrics = self._metrics.get(goal_id)
            if metrics is None:
                return []
            now = self.clock()
            risks: list[RiskFactor] = []
            for rule in self.rules:
                risk = rule(metrics, now)
                if risk is not None:
                    risks.append(risk)
        return risks

    def add_risk(self, risk: RiskFactor) -> None:
        with self._lock:
            is_new = risk.id not in self._risks
            self._risks[risk.id] = risk
            if is_new:
                self._alerts.append(
                    Alert(
                        id=f"alert_{uuid.uuid4().hex[:12]}",
                        type=_ALERT_TYPES.get(risk.cause, "risk"),
                        severity=risk.severity,
                        goal_id=risk.goal_id,
                        message=risk.description,
                        timestamp=risk.detected_at,
                        risk_id=risk.id,
                    )
                )
                logger.warning(
                    "Risk detected for %s: %s (%s)",
                    risk.goal_id,
                    risk.description,
                    risk.severity.value,
                )
            self._refresh_risks(risk.goal_id)

    def resolve_risk(self, risk_id: str) -> bool:
        with self._lock:
            risk = self._risks.pop(risk_id, None)
            if risk is None:
                return False
            for alert in self._alerts:
                if alert.risk_id == risk_id:
                    alert.resolved = True
            self._refresh_risks(risk.goal_id)
            logger.info("Resolved risk %s", risk_id)
            return True

    def has_critical_risk(self, goal_id: str) -> bool:
        with self._lock:
            return any(
                r.goal_id == goal_id and r.severity == RiskSeverity.CRITICAL
                for r in self._risks.values()
            )

    def get_alerts(self) -> list[Alert]:
        with self._lock:
            return [alert.model_copy() for alert in self._alerts if not alert.resolved]

    # ── Decisions ────────────────────────────────────────────────────

    def identify_bottlenecks(self) -> list[str]:
        with self._lock:
            return [
                goal_id
                for goal_id, m in self._metrics.items()
                if m.velocity < 0.3 or m.blockers or len(m.risks) > 2
            ]

    def should_replan(self, goal_id: str) -> bool:
        with self._lock:
            metrics = self._metrics.get(goal_id)
            if metrics is None:
                return False
            return (
                metrics.velocity < 0.2
                or len(metrics.blockers) > 2
                or any(r.severity == RiskSeverity.CRITICAL for r in metrics.risks)
            )

    # ── Internals ────────────────────────────────────────────────────

    def _sample_velocity(self, goal_id: str, progress: float, now: datetime) -> None:
        last = self._last_sample.get(goal_id)
        if last is None:
            self._last_sample[goal_id] = (now, progress)
            return
        last_at, last_progress = last
        elapsed_s = (now - last_at).total_seconds()
        if elapsed_s <= 0 or elapsed_s < self.min_sample_interval_s:
            return
        self._velocity_history[goal_id].append((progress - last_progress) / (elapsed_s / 3600))
        self._last_sample[goal_id] = (now, progress)

    def _risks_for(self, goal_id: str) -> list[RiskFactor]:
        return [risk for risk in self._risks.values() if risk.goal_id == goal_id]

    def _refresh_risks(self, goal_id: str) -> None:
        metrics = self._metrics.get(goal_id)
        if metrics is not None:
            metrics.risks = self._risks_for(goal_id)
            metrics.risk_score = score_goal_risk(metrics.risks)

    @staticmethod
    def _estimate(progress: float, velocity: float, now: datetime) -> datetime:
        if velocity <= 0:
            return now + NO_VELOCITY_HORIZON
        hours = min((1 - progress) / velocity, MAX_HORIZON_HOURS)
        return now + timedelta(hours=hours)


def _pick(value: Any, existing: ProgressMetrics | None, attr: str, default: Any) -> Any:
    if value is not None:
        return value
    if existing is not None:
        return getattr(existing, attr)
    return default


def _efficiency(completed: list[GoalNode]) -> float:
    """Actual over estimated effort for completed goals that report both."""
    measured = [g for g in completed if g.actual_effort is not None and g.estimated_effort > 0]
    estimated = sum(g.estimated_effort for g in measured)
    if not estimated:
        return 1.0
    return sum(g.actual_effort for g in measured) / estimated
