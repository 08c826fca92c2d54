"""Deterministic, pluggable risk detection rules for goal progress."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from core.progress_monitor import ProgressMetrics


class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskFactor(BaseModel):
    """A detected risk against one goal, keyed by its cause."""

    id: str
    goal_id: str
    cause: str
    description: str
    severity: RiskSeverity
    probability: float = Field(ge=0.0, le=1.0)
    impact: float = Field(ge=0.0, le=1.0)
    mitigation_strategy: str | None = None
    detected_at: datetime


RiskRule = Callable[["ProgressMetrics", datetime], "RiskFactor | None"]


def risk_id(cause: str, goal_id: str) -> str:
    return f"risk_{cause}_{goal_id}"


def low_velocity_rule(metrics: ProgressMetrics, now: datetime) -> RiskFactor | None:
    if metrics.velocity >= 0.5:
        return None
    return RiskFactor(
        id=risk_id("velocity", metrics.goal_id),
        goal_id=metrics.goal_id,
        cause="velocity",
        description="Low velocity detected - progress is slower than expected",
        severity=RiskSeverity.MEDIUM,
        probability=0.7,
        impact=0.6,
        mitigation_strategy="Analyze bottlenecks and allocate additional worker capacity",
        detected_at=now,
    )


def blocker_rule(metrics: ProgressMetrics, now: datetime) -> RiskFactor | None:
    if not metrics.blockers:
        return None
    return RiskFactor(
        id=risk_id("blockers", metrics.goal_id),
        goal_id=metrics.goal_id,
        cause="blockers",
        description=f"Goal has {len(metrics.blockers)} active blocker(s)",
        severity=RiskSeverity.HIGH,
        probability=0.9,
        impact=0.8,
        mitigation_strategy="Resolve or drop blocking dependencies",
        detected_at=now,
    )


def failure_ratio_rule(threshold: float = 0.5) -> RiskRule:
    """Build a rule raising a critical risk once too many subgoals failed.

    Not part of the default rule set.
    """

    def rule(metrics: ProgressMetrics, now: datetime) -> RiskFactor | None:
        if metrics.total_subgoals == 0:
            return None
        ratio = metrics.failed_subgoals / metrics.total_subgoals
        if ratio < threshold:
            return None
        return RiskFactor(
            id=risk_id("failures", metrics.goal_id),
            goal_id=metrics.goal_id,
            cause="failures",
            description=f"{metrics.failed_subgoals}/{metrics.total_subgoals} subgoals failed",
            severity=RiskSeverity.CRITICAL,
            probability=1.0,
            impact=max(0.0, min(1.0, ratio)),
            mitigation_strategy="Pause execution and review failed subgoals",
            detected_at=now,
        )

    return rule


DEFAULT_RULES: tuple[RiskRule, ...] = (low_velocity_rule, blocker_rule)


def score_goal_risk(risks: list[RiskFactor]) -> float:
    """Return an aggregate risk score in [0, 1] (max of probability x impact)."""
    if not risks:
        return 0.0
    return max(0.0, min(1.0, max(r.probability * r.impact for r in risks)))
