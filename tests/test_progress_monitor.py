"""Progress monitoring, velocity and risk detection tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from core.progress_monitor import ProgressMonitor, find_blockers
from governance.risk_scoring import (
    DEFAULT_RULES,
    RiskFactor,
    RiskSeverity,
    failure_ratio_rule,
)
from planner.goal_tree import GoalNode, GoalStatus, GoalTree

START = datetime(2026, 1, 1, tzinfo=UTC)


class FakeClock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _monitor(**kwargs) -> tuple[ProgressMonitor, FakeClock]:
    clock = FakeClock()
    return ProgressMonitor(clock=clock, **kwargs), clock


def test_should_replan_at_low_velocity() -> None:
    monitor, _ = _monitor()
    monitor.update_progress("g", 0.2, blockers=[])

    monitor.record_velocity("g", 0.1)

    assert monitor.should_replan("g") is True


def test_should_not_replan_at_healthy_velocity() -> None:
    monitor, _ = _monitor()
    monitor.update_progress("g", 0.5, blockers=[])

    monitor.record_velocity("g", 0.9)

    assert monitor.get_progress("g").risks == []
    assert monitor.should_replan("g") is False


def test_should_replan_with_many_blockers_or_critical_risk() -> None:
    monitor, clock = _monitor()
    monitor.update_progress("many", 0.1, blockers=["a", "b", "c"])
    monitor.update_progress("critical", 0.1, blockers=[])
    monitor.add_risk(
        RiskFactor(
            id="risk_manual_critical",
            goal_id="critical",
            cause="manual",
            description="Data loss",
            severity=RiskSeverity.CRITICAL,
            probability=0.5,
            impact=1.0,
            detected_at=clock(),
        )
    )

    assert monitor.should_replan("many")
    assert monitor.should_replan("critical")
    assert monitor.has_critical_risk("critical")
    assert not monitor.should_replan("unknown")


def test_velocity_is_sampled_from_progress_deltas() -> None:
    monitor, clock = _monitor()
    monitor.update_progress("g", 0.0)
    clock.advance(hours=1)

    metrics = monitor.update_progress("g", 0.5)

    assert metrics.velocity == pytest.approx(0.5)
    assert metrics.estimated_completion == clock.now + timedelta(hours=1)


def test_velocity_uses_recent_window_and_defaults_to_one() -> None:
    monitor, _ = _monitor(velocity_window=2)
    assert monitor.calculate_velocity("g") == 1.0

    for sample in (10.0, 0.2, 0.4):
        monitor.record_velocity("g", sample)

    assert monitor.calculate_velocity("g") == pytest.approx(0.3)


def test_estimate_completion_horizons() -> None:
    monitor, clock = _monitor()
    assert monitor.estimate_completion("unknown") == clock.now + timedelta(days=1)

    monitor.update_progress("g", 0.2)
    monitor.record_velocity("g", 0.0)
    assert monitor.estimate_completion("g") == clock.now + timedelta(days=7)


def test_risks_are_deduplicated_and_alerts_resolved() -> None:
    monitor, _ = _monitor()
    monitor.update_progress("g", 0.1, blockers=["b1"])
    monitor.record_velocity("g", 0.1)

    detected = monitor.detect_risks("g")
    for risk in detected:
        monitor.add_risk(risk)
    for risk in monitor.detect_risks("g"):
        monitor.add_risk(risk)

    assert sorted(r.cause for r in detected) == ["blockers", "velocity"]
    assert len(monitor.get_progress("g").risks) == 2
    alerts = monitor.get_alerts()
    assert sorted(a.type for a in alerts) == ["blocker", "delay"]

    assert monitor.resolve_risk("risk_blockers_g") is True
    assert monitor.resolve_risk("risk_blockers_g") is False
    assert [a.type for a in monitor.get_alerts()] == ["delay"]
    assert [r.cause for r in monitor.get_progress("g").risks] == ["velocity"]


def test_observe_reads_tree_and_detects_blockers() -> None:
    tree = GoalTree(GoalNode(id="root", description="Ship"))
    tree.add_goal(GoalNode(id="a", description="Build", estimated_effort=2.0), "root")
    tree.add_goal(GoalNode(id="b", description="Test", dependencies=["a"]), "root")
    tree.add_goal(GoalNode(id="c", description="Docs", estimated_effort=4.0), "root")
    tree.update_goal("a", status=GoalStatus.FAILED)
    tree.update_goal("c", status=GoalStatus.COMPLETED, actual_effort=2.0)
    monitor, _ = _monitor()

    metrics = monitor.observe("root", tree)

    assert find_blockers(tree) == ["b"]
    assert metrics.blockers == ["b"]
    assert metrics.completed_subgoals == 1
    assert metrics.failed_subgoals == 1
    assert metrics.total_subgoals == 3
    assert metrics.efficiency == pytest.approx(0.5)
    assert metrics.overall_progress == pytest.approx(1 / 3)
    assert [r.cause for r in metrics.risks] == ["blockers"]


def test_failure_ratio_rule_raises_critical_risk() -> None:
    tree = GoalTree(GoalNode(id="root", description="Ship"))
    tree.add_goal(GoalNode(id="a", description="Build", status=GoalStatus.FAILED), "root")
    tree.add_goal(GoalNode(id="b", description="Test"), "root")
    monitor, _ = _monitor(rules=[*DEFAULT_RULES, failure_ratio_rule(0.5)])

    monitor.observe("root", tree)

    assert monitor.has_critical_risk("root")
    assert monitor.should_replan("root")
    assert monitor.get_progress("root").risk_score == pytest.approx(0.5)


def test_bottlenecks_flag_slow_or_blocked_goals() -> None:
    monitor, _ = _monitor()
    monitor.update_progress("slow", 0.1)
    monitor.record_velocity("slow", 0.1)
    monitor.update_progress("stuck", 0.1, blockers=["x"])
    monitor.update_progress("fine", 0.5, blockers=[])

    assert sorted(monitor.identify_bottlenecks()) == ["slow", "stuck"]
