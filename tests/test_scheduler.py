"""Scheduler dispatch, failure propagation and cancellation tests."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from core.errors import CircularDependencyError, ValidationError
from core.event_bus import EventBus
from executor.safe_runner import SafeRunner
from executor.scheduler import ErrorKind, Scheduler
from governance.audit_logger import AuditLogger
from workers.base_worker import AgentResult, Capability, ResultMetadata, Task
from workers.worker_registry import CallableWorker, SimulatedWorker, WorkerRegistry


def _task(task_id: str, *deps: str, **kwargs) -> Task:
    return Task(
        id=task_id,
        type=kwargs.pop("type", Capability.GENERAL),
        payload={"description": f"task {task_id}", **kwargs.pop("payload", {})},
        dependencies=list(deps),
        **kwargs,
    )


def _registry(*workers) -> WorkerRegistry:
    registry = WorkerRegistry()
    for worker in workers:
        registry.register(worker)
    return registry


def test_chain_with_failure_propagates_to_dependents() -> None:
    worker = SimulatedWorker(Capability.GENERAL, fail_task_ids=["B"])
    scheduler = Scheduler(_registry(worker))

    result = scheduler.execute(
        [_task("A"), _task("B", "A"), _task("C", "B"), _task("D", "C")], plan_id="plan_1"
    )

    assert result.success is False
    assert result.results["A"].success is True
    assert result.results["B"].success is False
    assert result.succeeded == 1
    assert result.errors["B"].kind == ErrorKind.EXECUTION_FAILED
    assert "Simulated failure" in result.errors["B"].reason
    assert result.errors["C"].kind == ErrorKind.DEPENDENCY_FAILED
    assert result.errors["C"].reason == "Dependencies failed: B"
    assert result.errors["D"].kind == ErrorKind.DEPENDENCY_FAILED
    assert result.dispatch_order == ["A", "B"]
    assert worker.executed == ["A", "B"]
    assert result.summary.splitlines()[0] == "1/4 tasks succeeded"
    assert "B [execution_failed]" in result.summary
    assert "D [dependency_failed]" in result.summary
    assert result.suggestions[0] == "Review and fix 3 failed tasks"


def test_independent_branch_survives_partial_failure() -> None:
    worker = SimulatedWorker(Capability.GENERAL, fail_task_ids=["bad"])
    scheduler = Scheduler(_registry(worker))

    result = scheduler.execute([_task("bad"), _task("after_bad", "bad"), _task("good")])

    assert "good" in result.results
    assert set(result.errors) == {"bad", "after_bad"}


def test_cycle_is_rejected_before_any_dispatch() -> None:
    worker = SimulatedWorker(Capability.GENERAL)
    scheduler = Scheduler(_registry(worker))

    with pytest.raises(CircularDependencyError) as excinfo:
        scheduler.execute([_task("A", "B"), _task("B", "A"), _task("C")])

    assert "A -> B -> A" in str(excinfo.value)
    assert worker.executed == []


def test_invalid_task_sets_are_rejected() -> None:
    scheduler = Scheduler(_registry(SimulatedWorker(Capability.GENERAL)))

    with pytest.raises(ValidationError):
        scheduler.execute([_task("A"), _task("A")])
    with pytest.raises(ValidationError):
        scheduler.execute([_task("A", "ghost")])


def test_no_task_starts_before_its_dependencies_finish() -> None:
    done: set[str] = set()
    violations: list[str] = []
    lock = threading.Lock()

    def run(task: Task) -> AgentResult:
        with lock:
            if not set(task.dependencies) <= done:
                violations.append(task.id)
        time.sleep(0.01)
        with lock:
            done.add(task.id)
        return AgentResult(success=True, data=task.id)

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, run)), max_concurrency=4)
    tasks = [
        _task("root"),
        _task("left", "root"),
        _task("right", "root"),
        _task("join", "left", "right"),
        _task("tail", "join"),
        _task("free"),
    ]

    result = scheduler.execute(tasks)

    assert result.success
    assert violations == []
    order = result.dispatch_order
    assert order.index("join") > max(order.index("left"), order.index("right"))


def test_ready_tasks_dispatch_by_priority_within_a_level() -> None:
    order: list[str] = []

    def run(task: Task) -> AgentResult:
        order.append(task.id)
        return AgentResult(success=True)

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, run)), max_concurrency=1)

    scheduler.execute(
        [
            _task("start"),
            _task("low", "start", priority=1.0),
            _task("high", "start", priority=9.0),
            _task("mid", "start", priority=5.0),
        ]
    )

    assert order == ["start", "high", "mid", "low"]


def test_concurrency_is_bounded() -> None:
    active = 0
    peak = 0
    lock = threading.Lock()

    def run(task: Task) -> AgentResult:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return AgentResult(success=True)

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, run)), max_concurrency=2)

    result = scheduler.execute([_task(f"t{i}") for i in range(6)])

    assert result.success
    assert peak <= 2


def test_independent_tasks_run_in_parallel() -> None:
    barrier = threading.Barrier(2, timeout=5)

    def run(task: Task) -> AgentResult:
        barrier.wait()
        return AgentResult(success=True)

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, run)), max_concurrency=2)

    result = scheduler.execute([_task("x"), _task("y")])

    assert result.success


def test_output_is_handed_to_dependents_by_role() -> None:
    seen: dict[str, dict] = {}

    def run(task: Task) -> AgentResult:
        seen[task.id] = dict(task.payload)
        return AgentResult(success=True, data={"from": task.id})

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, run)))

    scheduler.execute(
        [
            _task("design", role="design"),
            _task("api"),
            _task("cli"),
            _task("build", "design", "api", "cli"),
        ]
    )

    payload = seen["build"]
    assert payload["design"] == {"from": "design"}
    assert payload["general"] == {"from": "api"}
    assert payload["cli"] == {"from": "cli"}
    assert payload["description"] == "task build"


def test_missing_worker_is_recorded_and_propagated() -> None:
    scheduler = Scheduler(_registry(SimulatedWorker(Capability.GENERAL)))

    result = scheduler.execute([_task("api", type=Capability.BACKEND), _task("docs", "api")])

    assert result.errors["api"].kind == ErrorKind.WORKER_NOT_FOUND
    assert "backend" in result.errors["api"].reason
    assert result.errors["docs"].kind == ErrorKind.DEPENDENCY_FAILED


def test_upstream_failures_block_dependents() -> None:
    scheduler = Scheduler(_registry(SimulatedWorker(Capability.GENERAL)))

    result = scheduler.execute(
        [_task("next", "earlier"), _task("other")],
        upstream_failures={"earlier": "failed in a previous run"},
    )

    assert result.errors["next"].kind == ErrorKind.DEPENDENCY_FAILED
    assert "other" in result.results
    assert "earlier" not in result.errors


def test_worker_exception_becomes_execution_failure() -> None:
    def explode(task: Task) -> AgentResult:
        raise RuntimeError("boom")

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, explode)))

    result = scheduler.execute([_task("A")])

    assert result.errors["A"].kind == ErrorKind.EXECUTION_FAILED
    assert "boom" in result.errors["A"].reason


def test_timeout_is_recorded_and_propagated() -> None:
    release = threading.Event()

    def run(task: Task) -> AgentResult:
        if task.id == "slow":
            release.wait(5)
        return AgentResult(success=True)

    scheduler = Scheduler(
        _registry(CallableWorker(Capability.GENERAL, run)), max_concurrency=2, task_timeout_s=0.1
    )
    try:
        result = scheduler.execute([_task("slow"), _task("after", "slow"), _task("quick")])
    finally:
        release.set()

    assert result.errors["slow"].kind == ErrorKind.TIMEOUT
    assert result.errors["after"].kind == ErrorKind.DEPENDENCY_FAILED
    assert "quick" in result.results


def test_abort_stops_dispatch_and_cancels_remaining() -> None:
    worker = SimulatedWorker(Capability.GENERAL)
    scheduler = Scheduler(_registry(worker), max_concurrency=1)

    result = scheduler.execute(
        [_task("A"), _task("B", "A"), _task("C", "B")],
        should_abort=lambda: "Critical risk detected" if "A" in worker.executed else None,
    )

    assert result.cancelled is True
    assert result.cancel_reason == "Critical risk detected"
    assert "A" in result.results
    assert result.errors["B"].kind == ErrorKind.CANCELLED
    assert result.errors["C"].kind == ErrorKind.CANCELLED
    assert worker.executed == ["A"]


def test_events_and_audit_trail(tmp_path: Path) -> None:
    bus = EventBus()
    events: list[str] = []
    bus.subscribe("*", lambda name, payload: events.append(name))
    audit_path = tmp_path / "audit.jsonl"
    scheduler = Scheduler(
        _registry(SimulatedWorker(Capability.GENERAL, fail_task_ids=["B"])),
        safe_runner=SafeRunner(AuditLogger(audit_path)),
        event_bus=bus,
    )

    scheduler.execute([_task("A"), _task("B", "A"), _task("C", "B")], plan_id="plan_x")

    assert events.count("task_dispatched") == 2
    assert events.count("task_completed") == 1
    assert events.count("task_failed") == 2
    assert events[-1] == "run_completed"
    lines = audit_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert all('"plan_id": "plan_x"' in line for line in lines)


def test_invalid_scheduler_settings() -> None:
    with pytest.raises(ValueError):
        Scheduler(WorkerRegistry(), max_concurrency=0)
    with pytest.raises(ValueError):
        Scheduler(WorkerRegistry(), task_timeout_s=0)


def test_failed_result_keeps_its_data_next_to_the_error() -> None:
    def lint(task: Task) -> AgentResult:
        if task.id == "lint":
            return AgentResult(
                success=False,
                error="3 lint errors",
                data={"report": ["E501", "E302", "F401"]},
                next_steps=["Run the formatter"],
            )
        return AgentResult(success=True, metadata=ResultMetadata(confidence=0.9))

    scheduler = Scheduler(_registry(CallableWorker(Capability.GENERAL, lint)))

    result = scheduler.execute([_task("build"), _task("lint", "build"), _task("ship", "lint")])

    assert result.results["lint"].success is False
    assert result.results["lint"].data == {"report": ["E501", "E302", "F401"]}
    assert result.results["lint"].next_steps == ["Run the formatter"]
    assert result.errors["lint"].reason == "3 lint errors"
    assert "ship" not in result.results
    assert result.succeeded == 1
    assert result.summary.splitlines()[0] == "1/3 tasks succeeded"
    assert result.confidence == pytest.approx(0.9)


def test_confidence_and_suggestions_summarize_the_run() -> None:
    confident = Scheduler(_registry(SimulatedWorker(Capability.GENERAL)))
    unsure = Scheduler(
        _registry(
            CallableWorker(
                Capability.GENERAL,
                lambda t: AgentResult(success=True, metadata=ResultMetadata(confidence=0.5)),
            )
        )
    )

    good = confident.execute([_task("A"), _task("B", "A")])
    shaky = unsure.execute([_task("A"), _task("B")])
    empty = confident.execute([])

    assert good.confidence == pytest.approx(0.9)
    assert good.suggestions == []
    assert shaky.success is True
    assert shaky.confidence == pytest.approx(0.5)
    assert shaky.suggestions == ["Overall confidence is below 80%, consider manual review"]
    assert empty.confidence == 0.0
    assert empty.suggestions == []


def test_long_chain_listed_dependents_first_runs_in_order() -> None:
    count = 1500
    tasks = [_task(f"t{i}", f"t{i - 1}") if i else _task("t0") for i in reversed(range(count))]
    worker = SimulatedWorker(Capability.GENERAL)

    result = Scheduler(_registry(worker)).execute(tasks)

    assert result.success is True
    assert result.succeeded == count
    assert result.dispatch_order == [f"t{i}" for i in range(count)]
