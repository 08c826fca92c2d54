"""Dependency-aware task scheduler over a bounded worker thread pool."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from core.errors import ValidationError, WorkerNotFoundError
from core.event_bus import EventBus
from executor.safe_runner import SafeRunner
from planner.dependency_graph import DependencyGraph
from workers.base_worker import AgentResult, Task
from workers.worker_registry import WorkerRegistry

logger = logging.getLogger("go.scheduler")

AbortCheck = Callable[[], str | None]


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    DEPENDENCY_FAILED = "dependency_failed"
    WORKER_NOT_FOUND = "worker_not_found"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class TaskError(BaseModel):
    task_id: str
    kind: ErrorKind
    reason: str


class OrchestrationResult(BaseModel):
    """Outcome of one scheduler run over a task DAG.

    ``results`` holds every result a worker returned, failed ones included;
    ``errors`` holds every task that did not succeed, whether it ran or not.
    """

    plan_id: str | None = None
    success: bool
    results: dict[str, AgentResult] = Field(default_factory=dict)
    errors: dict[str, TaskError] = Field(default_factory=dict)
    dispatch_order: list[str] = Field(default_factory=list)
    duration: float = 0.0
    summary: str = ""
    confidence: float = 0.0
    suggestions: list[str] = Field(default_factory=list)
    cancelled: bool = False
    cancel_reason: str | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for task_id in self.results if task_id not in self.errors)


class _Run:
    """Bookkeeping for a single ``Scheduler.execute`` call."""

    def __init__(self, tasks: dict[str, Task], order: list[str], upstream: Mapping[str, str]) -> None:
        self.tasks = tasks
        self.levels = _levels(tasks, order)
        self.position = {task_id: index for index, task_id in enumerate(order)}
        self.pending: list[str] = list(order)
        self.running: dict[Future[AgentResult], tuple[str, float | None]] = {}
        self.finished: set[str] = set()
        self.failed: set[str] = set(upstream)
        self.upstream = set(upstream)
        self.results: dict[str, AgentResult] = {}
        self.errors: dict[str, TaskError] = {}
        self.dispatch_order: list[str] = []
        self.cancel_reason: str | None = None
        self.abandoned = False

    def is_terminal(self, task_id: str) -> bool:
        return task_id in self.finished or task_id in self.upstream

    def ready(self) -> list[str]:
        ready = [
            task_id
            for task_id in self.pending
            if all(self.is_terminal(dep) for dep in self.tasks[task_id].dependencies)
        ]
        ready.sort(
            key=lambda tid: (self.levels[tid], -self.tasks[tid].priority, self.position[tid])
        )
        return ready


class Scheduler:
    """Runs a task DAG on registered workers with at most ``max_concurrency`` in flight.

    Per-task failures are recorded as ``TaskError`` entries and never raised;
    unknown dependencies and cycles raise before anything is dispatched.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        safe_runner: SafeRunner | None = None,
        event_bus: EventBus | None = None,
        max_concurrency: int = 4,
        task_timeout_s: float | None = None,
        poll_interval_s: float = 0.05,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if task_timeout_s is not None and task_timeout_s <= 0:
            raise ValueError("task_timeout_s must be positive when set")
        self.registry = registry
        self.safe_runner = safe_runner or SafeRunner()
        self.event_bus = event_bus or EventBus()
        self.max_concurrency = max_concurrency
        self.task_timeout_s = task_timeout_s
        self.poll_interval_s = poll_interval_s

    # ── Entry point ──────────────────────────────────────────────────

    def execute(
        self,
        tasks: Iterable[Task],
        plan_id: str | None = None,
        upstream_failures: Mapping[str, str] | None = None,
        should_abort: AbortCheck | None = None,
    ) -> OrchestrationResult:
        started = time.monotonic()
        upstream = dict(upstream_failures or {})
        by_id = self._validate(list(tasks), upstream)
        graph = DependencyGraph.from_mapping(
            {tid: [dep for dep in task.dependencies if dep in by_id] for tid, task in by_id.items()}
        )
        order = graph.topological_order()
        run = _Run(by_id, order, upstream)
        logger.info(
            "Executing %d tasks for plan %s (max_concurrency=%d)",
            len(by_id),
            plan_id,
            self.max_concurrency,
        )

        pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="go-worker")
        try:
            while run.pending or run.running:
                self._check_abort(run, should_abort, plan_id)
                if run.cancel_reason is None:
                    self._dispatch_ready(run, pool, plan_id)
                if not run.running:
                    if run.pending and run.cancel_reason is None and not run.ready():
                        # Only reachable if a dependency can never become terminal.
                        for task_id in list(run.pending):
                            self._fail(run, task_id, ErrorKind.VALIDATION, "Unresolvable dependencies", plan_id)
                    continue
                done, _ = wait(
                    list(run.running),
                    timeout=self._wait_timeout(run, should_abort),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    self._collect(run, future, plan_id)
                self._expire(run, plan_id)
        finally:
            pool.shutdown(wait=not run.abandoned, cancel_futures=True)

        result = OrchestrationResult(
            plan_id=plan_id,
            success=not run.errors,
            results=run.results,
            errors=run.errors,
            dispatch_order=run.dispatch_order,
            duration=time.monotonic() - started,
            cancelled=run.cancel_reason is not None,
            cancel_reason=run.cancel_reason,
        )
        result.summary = summarize(result, total=len(by_id))
        result.confidence = overall_confidence(result)
        result.suggestions = orchestration_suggestions(result)
        self.event_bus.emit(
            "run_completed",
            {
                "plan_id": plan_id,
                "success": result.success,
                "succeeded": result.succeeded,
                "failed": len(result.errors),
                "confidence": result.confidence,
                "cancelled": result.cancelled,
            },
        )
        logger.info("Plan %s finished: %s", plan_id, result.summary.splitlines()[0])
        return result

    # ── Dispatch ─────────────────────────────────────────────────────

    def _validate(self, tasks: list[Task], upstream: Mapping[str, str]) -> dict[str, Task]:
        by_id: dict[str, Task] = {}
        for task in tasks:
            if task.id in by_id:
                raise ValidationError(f"Duplicate task id: {task.id}")
            by_id[task.id] = task
        for task in tasks:
            for dep in task.dependencies:
                if dep not in by_id and dep not in upstream:
                    raise ValidationError(f"Task {task.id} depends on unknown task {dep}")
        return by_id

    def _check_abort(self, run: _Run, should_abort: AbortCheck | None, plan_id: str | None) -> None:
        if run.cancel_reason is None and should_abort is not None:
            reason = should_abort()
            if reason:
                run.cancel_reason = reason
                logger.warning("Plan %s cancelled: %s", plan_id, reason)
        if run.cancel_reason is not None:
            for task_id in list(run.pending):
                self._fail(run, task_id, ErrorKind.CANCELLED, f"Cancelled: {run.cancel_reason}", plan_id)

    def _dispatch_ready(self, run: _Run, pool: ThreadPoolExecutor, plan_id: str | None) -> None:
        progressed = True
        while progressed:
            progressed = False
            for task_id in run.ready():
                task = run.tasks[task_id]
                failed_deps = [dep for dep in task.dependencies if dep in run.failed]
                if failed_deps:
                    reason = f"Dependencies failed: {', '.join(failed_deps)}"
                    self._fail(run, task_id, ErrorKind.DEPENDENCY_FAILED, reason, plan_id)
                    progressed = True
                    continue
                worker = self.registry.get(task.type)
                if worker is None:
                    reason = str(WorkerNotFoundError(task.type.value))
                    self._fail(run, task_id, ErrorKind.WORKER_NOT_FOUND, reason, plan_id)
                    progressed = True
                    continue
                if len(run.running) >= self.max_concurrency:
                    continue
                enriched = task.model_copy(update={"payload": self._enrich(run, task)})
                future = pool.submit(self.safe_runner.run, task=enriched, worker=worker, plan_id=plan_id)
                deadline = time.monotonic() + self.task_timeout_s if self.task_timeout_s else None
                run.running[future] = (task_id, deadline)
                run.pending.remove(task_id)
                run.dispatch_order.append(task_id)
                logger.debug("Dispatched %s to %s worker", task_id, task.type.value)
                self.event_bus.emit(
                    "task_dispatched",
                    {"plan_id": plan_id, "task_id": task_id, "capability": task.type.value},
                )

    @staticmethod
    def _enrich(run: _Run, task: Task) -> dict[str, Any]:
        """Hand each successful dependency's output to the task under its role."""
        payload = dict(task.payload)
        for dep in task.dependencies:
            if dep not in run.results or not run.results[dep].success:
                continue
            key = run.tasks[dep].output_key
            if key in payload:
                key = dep
            payload[key] = run.results[dep].data
        return payload

    def _wait_timeout(self, run: _Run, should_abort: AbortCheck | None) -> float | None:
        timeouts: list[float] = []
        deadlines = [deadline for _, deadline in run.running.values() if deadline is not None]
        if deadlines:
            timeouts.append(max(0.0, min(deadlines) - time.monotonic()))
        if should_abort is not None:
            timeouts.append(self.poll_interval_s)
        return min(timeouts) if timeouts else None

    # ── Completion ───────────────────────────────────────────────────

    def _collect(self, run: _Run, future: Future[AgentResult], plan_id: str | None) -> None:
        entry = run.running.pop(future, None)
        if entry is None:
            return
        task_id = entry[0]
        try:
            result = future.result()
        except Exception as exc:
            logger.exception("Task %s crashed outside the worker", task_id)
            self._fail(run, task_id, ErrorKind.EXECUTION_FAILED, f"Execution failed: {exc}", plan_id)
            return
        run.results[task_id] = result
        if not result.success:
            self._fail(run, task_id, ErrorKind.EXECUTION_FAILED, result.error or "Task failed", plan_id)
            return
        run.finished.add(task_id)
        self.event_bus.emit(
            "task_completed",
            {"plan_id": plan_id, "task_id": task_id, "duration": result.metadata.duration},
        )

    def _expire(self, run: _Run, plan_id: str | None) -> None:
        now = time.monotonic()
        for future, (task_id, deadline) in list(run.running.items()):
            if deadline is None or now < deadline or future.done():
                continue
            run.running.pop(future)
            run.abandoned = True
            reason = f"Timed out after {self.task_timeout_s}s"
            logger.warning("Task %s exceeded its deadline; leaving its thread to finish", task_id)
            self._fail(run, task_id, ErrorKind.TIMEOUT, reason, plan_id)

    def _fail(
        self, run: _Run, task_id: str, kind: ErrorKind, reason: str, plan_id: str | None
    ) -> None:
        if task_id in run.pending:
            run.pending.remove(task_id)
        run.failed.add(task_id)
        run.finished.add(task_id)
        run.errors[task_id] = TaskError(task_id=task_id, kind=kind, reason=reason)
        task = run.tasks[task_id]
        if kind != ErrorKind.EXECUTION_FAILED:
            # Executed tasks are audited by the safe runner.
            self.safe_runner.audit_logger.log(
                event=f"task_{kind.value}",
                task_id=task_id,
                capability=task.type.value,
                inputs=task.payload,
                outcome="skipped" if kind != ErrorKind.TIMEOUT else "timeout",
                plan_id=plan_id,
                reason=reason,
            )
        logger.info("Task %s %s: %s", task_id, kind.value, reason)
        self.event_bus.emit(
            "task_failed",
            {"plan_id": plan_id, "task_id": task_id, "kind": kind.value, "reason": reason},
        )


def _levels(tasks: Mapping[str, Task], order: list[str]) -> dict[str, int]:
    """Longest dependency chain below each task; ``order`` is topological."""
    levels: dict[str, int] = {}
    for task_id in order:
        deps = [levels[dep] for dep in tasks[task_id].dependencies if dep in levels]
        levels[task_id] = 1 + max(deps) if deps else 0
    return levels


def summarize(result: OrchestrationResult, total: int) -> str:
    lines = [f"{result.succeeded}/{total} tasks succeeded"]
    if result.cancelled:
        lines[0] += f" (cancelled: {result.cancel_reason})"
    for task_id, error in result.errors.items():
        lines.append(f"  - {task_id} [{error.kind.value}]: {error.reason}")
    return "\n".join(lines)


LOW_CONFIDENCE = 0.8
SLOW_RUN_S = 300.0


def overall_confidence(result: OrchestrationResult) -> float:
    """Mean worker confidence over successful results; 0.0 when none succeeded."""
    scores = [
        r.metadata.confidence
        for task_id, r in result.results.items()
        if r.success and task_id not in result.errors and r.metadata.confidence > 0
    ]
    return sum(scores) / len(scores) if scores else 0.0


def orchestration_suggestions(result: OrchestrationResult) -> list[str]:
    suggestions: list[str] = []
    if result.errors:
        suggestions.append(f"Review and fix {len(result.errors)} failed tasks")
    if result.duration > SLOW_RUN_S:
        suggestions.append("Consider optimizing worker execution for better performance")
    # Nothing ran, so there is no confidence to judge.
    if result.results and result.confidence < LOW_CONFIDENCE:
        suggestions.append(f"Overall confidence is below {LOW_CONFIDENCE:.0%}, consider manual review")
    return suggestions
