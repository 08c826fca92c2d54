"""Worker registry and default worker wiring."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from core.errors import ValidationError, WorkerNotFoundError
from workers.base_worker import AgentResult, Capability, ResultMetadata, Task, Worker


class SimulatedWorker:
    """Deterministic worker for offline end-to-end execution.

    Completes every task and reports its estimated effort as actual effort.
    Tasks whose id is listed in ``fail_task_ids``, or whose description
    contains one of ``fail_keywords``, fail instead.
    """

    def __init__(
        self,
        capability: Capability,
        fail_keywords: Iterable[str] = (),
        fail_task_ids: Iterable[str] = (),
        confidence: float = 0.9,
    ) -> None:
        self.capability = capability
        self.fail_keywords = [kw.lower() for kw in fail_keywords]
        self.fail_task_ids = set(fail_task_ids)
        self.confidence = confidence
        self.executed: list[str] = []

    def execute(self, task: Task) -> AgentResult:
        self.executed.append(task.id)
        description = str(task.payload.get("description", task.id))
        desc_l = description.lower()
        hits = [kw for kw in self.fail_keywords if kw in desc_l]
        if task.id in self.fail_task_ids or hits:
            reason = f"matched failure keyword '{hits[0]}'" if hits else "configured to fail"
            return AgentResult(
                success=False,
                error=f"Simulated failure for '{description}': {reason}",
                metadata=ResultMetadata(confidence=1.0),
            )
        effort = float(task.payload.get("estimated_effort", 0.0))
        upstream = sorted(k for k in task.payload if k not in _BASE_PAYLOAD_KEYS)
        return AgentResult(
            success=True,
            data={
                "outcome": f"Completed '{description}' ({self.capability.value}).",
                "actual_effort": effort,
                "upstream": upstream,
            },
            metadata=ResultMetadata(confidence=self.confidence),
        )


_BASE_PAYLOAD_KEYS = {
    "description",
    "estimated_effort",
    "goal_id",
    "complexity",
    "constraints",
    "requirements",
    "database_type",
    "framework",
}


class CallableWorker:
    """Adapts a plain function into a worker for one capability."""

    def __init__(self, capability: Capability, func: Callable[[Task], AgentResult]) -> None:
        self.capability = capability
        self.func = func

    def execute(self, task: Task) -> AgentResult:
        return self.func(task)


@dataclass
class RegisteredWorker:
    """Metadata for worker listing output."""

    capability: str
    worker: str


class WorkerRegistry:
    """Capability-to-worker map owned by one orchestration run."""

    def __init__(self) -> None:
        self._workers: dict[Capability, Worker] = {}

    def register(self, worker: Worker, replace: bool = False) -> None:
        if not isinstance(worker, Worker):
            raise ValidationError(f"Object {worker!r} does not satisfy the worker contract.")
        capability = Capability(worker.capability)
        if capability in self._workers and not replace:
            raise ValidationError(f"A worker is already registered for '{capability.value}'.")
        self._workers[capability] = worker

    def unregister(self, capability: Capability) -> None:
        self._workers.pop(capability, None)

    def get(self, capability: Capability) -> Worker | None:
        return self._workers.get(capability)

    def require(self, capability: Capability) -> Worker:
        worker = self.get(capability)
        if worker is None:
            raise WorkerNotFoundError(capability.value)
        return worker

    def __contains__(self, capability: object) -> bool:
        return capability in self._workers

    def list_workers(self) -> list[RegisteredWorker]:
        return [
            RegisteredWorker(capability=cap.value, worker=type(worker).__name__)
            for cap, worker in sorted(self._workers.items(), key=lambda item: item[0].value)
        ]


def _worker_enabled(config: dict[str, Any], capability: Capability, default: bool) -> bool:
    worker_cfg = config.get(capability.value, {})
    if not isinstance(worker_cfg, dict):
        return default
    return bool(worker_cfg.get("enabled", default))


def _worker_settings(config: dict[str, Any], capability: Capability) -> dict[str, Any]:
    worker_cfg = config.get(capability.value, {})
    if not isinstance(worker_cfg, dict):
        return {}
    return dict(worker_cfg)


def build_default_registry(
    config: dict[str, Any] | None = None,
    fail_keywords: Iterable[str] = (),
) -> WorkerRegistry:
    """Register a simulated worker for every capability enabled in config."""
    config = config or {}
    extra_keywords = list(fail_keywords)
    registry = WorkerRegistry()
    for capability in Capability:
        if not _worker_enabled(config, capability, True):
            continue
        settings = _worker_settings(config, capability)
        registry.register(
            SimulatedWorker(
                capability,
                fail_keywords=[*settings.get("fail_keywords", []), *extra_keywords],
                fail_task_ids=settings.get("fail_task_ids", []),
            )
        )
    return registry
