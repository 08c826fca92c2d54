"""Orchestration error taxonomy."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for errors raised by the orchestration engine."""


class ValidationError(OrchestrationError):
    """A referenced goal, plan or task id is unknown or malformed."""


class CircularDependencyError(OrchestrationError):
    """Dependency edges form a cycle; the plan cannot be ordered."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class WorkerNotFoundError(OrchestrationError):
    """No worker is registered for a task's capability."""

    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(f"No worker registered for capability: {capability}")


class TaskExecutionError(OrchestrationError):
    """A worker raised or reported failure for a task."""

    def __init__(self, task_id: str, reason: str) -> None:
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} failed: {reason}")
