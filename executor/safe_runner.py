"""Safe execution gate: times a worker call, captures failures and audits it."""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from core.errors import TaskExecutionError
from governance.audit_logger import AuditLogger
from workers.base_worker import AgentResult, ResultMetadata, Task, Worker

logger = logging.getLogger("go.safe_runner")


class SafeRunner:
    """Runs one task on one worker and always returns an ``AgentResult``.

    A worker that raises, or returns something other than an ``AgentResult``,
    is reported as a failed result instead of propagating.
    """

    def __init__(self, audit_logger: AuditLogger | None = None) -> None:
        self.audit_logger = audit_logger or AuditLogger()

    def run(self, *, task: Task, worker: Worker, plan_id: str | None = None) -> AgentResult:
        started = time.monotonic()
        try:
            output = worker.execute(task)
            result = self._coerce(task, output)
        except TaskExecutionError as exc:
            logger.warning("Worker %s returned an unusable result: %s", type(worker).__name__, exc)
            result = _failed(f"Execution failed: {exc.reason}")
        except Exception as exc:
            logger.exception("Worker %s raised on task %s", type(worker).__name__, task.id)
            result = _failed(f"Execution failed: {exc}")
        duration = time.monotonic() - started
        result = result.model_copy(
            update={"metadata": result.metadata.model_copy(update={"duration": duration})}
        )
        if result.success:
            outcome, reason = "success", ""
        else:
            outcome, reason = "failed", result.error or "Task failed"
        self.audit_logger.log(
            event="task_executed",
            task_id=task.id,
            capability=task.type.value,
            inputs=task.payload,
            outcome=outcome,
            plan_id=plan_id,
            reason=reason,
            duration_s=duration,
        )
        return result

    @staticmethod
    def _coerce(task: Task, output: Any) -> AgentResult:
        if isinstance(output, AgentResult):
            return output
        if isinstance(output, dict):
            try:
                return AgentResult.model_validate(output)
            except PydanticValidationError as exc:
                raise TaskExecutionError(task.id, f"invalid result payload: {exc}") from exc
        raise TaskExecutionError(
            task.id, f"Worker returned {type(output).__name__}, expected AgentResult"
        )


def _failed(error: str) -> AgentResult:
    return AgentResult(success=False, error=error, metadata=ResultMetadata(confidence=0.2))
