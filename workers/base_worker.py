"""Worker contract: capabilities, task and result schemas."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class Capability(str, Enum):
    """Closed set of worker capabilities a task can be routed to."""

    PLANNING = "planning"
    UI_DESIGN = "ui-design"
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    DEVOPS = "devops"
    TESTING = "testing"
    GENERAL = "general"


class Task(BaseModel):
    """Unit of work dispatched to a single worker."""

    id: str
    type: Capability
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: float = 5.0
    dependencies: list[str] = Field(default_factory=list)
    context: dict[str, Any] | None = None
    role: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def output_key(self) -> str:
        """Key under which this task's output is handed to dependents."""
        return self.role or self.type.value


class ResultMetadata(BaseModel):
    duration: float = 0.0
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    suggestions: list[str] = Field(default_factory=list)


class AgentResult(BaseModel):
    """Structured outcome a worker returns for one task."""

    success: bool
    data: Any = None
    error: str | None = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    warnings: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


@runtime_checkable
class Worker(Protocol):
    """Anything that can execute tasks of exactly one capability."""

    capability: Capability

    def execute(self, task: Task) -> AgentResult:
        ...
