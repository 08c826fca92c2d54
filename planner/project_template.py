"""Requirements-driven task DAG for full-stack project orchestration.

Planning always runs first and deployment always runs last; the phases in
between are included only when the requirements call for them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from workers.base_worker import Capability, Task

_BACKEND_KEYWORDS = ("api", "backend")
_DATABASE_KEYWORDS = ("database", "data", "storage")


class TargetPlatform(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    DESKTOP = "desktop"
    FULLSTACK = "fullstack"


class ProjectRequirements(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    framework: str | None = None
    features: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    target_platform: TargetPlatform | None = None
    tech_stack: dict[str, list[str]] = Field(default_factory=dict)


def _mentions(features: list[str], keywords: tuple[str, ...]) -> bool:
    return any(keyword in feature.lower() for feature in features for keyword in keywords)


def requires_backend(requirements: ProjectRequirements) -> bool:
    return requirements.target_platform == TargetPlatform.FULLSTACK or _mentions(
        requirements.features, _BACKEND_KEYWORDS
    )


def requires_database(requirements: ProjectRequirements) -> bool:
    return _mentions(requirements.features, _DATABASE_KEYWORDS)


def requires_design(requirements: ProjectRequirements) -> bool:
    return bool(requirements.framework) or requirements.target_platform == TargetPlatform.WEB


def build_project_tasks(
    requirements: ProjectRequirements,
    plan_id: str,
    context: dict[str, Any] | None = None,
) -> list[Task]:
    """Build the task DAG for one project.

    Task ids are ``{plan_id}-{phase}`` and each task hands its output to
    dependents under its phase name.
    """
    spec = requirements.model_dump(mode="json")
    tasks: list[Task] = []

    def add(
        phase: str,
        capability: Capability,
        description: str,
        priority: float,
        dependencies: list[str],
        **extra: Any,
    ) -> Task:
        task = Task(
            id=f"{plan_id}-{phase}",
            type=capability,
            payload={"description": description, "requirements": spec, **extra},
            priority=priority,
            dependencies=dependencies,
            context=context,
            role=phase,
        )
        tasks.append(task)
        return task

    name = requirements.name
    planning = add("planning", Capability.PLANNING, f"Plan {name}", 10, [])
    design = None
    if requires_design(requirements):
        design = add("design", Capability.UI_DESIGN, f"Design the UI for {name}", 9, [planning.id])
    database = None
    if requires_database(requirements):
        database = add(
            "database",
            Capability.DATABASE,
            f"Set up the database for {name}",
            8,
            [planning.id],
            database_type="postgresql",
        )
    if requires_backend(requirements):
        deps = [planning.id, database.id] if database else [planning.id]
        add("backend", Capability.BACKEND, f"Build the backend for {name}", 8, deps)
    if requirements.framework:
        deps = [planning.id, design.id] if design else [planning.id]
        add(
            "frontend",
            Capability.FRONTEND,
            f"Build the {requirements.framework} frontend for {name}",
            8,
            deps,
            framework=requirements.framework,
        )

    development = {Capability.DATABASE, Capability.BACKEND, Capability.FRONTEND}
    dev_ids = [task.id for task in tasks if task.type in development]
    testing = None
    if dev_ids:
        testing = add("testing", Capability.TESTING, f"Test {name}", 7, dev_ids)
    deploy_deps = [testing.id] if testing else [planning.id]
    add("devops", Capability.DEVOPS, f"Deploy {name}", 6, deploy_deps)
    return tasks
