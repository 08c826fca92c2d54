"""Typer command handlers."""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

import typer

from core.orchestrator import RuntimeBundle, build_runtime
from core.policy_runtime import load_effective_config
from planner.goal_tree import GoalTree
from planner.project_template import ProjectRequirements, TargetPlatform


def _runtime(config_path: Path | None = None, fail_keywords: Sequence[str] = ()) -> RuntimeBundle:
    settings = load_effective_config(config_path)
    return build_runtime(settings, fail_keywords=fail_keywords)


def run_goal(
    goal: str,
    constraints: Sequence[str] = (),
    priority: float = 5.0,
    max_iterations: int | None = None,
    fail_keywords: Sequence[str] = (),
    config_path: Path | None = None,
    as_json: bool = False,
) -> None:
    """Run the full decompose, plan, execute and replan loop for one goal."""
    bundle = _runtime(config_path, fail_keywords)
    result = bundle.control_loop.run_goal(
        goal, constraints=constraints, priority=priority, max_iterations=max_iterations
    )
    last_run = result.runs[-1] if result.runs else None

    if as_json:
        tree = bundle.orchestrator.state.get_tree(result.goal_id)
        payload = {
            "goal": result.goal,
            "goal_id": result.goal_id,
            "completed": result.completed,
            "iterations": result.iterations,
            "progress": result.progress,
            "replans": len(result.replans),
            "evaluation": result.evaluation,
            "summary": last_run.summary if last_run else "",
            "confidence": last_run.confidence if last_run else 0.0,
            "suggestions": last_run.suggestions if last_run else [],
            "tree": tree.to_dict(),
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    typer.echo(f"Goal: {result.goal}")
    typer.echo(f"Iterations: {result.iterations} | Completed: {result.completed}")
    typer.echo(f"Progress: {result.progress:.0%} | Replans: {len(result.replans)}")
    typer.echo(f"Evaluation: {result.evaluation}")
    if last_run is not None:
        typer.echo(last_run.summary)
        for suggestion in last_run.suggestions:
            typer.echo(f"Suggestion: {suggestion}")


def decompose(
    description: str,
    constraints: Sequence[str] = (),
    priority: float = 5.0,
    config_path: Path | None = None,
    as_json: bool = False,
) -> None:
    """Show the goal tree for a description."""
    bundle = _runtime(config_path)
    tree = bundle.orchestrator.decompose_goal(description, constraints, priority)
    if as_json:
        typer.echo(json.dumps(tree.to_dict(), indent=2))
        return
    for line in render_tree(tree):
        typer.echo(line)


def plan(
    description: str,
    constraints: Sequence[str] = (),
    priority: float = 5.0,
    config_path: Path | None = None,
) -> None:
    """Decompose a description and print its execution plan as JSON."""
    bundle = _runtime(config_path)
    tree = bundle.orchestrator.decompose_goal(description, constraints, priority)
    execution_plan = bundle.orchestrator.create_execution_plan(tree.root_id)
    typer.echo(execution_plan.model_dump_json(indent=2))


def project(
    name: str,
    description: str = "",
    framework: str | None = None,
    features: Sequence[str] = (),
    platform: TargetPlatform | None = None,
    fail_keywords: Sequence[str] = (),
    config_path: Path | None = None,
    as_json: bool = False,
) -> None:
    """Run the project task DAG and report its outcome."""
    bundle = _runtime(config_path, fail_keywords)
    requirements = ProjectRequirements(
        name=name,
        description=description,
        framework=framework,
        features=list(features),
        target_platform=platform,
    )
    result = bundle.orchestrator.orchestrate_project(requirements)

    if as_json:
        payload = {
            "plan_id": result.plan_id,
            "success": result.success,
            "dispatch_order": result.dispatch_order,
            "confidence": result.confidence,
            "suggestions": result.suggestions,
            "summary": result.summary,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    typer.echo(f"Project: {name} | Success: {result.success}")
    typer.echo(f"Confidence: {result.confidence:.0%}")
    typer.echo(result.summary)
    for suggestion in result.suggestions:
        typer.echo(f"Suggestion: {suggestion}")


def workers_list(config_path: Path | None = None) -> None:
    """List registered workers by capability."""
    bundle = _runtime(config_path)
    for worker in bundle.registry.list_workers():
        typer.echo(f"{worker.capability}: {worker.worker}")


def config_show(config_path: Path | None = None) -> None:
    """Show effective runtime config."""
    settings = load_effective_config(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


def render_tree(tree: GoalTree) -> list[str]:
    lines: list[str] = []
    if tree.root_id is None:
        return lines
    root = tree.get_goal(tree.root_id)
    for goal in [root, *tree.get_descendants(tree.root_id)]:
        indent = "  " * tree.depth(goal.id)
        deps = f" after {len(goal.dependencies)}" if goal.dependencies else ""
        lines.append(
            f"{indent}- [{goal.status.value}] {goal.description} "
            f"({goal.capability.value}, complexity {goal.complexity:.2f}, "
            f"{goal.estimated_effort:.1f}h){deps}"
        )
    return lines
