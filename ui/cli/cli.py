"""CLI entrypoint for goal-orchestrator."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from planner.project_template import TargetPlatform
from ui.cli import commands

app = typer.Typer(help="Goal decomposition and task orchestration engine")
workers_app = typer.Typer(help="Worker commands")
config_app = typer.Typer(help="Configuration commands")


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="YAML file merged over the defaults"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """Configure logging and remember the config override."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": config}


def _config_path(ctx: typer.Context) -> Path | None:
    return (ctx.obj or {}).get("config_path")


@app.command("run-goal")
def run_goal_cmd(
    ctx: typer.Context,
    goal: str = typer.Argument(..., help="Goal description text"),
    constraint: list[str] = typer.Option([], "--constraint", help="Constraint (repeatable)"),
    priority: float = typer.Option(5.0, help="Root goal priority"),
    max_iterations: Optional[int] = typer.Option(None, min=1, help="Override control-loop rounds"),
    fail_keyword: list[str] = typer.Option(
        [], "--fail-keyword", help="Make simulated workers fail on this keyword (repeatable)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print a JSON report"),
) -> None:
    """Run a goal through the adaptive control loop."""
    commands.run_goal(
        goal=goal,
        constraints=constraint,
        priority=priority,
        max_iterations=max_iterations,
        fail_keywords=fail_keyword,
        config_path=_config_path(ctx),
        as_json=as_json,
    )


@app.command("decompose")
def decompose_cmd(
    ctx: typer.Context,
    description: str = typer.Argument(..., help="Goal description text"),
    constraint: list[str] = typer.Option([], "--constraint", help="Constraint (repeatable)"),
    priority: float = typer.Option(5.0, help="Root goal priority"),
    as_json: bool = typer.Option(False, "--json", help="Print the tree as JSON"),
) -> None:
    """Decompose a goal and show its tree."""
    commands.decompose(
        description=description,
        constraints=constraint,
        priority=priority,
        config_path=_config_path(ctx),
        as_json=as_json,
    )


@app.command("plan")
def plan_cmd(
    ctx: typer.Context,
    description: str = typer.Argument(..., help="Goal description text"),
    constraint: list[str] = typer.Option([], "--constraint", help="Constraint (repeatable)"),
    priority: float = typer.Option(5.0, help="Root goal priority"),
) -> None:
    """Decompose a goal and print its execution plan."""
    commands.plan(
        description=description,
        constraints=constraint,
        priority=priority,
        config_path=_config_path(ctx),
    )


@app.command("project")
def project_cmd(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name"),
    description: str = typer.Option("", help="Project description"),
    framework: Optional[str] = typer.Option(None, help="Frontend framework; adds design and frontend phases"),
    feature: list[str] = typer.Option([], "--feature", help="Feature (repeatable)"),
    platform: Optional[TargetPlatform] = typer.Option(None, "--platform", help="Target platform"),
    fail_keyword: list[str] = typer.Option(
        [], "--fail-keyword", help="Make simulated workers fail on this keyword (repeatable)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print a JSON report"),
) -> None:
    """Orchestrate the planning-to-deployment task DAG for a project."""
    commands.project(
        name=name,
        description=description,
        framework=framework,
        features=feature,
        platform=platform,
        fail_keywords=fail_keyword,
        config_path=_config_path(ctx),
        as_json=as_json,
    )


@workers_app.command("list")
def workers_list_cmd(ctx: typer.Context) -> None:
    """List registered workers."""
    commands.workers_list(config_path=_config_path(ctx))


@config_app.command("show")
def config_show_cmd(ctx: typer.Context) -> None:
    """Show effective configuration."""
    commands.config_show(config_path=_config_path(ctx))


app.add_typer(workers_app, name="workers")
app.add_typer(config_app, name="config")


def main() -> None:
    """Console script entrypoint."""
    app()


if __name__ == "__main__":
    main()
