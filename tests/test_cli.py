"""CLI command tests."""

from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from ui.cli.cli import app

runner = CliRunner()


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text("paths:\n  audit_log_path: null\nmonitor:\n  tick_interval_s: 0.5\n", encoding="utf-8")
    return path


def test_decompose_prints_tree(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--config", str(_config(tmp_path)), "decompose", "Build a web app"])

    assert result.exit_code == 0, result.output
    assert "- [pending] Build a web app" in result.output
    assert "Analyze and plan: Build a web app" in result.output


def test_decompose_json(tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["--config", str(_config(tmp_path)), "decompose", "Build a web app", "--json"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert len(payload["nodes"]) == 5


def test_plan_prints_plan_json(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--config", str(_config(tmp_path)), "plan", "Build a web app"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["status"] == "draft"
    assert len(payload["phases"]) == 2


def test_run_goal_reports_completion(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        ["--config", str(_config(tmp_path)), "--log-level", "ERROR", "run-goal", "Build a web app", "--json"],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["completed"] is True
    assert payload["progress"] == 1.0
    assert payload["summary"].startswith("4/4 tasks succeeded")


def test_run_goal_with_failure_keyword(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        [
            "--config",
            str(_config(tmp_path)),
            "--log-level",
            "ERROR",
            "run-goal",
            "Build a web app",
            "--fail-keyword",
            "test and validate",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Completed: False" in result.output
    assert "[dependency_failed]" in result.output


def test_workers_list_and_config_show(tmp_path: Path) -> None:
    config = str(_config(tmp_path))

    workers = runner.invoke(app, ["--config", config, "workers", "list"])
    shown = runner.invoke(app, ["--config", config, "config", "show"])

    assert workers.exit_code == 0, workers.output
    assert "backend: SimulatedWorker" in workers.output
    assert shown.exit_code == 0, shown.output
    assert json.loads(shown.stdout)["monitor"]["tick_interval_s"] == 0.5


def test_project_runs_the_requirements_dag(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        [
            "--config",
            str(_config(tmp_path)),
            "--log-level",
            "ERROR",
            "project",
            "Storefront",
            "--framework",
            "react",
            "--feature",
            "Order storage",
            "--platform",
            "fullstack",
            "--json",
        ],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["success"] is True
    assert len(payload["dispatch_order"]) == 7
    assert abs(payload["confidence"] - 0.9) < 1e-9
    assert payload["suggestions"] == []
    assert payload["summary"].startswith("7/7 tasks succeeded")


def test_project_failure_prints_suggestion(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        [
            "--config",
            str(_config(tmp_path)),
            "--log-level",
            "ERROR",
            "project",
            "Script",
            "--fail-keyword",
            "plan script",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Project: Script | Success: False" in result.output
    assert "Suggestion: Review and fix 2 failed tasks" in result.output
