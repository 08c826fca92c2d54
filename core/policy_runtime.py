"""Configuration loading, merging and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from workers.base_worker import Capability

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"


class DecompositionSettings(BaseModel):
    max_depth: int = Field(default=2, ge=0)
    priority_decrement: float = Field(default=0.1, ge=0.0)


class SchedulerSettings(BaseModel):
    max_concurrency: int = Field(default=4, ge=1)
    task_timeout_s: float | None = Field(default=None, gt=0)


class MonitorSettings(BaseModel):
    tick_interval_s: float = Field(default=5.0, gt=0)
    min_sample_interval_s: float = Field(default=1.0, ge=0)
    velocity_window: int = Field(default=5, ge=1)


class ControlLoopSettings(BaseModel):
    max_iterations: int = Field(default=5, ge=1)


class WorkerSettings(BaseModel):
    enabled: bool = True
    fail_keywords: list[str] = Field(default_factory=list)
    fail_task_ids: list[str] = Field(default_factory=list)


class PathSettings(BaseModel):
    audit_log_path: str | None = "logs/audit.jsonl"


class Settings(BaseModel):
    """Validated runtime configuration."""

    decomposition: DecompositionSettings = Field(default_factory=DecompositionSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    control_loop: ControlLoopSettings = Field(default_factory=ControlLoopSettings)
    workers: dict[Capability, WorkerSettings] = Field(default_factory=dict)
    paths: PathSettings = Field(default_factory=PathSettings)

    def worker_config(self) -> dict[str, Any]:
        """Worker section keyed by capability value, as the registry expects."""
        return {cap.value: cfg.model_dump() for cap, cfg in self.workers.items()}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML from file, returning empty mapping when missing."""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_config(raw: dict[str, Any]) -> Settings:
    try:
        return Settings.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def load_effective_config(
    override_path: Path | None = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
) -> Settings:
    """Load the default config, deep-merge an optional user file and validate."""
    merged = load_yaml(default_path)
    if override_path is not None:
        if not override_path.exists():
            raise ValueError(f"Config file not found: {override_path}")
        merged = merge_dicts(merged, load_yaml(override_path))
    return validate_config(merged)


def ensure_runtime_dirs(root: Path, settings: Settings) -> dict[str, Path | None]:
    """Resolve runtime paths against ``root`` and create their directories."""
    audit_log_path: Path | None = None
    if settings.paths.audit_log_path:
        audit_log_path = (root / settings.paths.audit_log_path).resolve()
        audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    return {"audit_log_path": audit_log_path}
