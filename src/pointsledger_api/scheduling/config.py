"""Configuration loader for loyalty job schedules."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib

DEFAULT_TASK_PACKAGE = "pointsledger_api.jobs.loyalty"


@dataclass(slots=True)
class JobDefinition:
    """Describe a scheduled job."""

    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0


@dataclass(slots=True)
class ScheduleConfig:
    """Root schedule configuration."""

    timezone: str
    jobs: list[JobDefinition]

    @property
    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]


class ScheduleConfigError(ValueError):
    """Raised when a schedule file contains an unusable job entry."""


def _qualify_task(task: str) -> str:
    # Bare job names resolve against the loyalty job package.
    if "." not in task:
        return f"{DEFAULT_TASK_PACKAGE}.{task}"
    return task


def _parse_job(key: str, payload: dict[str, Any]) -> JobDefinition:
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or not task.strip():
        raise ScheduleConfigError(f"Job '{key}' is missing a task")
    if not isinstance(cron, str) or len(cron.split()) != 5:
        raise ScheduleConfigError(f"Job '{key}' needs a five-field cron expression")

    kwargs = payload.get("kwargs", {})
    if not isinstance(kwargs, dict):
        raise ScheduleConfigError(f"Job '{key}' kwargs must be a table")

    return JobDefinition(
        id=str(payload.get("id") or key),
        task=_qualify_task(task.strip()),
        cron=cron,
        kwargs=kwargs,
        enabled=bool(payload.get("enabled", True)),
        max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
        base_backoff_seconds=max(float(payload.get("base_backoff_seconds", 5.0) or 0), 0.0),
        backoff_multiplier=max(float(payload.get("backoff_multiplier", 2.0) or 1), 1.0),
        max_backoff_seconds=max(float(payload.get("max_backoff_seconds", 60.0) or 0), 0.0),
        jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Load job definitions from a TOML schedule file."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    job_entries = data.get("jobs", {})
    if not isinstance(job_entries, dict):
        raise ScheduleConfigError("[jobs] must be a table of job definitions")

    jobs = [
        _parse_job(key, payload)
        for key, payload in job_entries.items()
        if isinstance(payload, dict)
    ]
    ids = [job.id for job in jobs]
    if len(set(ids)) != len(ids):
        raise ScheduleConfigError("Job ids must be unique")

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "ScheduleConfigError", "load_job_definitions"]
