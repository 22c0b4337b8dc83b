"""Scheduler runtime for loyalty maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from pointsledger_api.observability.scheduler import get_loyalty_scheduler_store
from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def retry_delay(job: JobDefinition, attempt: int) -> float:
    """Backoff before retrying after ``attempt`` failed."""

    delay = job.base_backoff_seconds * (job.backoff_multiplier ** (attempt - 1))
    if job.max_backoff_seconds:
        delay = min(delay, job.max_backoff_seconds)
    if job.jitter_seconds:
        delay += random.uniform(0, job.jitter_seconds)
    return max(delay, 0.0)


class LoyaltyJobScheduler:
    """Register and run the expiry sweep and redemption maintenance jobs."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False
        self._observability = get_loyalty_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        """Start the scheduler with every enabled job from the schedule file."""

        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.enabled_jobs:
            func = resolve_task(job.task)
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(
                self.wrap_job(func, job),
                trigger=trigger,
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered loyalty job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Loyalty job scheduler started", jobs=len(config.enabled_jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Loyalty job scheduler stopped")

    def wrap_job(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        """Bind ``func`` to the session factory with per-job retry and metrics."""

        async def _runner() -> Any:
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, job.max_attempts + 1):
                try:
                    summary = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    error_message = f"{type(exc).__name__}: {exc}"
                    self._observability.record_attempt_failure(
                        job.id, job.task, attempts=attempt, error=error_message
                    )
                    if attempt >= job.max_attempts:
                        self._observability.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=error_message,
                        )
                        logger.exception(
                            "Scheduled loyalty job failed after retries",
                            job_id=job.id,
                            attempts=attempt,
                        )
                        return None

                    delay = retry_delay(job, attempt)
                    self._observability.record_retry(job.id, job.task, attempts=attempt + 1)
                    logger.warning(
                        "Scheduled loyalty job retrying",
                        job_id=job.id,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime_seconds,
                    attempts=attempt,
                    summary=summary if isinstance(summary, dict) else None,
                )
                logger.info(
                    "Scheduled loyalty job completed",
                    job_id=job.id,
                    attempts=attempt,
                    runtime_seconds=runtime_seconds,
                )
                return summary
            return None

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        configured = self._config.jobs if self._config else []
        return {
            "running": self._is_running,
            "configured_jobs": len(configured),
            "totals": snapshot.totals,
            "degraded_jobs": snapshot.degraded_jobs,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.max_attempts,
                    "metrics": snapshot.jobs.get(job.id),
                }
                for job in configured
            ],
        }


def resolve_task(task: str) -> JobCallable:
    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


__all__ = ["LoyaltyJobScheduler", "resolve_task", "retry_delay"]
