from pathlib import Path

import pytest

from pointsledger_api.jobs.loyalty import run_points_expiry_sweep
from pointsledger_api.observability.scheduler import get_loyalty_scheduler_store
from pointsledger_api.scheduling.config import (
    JobDefinition,
    ScheduleConfigError,
    load_job_definitions,
)
from pointsledger_api.scheduling.runner import LoyaltyJobScheduler, resolve_task, retry_delay

REPO_SCHEDULE = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


def _job(job_id: str, *, max_attempts: int) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task="tests.job",
        cron="* * * * *",
        kwargs={},
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )


def test_repository_schedule_resolves_every_task() -> None:
    config = load_job_definitions(REPO_SCHEDULE)

    assert config.timezone == "UTC"
    assert {job.id for job in config.jobs} == {
        "points_expiry_sweep",
        "stale_redemptions",
        "orphaned_spends",
    }
    for job in config.enabled_jobs:
        assert job.task.startswith("pointsledger_api.jobs.loyalty.")
        assert callable(resolve_task(job.task))

    sweep = next(job for job in config.jobs if job.id == "points_expiry_sweep")
    assert sweep.kwargs == {"batch_size": 200}
    assert sweep.max_attempts == 3


def test_invalid_schedule_entries_are_rejected(tmp_path: Path) -> None:
    bad_cron = tmp_path / "bad.toml"
    bad_cron.write_text('[jobs.sweep]\ntask = "run_points_expiry_sweep"\ncron = "daily"\n')
    with pytest.raises(ScheduleConfigError):
        load_job_definitions(bad_cron)

    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_disabled_jobs_are_skipped(tmp_path: Path) -> None:
    schedule = tmp_path / "schedules.toml"
    schedule.write_text(
        "\n".join(
            [
                'timezone = "Europe/Berlin"',
                "[jobs.sweep]",
                'task = "run_points_expiry_sweep"',
                'cron = "0 3 * * *"',
                "enabled = false",
            ]
        )
    )

    config = load_job_definitions(schedule)
    assert config.timezone == "Europe/Berlin"
    assert config.enabled_jobs == []


def test_retry_delay_is_capped() -> None:
    job = JobDefinition(
        id="capped",
        task="tests.job",
        cron="* * * * *",
        base_backoff_seconds=10.0,
        backoff_multiplier=3.0,
        max_backoff_seconds=60.0,
        jitter_seconds=0.0,
    )
    assert retry_delay(job, 1) == 10.0
    assert retry_delay(job, 2) == 30.0
    assert retry_delay(job, 5) == 60.0


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_summary(tmp_path: Path) -> None:
    store = get_loyalty_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"points_expired": 7}

    job = _job("job-alpha", max_attempts=3)
    result = await scheduler.wrap_job(flaky_job, job)()

    assert result == {"points_expired": 7}
    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot["totals"]["attempt_failures"] == 1
    assert job_snapshot["last_summary"] == {"points_expired": 7}
    assert attempts == 2


@pytest.mark.asyncio
async def test_repeated_failures_mark_job_degraded(tmp_path: Path) -> None:
    store = get_loyalty_scheduler_store()
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("store offline")

    job = _job("job-failure", max_attempts=1)
    runner = scheduler.wrap_job(failing_job, job)
    for _ in range(3):
        assert await runner() is None

    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 3
    assert snapshot.jobs[job.id]["last_error"] == "RuntimeError: store offline"
    assert snapshot.degraded_jobs == [job.id]


@pytest.mark.asyncio
async def test_expiry_job_runs_against_session_factory(session_factory) -> None:
    summary = await run_points_expiry_sweep(session_factory=session_factory, batch_size=50)

    assert summary == {
        "accounts_scanned": 0,
        "accounts_expired": 0,
        "points_expired": 0,
        "failures": [],
    }


@pytest.mark.asyncio
async def test_scheduler_lifecycle_reports_health(tmp_path: Path) -> None:
    schedule = tmp_path / "schedules.toml"
    schedule.write_text(
        "\n".join(
            [
                'timezone = "UTC"',
                "[jobs.stale]",
                'task = "expire_stale_redemptions"',
                'cron = "*/10 * * * *"',
                "[jobs.paused]",
                'task = "reconcile_orphaned_spends"',
                'cron = "*/5 * * * *"',
                "enabled = false",
            ]
        )
    )
    scheduler = LoyaltyJobScheduler(session_factory=lambda: None, config_path=schedule)

    scheduler.start()
    try:
        assert scheduler.is_running
        health = scheduler.health()
        assert health["configured_jobs"] == 2
        assert [job["id"] for job in health["jobs"] if job["enabled"]] == ["stale"]
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
