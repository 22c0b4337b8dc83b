import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from pointsledger_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store
from pointsledger_api.services.loyalty.errors import (
    ConflictRetryableError,
    LoyaltyValidationError,
    NotFoundError,
    StorageUnavailableError,
)
from pointsledger_api.services.loyalty.unit_of_work import is_conflict, run_atomic


@pytest.mark.asyncio
async def test_conflicts_are_retried_until_success(session_factory) -> None:
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise StaleDataError("version mismatch")
        return "done"

    async with session_factory() as session:
        result = await run_atomic(session, operation, operation_name="test.retry", max_attempts=5)

    assert result == "done"
    assert calls == 3
    assert get_loyalty_store().snapshot().conflicts["test.retry"] == 2


@pytest.mark.asyncio
async def test_exhausted_conflicts_surface_as_retryable(session_factory) -> None:
    async def operation() -> None:
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    async with session_factory() as session:
        with pytest.raises(ConflictRetryableError) as excinfo:
            await run_atomic(session, operation, operation_name="test.locked", max_attempts=2)

    assert excinfo.value.retryable
    assert get_loyalty_store().snapshot().conflicts["exhausted"] == 1


@pytest.mark.asyncio
async def test_storage_failures_and_domain_errors(session_factory) -> None:
    async def broken() -> None:
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    async def missing() -> None:
        raise NotFoundError("nope")

    async with session_factory() as session:
        with pytest.raises(StorageUnavailableError):
            await run_atomic(session, broken, operation_name="test.broken")
        with pytest.raises(NotFoundError):
            await run_atomic(session, missing, operation_name="test.missing")

    assert get_loyalty_store().snapshot().conflicts == {}


def test_conflict_detection_by_sqlstate() -> None:
    class SerializationFailure(Exception):
        sqlstate = "40001"

    assert is_conflict(OperationalError("UPDATE", {}, SerializationFailure("could not serialize")))
    assert not is_conflict(OperationalError("UPDATE", {}, Exception("connection refused")))
    assert not is_conflict(ValueError("nope"))


def test_alert_buffer_is_bounded() -> None:
    store = LoyaltyObservabilityStore()
    for index in range(150):
        store.record_reconciliation_alert("compensation_failed", index=index)

    alerts = store.snapshot().as_dict()["reconciliation_alerts"]
    assert len(alerts) == 100
    assert alerts[0]["index"] == "50"
    assert alerts[-1]["index"] == "149"


def test_only_unique_violations_count_as_conflicts() -> None:
    class UniqueViolation(Exception):
        sqlstate = "23505"

    assert is_conflict(IntegrityError("INSERT", {}, UniqueViolation("duplicate key")))
    assert is_conflict(
        IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: loyalty_redemptions.code"))
    )
    assert not is_conflict(
        IntegrityError("INSERT", {}, Exception("CHECK constraint failed: ck_loyalty_transactions_amount_positive"))
    )
    assert not is_conflict(IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed")))


@pytest.mark.asyncio
async def test_check_constraint_failures_are_not_retried(session_factory) -> None:
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise IntegrityError("UPDATE", {}, Exception("CHECK constraint failed: balance_non_negative"))

    async with session_factory() as session:
        with pytest.raises(LoyaltyValidationError):
            await run_atomic(session, operation, operation_name="test.check", max_attempts=5)

    assert calls == 1
    assert get_loyalty_store().snapshot().conflicts == {}
