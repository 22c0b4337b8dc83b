"""Atomic units of work with bounded retry on concurrent modification."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.core.settings import settings
from pointsledger_api.observability.loyalty import get_loyalty_store
from .errors import (
    ConflictRetryableError,
    LoyaltyError,
    LoyaltyValidationError,
    StorageUnavailableError,
)

T = TypeVar("T")

_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}
_UNIQUE_VIOLATION = "23505"
_UNIQUE_MESSAGES = ("unique constraint failed", "duplicate key value violates unique constraint")


def is_conflict(exc: BaseException) -> bool:
    """Return True when ``exc`` signals a lost race rather than a broken store."""

    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, IntegrityError):
        return is_unique_violation(exc)
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        if _sqlstate(orig) in _CONFLICT_SQLSTATES:
            return True
        return "database is locked" in str(orig).lower()
    return False


def is_unique_violation(exc: IntegrityError) -> bool:
    """Two writers inserted the same key; check and foreign-key failures are not races."""

    orig = exc.orig
    if _sqlstate(orig) == _UNIQUE_VIOLATION:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _UNIQUE_MESSAGES)


def _sqlstate(orig: BaseException | None) -> str | None:
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


async def run_atomic(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    operation_name: str,
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> T:
    """Run ``operation`` and commit it as one unit, retrying lost races.

    ``operation`` must re-read everything it depends on: a rollback between
    attempts expires every instance loaded in the session. Loyalty domain
    errors roll back and propagate unchanged. Conflicts are retried up to
    ``max_attempts`` before surfacing :class:`ConflictRetryableError`; any
    other database failure surfaces as :class:`StorageUnavailableError`,
    except check and foreign-key violations, which are never retried and
    surface as :class:`LoyaltyValidationError`.
    """

    attempts = max(max_attempts or settings.ledger_conflict_max_attempts, 1)
    backoff = settings.ledger_conflict_backoff_seconds if backoff_seconds is None else backoff_seconds
    store = get_loyalty_store()

    for attempt in range(1, attempts + 1):
        try:
            result = await operation()
            await session.commit()
            return result
        except LoyaltyError:
            await session.rollback()
            raise
        except (StaleDataError, DBAPIError) as exc:
            await session.rollback()
            if isinstance(exc, IntegrityError) and not is_unique_violation(exc):
                logger.error(
                    "Loyalty write violated a storage constraint",
                    operation=operation_name,
                    error=str(exc.orig),
                )
                raise LoyaltyValidationError(
                    "Change violates a loyalty data constraint",
                    operation=operation_name,
                ) from exc
            if not is_conflict(exc):
                logger.error(
                    "Loyalty storage failure",
                    operation=operation_name,
                    attempt=attempt,
                    error=str(exc),
                )
                raise StorageUnavailableError(
                    "Loyalty storage is unavailable, retry later",
                    operation=operation_name,
                ) from exc

            exhausted = attempt >= attempts
            store.record_conflict(operation_name, exhausted=exhausted)
            if exhausted:
                logger.warning(
                    "Concurrent modification retries exhausted",
                    operation=operation_name,
                    attempts=attempt,
                )
                raise ConflictRetryableError(
                    "Account is being modified concurrently, retry later",
                    operation=operation_name,
                    attempts=attempt,
                ) from exc

            logger.info(
                "Retrying after concurrent modification",
                operation=operation_name,
                attempt=attempt,
                error_type=type(exc).__name__,
            )
            if backoff:
                await asyncio.sleep(backoff * attempt)
        except OSError as exc:
            await session.rollback()
            logger.error("Loyalty storage unreachable", operation=operation_name, error=str(exc))
            raise StorageUnavailableError(
                "Loyalty storage is unreachable, retry later",
                operation=operation_name,
            ) from exc

    raise ConflictRetryableError(  # pragma: no cover - loop always returns or raises
        "Account is being modified concurrently, retry later",
        operation=operation_name,
    )


__all__ = ["is_conflict", "is_unique_violation", "run_atomic"]
