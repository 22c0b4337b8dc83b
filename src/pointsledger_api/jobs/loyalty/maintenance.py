"""Jobs that age points and keep redemption state consistent."""

# meta: job: loyalty-maintenance

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.services.loyalty import ExpirySweeper, RedemptionEngine

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_points_expiry_sweep(
    *,
    session_factory: SessionFactory,
    batch_size: int | None = None,
) -> Dict[str, Any]:
    """Expire points older than the configured window across all accounts."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        sweeper = ExpirySweeper(managed_session)
        result = await sweeper.sweep_all(
            now=dt.datetime.now(dt.timezone.utc),
            batch_size=batch_size,
        )
        return result.as_dict()


async def expire_stale_redemptions(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Move unconsumed codes past their expiry to the terminal expired state."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        engine = RedemptionEngine(managed_session)
        expired = await engine.expire_stale_redemptions(now=dt.datetime.now(dt.timezone.utc))
        summary = {"redemptions_expired": expired}
        logger.bind(summary=summary).info("Stale redemption sweep completed")
        return summary


async def reconcile_orphaned_spends(
    *,
    session_factory: SessionFactory,
    grace_seconds: int | None = None,
) -> Dict[str, Any]:
    """Refund spends whose redemption never completed."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        engine = RedemptionEngine(managed_session)
        grace = dt.timedelta(seconds=grace_seconds) if grace_seconds is not None else None
        refunded = await engine.reconcile_orphaned_spends(
            grace=grace,
            now=dt.datetime.now(dt.timezone.utc),
        )
        summary = {"spends_refunded": refunded}
        logger.bind(summary=summary).info("Orphaned spend reconciliation completed")
        return summary


__all__ = ["expire_stale_redemptions", "reconcile_orphaned_spends", "run_points_expiry_sweep"]
