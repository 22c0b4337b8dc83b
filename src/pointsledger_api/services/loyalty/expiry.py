"""FIFO aging of unspent points."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.core.settings import settings
from pointsledger_api.models.loyalty import (
    LoyaltyTransaction,
    LoyaltyTransactionDirection,
    LoyaltyTransactionKind,
    PointsAccount,
)
from pointsledger_api.observability.loyalty import get_loyalty_store
from .config_store import ProgramConfigStore
from .errors import LoyaltyError
from .ledger import LedgerService, ensure_aware
from .unit_of_work import run_atomic


@dataclass
class PointLot:
    """Points credited by a single transaction and not yet consumed."""

    sequence: int
    credited_at: datetime
    remaining: int


@dataclass
class SweepSummary:
    accounts_scanned: int = 0
    accounts_expired: int = 0
    points_expired: int = 0
    failures: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "accounts_scanned": self.accounts_scanned,
            "accounts_expired": self.accounts_expired,
            "points_expired": self.points_expired,
            "failures": list(self.failures),
        }


def build_lots(transactions: Iterable[LoyaltyTransaction]) -> list[PointLot]:
    """Replay ``transactions`` in sequence order, depleting the oldest lots first."""

    lots: deque[PointLot] = deque()
    for transaction in sorted(transactions, key=lambda txn: txn.sequence):
        amount = int(transaction.amount)
        if transaction.direction == LoyaltyTransactionDirection.CREDIT:
            lots.append(
                PointLot(
                    sequence=transaction.sequence,
                    credited_at=ensure_aware(transaction.occurred_at),
                    remaining=amount,
                )
            )
            continue
        while amount > 0 and lots:
            oldest = lots[0]
            taken = min(oldest.remaining, amount)
            oldest.remaining -= taken
            amount -= taken
            if oldest.remaining == 0:
                lots.popleft()
    return list(lots)


def expirable_points(transactions: Iterable[LoyaltyTransaction], *, cutoff: datetime) -> int:
    return sum(lot.remaining for lot in build_lots(transactions) if lot.credited_at <= cutoff)


class ExpirySweeper:
    """Expire points credited more than ``points_expiry_days`` ago.

    Lots are rebuilt from the complete history on every run, so an earlier
    expire entry has already consumed the lots it covered and a repeated
    sweep finds nothing left to expire.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        config_store: ProgramConfigStore | None = None,
    ) -> None:
        self._db = session
        self._ledger = ledger or LedgerService(session)
        self._config = config_store or ProgramConfigStore(session)

    async def sweep_account(
        self,
        customer_id: str,
        *,
        now: datetime | None = None,
        expiry_days: int | None = None,
    ) -> int:
        """Expire aged points for one account and return how many were expired."""

        moment = ensure_aware(now) or datetime.now(timezone.utc)
        if expiry_days is None:
            expiry_days = (await self._config.get()).points_expiry_days
        cutoff = moment - timedelta(days=expiry_days)

        async def _sweep() -> int:
            account = await self._ledger.lock_account(customer_id)
            if account is None:
                return 0
            stmt = (
                select(LoyaltyTransaction)
                .where(LoyaltyTransaction.account_id == account.id)
                .order_by(LoyaltyTransaction.sequence)
            )
            history = (await self._db.execute(stmt)).scalars().all()
            points = min(expirable_points(history, cutoff=cutoff), account.balance)
            if points <= 0:
                return 0
            await self._ledger.stage_entry(
                customer_id,
                kind=LoyaltyTransactionKind.EXPIRE,
                direction=LoyaltyTransactionDirection.DEBIT,
                amount=points,
                description=f"Points older than {expiry_days} days expired",
                metadata={"cutoff": cutoff.isoformat()},
                occurred_at=moment,
            )
            return points

        expired = await run_atomic(self._db, _sweep, operation_name="expiry.sweep_account")
        if expired:
            get_loyalty_store().record_ledger_append(LoyaltyTransactionKind.EXPIRE.value, expired)
            logger.info(
                "Expired aged loyalty points",
                customer_id=customer_id,
                points=expired,
                cutoff=cutoff.isoformat(),
            )
        return expired

    async def sweep_all(
        self,
        *,
        now: datetime | None = None,
        batch_size: int | None = None,
    ) -> SweepSummary:
        """Sweep every account in id order, one atomic unit per account."""

        moment = ensure_aware(now) or datetime.now(timezone.utc)
        size = max(batch_size or settings.expiry_sweep_batch_size, 1)
        expiry_days = (await self._config.get()).points_expiry_days
        summary = SweepSummary()
        last_id: UUID | None = None

        while True:
            stmt = select(PointsAccount.id, PointsAccount.customer_id).where(PointsAccount.balance > 0)
            if last_id is not None:
                stmt = stmt.where(PointsAccount.id > last_id)
            stmt = stmt.order_by(PointsAccount.id).limit(size)
            batch = (await self._db.execute(stmt)).all()
            await self._db.commit()
            if not batch:
                break

            for account_id, customer_id in batch:
                summary.accounts_scanned += 1
                try:
                    expired = await self.sweep_account(
                        customer_id, now=moment, expiry_days=expiry_days
                    )
                except LoyaltyError as exc:
                    # One contended or failing account must not stall the run.
                    summary.failures.append(customer_id)
                    logger.warning(
                        "Expiry sweep skipped account",
                        customer_id=customer_id,
                        error=exc.code,
                    )
                    continue
                if expired:
                    summary.accounts_expired += 1
                    summary.points_expired += expired
            last_id = batch[-1][0]

        get_loyalty_store().record_sweep(
            accounts_scanned=summary.accounts_scanned,
            accounts_expired=summary.accounts_expired,
            points_expired=summary.points_expired,
        )
        logger.bind(summary=summary.as_dict()).info("Points expiry sweep completed")
        return summary


__all__ = ["ExpirySweeper", "PointLot", "SweepSummary", "build_lots", "expirable_points"]
