"""Service layer for member-facing loyalty operations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Iterable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.models.loyalty import LoyaltyTransaction, LoyaltyTransactionKind
from .config_store import ProgramConfig, ProgramConfigStore
from .errors import LoyaltyValidationError, OrderTooSmallError
from .ledger import LedgerService, TransactionPage, ensure_aware
from .tiers import Tier


@dataclass
class LoyaltySnapshot:
    """Serializable loyalty overview for clients."""

    customer_id: str
    balance: int
    lifetime_earned: int
    total_spent: int
    has_account: bool
    points_value: Decimal
    tier: Tier
    next_tier: Tier | None
    progress_to_next_tier: Decimal
    points_to_next_tier: int | None
    last_activity_at: datetime | None
    config_version: int


@dataclass
class AccountSummary:
    """One row of the admin customer list."""

    customer_id: str
    balance: int
    lifetime_earned: int
    total_spent: int
    tier: Tier
    last_activity_at: datetime | None


@dataclass
class AccountSummaryPage:
    items: list[AccountSummary]
    next_cursor: str | None


@dataclass
class EarnResult:
    transaction: LoyaltyTransaction
    tier: Tier
    multiplier: Decimal


def calculate_earned_points(order_amount: Decimal, config: ProgramConfig, tier: Tier) -> int:
    """Points for ``order_amount`` at ``tier``'s multiplier, rounded down."""

    raw = Decimal(order_amount) * config.points_per_currency * tier.multiplier
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


class LoyaltyService:
    """Expose account views and order-driven earning on top of the ledger."""

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

    async def get_account(self, customer_id: str) -> LoyaltySnapshot:
        config = await self._config.get()
        balance = await self._ledger.get_balance(customer_id)
        table = config.tier_table
        tier = table.resolve(balance.lifetime_earned)
        upcoming = table.next_tier(balance.lifetime_earned)
        return LoyaltySnapshot(
            customer_id=customer_id,
            balance=balance.balance,
            lifetime_earned=balance.lifetime_earned,
            total_spent=balance.lifetime_spent,
            has_account=balance.has_account,
            points_value=(Decimal(balance.balance) * config.point_value).quantize(Decimal("0.01")),
            tier=tier,
            next_tier=upcoming,
            progress_to_next_tier=table.progress(balance.lifetime_earned),
            points_to_next_tier=(
                upcoming.min_points - balance.lifetime_earned if upcoming is not None else None
            ),
            last_activity_at=balance.last_activity_at,
            config_version=config.version,
        )

    async def earn(
        self,
        customer_id: str,
        order_amount: Decimal,
        *,
        order_reference: str | None = None,
        description: str | None = None,
        now: datetime | None = None,
    ) -> EarnResult:
        """Credit points for a completed order."""

        amount = Decimal(order_amount)
        if amount < 0:
            raise LoyaltyValidationError("Order amount must not be negative")

        config = await self._config.get()
        if amount < config.min_order_points:
            raise OrderTooSmallError(
                "Order amount is below the minimum that earns points",
                order_amount=amount,
                min_order_points=config.min_order_points,
            )

        balance = await self._ledger.get_balance(customer_id)
        tier = config.tier_table.resolve(balance.lifetime_earned)
        points = calculate_earned_points(amount, config, tier)
        if points <= 0:
            raise OrderTooSmallError(
                "Order amount earns no points at the current rate",
                order_amount=amount,
            )

        metadata = {
            "order_amount": str(amount),
            "tier": tier.name,
            "multiplier": str(tier.multiplier),
            "config_version": config.version,
        }
        if order_reference:
            metadata["order_reference"] = order_reference

        transaction = await self._ledger.append_earn(
            customer_id,
            points,
            description or (f"Order {order_reference}" if order_reference else "Order points"),
            metadata=metadata,
            occurred_at=now,
        )
        logger.info(
            "Awarded order points",
            customer_id=customer_id,
            points=points,
            tier=tier.name,
        )
        return EarnResult(transaction=transaction, tier=tier, multiplier=tier.multiplier)

    async def get_transaction_history(
        self,
        customer_id: str,
        *,
        limit: int = 20,
        cursor: str | None = None,
        kinds: Iterable[LoyaltyTransactionKind] | None = None,
    ) -> TransactionPage:
        return await self._ledger.list_transactions(
            customer_id, limit=limit, cursor=cursor, kinds=kinds
        )

    async def list_accounts(
        self,
        *,
        limit: int = 20,
        cursor: str | None = None,
        min_balance: int | None = None,
    ) -> AccountSummaryPage:
        config = await self._config.get()
        page = await self._ledger.list_accounts(limit=limit, cursor=cursor, min_balance=min_balance)
        items = [
            AccountSummary(
                customer_id=account.customer_id,
                balance=account.balance,
                lifetime_earned=account.lifetime_earned,
                total_spent=account.lifetime_spent or 0,
                tier=config.tier_table.resolve(account.lifetime_earned),
                last_activity_at=ensure_aware(account.last_activity_at),
            )
            for account in page.items
        ]
        return AccountSummaryPage(items=items, next_cursor=page.next_cursor)

    async def list_recent_transactions(
        self,
        *,
        limit: int = 20,
        cursor: str | None = None,
        kinds: Iterable[LoyaltyTransactionKind] | None = None,
    ) -> TransactionPage:
        """Program-wide activity feed, newest first."""

        return await self._ledger.list_recent_transactions(limit=limit, cursor=cursor, kinds=kinds)


__all__ = [
    "AccountSummary",
    "AccountSummaryPage",
    "EarnResult",
    "LoyaltyService",
    "LoyaltySnapshot",
    "calculate_earned_points",
]
