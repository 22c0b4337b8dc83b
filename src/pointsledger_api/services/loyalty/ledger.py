"""Append-only points ledger with a cached, version-guarded account balance."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pointsledger_api.models.loyalty import (
    LoyaltyTransaction,
    LoyaltyTransactionDirection,
    LoyaltyTransactionKind,
    PointsAccount,
)
from pointsledger_api.observability.loyalty import get_loyalty_store
from .errors import InsufficientBalanceError, LoyaltyValidationError
from .unit_of_work import run_atomic

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance view of a single account."""

    customer_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int = 0
    version: int = 0
    last_activity_at: datetime | None = None
    has_account: bool = False


@dataclass
class TransactionPage:
    items: list[LoyaltyTransaction]
    next_cursor: str | None


@dataclass
class AccountPage:
    items: list[PointsAccount]
    next_cursor: str | None


def ensure_aware(value: datetime | None) -> datetime | None:
    """Normalize datetimes read back from backends that drop the offset."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def encode_sequence_cursor(sequence: int, identifier: UUID) -> str:
    """Encode pagination cursor for per-account ledger queries."""

    payload = f"{sequence}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_sequence_cursor(cursor: str) -> tuple[int, UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        sequence_str, identifier_str = raw.split("|", 1)
        return int(sequence_str), UUID(identifier_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise LoyaltyValidationError("Invalid pagination cursor") from exc


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return datetime.fromisoformat(timestamp_str), UUID(identifier_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise LoyaltyValidationError("Invalid pagination cursor") from exc


def encode_customer_cursor(customer_id: str) -> str:
    return base64.urlsafe_b64encode(customer_id.encode("utf-8")).decode("utf-8")


def decode_customer_cursor(cursor: str) -> str:
    try:
        customer_id = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise LoyaltyValidationError("Invalid pagination cursor") from exc
    if not customer_id:
        raise LoyaltyValidationError("Invalid pagination cursor")
    return customer_id


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise LoyaltyValidationError("Point amounts must be whole numbers", amount=amount)
    if amount <= 0:
        raise LoyaltyValidationError("Point amounts must be positive", amount=amount)
    return amount


class LedgerService:
    """Record point movements and keep the cached balance in step.

    Every append is one atomic unit: the account row is read (with ``FOR
    UPDATE`` where the backend honours it), the new balance is validated and
    written under the account's version compare-and-swap, and the transaction
    row is inserted before commit. A lost race is retried from a fresh read.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def get_account(self, customer_id: str) -> PointsAccount | None:
        stmt = select(PointsAccount).where(PointsAccount.customer_id == customer_id)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def get_balance(self, customer_id: str) -> BalanceSnapshot:
        account = await self.get_account(customer_id)
        if account is None:
            return BalanceSnapshot(customer_id=customer_id, balance=0, lifetime_earned=0)
        return BalanceSnapshot(
            customer_id=customer_id,
            balance=account.balance,
            lifetime_earned=account.lifetime_earned,
            lifetime_spent=account.lifetime_spent or 0,
            version=account.version,
            last_activity_at=ensure_aware(account.last_activity_at),
            has_account=True,
        )

    async def fold_balance(self, customer_id: str) -> BalanceSnapshot:
        """Recompute the balance from the transaction log alone."""

        signed = case(
            (LoyaltyTransaction.direction == LoyaltyTransactionDirection.CREDIT, LoyaltyTransaction.amount),
            else_=-LoyaltyTransaction.amount,
        )
        earned = case(
            (LoyaltyTransaction.kind == LoyaltyTransactionKind.EARN, LoyaltyTransaction.amount),
            else_=0,
        )
        spent = case(
            (LoyaltyTransaction.kind == LoyaltyTransactionKind.SPEND, LoyaltyTransaction.amount),
            else_=0,
        )
        stmt = (
            select(
                func.coalesce(func.sum(signed), 0),
                func.coalesce(func.sum(earned), 0),
                func.coalesce(func.sum(spent), 0),
                func.coalesce(func.max(LoyaltyTransaction.sequence), 0),
            )
            .join(PointsAccount, PointsAccount.id == LoyaltyTransaction.account_id)
            .where(PointsAccount.customer_id == customer_id)
        )
        balance, lifetime, spent_total, last_sequence = (await self._db.execute(stmt)).one()
        return BalanceSnapshot(
            customer_id=customer_id,
            balance=int(balance),
            lifetime_earned=int(lifetime),
            lifetime_spent=int(spent_total),
            version=int(last_sequence),
            has_account=int(last_sequence) > 0,
        )

    async def append_earn(
        self,
        customer_id: str,
        amount: int,
        description: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyTransaction:
        return await self._append(
            customer_id,
            kind=LoyaltyTransactionKind.EARN,
            direction=LoyaltyTransactionDirection.CREDIT,
            amount=_require_positive(amount),
            description=description,
            metadata=metadata,
            occurred_at=occurred_at,
        )

    async def append_spend(
        self,
        customer_id: str,
        amount: int,
        description: str | None = None,
        *,
        related_redemption_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyTransaction:
        return await self._append(
            customer_id,
            kind=LoyaltyTransactionKind.SPEND,
            direction=LoyaltyTransactionDirection.DEBIT,
            amount=_require_positive(amount),
            description=description,
            related_redemption_id=related_redemption_id,
            metadata=metadata,
            occurred_at=occurred_at,
        )

    async def append_expire(
        self,
        customer_id: str,
        amount: int,
        description: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyTransaction:
        return await self._append(
            customer_id,
            kind=LoyaltyTransactionKind.EXPIRE,
            direction=LoyaltyTransactionDirection.DEBIT,
            amount=_require_positive(amount),
            description=description,
            metadata=metadata,
            occurred_at=occurred_at,
        )

    async def append_adjust(
        self,
        customer_id: str,
        signed_amount: int,
        description: str | None = None,
        *,
        related_redemption_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyTransaction:
        """Apply a manual or compensating correction.

        Adjustments linked to a redemption are idempotent: when one already
        exists for ``related_redemption_id`` it is returned unchanged.
        """

        if isinstance(signed_amount, bool) or not isinstance(signed_amount, int) or signed_amount == 0:
            raise LoyaltyValidationError("Adjustments require a non-zero whole amount")
        direction = (
            LoyaltyTransactionDirection.CREDIT
            if signed_amount > 0
            else LoyaltyTransactionDirection.DEBIT
        )
        return await self._append(
            customer_id,
            kind=LoyaltyTransactionKind.ADJUST,
            direction=direction,
            amount=abs(signed_amount),
            description=description,
            related_redemption_id=related_redemption_id,
            metadata=metadata,
            occurred_at=occurred_at,
        )

    async def find_adjustment_for_redemption(self, redemption_id: UUID) -> LoyaltyTransaction | None:
        stmt = (
            select(LoyaltyTransaction)
            .where(
                LoyaltyTransaction.related_redemption_id == redemption_id,
                LoyaltyTransaction.kind == LoyaltyTransactionKind.ADJUST,
            )
            .order_by(LoyaltyTransaction.sequence)
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_transactions(
        self,
        customer_id: str,
        *,
        limit: int = 20,
        cursor: str | None = None,
        kinds: Iterable[LoyaltyTransactionKind] | None = None,
    ) -> TransactionPage:
        """Return newest-first ledger entries with keyset pagination."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        account = await self.get_account(customer_id)
        if account is None:
            return TransactionPage(items=[], next_cursor=None)

        stmt = select(LoyaltyTransaction).where(LoyaltyTransaction.account_id == account.id)
        if cursor:
            sequence, _ = decode_sequence_cursor(cursor)
            stmt = stmt.where(LoyaltyTransaction.sequence < sequence)
        kind_filter = list(kinds or [])
        if kind_filter:
            stmt = stmt.where(LoyaltyTransaction.kind.in_(kind_filter))
        stmt = stmt.order_by(LoyaltyTransaction.sequence.desc()).limit(limit + 1)

        rows: Sequence[LoyaltyTransaction] = (await self._db.execute(stmt)).scalars().all()
        items = list(rows[:limit])
        next_cursor = None
        if len(rows) > limit and items:
            last = items[-1]
            next_cursor = encode_sequence_cursor(last.sequence, last.id)
        return TransactionPage(items=items, next_cursor=next_cursor)

    async def list_recent_transactions(
        self,
        *,
        limit: int = 20,
        cursor: str | None = None,
        kinds: Iterable[LoyaltyTransactionKind] | None = None,
    ) -> TransactionPage:
        """Program-wide activity feed, newest ``occurred_at`` first."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = select(LoyaltyTransaction).options(selectinload(LoyaltyTransaction.account))
        if cursor:
            occurred_at, identifier = decode_time_uuid_cursor(cursor)
            stmt = stmt.where(
                or_(
                    LoyaltyTransaction.occurred_at < occurred_at,
                    and_(
                        LoyaltyTransaction.occurred_at == occurred_at,
                        LoyaltyTransaction.id < identifier,
                    ),
                )
            )
        kind_filter = list(kinds or [])
        if kind_filter:
            stmt = stmt.where(LoyaltyTransaction.kind.in_(kind_filter))
        stmt = stmt.order_by(
            LoyaltyTransaction.occurred_at.desc(), LoyaltyTransaction.id.desc()
        ).limit(limit + 1)

        rows: Sequence[LoyaltyTransaction] = (await self._db.execute(stmt)).scalars().all()
        items = list(rows[:limit])
        next_cursor = None
        if len(rows) > limit and items:
            last = items[-1]
            next_cursor = encode_time_uuid_cursor(ensure_aware(last.occurred_at), last.id)
        return TransactionPage(items=items, next_cursor=next_cursor)

    async def list_accounts(
        self,
        *,
        limit: int = 20,
        cursor: str | None = None,
        min_balance: int | None = None,
    ) -> AccountPage:
        """Accounts ordered by customer id, for the admin customer list."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = select(PointsAccount)
        if cursor:
            stmt = stmt.where(PointsAccount.customer_id > decode_customer_cursor(cursor))
        if min_balance is not None:
            stmt = stmt.where(PointsAccount.balance >= min_balance)
        stmt = stmt.order_by(PointsAccount.customer_id).limit(limit + 1)

        rows: Sequence[PointsAccount] = (await self._db.execute(stmt)).scalars().all()
        items = list(rows[:limit])
        next_cursor = None
        if len(rows) > limit and items:
            next_cursor = encode_customer_cursor(items[-1].customer_id)
        return AccountPage(items=items, next_cursor=next_cursor)

    async def lock_account(self, customer_id: str) -> PointsAccount | None:
        """Load ``customer_id``'s account fresh, row-locked where supported."""

        stmt = (
            select(PointsAccount)
            .where(PointsAccount.customer_id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def stage_entry(
        self,
        customer_id: str,
        *,
        kind: LoyaltyTransactionKind,
        direction: LoyaltyTransactionDirection,
        amount: int,
        description: str | None = None,
        related_redemption_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyTransaction:
        """Apply one entry inside the caller's unit of work without committing."""

        timestamp = occurred_at or datetime.now(timezone.utc)
        account = await self.lock_account(customer_id)
        if account is None:
            if direction == LoyaltyTransactionDirection.DEBIT:
                raise InsufficientBalanceError(
                    "Insufficient points balance",
                    balance=0,
                    requested=amount,
                    customer_id=customer_id,
                )
            account = PointsAccount(
                customer_id=customer_id, balance=0, lifetime_earned=0, lifetime_spent=0
            )
            self._db.add(account)

        delta = amount if direction == LoyaltyTransactionDirection.CREDIT else -amount
        new_balance = (account.balance or 0) + delta
        if new_balance < 0:
            raise InsufficientBalanceError(
                "Insufficient points balance",
                balance=account.balance,
                requested=amount,
                customer_id=customer_id,
            )

        account.balance = new_balance
        if kind == LoyaltyTransactionKind.EARN:
            account.lifetime_earned = (account.lifetime_earned or 0) + amount
        elif kind == LoyaltyTransactionKind.SPEND:
            account.lifetime_spent = (account.lifetime_spent or 0) + amount
        account.last_activity_at = timestamp
        # Flushing issues the versioned UPDATE (or INSERT) before the append.
        await self._db.flush()

        transaction = LoyaltyTransaction(
            account_id=account.id,
            sequence=account.version,
            kind=kind,
            direction=direction,
            amount=amount,
            balance_after=new_balance,
            description=description,
            related_redemption_id=related_redemption_id,
            metadata_json=metadata or {},
            occurred_at=timestamp,
        )
        self._db.add(transaction)
        await self._db.flush()
        return transaction

    async def _append(
        self,
        customer_id: str,
        *,
        kind: LoyaltyTransactionKind,
        direction: LoyaltyTransactionDirection,
        amount: int,
        description: str | None,
        related_redemption_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LoyaltyTransaction:
        timestamp = occurred_at or datetime.now(timezone.utc)
        idempotent = kind == LoyaltyTransactionKind.ADJUST and related_redemption_id is not None
        replayed = False

        async def _attempt() -> LoyaltyTransaction:
            nonlocal replayed
            if idempotent:
                existing = await self.find_adjustment_for_redemption(related_redemption_id)
                if existing is not None:
                    replayed = True
                    return existing
            return await self.stage_entry(
                customer_id,
                kind=kind,
                direction=direction,
                amount=amount,
                description=description,
                related_redemption_id=related_redemption_id,
                metadata=metadata,
                occurred_at=timestamp,
            )

        transaction = await run_atomic(self._db, _attempt, operation_name=f"ledger.{kind.value}")
        if replayed:
            logger.info(
                "Compensating adjustment already recorded",
                customer_id=customer_id,
                redemption_id=str(related_redemption_id),
            )
            return transaction

        get_loyalty_store().record_ledger_append(kind.value, amount)
        logger.info(
            "Recorded loyalty ledger entry",
            customer_id=customer_id,
            kind=kind.value,
            direction=direction.value,
            amount=amount,
            balance_after=transaction.balance_after,
            sequence=transaction.sequence,
        )
        return transaction


__all__ = [
    "AccountPage",
    "BalanceSnapshot",
    "LedgerService",
    "MAX_PAGE_SIZE",
    "TransactionPage",
    "decode_customer_cursor",
    "decode_sequence_cursor",
    "decode_time_uuid_cursor",
    "encode_customer_cursor",
    "encode_sequence_cursor",
    "encode_time_uuid_cursor",
    "ensure_aware",
]
