"""Redemption engine: exchange points for single-use reward codes."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from pointsledger_api.core.settings import settings
from pointsledger_api.models.loyalty import (
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyTransaction,
    LoyaltyTransactionKind,
    PointsAccount,
)
from pointsledger_api.observability.loyalty import get_loyalty_store
from pointsledger_api.schemas.rewards import OrderContext
from .catalog import RewardCatalog, RewardTerms, compute_discount, ensure_order_qualifies
from .config_store import ProgramConfigStore
from .errors import (
    AlreadyUsedError,
    ConflictRetryableError,
    InsufficientBalanceError,
    NotFoundError,
    RedemptionExpiredError,
    StorageUnavailableError,
)
from .ledger import (
    MAX_PAGE_SIZE,
    LedgerService,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
    ensure_aware,
)
from .unit_of_work import run_atomic

CODE_PREFIX = "RD-"
_CODE_ATTEMPTS = 10


def generate_redemption_code() -> str:
    """Return an opaque, unguessable redemption code."""

    return f"{CODE_PREFIX}{secrets.token_hex(6).upper()}"


@dataclass
class RedemptionReceipt:
    """Outcome of a successful redemption."""

    redemption: LoyaltyRedemption
    terms: RewardTerms
    discount: Decimal | None
    balance_after: int


@dataclass
class CodeCheck:
    """Outcome of validating or consuming a code against an order."""

    redemption: LoyaltyRedemption
    terms: RewardTerms
    discount: Decimal | None


@dataclass
class RedemptionPage:
    items: list[LoyaltyRedemption]
    next_cursor: str | None


class RedemptionEngine:
    """Coordinate ledger debits, reward usage and code issuance.

    A redemption spans two atomic units: the spend is committed on the ledger
    first, then usage is claimed and the code inserted together. When the
    second unit fails the spend is reversed by a compensating adjustment tied
    to the pre-allocated redemption id, so a retried compensation (or the
    orphaned-spend reconciler) can never refund twice.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: LedgerService | None = None,
        catalog: RewardCatalog | None = None,
        config_store: ProgramConfigStore | None = None,
        code_factory: Callable[[], str] = generate_redemption_code,
    ) -> None:
        self._db = session
        self._ledger = ledger or LedgerService(session)
        self._catalog = catalog or RewardCatalog(session)
        self._config = config_store or ProgramConfigStore(session)
        self._code_factory = code_factory
        self._store = get_loyalty_store()

    async def redeem(
        self,
        customer_id: str,
        reward_id: UUID,
        order: OrderContext | None = None,
        *,
        now: datetime | None = None,
    ) -> RedemptionReceipt:
        moment = ensure_aware(now) or datetime.now(timezone.utc)
        config = await self._config.get()
        reward = await self._catalog.get_active_reward(reward_id, now=moment)
        self._catalog.ensure_capacity(reward)
        terms = RewardTerms.from_reward(reward)

        discount: Decimal | None = None
        if order is not None:
            ensure_order_qualifies(terms, order)
            discount = compute_discount(terms, order)

        balance = await self._ledger.get_balance(customer_id)
        if balance.balance < config.min_points_redeem:
            raise InsufficientBalanceError(
                "Balance is below the minimum required to redeem",
                balance=balance.balance,
                requested=terms.points_cost,
                min_points_redeem=config.min_points_redeem,
            )

        redemption_id = uuid4()
        spend = await self._ledger.append_spend(
            customer_id,
            terms.points_cost,
            f"Redeemed {terms.name}",
            related_redemption_id=redemption_id,
            metadata={"reward_id": str(reward_id), "reward_revision": terms.revision},
            occurred_at=moment,
        )

        async def _issue() -> LoyaltyRedemption:
            await self._catalog.increment_usage(reward_id)
            redemption = LoyaltyRedemption(
                id=redemption_id,
                account_id=spend.account_id,
                reward_id=reward_id,
                points_spent=terms.points_cost,
                code=await self._allocate_code(),
                status=LoyaltyRedemptionStatus.ACTIVE,
                reward_snapshot=terms.as_snapshot(),
                expires_at=moment + timedelta(days=config.redemption_expiry_days),
                created_at=moment,
                updated_at=moment,
            )
            self._db.add(redemption)
            await self._db.flush()
            return redemption

        try:
            redemption = await run_atomic(self._db, _issue, operation_name="redemption.issue")
        except Exception as exc:
            await self._db.rollback()
            await self._compensate(
                customer_id,
                redemption_id,
                terms.points_cost,
                reason=getattr(exc, "code", type(exc).__name__),
            )
            raise

        self._store.record_redemption_event("redeemed")
        logger.info(
            "Issued loyalty redemption",
            customer_id=customer_id,
            reward_id=str(reward_id),
            redemption_id=str(redemption.id),
            points_spent=redemption.points_spent,
        )
        return RedemptionReceipt(
            redemption=redemption,
            terms=terms,
            discount=discount,
            balance_after=spend.balance_after,
        )

    async def consume(
        self,
        code: str,
        order: OrderContext | None = None,
        *,
        now: datetime | None = None,
    ) -> CodeCheck:
        """Mark ``code`` as used; only one concurrent consumer can succeed."""

        moment = ensure_aware(now) or datetime.now(timezone.utc)
        try:
            check = await self._check_code(code, order, moment=moment, transition_expired=True)
        except AlreadyUsedError:
            self._store.record_redemption_event("already_used")
            raise
        order_reference = order.order_reference if order is not None else None
        redemption_id = check.redemption.id

        async def _mark_used() -> None:
            stmt = (
                update(LoyaltyRedemption)
                .where(
                    LoyaltyRedemption.id == redemption_id,
                    LoyaltyRedemption.status == LoyaltyRedemptionStatus.ACTIVE,
                )
                .values(
                    status=LoyaltyRedemptionStatus.USED,
                    used_at=moment,
                    order_reference=order_reference,
                    applied_discount=check.discount,
                    updated_at=moment,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._db.execute(stmt)
            if result.rowcount == 0:
                current = await self._get_by_code(code)
                if current.status == LoyaltyRedemptionStatus.USED:
                    raise AlreadyUsedError(
                        "Redemption code has already been used",
                        order_reference=current.order_reference,
                    )
                raise RedemptionExpiredError("Redemption code has expired", code=code)

        try:
            await run_atomic(self._db, _mark_used, operation_name="redemption.consume")
        except AlreadyUsedError:
            self._store.record_redemption_event("already_used")
            raise

        redemption = await self._get_by_code(code)
        self._store.record_redemption_event("consumed")
        logger.info(
            "Consumed loyalty redemption",
            redemption_id=str(redemption.id),
            order_reference=order_reference,
            applied_discount=str(check.discount) if check.discount is not None else None,
        )
        return CodeCheck(redemption=redemption, terms=check.terms, discount=check.discount)

    async def validate_code(
        self,
        code: str,
        order: OrderContext | None = None,
        *,
        now: datetime | None = None,
    ) -> CodeCheck:
        """Check ``code`` the way :meth:`consume` would, without changing it."""

        moment = ensure_aware(now) or datetime.now(timezone.utc)
        return await self._check_code(code, order, moment=moment, transition_expired=False)

    async def list_redemptions(
        self,
        customer_id: str | None,
        *,
        status: LoyaltyRedemptionStatus | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> RedemptionPage:
        """Newest-first redemptions; ``customer_id=None`` lists every account."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = select(LoyaltyRedemption).options(selectinload(LoyaltyRedemption.account))
        if customer_id is not None:
            account = await self._ledger.get_account(customer_id)
            if account is None:
                return RedemptionPage(items=[], next_cursor=None)
            stmt = stmt.where(LoyaltyRedemption.account_id == account.id)
        if status is not None:
            stmt = stmt.where(LoyaltyRedemption.status == status)
        if cursor:
            created_at, identifier = decode_time_uuid_cursor(cursor)
            stmt = stmt.where(
                or_(
                    LoyaltyRedemption.created_at < created_at,
                    and_(
                        LoyaltyRedemption.created_at == created_at,
                        LoyaltyRedemption.id < identifier,
                    ),
                )
            )
        stmt = stmt.order_by(LoyaltyRedemption.created_at.desc(), LoyaltyRedemption.id.desc()).limit(
            limit + 1
        )
        rows: Sequence[LoyaltyRedemption] = (await self._db.execute(stmt)).scalars().all()
        items = list(rows[:limit])
        next_cursor = None
        if len(rows) > limit and items:
            last = items[-1]
            next_cursor = encode_time_uuid_cursor(ensure_aware(last.created_at), last.id)
        return RedemptionPage(items=items, next_cursor=next_cursor)

    async def expire_stale_redemptions(self, *, now: datetime | None = None) -> int:
        """Move every active code past its expiry to ``expired``."""

        moment = ensure_aware(now) or datetime.now(timezone.utc)

        async def _expire() -> int:
            stmt = (
                update(LoyaltyRedemption)
                .where(
                    LoyaltyRedemption.status == LoyaltyRedemptionStatus.ACTIVE,
                    LoyaltyRedemption.expires_at <= moment,
                )
                .values(
                    status=LoyaltyRedemptionStatus.EXPIRED,
                    expired_at=moment,
                    updated_at=moment,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._db.execute(stmt)
            return result.rowcount or 0

        expired = await run_atomic(self._db, _expire, operation_name="redemption.expire_stale")
        if expired:
            self._store.record_redemption_event("expired")
            logger.info("Expired stale loyalty redemptions", count=expired)
        return expired

    async def reconcile_orphaned_spends(
        self,
        *,
        grace: timedelta | None = None,
        now: datetime | None = None,
    ) -> int:
        """Refund redemption spends that never produced a code.

        Covers a crash between the committed spend and the issuance unit.
        Only spends older than ``grace`` are considered so in-flight
        redemptions are left alone.
        """

        moment = ensure_aware(now) or datetime.now(timezone.utc)
        window = grace if grace is not None else timedelta(seconds=settings.orphaned_spend_grace_seconds)
        cutoff = moment - window
        compensation = aliased(LoyaltyTransaction)

        stmt = (
            select(LoyaltyTransaction, PointsAccount.customer_id)
            .join(PointsAccount, PointsAccount.id == LoyaltyTransaction.account_id)
            .where(
                LoyaltyTransaction.kind == LoyaltyTransactionKind.SPEND,
                LoyaltyTransaction.related_redemption_id.is_not(None),
                LoyaltyTransaction.occurred_at <= cutoff,
                ~exists().where(LoyaltyRedemption.id == LoyaltyTransaction.related_redemption_id),
                ~exists().where(
                    compensation.related_redemption_id == LoyaltyTransaction.related_redemption_id,
                    compensation.kind == LoyaltyTransactionKind.ADJUST,
                ),
            )
            .order_by(LoyaltyTransaction.occurred_at)
        )
        orphans = (await self._db.execute(stmt)).all()
        await self._db.commit()

        for spend, customer_id in orphans:
            await self._compensate(
                customer_id,
                spend.related_redemption_id,
                spend.amount,
                reason="orphaned_spend",
            )
            self._store.record_redemption_event("reconciled")
        if orphans:
            logger.warning("Reconciled orphaned loyalty spends", count=len(orphans))
        return len(orphans)

    async def _check_code(
        self,
        code: str,
        order: OrderContext | None,
        *,
        moment: datetime,
        transition_expired: bool,
    ) -> CodeCheck:
        redemption = await self._get_by_code(code)
        if redemption.status == LoyaltyRedemptionStatus.USED:
            raise AlreadyUsedError(
                "Redemption code has already been used",
                order_reference=redemption.order_reference,
            )
        if redemption.status == LoyaltyRedemptionStatus.EXPIRED or moment >= ensure_aware(
            redemption.expires_at
        ):
            if transition_expired and redemption.status == LoyaltyRedemptionStatus.ACTIVE:
                await self._mark_expired(redemption.id, moment)
            raise RedemptionExpiredError("Redemption code has expired", code=code)

        terms = RewardTerms.from_snapshot(redemption.reward_snapshot)
        discount: Decimal | None = None
        if order is not None:
            ensure_order_qualifies(terms, order)
            discount = compute_discount(terms, order)
        return CodeCheck(redemption=redemption, terms=terms, discount=discount)

    async def _mark_expired(self, redemption_id: UUID, moment: datetime) -> None:
        async def _expire() -> int:
            stmt = (
                update(LoyaltyRedemption)
                .where(
                    LoyaltyRedemption.id == redemption_id,
                    LoyaltyRedemption.status == LoyaltyRedemptionStatus.ACTIVE,
                )
                .values(
                    status=LoyaltyRedemptionStatus.EXPIRED,
                    expired_at=moment,
                    updated_at=moment,
                )
                .execution_options(synchronize_session=False)
            )
            return (await self._db.execute(stmt)).rowcount or 0

        if await run_atomic(self._db, _expire, operation_name="redemption.expire"):
            self._store.record_redemption_event("expired")

    async def _get_by_code(self, code: str) -> LoyaltyRedemption:
        stmt = (
            select(LoyaltyRedemption)
            .where(LoyaltyRedemption.code == code.strip().upper())
            .execution_options(populate_existing=True)
        )
        redemption = (await self._db.execute(stmt)).scalar_one_or_none()
        if redemption is None:
            raise NotFoundError("Redemption code not found", code=code)
        return redemption

    async def _allocate_code(self) -> str:
        for _ in range(_CODE_ATTEMPTS):
            candidate = self._code_factory()
            stmt = select(LoyaltyRedemption.id).where(LoyaltyRedemption.code == candidate)
            if (await self._db.execute(stmt)).first() is None:
                return candidate
        raise ConflictRetryableError("Could not allocate a unique redemption code")

    async def _compensate(
        self,
        customer_id: str,
        redemption_id: UUID,
        points: int,
        *,
        reason: str,
    ) -> None:
        attempts = settings.compensation_max_attempts
        backoff = settings.ledger_conflict_backoff_seconds
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                await self._ledger.append_adjust(
                    customer_id,
                    points,
                    "Refund for redemption that could not be completed",
                    related_redemption_id=redemption_id,
                    metadata={"reason": reason, "compensation": True},
                )
            except (ConflictRetryableError, StorageUnavailableError) as exc:
                last_error = exc
                logger.warning(
                    "Redemption compensation attempt failed",
                    customer_id=customer_id,
                    redemption_id=str(redemption_id),
                    attempt=attempt,
                    error=exc.code,
                )
                if backoff:
                    await asyncio.sleep(backoff * attempt)
                continue

            self._store.record_redemption_event("compensated")
            logger.warning(
                "Compensated failed loyalty redemption",
                customer_id=customer_id,
                redemption_id=str(redemption_id),
                points=points,
                reason=reason,
            )
            return

        self._store.record_redemption_event("compensation_failed")
        self._store.record_reconciliation_alert(
            "compensation_failed",
            customer_id=customer_id,
            redemption_id=redemption_id,
            points=points,
            reason=reason,
        )
        logger.error(
            "Redemption compensation exhausted; manual reconciliation required",
            customer_id=customer_id,
            redemption_id=str(redemption_id),
            points=points,
            reason=reason,
        )
        raise StorageUnavailableError(
            "Redemption failed and the points refund could not be recorded",
            redemption_id=redemption_id,
        ) from last_error


__all__ = [
    "CODE_PREFIX",
    "CodeCheck",
    "RedemptionEngine",
    "RedemptionPage",
    "RedemptionReceipt",
    "generate_redemption_code",
]
