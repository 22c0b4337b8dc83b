from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from pointsledger_api.core.settings import settings
from pointsledger_api.models.loyalty import (
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyTransaction,
    LoyaltyTransactionKind,
)
from pointsledger_api.observability.loyalty import get_loyalty_store
from pointsledger_api.schemas.rewards import OrderContext, parse_reward_spec
from pointsledger_api.services.loyalty import (
    LedgerService,
    LoyaltyService,
    RedemptionEngine,
    RewardCatalog,
)
from pointsledger_api.services.loyalty.errors import (
    AlreadyUsedError,
    InsufficientBalanceError,
    NotFoundError,
    OrderTooSmallError,
    RedemptionExpiredError,
    StorageUnavailableError,
    UsageLimitExceededError,
)
from pointsledger_api.services.loyalty.redemptions import CODE_PREFIX

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


async def _create_reward(session, **overrides):
    payload = {
        "rewardType": "order_discount",
        "name": "Weekend treat",
        "pointsCost": 60,
        "discountType": "fixed",
        "discountValue": "5",
        "usageLimit": 5,
        "startsAt": (NOW - timedelta(days=7)).isoformat(),
        "endsAt": (NOW + timedelta(days=60)).isoformat(),
    }
    payload.update(overrides)
    payload = {key: value for key, value in payload.items() if value is not None}
    return await RewardCatalog(session).create_reward(parse_reward_spec(payload))


async def _balance(session, customer_id: str) -> int:
    return (await LedgerService(session).get_balance(customer_id)).balance


async def _exhaust_reward(session, reward_id) -> None:
    await RewardCatalog(session).increment_usage(reward_id)
    await session.commit()


@pytest.mark.asyncio
async def test_earn_redeem_and_consume_flow(session_factory) -> None:
    async with session_factory() as session:
        result = await LoyaltyService(session).earn("alice", Decimal("100.00"), now=NOW)
        assert result.transaction.amount == 100
        assert result.tier.name == "Bronze"

        reward = await _create_reward(session)
        engine = RedemptionEngine(session)
        receipt = await engine.redeem("alice", reward.id, now=NOW)

        redemption = receipt.redemption
        assert redemption.status == LoyaltyRedemptionStatus.ACTIVE
        assert redemption.code.startswith(CODE_PREFIX)
        assert redemption.points_spent == 60
        assert receipt.balance_after == 40
        assert (await RewardCatalog(session).get_reward(reward.id)).used_count == 1

        spends = (
            await session.execute(
                select(LoyaltyTransaction).where(LoyaltyTransaction.kind == LoyaltyTransactionKind.SPEND)
            )
        ).scalars().all()
        assert [spend.related_redemption_id for spend in spends] == [redemption.id]

        order = OrderContext(orderAmount=Decimal("42.00"), orderReference="order-1001")
        consumed = await engine.consume(redemption.code.lower(), order, now=NOW + timedelta(hours=1))
        assert consumed.redemption.status == LoyaltyRedemptionStatus.USED
        assert consumed.discount == Decimal("5.00")
        assert consumed.redemption.order_reference == "order-1001"

        with pytest.raises(AlreadyUsedError) as excinfo:
            await engine.consume(redemption.code, now=NOW + timedelta(hours=2))
        assert excinfo.value.order_reference == "order-1001"

        assert await _balance(session, "alice") == 40
        account = await LoyaltyService(session).get_account("alice")
        assert account.lifetime_earned == 100
        assert account.tier.name == "Bronze"

    events = get_loyalty_store().snapshot().redemptions
    assert events["redeemed"] == 1
    assert events["consumed"] == 1
    assert events["already_used"] == 1


@pytest.mark.asyncio
async def test_order_below_reward_minimum_leaves_balance(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("bob", 200)
        reward = await _create_reward(session, minOrderAmount="100")

        with pytest.raises(OrderTooSmallError):
            await RedemptionEngine(session).redeem(
                "bob", reward.id, OrderContext(orderAmount=Decimal("50")), now=NOW
            )

        assert await _balance(session, "bob") == 200
        assert (await RewardCatalog(session).get_reward(reward.id)).used_count == 0


@pytest.mark.asyncio
async def test_balance_below_minimum_or_cost_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("carol", settings.min_points_redeem - 1)
        cheap = await _create_reward(session, pointsCost=10)

        with pytest.raises(InsufficientBalanceError):
            await RedemptionEngine(session).redeem("carol", cheap.id, now=NOW)

        await LedgerService(session).append_earn("dave", 150)
        pricey = await _create_reward(session, name="Big prize", pointsCost=500)

        with pytest.raises(InsufficientBalanceError):
            await RedemptionEngine(session).redeem("dave", pricey.id, now=NOW)

        assert await _balance(session, "dave") == 150
        redemptions = (await session.execute(select(LoyaltyRedemption))).scalars().all()
        assert redemptions == []


@pytest.mark.asyncio
async def test_exhausted_reward_is_rejected_before_spending(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("erin", 200)
        await ledger.append_earn("frank", 200)
        reward = await _create_reward(session, usageLimit=1)
        engine = RedemptionEngine(session)

        await engine.redeem("erin", reward.id, now=NOW)
        with pytest.raises(UsageLimitExceededError):
            await engine.redeem("frank", reward.id, now=NOW)

        assert await _balance(session, "frank") == 200


@pytest.mark.asyncio
async def test_losing_usage_race_refunds_the_spend(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("erin", 200)
        await ledger.append_earn("frank", 200)
        reward = await _create_reward(session, usageLimit=1)
        engine = RedemptionEngine(session)
        await engine.redeem("erin", reward.id, now=NOW)

        # Simulate a competitor that read the reward before the last use was claimed.
        monkeypatch.setattr(RewardCatalog, "ensure_capacity", lambda self, reward: None)

        with pytest.raises(UsageLimitExceededError):
            await engine.redeem("frank", reward.id, now=NOW)

        assert await _balance(session, "frank") == 200
        history = await ledger.list_transactions("frank")
        assert [item.kind for item in history.items] == [
            LoyaltyTransactionKind.ADJUST,
            LoyaltyTransactionKind.SPEND,
            LoyaltyTransactionKind.EARN,
        ]
        assert history.items[0].related_redemption_id == history.items[1].related_redemption_id
        assert (await RewardCatalog(session).get_reward(reward.id)).used_count == 1

    assert get_loyalty_store().snapshot().redemptions["compensated"] == 1


@pytest.mark.asyncio
async def test_failed_compensation_raises_and_alerts(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(settings, "compensation_max_attempts", 2)

    async with session_factory() as session:
        await LedgerService(session).append_earn("gina", 200)
        reward = await _create_reward(session, usageLimit=1)
        await _exhaust_reward(session, reward.id)

        async def _broken_adjust(self, *args, **kwargs):
            raise StorageUnavailableError("store down")

        monkeypatch.setattr(RewardCatalog, "ensure_capacity", lambda self, reward: None)
        monkeypatch.setattr(LedgerService, "append_adjust", _broken_adjust)

        with pytest.raises(StorageUnavailableError):
            await RedemptionEngine(session).redeem("gina", reward.id, now=NOW)

        assert await _balance(session, "gina") == 140

    snapshot = get_loyalty_store().snapshot()
    assert snapshot.redemptions["compensation_failed"] == 1
    assert snapshot.reconciliation_alerts[0]["reason"] == "compensation_failed"
    assert snapshot.reconciliation_alerts[0]["customer_id"] == "gina"


@pytest.mark.asyncio
async def test_orphaned_spend_is_reconciled_once(session_factory) -> None:
    redemption_id = uuid4()
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("hank", 300, occurred_at=NOW - timedelta(hours=2))
        await ledger.append_spend(
            "hank",
            120,
            related_redemption_id=redemption_id,
            occurred_at=NOW - timedelta(hours=1),
        )
        # Too recent to be treated as orphaned.
        await ledger.append_spend(
            "hank",
            30,
            related_redemption_id=uuid4(),
            occurred_at=NOW - timedelta(minutes=2),
        )

        engine = RedemptionEngine(session)
        refunded = await engine.reconcile_orphaned_spends(grace=timedelta(minutes=15), now=NOW)
        assert refunded == 1
        assert await _balance(session, "hank") == 270

        adjustment = await ledger.find_adjustment_for_redemption(redemption_id)
        assert adjustment is not None
        assert adjustment.amount == 120

        assert await engine.reconcile_orphaned_spends(grace=timedelta(minutes=15), now=NOW) == 0
        assert await _balance(session, "hank") == 270


@pytest.mark.asyncio
async def test_expired_codes_cannot_be_consumed(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("ivy", 400)
        reward = await _create_reward(session)
        engine = RedemptionEngine(session)

        stale = (await engine.redeem("ivy", reward.id, now=NOW)).redemption
        later = NOW + timedelta(days=settings.redemption_expiry_days + 1)

        with pytest.raises(RedemptionExpiredError):
            await engine.consume(stale.code, now=later)

        stmt = (
            select(LoyaltyRedemption)
            .where(LoyaltyRedemption.id == stale.id)
            .execution_options(populate_existing=True)
        )
        current = (await session.execute(stmt)).scalar_one()
        assert current.status == LoyaltyRedemptionStatus.EXPIRED

        fresh = (await engine.redeem("ivy", reward.id, now=NOW)).redemption
        assert await engine.expire_stale_redemptions(now=later) == 1
        with pytest.raises(RedemptionExpiredError):
            await engine.validate_code(fresh.code, now=NOW)

        # Expiry never refunds points.
        assert await _balance(session, "ivy") == 280


@pytest.mark.asyncio
async def test_validate_code_does_not_consume(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("jack", 150)
        reward = await _create_reward(
            session,
            rewardType="free_delivery",
            discountType=None,
            discountValue=None,
            minOrderAmount="20",
        )
        engine = RedemptionEngine(session)
        code = (await engine.redeem("jack", reward.id, now=NOW)).redemption.code

        check = await engine.validate_code(
            code, OrderContext(orderAmount=Decimal("30"), deliveryFee=Decimal("3.50")), now=NOW
        )
        assert check.discount == Decimal("3.50")
        assert check.redemption.status == LoyaltyRedemptionStatus.ACTIVE

        with pytest.raises(OrderTooSmallError):
            await engine.validate_code(code, OrderContext(orderAmount=Decimal("10")), now=NOW)

        with pytest.raises(NotFoundError):
            await engine.validate_code("RD-DOESNOTEXIST", now=NOW)


@pytest.mark.asyncio
async def test_snapshot_keeps_terms_after_catalog_change(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("kate", 300)
        reward = await _create_reward(session)
        engine = RedemptionEngine(session)
        redemption = (await engine.redeem("kate", reward.id, now=NOW)).redemption

        await RewardCatalog(session).update_reward(
            reward.id,
            parse_reward_spec(
                {
                    "rewardType": "order_discount",
                    "name": "Weekend treat",
                    "pointsCost": 90,
                    "discountType": "fixed",
                    "discountValue": "8",
                    "usageLimit": 5,
                    "startsAt": (NOW - timedelta(days=7)).isoformat(),
                    "endsAt": (NOW + timedelta(days=60)).isoformat(),
                }
            ),
        )

        check = await engine.validate_code(
            redemption.code, OrderContext(orderAmount=Decimal("50")), now=NOW
        )
        assert check.terms.points_cost == 60
        assert check.discount == Decimal("5.00")


@pytest.mark.asyncio
async def test_list_redemptions_paginates(session_factory) -> None:
    async with session_factory() as session:
        await LedgerService(session).append_earn("liam", 500)
        reward = await _create_reward(session, pointsCost=20)
        engine = RedemptionEngine(session)
        for offset in range(3):
            await engine.redeem("liam", reward.id, now=NOW + timedelta(minutes=offset))

        first = await engine.list_redemptions("liam", limit=2)
        assert len(first.items) == 2
        assert first.next_cursor is not None
        second = await engine.list_redemptions("liam", limit=2, cursor=first.next_cursor)
        assert len(second.items) == 1
        assert second.next_cursor is None

        all_ids = {item.id for item in first.items + second.items}
        assert len(all_ids) == 3

        used = await engine.list_redemptions("liam", status=LoyaltyRedemptionStatus.USED)
        assert used.items == []


@pytest.mark.asyncio
async def test_program_wide_redemptions_span_accounts(session_factory) -> None:
    async with session_factory() as session:
        ledger = LedgerService(session)
        await ledger.append_earn("mia", 200)
        await ledger.append_earn("noah", 200)
        reward = await _create_reward(session, pointsCost=20)
        engine = RedemptionEngine(session)
        await engine.redeem("mia", reward.id, now=NOW)
        await engine.redeem("noah", reward.id, now=NOW + timedelta(minutes=1))
        latest = await engine.redeem("mia", reward.id, now=NOW + timedelta(minutes=2))
        await engine.consume(latest.redemption.code, now=NOW + timedelta(minutes=3))

        first = await engine.list_redemptions(None, limit=2)
        assert [item.account.customer_id for item in first.items] == ["mia", "noah"]
        assert first.next_cursor is not None
        second = await engine.list_redemptions(None, limit=2, cursor=first.next_cursor)
        assert [item.account.customer_id for item in second.items] == ["mia"]
        assert second.next_cursor is None

        used = await engine.list_redemptions(None, status=LoyaltyRedemptionStatus.USED)
        assert [item.code for item in used.items] == [latest.redemption.code]
