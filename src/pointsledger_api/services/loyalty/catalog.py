"""Reward catalog: definitions, availability, usage counting and discount math."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.models.loyalty import (
    DISCOUNT_REWARD_TYPES,
    LoyaltyDiscountType,
    LoyaltyReward,
    LoyaltyRewardStatus,
    LoyaltyRewardType,
)
from pointsledger_api.schemas.rewards import OrderContext, RewardSpec
from .errors import (
    LoyaltyValidationError,
    NotFoundError,
    OrderTooSmallError,
    RewardUnavailableError,
    UsageLimitExceededError,
)
from .ledger import ensure_aware
from .unit_of_work import run_atomic

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RewardTerms:
    """Commercial terms of a reward, frozen at redemption time."""

    reward_id: UUID
    name: str
    reward_type: LoyaltyRewardType
    points_cost: int
    discount_type: LoyaltyDiscountType | None = None
    discount_value: Decimal | None = None
    max_discount: Decimal | None = None
    min_order_amount: Decimal | None = None
    revision: int = 1

    @classmethod
    def from_reward(cls, reward: LoyaltyReward) -> "RewardTerms":
        return cls(
            reward_id=reward.id,
            name=reward.name,
            reward_type=LoyaltyRewardType(reward.reward_type),
            points_cost=reward.points_cost,
            discount_type=LoyaltyDiscountType(reward.discount_type) if reward.discount_type else None,
            discount_value=_optional_decimal(reward.discount_value),
            max_discount=_optional_decimal(reward.max_discount),
            min_order_amount=_optional_decimal(reward.min_order_amount),
            revision=reward.revision or 1,
        )

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "RewardTerms":
        return cls(
            reward_id=UUID(str(snapshot["reward_id"])),
            name=snapshot.get("name", ""),
            reward_type=LoyaltyRewardType(snapshot["reward_type"]),
            points_cost=int(snapshot["points_cost"]),
            discount_type=(
                LoyaltyDiscountType(snapshot["discount_type"]) if snapshot.get("discount_type") else None
            ),
            discount_value=_optional_decimal(snapshot.get("discount_value")),
            max_discount=_optional_decimal(snapshot.get("max_discount")),
            min_order_amount=_optional_decimal(snapshot.get("min_order_amount")),
            revision=int(snapshot.get("revision", 1)),
        )

    def as_snapshot(self) -> dict[str, Any]:
        return {
            "reward_id": str(self.reward_id),
            "name": self.name,
            "reward_type": self.reward_type.value,
            "points_cost": self.points_cost,
            "discount_type": self.discount_type.value if self.discount_type else None,
            "discount_value": _optional_str(self.discount_value),
            "max_discount": _optional_str(self.max_discount),
            "min_order_amount": _optional_str(self.min_order_amount),
            "revision": self.revision,
        }


def _optional_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _optional_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def ensure_order_qualifies(terms: RewardTerms, order: OrderContext) -> None:
    minimum = terms.min_order_amount
    if minimum is not None and order.order_amount < minimum:
        raise OrderTooSmallError(
            "Order amount is below the reward minimum",
            order_amount=order.order_amount,
            min_order_amount=minimum,
        )


def compute_discount(terms: RewardTerms, order: OrderContext) -> Decimal:
    """Return the monetary discount ``terms`` grant on ``order``.

    Percentages apply to the base (order amount for order and product
    discounts, delivery fee for delivery discounts) and the result is capped
    by ``max_discount`` and by the base itself.
    """

    if terms.reward_type == LoyaltyRewardType.GIFT:
        return ZERO
    if terms.reward_type == LoyaltyRewardType.FREE_DELIVERY:
        return quantize_money(order.delivery_fee)

    if terms.reward_type == LoyaltyRewardType.DELIVERY_DISCOUNT:
        base = Decimal(order.delivery_fee)
    else:
        base = Decimal(order.order_amount)

    value = terms.discount_value or ZERO
    if terms.discount_type == LoyaltyDiscountType.PERCENTAGE:
        discount = base * value / Decimal("100")
    else:
        discount = value
    if terms.max_discount is not None:
        discount = min(discount, terms.max_discount)
    discount = max(min(discount, base), ZERO)
    return quantize_money(discount)


class RewardCatalog:
    """Manage reward definitions and their usage counters."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def get_reward(self, reward_id: UUID) -> LoyaltyReward:
        reward = await self._db.get(LoyaltyReward, reward_id, populate_existing=True)
        if reward is None:
            raise NotFoundError("Reward not found", reward_id=reward_id)
        return reward

    async def get_active_reward(self, reward_id: UUID, *, now: datetime | None = None) -> LoyaltyReward:
        reward = await self.get_reward(reward_id)
        moment = now or datetime.now(timezone.utc)
        if reward.status != LoyaltyRewardStatus.ACTIVE:
            raise RewardUnavailableError("Reward is not active", reward_id=reward_id)
        starts_at = ensure_aware(reward.starts_at)
        ends_at = ensure_aware(reward.ends_at)
        if moment < starts_at or moment > ends_at:
            raise RewardUnavailableError(
                "Reward is outside its validity window",
                reward_id=reward_id,
                starts_at=starts_at.isoformat(),
                ends_at=ends_at.isoformat(),
            )
        return reward

    def ensure_capacity(self, reward: LoyaltyReward) -> None:
        if reward.usage_limit is not None and reward.used_count >= reward.usage_limit:
            raise UsageLimitExceededError(
                "Reward usage limit reached",
                reward_id=reward.id,
                usage_limit=reward.usage_limit,
            )

    async def increment_usage(self, reward_id: UUID) -> None:
        """Claim one use of ``reward_id`` inside the caller's unit of work.

        The limit check and the increment are a single conditional UPDATE so
        concurrent claimants can never push ``used_count`` past the limit.
        """

        stmt = (
            update(LoyaltyReward)
            .where(
                LoyaltyReward.id == reward_id,
                or_(
                    LoyaltyReward.usage_limit.is_(None),
                    LoyaltyReward.used_count < LoyaltyReward.usage_limit,
                ),
            )
            .values(used_count=LoyaltyReward.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            raise UsageLimitExceededError("Reward usage limit reached", reward_id=reward_id)

    async def create_reward(self, spec: RewardSpec) -> LoyaltyReward:
        async def _create() -> LoyaltyReward:
            reward = LoyaltyReward(used_count=0, revision=1, **self._spec_columns(spec))
            self._db.add(reward)
            await self._db.flush()
            return reward

        reward = await run_atomic(self._db, _create, operation_name="catalog.create")
        logger.info(
            "Created loyalty reward",
            reward_id=str(reward.id),
            reward_type=reward.reward_type.value,
            points_cost=reward.points_cost,
        )
        return reward

    async def update_reward(self, reward_id: UUID, spec: RewardSpec) -> LoyaltyReward:
        """Replace the terms of ``reward_id``; issued codes keep their snapshot."""

        async def _update() -> LoyaltyReward:
            reward = await self.get_reward(reward_id)
            columns = self._spec_columns(spec)
            limit = columns["usage_limit"]
            if limit is not None and limit < reward.used_count:
                raise LoyaltyValidationError(
                    "usage_limit cannot be lower than the number of redemptions already made",
                    usage_limit=limit,
                    used_count=reward.used_count,
                )
            for key, value in columns.items():
                setattr(reward, key, value)
            reward.revision = (reward.revision or 1) + 1
            await self._db.flush()
            return reward

        reward = await run_atomic(self._db, _update, operation_name="catalog.update")
        logger.info("Updated loyalty reward", reward_id=str(reward_id), revision=reward.revision)
        return reward

    async def set_status(self, reward_id: UUID, status: LoyaltyRewardStatus) -> LoyaltyReward:
        async def _set() -> LoyaltyReward:
            reward = await self.get_reward(reward_id)
            if reward.status != status:
                reward.status = status
                reward.revision = (reward.revision or 1) + 1
                await self._db.flush()
            return reward

        reward = await run_atomic(self._db, _set, operation_name="catalog.status")
        logger.info("Changed loyalty reward status", reward_id=str(reward_id), status=status.value)
        return reward

    async def list_rewards(
        self,
        *,
        status: LoyaltyRewardStatus | None = None,
        reward_type: LoyaltyRewardType | None = None,
        available_at: datetime | None = None,
        affordable_for: int | None = None,
    ) -> Sequence[LoyaltyReward]:
        stmt = select(LoyaltyReward)
        if status is not None:
            stmt = stmt.where(LoyaltyReward.status == status)
        if reward_type is not None:
            stmt = stmt.where(LoyaltyReward.reward_type == reward_type)
        if affordable_for is not None:
            stmt = stmt.where(LoyaltyReward.points_cost <= affordable_for)
        stmt = stmt.order_by(LoyaltyReward.points_cost, LoyaltyReward.name)
        rewards = (await self._db.execute(stmt)).scalars().all()

        if available_at is None:
            return rewards
        # Window bounds are compared in Python since SQLite drops offsets.
        return [
            reward
            for reward in rewards
            if reward.status == LoyaltyRewardStatus.ACTIVE
            and ensure_aware(reward.starts_at) <= available_at <= ensure_aware(reward.ends_at)
            and (reward.usage_limit is None or reward.used_count < reward.usage_limit)
        ]

    @staticmethod
    def _spec_columns(spec: RewardSpec) -> dict[str, Any]:
        reward_type = LoyaltyRewardType(spec.reward_type)
        columns: dict[str, Any] = {
            "name": spec.name.strip(),
            "description": spec.description,
            "points_cost": spec.points_cost,
            "reward_type": reward_type,
            "min_order_amount": spec.min_order_amount,
            "usage_limit": spec.usage_limit,
            "starts_at": spec.starts_at,
            "ends_at": spec.ends_at,
            "status": spec.status,
            "discount_type": None,
            "discount_value": None,
            "max_discount": None,
        }
        if reward_type in DISCOUNT_REWARD_TYPES:
            columns["discount_type"] = spec.discount_type
            columns["discount_value"] = spec.discount_value
            columns["max_discount"] = spec.max_discount
        return columns


__all__ = [
    "RewardCatalog",
    "RewardTerms",
    "compute_discount",
    "ensure_order_qualifies",
    "quantize_money",
]
