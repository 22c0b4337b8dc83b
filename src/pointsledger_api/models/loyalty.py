"""Points ledger, reward catalog, and redemption domain models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from pointsledger_api.db.base import Base


class LoyaltyTransactionKind(str, Enum):
    """Kinds of point-affecting events recorded on the ledger."""

    EARN = "earn"
    SPEND = "spend"
    EXPIRE = "expire"
    ADJUST = "adjust"


class LoyaltyTransactionDirection(str, Enum):
    """Whether a transaction adds to or removes from the balance."""

    CREDIT = "credit"
    DEBIT = "debit"


class PointsAccount(Base):
    """Per-customer account carrying the cached ledger balance."""

    __tablename__ = "loyalty_points_accounts"
    __table_args__ = (
        UniqueConstraint("customer_id", name="uq_loyalty_points_accounts_customer_id"),
        CheckConstraint("balance >= 0", name="ck_loyalty_points_accounts_balance_non_negative"),
        CheckConstraint(
            "lifetime_earned >= 0",
            name="ck_loyalty_points_accounts_lifetime_non_negative",
        ),
        CheckConstraint(
            "lifetime_spent >= 0",
            name="ck_loyalty_points_accounts_spent_non_negative",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(String, nullable=False, index=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_spent = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship("LoyaltyTransaction", back_populates="account")
    redemptions = relationship("LoyaltyRedemption", back_populates="account")

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}


class LoyaltyTransaction(Base):
    """Immutable ledger entry; the balance is the fold of these rows."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_loyalty_transactions_account_sequence"),
        CheckConstraint("amount > 0", name="ck_loyalty_transactions_amount_positive"),
        Index("ix_loyalty_transactions_related_redemption", "related_redemption_id"),
        Index("ix_loyalty_transactions_occurred_at", "occurred_at", "id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_points_accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    sequence = Column(Integer, nullable=False)
    kind = Column(
        SqlEnum(
            LoyaltyTransactionKind,
            name="loyalty_transaction_kind",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    direction = Column(
        SqlEnum(
            LoyaltyTransactionDirection,
            name="loyalty_transaction_direction",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    related_redemption_id = Column(UUID(as_uuid=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("PointsAccount", back_populates="transactions")

    __mapper_args__ = {"eager_defaults": True}

    @property
    def signed_amount(self) -> int:
        if self.direction == LoyaltyTransactionDirection.DEBIT:
            return -int(self.amount)
        return int(self.amount)


class LoyaltyRewardType(str, Enum):
    """Variants of redeemable rewards."""

    FREE_DELIVERY = "free_delivery"
    ORDER_DISCOUNT = "order_discount"
    DELIVERY_DISCOUNT = "delivery_discount"
    PRODUCT_DISCOUNT = "product_discount"
    GIFT = "gift"


DISCOUNT_REWARD_TYPES = frozenset(
    {
        LoyaltyRewardType.ORDER_DISCOUNT,
        LoyaltyRewardType.DELIVERY_DISCOUNT,
        LoyaltyRewardType.PRODUCT_DISCOUNT,
    }
)


class LoyaltyDiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class LoyaltyRewardStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class LoyaltyReward(Base):
    """Redeemable reward definition."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost_positive"),
        CheckConstraint("ends_at >= starts_at", name="ck_loyalty_rewards_window_ordered"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_loyalty_rewards_usage_within_limit",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_cost = Column(Integer, nullable=False)
    reward_type = Column(
        SqlEnum(
            LoyaltyRewardType,
            name="loyalty_reward_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    discount_type = Column(
        SqlEnum(
            LoyaltyDiscountType,
            name="loyalty_discount_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=True,
    )
    discount_value = Column(Numeric(12, 2), nullable=True)
    max_discount = Column(Numeric(12, 2), nullable=True)
    min_order_amount = Column(Numeric(12, 2), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0, server_default="0")
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        SqlEnum(
            LoyaltyRewardStatus,
            name="loyalty_reward_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=LoyaltyRewardStatus.ACTIVE,
        server_default=LoyaltyRewardStatus.ACTIVE.value,
    )
    revision = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    redemptions = relationship("LoyaltyRedemption", back_populates="reward")

    __mapper_args__ = {"eager_defaults": True}


class LoyaltyRedemptionStatus(str, Enum):
    """Status lifecycle for redemption codes."""

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class LoyaltyRedemption(Base):
    """Points exchanged for a single-use reward code."""

    __tablename__ = "loyalty_redemptions"
    __table_args__ = (
        Index("ix_loyalty_redemptions_status_expires_at", "status", "expires_at"),
        Index("ix_loyalty_redemptions_created_at", "created_at", "id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_points_accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=False)
    points_spent = Column(Integer, nullable=False)
    code = Column(String, nullable=False, unique=True, index=True)
    status = Column(
        SqlEnum(
            LoyaltyRedemptionStatus,
            name="loyalty_redemption_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=LoyaltyRedemptionStatus.ACTIVE,
        server_default=LoyaltyRedemptionStatus.ACTIVE.value,
    )
    reward_snapshot = Column(JSON, nullable=False, default=dict)
    order_reference = Column(String, nullable=True)
    applied_discount = Column(Numeric(12, 2), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    account = relationship("PointsAccount", back_populates="redemptions")
    reward = relationship("LoyaltyReward", back_populates="redemptions")

    __mapper_args__ = {"eager_defaults": True}


class LoyaltySettingsVersion(Base):
    """Published, immutable snapshot of program settings and the tier table."""

    __tablename__ = "loyalty_settings_versions"
    __table_args__ = (
        UniqueConstraint("version", name="uq_loyalty_settings_versions_version"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    version = Column(Integer, nullable=False)
    point_value = Column(Numeric(12, 4), nullable=False)
    min_points_redeem = Column(Integer, nullable=False)
    points_expiry_days = Column(Integer, nullable=False)
    points_per_currency = Column(Numeric(12, 4), nullable=False)
    min_order_points = Column(Numeric(12, 2), nullable=False)
    redemption_expiry_days = Column(Integer, nullable=False)
    tiers = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __mapper_args__ = {"eager_defaults": True}
