"""API endpoints for loyalty accounts, rewards, redemptions, and settings."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.api.dependencies.security import require_admin_api_key
from pointsledger_api.db.session import get_session
from pointsledger_api.models.loyalty import (
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyReward,
    LoyaltyRewardStatus,
    LoyaltyRewardType,
    LoyaltyTransaction,
    LoyaltyTransactionKind,
)
from pointsledger_api.observability.loyalty import get_loyalty_store
from pointsledger_api.observability.scheduler import get_loyalty_scheduler_store
from pointsledger_api.schemas.rewards import OrderContext, RewardSpecPayload
from pointsledger_api.services.loyalty import (
    CodeCheck,
    ExpirySweeper,
    LedgerService,
    LoyaltyError,
    LoyaltyService,
    ProgramConfig,
    ProgramConfigStore,
    RedemptionEngine,
    RewardCatalog,
    Tier,
)
from pointsledger_api.services.loyalty.ledger import ensure_aware


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


@contextmanager
def _loyalty_errors() -> Iterator[None]:
    """Translate engine failures into HTTP responses."""

    try:
        yield
    except LoyaltyError as exc:
        headers = {"Retry-After": "1"} if exc.retryable else None
        raise HTTPException(status_code=exc.status_code, detail=exc.as_detail(), headers=headers) from exc


class TierResponse(BaseModel):
    name: str
    minPoints: int
    maxPoints: Optional[int]
    multiplier: Decimal
    benefits: List[str]


class AccountResponse(BaseModel):
    customerId: str
    balance: int
    lifetimeEarned: int
    totalSpent: int
    hasAccount: bool
    pointsValue: Decimal
    tier: TierResponse
    nextTier: Optional[TierResponse]
    progressToNextTier: float
    pointsToNextTier: Optional[int]
    lastActivityAt: Optional[datetime]
    configVersion: int


class TransactionResponse(BaseModel):
    id: UUID
    customerId: Optional[str] = None
    sequence: int
    kind: str
    direction: str
    amount: int
    signedAmount: int
    balanceAfter: int
    description: Optional[str]
    relatedRedemptionId: Optional[UUID]
    metadata: dict[str, Any]
    occurredAt: datetime


class TransactionWindowResponse(BaseModel):
    transactions: List[TransactionResponse]
    nextCursor: Optional[str]


class AccountSummaryResponse(BaseModel):
    customerId: str
    balance: int
    lifetimeEarned: int
    totalSpent: int
    tier: str
    lastActivityAt: Optional[datetime]


class AccountListResponse(BaseModel):
    accounts: List[AccountSummaryResponse]
    nextCursor: Optional[str]


class EarnRequest(BaseModel):
    orderAmount: Decimal = Field(..., ge=0, description="Order total the points are earned on")
    orderReference: Optional[str] = Field(None, max_length=128)
    description: Optional[str] = Field(None, max_length=255)


class EarnResponse(BaseModel):
    transaction: TransactionResponse
    tier: str
    multiplier: Decimal


class AdjustmentRequest(BaseModel):
    points: int = Field(..., description="Signed point correction; negative values debit")
    description: str = Field(..., min_length=1, max_length=255)

    @field_validator("points")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("points must be non-zero")
        return value


class RewardResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    pointsCost: int
    rewardType: str
    discountType: Optional[str]
    discountValue: Optional[Decimal]
    maxDiscount: Optional[Decimal]
    minOrderAmount: Optional[Decimal]
    usageLimit: Optional[int]
    usedCount: int
    startsAt: datetime
    endsAt: datetime
    status: str
    revision: int


class RewardStatusRequest(BaseModel):
    status: LoyaltyRewardStatus


class RedemptionResponse(BaseModel):
    id: UUID
    customerId: Optional[str] = None
    code: str
    status: str
    rewardId: UUID
    pointsSpent: int
    reward: dict[str, Any]
    orderReference: Optional[str]
    appliedDiscount: Optional[Decimal]
    createdAt: datetime
    expiresAt: datetime
    usedAt: Optional[datetime]
    expiredAt: Optional[datetime]


class RedeemRequest(BaseModel):
    rewardId: UUID
    order: Optional[OrderContext] = Field(None, description="Order the reward will be applied to")


class RedeemResponse(BaseModel):
    redemption: RedemptionResponse
    estimatedDiscount: Optional[Decimal]
    balance: int


class RedemptionWindowResponse(BaseModel):
    redemptions: List[RedemptionResponse]
    nextCursor: Optional[str]


class ConsumeRequest(BaseModel):
    order: Optional[OrderContext] = None


class CodeCheckResponse(BaseModel):
    redemption: RedemptionResponse
    discount: Optional[Decimal]


class SettingsResponse(BaseModel):
    version: int
    pointValue: Decimal
    minPointsRedeem: int
    pointsExpiryDays: int
    pointsPerCurrency: Decimal
    minOrderPoints: Decimal
    redemptionExpiryDays: int
    tiers: List[TierResponse]


class TierPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    minPoints: int = Field(..., ge=0)
    maxPoints: Optional[int] = Field(None, ge=0)
    multiplier: Decimal = Field(Decimal("1"), gt=0)
    benefits: List[str] = Field(default_factory=list)

    def as_definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "min_points": self.minPoints,
            "max_points": self.maxPoints,
            "multiplier": str(self.multiplier),
            "benefits": list(self.benefits),
        }


class SettingsUpdateRequest(BaseModel):
    pointValue: Optional[Decimal] = None
    minPointsRedeem: Optional[int] = None
    pointsExpiryDays: Optional[int] = None
    pointsPerCurrency: Optional[Decimal] = None
    minOrderPoints: Optional[Decimal] = None
    redemptionExpiryDays: Optional[int] = None
    tiers: Optional[List[TierPayload]] = None

    def as_changes(self) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "point_value": self.pointValue,
            "min_points_redeem": self.minPointsRedeem,
            "points_expiry_days": self.pointsExpiryDays,
            "points_per_currency": self.pointsPerCurrency,
            "min_order_points": self.minOrderPoints,
            "redemption_expiry_days": self.redemptionExpiryDays,
        }
        if self.tiers is not None:
            changes["tiers"] = [tier.as_definition() for tier in self.tiers]
        return {key: value for key, value in changes.items() if value is not None}


class SweepRequest(BaseModel):
    batchSize: Optional[int] = Field(None, ge=1, le=5000)


class SweepResponse(BaseModel):
    accountsScanned: int
    accountsExpired: int
    pointsExpired: int
    failures: List[str]


class RedemptionMaintenanceResponse(BaseModel):
    redemptionsExpired: int
    spendsRefunded: int


def _serialize_tier(tier: Tier) -> TierResponse:
    return TierResponse(
        name=tier.name,
        minPoints=tier.min_points,
        maxPoints=tier.max_points,
        multiplier=tier.multiplier,
        benefits=list(tier.benefits),
    )


def _serialize_transaction(
    transaction: LoyaltyTransaction, customer_id: str | None = None
) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        customerId=customer_id,
        sequence=transaction.sequence,
        kind=transaction.kind.value,
        direction=transaction.direction.value,
        amount=transaction.amount,
        signedAmount=transaction.signed_amount,
        balanceAfter=transaction.balance_after,
        description=transaction.description,
        relatedRedemptionId=transaction.related_redemption_id,
        metadata=transaction.metadata_json or {},
        occurredAt=ensure_aware(transaction.occurred_at),
    )


def _serialize_reward(reward: LoyaltyReward) -> RewardResponse:
    return RewardResponse(
        id=reward.id,
        name=reward.name,
        description=reward.description,
        pointsCost=reward.points_cost,
        rewardType=reward.reward_type.value,
        discountType=reward.discount_type.value if reward.discount_type else None,
        discountValue=reward.discount_value,
        maxDiscount=reward.max_discount,
        minOrderAmount=reward.min_order_amount,
        usageLimit=reward.usage_limit,
        usedCount=reward.used_count,
        startsAt=ensure_aware(reward.starts_at),
        endsAt=ensure_aware(reward.ends_at),
        status=reward.status.value,
        revision=reward.revision,
    )


def _serialize_redemption(
    redemption: LoyaltyRedemption, customer_id: str | None = None
) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        customerId=customer_id,
        code=redemption.code,
        status=redemption.status.value,
        rewardId=redemption.reward_id,
        pointsSpent=redemption.points_spent,
        reward=redemption.reward_snapshot or {},
        orderReference=redemption.order_reference,
        appliedDiscount=redemption.applied_discount,
        createdAt=ensure_aware(redemption.created_at),
        expiresAt=ensure_aware(redemption.expires_at),
        usedAt=ensure_aware(redemption.used_at),
        expiredAt=ensure_aware(redemption.expired_at),
    )


def _serialize_code_check(check: CodeCheck) -> CodeCheckResponse:
    return CodeCheckResponse(
        redemption=_serialize_redemption(check.redemption),
        discount=check.discount,
    )


def _serialize_settings(config: ProgramConfig) -> SettingsResponse:
    return SettingsResponse(
        version=config.version,
        pointValue=config.point_value,
        minPointsRedeem=config.min_points_redeem,
        pointsExpiryDays=config.points_expiry_days,
        pointsPerCurrency=config.points_per_currency,
        minOrderPoints=config.min_order_points,
        redemptionExpiryDays=config.redemption_expiry_days,
        tiers=[_serialize_tier(tier) for tier in config.tier_table],
    )


def _parse_enum_values(values: list[str] | None, enum_cls, label: str) -> list:
    parsed = []
    for value in values or []:
        try:
            parsed.append(enum_cls(value))
        except ValueError as exc:
            raise HTTPException(
                status_code=400,
                detail={"code": "validation_error", "message": f"Unsupported {label}: {value}"},
            ) from exc
    return parsed


@router.get(
    "/accounts",
    response_model=AccountListResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def list_loyalty_accounts(
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    min_balance: int | None = Query(None, alias="minBalance", ge=0),
    db: AsyncSession = Depends(get_session),
) -> AccountListResponse:
    """Customer list for operators, ordered by customer id."""

    with _loyalty_errors():
        page = await LoyaltyService(db).list_accounts(
            limit=limit, cursor=cursor, min_balance=min_balance
        )
    return AccountListResponse(
        accounts=[
            AccountSummaryResponse(
                customerId=item.customer_id,
                balance=item.balance,
                lifetimeEarned=item.lifetime_earned,
                totalSpent=item.total_spent,
                tier=item.tier.name,
                lastActivityAt=item.last_activity_at,
            )
            for item in page.items
        ],
        nextCursor=page.next_cursor,
    )


@router.get("/accounts/{customer_id}", response_model=AccountResponse)
async def get_loyalty_account(
    customer_id: str,
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    """Return balance, lifetime points and tier progress for a customer."""

    with _loyalty_errors():
        snapshot = await LoyaltyService(db).get_account(customer_id)
    return AccountResponse(
        customerId=snapshot.customer_id,
        balance=snapshot.balance,
        lifetimeEarned=snapshot.lifetime_earned,
        totalSpent=snapshot.total_spent,
        hasAccount=snapshot.has_account,
        pointsValue=snapshot.points_value,
        tier=_serialize_tier(snapshot.tier),
        nextTier=_serialize_tier(snapshot.next_tier) if snapshot.next_tier else None,
        progressToNextTier=float(snapshot.progress_to_next_tier),
        pointsToNextTier=snapshot.points_to_next_tier,
        lastActivityAt=snapshot.last_activity_at,
        configVersion=snapshot.config_version,
    )


@router.post(
    "/accounts/{customer_id}/earn",
    response_model=EarnResponse,
    status_code=status.HTTP_201_CREATED,
)
async def earn_order_points(
    customer_id: str,
    request: EarnRequest,
    db: AsyncSession = Depends(get_session),
) -> EarnResponse:
    """Credit points for a completed order."""

    with _loyalty_errors():
        result = await LoyaltyService(db).earn(
            customer_id,
            request.orderAmount,
            order_reference=request.orderReference,
            description=request.description,
        )
    return EarnResponse(
        transaction=_serialize_transaction(result.transaction),
        tier=result.tier.name,
        multiplier=result.multiplier,
    )


@router.post(
    "/accounts/{customer_id}/adjustments",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def adjust_points(
    customer_id: str,
    request: AdjustmentRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    """Record an operator correction to a customer's balance."""

    with _loyalty_errors():
        transaction = await LedgerService(db).append_adjust(
            customer_id,
            request.points,
            request.description,
            metadata={"source": "operator"},
        )
    return _serialize_transaction(transaction)


@router.get("/accounts/{customer_id}/transactions", response_model=TransactionWindowResponse)
async def list_account_transactions(
    customer_id: str,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    kind: list[str] | None = Query(None, description="Filter transaction kinds"),
    db: AsyncSession = Depends(get_session),
) -> TransactionWindowResponse:
    kinds = _parse_enum_values(kind, LoyaltyTransactionKind, "transaction kind")
    with _loyalty_errors():
        page = await LoyaltyService(db).get_transaction_history(
            customer_id, limit=limit, cursor=cursor, kinds=kinds
        )
    return TransactionWindowResponse(
        transactions=[_serialize_transaction(item) for item in page.items],
        nextCursor=page.next_cursor,
    )


@router.get("/accounts/{customer_id}/redemptions", response_model=RedemptionWindowResponse)
async def list_account_redemptions(
    customer_id: str,
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    db: AsyncSession = Depends(get_session),
) -> RedemptionWindowResponse:
    statuses = _parse_enum_values(
        [status_filter] if status_filter else None,
        LoyaltyRedemptionStatus,
        "redemption status",
    )
    with _loyalty_errors():
        page = await RedemptionEngine(db).list_redemptions(
            customer_id,
            status=statuses[0] if statuses else None,
            limit=limit,
            cursor=cursor,
        )
    return RedemptionWindowResponse(
        redemptions=[_serialize_redemption(item) for item in page.items],
        nextCursor=page.next_cursor,
    )


@router.post(
    "/accounts/{customer_id}/redemptions",
    response_model=RedeemResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_reward(
    customer_id: str,
    request: RedeemRequest,
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    """Spend points on a reward and mint a single-use code."""

    with _loyalty_errors():
        receipt = await RedemptionEngine(db).redeem(customer_id, request.rewardId, request.order)
    return RedeemResponse(
        redemption=_serialize_redemption(receipt.redemption),
        estimatedDiscount=receipt.discount,
        balance=receipt.balance_after,
    )


@router.get("/rewards", response_model=List[RewardResponse])
async def list_rewards(
    status_filter: str | None = Query(None, alias="status"),
    reward_type: str | None = Query(None, alias="rewardType"),
    available_only: bool = Query(False, alias="availableOnly"),
    customer_id: str | None = Query(None, alias="customerId", description="Only rewards this customer can afford"),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    statuses = _parse_enum_values([status_filter] if status_filter else None, LoyaltyRewardStatus, "reward status")
    types = _parse_enum_values([reward_type] if reward_type else None, LoyaltyRewardType, "reward type")

    affordable_for: int | None = None
    if customer_id:
        affordable_for = (await LedgerService(db).get_balance(customer_id)).balance

    with _loyalty_errors():
        rewards = await RewardCatalog(db).list_rewards(
            status=statuses[0] if statuses else None,
            reward_type=types[0] if types else None,
            available_at=datetime.now(timezone.utc) if available_only else None,
            affordable_for=affordable_for,
        )
    return [_serialize_reward(reward) for reward in rewards]


@router.post(
    "/rewards",
    response_model=RewardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_reward(
    payload: RewardSpecPayload,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    with _loyalty_errors():
        reward = await RewardCatalog(db).create_reward(payload.root)
    return _serialize_reward(reward)


@router.put(
    "/rewards/{reward_id}",
    response_model=RewardResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_reward(
    reward_id: UUID,
    payload: RewardSpecPayload,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    """Replace reward terms; codes already issued keep their original terms."""

    with _loyalty_errors():
        reward = await RewardCatalog(db).update_reward(reward_id, payload.root)
    return _serialize_reward(reward)


@router.post(
    "/rewards/{reward_id}/status",
    response_model=RewardResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def set_reward_status(
    reward_id: UUID,
    request: RewardStatusRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    with _loyalty_errors():
        reward = await RewardCatalog(db).set_status(reward_id, request.status)
    return _serialize_reward(reward)


@router.get(
    "/transactions",
    response_model=TransactionWindowResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def list_recent_transactions(
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    kind: list[str] | None = Query(None, description="Filter transaction kinds"),
    db: AsyncSession = Depends(get_session),
) -> TransactionWindowResponse:
    """Newest ledger entries across every account."""

    kinds = _parse_enum_values(kind, LoyaltyTransactionKind, "transaction kind")
    with _loyalty_errors():
        page = await LoyaltyService(db).list_recent_transactions(
            limit=limit, cursor=cursor, kinds=kinds
        )
    return TransactionWindowResponse(
        transactions=[
            _serialize_transaction(item, customer_id=item.account.customer_id)
            for item in page.items
        ],
        nextCursor=page.next_cursor,
    )


@router.get(
    "/redemptions",
    response_model=RedemptionWindowResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def list_recent_redemptions(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    db: AsyncSession = Depends(get_session),
) -> RedemptionWindowResponse:
    """Newest redemptions across every account."""

    statuses = _parse_enum_values(
        [status_filter] if status_filter else None,
        LoyaltyRedemptionStatus,
        "redemption status",
    )
    with _loyalty_errors():
        page = await RedemptionEngine(db).list_redemptions(
            None,
            status=statuses[0] if statuses else None,
            limit=limit,
            cursor=cursor,
        )
    return RedemptionWindowResponse(
        redemptions=[
            _serialize_redemption(item, customer_id=item.account.customer_id)
            for item in page.items
        ],
        nextCursor=page.next_cursor,
    )


@router.get("/redemptions/{code}", response_model=CodeCheckResponse)
async def validate_redemption_code(
    code: str,
    order_amount: Decimal | None = Query(None, alias="orderAmount", ge=0),
    delivery_fee: Decimal = Query(Decimal("0"), alias="deliveryFee", ge=0),
    db: AsyncSession = Depends(get_session),
) -> CodeCheckResponse:
    """Check a code against an optional order without consuming it."""

    order = None
    if order_amount is not None:
        order = OrderContext(orderAmount=order_amount, deliveryFee=delivery_fee)
    with _loyalty_errors():
        check = await RedemptionEngine(db).validate_code(code, order)
    return _serialize_code_check(check)


@router.post("/redemptions/{code}/consume", response_model=CodeCheckResponse)
async def consume_redemption_code(
    code: str,
    request: ConsumeRequest,
    db: AsyncSession = Depends(get_session),
) -> CodeCheckResponse:
    with _loyalty_errors():
        check = await RedemptionEngine(db).consume(code, request.order)
    return _serialize_code_check(check)


@router.get("/tiers", response_model=List[TierResponse])
async def list_tiers(db: AsyncSession = Depends(get_session)) -> List[TierResponse]:
    config = await ProgramConfigStore(db).get()
    return [_serialize_tier(tier) for tier in config.tier_table]


@router.put(
    "/tiers",
    response_model=SettingsResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def replace_tiers(
    tiers: List[TierPayload],
    db: AsyncSession = Depends(get_session),
) -> SettingsResponse:
    with _loyalty_errors():
        config = await ProgramConfigStore(db).update_tiers(tier.as_definition() for tier in tiers)
    return _serialize_settings(config)


@router.get("/settings", response_model=SettingsResponse)
async def get_program_settings(db: AsyncSession = Depends(get_session)) -> SettingsResponse:
    config = await ProgramConfigStore(db).get()
    return _serialize_settings(config)


@router.put(
    "/settings",
    response_model=SettingsResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_program_settings(
    request: SettingsUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> SettingsResponse:
    """Publish a new settings version with the supplied fields changed."""

    with _loyalty_errors():
        config = await ProgramConfigStore(db).update(request.as_changes())
    return _serialize_settings(config)


@router.post(
    "/sweeps/expiry",
    response_model=SweepResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def trigger_expiry_sweep(
    request: SweepRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> SweepResponse:
    with _loyalty_errors():
        summary = await ExpirySweeper(db).sweep_all(
            batch_size=request.batchSize if request else None,
        )
    return SweepResponse(
        accountsScanned=summary.accounts_scanned,
        accountsExpired=summary.accounts_expired,
        pointsExpired=summary.points_expired,
        failures=summary.failures,
    )


@router.post(
    "/sweeps/redemptions",
    response_model=RedemptionMaintenanceResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def trigger_redemption_maintenance(
    db: AsyncSession = Depends(get_session),
) -> RedemptionMaintenanceResponse:
    """Expire stale codes and refund spends whose redemption never completed."""

    engine = RedemptionEngine(db)
    with _loyalty_errors():
        expired = await engine.expire_stale_redemptions()
        refunded = await engine.reconcile_orphaned_spends()
    return RedemptionMaintenanceResponse(redemptionsExpired=expired, spendsRefunded=refunded)


@router.get("/observability", dependencies=[Depends(require_admin_api_key)])
async def loyalty_observability(request: Request) -> dict[str, Any]:
    job_scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    scheduler = (
        job_scheduler.health()
        if job_scheduler is not None
        else get_loyalty_scheduler_store().snapshot().as_dict()
    )
    return {"loyalty": get_loyalty_store().snapshot().as_dict(), "scheduler": scheduler}
