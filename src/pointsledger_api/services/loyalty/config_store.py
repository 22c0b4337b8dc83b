"""Versioned program settings and tier table snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.core.settings import Settings, settings as default_settings
from pointsledger_api.models.loyalty import LoyaltySettingsVersion
from .errors import LoyaltyValidationError
from .tiers import DEFAULT_TIER_DEFINITIONS, TierTable
from .unit_of_work import run_atomic


@dataclass(frozen=True)
class ProgramConfig:
    """Immutable snapshot of every loyalty tunable at a single version."""

    version: int
    point_value: Decimal
    min_points_redeem: int
    points_expiry_days: int
    points_per_currency: Decimal
    min_order_points: Decimal
    redemption_expiry_days: int
    tier_table: TierTable = field(default_factory=TierTable.default, compare=False)
    published_at: datetime | None = None

    @classmethod
    def from_settings(cls, source: Settings) -> "ProgramConfig":
        return cls(
            version=0,
            point_value=Decimal(source.point_value),
            min_points_redeem=source.min_points_redeem,
            points_expiry_days=source.points_expiry_days,
            points_per_currency=Decimal(source.points_per_currency),
            min_order_points=Decimal(source.min_order_points),
            redemption_expiry_days=source.redemption_expiry_days,
            tier_table=TierTable.from_definitions(DEFAULT_TIER_DEFINITIONS),
        )

    @classmethod
    def from_row(cls, row: LoyaltySettingsVersion) -> "ProgramConfig":
        return cls(
            version=row.version,
            point_value=Decimal(row.point_value),
            min_points_redeem=row.min_points_redeem,
            points_expiry_days=row.points_expiry_days,
            points_per_currency=Decimal(row.points_per_currency),
            min_order_points=Decimal(row.min_order_points),
            redemption_expiry_days=row.redemption_expiry_days,
            tier_table=TierTable.from_definitions(row.tiers or DEFAULT_TIER_DEFINITIONS),
            published_at=row.created_at,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "point_value": self.point_value,
            "min_points_redeem": self.min_points_redeem,
            "points_expiry_days": self.points_expiry_days,
            "points_per_currency": self.points_per_currency,
            "min_order_points": self.min_order_points,
            "redemption_expiry_days": self.redemption_expiry_days,
            "tiers": self.tier_table.as_definitions(),
        }


_DECIMAL_FIELDS = ("point_value", "points_per_currency", "min_order_points")
_INTEGER_FIELDS = ("min_points_redeem", "points_expiry_days", "redemption_expiry_days")
_POSITIVE_FIELDS = ("points_expiry_days", "redemption_expiry_days")

# Day windows must stay representable as a timedelta from "now".
MAX_WINDOW_DAYS = 36500
MAX_POINTS = 2**31 - 1
# (digits, scale) of the Numeric columns backing each decimal setting.
_DECIMAL_PRECISION = {
    "point_value": (12, 4),
    "points_per_currency": (12, 4),
    "min_order_points": (12, 2),
}
UPDATABLE_FIELDS = frozenset(_DECIMAL_FIELDS + _INTEGER_FIELDS + ("tiers",))


def _coerce_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise LoyaltyValidationError(
            "Unknown loyalty settings", fields=", ".join(sorted(unknown))
        )

    coerced: dict[str, Any] = {}
    for name, value in changes.items():
        if value is None:
            continue
        if name == "tiers":
            coerced["tier_table"] = (
                value if isinstance(value, TierTable) else TierTable.from_definitions(value)
            )
            continue
        try:
            number = Decimal(str(value)) if name in _DECIMAL_FIELDS else int(value)
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise LoyaltyValidationError(f"{name} must be numeric", field=name) from exc
        if name in _DECIMAL_FIELDS:
            number = _check_decimal(name, number)
        if number < 0:
            raise LoyaltyValidationError(f"{name} must not be negative", field=name)
        if name in _POSITIVE_FIELDS:
            if number == 0:
                raise LoyaltyValidationError(f"{name} must be positive", field=name)
            if number > MAX_WINDOW_DAYS:
                raise LoyaltyValidationError(
                    f"{name} must not exceed {MAX_WINDOW_DAYS} days", field=name
                )
        elif name in _INTEGER_FIELDS and number > MAX_POINTS:
            raise LoyaltyValidationError(f"{name} must not exceed {MAX_POINTS}", field=name)
        coerced[name] = number
    return coerced


def _check_decimal(name: str, number: Decimal) -> Decimal:
    if not number.is_finite():
        raise LoyaltyValidationError(f"{name} must be a finite number", field=name)
    digits, scale = _DECIMAL_PRECISION[name]
    if abs(number) >= Decimal(10) ** (digits - scale):
        raise LoyaltyValidationError(f"{name} is out of range", field=name)
    if number != number.quantize(Decimal(1).scaleb(-scale)):
        raise LoyaltyValidationError(
            f"{name} allows at most {scale} decimal places", field=name
        )
    return number


class ProgramConfigStore:
    """Reads and publishes :class:`ProgramConfig` versions.

    Published versions are append-only rows; the highest version is current.
    When nothing has been published the environment defaults act as version 0.
    Concurrent publishers race on the unique version constraint and the loser
    is retried against the new current version.
    """

    def __init__(self, session: AsyncSession, *, defaults: Settings | None = None) -> None:
        self._db = session
        self._defaults = defaults or default_settings

    async def get(self) -> ProgramConfig:
        stmt = (
            select(LoyaltySettingsVersion)
            .order_by(LoyaltySettingsVersion.version.desc())
            .limit(1)
        )
        row = (await self._db.execute(stmt)).scalar_one_or_none()
        if row is None:
            return ProgramConfig.from_settings(self._defaults)
        return ProgramConfig.from_row(row)

    async def update(self, changes: Mapping[str, Any]) -> ProgramConfig:
        """Publish a new version with ``changes`` applied over the current one."""

        coerced = _coerce_changes(changes)

        async def _publish() -> ProgramConfig:
            current = await self.get()
            candidate = replace(current, version=current.version + 1, **coerced)
            row = LoyaltySettingsVersion(
                version=candidate.version,
                point_value=candidate.point_value,
                min_points_redeem=candidate.min_points_redeem,
                points_expiry_days=candidate.points_expiry_days,
                points_per_currency=candidate.points_per_currency,
                min_order_points=candidate.min_order_points,
                redemption_expiry_days=candidate.redemption_expiry_days,
                tiers=candidate.tier_table.as_definitions(),
            )
            self._db.add(row)
            await self._db.flush()
            return ProgramConfig.from_row(row)

        published = await run_atomic(self._db, _publish, operation_name="settings.update")
        logger.info(
            "Published loyalty settings version",
            version=published.version,
            fields=sorted(changes),
        )
        return published

    async def update_tiers(self, definitions: Iterable[Mapping[str, Any]]) -> ProgramConfig:
        table = TierTable.from_definitions(definitions)
        return await self.update({"tiers": table})


__all__ = ["ProgramConfig", "ProgramConfigStore", "UPDATABLE_FIELDS"]
