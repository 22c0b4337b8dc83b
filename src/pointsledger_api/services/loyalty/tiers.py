"""Tier engine mapping lifetime-earned points onto configured status bands."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Iterator, Mapping, Sequence

from .errors import TierConfigurationError


@dataclass(frozen=True, slots=True)
class Tier:
    """Status band covering ``[min_points, max_points)``; open-ended when ``max_points`` is None."""

    name: str
    min_points: int
    max_points: int | None
    multiplier: Decimal = Decimal("1")
    benefits: tuple[str, ...] = field(default_factory=tuple)

    def contains(self, points: int) -> bool:
        if points < self.min_points:
            return False
        return self.max_points is None or points < self.max_points

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "min_points": self.min_points,
            "max_points": self.max_points,
            "multiplier": str(self.multiplier),
            "benefits": list(self.benefits),
        }


DEFAULT_TIER_DEFINITIONS: tuple[dict[str, Any], ...] = (
    {
        "name": "Bronze",
        "min_points": 0,
        "max_points": 1000,
        "multiplier": "1",
        "benefits": ["1x points earning", "5% off delivery"],
    },
    {
        "name": "Silver",
        "min_points": 1000,
        "max_points": 5000,
        "multiplier": "1.5",
        "benefits": ["1.5x points earning", "10% off delivery", "Priority support"],
    },
    {
        "name": "Gold",
        "min_points": 5000,
        "max_points": 10000,
        "multiplier": "2",
        "benefits": [
            "2x points earning",
            "15% off delivery",
            "Priority support",
            "Exclusive offers",
        ],
    },
    {
        "name": "Platinum",
        "min_points": 10000,
        "max_points": None,
        "multiplier": "3",
        "benefits": [
            "3x points earning",
            "20% off delivery",
            "Top priority support",
            "Exclusive offers",
            "Birthday gift",
        ],
    },
)


class TierTable:
    """Validated, immutable tier table.

    Construction fails with :class:`TierConfigurationError` unless the tiers
    partition the non-negative integers: the lowest tier starts at zero, each
    tier begins exactly where the previous one ends, and only the highest tier
    is open-ended. Once built, :meth:`resolve` is total and performs no I/O.
    """

    def __init__(self, tiers: Sequence[Tier]) -> None:
        ordered = tuple(sorted(tiers, key=lambda tier: tier.min_points))
        self._validate(ordered)
        self._tiers = ordered
        self._lower_bounds = [tier.min_points for tier in ordered]

    @staticmethod
    def _validate(tiers: Sequence[Tier]) -> None:
        if not tiers:
            raise TierConfigurationError("At least one tier is required")

        names = [tier.name.strip() for tier in tiers]
        if any(not name for name in names):
            raise TierConfigurationError("Tier names must not be blank")
        if len({name.lower() for name in names}) != len(names):
            raise TierConfigurationError("Tier names must be unique")

        if tiers[0].min_points != 0:
            raise TierConfigurationError(
                "The lowest tier must start at 0 points",
                min_points=tiers[0].min_points,
            )

        for tier in tiers:
            if tier.multiplier <= 0:
                raise TierConfigurationError("Tier multiplier must be positive", tier=tier.name)
            if tier.max_points is not None and tier.max_points <= tier.min_points:
                raise TierConfigurationError(
                    "Tier upper bound must exceed its lower bound",
                    tier=tier.name,
                )

        for previous, current in zip(tiers, tiers[1:]):
            if previous.max_points is None:
                raise TierConfigurationError(
                    "Only the highest tier may be open-ended",
                    tier=previous.name,
                )
            if current.min_points > previous.max_points:
                raise TierConfigurationError(
                    "Tier table leaves a gap",
                    after=previous.name,
                    gap_start=previous.max_points,
                    gap_end=current.min_points,
                )
            if current.min_points < previous.max_points:
                raise TierConfigurationError(
                    "Tier ranges overlap",
                    first=previous.name,
                    second=current.name,
                )

        if tiers[-1].max_points is not None:
            raise TierConfigurationError(
                "The highest tier must be open-ended",
                tier=tiers[-1].name,
            )

    @classmethod
    def from_definitions(cls, definitions: Iterable[Mapping[str, Any]]) -> "TierTable":
        """Build a table from JSON-style mappings (snake_case or camelCase keys)."""

        tiers: list[Tier] = []
        for raw in definitions:
            try:
                name = str(raw["name"])
                min_points = int(raw.get("min_points", raw.get("minPoints")))
                max_raw = raw.get("max_points", raw.get("maxPoints"))
                max_points = int(max_raw) if max_raw is not None else None
                multiplier = Decimal(str(raw.get("multiplier", "1")))
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                raise TierConfigurationError(f"Malformed tier definition: {raw!r}") from exc
            if not multiplier.is_finite():
                raise TierConfigurationError("Tier multiplier must be a finite number", tier=name)
            if min_points < 0 or (max_points is not None and max_points < 0):
                raise TierConfigurationError("Tier bounds must be non-negative", tier=name)
            benefits = tuple(str(item) for item in (raw.get("benefits") or []))
            tiers.append(
                Tier(
                    name=name,
                    min_points=min_points,
                    max_points=max_points,
                    multiplier=multiplier,
                    benefits=benefits,
                )
            )
        return cls(tiers)

    @classmethod
    def default(cls) -> "TierTable":
        return cls.from_definitions(DEFAULT_TIER_DEFINITIONS)

    @property
    def tiers(self) -> tuple[Tier, ...]:
        return self._tiers

    def __iter__(self) -> Iterator[Tier]:
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    def resolve(self, lifetime_earned: int) -> Tier:
        """Return the single tier containing ``lifetime_earned``."""

        points = max(int(lifetime_earned), 0)
        index = bisect_right(self._lower_bounds, points) - 1
        return self._tiers[index]

    def next_tier(self, lifetime_earned: int) -> Tier | None:
        current = self.resolve(lifetime_earned)
        position = self._tiers.index(current)
        if position + 1 < len(self._tiers):
            return self._tiers[position + 1]
        return None

    def progress(self, lifetime_earned: int) -> Decimal:
        """Fraction of the way through the current band, in ``[0, 1]``."""

        current = self.resolve(lifetime_earned)
        if current.max_points is None:
            return Decimal("1")
        span = Decimal(current.max_points - current.min_points)
        progressed = Decimal(max(int(lifetime_earned), 0) - current.min_points)
        return max(Decimal("0"), min(progressed / span, Decimal("1")))

    def as_definitions(self) -> list[dict[str, Any]]:
        return [tier.as_dict() for tier in self._tiers]


def resolve_tier(table: TierTable, lifetime_earned: int) -> Tier:
    return table.resolve(lifetime_earned)


__all__ = ["DEFAULT_TIER_DEFINITIONS", "Tier", "TierTable", "resolve_tier"]
