"""Loyalty job exports."""

from .maintenance import (  # noqa: F401
    expire_stale_redemptions,
    reconcile_orphaned_spends,
    run_points_expiry_sweep,
)

__all__ = [
    "expire_stale_redemptions",
    "reconcile_orphaned_spends",
    "run_points_expiry_sweep",
]
