from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pointsledger_api.core.settings import settings
from pointsledger_api.db.session import get_session
from pointsledger_api.observability.loyalty import get_loyalty_store
from pointsledger_api.observability.scheduler import get_loyalty_scheduler_store


router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Readiness database probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    if settings.loyalty_job_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        scheduler_status: ComponentState = "ready" if running else "starting"
        detail = None if running else "Loyalty scheduler not running"
        degraded_jobs = get_loyalty_scheduler_store().snapshot().degraded_jobs
        if degraded_jobs:
            scheduler_status = "degraded"
            detail = f"Jobs failing: {', '.join(degraded_jobs)}"
        if scheduler_status != "ready" and status == "ready":
            status = "degraded"
        components["loyalty_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["loyalty_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Loyalty scheduler disabled via settings",
        )

    alerts = get_loyalty_store().snapshot().reconciliation_alerts
    if alerts:
        components["reconciliation"] = ComponentStatus(
            status="degraded",
            detail=f"{len(alerts)} redemption refund(s) need manual reconciliation",
        )
        if status == "ready":
            status = "degraded"
    else:
        components["reconciliation"] = ComponentStatus(status="ready")

    return ReadinessPayload(status=status, components=components)
