"""Tracking batch endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from oneclicktag.auth.dependencies import require_permission
from oneclicktag.batches.service import BatchService, TrackingItem
from oneclicktag.events.broadcaster import get_broadcaster
from oneclicktag.tenancy.context import TenantContext
from oneclicktag.tenancy.dependencies import bypass_tenant, require_tenant

logger = logging.getLogger("oneclicktag.api.batches")

router = APIRouter(prefix="/batches", tags=["batches"])
admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_permission("admin")), Depends(bypass_tenant)],
)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class TrackingItemIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    recommendation_id: str | None = None
    priority: int = 0


class CreateBatchRequest(BaseModel):
    customer_id: str = ""
    trackings: list[TrackingItemIn]


def _service() -> BatchService:
    return BatchService(get_broadcaster())


# ---------------------------------------------------------------------------
# Tenant-scoped endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_batches(
    limit: int = Query(50, ge=1, le=200),
    ctx: TenantContext = Depends(require_tenant),
) -> dict[str, Any]:
    """List the current tenant's batches, newest first."""
    return {"batches": await _service().list_batches(ctx.tenant_id, limit=limit)}


@router.post("", status_code=201)
async def create_batch(
    body: CreateBatchRequest,
    ctx: TenantContext = Depends(require_tenant),
) -> dict[str, Any]:
    """Create a batch and queue one job per tracking."""
    items = [
        TrackingItem(name=t.name, recommendation_id=t.recommendation_id, priority=t.priority)
        for t in body.trackings
    ]
    return await _service().create_batch(
        ctx.tenant_id,
        items,
        user_id=ctx.user_id or "",
        customer_id=body.customer_id,
    )


@router.get("/{batch_id}")
async def get_batch(
    batch_id: str,
    ctx: TenantContext = Depends(require_tenant),
) -> dict[str, Any]:
    """Get a batch with its jobs."""
    return await _service().get_batch_detail(batch_id, ctx.tenant_id)


@router.post("/{batch_id}/cancel")
async def cancel_batch(
    batch_id: str,
    ctx: TenantContext = Depends(require_tenant),
) -> dict[str, Any]:
    """Cancel every unfinished job in the batch."""
    return await _service().cancel_batch(batch_id, ctx.tenant_id)


# ---------------------------------------------------------------------------
# Operator endpoints (admin token, tenant scoping bypassed)
# ---------------------------------------------------------------------------

@admin_router.get("/batches/{batch_id}")
async def admin_get_batch(batch_id: str) -> dict[str, Any]:
    """Get any tenant's batch."""
    return await _service().get_batch_detail(batch_id, None)


@admin_router.post("/queue/maintenance")
async def run_queue_maintenance() -> dict[str, Any]:
    """Run one queue maintenance pass now."""
    from oneclicktag.main import get_queue_maintenance

    maintenance = get_queue_maintenance()
    result = await maintenance.run_maintenance()
    logger.info("Manual queue maintenance: %s", result)
    return result
