"""REST API endpoints for the OneClickTag server."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from oneclicktag import __version__
from oneclicktag.tenancy.context import get_tenant_context

router = APIRouter(tags=["api"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/tenant/context")
async def tenant_context() -> dict[str, Any] | None:
    """Echo the tenant context resolved for this request, if any."""
    ctx = get_tenant_context()
    return ctx.to_dict() if ctx else None
