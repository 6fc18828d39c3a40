"""FastAPI dependencies gating routes on tenant context."""

from __future__ import annotations

from oneclicktag.errors import TenantContextRequiredError
from oneclicktag.tenancy.context import (
    TenantContext,
    clear_tenant_context,
    get_tenant_context,
)


async def require_tenant() -> TenantContext:
    """Return the current tenant context or reject the request with 400."""
    ctx = get_tenant_context()
    if ctx is None or not ctx.tenant_id:
        raise TenantContextRequiredError()
    return ctx


async def bypass_tenant() -> None:
    """Clear tenant scoping for admin routes that operate across tenants."""
    clear_tenant_context()
