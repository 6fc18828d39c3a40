"""Tenant context management for multi-tenancy support."""

from oneclicktag.tenancy.context import (
    TenantContext,
    TenantInfo,
    get_tenant_context,
    get_tenant_id,
    tenant_scope,
)

__all__ = [
    "TenantContext",
    "TenantInfo",
    "get_tenant_context",
    "get_tenant_id",
    "tenant_scope",
]
