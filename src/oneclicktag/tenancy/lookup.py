"""Tenant record lookups used by the resolver.

Found tenants are kept in a process-local cache for
``tenancy.cache_ttl_seconds`` so resolution does not hit the database on
every request. Misses are never cached; a tenant created after a failed
lookup resolves on the next request.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import select

from oneclicktag.config import get_settings
from oneclicktag.storage.database import get_session
from oneclicktag.storage.models import Tenant
from oneclicktag.tenancy.context import TenantInfo

logger = logging.getLogger("oneclicktag.tenancy.lookup")

# cache key -> (expires at, tenant)
_cache: dict[str, tuple[float, TenantInfo]] = {}


def _to_info(tenant: Tenant) -> TenantInfo:
    return TenantInfo(
        id=tenant.id,
        name=tenant.name,
        domain=tenant.domain or "",
        is_active=bool(tenant.is_active),
    )


def _get_cached(key: str) -> TenantInfo | None:
    entry = _cache.get(key)
    if entry is None:
        return None
    expires_at, tenant = entry
    if time.monotonic() >= expires_at:
        del _cache[key]
        return None
    return tenant


def _remember(key: str, tenant: TenantInfo) -> None:
    ttl = get_settings().tenancy.cache_ttl_seconds
    if ttl > 0:
        _cache[key] = (time.monotonic() + ttl, tenant)


def invalidate_tenant_cache(tenant_id: str | None = None) -> None:
    """Drop cached entries for *tenant_id*, or every entry when omitted."""
    if tenant_id is None:
        _cache.clear()
        return
    for key in [k for k, (_, tenant) in _cache.items() if tenant.id == tenant_id]:
        del _cache[key]
    logger.debug("Invalidated cached tenant %s", tenant_id)


async def fetch_tenant(tenant_id: str) -> TenantInfo | None:
    """Look up a tenant by primary key."""
    key = f"id:{tenant_id}"
    cached = _get_cached(key)
    if cached is not None:
        return cached

    async with get_session() as session:
        tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        return None
    info = _to_info(tenant)
    _remember(key, info)
    return info


async def fetch_tenant_by_subdomain(subdomain: str) -> TenantInfo | None:
    """Resolve a Host subdomain through the mapping column, then by id."""
    key = f"subdomain:{subdomain}"
    cached = _get_cached(key)
    if cached is not None:
        return cached

    async with get_session() as session:
        result = await session.execute(select(Tenant).where(Tenant.subdomain == subdomain))
        tenant = result.scalar_one_or_none()
        if tenant is None:
            tenant = await session.get(Tenant, subdomain)
    if tenant is None:
        return None
    info = _to_info(tenant)
    _remember(key, info)
    return info
