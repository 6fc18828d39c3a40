"""Starlette middleware that resolves the tenant and installs it in context."""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from oneclicktag.tenancy.context import reset_tenant_context, set_tenant_context
from oneclicktag.tenancy.resolver import TenantResolver

logger = logging.getLogger("oneclicktag.tenancy")


class TenantMiddleware(BaseHTTPMiddleware):
    """Resolve the request's tenant and make it ambiently available.

    The context is installed before the downstream app runs, so every
    handler, dependency and spawned task for this request sees it. Requests
    without a resolvable tenant proceed unscoped; they are never rejected
    here.
    """

    def __init__(self, app, *, resolver: TenantResolver | None = None):  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.resolver = resolver or TenantResolver()

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[no-untyped-def]
        ctx = await self.resolver.resolve(request)
        request.state.tenant_context = ctx
        if ctx is not None:
            logger.debug(
                "Tenant %s resolved from %s for %s", ctx.tenant_id, ctx.source, request.url.path
            )

        token = set_tenant_context(ctx)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)
