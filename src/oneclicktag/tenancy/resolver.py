"""Resolve the tenant for an inbound request.

Candidate tenant ids are taken from the first source that yields one, in
this order: bearer token claims, the tenant header, the ``tenantId`` query
parameter, the Host subdomain, the JSON body ``tenantId`` field and the
``tenantId`` route parameter. The candidate is then looked up; an unknown
tenant resolves to ``None`` exactly like a request carrying no tenant id.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import jwt
from starlette.requests import Request
from starlette.routing import Match

from oneclicktag.auth.jwt import bearer_token, decode_claims
from oneclicktag.config import get_settings
from oneclicktag.tenancy.context import TenantContext, TenantInfo
from oneclicktag.tenancy.lookup import fetch_tenant, fetch_tenant_by_subdomain

logger = logging.getLogger("oneclicktag.tenancy")

TenantLookup = Callable[[str], Awaitable[TenantInfo | None]]


@dataclass
class TenantCandidate:
    """A tenant id found on the request, before lookup."""

    tenant_id: str
    source: str
    user_id: str | None = None
    permissions: list[str] = field(default_factory=list)


def parse_subdomain(host: str, reserved: set[str]) -> str | None:
    """Return the leftmost label of *host* when it is a usable subdomain.

    Only hosts with at least three labels carry a subdomain; IP literals and
    reserved labels (``www``, ``api``) never do.
    """
    if not host or host.startswith("["):
        return None
    hostname = host.rsplit(":", 1)[0] if ":" in host else host
    labels = hostname.split(".")
    if len(labels) < 3 or all(label.isdigit() for label in labels):
        return None
    subdomain = labels[0]
    if not subdomain or subdomain.lower() in reserved:
        return None
    return subdomain


def _route_params(request: Request) -> dict[str, Any]:
    """Match the request against the app's routes to recover path params.

    Middleware runs before routing, so ``request.path_params`` is still
    empty at this point.
    """
    if request.path_params:
        return dict(request.path_params)
    app = request.scope.get("app")
    routes = getattr(getattr(app, "router", None), "routes", [])
    for route in routes:
        match, child_scope = route.matches(request.scope)
        if match == Match.FULL:
            return dict(child_scope.get("path_params", {}))
    return {}


class TenantResolver:
    """Derive a :class:`TenantContext` from a request, or ``None``."""

    def __init__(
        self,
        lookup: TenantLookup = fetch_tenant,
        subdomain_lookup: TenantLookup = fetch_tenant_by_subdomain,
    ) -> None:
        self._lookup = lookup
        self._subdomain_lookup = subdomain_lookup

    async def resolve(self, request: Request) -> TenantContext | None:
        """Resolve the tenant context. Never raises."""
        try:
            candidate = await self.extract_candidate(request)
            if candidate is None:
                return None

            if candidate.source == "subdomain":
                tenant = await self._subdomain_lookup(candidate.tenant_id)
            else:
                tenant = await self._lookup(candidate.tenant_id)

            if tenant is None:
                logger.debug(
                    "Tenant %s from %s not found", candidate.tenant_id, candidate.source
                )
                return None

            return TenantContext(
                tenant_id=tenant.id,
                tenant=tenant,
                user_id=candidate.user_id,
                permissions=tuple(candidate.permissions),
                source=candidate.source,
            )
        except Exception:
            logger.warning("Failed to extract tenant context", exc_info=True)
            return None

    async def extract_candidate(self, request: Request) -> TenantCandidate | None:
        """Find the first tenant id on the request, in precedence order."""
        settings = get_settings()

        candidate = self._from_token(request)
        if candidate:
            return candidate

        header_value = request.headers.get(settings.tenancy.tenant_header)
        if header_value:
            return TenantCandidate(header_value, "header")

        query_value = request.query_params.get("tenantId")
        if query_value:
            return TenantCandidate(query_value, "query")

        reserved = {s.lower() for s in settings.tenancy.reserved_subdomains}
        subdomain = parse_subdomain(request.headers.get("host", ""), reserved)
        if subdomain:
            return TenantCandidate(subdomain, "subdomain")

        body_value = await self._from_body(request)
        if body_value:
            return TenantCandidate(body_value, "body")

        route_value = _route_params(request).get("tenantId")
        if route_value:
            return TenantCandidate(str(route_value), "route")

        return None

    def _from_token(self, request: Request) -> TenantCandidate | None:
        token = bearer_token(request.headers.get("authorization", ""))
        if not token:
            return None
        try:
            payload = decode_claims(token)
        except jwt.InvalidTokenError:
            logger.debug("Failed to decode bearer token for tenant context")
            return None

        tenant_id = payload.get("tenantId")
        user_id = payload.get("sub")
        if not (tenant_id and user_id):
            return None
        permissions = payload.get("permissions") or []
        return TenantCandidate(
            str(tenant_id),
            "jwt",
            user_id=str(user_id),
            permissions=[str(p) for p in permissions],
        )

    async def _from_body(self, request: Request) -> str | None:
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("application/json"):
            return None
        raw = await request.body()
        if not raw:
            return None
        try:
            body = json.loads(raw)
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("tenantId"):
            return str(body["tenantId"])
        return None
