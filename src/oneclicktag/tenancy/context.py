"""Contextvars-based tenant context that flows through every request.

The tenancy middleware installs a :class:`TenantContext` once per request;
any coroutine awaited while handling that request, including tasks it
spawns, reads the same value through :func:`get_tenant_context` without it
being passed as an argument. Each asyncio task runs in a copy of the
context it was created in, so concurrent requests never see each other's
tenant.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TenantInfo:
    """The tenant record as of resolution time."""

    id: str
    name: str
    domain: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class TenantContext:
    """Request-scoped tenant identity."""

    tenant_id: str
    tenant: TenantInfo
    user_id: str | None = None
    permissions: tuple[str, ...] = field(default_factory=tuple)
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "permissions": list(self.permissions),
            "source": self.source,
            "tenant": {
                "id": self.tenant.id,
                "name": self.tenant.name,
                "domain": self.tenant.domain,
                "is_active": self.tenant.is_active,
            },
        }


_tenant_context_var: ContextVar[TenantContext | None] = ContextVar(
    "tenant_context", default=None
)


def get_tenant_context() -> TenantContext | None:
    """Get the current tenant context, or None when running unscoped."""
    return _tenant_context_var.get()


def get_tenant_id() -> str | None:
    """Get the current tenant ID from context."""
    ctx = _tenant_context_var.get()
    return ctx.tenant_id if ctx else None


def set_tenant_context(ctx: TenantContext | None) -> Token[TenantContext | None]:
    """Install *ctx* for the current task. Returns a token for reset."""
    return _tenant_context_var.set(ctx)


def reset_tenant_context(token: Token[TenantContext | None]) -> None:
    """Restore the context that was current before the matching set."""
    _tenant_context_var.reset(token)


def clear_tenant_context() -> None:
    """Drop tenant scoping for the rest of the current task."""
    _tenant_context_var.set(None)


@contextmanager
def tenant_scope(ctx: TenantContext | None) -> Iterator[TenantContext | None]:
    """Run a block with *ctx* installed, restoring the previous value after."""
    token = _tenant_context_var.set(ctx)
    try:
        yield ctx
    finally:
        _tenant_context_var.reset(token)
