"""Restrict ORM reads to the ambient tenant.

Sessions created by :func:`oneclicktag.storage.database.get_session` use
:class:`TenantScopedSession`. While a tenant context is installed, every
ORM SELECT that touches a tenant-owned model gets a ``tenant_id`` criterion
for that tenant, including ``session.get``. With no context (workers,
maintenance, admin routes after ``bypass_tenant``) reads are unscoped.

A single statement can opt out with the ``skip_tenant_filter`` execution
option.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from oneclicktag.storage.models import Tracking, TrackingBatch
from oneclicktag.tenancy.context import get_tenant_id

TENANT_SCOPED_MODELS = (Tracking, TrackingBatch)


class TenantScopedSession(Session):
    """Sync session class behind the service's ``AsyncSession``s."""


@event.listens_for(TenantScopedSession, "do_orm_execute")
def _add_tenant_criteria(execute_state: ORMExecuteState) -> None:
    if (
        not execute_state.is_select
        or execute_state.is_column_load
        or execute_state.is_relationship_load
        or execute_state.execution_options.get("skip_tenant_filter", False)
    ):
        return

    tenant_id = get_tenant_id()
    if tenant_id is None:
        return

    for model in TENANT_SCOPED_MODELS:
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                model,
                lambda cls: cls.tenant_id == tenant_id,
                include_aliases=True,
            )
        )
