"""Shared fixtures: a throwaway SQLite database and seed helpers."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from oneclicktag.config import reset_settings
from oneclicktag.events.broadcaster import reset_broadcaster
from oneclicktag.storage.database import close_db, get_session, init_db
from oneclicktag.storage.models import (
    BatchStatus,
    JobStatus,
    Tenant,
    Tracking,
    TrackingBatch,
    TrackingQueueJob,
    TrackingStatus,
)
from oneclicktag.tenancy.lookup import invalidate_tenant_cache

_TRACKING_STATUS_FOR_JOB = {
    JobStatus.COMPLETED: TrackingStatus.ACTIVE,
    JobStatus.FAILED: TrackingStatus.FAILED,
    JobStatus.PROCESSING: TrackingStatus.CREATING,
}


@pytest.fixture(autouse=True)
def _reset():
    reset_settings()
    reset_broadcaster()
    invalidate_tenant_cache()
    yield
    reset_settings()
    reset_broadcaster()
    invalidate_tenant_cache()


@pytest.fixture
async def db(tmp_path):
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    yield
    await close_db()


async def _add_tenant(tenant_id: str, name: str | None = None, subdomain: str | None = None) -> str:
    async with get_session() as session:
        session.add(
            Tenant(id=tenant_id, name=name or tenant_id.title(), domain="", subdomain=subdomain)
        )
        await session.commit()
    return tenant_id


async def _add_batch(
    tenant_id: str,
    job_statuses: list[JobStatus],
    *,
    status: BatchStatus = BatchStatus.PROCESSING,
    names: list[str | None] | None = None,
    created_at: datetime | None = None,
) -> tuple[str, list[str]]:
    """Insert a batch with one job (and tracking) per status.

    A ``None`` entry in *names* leaves that job's tracking missing.
    """
    batch_id = str(uuid.uuid4())
    base = created_at or datetime.now(UTC)
    job_ids: list[str] = []

    async with get_session() as session:
        session.add(
            TrackingBatch(
                id=batch_id,
                tenant_id=tenant_id,
                status=status,
                total_jobs=len(job_statuses),
                completed=job_statuses.count(JobStatus.COMPLETED),
                failed=job_statuses.count(JobStatus.FAILED),
                created_at=base,
            )
        )
        for i, job_status in enumerate(job_statuses):
            tracking_id = str(uuid.uuid4())
            name = names[i] if names else f"Tracking {i}"
            if name is not None:
                session.add(
                    Tracking(
                        id=tracking_id,
                        tenant_id=tenant_id,
                        name=name,
                        status=_TRACKING_STATUS_FOR_JOB.get(job_status, TrackingStatus.PENDING),
                    )
                )
            job_id = str(uuid.uuid4())
            job_ids.append(job_id)
            session.add(
                TrackingQueueJob(
                    id=job_id,
                    batch_id=batch_id,
                    tracking_id=tracking_id,
                    status=job_status,
                    created_at=base + timedelta(seconds=i),
                )
            )
        await session.commit()
    return batch_id, job_ids


@pytest.fixture
def add_tenant(db):
    return _add_tenant


@pytest.fixture
def add_batch(db):
    return _add_batch
