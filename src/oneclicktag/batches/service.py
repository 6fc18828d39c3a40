"""Tenant-scoped tracking batch operations.

Every read and write filters on ``tenant_id`` in the same statement that
selects the batch, so a foreign batch is indistinguishable from a missing
one. Multi-row mutations run in a single transaction; progress is
broadcast only after it commits.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oneclicktag.errors import (
    BatchAlreadyFinishedError,
    BatchNotFoundError,
    ValidationFailedError,
)
from oneclicktag.events.broadcaster import ProgressBroadcaster, broadcast_batch_progress
from oneclicktag.events.types import BatchEventType
from oneclicktag.storage.database import get_session
from oneclicktag.storage.models import (
    ACTIVE_JOB_STATUSES,
    IN_FLIGHT_TRACKING_STATUSES,
    TERMINAL_BATCH_STATUSES,
    BatchStatus,
    JobStatus,
    Tracking,
    TrackingBatch,
    TrackingQueueJob,
    TrackingStatus,
)

logger = logging.getLogger("oneclicktag.batches")

CANCELLED_MESSAGE = "Cancelled by user"
UNKNOWN_TRACKING_NAME = "Unknown"


@dataclass
class TrackingItem:
    """One tracking to create and queue as part of a batch."""

    name: str
    recommendation_id: str | None = None
    priority: int = 0


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def batch_dict(batch: TrackingBatch) -> dict[str, Any]:
    return {
        "id": batch.id,
        "tenant_id": batch.tenant_id,
        "customer_id": batch.customer_id,
        "user_id": batch.user_id,
        "status": batch.status,
        "total_jobs": batch.total_jobs,
        "completed": batch.completed,
        "failed": batch.failed,
        "pause_reason": batch.pause_reason,
        "resume_after": _iso(batch.resume_after),
        "paused_at": _iso(batch.paused_at),
        "created_at": _iso(batch.created_at),
    }


def job_dict(job: TrackingQueueJob, tracking_name: str) -> dict[str, Any]:
    return {
        "id": job.id,
        "batch_id": job.batch_id,
        "tracking_id": job.tracking_id,
        "tracking_name": tracking_name,
        "recommendation_id": job.recommendation_id,
        "status": job.status,
        "step": job.step,
        "attempts": job.attempts,
        "last_error": job.last_error,
        "next_retry_at": _iso(job.next_retry_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "created_at": _iso(job.created_at),
    }


async def count_jobs(session: AsyncSession, batch_id: str, status: JobStatus) -> int:
    """Count a batch's jobs in *status* from the job table."""
    result = await session.execute(
        select(func.count())
        .select_from(TrackingQueueJob)
        .where(TrackingQueueJob.batch_id == batch_id, TrackingQueueJob.status == status)
    )
    return int(result.scalar_one())


class BatchService:
    """Create, read and cancel tracking batches for a tenant."""

    def __init__(self, broadcaster: ProgressBroadcaster | None = None) -> None:
        self._broadcaster = broadcaster

    async def create_batch(
        self,
        tenant_id: str,
        items: Sequence[TrackingItem],
        *,
        user_id: str = "",
        customer_id: str = "",
    ) -> dict[str, Any]:
        """Create a batch with one PENDING tracking and one QUEUED job per item."""
        if not items:
            raise ValidationFailedError("At least one tracking is required")

        batch_id = str(uuid.uuid4())
        tracking_ids = [str(uuid.uuid4()) for _ in items]

        async with get_session() as session:
            async with session.begin():
                session.add(
                    TrackingBatch(
                        id=batch_id,
                        tenant_id=tenant_id,
                        customer_id=customer_id,
                        user_id=user_id,
                        status=BatchStatus.PROCESSING,
                        total_jobs=len(items),
                        completed=0,
                        failed=0,
                    )
                )
                for tracking_id, item in zip(tracking_ids, items, strict=True):
                    session.add(
                        Tracking(
                            id=tracking_id,
                            tenant_id=tenant_id,
                            customer_id=customer_id,
                            name=item.name,
                            status=TrackingStatus.PENDING,
                        )
                    )
                    session.add(
                        TrackingQueueJob(
                            id=str(uuid.uuid4()),
                            batch_id=batch_id,
                            tracking_id=tracking_id,
                            recommendation_id=item.recommendation_id,
                            status=JobStatus.QUEUED,
                            priority=item.priority,
                        )
                    )

        logger.info("Created batch %s for tenant %s with %d jobs", batch_id, tenant_id, len(items))
        return {"batch_id": batch_id, "queued": len(items), "tracking_ids": tracking_ids}

    async def list_batches(self, tenant_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """List the tenant's batches, newest first."""
        async with get_session() as session:
            result = await session.execute(
                select(TrackingBatch)
                .where(TrackingBatch.tenant_id == tenant_id)
                .order_by(TrackingBatch.created_at.desc())
                .limit(limit)
            )
            return [batch_dict(b) for b in result.scalars().all()]

    async def get_batch_detail(self, batch_id: str, tenant_id: str | None) -> dict[str, Any]:
        """Return the batch with its jobs, oldest job first.

        *tenant_id* of ``None`` reads across tenants (admin routes only).
        """
        async with get_session() as session:
            stmt = select(TrackingBatch).where(TrackingBatch.id == batch_id)
            if tenant_id is not None:
                stmt = stmt.where(TrackingBatch.tenant_id == tenant_id)
            batch = (await session.execute(stmt)).scalar_one_or_none()
            if batch is None:
                raise BatchNotFoundError(batch_id)

            jobs_result = await session.execute(
                select(TrackingQueueJob)
                .where(TrackingQueueJob.batch_id == batch_id)
                .order_by(TrackingQueueJob.created_at.asc(), TrackingQueueJob.id.asc())
            )
            jobs = jobs_result.scalars().all()

            # Dangling tracking references fall back to a placeholder name
            names: dict[str, str] = {}
            tracking_ids = {job.tracking_id for job in jobs}
            if tracking_ids:
                rows = await session.execute(
                    select(Tracking.id, Tracking.name).where(Tracking.id.in_(tracking_ids))
                )
                names = {row.id: row.name for row in rows}

        detail = batch_dict(batch)
        detail["jobs"] = [
            job_dict(job, names.get(job.tracking_id, UNKNOWN_TRACKING_NAME)) for job in jobs
        ]
        return detail

    async def cancel_batch(self, batch_id: str, tenant_id: str) -> dict[str, Any]:
        """Force every unfinished job in the batch to FAILED and close the batch.

        Raises ``BatchNotFoundError`` for absent or foreign batches and
        ``BatchAlreadyFinishedError`` for COMPLETED or CANCELLED ones; in
        both cases nothing is written.
        """
        now = datetime.now(UTC)

        async with get_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(TrackingBatch)
                    .where(TrackingBatch.id == batch_id, TrackingBatch.tenant_id == tenant_id)
                    .with_for_update()
                )
                batch = result.scalar_one_or_none()
                if batch is None:
                    raise BatchNotFoundError(batch_id)
                if batch.status in TERMINAL_BATCH_STATUSES:
                    raise BatchAlreadyFinishedError(batch_id, batch.status)

                # Close the batch before touching its jobs. Only one of two
                # racing cancels can match the non-terminal filter.
                closed = await session.execute(
                    update(TrackingBatch)
                    .where(
                        TrackingBatch.id == batch_id,
                        TrackingBatch.tenant_id == tenant_id,
                        TrackingBatch.status.not_in(TERMINAL_BATCH_STATUSES),
                    )
                    .values(
                        status=BatchStatus.CANCELLED,
                        paused_at=None,
                        resume_after=None,
                        pause_reason=None,
                    )
                )
                if closed.rowcount == 0:
                    current = await session.scalar(
                        select(TrackingBatch.status).where(TrackingBatch.id == batch_id)
                    )
                    raise BatchAlreadyFinishedError(batch_id, current or BatchStatus.CANCELLED)

                active_rows = (
                    await session.execute(
                        select(TrackingQueueJob.id, TrackingQueueJob.tracking_id)
                        .where(
                            TrackingQueueJob.batch_id == batch_id,
                            TrackingQueueJob.status.in_(ACTIVE_JOB_STATUSES),
                        )
                        .with_for_update()
                    )
                ).all()

                cancelled = 0
                if active_rows:
                    job_ids = [row.id for row in active_rows]
                    tracking_ids = [row.tracking_id for row in active_rows]

                    # The status filter is restated so a job a worker finished
                    # after the select above is left alone.
                    job_update = await session.execute(
                        update(TrackingQueueJob)
                        .where(
                            TrackingQueueJob.id.in_(job_ids),
                            TrackingQueueJob.status.in_(ACTIVE_JOB_STATUSES),
                        )
                        .values(
                            status=JobStatus.FAILED,
                            step=None,
                            last_error=CANCELLED_MESSAGE,
                            completed_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    cancelled = job_update.rowcount

                    await session.execute(
                        update(Tracking)
                        .where(
                            Tracking.id.in_(tracking_ids),
                            Tracking.tenant_id == tenant_id,
                            Tracking.status.in_(IN_FLIGHT_TRACKING_STATUSES),
                        )
                        .values(status=TrackingStatus.FAILED, last_error=CANCELLED_MESSAGE)
                        .execution_options(synchronize_session=False)
                    )

                completed = await count_jobs(session, batch_id, JobStatus.COMPLETED)

                batch.completed = completed
                batch.failed = cancelled
                total = batch.total_jobs

        logger.info(
            "Cancelled batch %s for tenant %s: %d jobs cancelled, %d already completed",
            batch_id, tenant_id, cancelled, completed,
        )

        summary = {"completed": completed, "failed": cancelled, "total": total}
        await broadcast_batch_progress(
            self._broadcaster, batch_id, BatchEventType.BATCH_COMPLETED, summary
        )
        return {"success": True, **summary}
