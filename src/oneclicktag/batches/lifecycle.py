"""Job state transitions driven by the tracking queue worker.

The worker that talks to Google Ads and Tag Manager lives outside this
package; it calls these helpers as a job moves through
QUEUED -> PROCESSING -> COMPLETED | FAILED | RETRYING, and the maintenance
loop calls the batch-level helpers (recover, resume, finalize). Batch
counters are always recomputed from the job table, never incremented.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oneclicktag.batches.service import UNKNOWN_TRACKING_NAME, count_jobs
from oneclicktag.errors import NotFoundError, PreconditionFailedError
from oneclicktag.events.broadcaster import ProgressBroadcaster, broadcast_batch_progress
from oneclicktag.events.types import BatchEventType
from oneclicktag.storage.database import get_session
from oneclicktag.storage.models import (
    TERMINAL_JOB_STATUSES,
    BatchStatus,
    JobErrorCode,
    JobStatus,
    Tracking,
    TrackingBatch,
    TrackingQueueJob,
    TrackingStatus,
)

logger = logging.getLogger("oneclicktag.batches.lifecycle")

QUOTA_PATTERNS = (
    "429",
    "RESOURCE_EXHAUSTED",
    "rateLimitExceeded",
    "dailyLimitExceeded",
    "quotaExceeded",
    "Quota exceeded",
    "Rate limit",
    "Queries per minute",
    "too many requests",
)

RETRYABLE_PATTERNS = (
    "500",
    "502",
    "503",
    "504",
    "UNAVAILABLE",
    "DEADLINE_EXCEEDED",
    "CONCURRENT_MODIFICATION",
    "Unique constraint failed",
    "socket hang up",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "label could not be retrieved",
    "Retry should resolve this",
    "Sync incomplete",
    "Multiple requests were attempting",
)

RETRY_DELAYS_SECONDS = (15, 30, 60, 120)

# Jobs still waiting on the worker; PAUSED jobs do not hold a batch open
UNFINISHED_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.RETRYING)


class JobOutcome(StrEnum):
    PAUSED = "paused"
    RETRYING = "retrying"
    FAILED = "failed"


def is_quota_error(message: str) -> bool:
    lower = message.lower()
    return any(p.lower() in lower for p in QUOTA_PATTERNS)


def is_retryable_error(message: str) -> bool:
    return any(p in message for p in RETRYABLE_PATTERNS)


def quota_cooldown_seconds(message: str, consecutive_pauses: int = 0) -> int:
    """Cooldown before a quota-paused batch resumes.

    Escalates with consecutive pauses (x2, x3, ... up to x5) and is capped
    at five minutes unless the quota is a daily one.
    """
    if "per day" in message or "daily" in message or "dailyLimit" in message:
        base = 3600
    elif "per 100 seconds" in message or "per100s" in message:
        base = 105
    else:
        base = 65

    cooldown = base * min(1 + consecutive_pauses, 5)
    return cooldown if base >= 3600 else min(cooldown, 300)


def retry_delay_seconds(attempt: int) -> int:
    index = min(max(attempt, 1) - 1, len(RETRY_DELAYS_SECONDS) - 1)
    return RETRY_DELAYS_SECONDS[index]


def _progress(batch: TrackingBatch) -> dict[str, Any]:
    return {"completed": batch.completed, "failed": batch.failed, "total": batch.total_jobs}


async def _load_job(session: AsyncSession, job_id: str) -> tuple[TrackingQueueJob, TrackingBatch]:
    job = await session.get(TrackingQueueJob, job_id, with_for_update=True)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    batch = await session.get(TrackingBatch, job.batch_id, with_for_update=True)
    if batch is None:
        raise NotFoundError(f"Batch {job.batch_id} not found")
    return job, batch


async def _tracking_name(session: AsyncSession, tracking_id: str) -> str:
    tracking = await session.get(Tracking, tracking_id)
    return tracking.name if tracking else UNKNOWN_TRACKING_NAME


async def next_runnable_job() -> dict[str, Any] | None:
    """Pick the next due QUEUED/RETRYING job from an active batch."""
    now = datetime.now(UTC)
    async with get_session() as session:
        result = await session.execute(
            select(TrackingQueueJob, TrackingBatch)
            .join(TrackingBatch, TrackingBatch.id == TrackingQueueJob.batch_id)
            .where(
                TrackingQueueJob.status.in_((JobStatus.QUEUED, JobStatus.RETRYING)),
                or_(
                    TrackingQueueJob.next_retry_at.is_(None),
                    TrackingQueueJob.next_retry_at <= now,
                ),
                TrackingBatch.status == BatchStatus.PROCESSING,
            )
            .order_by(TrackingQueueJob.priority.asc(), TrackingQueueJob.created_at.asc())
            .limit(1)
        )
        row = result.first()
    if row is None:
        return None
    job, batch = row
    return {
        "id": job.id,
        "batch_id": job.batch_id,
        "tracking_id": job.tracking_id,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "tenant_id": batch.tenant_id,
        "customer_id": batch.customer_id,
        "user_id": batch.user_id,
    }


async def mark_job_processing(
    job_id: str, broadcaster: ProgressBroadcaster | None = None
) -> None:
    """Claim a job for the worker and count the attempt."""
    async with get_session() as session:
        async with session.begin():
            job, batch = await _load_job(session, job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                raise PreconditionFailedError(f"Job {job_id} is already finished")
            job.status = JobStatus.PROCESSING
            job.step = "syncing"
            job.started_at = datetime.now(UTC)
            job.attempts += 1
            name = await _tracking_name(session, job.tracking_id)
            data = {
                "jobId": job.id,
                "trackingId": job.tracking_id,
                "trackingName": name,
                "step": "syncing",
                **_progress(batch),
            }

    await broadcast_batch_progress(broadcaster, batch.id, BatchEventType.JOB_PROCESSING, data)


async def record_job_success(
    job_id: str, broadcaster: ProgressBroadcaster | None = None
) -> None:
    """Mark a job COMPLETED and its tracking ACTIVE."""
    async with get_session() as session:
        async with session.begin():
            job, batch = await _load_job(session, job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                raise PreconditionFailedError(f"Job {job_id} is already finished")
            job.status = JobStatus.COMPLETED
            job.step = None
            job.completed_at = datetime.now(UTC)
            job.last_error = None
            job.error_code = None

            tracking = await session.get(Tracking, job.tracking_id)
            if tracking is not None:
                tracking.status = TrackingStatus.ACTIVE
                tracking.last_error = None

            batch.completed = await count_jobs(session, batch.id, JobStatus.COMPLETED)
            data = {
                "jobId": job.id,
                "trackingId": job.tracking_id,
                "trackingName": tracking.name if tracking else UNKNOWN_TRACKING_NAME,
                **_progress(batch),
            }

    await broadcast_batch_progress(broadcaster, batch.id, BatchEventType.JOB_COMPLETED, data)


async def record_job_failure(
    job_id: str,
    message: str,
    broadcaster: ProgressBroadcaster | None = None,
) -> JobOutcome:
    """Classify a worker error and move the job (and maybe batch) on.

    Quota errors pause the whole batch and requeue the job without counting
    the attempt. Transient errors schedule a retry while attempts remain.
    Anything else fails the job and its tracking permanently.
    """
    now = datetime.now(UTC)
    async with get_session() as session:
        async with session.begin():
            job, batch = await _load_job(session, job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                raise PreconditionFailedError(f"Job {job_id} is already finished")
            name = await _tracking_name(session, job.tracking_id)
            job.last_error = message
            job.step = None

            if is_quota_error(message):
                quota_hits = (
                    await session.execute(
                        select(TrackingQueueJob.id).where(
                            TrackingQueueJob.batch_id == batch.id,
                            TrackingQueueJob.error_code == JobErrorCode.QUOTA,
                        )
                    )
                ).all()
                cooldown = quota_cooldown_seconds(message, len(quota_hits) // 2)
                resume_after = now + timedelta(seconds=cooldown)

                job.status = JobStatus.QUEUED
                job.error_code = JobErrorCode.QUOTA
                job.started_at = None
                job.attempts = max(job.attempts - 1, 0)

                batch.status = BatchStatus.PAUSED
                batch.paused_at = now
                batch.resume_after = resume_after
                batch.pause_reason = (
                    f"API quota limit, auto-resumes at {resume_after.isoformat()}"
                )
                outcome = JobOutcome.PAUSED
                event_type = BatchEventType.BATCH_PAUSED
                data = {
                    "pauseReason": (
                        f"API quota limit reached. Auto-resuming in {cooldown}s..."
                    ),
                    "resumeAfter": resume_after.isoformat(),
                    **_progress(batch),
                }

            elif is_retryable_error(message) and job.attempts < job.max_attempts:
                next_retry_at = now + timedelta(seconds=retry_delay_seconds(job.attempts))
                job.status = JobStatus.RETRYING
                job.error_code = JobErrorCode.RETRYABLE
                job.next_retry_at = next_retry_at
                job.started_at = None
                outcome = JobOutcome.RETRYING
                event_type = BatchEventType.JOB_RETRYING
                data = {
                    "jobId": job.id,
                    "trackingId": job.tracking_id,
                    "trackingName": name,
                    "error": message,
                    "nextRetryAt": next_retry_at.isoformat(),
                    **_progress(batch),
                }

            else:
                job.status = JobStatus.FAILED
                job.error_code = JobErrorCode.PERMANENT
                job.completed_at = now
                await session.execute(
                    update(Tracking)
                    .where(Tracking.id == job.tracking_id)
                    .values(status=TrackingStatus.FAILED, last_error=message)
                    .execution_options(synchronize_session=False)
                )
                batch.failed = await count_jobs(session, batch.id, JobStatus.FAILED)
                outcome = JobOutcome.FAILED
                event_type = BatchEventType.JOB_FAILED
                data = {
                    "jobId": job.id,
                    "trackingId": job.tracking_id,
                    "trackingName": name,
                    "error": message,
                    **_progress(batch),
                }

    if outcome is JobOutcome.PAUSED:
        logger.info("Batch %s paused for quota: %s", batch.id, batch.pause_reason)
    else:
        logger.info("Job %s %s: %s", job_id, outcome, message[:100])

    await broadcast_batch_progress(broadcaster, batch.id, event_type, data)
    return outcome


async def recover_stuck_jobs(threshold_seconds: int = 60) -> int:
    """Requeue PROCESSING jobs whose worker went away mid-run."""
    cutoff = datetime.now(UTC) - timedelta(seconds=threshold_seconds)
    async with get_session() as session:
        async with session.begin():
            result = await session.execute(
                update(TrackingQueueJob)
                .where(
                    TrackingQueueJob.status == JobStatus.PROCESSING,
                    TrackingQueueJob.started_at <= cutoff,
                )
                .values(status=JobStatus.QUEUED, step=None, started_at=None)
                .execution_options(synchronize_session=False)
            )
            recovered = result.rowcount or 0

    if recovered:
        logger.info("Reset %d stuck PROCESSING jobs back to QUEUED", recovered)
    return recovered


async def resume_paused_batches(broadcaster: ProgressBroadcaster | None = None) -> int:
    """Resume PAUSED batches whose cooldown has expired."""
    now = datetime.now(UTC)
    resumed: list[tuple[str, dict[str, Any]]] = []

    async with get_session() as session:
        async with session.begin():
            result = await session.execute(
                select(TrackingBatch)
                .where(
                    TrackingBatch.status == BatchStatus.PAUSED,
                    TrackingBatch.resume_after <= now,
                )
                .with_for_update()
            )
            for batch in result.scalars().all():
                batch.status = BatchStatus.PROCESSING
                batch.paused_at = None
                batch.resume_after = None
                batch.pause_reason = None
                resumed.append((batch.id, _progress(batch)))

    for batch_id, data in resumed:
        logger.info("Resumed paused batch %s", batch_id)
        await broadcast_batch_progress(broadcaster, batch_id, BatchEventType.BATCH_RESUMED, data)
    return len(resumed)


async def finalize_batches(broadcaster: ProgressBroadcaster | None = None) -> int:
    """Complete PROCESSING batches that have no unfinished jobs left."""
    finalized: list[tuple[str, dict[str, Any]]] = []

    async with get_session() as session:
        async with session.begin():
            result = await session.execute(
                select(TrackingBatch)
                .where(TrackingBatch.status == BatchStatus.PROCESSING)
                .with_for_update()
            )
            for batch in result.scalars().all():
                unfinished = (
                    await session.execute(
                        select(TrackingQueueJob.id)
                        .where(
                            TrackingQueueJob.batch_id == batch.id,
                            TrackingQueueJob.status.in_(UNFINISHED_JOB_STATUSES),
                        )
                        .limit(1)
                    )
                ).first()
                if unfinished is not None:
                    continue

                batch.completed = await count_jobs(session, batch.id, JobStatus.COMPLETED)
                batch.failed = await count_jobs(session, batch.id, JobStatus.FAILED)
                batch.status = BatchStatus.COMPLETED
                batch.paused_at = None
                batch.resume_after = None
                batch.pause_reason = None
                finalized.append((batch.id, _progress(batch)))

    for batch_id, data in finalized:
        logger.info(
            "Finalized batch %s: %d completed, %d failed",
            batch_id, data["completed"], data["failed"],
        )
        await broadcast_batch_progress(broadcaster, batch_id, BatchEventType.BATCH_COMPLETED, data)
    return len(finalized)
