"""Tests for tenant-scoped batch reads, creation and cancellation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from oneclicktag.batches.service import BatchService, TrackingItem
from oneclicktag.errors import (
    BatchAlreadyFinishedError,
    BatchNotFoundError,
    ValidationFailedError,
)
from oneclicktag.events.broadcaster import ProgressBroadcaster
from oneclicktag.events.types import BatchEventType, BatchProgressEvent
from oneclicktag.storage.database import get_session
from oneclicktag.storage.models import (
    BatchStatus,
    JobStatus,
    Tracking,
    TrackingBatch,
    TrackingQueueJob,
    TrackingStatus,
)


class _Recorder:
    def __init__(self) -> None:
        self.events: list[BatchProgressEvent] = []

    async def __call__(self, event: BatchProgressEvent) -> None:
        self.events.append(event)


class _BrokenBroadcaster(ProgressBroadcaster):
    async def publish(self, event: BatchProgressEvent) -> None:
        raise RuntimeError("transport down")


async def _load(batch_id: str) -> tuple[TrackingBatch, list[TrackingQueueJob], dict[str, Tracking]]:
    async with get_session() as session:
        batch = await session.get(TrackingBatch, batch_id)
        jobs = (
            await session.execute(
                select(TrackingQueueJob)
                .where(TrackingQueueJob.batch_id == batch_id)
                .order_by(TrackingQueueJob.created_at)
            )
        ).scalars().all()
        trackings = (
            await session.execute(
                select(Tracking).where(Tracking.id.in_([j.tracking_id for j in jobs]))
            )
        ).scalars().all()
    return batch, list(jobs), {t.id: t for t in trackings}


# ---------------------------------------------------------------------------
# Create / list
# ---------------------------------------------------------------------------


class TestCreateAndList:
    @pytest.mark.asyncio
    async def test_create_batch_queues_one_job_per_tracking(self, add_tenant):
        await add_tenant("tenant-a")
        service = BatchService()
        result = await service.create_batch(
            "tenant-a",
            [TrackingItem(name="Checkout"), TrackingItem(name="Signup", recommendation_id="rec-1")],
            user_id="user-1",
            customer_id="cust-1",
        )
        assert result["queued"] == 2
        assert len(result["tracking_ids"]) == 2

        batch, jobs, trackings = await _load(result["batch_id"])
        assert batch.status == BatchStatus.PROCESSING
        assert batch.total_jobs == 2
        assert batch.completed == 0 and batch.failed == 0
        assert batch.user_id == "user-1"
        assert {j.status for j in jobs} == {JobStatus.QUEUED}
        assert {t.status for t in trackings.values()} == {TrackingStatus.PENDING}
        assert {t.tenant_id for t in trackings.values()} == {"tenant-a"}

    @pytest.mark.asyncio
    async def test_create_batch_requires_items(self, db):
        with pytest.raises(ValidationFailedError):
            await BatchService().create_batch("tenant-a", [])

    @pytest.mark.asyncio
    async def test_list_is_tenant_scoped_and_newest_first(self, add_batch):
        now = datetime.now(UTC)
        older, _ = await add_batch("tenant-a", [JobStatus.QUEUED], created_at=now - timedelta(hours=1))
        newer, _ = await add_batch("tenant-a", [JobStatus.QUEUED], created_at=now)
        await add_batch("tenant-b", [JobStatus.QUEUED])

        batches = await BatchService().list_batches("tenant-a")
        assert [b["id"] for b in batches] == [newer, older]


# ---------------------------------------------------------------------------
# Detail
# ---------------------------------------------------------------------------


class TestBatchDetail:
    @pytest.mark.asyncio
    async def test_jobs_ordered_by_creation_with_names(self, add_batch):
        batch_id, job_ids = await add_batch(
            "tenant-a",
            [JobStatus.COMPLETED, JobStatus.QUEUED, JobStatus.QUEUED],
            names=["First", None, "Third"],
        )
        detail = await BatchService().get_batch_detail(batch_id, "tenant-a")

        assert [j["id"] for j in detail["jobs"]] == job_ids
        assert [j["tracking_name"] for j in detail["jobs"]] == ["First", "Unknown", "Third"]
        assert detail["total_jobs"] == 3
        assert detail["completed"] == 1

    @pytest.mark.asyncio
    async def test_foreign_batch_is_not_found(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.QUEUED])
        with pytest.raises(BatchNotFoundError):
            await BatchService().get_batch_detail(batch_id, "tenant-b")

    @pytest.mark.asyncio
    async def test_missing_batch_is_not_found(self, db):
        with pytest.raises(BatchNotFoundError):
            await BatchService().get_batch_detail("nope", "tenant-a")

    @pytest.mark.asyncio
    async def test_unscoped_read_sees_any_tenant(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.QUEUED])
        detail = await BatchService().get_batch_detail(batch_id, None)
        assert detail["tenant_id"] == "tenant-a"


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancelBatch:
    @pytest.mark.asyncio
    async def test_cancel_fails_unfinished_jobs(self, add_batch):
        broadcaster = ProgressBroadcaster()
        recorder = _Recorder()
        batch_id, job_ids = await add_batch(
            "tenant-a",
            [
                JobStatus.COMPLETED,
                JobStatus.COMPLETED,
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
                JobStatus.RETRYING,
            ],
        )
        broadcaster.subscribe(batch_id, recorder)

        result = await BatchService(broadcaster).cancel_batch(batch_id, "tenant-a")
        assert result == {"success": True, "completed": 2, "failed": 3, "total": 5}

        batch, jobs, trackings = await _load(batch_id)
        assert batch.status == BatchStatus.CANCELLED
        assert batch.completed == 2
        assert batch.failed == 3
        assert [j.status for j in jobs] == [JobStatus.COMPLETED] * 2 + [JobStatus.FAILED] * 3
        for job in jobs[2:]:
            assert job.last_error == "Cancelled by user"
            assert job.completed_at is not None
            assert trackings[job.tracking_id].status == TrackingStatus.FAILED
            assert trackings[job.tracking_id].last_error == "Cancelled by user"
        for job in jobs[:2]:
            assert job.last_error is None
            assert trackings[job.tracking_id].status == TrackingStatus.ACTIVE

        assert len(recorder.events) == 1
        event = recorder.events[0]
        assert event.type == BatchEventType.BATCH_COMPLETED
        assert event.data == {"completed": 2, "failed": 3, "total": 5}

    @pytest.mark.asyncio
    async def test_cancel_clears_pause_state(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.QUEUED], status=BatchStatus.PAUSED)
        async with get_session() as session:
            batch = await session.get(TrackingBatch, batch_id)
            batch.pause_reason = "API quota limit"
            batch.paused_at = datetime.now(UTC)
            batch.resume_after = datetime.now(UTC) + timedelta(minutes=1)
            await session.commit()

        await BatchService().cancel_batch(batch_id, "tenant-a")

        batch, _, _ = await _load(batch_id)
        assert batch.status == BatchStatus.CANCELLED
        assert batch.pause_reason is None
        assert batch.paused_at is None
        assert batch.resume_after is None

    @pytest.mark.asyncio
    async def test_second_cancel_is_rejected_without_changes(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.COMPLETED, JobStatus.QUEUED])
        service = BatchService()
        await service.cancel_batch(batch_id, "tenant-a")

        with pytest.raises(BatchAlreadyFinishedError) as exc_info:
            await service.cancel_batch(batch_id, "tenant-a")
        assert exc_info.value.status_code == 400

        batch, _, _ = await _load(batch_id)
        assert batch.completed == 1
        assert batch.failed == 1

    @pytest.mark.asyncio
    async def test_concurrent_cancels_only_one_wins(self, add_batch):
        broadcaster = ProgressBroadcaster()
        recorder = _Recorder()
        batch_id, _ = await add_batch(
            "tenant-a",
            [
                JobStatus.COMPLETED,
                JobStatus.COMPLETED,
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
                JobStatus.RETRYING,
            ],
        )
        broadcaster.subscribe(batch_id, recorder)
        service = BatchService(broadcaster)

        results = await asyncio.gather(
            service.cancel_batch(batch_id, "tenant-a"),
            service.cancel_batch(batch_id, "tenant-a"),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, dict)]
        rejections = [r for r in results if isinstance(r, BatchAlreadyFinishedError)]
        assert successes == [{"success": True, "completed": 2, "failed": 3, "total": 5}]
        assert len(rejections) == 1

        batch, _, _ = await _load(batch_id)
        assert batch.status == BatchStatus.CANCELLED
        assert batch.failed == 3
        assert [e.data["failed"] for e in recorder.events] == [3]

    @pytest.mark.asyncio
    async def test_completed_batch_cannot_be_cancelled(self, add_batch):
        batch_id, _ = await add_batch(
            "tenant-a", [JobStatus.COMPLETED], status=BatchStatus.COMPLETED
        )
        with pytest.raises(BatchAlreadyFinishedError):
            await BatchService().cancel_batch(batch_id, "tenant-a")

    @pytest.mark.asyncio
    async def test_foreign_tenant_cannot_cancel(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.QUEUED, JobStatus.PROCESSING])

        with pytest.raises(BatchNotFoundError):
            await BatchService().cancel_batch(batch_id, "tenant-b")

        batch, jobs, trackings = await _load(batch_id)
        assert batch.status == BatchStatus.PROCESSING
        assert [j.status for j in jobs] == [JobStatus.QUEUED, JobStatus.PROCESSING]
        assert all(t.status != TrackingStatus.FAILED for t in trackings.values())

    @pytest.mark.asyncio
    async def test_cancel_with_nothing_outstanding(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.COMPLETED, JobStatus.FAILED])
        result = await BatchService().cancel_batch(batch_id, "tenant-a")
        assert result == {"success": True, "completed": 1, "failed": 0, "total": 2}

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_cancel(self, add_batch):
        batch_id, _ = await add_batch("tenant-a", [JobStatus.QUEUED])
        result = await BatchService(_BrokenBroadcaster()).cancel_batch(batch_id, "tenant-a")
        assert result["success"] is True

        batch, _, _ = await _load(batch_id)
        assert batch.status == BatchStatus.CANCELLED
