"""Periodic queue upkeep: stuck-job recovery, auto-resume, finalization."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from oneclicktag.batches.lifecycle import (
    finalize_batches,
    recover_stuck_jobs,
    resume_paused_batches,
)
from oneclicktag.events.broadcaster import ProgressBroadcaster

logger = logging.getLogger("oneclicktag.batches.maintenance")


class QueueMaintenance:
    """Runs queue maintenance as an asyncio background task.

    Each pass resets jobs left PROCESSING by a dead worker, resumes batches
    whose quota cooldown has expired and completes batches with no
    unfinished jobs.
    """

    def __init__(
        self,
        interval_seconds: float = 60,
        stuck_job_seconds: int = 60,
        broadcaster: ProgressBroadcaster | None = None,
    ) -> None:
        self._interval = interval_seconds
        self._stuck_job_seconds = stuck_job_seconds
        self._broadcaster = broadcaster
        self._running = False
        self._handle: asyncio.Task[None] | None = None
        self.last_run: datetime | None = None
        self.run_count = 0
        self.error_count = 0

    async def run_maintenance(self) -> dict[str, int]:
        """Run one maintenance pass and return what it changed."""
        recovered = await recover_stuck_jobs(self._stuck_job_seconds)
        resumed = await resume_paused_batches(self._broadcaster)
        finalized = await finalize_batches(self._broadcaster)

        self.last_run = datetime.now(UTC)
        self.run_count += 1
        if recovered or resumed or finalized:
            logger.info(
                "Queue maintenance: %d recovered, %d resumed, %d finalized",
                recovered, resumed, finalized,
            )
        return {"recovered": recovered, "resumed": resumed, "finalized": finalized}

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._handle = asyncio.create_task(self._run())
        logger.info("Queue maintenance started (every %ss)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._handle:
            self._handle.cancel()
            try:
                await self._handle
            except asyncio.CancelledError:
                pass
            self._handle = None
        logger.info("Queue maintenance stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self._interval,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
        }

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_maintenance()
            except Exception:
                self.error_count += 1
                logger.exception("Queue maintenance pass failed")

            await asyncio.sleep(self._interval)
