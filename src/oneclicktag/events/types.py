"""Batch progress event definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class BatchEventType(StrEnum):
    """Lifecycle tags carried by progress events."""

    JOB_PROCESSING = "job_processing"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_RETRYING = "job_retrying"
    BATCH_PAUSED = "batch_paused"
    BATCH_RESUMED = "batch_resumed"
    BATCH_COMPLETED = "batch_completed"


@dataclass
class BatchProgressEvent:
    """A progress update for one batch.

    ``data`` always carries ``completed``, ``failed`` and ``total``; job
    events add ``jobId``, ``trackingId`` and ``trackingName``.
    """

    batch_id: str
    type: BatchEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, batch_id: str, payload: dict[str, Any]) -> BatchProgressEvent:
        return cls(
            batch_id=batch_id,
            type=BatchEventType(payload["type"]),
            data=payload.get("data", {}),
            timestamp=datetime.fromisoformat(payload["timestamp"]),
        )
