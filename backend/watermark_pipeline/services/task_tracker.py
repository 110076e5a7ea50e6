"""
Watermark Pipeline Backend — Task Lifecycle Tracker
=====================================================

What:  Owns the state machine of a TaskRecord.
How:   Thin layer over TaskStore; every transition out of 'processing' is a
       compare-and-set, so a record reaches a terminal state exactly once.

State Machine:
    pending ─▶ processing ─┬─▶ completed   (progress = 100, result set)
                           └─▶ failed      (error_message + failure_reason,
                                            progress left where it was)

    Records are created directly in 'processing' because they only exist
    once the remote service has accepted the task.
"""

import logging
from typing import Any, Optional

from watermark_pipeline.services.records import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    TaskRecord,
)
from watermark_pipeline.services.remote_base import (
    REMOTE_FINISHED,
    REMOTE_PENDING,
    REMOTE_PROCESSING,
)
from watermark_pipeline.services.repositories import TaskStore

logger = logging.getLogger(__name__)

# Advisory progress per remote status; anything else leaves progress alone.
_REMOTE_PROGRESS = {
    REMOTE_PENDING: 5,
    REMOTE_PROCESSING: 50,
    REMOTE_FINISHED: 100,
}


def progress_for(remote_status: str) -> Optional[int]:
    return _REMOTE_PROGRESS.get(remote_status)


class TaskLifecycleTracker:
    """State transitions for task records. Safe to share across jobs."""

    def __init__(self, store: TaskStore):
        self.store = store

    async def start(self, record: TaskRecord) -> TaskRecord:
        """Persist a freshly accepted task in 'processing' with progress 0."""
        record.status = STATUS_PROCESSING
        record.progress = 0
        created = await self.store.create(record)
        logger.info(
            "Task %s (%s) recorded as processing", created.task_id, created.operation
        )
        return created

    async def report_progress(self, task_id: str, remote_status: str) -> None:
        progress = progress_for(remote_status)
        if progress is None:
            return
        await self.store.update_progress(task_id, progress)

    async def complete(self, task_id: str, result: Optional[str], **fields: Any) -> bool:
        """Terminal success. Returns False (and logs) if the record is already terminal."""
        applied = await self.store.finalize(
            task_id, STATUS_COMPLETED, progress=100, result=result, **fields
        )
        if applied:
            logger.info("Task %s completed", task_id)
        else:
            logger.warning("Ignored completion of task %s: record is no longer processing", task_id)
        return applied

    async def fail(self, task_id: str, error_message: str, reason: str) -> bool:
        """Terminal failure. Progress keeps its last reported value."""
        applied = await self.store.finalize(
            task_id,
            STATUS_FAILED,
            error_message=error_message,
            failure_reason=reason,
        )
        if applied:
            logger.warning("Task %s failed (%s): %s", task_id, reason, error_message)
        else:
            logger.warning(
                "Ignored failure of task %s (%s): record is no longer processing", task_id, reason
            )
        return applied
