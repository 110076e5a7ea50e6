"""
Watermark Pipeline Backend — Task Lifecycle Tracker Unit Tests
================================================================

What:  State transitions of task records over the in-memory TaskStore.
       A record is finalized exactly once; later writes are refused.
"""

import pytest

from watermark_pipeline.exceptions import WatermarkPipelineError
from watermark_pipeline.services.records import TaskRecord
from watermark_pipeline.services.task_tracker import TaskLifecycleTracker, progress_for


def make_record(task_id="task-1", **overrides):
    fields = dict(
        task_id=task_id,
        operation="embed",
        file_name="report.pdf",
        file_url="http://testserver/api/files/report.pdf",
        original_file_hash="a" * 64,
    )
    fields.update(overrides)
    return TaskRecord(**fields)


@pytest.mark.parametrize(
    "remote_status, expected",
    [("pending", 5), ("processing", 50), ("finished", 100), ("unknown", None), ("failed", None)],
)
def test_progress_for(remote_status, expected):
    assert progress_for(remote_status) == expected


class TestTaskLifecycleTracker:
    @pytest.mark.asyncio
    async def test_start_records_processing_at_zero(self, tracker, task_store):
        record = await tracker.start(make_record(status="pending", progress=40))

        assert record.status == "processing"
        assert record.progress == 0
        assert (await task_store.get("task-1")).status == "processing"

    @pytest.mark.asyncio
    async def test_report_progress_maps_remote_status(self, tracker, task_store):
        await tracker.start(make_record())

        await tracker.report_progress("task-1", "processing")
        assert (await task_store.get("task-1")).progress == 50

        await tracker.report_progress("task-1", "unknown")
        assert (await task_store.get("task-1")).progress == 50

    @pytest.mark.asyncio
    async def test_complete_sets_result_and_full_progress(self, tracker, task_store):
        await tracker.start(make_record())

        assert await tracker.complete("task-1", "http://out.pdf", watermark_id="wm_1") is True

        record = await task_store.get("task-1")
        assert record.status == "completed"
        assert record.progress == 100
        assert record.result == "http://out.pdf"
        assert record.watermark_id == "wm_1"
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_fail_keeps_last_progress(self, tracker, task_store):
        await tracker.start(make_record())
        await tracker.report_progress("task-1", "processing")

        assert await tracker.fail("task-1", "remote said no", "remote_failed") is True

        record = await task_store.get("task-1")
        assert record.status == "failed"
        assert record.progress == 50
        assert record.error_message == "remote said no"
        assert record.failure_reason == "remote_failed"

    @pytest.mark.asyncio
    async def test_terminal_state_is_written_once(self, tracker, task_store):
        await tracker.start(make_record())
        await tracker.complete("task-1", "first")

        assert await tracker.fail("task-1", "late failure", "error") is False
        assert await tracker.complete("task-1", "second") is False
        await tracker.report_progress("task-1", "pending")

        record = await task_store.get("task-1")
        assert record.status == "completed"
        assert record.result == "first"
        assert record.progress == 100

    @pytest.mark.asyncio
    async def test_unknown_task_is_refused(self, tracker):
        assert await tracker.complete("missing", "x") is False

    @pytest.mark.asyncio
    async def test_duplicate_task_id_rejected(self, tracker):
        await tracker.start(make_record())
        with pytest.raises(WatermarkPipelineError):
            await tracker.start(make_record())

    @pytest.mark.asyncio
    async def test_finalize_rejects_unknown_fields(self, task_store):
        tracker = TaskLifecycleTracker(task_store)
        await tracker.start(make_record())
        with pytest.raises(ValueError):
            await task_store.finalize("task-1", "completed", file_url="http://elsewhere")
