"""
Watermark Pipeline Backend — Pipeline Orchestrator
====================================================

What:  Local-facing operations of the service: embed, extract, status,
       provenance, cancel, retry, task listing and policy adaptation.
How:   Composes FileService, the remote client, the repositories, the
       lifecycle tracker and the worker pool. Everything up to remote
       acceptance happens synchronously in the request; the rest belongs to
       a background job.
Who:   Route handlers (via request.app.state.pipeline) and the app lifespan.

Orchestration Flow (embed / extract):
    ┌───────────┐   ┌──────────────┐   ┌──────────────┐   ┌────────────┐   ┌──────────┐
    │ Fetch file│──▶│ Validate +   │──▶│ Signed remote│──▶│ TaskRecord │──▶│ Worker   │
    │ by URL    │   │ SHA-256      │   │ create task  │   │ processing │   │ job      │
    └───────────┘   └──────────────┘   └──────────────┘   └────────────┘   └──────────┘

    Any failure before remote acceptance propagates to the caller and no
    record is created. After acceptance, failures end up on the record.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from watermark_pipeline.exceptions import (
    NotFoundError,
    TaskStateError,
    UnsupportedFileTypeError,
    ValidationError,
    WatermarkPipelineError,
)
from watermark_pipeline.services.file_service import FetchedFile, FileService
from watermark_pipeline.services.policy_adapter import PolicyAdapter, normalize_file_type
from watermark_pipeline.services.provenance import ProvenanceResolver
from watermark_pipeline.services.records import (
    OPERATION_EMBED,
    OPERATION_EXTRACT,
    REASON_CANCELLED,
    REASON_ERROR,
    STATUS_FAILED,
    STATUS_PROCESSING,
    PolicyAdaptation,
    ProvenanceResult,
    TaskPage,
    TaskRecord,
    WatermarkContent,
    WatermarkPolicy,
    new_watermark_id,
)
from watermark_pipeline.services.remote_base import WatermarkRemote
from watermark_pipeline.services.repositories import (
    PolicyStore,
    TaskStore,
    WatermarkContentStore,
)
from watermark_pipeline.services.task_tracker import TaskLifecycleTracker
from watermark_pipeline.services.task_worker import TaskJob, TaskWorkerPool

logger = logging.getLogger(__name__)

# Upper bound on records picked up by resume_unfinished() in one pass
RESUME_BATCH = 1000


def _parse_cursor(cursor: Optional[str]) -> Optional[datetime]:
    if not cursor:
        return None
    # '+' in an unencoded query string arrives as a space
    try:
        return datetime.fromisoformat(cursor.strip().replace(" ", "+"))
    except ValueError:
        raise ValidationError(
            message=f"Invalid cursor '{cursor}'. Expected an ISO 8601 datetime.",
            field="cursor",
        )


class WatermarkPipeline:
    """
    Business logic layer for watermark tasks.

    Error Handling Strategy:
        Validation, lookup and remote creation errors propagate unchanged as
        WatermarkPipelineError subclasses; global handlers map them to HTTP.
    """

    def __init__(
        self,
        remote: WatermarkRemote,
        tasks: TaskStore,
        contents: WatermarkContentStore,
        policies: PolicyStore,
        file_service: FileService,
        worker: Optional[TaskWorkerPool] = None,
        tracker: Optional[TaskLifecycleTracker] = None,
    ):
        self.remote = remote
        self.tasks = tasks
        self.contents = contents
        self.policies = policies
        self.file_service = file_service
        self.tracker = tracker or TaskLifecycleTracker(tasks)
        self.resolver = ProvenanceResolver(contents)
        self.adapter = PolicyAdapter()
        self.worker = worker or TaskWorkerPool(
            remote=remote,
            tracker=self.tracker,
            contents=contents,
            file_service=file_service,
        )

    # ── Task creation ─────────────────────────────────────────────────────

    async def embed(
        self,
        file_url: str,
        content: str,
        policy_id: Optional[str] = None,
        biz_id: Optional[str] = None,
        retry_of: Optional[str] = None,
    ) -> TaskRecord:
        """
        Start embedding `content` into the document at `file_url`.

        Raises:
            ValidationError:          empty content, unsupported or unreadable file
            NotFoundError:            unknown or disabled policy
            UnsupportedFileTypeError: file type not covered by the chosen policy
            RemoteServiceError / CircuitBreakerOpenError / SigningError:
                                      remote creation failed; nothing is recorded
        """
        if not content or not content.strip():
            raise ValidationError(message="Watermark content must not be empty", field="content")

        fetched = await self._fetch_document(file_url)
        policy = await self._select_policy(policy_id, fetched.file_name)
        biz_id = biz_id or f"embed_{uuid.uuid4().hex[:12]}"

        task_id = await self.remote.create_embed_task(file_url, content, biz_id)
        logger.info("Remote accepted embed task %s for %s", task_id, fetched.file_name)

        watermark_id = new_watermark_id()
        try:
            record = await self.tracker.start(
                TaskRecord(
                    task_id=task_id,
                    operation=OPERATION_EMBED,
                    file_name=fetched.file_name,
                    file_size=fetched.size,
                    file_url=file_url,
                    original_file_hash=fetched.sha256,
                    policy_id=policy.id if policy else None,
                    watermark_id=watermark_id,
                    biz_id=biz_id,
                    retry_of=retry_of,
                )
            )
        except WatermarkPipelineError:
            logger.error("Remote embed task %s was accepted but could not be recorded", task_id)
            raise
        try:
            await self.contents.create(
                WatermarkContent(
                    watermark_id=watermark_id,
                    content=content,
                    biz_id=biz_id,
                    original_file_hash=fetched.sha256,
                )
            )
        except WatermarkPipelineError as e:
            logger.error("Could not register watermark content for task %s", task_id)
            await self.tracker.fail(task_id, e.message, REASON_ERROR)
            raise
        self.worker.submit(
            TaskJob(
                task_id=task_id,
                operation=OPERATION_EMBED,
                file_name=fetched.file_name,
                watermark_id=watermark_id,
            )
        )
        return record

    async def extract(
        self,
        file_url: str,
        biz_id: Optional[str] = None,
        retry_of: Optional[str] = None,
    ) -> TaskRecord:
        """
        Start extracting the watermark from the document at `file_url`.

        The provenance of the file is resolved locally right away and
        recorded on the task when the remote extraction completes.
        """
        fetched = await self._fetch_document(file_url)
        provenance = await self.resolver.resolve(fetched.file_name, fetched.content)
        biz_id = biz_id or f"extract_{uuid.uuid4().hex[:12]}"

        task_id = await self.remote.create_extract_task(file_url, biz_id)
        logger.info("Remote accepted extract task %s for %s", task_id, fetched.file_name)

        try:
            record = await self.tracker.start(
                TaskRecord(
                    task_id=task_id,
                    operation=OPERATION_EXTRACT,
                    file_name=fetched.file_name,
                    file_size=fetched.size,
                    file_url=file_url,
                    original_file_hash=fetched.sha256,
                    biz_id=biz_id,
                    retry_of=retry_of,
                )
            )
        except WatermarkPipelineError:
            logger.error("Remote extract task %s was accepted but could not be recorded", task_id)
            raise
        self.worker.submit(
            TaskJob(
                task_id=task_id,
                operation=OPERATION_EXTRACT,
                file_name=fetched.file_name,
                provenance=provenance,
            )
        )
        return record

    # ── Task queries & control ────────────────────────────────────────────

    async def get_status(self, task_id: str) -> TaskRecord:
        record = await self.tasks.get(task_id)
        if record is None:
            raise NotFoundError(resource="task", resource_id=task_id)
        return record

    async def list_tasks(
        self,
        limit: int = 20,
        cursor: Optional[str] = None,
        operation: Optional[str] = None,
        status: Optional[str] = None,
    ) -> TaskPage:
        """
        Newest-first page of task records.

        Fetches limit + 1 rows to learn whether another page exists without
        a second query; next_cursor is the created_at of the last item.
        """
        records, total = await self.tasks.list_recent(
            limit=limit + 1,
            before=_parse_cursor(cursor),
            operation=operation,
            status=status,
        )
        has_more = len(records) > limit
        records = records[:limit]
        next_cursor = records[-1].created_at.isoformat() if has_more and records else None
        return TaskPage(tasks=records, total_count=total, next_cursor=next_cursor, has_more=has_more)

    async def cancel(self, task_id: str) -> TaskRecord:
        """
        Stop a processing task. The record ends 'failed' with reason 'cancelled'.

        Raises:
            NotFoundError:  unknown task
            TaskStateError: task already completed or failed
        """
        record = await self.get_status(task_id)
        if record.status != STATUS_PROCESSING:
            raise TaskStateError(
                task_id, record.status, message=f"Task '{task_id}' is not running"
            )

        await self.worker.cancel(task_id)
        record = await self.get_status(task_id)
        if record.status == STATUS_PROCESSING:
            # No job owned the record (or it did not react in time)
            await self.tracker.fail(task_id, "Task cancelled", REASON_CANCELLED)
            record = await self.get_status(task_id)
        return record

    async def retry(self, task_id: str) -> TaskRecord:
        """
        Re-submit a failed task as a new task record (retry_of = old task id).
        The failed record itself is never modified.
        """
        record = await self.get_status(task_id)
        if record.status != STATUS_FAILED:
            raise TaskStateError(
                task_id, record.status, message=f"Only failed tasks can be retried; '{task_id}' is {record.status}"
            )

        logger.info("Retrying %s task %s", record.operation, task_id)
        if record.operation == OPERATION_EXTRACT:
            return await self.extract(record.file_url, biz_id=record.biz_id, retry_of=task_id)

        watermark = (
            await self.contents.get(record.watermark_id) if record.watermark_id else None
        )
        if watermark is None:
            raise NotFoundError(resource="watermark content", resource_id=record.watermark_id)
        return await self.embed(
            record.file_url,
            watermark.content,
            policy_id=record.policy_id,
            biz_id=record.biz_id,
            retry_of=task_id,
        )

    async def resume_unfinished(self) -> int:
        """
        Re-attach polling jobs to records left 'processing' by a previous run.
        Returns the number of jobs submitted.
        """
        records, _ = await self.tasks.list_recent(limit=RESUME_BATCH, status=STATUS_PROCESSING)
        resumed = 0
        for record in records:
            if self.worker.is_running(record.task_id):
                continue
            provenance = None
            if record.operation == OPERATION_EXTRACT:
                provenance = await self._provenance_for_url(record.file_url, record.file_name)
            self.worker.submit(
                TaskJob(
                    task_id=record.task_id,
                    operation=record.operation,
                    file_name=record.file_name,
                    watermark_id=record.watermark_id,
                    provenance=provenance,
                )
            )
            resumed += 1
        if resumed:
            logger.info("Resumed %d unfinished watermark tasks", resumed)
        return resumed

    # ── Provenance & policies ─────────────────────────────────────────────

    async def resolve_provenance(self, file_name: str, content: bytes) -> ProvenanceResult:
        return await self.resolver.resolve(file_name, content)

    def adapt_policy(self, file_type: str, sensitivity: str) -> PolicyAdaptation:
        return self.adapter.adapt(file_type, sensitivity)

    async def list_policies(self) -> List[WatermarkPolicy]:
        return await self.policies.list_active()

    async def close(self) -> None:
        await self.worker.shutdown()
        await self.remote.close()

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _fetch_document(self, file_url: str) -> FetchedFile:
        if not file_url or not file_url.strip():
            raise ValidationError(message="file_url is required", field="file_url")
        fetched = await self.file_service.fetch(file_url.strip())
        self.file_service.validate_extension(fetched.file_name)
        self.file_service.validate_size(None, fetched.size)
        return fetched

    async def _select_policy(
        self, policy_id: Optional[str], file_name: str
    ) -> Optional[WatermarkPolicy]:
        if policy_id is None:
            return await self.policies.get_default()

        policy = await self.policies.get(policy_id)
        if policy is None or policy.status != "active":
            raise NotFoundError(resource="policy", resource_id=policy_id)

        file_type = normalize_file_type(file_name.rsplit(".", 1)[-1])
        if not policy.supports(file_type):
            raise UnsupportedFileTypeError(
                file_type,
                supported=policy.file_types,
                context={"policy_id": policy.id},
            )
        return policy

    async def _provenance_for_url(self, file_url: str, file_name: str) -> Optional[ProvenanceResult]:
        try:
            fetched = await self.file_service.fetch(file_url)
        except WatermarkPipelineError as e:
            logger.warning("Could not re-read %s for provenance: %s", file_name, str(e))
            return None
        return await self.resolver.resolve(fetched.file_name, fetched.content)
