"""
Watermark Pipeline Backend — Background Task Worker Pool
==========================================================

What:  Polls accepted remote tasks until they finish and performs the single
       terminal write for each of them.
How:   One asyncio.Task per accepted remote task, bounded by a semaphore
       (settings.worker_concurrency). Each job owns a cancellation token
       (asyncio.Event) and polls every poll_interval seconds, at most
       poll_max_attempts times.
Who:   WatermarkPipeline submits jobs after the task record is created;
       main.py shuts the pool down on application exit.

Job outcomes:
    remote 'finished'  → embed:   download result, store as
                                  watermarked_<fragment>_<name>, hash it,
                                  record its public URL
                         extract: record extracted text + resolved watermark
    remote 'failed'    → failed, reason 'remote_failed'
    token set          → failed, reason 'cancelled'
    attempts exhausted → failed, reason 'timeout'
    any exception      → failed, reason 'error' (never escapes the job)

Status query failures (HTTP errors, open circuit) count as an attempt and
polling continues. A SigningError is fatal for the job.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from watermark_pipeline.config import settings
from watermark_pipeline.exceptions import (
    BackgroundProcessingError,
    CircuitBreakerOpenError,
    RemoteServiceError,
    WatermarkPipelineError,
)
from watermark_pipeline.services.file_service import FileService
from watermark_pipeline.services.provenance import STRATEGY_NONE, watermarked_file_name
from watermark_pipeline.services.records import (
    OPERATION_EMBED,
    REASON_CANCELLED,
    REASON_ERROR,
    REASON_REMOTE_FAILED,
    REASON_TIMEOUT,
    ProvenanceResult,
)
from watermark_pipeline.services.remote_base import (
    REMOTE_FAILED,
    REMOTE_FINISHED,
    RemoteTaskStatus,
    WatermarkRemote,
)
from watermark_pipeline.services.repositories import WatermarkContentStore
from watermark_pipeline.services.task_tracker import TaskLifecycleTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskJob:
    """
    Everything a job needs besides the record itself.

    watermark_id: embed only; the content registered for this task
    provenance:   extract only; resolved from the submitted file up front
    """
    task_id: str
    operation: str
    file_name: str
    watermark_id: Optional[str] = None
    provenance: Optional[ProvenanceResult] = None


@dataclass
class _RunningJob:
    job: TaskJob
    token: asyncio.Event
    task: Optional["asyncio.Task[None]"] = None
    started: bool = False


class TaskWorkerPool:
    def __init__(
        self,
        remote: WatermarkRemote,
        tracker: TaskLifecycleTracker,
        contents: WatermarkContentStore,
        file_service: FileService,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.remote = remote
        self.tracker = tracker
        self.contents = contents
        self.file_service = file_service
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = (
            settings.poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.max_attempts = max_attempts or settings.poll_max_attempts
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._jobs: Dict[str, _RunningJob] = {}

        logger.info(
            "TaskWorkerPool initialized with concurrency=%d, poll_interval=%.1fs, max_attempts=%d",
            self.concurrency,
            self.poll_interval,
            self.max_attempts,
        )

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._jobs

    def submit(self, job: TaskJob) -> "asyncio.Task[None]":
        if job.task_id in self._jobs:
            raise ValueError(f"A job for task {job.task_id} is already running")
        running = _RunningJob(job=job, token=asyncio.Event())
        running.task = asyncio.create_task(self._run(running), name=f"watermark-task-{job.task_id}")
        self._jobs[job.task_id] = running
        logger.debug("Submitted %s job for task %s", job.operation, job.task_id)
        return running.task

    async def cancel(self, task_id: str, grace: float = 5.0) -> bool:
        """
        Signal the job for `task_id` to stop and wait up to `grace` seconds
        for it to record the cancellation. False when no job is running.

        A job still waiting for a worker slot is dropped and its record
        failed right away.
        """
        running = self._jobs.get(task_id)
        if running is None:
            return False
        running.token.set()
        if running.task is None:
            return True
        if not running.started:
            running.task.cancel()
            await asyncio.gather(running.task, return_exceptions=True)
            self._jobs.pop(task_id, None)
            await self.tracker.fail(task_id, "Task cancelled", REASON_CANCELLED)
            return True
        await asyncio.wait({running.task}, timeout=grace)
        return True

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        while self._jobs:
            await asyncio.gather(
                *(r.task for r in list(self._jobs.values()) if r.task is not None),
                return_exceptions=True,
            )

    async def shutdown(self) -> None:
        """Cancel outstanding jobs. Their records stay 'processing' and are resumed on restart."""
        tasks = [r.task for r in self._jobs.values() if r.task is not None]
        if not tasks:
            return
        logger.info("Cancelling %d outstanding watermark jobs", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()

    # ── Job body ──────────────────────────────────────────────────────────

    async def _run(self, running: _RunningJob) -> None:
        job = running.job
        try:
            async with self._semaphore:
                running.started = True
                await self._poll(job, running.token)
        except asyncio.CancelledError:
            raise
        except BackgroundProcessingError as e:
            await self._fail_quietly(job.task_id, e.message, e.reason)
        except WatermarkPipelineError as e:
            await self._fail_quietly(job.task_id, e.message, REASON_ERROR)
        except Exception as e:
            logger.error("Unexpected error in job for task %s", job.task_id, exc_info=True)
            await self._fail_quietly(
                job.task_id, f"Unexpected error: {type(e).__name__}", REASON_ERROR
            )
        finally:
            self._jobs.pop(job.task_id, None)

    async def _fail_quietly(self, task_id: str, message: str, reason: str) -> None:
        try:
            await self.tracker.fail(task_id, message, reason)
        except Exception:
            logger.error("Could not record failure of task %s", task_id, exc_info=True)

    async def _poll(self, job: TaskJob, token: asyncio.Event) -> None:
        for attempt in range(1, self.max_attempts + 1):
            if token.is_set():
                await self.tracker.fail(job.task_id, "Task cancelled", REASON_CANCELLED)
                return

            try:
                status = await self.remote.query_task(job.task_id)
            except (RemoteServiceError, CircuitBreakerOpenError) as e:
                logger.warning(
                    "Status check %d/%d for task %s failed: %s",
                    attempt,
                    self.max_attempts,
                    job.task_id,
                    e.message,
                )
            else:
                if status.status == REMOTE_FINISHED:
                    await self._complete(job, status)
                    return
                if status.status == REMOTE_FAILED:
                    raise BackgroundProcessingError(
                        message=status.message or "Remote watermark task failed",
                        reason=REASON_REMOTE_FAILED,
                    )
                await self.tracker.report_progress(job.task_id, status.status)

            if attempt < self.max_attempts:
                await self._sleep(token)

        raise BackgroundProcessingError(
            message=f"Remote task did not finish after {self.max_attempts} status checks",
            reason=REASON_TIMEOUT,
        )

    async def _sleep(self, token: asyncio.Event) -> None:
        """Wait one poll interval, waking early if the job is cancelled."""
        try:
            await asyncio.wait_for(token.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _complete(self, job: TaskJob, status: RemoteTaskStatus) -> None:
        if job.operation == OPERATION_EMBED:
            await self._complete_embed(job, status)
        else:
            await self._complete_extract(job, status)

    async def _complete_embed(self, job: TaskJob, status: RemoteTaskStatus) -> None:
        if not status.result_data:
            raise BackgroundProcessingError(
                message="Remote task finished without a result file", reason=REASON_ERROR
            )
        content = await self.file_service.download(status.result_data)
        stored = await self.file_service.store_file(
            content, file_name=watermarked_file_name(job.watermark_id, job.file_name)
        )
        # A completed embed must already be findable by hash
        try:
            await self.contents.set_watermark_file_hash(job.watermark_id, stored.sha256)
            completed = await self.tracker.complete(
                job.task_id, stored.file_url, watermark_id=job.watermark_id
            )
        except Exception:
            await self.file_service.cleanup_file(stored.absolute_path)
            raise
        if not completed:
            # Record went terminal while downloading; drop the orphaned copy
            await self.file_service.cleanup_file(stored.absolute_path)

    async def _complete_extract(self, job: TaskJob, status: RemoteTaskStatus) -> None:
        provenance = job.provenance or ProvenanceResult(confidence=0.0, strategy=STRATEGY_NONE)
        await self.tracker.complete(
            job.task_id,
            status.result_data,
            watermark_id=provenance.watermark_id,
            confidence=provenance.confidence,
        )
