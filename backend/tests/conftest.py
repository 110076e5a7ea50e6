"""
Watermark Pipeline Backend — Test Configuration (conftest.py)
===============================================================

What:  Shared pytest fixtures for the entire test suite.
How:   The pipeline under test runs on in-memory repositories, a scripted
       FakeRemote instead of the real watermark service, and a FileService
       rooted in a temporary directory whose downloads go through an
       httpx.MockTransport.

Fixture Hierarchy:
    fake_remote ─┐
    file_service ├─▶ pipeline ─▶ app ─▶ test_client
    stores ──────┘
"""

import os
import tempfile
from typing import Any, Dict, List, Optional, Union

# Settings are read at import time; keep tests off real services
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["WATERMARK_API_BASE_URL"] = "http://watermark.test"
os.environ["WATERMARK_ACCESS_KEY"] = "test-access-key"
os.environ["WATERMARK_SECRET_KEY"] = "test-secret-key"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="watermark_test_")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ["LOG_LEVEL"] = "WARNING"

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from watermark_pipeline.services.file_service import FileService, StoredFile
from watermark_pipeline.services.pipeline import WatermarkPipeline
from watermark_pipeline.services.records import OPERATION_EMBED, OPERATION_EXTRACT
from watermark_pipeline.services.remote_base import (
    REMOTE_FINISHED,
    RemoteTaskStatus,
    WatermarkRemote,
)
from watermark_pipeline.services.repositories import (
    InMemoryPolicyStore,
    InMemoryTaskStore,
    InMemoryWatermarkContentStore,
)
from watermark_pipeline.services.task_tracker import TaskLifecycleTracker
from watermark_pipeline.services.task_worker import TaskWorkerPool

REMOTE_RESULTS_HOST = "http://results.watermark.test"
ORIGINAL_PDF = b"%PDF-1.7\n% quarterly report\n%%EOF\n"


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════

Scripted = Union[RemoteTaskStatus, Exception]


class FakeRemote(WatermarkRemote):
    """
    Scripted stand-in for the remote watermark service.

    Task ids are 'task-1', 'task-2', ... in creation order.
    query_task() pops `script` first; once it is empty it returns
    `forced_status` if set, else a 'finished' status whose result is a
    download URL (embed) or extracted text (extract).
    """

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.queries: List[str] = []
        self.operations: Dict[str, str] = {}
        self.script: List[Scripted] = []
        self.forced_status: Optional[RemoteTaskStatus] = None
        self.create_error: Optional[Exception] = None
        self.healthy = True
        self.closed = False

    def _create(self, operation: str, **fields: Any) -> str:
        if self.create_error is not None:
            raise self.create_error
        task_id = f"task-{len(self.created) + 1}"
        self.created.append({"task_id": task_id, "operation": operation, **fields})
        self.operations[task_id] = operation
        return task_id

    async def create_embed_task(self, file_url, content, biz_id=None):
        return self._create(OPERATION_EMBED, file_url=file_url, content=content, biz_id=biz_id)

    async def create_extract_task(self, file_url, biz_id=None):
        return self._create(OPERATION_EXTRACT, file_url=file_url, biz_id=biz_id)

    async def query_task(self, task_id):
        self.queries.append(task_id)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        if self.forced_status is not None:
            return self.forced_status
        if self.operations.get(task_id) == OPERATION_EXTRACT:
            return RemoteTaskStatus(status=REMOTE_FINISHED, result_data="extracted watermark text")
        return RemoteTaskStatus(
            status=REMOTE_FINISHED, result_data=f"{REMOTE_RESULTS_HOST}/out/{task_id}.pdf"
        )

    async def health_check(self):
        return self.healthy

    async def close(self):
        self.closed = True


def remote_results_handler(request: httpx.Request) -> httpx.Response:
    """Serves watermarked output for any path on REMOTE_RESULTS_HOST."""
    if request.url.host == "results.watermark.test" and request.url.path.startswith("/out/"):
        return httpx.Response(200, content=b"%PDF-1.7\n% watermarked " + request.url.path.encode())
    return httpx.Response(404, text="not found")


# ══════════════════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def temp_storage(tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return str(storage_dir)


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def file_service(temp_storage):
    return FileService(
        storage_root=temp_storage,
        public_base_url="http://testserver",
        transport=httpx.MockTransport(remote_results_handler),
    )


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def content_store():
    return InMemoryWatermarkContentStore()


@pytest.fixture
def tracker(task_store):
    return TaskLifecycleTracker(task_store)


@pytest.fixture
def worker(fake_remote, tracker, content_store, file_service):
    return TaskWorkerPool(
        remote=fake_remote,
        tracker=tracker,
        contents=content_store,
        file_service=file_service,
        concurrency=4,
        poll_interval=0,
        max_attempts=5,
    )


@pytest_asyncio.fixture
async def pipeline(fake_remote, task_store, content_store, file_service, worker, tracker):
    pipeline = WatermarkPipeline(
        remote=fake_remote,
        tasks=task_store,
        contents=content_store,
        policies=InMemoryPolicyStore(),
        file_service=file_service,
        worker=worker,
        tracker=tracker,
    )
    yield pipeline
    await worker.shutdown()


@pytest_asyncio.fixture
async def uploaded_pdf(file_service) -> StoredFile:
    """An original document already stored and published by this service."""
    return await file_service.validate_and_store("report.pdf", ORIGINAL_PDF)


@pytest.fixture
def app(pipeline):
    from watermark_pipeline.main import create_app

    return create_app(pipeline=pipeline)


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient talking to the app through ASGITransport.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
