"""
Watermark Pipeline Backend — API Route Tests
==============================================

What:  HTTP contract of /api/watermark, /api/files and /health.
How:   httpx AsyncClient over ASGITransport against create_app(pipeline=...)
       with the in-memory test pipeline (lifespan is not run).
"""

import pytest

from watermark_pipeline.services.remote_base import RemoteTaskStatus

PDF = b"%PDF-1.7\n% route test\n%%EOF\n"


async def upload(client, name="contract.pdf", content=PDF):
    return await client.post(
        "/api/watermark/upload",
        files={"file": (name, content, "application/octet-stream")},
    )


class TestUploadAndFiles:
    @pytest.mark.asyncio
    async def test_upload_then_download(self, test_client):
        response = await upload(test_client)

        assert response.status_code == 201
        body = response.json()
        assert body["file_name"] == "contract.pdf"
        assert body["file_size"] == len(PDF)
        assert len(body["file_hash"]) == 64

        download = await test_client.get(body["file_url"])
        assert download.status_code == 200
        assert download.content == PDF

    @pytest.mark.asyncio
    async def test_upload_rejects_unsupported_type(self, test_client):
        response = await upload(test_client, name="photo.jpg")

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["request_id"]
        assert response.headers["X-Request-ID"] == body["request_id"]

    @pytest.mark.asyncio
    async def test_missing_file_is_404(self, test_client):
        response = await test_client.get("/api/files/2026/01/01/nothing.pdf")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestTasks:
    @pytest.mark.asyncio
    async def test_embed_lifecycle(self, test_client, pipeline):
        file_url = (await upload(test_client)).json()["file_url"]

        response = await test_client.post(
            "/api/watermark/embed", json={"file_url": file_url, "content": "Internal use only"}
        )
        assert response.status_code == 202
        task = response.json()
        assert task["status"] == "processing"
        assert task["operation"] == "embed"

        await pipeline.worker.join()

        status = await test_client.get(f"/api/watermark/tasks/{task['task_id']}")
        assert status.status_code == 200
        done = status.json()
        assert done["status"] == "completed"
        assert done["progress"] == 100

        watermarked = await test_client.get(done["result"])
        assert watermarked.status_code == 200

        extract = await test_client.post("/api/watermark/extract", json={"file_url": done["result"]})
        assert extract.status_code == 202
        await pipeline.worker.join()
        extracted = (await test_client.get(f"/api/watermark/tasks/{extract.json()['task_id']}")).json()
        assert extracted["watermark_id"] == done["watermark_id"]
        assert extracted["confidence"] >= 0.85

    @pytest.mark.asyncio
    async def test_unknown_task(self, test_client):
        response = await test_client.get("/api/watermark/tasks/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_empty_content_rejected_by_schema(self, test_client):
        response = await test_client.post(
            "/api/watermark/embed", json={"file_url": "http://testserver/api/files/a.pdf", "content": ""}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unsupported_policy_file_type(self, test_client):
        file_url = (await upload(test_client, name="sheet.xlsx")).json()["file_url"]

        response = await test_client.post(
            "/api/watermark/embed", json={"file_url": file_url, "content": "c", "policy_id": "2"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_file_type"

    @pytest.mark.asyncio
    async def test_remote_failure_is_502(self, test_client, fake_remote):
        from watermark_pipeline.exceptions import RemoteServiceError

        file_url = (await upload(test_client)).json()["file_url"]
        fake_remote.create_error = RemoteServiceError(
            "Watermark service returned HTTP 500", status_code=500, detail={"message": "down"}
        )

        response = await test_client.post(
            "/api/watermark/embed", json={"file_url": file_url, "content": "c"}
        )

        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "remote_service_error"
        assert body["details"]["status_code"] == 500

    @pytest.mark.asyncio
    async def test_list_tasks(self, test_client, pipeline):
        file_url = (await upload(test_client)).json()["file_url"]
        for _ in range(3):
            await test_client.post("/api/watermark/embed", json={"file_url": file_url, "content": "c"})
        await pipeline.worker.join()

        response = await test_client.get("/api/watermark/tasks", params={"limit": 2})

        assert response.status_code == 200
        assert response.headers["X-Total-Count"] == "3"
        body = response.json()
        assert len(body["tasks"]) == 2
        assert body["has_more"] is True

        rest = await test_client.get(
            "/api/watermark/tasks", params={"limit": 2, "cursor": body["next_cursor"]}
        )
        assert len(rest.json()["tasks"]) == 1

    @pytest.mark.asyncio
    async def test_list_tasks_invalid_filter(self, test_client):
        response = await test_client.get("/api/watermark/tasks", params={"status": "exploded"})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_cancel_and_retry(self, test_client, pipeline, fake_remote):
        file_url = (await upload(test_client)).json()["file_url"]
        pipeline.worker.poll_interval = 30
        fake_remote.forced_status = RemoteTaskStatus(status="processing")
        task_id = (
            await test_client.post("/api/watermark/embed", json={"file_url": file_url, "content": "c"})
        ).json()["task_id"]

        cancelled = await test_client.post(f"/api/watermark/tasks/{task_id}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["failure_reason"] == "cancelled"

        again = await test_client.post(f"/api/watermark/tasks/{task_id}/cancel")
        assert again.status_code == 409
        assert again.json()["error"] == "task_state_error"

        pipeline.worker.poll_interval = 0
        fake_remote.forced_status = None
        retried = await test_client.post(f"/api/watermark/tasks/{task_id}/retry")
        assert retried.status_code == 202
        assert retried.json()["retry_of"] == task_id
        await pipeline.worker.join()


class TestProvenanceAndPolicies:
    @pytest.mark.asyncio
    async def test_provenance_without_evidence(self, test_client):
        response = await test_client.post(
            "/api/watermark/provenance",
            files={"file": ("unknown.pdf", b"%PDF never seen", "application/pdf")},
        )

        assert response.status_code == 200
        assert response.json() == {
            "watermark_id": None,
            "content": None,
            "confidence": 0.0,
            "strategy": "none",
        }

    @pytest.mark.asyncio
    async def test_policy_adapt(self, test_client):
        response = await test_client.post(
            "/api/watermark/policy/adapt", json={"file_type": "xlsx", "sensitivity": "HIGH"}
        )

        assert response.status_code == 200
        assert response.json() == {"policy_id": "2", "embed_depth": 3, "compatibility": "high"}

    @pytest.mark.asyncio
    async def test_policy_adapt_unknown_type(self, test_client):
        response = await test_client.post(
            "/api/watermark/policy/adapt", json={"file_type": "exe", "sensitivity": "low"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_file_type"

    @pytest.mark.asyncio
    async def test_list_policies(self, test_client):
        response = await test_client.get("/api/watermark/policies")

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == ["1", "2", "3"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "not_configured"
        assert body["watermark_service"] == "available"

    @pytest.mark.asyncio
    async def test_degraded_when_remote_down(self, test_client, fake_remote):
        fake_remote.healthy = False

        body = (await test_client.get("/health")).json()

        assert body["status"] == "degraded"
        assert body["watermark_service"] == "unavailable"
