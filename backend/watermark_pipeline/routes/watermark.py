"""
Watermark Pipeline Backend — Watermark Route Handlers
=======================================================

What:  /api/watermark endpoints: document upload, embed/extract task
       creation, task status/list/cancel/retry, provenance lookup and
       policy adaptation.
How:   Each handler delegates to WatermarkPipeline and converts the
       returned records through the response schemas.

Typical flow:
    POST /upload            → file_url
    POST /embed {file_url}  → 202, task in 'processing'
    GET  /tasks/{task_id}   → poll until 'completed' (result = watermarked file URL)
    POST /extract {result}  → 202; on completion carries the resolved watermark
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from pydantic import ValidationError as PydanticValidationError

from watermark_pipeline.exceptions import ValidationError
from watermark_pipeline.routes.dependencies import get_pipeline
from watermark_pipeline.schemas.watermark import (
    EmbedRequest,
    ErrorResponse,
    ExtractRequest,
    PolicyAdaptRequest,
    PolicyAdaptResponse,
    PolicyResponse,
    ProvenanceResponse,
    TaskListParams,
    TaskListResponse,
    TaskStatusResponse,
    UploadResponse,
)
from watermark_pipeline.services.pipeline import WatermarkPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/watermark", tags=["Watermark"])

_CREATE_ERRORS = {
    400: {"description": "Invalid input or unsupported file type", "model": ErrorResponse},
    404: {"description": "Unknown policy or file", "model": ErrorResponse},
    502: {"description": "Watermark service rejected the task", "model": ErrorResponse},
    503: {"description": "Watermark service circuit open", "model": ErrorResponse},
}


@router.post(
    "/upload",
    status_code=201,
    response_model=UploadResponse,
    responses={400: {"description": "Invalid file type or size", "model": ErrorResponse}},
    summary="Store a document and get its public URL",
)
async def upload_document(
    file: UploadFile = File(..., description="PDF, Word, Excel or PowerPoint document"),
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> UploadResponse:
    try:
        content = await file.read()
        logger.info(
            "Received upload: filename=%s, size=%d bytes", file.filename or "unknown", len(content)
        )
        stored = await pipeline.file_service.validate_and_store(
            filename=file.filename or "upload",
            content=content,
            content_length=file.size,
        )
    finally:
        await file.close()

    return UploadResponse(
        file_url=stored.file_url,
        file_name=stored.file_name,
        file_size=stored.size,
        file_hash=stored.sha256,
    )


@router.post(
    "/embed",
    status_code=202,
    response_model=TaskStatusResponse,
    responses=_CREATE_ERRORS,
    summary="Start a watermark embedding task",
)
async def embed_watermark(
    body: EmbedRequest,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> TaskStatusResponse:
    record = await pipeline.embed(
        file_url=body.file_url,
        content=body.content,
        policy_id=body.policy_id,
        biz_id=body.biz_id,
    )
    return TaskStatusResponse.model_validate(record)


@router.post(
    "/extract",
    status_code=202,
    response_model=TaskStatusResponse,
    responses=_CREATE_ERRORS,
    summary="Start a watermark extraction task",
)
async def extract_watermark(
    body: ExtractRequest,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> TaskStatusResponse:
    record = await pipeline.extract(file_url=body.file_url, biz_id=body.biz_id)
    return TaskStatusResponse.model_validate(record)


@router.get(
    "/tasks",
    response_model=TaskListResponse,
    summary="List tasks, newest first",
)
async def list_tasks(
    response: Response,
    limit: int = Query(default=20, ge=1, le=100),
    cursor: Optional[str] = Query(
        default=None,
        description="next_cursor from the previous page (ISO 8601). Omit for the first page.",
    ),
    operation: Optional[str] = Query(default=None, description="embed or extract"),
    status: Optional[str] = Query(default=None, description="processing, completed or failed"),
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> TaskListResponse:
    try:
        params = TaskListParams(limit=limit, cursor=cursor, operation=operation, status=status)
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise ValidationError(
            message=first["msg"].removeprefix("Value error, "),
            field=str(first["loc"][0]) if first["loc"] else None,
        ) from e
    page = await pipeline.list_tasks(
        limit=params.limit,
        cursor=params.cursor,
        operation=params.operation,
        status=params.status,
    )
    response.headers["X-Total-Count"] = str(page.total_count)
    return TaskListResponse(
        tasks=[TaskStatusResponse.model_validate(r) for r in page.tasks],
        total_count=page.total_count,
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )


@router.get(
    "/tasks/{task_id}",
    response_model=TaskStatusResponse,
    responses={404: {"description": "Task not found", "model": ErrorResponse}},
    summary="Get the status of a task",
)
async def get_task(
    task_id: str,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> TaskStatusResponse:
    return TaskStatusResponse.model_validate(await pipeline.get_status(task_id))


@router.post(
    "/tasks/{task_id}/cancel",
    response_model=TaskStatusResponse,
    responses={
        404: {"description": "Task not found", "model": ErrorResponse},
        409: {"description": "Task is not running", "model": ErrorResponse},
    },
    summary="Cancel a running task",
)
async def cancel_task(
    task_id: str,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> TaskStatusResponse:
    return TaskStatusResponse.model_validate(await pipeline.cancel(task_id))


@router.post(
    "/tasks/{task_id}/retry",
    status_code=202,
    response_model=TaskStatusResponse,
    responses={
        **_CREATE_ERRORS,
        409: {"description": "Task has not failed", "model": ErrorResponse},
    },
    summary="Retry a failed task as a new task",
)
async def retry_task(
    task_id: str,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> TaskStatusResponse:
    return TaskStatusResponse.model_validate(await pipeline.retry(task_id))


@router.post(
    "/provenance",
    response_model=ProvenanceResponse,
    responses={400: {"description": "Missing or oversized file", "model": ErrorResponse}},
    summary="Identify the watermark a file carries",
)
async def resolve_provenance(
    file: UploadFile = File(..., description="File to identify"),
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> ProvenanceResponse:
    try:
        content = await file.read()
        pipeline.file_service.validate_size(file.size, len(content))
        result = await pipeline.resolve_provenance(file.filename or "", content)
    finally:
        await file.close()
    return ProvenanceResponse.model_validate(result)


@router.post(
    "/policy/adapt",
    response_model=PolicyAdaptResponse,
    responses={400: {"description": "Unknown file type or sensitivity", "model": ErrorResponse}},
    summary="Pick policy, depth and compatibility for a file type and sensitivity",
)
async def adapt_policy(
    body: PolicyAdaptRequest,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> PolicyAdaptResponse:
    return PolicyAdaptResponse.model_validate(
        pipeline.adapt_policy(body.file_type, body.sensitivity)
    )


@router.get(
    "/policies",
    response_model=list[PolicyResponse],
    summary="List active watermark policies",
)
async def list_policies(
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> list[PolicyResponse]:
    return [PolicyResponse.model_validate(p) for p in await pipeline.list_policies()]
