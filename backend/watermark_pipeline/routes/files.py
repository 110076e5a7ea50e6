"""
Watermark Pipeline Backend — Stored File Route
================================================

What:  GET /api/files/{path}: serves documents from storage.
Who:   The remote watermark service, which downloads the documents it is
       asked to process from the public URLs this service hands out.

Security:
    FileService.resolve_storage_path() rejects anything that resolves
    outside storage_root, so '../' sequences end in a 404.
"""

import mimetypes

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from watermark_pipeline.routes.dependencies import get_pipeline
from watermark_pipeline.schemas.watermark import ErrorResponse
from watermark_pipeline.services.pipeline import WatermarkPipeline

router = APIRouter(prefix="/api", tags=["Files"])


@router.get(
    "/files/{file_path:path}",
    summary="Download a stored document",
    responses={
        200: {"description": "File content"},
        404: {"description": "File not found", "model": ErrorResponse},
    },
)
async def serve_file(
    file_path: str,
    pipeline: WatermarkPipeline = Depends(get_pipeline),
) -> FileResponse:
    path = pipeline.file_service.resolve_storage_path(file_path)
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(
        path=str(path),
        media_type=media_type,
        filename=path.name,
        headers={"Cache-Control": "private, max-age=3600"},
    )
