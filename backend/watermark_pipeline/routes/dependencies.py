"""Shared FastAPI dependencies for route handlers."""

from fastapi import Request

from watermark_pipeline.services.pipeline import WatermarkPipeline


def get_pipeline(request: Request) -> WatermarkPipeline:
    """The pipeline built by create_app() and stored on app.state."""
    return request.app.state.pipeline
