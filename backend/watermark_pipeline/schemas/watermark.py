"""
Watermark Pipeline Backend — Pydantic Request/Response Schemas
================================================================

What:  Pydantic models defining the HTTP API contract.
How:   FastAPI validates request bodies against these models, serializes
       responses through them, and generates OpenAPI docs from them.
Who:   Used by route handlers only. Services return dataclass records
       (services/records.py), which route handlers convert with
       `model_validate(..., from_attributes=True)`.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class EmbedRequest(BaseModel):
    """
    What:  Body of POST /api/watermark/embed.

    file_url must point at a file this service can read: either a URL
    returned by /upload or any http(s) URL the service can download.
    """
    file_url: str = Field(min_length=1, description="URL of the document to watermark")
    content: str = Field(min_length=1, max_length=10_000, description="Watermark content to embed")
    policy_id: Optional[str] = Field(default=None, description="Policy to apply (default policy if omitted)")
    biz_id: Optional[str] = Field(default=None, max_length=255, description="Caller correlation id")


class ExtractRequest(BaseModel):
    """Body of POST /api/watermark/extract."""
    file_url: str = Field(min_length=1, description="URL of the document to inspect")
    biz_id: Optional[str] = Field(default=None, max_length=255)


class PolicyAdaptRequest(BaseModel):
    file_type: str = Field(min_length=1, description="Extension, with or without leading dot")
    sensitivity: str = Field(description="high, medium or low")

    @field_validator("sensitivity")
    @classmethod
    def normalize_sensitivity(cls, v: str) -> str:
        return v.strip().lower()


class TaskListParams(BaseModel):
    """
    What:  Validated query parameters for GET /api/watermark/tasks.

    cursor: ISO datetime; the created_at of the last item of the previous
            page. The list is always newest-first.
    """
    limit: int = Field(default=20, ge=1, le=100)
    cursor: Optional[str] = Field(default=None, description="Pagination cursor (ISO datetime)")
    operation: Optional[str] = Field(default=None, description="embed or extract")
    status: Optional[str] = Field(default=None, description="processing, completed or failed")

    @field_validator("operation")
    @classmethod
    def validate_operation(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in {"embed", "extract"}:
            raise ValueError(f"Invalid operation '{v}'. Must be 'embed' or 'extract'")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        valid = {"pending", "processing", "completed", "failed"}
        if v is not None and v not in valid:
            raise ValueError(f"Invalid status '{v}'. Must be one of: {valid}")
        return v


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class TaskStatusResponse(BaseModel):
    """
    What:  Full representation of one task record.
    Who:   Returned by embed/extract (202), GET /tasks/{id}, cancel and retry.

    progress is advisory; clients should key off `status`.
    """
    task_id: str
    operation: str
    status: str
    progress: int = Field(ge=0, le=100)
    file_name: str
    file_size: int
    file_url: str
    original_file_hash: str
    result: Optional[str] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None
    policy_id: Optional[str] = None
    watermark_id: Optional[str] = None
    confidence: Optional[float] = None
    biz_id: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TaskListResponse(BaseModel):
    """Cursor-paginated task list (newest first)."""
    tasks: List[TaskStatusResponse]
    total_count: int
    next_cursor: Optional[str] = Field(
        default=None,
        description="Cursor for next page (ISO datetime). Null if no more pages.",
    )
    has_more: bool


class UploadResponse(BaseModel):
    """
    What:  Returned by POST /api/watermark/upload.
    file_url is the public URL the remote service downloads the file from.
    """
    file_url: str
    file_name: str
    file_size: int
    file_hash: str = Field(description="SHA-256 hex digest of the stored bytes")


class ProvenanceResponse(BaseModel):
    """
    What:  Result of POST /api/watermark/provenance.

    A file with no recognizable evidence is not an error: it yields
    confidence 0.0, strategy 'none' and null watermark fields.
    """
    watermark_id: Optional[str] = None
    content: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    strategy: str = Field(description="filename, content_hash or none")

    model_config = {"from_attributes": True}


class PolicyAdaptResponse(BaseModel):
    policy_id: str
    embed_depth: int
    compatibility: str

    model_config = {"from_attributes": True}


class PolicyResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    sensitivity: str
    embed_depth: int
    file_types: List[str]
    is_default: bool
    status: str

    model_config = {"from_attributes": True}


# ══════════════════════════════════════════════════════════════════════════
# Error & Health Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error body for all API errors.

    Example:
        {
            "error": "remote_service_error",
            "message": "Watermark service returned HTTP 500",
            "details": {"status_code": 500},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    What:  Health check response showing service and dependency status.
    Who:   Returned by GET /health for monitoring and load balancers.
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    watermark_service: str = Field(
        description="Remote watermark service status: available, unavailable, circuit_open"
    )
    active_jobs: int = Field(description="Background jobs currently polling")
    uptime_seconds: float = Field(description="Seconds since service started")
