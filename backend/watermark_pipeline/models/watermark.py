"""
Watermark Pipeline Backend — SQLAlchemy Models
================================================

What:  ORM models for the three tables the pipeline touches:
       `watermark_contents`, `task_records` and `watermark_policies`.
How:   Inherit from the shared DeclarativeBase; Alembic reads these for migrations.
Who:   Used only by the SQL repositories (services/repositories.py).
       Services work with the plain dataclass records those repositories return.

Table Design:
    - Column types are dialect-neutral (Uuid, JSON, DateTime(timezone=True))
      so the same models run on PostgreSQL (asyncpg) and SQLite (aiosqlite).
    - task_records.task_id is the remote service's task id and is unique.
    - A TaskRecord is mutated exactly once into a terminal state; repository
      updates are conditional on status == 'processing'.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from watermark_pipeline.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatermarkContentRow(Base):
    """
    A piece of watermark content registered by an embed request.

    Lifecycle:
        1. Inserted when an embed task is accepted (watermark_file_hash NULL)
        2. watermark_file_hash set once, when the embed task completes
        3. Never deleted by the pipeline
    """

    __tablename__ = "watermark_contents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Format: "wm_" + 32 hex chars. The first 8 hex chars double as the
    # filename fragment written into watermarked output names.
    watermark_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    biz_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # SHA-256 hex digests
    original_file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    watermark_file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_watermark_contents_original_hash", "original_file_hash"),
        Index("idx_watermark_contents_watermark_hash", "watermark_file_hash"),
    )

    def __repr__(self) -> str:
        return f"<WatermarkContentRow(watermark_id='{self.watermark_id}')>"


class TaskRecordRow(Base):
    """
    Local mirror of one remote watermark task.

    Status values: 'pending' → 'processing' → 'completed' | 'failed'.
    Records are created directly in 'processing' once the remote service
    has accepted the task.
    """

    __tablename__ = "task_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    # 'embed' or 'extract'
    operation: Mapped[str] = mapped_column(String(20), nullable=False)

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    original_file_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="processing")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # embed: public URL of the stored watermarked file; extract: extracted text
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # remote_failed | error | timeout | cancelled
    failure_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    policy_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    watermark_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    biz_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    retry_of: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # created_at DESC: the task list is always newest-first
    __table_args__ = (
        Index("idx_task_records_created_at", created_at.desc()),
        Index("idx_task_records_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<TaskRecordRow(task_id='{self.task_id}', operation='{self.operation}', "
            f"status='{self.status}')>"
        )


class WatermarkPolicyRow(Base):
    """Embedding policy. Read-only for the pipeline; seeded by migration 001."""

    __tablename__ = "watermark_policies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # high | medium | low
    sensitivity: Mapped[str] = mapped_column(String(20), nullable=False)
    embed_depth: Mapped[int] = mapped_column(Integer, nullable=False)
    # JSON list of extensions without the leading dot, e.g. ["pdf", "docx"]
    file_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # active | disabled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    def __repr__(self) -> str:
        return f"<WatermarkPolicyRow(id='{self.id}', name='{self.name}')>"
