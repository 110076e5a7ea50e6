"""
Watermark Pipeline Backend — Domain Records
=============================================

What:  Plain dataclasses passed between services and repositories.
How:   SQL repositories convert ORM rows into these; in-memory repositories
       store them directly. Route handlers serialize them through the
       Pydantic schemas with `from_attributes=True`.
Who:   Every service module. Nothing outside services/repositories.py
       touches an ORM row.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


# ── Task status & failure reason vocabulary ───────────────────────────────
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

REASON_REMOTE_FAILED = "remote_failed"
REASON_ERROR = "error"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"

OPERATION_EMBED = "embed"
OPERATION_EXTRACT = "extract"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_watermark_id() -> str:
    """'wm_' followed by 32 lowercase hex chars."""
    return f"wm_{uuid.uuid4().hex}"


@dataclass
class WatermarkContent:
    watermark_id: str
    content: str
    original_file_hash: str
    biz_id: Optional[str] = None
    watermark_file_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TaskRecord:
    """
    Local mirror of one remote task.

    Created in 'processing' with progress 0; moved exactly once into
    'completed' or 'failed' and never touched again.
    """
    task_id: str
    operation: str
    file_name: str
    file_url: str
    original_file_hash: str
    file_size: int = 0
    status: str = STATUS_PROCESSING
    progress: int = 0
    result: Optional[str] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None
    policy_id: Optional[str] = None
    watermark_id: Optional[str] = None
    confidence: Optional[float] = None
    biz_id: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class WatermarkPolicy:
    id: str
    name: str
    sensitivity: str
    embed_depth: int
    file_types: List[str] = field(default_factory=list)
    description: Optional[str] = None
    is_default: bool = False
    status: str = "active"

    def supports(self, file_type: str) -> bool:
        return file_type.lower().lstrip(".") in {t.lower().lstrip(".") for t in self.file_types}


@dataclass(frozen=True)
class ProvenanceResult:
    """Outcome of a provenance lookup. confidence 0.0 means no evidence."""
    confidence: float
    strategy: str
    watermark_id: Optional[str] = None
    content: Optional[str] = None


@dataclass(frozen=True)
class PolicyAdaptation:
    policy_id: str
    embed_depth: int
    compatibility: str


@dataclass
class TaskPage:
    """One page of a newest-first task listing."""
    tasks: List[TaskRecord]
    total_count: int
    next_cursor: Optional[str] = None
    has_more: bool = False


# ── Reference policies ────────────────────────────────────────────────────
# Seeded by migration 001 and by the in-memory policy store.
REFERENCE_POLICIES = (
    WatermarkPolicy(
        id="1",
        name="Standard document watermark",
        description="Balanced visibility for everyday internal documents",
        sensitivity="medium",
        embed_depth=2,
        file_types=["pdf", "doc", "docx", "ppt", "pptx"],
        is_default=True,
    ),
    WatermarkPolicy(
        id="2",
        name="High security watermark",
        description="Deep embedding for confidential material",
        sensitivity="high",
        embed_depth=3,
        file_types=["pdf", "ppt", "pptx"],
    ),
    WatermarkPolicy(
        id="3",
        name="Lightweight watermark",
        description="Minimal footprint for spreadsheets and drafts",
        sensitivity="low",
        embed_depth=1,
        file_types=["doc", "docx", "xls", "xlsx"],
    ),
)
