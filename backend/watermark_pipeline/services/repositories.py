"""
Watermark Pipeline Backend — Repositories
===========================================

What:  Persistence interfaces for task records, watermark contents and
       policies, with SQLAlchemy and in-memory implementations.
How:   SQL repositories open one short-lived session per operation from an
       `async_sessionmaker`, so they are safe to use from background jobs
       that outlive the request which started them. Terminal writes are
       conditional UPDATEs (`WHERE status = 'processing'`).
Who:   WatermarkPipeline, TaskLifecycleTracker, ProvenanceResolver,
       PolicyAdapter callers. Tests use the in-memory implementations.

Conditional writes:
    TaskStore.finalize / update_progress   → only while status == 'processing'
    WatermarkContentStore.set_watermark_file_hash → only while the hash is NULL
    Each returns True when the write was applied.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from watermark_pipeline.database import async_session_factory
from watermark_pipeline.exceptions import DatabaseError
from watermark_pipeline.models.watermark import (
    TaskRecordRow,
    WatermarkContentRow,
    WatermarkPolicyRow,
)
from watermark_pipeline.services.records import (
    REFERENCE_POLICIES,
    STATUS_PROCESSING,
    TaskRecord,
    WatermarkContent,
    WatermarkPolicy,
    utcnow,
)

logger = logging.getLogger(__name__)

# Fields a terminal write may set besides status/progress
FINAL_FIELDS = frozenset(
    {"result", "error_message", "failure_reason", "watermark_id", "confidence"}
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_final_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - FINAL_FIELDS
    if unknown:
        raise ValueError(f"Cannot set {sorted(unknown)} in a terminal write")


# ══════════════════════════════════════════════════════════════════════════
# Interfaces
# ══════════════════════════════════════════════════════════════════════════


class TaskStore(ABC):
    @abstractmethod
    async def create(self, record: TaskRecord) -> TaskRecord:
        ...

    @abstractmethod
    async def get(self, task_id: str) -> Optional[TaskRecord]:
        ...

    @abstractmethod
    async def update_progress(self, task_id: str, progress: int) -> bool:
        """Advisory progress update; ignored unless the record is processing."""
        ...

    @abstractmethod
    async def finalize(
        self, task_id: str, status: str, progress: Optional[int] = None, **fields: Any
    ) -> bool:
        """
        The single terminal write. Applied only if the record is still
        processing; returns False otherwise. `progress=None` keeps the
        current value.
        """
        ...

    @abstractmethod
    async def list_recent(
        self,
        limit: int,
        before: Optional[datetime] = None,
        operation: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[List[TaskRecord], int]:
        """
        Newest-first records created strictly before `before`, plus the total
        number of records matching the filters (ignoring the cursor).
        """
        ...


class WatermarkContentStore(ABC):
    @abstractmethod
    async def create(self, content: WatermarkContent) -> WatermarkContent:
        ...

    @abstractmethod
    async def get(self, watermark_id: str) -> Optional[WatermarkContent]:
        ...

    @abstractmethod
    async def find_by_id_prefix(self, prefix: str) -> Optional[WatermarkContent]:
        """Oldest content whose watermark_id starts with `prefix`."""
        ...

    @abstractmethod
    async def find_by_hash(self, file_hash: str) -> Optional[WatermarkContent]:
        """Match on watermark_file_hash first, then on original_file_hash."""
        ...

    @abstractmethod
    async def set_watermark_file_hash(self, watermark_id: str, file_hash: str) -> bool:
        ...


class PolicyStore(ABC):
    @abstractmethod
    async def get(self, policy_id: str) -> Optional[WatermarkPolicy]:
        ...

    @abstractmethod
    async def get_default(self) -> Optional[WatermarkPolicy]:
        ...

    @abstractmethod
    async def list_active(self) -> List[WatermarkPolicy]:
        ...


# ══════════════════════════════════════════════════════════════════════════
# SQLAlchemy implementations
# ══════════════════════════════════════════════════════════════════════════


def _task_from_row(row: TaskRecordRow) -> TaskRecord:
    return TaskRecord(
        task_id=row.task_id,
        operation=row.operation,
        file_name=row.file_name,
        file_size=row.file_size,
        file_url=row.file_url,
        original_file_hash=row.original_file_hash,
        status=row.status,
        progress=row.progress,
        result=row.result,
        error_message=row.error_message,
        failure_reason=row.failure_reason,
        policy_id=row.policy_id,
        watermark_id=row.watermark_id,
        confidence=row.confidence,
        biz_id=row.biz_id,
        retry_of=row.retry_of,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        completed_at=_aware(row.completed_at),
    )


def _content_from_row(row: WatermarkContentRow) -> WatermarkContent:
    return WatermarkContent(
        watermark_id=row.watermark_id,
        content=row.content,
        biz_id=row.biz_id,
        original_file_hash=row.original_file_hash,
        watermark_file_hash=row.watermark_file_hash,
        created_at=_aware(row.created_at),
    )


def _policy_from_row(row: WatermarkPolicyRow) -> WatermarkPolicy:
    return WatermarkPolicy(
        id=row.id,
        name=row.name,
        description=row.description,
        sensitivity=row.sensitivity,
        embed_depth=row.embed_depth,
        file_types=list(row.file_types or []),
        is_default=row.is_default,
        status=row.status,
    )


class _SqlRepository:
    """Shared session handling: one session per operation, errors → DatabaseError."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session_factory

    def _session(self) -> AsyncSession:
        return self._session_factory()

    @staticmethod
    def _db_error(action: str, e: Exception, **context: Any) -> DatabaseError:
        logger.error("Database error while %s: %s", action, str(e), exc_info=True)
        return DatabaseError(context={"action": action, "error_type": type(e).__name__, **context})


class SqlTaskStore(_SqlRepository, TaskStore):
    async def create(self, record: TaskRecord) -> TaskRecord:
        row = TaskRecordRow(
            task_id=record.task_id,
            operation=record.operation,
            file_name=record.file_name,
            file_size=record.file_size,
            file_url=record.file_url,
            original_file_hash=record.original_file_hash,
            status=record.status,
            progress=record.progress,
            result=record.result,
            error_message=record.error_message,
            failure_reason=record.failure_reason,
            policy_id=record.policy_id,
            watermark_id=record.watermark_id,
            confidence=record.confidence,
            biz_id=record.biz_id,
            retry_of=record.retry_of,
            created_at=record.created_at,
            updated_at=record.updated_at,
            completed_at=record.completed_at,
        )
        try:
            async with self._session() as session:
                session.add(row)
                await session.commit()
                return _task_from_row(row)
        except SQLAlchemyError as e:
            raise self._db_error("creating task record", e, task_id=record.task_id) from e

    async def get(self, task_id: str) -> Optional[TaskRecord]:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(TaskRecordRow).where(TaskRecordRow.task_id == task_id)
                )
                row = result.scalar_one_or_none()
                return _task_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise self._db_error("fetching task record", e, task_id=task_id) from e

    async def _conditional_update(self, task_id: str, values: Dict[str, Any]) -> bool:
        values["updated_at"] = utcnow()
        try:
            async with self._session() as session:
                result = await session.execute(
                    update(TaskRecordRow)
                    .where(
                        TaskRecordRow.task_id == task_id,
                        TaskRecordRow.status == STATUS_PROCESSING,
                    )
                    .values(**values)
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise self._db_error("updating task record", e, task_id=task_id) from e

    async def update_progress(self, task_id: str, progress: int) -> bool:
        return await self._conditional_update(task_id, {"progress": progress})

    async def finalize(
        self, task_id: str, status: str, progress: Optional[int] = None, **fields: Any
    ) -> bool:
        _check_final_fields(fields)
        values: Dict[str, Any] = {"status": status, "completed_at": utcnow(), **fields}
        if progress is not None:
            values["progress"] = progress
        return await self._conditional_update(task_id, values)

    async def list_recent(
        self,
        limit: int,
        before: Optional[datetime] = None,
        operation: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[List[TaskRecord], int]:
        filters = []
        if operation:
            filters.append(TaskRecordRow.operation == operation)
        if status:
            filters.append(TaskRecordRow.status == status)

        query = select(TaskRecordRow).where(*filters)
        if before is not None:
            query = query.where(TaskRecordRow.created_at < before)
        query = query.order_by(desc(TaskRecordRow.created_at)).limit(limit)

        try:
            async with self._session() as session:
                rows = (await session.execute(query)).scalars().all()
                total = (
                    await session.execute(
                        select(func.count(TaskRecordRow.id)).where(*filters)
                    )
                ).scalar() or 0
                return [_task_from_row(r) for r in rows], total
        except SQLAlchemyError as e:
            raise self._db_error("listing task records", e) from e


class SqlWatermarkContentStore(_SqlRepository, WatermarkContentStore):
    async def create(self, content: WatermarkContent) -> WatermarkContent:
        row = WatermarkContentRow(
            watermark_id=content.watermark_id,
            content=content.content,
            biz_id=content.biz_id,
            original_file_hash=content.original_file_hash,
            watermark_file_hash=content.watermark_file_hash,
            created_at=content.created_at,
        )
        try:
            async with self._session() as session:
                session.add(row)
                await session.commit()
                return _content_from_row(row)
        except SQLAlchemyError as e:
            raise self._db_error(
                "creating watermark content", e, watermark_id=content.watermark_id
            ) from e

    async def _first(self, query) -> Optional[WatermarkContent]:
        async with self._session() as session:
            row = (await session.execute(query.limit(1))).scalars().first()
            return _content_from_row(row) if row is not None else None

    async def get(self, watermark_id: str) -> Optional[WatermarkContent]:
        try:
            return await self._first(
                select(WatermarkContentRow).where(WatermarkContentRow.watermark_id == watermark_id)
            )
        except SQLAlchemyError as e:
            raise self._db_error("fetching watermark content", e) from e

    async def find_by_id_prefix(self, prefix: str) -> Optional[WatermarkContent]:
        try:
            return await self._first(
                select(WatermarkContentRow)
                .where(WatermarkContentRow.watermark_id.startswith(prefix, autoescape=True))
                .order_by(WatermarkContentRow.created_at)
            )
        except SQLAlchemyError as e:
            raise self._db_error("looking up watermark by id prefix", e) from e

    async def find_by_hash(self, file_hash: str) -> Optional[WatermarkContent]:
        try:
            match = await self._first(
                select(WatermarkContentRow)
                .where(WatermarkContentRow.watermark_file_hash == file_hash)
                .order_by(WatermarkContentRow.created_at)
            )
            if match is not None:
                return match
            return await self._first(
                select(WatermarkContentRow)
                .where(WatermarkContentRow.original_file_hash == file_hash)
                .order_by(desc(WatermarkContentRow.created_at))
            )
        except SQLAlchemyError as e:
            raise self._db_error("looking up watermark by hash", e) from e

    async def set_watermark_file_hash(self, watermark_id: str, file_hash: str) -> bool:
        try:
            async with self._session() as session:
                result = await session.execute(
                    update(WatermarkContentRow)
                    .where(
                        WatermarkContentRow.watermark_id == watermark_id,
                        WatermarkContentRow.watermark_file_hash.is_(None),
                    )
                    .values(watermark_file_hash=file_hash)
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise self._db_error("setting watermark file hash", e, watermark_id=watermark_id) from e


class SqlPolicyStore(_SqlRepository, PolicyStore):
    async def get(self, policy_id: str) -> Optional[WatermarkPolicy]:
        try:
            async with self._session() as session:
                row = await session.get(WatermarkPolicyRow, policy_id)
                return _policy_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise self._db_error("fetching policy", e, policy_id=policy_id) from e

    async def get_default(self) -> Optional[WatermarkPolicy]:
        try:
            async with self._session() as session:
                row = (
                    await session.execute(
                        select(WatermarkPolicyRow)
                        .where(
                            WatermarkPolicyRow.is_default.is_(True),
                            WatermarkPolicyRow.status == "active",
                        )
                        .order_by(WatermarkPolicyRow.id)
                        .limit(1)
                    )
                ).scalars().first()
                return _policy_from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise self._db_error("fetching default policy", e) from e

    async def list_active(self) -> List[WatermarkPolicy]:
        try:
            async with self._session() as session:
                rows = (
                    await session.execute(
                        select(WatermarkPolicyRow)
                        .where(WatermarkPolicyRow.status == "active")
                        .order_by(WatermarkPolicyRow.id)
                    )
                ).scalars().all()
                return [_policy_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise self._db_error("listing policies", e) from e


# ══════════════════════════════════════════════════════════════════════════
# In-memory implementations (tests, local runs without a database)
# ══════════════════════════════════════════════════════════════════════════


class InMemoryTaskStore(TaskStore):
    def __init__(self):
        self._records: Dict[str, TaskRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: TaskRecord) -> TaskRecord:
        async with self._lock:
            if record.task_id in self._records:
                raise DatabaseError(context={"task_id": record.task_id, "reason": "duplicate"})
            self._records[record.task_id] = replace(record)
            return replace(record)

    async def get(self, task_id: str) -> Optional[TaskRecord]:
        record = self._records.get(task_id)
        return replace(record) if record is not None else None

    async def update_progress(self, task_id: str, progress: int) -> bool:
        async with self._lock:
            record = self._records.get(task_id)
            if record is None or record.status != STATUS_PROCESSING:
                return False
            self._records[task_id] = replace(record, progress=progress, updated_at=utcnow())
            return True

    async def finalize(
        self, task_id: str, status: str, progress: Optional[int] = None, **fields: Any
    ) -> bool:
        _check_final_fields(fields)
        async with self._lock:
            record = self._records.get(task_id)
            if record is None or record.status != STATUS_PROCESSING:
                return False
            now = utcnow()
            self._records[task_id] = replace(
                record,
                status=status,
                progress=record.progress if progress is None else progress,
                updated_at=now,
                completed_at=now,
                **fields,
            )
            return True

    async def list_recent(
        self,
        limit: int,
        before: Optional[datetime] = None,
        operation: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[List[TaskRecord], int]:
        matching = [
            r
            for r in self._records.values()
            if (operation is None or r.operation == operation)
            and (status is None or r.status == status)
        ]
        matching.sort(key=lambda r: r.created_at, reverse=True)
        page = [r for r in matching if before is None or r.created_at < before][:limit]
        return [replace(r) for r in page], len(matching)


class InMemoryWatermarkContentStore(WatermarkContentStore):
    def __init__(self):
        self._contents: Dict[str, WatermarkContent] = {}

    def _ordered(self) -> List[WatermarkContent]:
        return sorted(self._contents.values(), key=lambda c: c.created_at)

    async def create(self, content: WatermarkContent) -> WatermarkContent:
        self._contents[content.watermark_id] = replace(content)
        return replace(content)

    async def get(self, watermark_id: str) -> Optional[WatermarkContent]:
        content = self._contents.get(watermark_id)
        return replace(content) if content is not None else None

    async def find_by_id_prefix(self, prefix: str) -> Optional[WatermarkContent]:
        for content in self._ordered():
            if content.watermark_id.startswith(prefix):
                return replace(content)
        return None

    async def find_by_hash(self, file_hash: str) -> Optional[WatermarkContent]:
        ordered = self._ordered()
        for content in ordered:
            if content.watermark_file_hash == file_hash:
                return replace(content)
        for content in reversed(ordered):
            if content.original_file_hash == file_hash:
                return replace(content)
        return None

    async def set_watermark_file_hash(self, watermark_id: str, file_hash: str) -> bool:
        content = self._contents.get(watermark_id)
        if content is None or content.watermark_file_hash is not None:
            return False
        content.watermark_file_hash = file_hash
        return True


class InMemoryPolicyStore(PolicyStore):
    def __init__(self, policies: Optional[Iterable[WatermarkPolicy]] = None):
        source = REFERENCE_POLICIES if policies is None else policies
        self._policies: Dict[str, WatermarkPolicy] = {p.id: replace(p) for p in source}

    async def get(self, policy_id: str) -> Optional[WatermarkPolicy]:
        policy = self._policies.get(policy_id)
        return replace(policy) if policy is not None else None

    async def get_default(self) -> Optional[WatermarkPolicy]:
        for policy in sorted(self._policies.values(), key=lambda p: p.id):
            if policy.is_default and policy.status == "active":
                return replace(policy)
        return None

    async def list_active(self) -> List[WatermarkPolicy]:
        return [
            replace(p)
            for p in sorted(self._policies.values(), key=lambda p: p.id)
            if p.status == "active"
        ]
