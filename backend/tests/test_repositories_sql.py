"""
Watermark Pipeline Backend — SQL Repository Tests
===================================================

What:  SqlTaskStore, SqlWatermarkContentStore and SqlPolicyStore against an
       in-memory SQLite database (aiosqlite, one shared connection).
How:   Tables are created from Base.metadata for every test.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from watermark_pipeline.database import Base
from watermark_pipeline.models.watermark import WatermarkPolicyRow
from watermark_pipeline.services.records import (
    REFERENCE_POLICIES,
    TaskRecord,
    WatermarkContent,
    utcnow,
)
from watermark_pipeline.services.repositories import (
    SqlPolicyStore,
    SqlTaskStore,
    SqlWatermarkContentStore,
)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    yield factory
    await engine.dispose()


def make_record(task_id, created_at=None, **overrides):
    fields = dict(
        task_id=task_id,
        operation="embed",
        file_name="report.pdf",
        file_url="http://testserver/api/files/report.pdf",
        original_file_hash="a" * 64,
        file_size=1024,
    )
    if created_at is not None:
        fields["created_at"] = created_at
    fields.update(overrides)
    return TaskRecord(**fields)


class TestSqlTaskStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, session_factory):
        store = SqlTaskStore(session_factory)
        await store.create(make_record("t-1", biz_id="b-1"))

        record = await store.get("t-1")

        assert record.task_id == "t-1"
        assert record.status == "processing"
        assert record.file_size == 1024
        assert record.biz_id == "b-1"
        assert record.created_at.tzinfo is not None
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_finalize_applies_once(self, session_factory):
        store = SqlTaskStore(session_factory)
        await store.create(make_record("t-1"))
        assert await store.update_progress("t-1", 50) is True

        assert await store.finalize(
            "t-1", "failed", error_message="boom", failure_reason="error"
        ) is True
        assert await store.finalize("t-1", "completed", progress=100, result="late") is False
        assert await store.update_progress("t-1", 100) is False

        record = await store.get("t-1")
        assert record.status == "failed"
        assert record.progress == 50
        assert record.result is None
        assert record.failure_reason == "error"
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_list_recent_newest_first_with_filters(self, session_factory):
        store = SqlTaskStore(session_factory)
        now = utcnow()
        await store.create(make_record("old", created_at=now - timedelta(hours=2)))
        await store.create(make_record("mid", created_at=now - timedelta(hours=1), operation="extract"))
        await store.create(make_record("new", created_at=now))

        records, total = await store.list_recent(limit=10)
        assert [r.task_id for r in records] == ["new", "mid", "old"]
        assert total == 3

        records, total = await store.list_recent(limit=10, operation="embed")
        assert [r.task_id for r in records] == ["new", "old"]
        assert total == 2

        records, _ = await store.list_recent(limit=10, before=now - timedelta(minutes=30))
        assert [r.task_id for r in records] == ["mid", "old"]

    @pytest.mark.asyncio
    async def test_list_recent_by_status(self, session_factory):
        store = SqlTaskStore(session_factory)
        await store.create(make_record("a"))
        await store.create(make_record("b"))
        await store.finalize("b", "completed", progress=100, result="r")

        records, total = await store.list_recent(limit=10, status="processing")

        assert [r.task_id for r in records] == ["a"]
        assert total == 1


class TestSqlWatermarkContentStore:
    @pytest.mark.asyncio
    async def test_prefix_and_hash_lookup(self, session_factory):
        store = SqlWatermarkContentStore(session_factory)
        now = utcnow()
        await store.create(
            WatermarkContent(
                watermark_id="wm_1a2b3c4d" + "0" * 24,
                content="first",
                original_file_hash="o" * 64,
                created_at=now - timedelta(minutes=5),
            )
        )
        await store.create(
            WatermarkContent(
                watermark_id="wm_1a2b3c4d" + "f" * 24,
                content="second",
                original_file_hash="o" * 64,
                created_at=now,
            )
        )

        # Oldest prefix match, newest original-hash match
        assert (await store.find_by_id_prefix("wm_1a2b3c4d")).content == "first"
        assert (await store.find_by_hash("o" * 64)).content == "second"
        assert await store.find_by_hash("x" * 64) is None

    @pytest.mark.asyncio
    async def test_prefix_wildcards_are_literal(self, session_factory):
        store = SqlWatermarkContentStore(session_factory)
        await store.create(
            WatermarkContent(watermark_id="wm_abc", content="c", original_file_hash="o" * 64)
        )

        assert await store.find_by_id_prefix("wm_%") is None

    @pytest.mark.asyncio
    async def test_watermark_file_hash_set_once(self, session_factory):
        store = SqlWatermarkContentStore(session_factory)
        await store.create(
            WatermarkContent(watermark_id="wm_1", content="c", original_file_hash="o" * 64)
        )

        assert await store.set_watermark_file_hash("wm_1", "w" * 64) is True
        assert await store.set_watermark_file_hash("wm_1", "z" * 64) is False

        assert (await store.get("wm_1")).watermark_file_hash == "w" * 64
        assert (await store.find_by_hash("w" * 64)).watermark_id == "wm_1"


class TestSqlPolicyStore:
    @pytest.mark.asyncio
    async def test_reference_policies(self, session_factory):
        async with session_factory() as session:
            for policy in REFERENCE_POLICIES:
                session.add(
                    WatermarkPolicyRow(
                        id=policy.id,
                        name=policy.name,
                        description=policy.description,
                        sensitivity=policy.sensitivity,
                        embed_depth=policy.embed_depth,
                        file_types=policy.file_types,
                        is_default=policy.is_default,
                        status="disabled" if policy.id == "3" else "active",
                    )
                )
            await session.commit()
        store = SqlPolicyStore(session_factory)

        default = await store.get_default()
        assert default.id == "1"
        assert default.supports("docx")

        assert [p.id for p in await store.list_active()] == ["1", "2"]
        assert (await store.get("3")).status == "disabled"
        assert await store.get("404") is None
