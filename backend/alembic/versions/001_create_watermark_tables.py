"""Create watermark tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates `watermark_contents`, `task_records` and `watermark_policies`,
       and seeds the three reference policies.
How:   Dialect-neutral column types (see watermark_pipeline/models/watermark.py).

Rollback: downgrade() drops all three tables (destructive).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "watermark_contents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "watermark_id",
            sa.String(64),
            nullable=False,
            comment="wm_ + 32 hex chars; first 8 hex chars are the filename fragment",
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("biz_id", sa.String(255), nullable=True),
        sa.Column("original_file_hash", sa.String(64), nullable=False, comment="SHA-256 hex"),
        sa.Column(
            "watermark_file_hash",
            sa.String(64),
            nullable=True,
            comment="SHA-256 hex of the watermarked output, set once on completion",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("watermark_id"),
    )
    op.create_index(
        "idx_watermark_contents_original_hash", "watermark_contents", ["original_file_hash"]
    )
    op.create_index(
        "idx_watermark_contents_watermark_hash", "watermark_contents", ["watermark_file_hash"]
    )

    op.create_table(
        "task_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("task_id", sa.String(128), nullable=False, comment="Remote service task id"),
        sa.Column("operation", sa.String(20), nullable=False, comment="embed or extract"),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("file_url", sa.Text(), nullable=False),
        sa.Column("original_file_hash", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'processing'"),
            comment="pending, processing, completed, failed",
        ),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "failure_reason",
            sa.String(32),
            nullable=True,
            comment="remote_failed, error, timeout, cancelled",
        ),
        sa.Column("policy_id", sa.String(64), nullable=True),
        sa.Column("watermark_id", sa.String(64), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("biz_id", sa.String(255), nullable=True),
        sa.Column("retry_of", sa.String(128), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id"),
    )
    # Task list is always newest-first
    op.create_index("idx_task_records_created_at", "task_records", [sa.text("created_at DESC")])
    op.create_index("idx_task_records_status", "task_records", ["status"])

    policies = op.create_table(
        "watermark_policies",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sensitivity", sa.String(20), nullable=False),
        sa.Column("embed_depth", sa.Integer(), nullable=False),
        sa.Column("file_types", sa.JSON(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.bulk_insert(
        policies,
        [
            {
                "id": "1",
                "name": "Standard document watermark",
                "description": "Balanced visibility for everyday internal documents",
                "sensitivity": "medium",
                "embed_depth": 2,
                "file_types": ["pdf", "doc", "docx", "ppt", "pptx"],
                "is_default": True,
                "status": "active",
            },
            {
                "id": "2",
                "name": "High security watermark",
                "description": "Deep embedding for confidential material",
                "sensitivity": "high",
                "embed_depth": 3,
                "file_types": ["pdf", "ppt", "pptx"],
                "is_default": False,
                "status": "active",
            },
            {
                "id": "3",
                "name": "Lightweight watermark",
                "description": "Minimal footprint for spreadsheets and drafts",
                "sensitivity": "low",
                "embed_depth": 1,
                "file_types": ["doc", "docx", "xls", "xlsx"],
                "is_default": False,
                "status": "active",
            },
        ],
    )


def downgrade() -> None:
    op.drop_table("watermark_policies")
    op.drop_index("idx_task_records_status", table_name="task_records")
    op.drop_index("idx_task_records_created_at", table_name="task_records")
    op.drop_table("task_records")
    op.drop_index("idx_watermark_contents_watermark_hash", table_name="watermark_contents")
    op.drop_index("idx_watermark_contents_original_hash", table_name="watermark_contents")
    op.drop_table("watermark_contents")
