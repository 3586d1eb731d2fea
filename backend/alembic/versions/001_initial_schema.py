"""Initial schema with all tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

This migration creates the complete Clarity database schema:
- Tables: users, brains, streams, files, cards, stream_cards, card_links, processing_jobs
- Indexes: stream ordering, title lookup, job recovery scans
- Triggers: updated_at auto-update function and triggers
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UPDATED_AT_TABLES = ["users", "brains", "cards"]


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, postgresql.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(name, postgresql.TIMESTAMP(timezone=True), server_default=sa.text("NOW()"), nullable=False)


def upgrade() -> None:
    # ==========================================================================
    # EXTENSIONS
    # ==========================================================================
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ==========================================================================
    # USERS TABLE
    # ==========================================================================
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("storage_quota", sa.BigInteger(), server_default=sa.text("1073741824"), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    # ==========================================================================
    # BRAINS TABLE
    # ==========================================================================
    op.create_table(
        "brains",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("storage_used", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "name", name="uq_brains_user_name"),
        sa.CheckConstraint("storage_used >= 0", name="ck_brains_storage_used_nonnegative"),
    )
    op.create_index("ix_brains_user_id", "brains", ["user_id"])

    # ==========================================================================
    # STREAMS TABLE
    # ==========================================================================
    op.create_table(
        "streams",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("brain_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_favorited", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _timestamp("created_at"),
        _timestamp("last_accessed_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["brain_id"], ["brains.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_streams_brain_accessed", "streams", ["brain_id", "last_accessed_at"])

    # ==========================================================================
    # FILES TABLE
    # ==========================================================================
    op.create_table(
        "files",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("brain_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_type", sa.String(20), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("storage_key", sa.String(1024), nullable=False),
        sa.Column("upload_method", sa.String(50), server_default="file_picker", nullable=False),
        sa.Column("processing_status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("processing_error", sa.Text(), nullable=True),
        _timestamp("uploaded_at"),
        _timestamp("processed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["brain_id"], ["brains.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_files_processing_status",
        ),
    )
    op.create_index("ix_files_brain_id", "files", ["brain_id"])

    # ==========================================================================
    # CARDS TABLE
    # ==========================================================================
    op.create_table(
        "cards",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("brain_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("card_type", sa.String(20), server_default="saved", nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("stream_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("file_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        sa.Column("content_preview", sa.String(500), server_default="", nullable=False),
        sa.Column("content_hash", sa.String(64), server_default="", nullable=False),
        sa.Column("content_size", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["brain_id"], ["brains.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stream_id"], ["streams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["file_id"], ["files.id"], ondelete="SET NULL"),
        sa.CheckConstraint("card_type IN ('saved', 'unsaved', 'file')", name="ck_cards_card_type"),
        sa.CheckConstraint("card_type <> 'unsaved' OR stream_id IS NOT NULL", name="ck_cards_unsaved_has_stream"),
    )
    op.create_index("idx_cards_brain_title", "cards", ["brain_id", "title"])
    op.create_index("ix_cards_stream_id", "cards", ["stream_id"])

    # ==========================================================================
    # STREAM_CARDS TABLE
    # ==========================================================================
    op.create_table(
        "stream_cards",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("stream_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("card_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("depth", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_in_ai_context", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_collapsed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _timestamp("added_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["stream_id"], ["streams.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["card_id"], ["cards.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("stream_id", "card_id", name="uq_stream_cards_stream_card"),
        sa.CheckConstraint("position >= 0", name="ck_stream_cards_position_nonnegative"),
        sa.CheckConstraint("depth >= 0", name="ck_stream_cards_depth_nonnegative"),
    )
    op.create_index("idx_stream_cards_stream_position", "stream_cards", ["stream_id", "position"])
    op.create_index("ix_stream_cards_card_id", "stream_cards", ["card_id"])

    # ==========================================================================
    # CARD_LINKS TABLE
    # ==========================================================================
    op.create_table(
        "card_links",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("source_card_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("target_card_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("link_text", sa.String(200), nullable=False),
        sa.Column("position_in_source", sa.Integer(), nullable=False),
        sa.Column("is_valid", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["source_card_id"], ["cards.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["target_card_id"], ["cards.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_card_links_source_card_id", "card_links", ["source_card_id"])
    op.create_index("ix_card_links_target_card_id", "card_links", ["target_card_id"])

    # ==========================================================================
    # PROCESSING_JOBS TABLE
    # ==========================================================================
    op.create_table(
        "processing_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("brain_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("input_data", postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("output_data", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _timestamp("created_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["brain_id"], ["brains.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "job_type IN ('FILE_PROCESSING', 'LINK_RESOLUTION', 'STORAGE_CALCULATION')",
            name="ck_processing_jobs_job_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_processing_jobs_status",
        ),
    )
    op.create_index("idx_processing_jobs_status_created", "processing_jobs", ["status", "created_at"])
    op.create_index("idx_processing_jobs_user_created", "processing_jobs", ["user_id", "created_at"])

    # ==========================================================================
    # UPDATED_AT TRIGGER FUNCTION
    # ==========================================================================
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in UPDATED_AT_TABLES:
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade() -> None:
    for table in UPDATED_AT_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")

    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    # Drop tables in reverse dependency order
    op.drop_table("processing_jobs")
    op.drop_table("card_links")
    op.drop_table("stream_cards")
    op.drop_table("cards")
    op.drop_table("files")
    op.drop_table("streams")
    op.drop_table("brains")
    op.drop_table("users")
