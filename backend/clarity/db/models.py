"""
SQLAlchemy 2.0 Models for Clarity.

Uses modern declarative syntax with Mapped[] type annotations.
All models use UUID primary keys. Column types are dialect-neutral
(Uuid, JSON with a JSONB variant) so the same metadata runs on
PostgreSQL and on SQLite in tests.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from clarity.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class CardType(str, PyEnum):
    """Kind of card. Unsaved cards may become saved; file cards never change kind."""

    SAVED = "saved"
    UNSAVED = "unsaved"
    FILE = "file"


class FileProcessingStatus(str, PyEnum):
    """Extraction state of an uploaded file."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, PyEnum):
    """Background job kinds handled by the job queue."""

    FILE_PROCESSING = "FILE_PROCESSING"
    LINK_RESOLUTION = "LINK_RESOLUTION"
    STORAGE_CALCULATION = "STORAGE_CALCULATION"


class JobStatus(str, PyEnum):
    """Lifecycle of a background job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _values(enum_cls: type[PyEnum]) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# =============================================================================
# MODELS
# =============================================================================


class User(Base):
    """User account. Tokens are issued elsewhere; the API only verifies them."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_quota: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=1024 * 1024 * 1024
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


class Brain(Base):
    """
    A user's knowledge base.

    storage_used is a running counter of card content bytes plus uploaded
    file bytes; STORAGE_CALCULATION jobs recompute it from scratch.
    """

    __tablename__ = "brains"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_brains_user_name"),
        CheckConstraint("storage_used >= 0", name="ck_brains_storage_used_nonnegative"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


class Stream(Base):
    """Named, ordered working surface of cards inside a brain."""

    __tablename__ = "streams"
    __table_args__ = (Index("idx_streams_brain_accessed", "brain_id", "last_accessed_at"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    brain_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("brains.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_favorited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    last_accessed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class Card(Base):
    """
    A unit of content.

    - saved: titled, title unique among active saved cards in the brain
    - unsaved: untitled, owned by exactly one stream (stream_id)
    - file: created from an uploaded file (file_id), titled with the file name
    """

    __tablename__ = "cards"
    __table_args__ = (
        Index("idx_cards_brain_title", "brain_id", "title"),
        CheckConstraint(f"card_type IN ({_values(CardType)})", name="ck_cards_card_type"),
        CheckConstraint(
            "card_type <> 'unsaved' OR stream_id IS NOT NULL",
            name="ck_cards_unsaved_has_stream",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    brain_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("brains.id", ondelete="CASCADE"), nullable=False
    )
    card_type: Mapped[str] = mapped_column(String(20), nullable=False, default=CardType.SAVED.value)
    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    stream_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("streams.id", ondelete="CASCADE"), nullable=True, index=True
    )
    file_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("files.id", ondelete="SET NULL"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content_preview: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    content_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


class StreamCard(Base):
    """
    Ledger entry: a card's membership and position in a stream.

    Positions in a stream are always exactly 0..N-1. Only PositionLedger
    writes to this table.
    """

    __tablename__ = "stream_cards"
    __table_args__ = (
        UniqueConstraint("stream_id", "card_id", name="uq_stream_cards_stream_card"),
        Index("idx_stream_cards_stream_position", "stream_id", "position"),
        CheckConstraint("position >= 0", name="ck_stream_cards_position_nonnegative"),
        CheckConstraint("depth >= 0", name="ck_stream_cards_depth_nonnegative"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    stream_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("streams.id", ondelete="CASCADE"), nullable=False
    )
    card_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_in_ai_context: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_collapsed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class CardLink(Base):
    """A [[Title]] reference from one card's content to another card."""

    __tablename__ = "card_links"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    source_card_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    target_card_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("cards.id", ondelete="SET NULL"), nullable=True, index=True
    )
    link_text: Mapped[str] = mapped_column(String(200), nullable=False)
    position_in_source: Mapped[int] = mapped_column(Integer, nullable=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class File(Base):
    """An uploaded document kept in the document store."""

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            f"processing_status IN ({_values(FileProcessingStatus)})",
            name="ck_files_processing_status",
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    brain_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("brains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(20), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    upload_method: Mapped[str] = mapped_column(String(50), nullable=False, default="file_picker")
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FileProcessingStatus.PENDING.value
    )
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ProcessingJob(Base):
    """
    Durable mirror of a background job.

    The in-memory queue is the source of truth while a job is live; this
    row is what survives restarts and answers cold status lookups.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index("idx_processing_jobs_status_created", "status", "created_at"),
        Index("idx_processing_jobs_user_created", "user_id", "created_at"),
        CheckConstraint(f"job_type IN ({_values(JobType)})", name="ck_processing_jobs_job_type"),
        CheckConstraint(f"status IN ({_values(JobStatus)})", name="ck_processing_jobs_status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    brain_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("brains.id", ondelete="CASCADE"), nullable=True
    )
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.PENDING.value)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    output_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
