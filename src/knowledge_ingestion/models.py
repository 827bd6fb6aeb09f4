from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import text as sql_text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()

# NOTE: keep this portable (sqlite for tests/dev); JSONB only on Postgres.
JSONType = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


NON_TERMINAL_STATUSES = (JobStatus.pending.value, JobStatus.running.value)

_ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    JobStatus.pending.value: (JobStatus.running.value, JobStatus.failed.value),
    JobStatus.running.value: (JobStatus.completed.value, JobStatus.failed.value),
    JobStatus.completed.value: (),
    JobStatus.failed.value: (),
}


class ItemType(str, enum.Enum):
    commit = "commit"
    issue = "issue"
    comment = "comment"
    document = "document"


class ItemStatus(str, enum.Enum):
    active = "active"
    archived = "archived"


class KnowledgeSource(Base):
    __tablename__ = "knowledge_sources"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    configuration: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sync_frequency_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=60
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Opaque connector cursor; advanced only when a job completes.
    checkpoint: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Job slot: set atomically by claim_job_slot, cleared on finalization.
    active_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )
    job_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    needs_reconfiguration: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_error_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    jobs: Mapped[list["SyncJob"]] = relationship(
        back_populates="source", cascade="all, delete-orphan", passive_deletes=True
    )
    items: Mapped[list["KnowledgeItem"]] = relationship(
        back_populates="source", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("sync_frequency_minutes > 0", name="ck_sources_interval"),
    )


class KnowledgeItem(Base):
    __tablename__ = "knowledge_items"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("knowledge_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    item_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=ItemStatus.active.value
    )
    # `metadata` is reserved on declarative classes.
    item_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # NULL while the derived search index is stale.
    indexed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    source: Mapped[KnowledgeSource] = relationship(back_populates="items")
    postings: Mapped[list["SearchPosting"]] = relationship(
        cascade="all, delete-orphan", passive_deletes=True
    )
    tag_links: Mapped[list["KnowledgeItemTag"]] = relationship(
        back_populates="item", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint(
            "source_id", "source_reference", name="ux_knowledge_items_source_ref"
        ),
        Index("idx_knowledge_items_source", "source_id"),
        Index("idx_knowledge_items_type", "item_type"),
        Index("idx_knowledge_items_created", "created_at"),
    )


class SearchPosting(Base):
    """One (token, zone) entry of an item's derived inverted index."""

    __tablename__ = "knowledge_item_postings"

    item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("knowledge_items.id", ondelete="CASCADE"),
        primary_key=True,
    )
    token: Mapped[str] = mapped_column(String(255), primary_key=True)
    zone: Mapped[str] = mapped_column(String(16), primary_key=True)
    positions: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    score: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("idx_postings_token", "token"),)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    color: Mapped[str] = mapped_column(
        String(7), nullable=False, default="#007bff", server_default="#007bff"
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    item_links: Mapped[list["KnowledgeItemTag"]] = relationship(
        back_populates="tag", cascade="all, delete-orphan", passive_deletes=True
    )


class KnowledgeItemTag(Base):
    __tablename__ = "knowledge_item_tags"

    knowledge_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("knowledge_items.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    )
    confidence_score: Mapped[float] = mapped_column(
        Float, nullable=False, default=1.0
    )
    assigned_at: Mapped[datetime] = mapped_column(
        "created_at", DateTime, nullable=False, default=utcnow
    )

    item: Mapped[KnowledgeItem] = relationship(back_populates="tag_links")
    tag: Mapped[Tag] = relationship(back_populates="item_links")

    __table_args__ = (
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_item_tags_confidence",
        ),
    )


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("knowledge_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=JobStatus.pending.value
    )
    trigger: Mapped[str] = mapped_column(
        String(32), nullable=False, default="scheduled"
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    source: Mapped[KnowledgeSource] = relationship(back_populates="jobs")

    __table_args__ = (
        Index("idx_sync_jobs_status", "status"),
        Index("idx_sync_jobs_source", "source_id"),
        # Backstop for the job-slot claim: one non-terminal job per source.
        Index(
            "ux_sync_jobs_one_active",
            "source_id",
            unique=True,
            sqlite_where=sql_text("status IN ('pending', 'running')"),
            postgresql_where=sql_text("status IN ('pending', 'running')"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_STATUSES

    def transition(self, to: JobStatus) -> None:
        """Move to `to`, refusing anything but pending -> running -> terminal."""
        target = JobStatus(to).value
        if target not in _ALLOWED_TRANSITIONS.get(self.status, ()):
            raise ValueError(f"Illegal job transition {self.status} -> {target}")
        self.status = target
