"""SQLAlchemy models for upload sessions and the pending upload queue."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class UploadSessionStatus(enum.Enum):
    created = "created"
    active = "active"
    expired = "expired"
    cancelled = "cancelled"


class PendingUploadStatus(enum.Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    error = "error"
    imported = "imported"


# Records the reviewing device may still act on; imported rows are history.
VISIBLE_UPLOAD_STATUSES = (
    PendingUploadStatus.pending,
    PendingUploadStatus.processing,
    PendingUploadStatus.ready,
    PendingUploadStatus.error,
)

OUTSTANDING_UPLOAD_STATUSES = (
    PendingUploadStatus.pending,
    PendingUploadStatus.processing,
)


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    owner_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    status: Mapped[UploadSessionStatus] = mapped_column(
        Enum(UploadSessionStatus), nullable=False, default=UploadSessionStatus.created
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    uploads: Mapped[List["PendingUpload"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", passive_deletes=True
    )


class PendingUpload(Base):
    __tablename__ = "pending_uploads"
    __table_args__ = (Index("ix_pending_uploads_session_status", "session_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("upload_sessions.id", ondelete="CASCADE"), nullable=True
    )
    owner_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    image_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    original_name: Mapped[Optional[str]] = mapped_column(String(255))
    extracted: Mapped[Optional[dict]] = mapped_column(JSON)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[PendingUploadStatus] = mapped_column(
        Enum(PendingUploadStatus), nullable=False, default=PendingUploadStatus.pending
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    session: Mapped[Optional[UploadSession]] = relationship(back_populates="uploads")


__all__ = [
    "Base",
    "OUTSTANDING_UPLOAD_STATUSES",
    "PendingUpload",
    "PendingUploadStatus",
    "UploadSession",
    "UploadSessionStatus",
    "VISIBLE_UPLOAD_STATUSES",
    "utcnow",
]
