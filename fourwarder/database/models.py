"""
SQLAlchemy 2.0 models for the moderation relay.
Stores correlation entries and per-room resume positions.
"""
import enum
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class CorrelationStatus(enum.Enum):
    """Lifecycle status of a moderation case."""
    PENDING = "pending"
    APPROVED = "approved"
    FORWARDED = "forwarded"
    REDACTED = "redacted"


class CorrelationRecord(Base):
    """One original message, its moderation copy and, once forwarded, its output copy."""
    __tablename__ = "correlations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    original_room_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    moderation_room_id: Mapped[str] = mapped_column(String(255), nullable=False)
    moderation_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    output_room_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    output_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[CorrelationStatus] = mapped_column(
        Enum(CorrelationStatus), nullable=False, default=CorrelationStatus.PENDING
    )
    sender: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    content: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("original_room_id", "original_event_id", name="unique_original"),
        UniqueConstraint("moderation_room_id", "moderation_event_id", name="unique_moderation_copy"),
        Index("idx_status_updated", "status", "updated_at"),
    )


class ResumePositionRecord(Base):
    """Last fully processed stream position of one room."""
    __tablename__ = "resume_positions"

    room_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    batch: Mapped[int] = mapped_column(Integer, nullable=False)
    offset: Mapped[int] = mapped_column(Integer, nullable=False)
    since: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
