"""SQLAlchemy table definitions.

These map to the frozen dataclass domain models in courseprogress/models/.
Repos convert between rows and dataclasses; nothing above the repo layer
sees a row object.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from courseprogress.db.engine import Base

# --- Catalog (owned by the catalog service; read-only here) ---


class ChapterRow(Base):
    __tablename__ = "course_chapters"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    course_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    chapter_order: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # video|pdf|external_resource
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (UniqueConstraint("course_id", "chapter_order"),)


# --- Enrollments ---


class EnrollmentRow(Base):
    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    course_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="not_started"
    )  # not_started|in_progress|completed|dropped
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enrolled_at: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_accessed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id"),
        CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100", name="ck_enrollment_pct"
        ),
    )


# --- Chapter progress (one row per enrollment × chapter) ---


class ChapterProgressRow(Base):
    __tablename__ = "chapter_progress"

    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        primary_key=True,
    )
    chapter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("course_chapters.id"), primary_key=True
    )
    video_watched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pdf_viewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resource_opened: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_spent_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("time_spent_minutes >= 0", name="ck_progress_time"),
        CheckConstraint(
            "(completed AND completed_at IS NOT NULL)"
            " OR (NOT completed AND completed_at IS NULL)",
            name="ck_progress_completed_at",
        ),
    )
