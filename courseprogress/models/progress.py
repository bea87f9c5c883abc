from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar
from uuid import UUID

# ---------------------------------------------------------------------------
# Per-chapter record
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChapterProgress:
    """One learner's engagement with one chapter, keyed by (enrollment, chapter).

    Never mutated in place: the state machine returns a new instance, and
    the store swaps it in only if `version` still matches what was read.
    """

    enrollment_id: UUID
    chapter_id: UUID
    video_watched: bool = False
    pdf_viewed: bool = False
    resource_opened: bool = False
    completed: bool = False
    time_spent_minutes: int = 0
    completed_at: int | None = None
    version: int = 1

    @staticmethod
    def new(*, enrollment_id: UUID, chapter_id: UUID) -> ChapterProgress:
        return ChapterProgress(enrollment_id=enrollment_id, chapter_id=chapter_id)

    @property
    def engagement_flags(self) -> tuple[bool, bool, bool]:
        return (self.video_watched, self.pdf_viewed, self.resource_opened)


# ---------------------------------------------------------------------------
# Engagement events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MarkVideoWatched:
    kind: ClassVar[str] = "video_watched"


@dataclass(frozen=True, slots=True)
class MarkPdfViewed:
    kind: ClassVar[str] = "pdf_viewed"


@dataclass(frozen=True, slots=True)
class MarkResourceOpened:
    kind: ClassVar[str] = "resource_opened"


@dataclass(frozen=True, slots=True)
class MarkCompleted:
    kind: ClassVar[str] = "completed"


@dataclass(frozen=True, slots=True)
class AddTimeSpent:
    minutes: int
    kind: ClassVar[str] = "time_spent"


ProgressEvent = (
    MarkVideoWatched | MarkPdfViewed | MarkResourceOpened | MarkCompleted | AddTimeSpent
)

# ---------------------------------------------------------------------------
# Read models: derived on demand, never persisted
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChapterProgressDetail:
    chapter_id: UUID
    order: int
    content_type: str
    video_watched: bool
    pdf_viewed: bool
    resource_opened: bool
    completed: bool
    time_spent_minutes: int
    completed_at: int | None
    engagement_quantum: int  # 0|25|50|100, display only


@dataclass(frozen=True, slots=True)
class EnrollmentProgressSummary:
    """Enrollment-level projection of the chapter records.

    A pure function of the current records plus the chapter roster, so it
    is recomputed on every write and every read; it is never stored.
    """

    total_chapters: int
    completed_chapters: int
    percentage: int
    total_time_spent_minutes: int = 0
    has_activity: bool = False
    chapters: tuple[ChapterProgressDetail, ...] = ()


@dataclass(frozen=True, slots=True)
class ChapterStats:
    chapter_id: UUID
    order: int
    engaged: int
    completed: int
    completion_rate: int


@dataclass(frozen=True, slots=True)
class CourseProgressStats:
    """Instructor-facing statistics across every enrollment of a course."""

    course_id: UUID
    total_enrollments: int
    completed_enrollments: int
    average_progress: int
    chapters: tuple[ChapterStats, ...] = ()
