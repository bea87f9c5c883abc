"""Enrollment-level aggregation of chapter progress records.

summarize() is pure and order-independent: it is recomputed from the full
set of records on every write instead of maintaining an incremental
counter, so there is no second copy of the truth to drift.

Counting rules:
  - Only published chapters on the course roster count toward
    total_chapters.  A record for an unpublished chapter stays in storage
    but is ignored until the chapter is republished.
  - Records for chapters that are not on the roster at all are ignored.
  - A chapter without a record is the same as an untouched record.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from uuid import UUID

from courseprogress.models.chapter import Chapter
from courseprogress.models.enrollment import Enrollment
from courseprogress.models.progress import (
    ChapterProgress,
    ChapterProgressDetail,
    ChapterStats,
    CourseProgressStats,
    EnrollmentProgressSummary,
)


def round_percent(part: int, whole: int) -> int:
    """round(100 * part / whole), halves rounded up; 0 when whole is 0.

    Integer arithmetic keeps 12.5 -> 13 (not Python's banker's 12) and
    avoids float error at the boundaries.
    """
    if whole <= 0:
        return 0
    return (200 * part + whole) // (2 * whole)


def engagement_quantum(record: ChapterProgress | None) -> int:
    """Coarse 0/25/50/100 display value for one chapter.

    50 needs two flags at once, which single-content chapters never
    produce; it is kept for chapters that may carry several signals.
    """
    if record is None:
        return 0
    if record.completed:
        return 100
    flags = sum(record.engagement_flags)
    if flags == 0:
        return 0
    if flags == 1:
        return 25
    return 50


def _index(records: Iterable[ChapterProgress]) -> dict[UUID, ChapterProgress]:
    by_chapter: dict[UUID, ChapterProgress] = {}
    for record in records:
        seen = by_chapter.get(record.chapter_id)
        # Duplicate rows for one key can only come from a caller mixing
        # snapshots; keep the newest so the result stays order-independent.
        if seen is None or record.version > seen.version:
            by_chapter[record.chapter_id] = record
    return by_chapter


def summarize(
    course_chapters: Iterable[Chapter],
    progress_records: Iterable[ChapterProgress],
) -> EnrollmentProgressSummary:
    records = list(progress_records)
    by_chapter = _index(records)

    published = sorted(
        (c for c in course_chapters if c.is_published),
        key=lambda c: (c.order, str(c.id)),
    )

    details: list[ChapterProgressDetail] = []
    completed = 0
    time_spent = 0
    for chapter in published:
        record = by_chapter.get(chapter.id)
        if record is not None and record.completed:
            completed += 1
        if record is not None:
            time_spent += record.time_spent_minutes
        details.append(_detail(chapter, record))

    has_activity = any(r.completed or r.time_spent_minutes > 0 for r in records)

    return EnrollmentProgressSummary(
        total_chapters=len(published),
        completed_chapters=completed,
        percentage=round_percent(completed, len(published)),
        total_time_spent_minutes=time_spent,
        has_activity=has_activity,
        chapters=tuple(details),
    )


def _detail(chapter: Chapter, record: ChapterProgress | None) -> ChapterProgressDetail:
    if record is None:
        record = ChapterProgress.new(enrollment_id=UUID(int=0), chapter_id=chapter.id)
    return ChapterProgressDetail(
        chapter_id=chapter.id,
        order=chapter.order,
        content_type=chapter.content_type,
        video_watched=record.video_watched,
        pdf_viewed=record.pdf_viewed,
        resource_opened=record.resource_opened,
        completed=record.completed,
        time_spent_minutes=record.time_spent_minutes,
        completed_at=record.completed_at,
        engagement_quantum=engagement_quantum(record),
    )


def course_stats(
    course_id: UUID,
    course_chapters: Iterable[Chapter],
    enrollments: Iterable[Enrollment],
    records_by_enrollment: Mapping[UUID, Iterable[ChapterProgress]],
) -> CourseProgressStats:
    """Completion statistics across all enrollments of one course.

    Per-chapter rates are taken over enrollments that have a record for
    the chapter (engaged), matching how instructors read "of the learners
    who opened it, how many finished".
    """
    enrollments = list(enrollments)
    published = sorted(
        (c for c in course_chapters if c.is_published),
        key=lambda c: (c.order, str(c.id)),
    )

    engaged: dict[UUID, int] = {c.id: 0 for c in published}
    done: dict[UUID, int] = {c.id: 0 for c in published}
    for enrollment in enrollments:
        for record in _index(records_by_enrollment.get(enrollment.id, ())).values():
            if record.chapter_id not in engaged:
                continue
            engaged[record.chapter_id] += 1
            if record.completed:
                done[record.chapter_id] += 1

    total_progress = sum(e.progress_percentage for e in enrollments)
    return CourseProgressStats(
        course_id=course_id,
        total_enrollments=len(enrollments),
        completed_enrollments=sum(1 for e in enrollments if e.status == "completed"),
        average_progress=round_percent(total_progress, 100 * len(enrollments)),
        chapters=tuple(
            ChapterStats(
                chapter_id=c.id,
                order=c.order,
                engaged=engaged[c.id],
                completed=done[c.id],
                completion_rate=round_percent(done[c.id], engaged[c.id]),
            )
            for c in published
        ),
    )
