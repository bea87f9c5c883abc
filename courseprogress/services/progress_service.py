"""ProgressService: the one entry point for engagement events.

One handle_event() call is one logical, conflict-safe operation:

  1. resolve the enrollment and chapter (NotFoundError otherwise)
  2. load-or-create the chapter record, apply the event(s) through the
     pure state machine, compare-and-swap against the version read
  3. on VersionConflictError: back off briefly, re-read, re-apply; give
     up with ConflictError after `max_retries` attempts
  4. re-read every record of the enrollment, aggregate, run the status
     policy, and write the enrollment through its own compare-and-swap
  5. return the freshly recomputed summary + enrollment

Only step 3 retries, and only on version conflicts.  No lock is held
across steps 2-4; a concurrent event on another chapter may be missing
from the summary we return, but its own recompute will include ours.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import random
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from uuid import UUID

from courseprogress.core.errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
    VersionConflictError,
)
from courseprogress.core.metrics import (
    CAS_ATTEMPTS,
    CAS_CONFLICTS,
    PROGRESS_EVENTS,
    STATUS_TRANSITIONS,
)
from courseprogress.models.chapter import Chapter
from courseprogress.models.enrollment import Enrollment
from courseprogress.models.progress import (
    ChapterProgress,
    CourseProgressStats,
    EnrollmentProgressSummary,
    ProgressEvent,
)
from courseprogress.repos.chapter_repo import ChapterCatalog
from courseprogress.repos.enrollment_repo import EnrollmentRepo
from courseprogress.repos.progress_repo import ProgressRecordStore
from courseprogress.services import aggregation, enrollment_status, state_machine

logger = logging.getLogger(__name__)

# Upper bound for one jittered backoff sleep between CAS attempts.
_MAX_BACKOFF_SECONDS = 0.05


def _now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


@dataclass(frozen=True, slots=True)
class ProgressResult:
    summary: EnrollmentProgressSummary
    enrollment: Enrollment
    record: ChapterProgress | None = None


class ProgressService:
    def __init__(
        self,
        *,
        records: ProgressRecordStore,
        enrollments: EnrollmentRepo,
        chapters: ChapterCatalog,
        max_retries: int = 5,
        backoff_seconds: float = 0.002,
        clock: Callable[[], int] = _now,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._records = records
        self._enrollments = enrollments
        self._chapters = chapters
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(
        self,
        enrollment_id: UUID,
        chapter_id: UUID,
        event: ProgressEvent,
        *,
        strict: bool = False,
        timeout: float | None = None,
    ) -> ProgressResult:
        """Apply one engagement event.

        With strict=True a flag event the chapter's content type cannot
        carry is rejected with InvalidArgumentError instead of being a
        silent no-op; the dedicated mark-* endpoints use this.

        `timeout` (seconds) abandons the operation with TimeoutError.  A
        compare-and-swap that already committed stays committed.
        """
        return await self.handle_events(
            enrollment_id, chapter_id, [event], strict=strict, timeout=timeout
        )

    async def handle_events(
        self,
        enrollment_id: UUID,
        chapter_id: UUID,
        events: Iterable[ProgressEvent],
        *,
        strict: bool = False,
        timeout: float | None = None,
    ) -> ProgressResult:
        """Apply an ordered batch of events to one chapter in a single write."""
        events = list(events)
        if not events:
            raise InvalidArgumentError("no progress fields supplied")
        for event in events:
            state_machine.validate(event)

        async with asyncio.timeout(timeout):
            return await self._handle(enrollment_id, chapter_id, events, strict=strict)

    async def _handle(
        self,
        enrollment_id: UUID,
        chapter_id: UUID,
        events: list[ProgressEvent],
        *,
        strict: bool,
    ) -> ProgressResult:
        log_extra = {"enrollment_id": str(enrollment_id), "chapter_id": str(chapter_id)}
        kinds = ",".join(e.kind for e in events)

        enrollment = await self._require_enrollment(enrollment_id)
        if enrollment.status == "dropped":
            self._count(events, "rejected")
            logger.warning("Event %s rejected: enrollment dropped", kinds, extra=log_extra)
            raise PreconditionFailedError("enrollment has been dropped")
        chapter = await self._require_chapter(enrollment, chapter_id)

        if strict:
            for event in events:
                if not state_machine.event_matches_content(event, chapter.content_type):
                    self._count(events, "rejected")
                    logger.warning(
                        "Event %s rejected: chapter content is %s",
                        event.kind,
                        chapter.content_type,
                        extra=log_extra,
                    )
                    raise InvalidArgumentError(
                        f"{event.kind} does not apply to a {chapter.content_type} chapter"
                    )

        record, changed = await self._commit_record(enrollment_id, chapter, events)
        self._count(events, "applied" if changed else "noop")

        summary, enrollment = await self._refresh_enrollment(enrollment_id, touched=changed)

        logger.debug(
            "Event %s %s: %d/%d chapters (%d%%) status=%s",
            kinds,
            "applied" if changed else "was a no-op",
            summary.completed_chapters,
            summary.total_chapters,
            summary.percentage,
            enrollment.status,
            extra=log_extra,
        )
        return ProgressResult(summary=summary, enrollment=enrollment, record=record)

    async def _commit_record(
        self,
        enrollment_id: UUID,
        chapter: Chapter,
        events: list[ProgressEvent],
    ) -> tuple[ChapterProgress, bool]:
        for attempt in range(1, self._max_retries + 1):
            current = await self._records.get(enrollment_id, chapter.id)
            if current is None:
                current = await self._records.create(enrollment_id, chapter.id)

            proposed = state_machine.apply_all(
                current, events, content_type=chapter.content_type, now=self._clock()
            )
            if proposed is current:
                CAS_ATTEMPTS.observe(attempt)
                return current, False

            try:
                await self._records.compare_and_swap(proposed, current.version)
            except VersionConflictError:
                CAS_CONFLICTS.labels(record="chapter_progress").inc()
                logger.debug(
                    "Version conflict on attempt %d",
                    attempt,
                    extra={
                        "enrollment_id": str(enrollment_id),
                        "chapter_id": str(chapter.id),
                        "attempt": attempt,
                    },
                )
                await self._backoff(attempt)
                continue

            CAS_ATTEMPTS.observe(attempt)
            return proposed, True

        self._count(events, "conflict")
        logger.warning(
            "Giving up after %d conflicting attempts",
            self._max_retries,
            extra={"enrollment_id": str(enrollment_id), "chapter_id": str(chapter.id)},
        )
        raise ConflictError(
            f"chapter progress kept changing underneath; gave up after "
            f"{self._max_retries} attempts"
        )

    async def _refresh_enrollment(
        self, enrollment_id: UUID, *, touched: bool
    ) -> tuple[EnrollmentProgressSummary, Enrollment]:
        """Recompute summary and status from a fresh read and persist the status.

        The chapter write has already committed at this point, so running
        out of attempts here does not fail the request: the enrollment
        row keeps its last state and the next event's recompute repairs it.
        """
        for attempt in range(1, self._max_retries + 1):
            enrollment = await self._require_enrollment(enrollment_id)
            summary = await self._summarize(enrollment)
            updated = enrollment_status.recompute(
                enrollment, summary, now=self._clock(), touched=touched
            )
            if updated == enrollment:
                return summary, enrollment

            try:
                stored = await self._enrollments.update_if_version(
                    updated, enrollment.version
                )
            except VersionConflictError:
                CAS_CONFLICTS.labels(record="enrollment").inc()
                await self._backoff(attempt)
                continue

            if stored.status != enrollment.status:
                STATUS_TRANSITIONS.labels(
                    from_status=enrollment.status, to_status=stored.status
                ).inc()
            return summary, stored

        logger.warning(
            "Enrollment status write lost %d races; leaving it to the next event",
            self._max_retries,
            extra={"enrollment_id": str(enrollment_id)},
        )
        return summary, enrollment

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_enrollment(self, enrollment_id: UUID) -> Enrollment:
        return await self._require_enrollment(enrollment_id)

    async def get_summary(self, enrollment_id: UUID) -> ProgressResult:
        """Aggregate without applying any event.

        Recomputed from the records and the current chapter roster on every
        call, so an unpublished chapter or a just-committed write shows up
        on the next read.
        """
        enrollment = await self._require_enrollment(enrollment_id)
        summary = await self._summarize(enrollment)
        return ProgressResult(summary=summary, enrollment=enrollment)

    async def course_stats(self, course_id: UUID) -> CourseProgressStats:
        chapters = await self._chapters.list_by_course(course_id)
        enrollments = await self._enrollments.list_by_course(course_id)
        if not chapters and not enrollments:
            raise NotFoundError("course not found")
        records = {e.id: await self._records.get_all(e.id) for e in enrollments}
        return aggregation.course_stats(course_id, chapters, enrollments, records)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def enroll(self, user_id: str, course_id: UUID) -> Enrollment:
        """Create a not_started enrollment (seeding and tests).

        Enrollment management belongs to the catalog service; this only
        covers what the progress service needs to be exercised alone.
        """
        enrollment = Enrollment.new(
            user_id=user_id, course_id=course_id, enrolled_at=self._clock()
        )
        try:
            await self._enrollments.add(enrollment)
        except ValueError as exc:
            raise ConflictError(str(exc)) from exc
        logger.info(
            "Enrolled user=%s in course=%s",
            user_id,
            course_id,
            extra={"enrollment_id": str(enrollment.id)},
        )
        return enrollment

    async def drop_enrollment(self, enrollment_id: UUID) -> ProgressResult:
        for attempt in range(1, self._max_retries + 1):
            enrollment = await self._require_enrollment(enrollment_id)
            dropped = enrollment_status.drop(enrollment)
            if dropped is enrollment:
                break
            previous = enrollment.status
            try:
                enrollment = await self._enrollments.update_if_version(
                    dropped, enrollment.version
                )
            except VersionConflictError:
                CAS_CONFLICTS.labels(record="enrollment").inc()
                await self._backoff(attempt)
                continue
            STATUS_TRANSITIONS.labels(from_status=previous, to_status="dropped").inc()
            break
        else:
            raise ConflictError("enrollment kept changing underneath; drop not applied")

        summary = await self._summarize(enrollment)
        return ProgressResult(summary=summary, enrollment=enrollment)

    async def purge_enrollment(self, enrollment_id: UUID) -> int:
        """Delete the progress records of a dropped enrollment."""
        enrollment = await self._require_enrollment(enrollment_id)
        if enrollment.status != "dropped":
            raise PreconditionFailedError("only a dropped enrollment can be purged")
        removed = await self._records.delete_for_enrollment(enrollment_id)
        logger.info(
            "Purged %d progress records",
            removed,
            extra={"enrollment_id": str(enrollment_id)},
        )
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_enrollment(self, enrollment_id: UUID) -> Enrollment:
        enrollment = await self._enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFoundError("enrollment not found")
        return enrollment

    async def _require_chapter(self, enrollment: Enrollment, chapter_id: UUID) -> Chapter:
        chapter = await self._chapters.get(chapter_id)
        if chapter is None or chapter.course_id != enrollment.course_id:
            raise NotFoundError("chapter not found in this course")
        return chapter

    async def _summarize(self, enrollment: Enrollment) -> EnrollmentProgressSummary:
        chapters = await self._chapters.list_by_course(enrollment.course_id)
        records = await self._records.get_all(enrollment.id)
        return aggregation.summarize(chapters, records)

    async def _backoff(self, attempt: int) -> None:
        if attempt >= self._max_retries or self._backoff_seconds <= 0:
            return
        # Full jitter keeps a burst of duplicate submissions from
        # re-colliding in lockstep.
        ceiling = min(self._backoff_seconds * 2 ** min(attempt - 1, 16), _MAX_BACKOFF_SECONDS)
        await asyncio.sleep(random.uniform(0, ceiling))

    @staticmethod
    def _count(events: list[ProgressEvent], outcome: str) -> None:
        for event in events:
            PROGRESS_EVENTS.labels(event=event.kind, outcome=outcome).inc()
