"""Tests for ProgressService: the event pipeline, retries, status and reads.

Each test builds its own service over fresh in-memory stores, so nothing
here depends on the module-level singletons the API uses.
"""

from __future__ import annotations

import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest
from prometheus_client import REGISTRY

from courseprogress.core.errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
    VersionConflictError,
)
from courseprogress.models.chapter import Chapter, ContentType
from courseprogress.models.progress import (
    AddTimeSpent,
    ChapterProgress,
    MarkCompleted,
    MarkPdfViewed,
    MarkVideoWatched,
)
from courseprogress.repos.chapter_repo import InMemoryChapterCatalog
from courseprogress.repos.enrollment_repo import InMemoryEnrollmentRepo
from courseprogress.repos.progress_repo import InMemoryProgressRecordStore
from courseprogress.services.progress_service import ProgressService

START = 1_760_000_000


class FakeClock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> int:
        return self.now


@dataclass
class Harness:
    service: ProgressService
    records: InMemoryProgressRecordStore
    enrollments: InMemoryEnrollmentRepo
    catalog: InMemoryChapterCatalog
    clock: FakeClock

    def add_course(self, *content_types: ContentType) -> tuple[uuid.UUID, list[Chapter]]:
        course_id = uuid.uuid4()
        chapters = [
            Chapter.new(course_id=course_id, order=i, content_type=ct)
            for i, ct in enumerate(content_types, start=1)
        ]
        for chapter in chapters:
            self.catalog.add(chapter)
        return course_id, chapters


def make_harness(
    *,
    records: InMemoryProgressRecordStore | None = None,
    enrollments: InMemoryEnrollmentRepo | None = None,
    **kwargs,
) -> Harness:
    records = records or InMemoryProgressRecordStore()
    enrollments = enrollments or InMemoryEnrollmentRepo()
    catalog = InMemoryChapterCatalog()
    clock = FakeClock()
    kwargs.setdefault("backoff_seconds", 0)
    service = ProgressService(
        records=records,
        enrollments=enrollments,
        chapters=catalog,
        clock=clock,
        **kwargs,
    )
    return Harness(service, records, enrollments, catalog, clock)


def _sample(name: str, labels: dict[str, str]) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels)
    return value if value is not None else 0.0


# ---------------------------------------------------------------------------
# The four-chapter walkthrough
# ---------------------------------------------------------------------------


def test_four_chapter_course_walkthrough() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf", "external_resource", "video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)

        start = await h.service.get_summary(enrollment.id)
        assert (start.summary.total_chapters, start.summary.completed_chapters) == (4, 0)
        assert start.summary.percentage == 0
        assert start.enrollment.status == "not_started"

        for chapter in chapters[:2]:
            result = await h.service.handle_event(enrollment.id, chapter.id, MarkCompleted())
        assert (result.summary.completed_chapters, result.summary.percentage) == (2, 50)
        assert result.enrollment.status == "in_progress"
        assert result.enrollment.progress_percentage == 50

        h.clock.now = START + 600
        for chapter in chapters[2:]:
            result = await h.service.handle_event(enrollment.id, chapter.id, MarkCompleted())
        assert (result.summary.completed_chapters, result.summary.percentage) == (4, 100)
        assert result.enrollment.status == "completed"
        assert result.enrollment.completed_at == START + 600

        # completed_at is stamped once; later events only move the access stamp
        h.clock.now = START + 900
        later = await h.service.handle_event(
            enrollment.id, chapters[0].id, AddTimeSpent(minutes=3)
        )
        assert later.enrollment.status == "completed"
        assert later.enrollment.completed_at == START + 600
        assert later.enrollment.last_accessed_at == START + 900
        assert later.summary.total_time_spent_minutes == 3

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Event pipeline
# ---------------------------------------------------------------------------


def test_first_time_spent_starts_enrollment_and_stamps_access() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        return await h.service.handle_event(
            enrollment.id, chapters[1].id, AddTimeSpent(minutes=12)
        )

    result = asyncio.run(scenario())
    assert result.enrollment.status == "in_progress"
    assert result.enrollment.started_at == START
    assert result.enrollment.last_accessed_at == START
    assert result.summary.total_time_spent_minutes == 12
    assert result.record is not None
    assert result.record.time_spent_minutes == 12


def test_duplicate_submission_is_a_noop() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        first = await h.service.handle_event(enrollment.id, chapters[0].id, MarkVideoWatched())
        second = await h.service.handle_event(enrollment.id, chapters[0].id, MarkVideoWatched())
        return first, second

    first, second = asyncio.run(scenario())
    assert first.record == second.record
    assert second.record is not None
    assert second.record.version == 2


def test_mismatched_flag_is_noop_by_default_and_rejected_when_strict() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        lenient = await h.service.handle_event(enrollment.id, chapters[0].id, MarkPdfViewed())
        with pytest.raises(InvalidArgumentError, match="pdf_viewed"):
            await h.service.handle_event(
                enrollment.id, chapters[0].id, MarkPdfViewed(), strict=True
            )
        return lenient

    lenient = asyncio.run(scenario())
    assert lenient.record is not None
    assert lenient.record.pdf_viewed is False
    assert lenient.record.version == 1
    # A no-op is not an access
    assert lenient.enrollment.last_accessed_at is None


def test_negative_time_rejected_before_touching_storage() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        with pytest.raises(InvalidArgumentError):
            await h.service.handle_event(
                enrollment.id, chapters[0].id, AddTimeSpent(minutes=-4)
            )
        return await h.records.get_all(enrollment.id)

    assert asyncio.run(scenario()) == []


def test_empty_batch_rejected() -> None:
    h = make_harness()
    with pytest.raises(InvalidArgumentError):
        asyncio.run(h.service.handle_events(uuid.uuid4(), uuid.uuid4(), []))


def test_batch_is_committed_as_one_write() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        return await h.service.handle_events(
            enrollment.id,
            chapters[0].id,
            [MarkPdfViewed(), MarkCompleted(), AddTimeSpent(minutes=20)],
        )

    result = asyncio.run(scenario())
    assert result.record is not None
    assert result.record.pdf_viewed and result.record.completed
    assert result.record.time_spent_minutes == 20
    assert result.enrollment.status == "completed"


def test_unknown_enrollment_is_not_found() -> None:
    h = make_harness()
    _, chapters = h.add_course("video")
    with pytest.raises(NotFoundError):
        asyncio.run(h.service.handle_event(uuid.uuid4(), chapters[0].id, MarkCompleted()))


def test_chapter_from_another_course_is_not_found() -> None:
    h = make_harness()
    course_id, _ = h.add_course("video")
    _, foreign = h.add_course("pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await h.service.handle_event(enrollment.id, foreign[0].id, MarkCompleted())

    with pytest.raises(NotFoundError):
        asyncio.run(scenario())


def test_events_do_not_leak_across_enrollments() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf")

    async def scenario():
        mine = await h.service.enroll("learner-1", course_id)
        theirs = await h.service.enroll("learner-2", course_id)
        await h.service.handle_event(mine.id, chapters[0].id, MarkCompleted())
        return await h.service.get_summary(theirs.id)

    other = asyncio.run(scenario())
    assert other.summary.completed_chapters == 0
    assert other.enrollment.status == "not_started"


def test_unpublished_chapter_drops_out_of_percentage() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await h.service.handle_event(enrollment.id, chapters[0].id, MarkCompleted())
        h.catalog.set_published(chapters[1].id, False)
        # The next event recomputes against the new roster
        return await h.service.handle_event(
            enrollment.id, chapters[0].id, AddTimeSpent(minutes=1)
        )

    result = asyncio.run(scenario())
    assert result.summary.total_chapters == 1
    assert result.summary.percentage == 100
    assert result.enrollment.status == "completed"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "retry_settings",
    [{}, {"max_retries": 500, "backoff_seconds": 0.0005}],
    ids=["default-ceiling", "high-ceiling"],
)
def test_concurrent_time_spent_from_threads_is_never_lost(retry_settings: dict) -> None:
    # 0.002s backoff and an unset max_retries are the service defaults
    h = make_harness(**{"backoff_seconds": 0.002, **retry_settings})
    course_id, chapters = h.add_course("video")
    enrollment = asyncio.run(h.service.enroll("learner-1", course_id))

    def one_minute() -> None:
        asyncio.run(
            h.service.handle_event(enrollment.id, chapters[0].id, AddTimeSpent(minutes=1))
        )

    with ThreadPoolExecutor(max_workers=16) as pool:
        futures = [pool.submit(one_minute) for _ in range(100)]
        for future in futures:
            future.result()

    record = asyncio.run(h.records.get(enrollment.id, chapters[0].id))
    assert record is not None
    assert record.time_spent_minutes == 100
    assert record.version == 101


def test_concurrent_tasks_on_one_loop_are_never_lost() -> None:
    h = make_harness(backoff_seconds=0.002)  # default retry ceiling
    course_id, chapters = h.add_course("pdf", "video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await asyncio.gather(
            *(
                h.service.handle_event(
                    enrollment.id, chapters[i % 2].id, AddTimeSpent(minutes=1)
                )
                for i in range(100)
            )
        )
        return await h.service.get_summary(enrollment.id)

    result = asyncio.run(scenario())
    assert result.summary.total_time_spent_minutes == 100


class _FlakyStore(InMemoryProgressRecordStore):
    """Loses the first `failures` swaps as if another writer got there first."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def compare_and_swap(self, record: ChapterProgress, expected_version: int) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise VersionConflictError("injected")
        await super().compare_and_swap(record, expected_version)


def test_version_conflict_is_retried() -> None:
    store = _FlakyStore(failures=2)
    h = make_harness(records=store, max_retries=5)
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        return await h.service.handle_event(
            enrollment.id, chapters[0].id, AddTimeSpent(minutes=4)
        )

    before = _sample("progress_cas_conflicts_total", {"record": "chapter_progress"})
    result = asyncio.run(scenario())
    after = _sample("progress_cas_conflicts_total", {"record": "chapter_progress"})

    assert result.record is not None
    assert result.record.time_spent_minutes == 4
    assert store.attempts == 3
    assert after - before == 2


def test_exhausted_retries_raise_conflict_and_leave_record_untouched() -> None:
    store = _FlakyStore(failures=10_000)
    h = make_harness(records=store, max_retries=3)
    course_id, chapters = h.add_course("video")
    enrollment = asyncio.run(h.service.enroll("learner-1", course_id))

    labels = {"event": "time_spent", "outcome": "conflict"}
    before = _sample("progress_events_total", labels)
    with pytest.raises(ConflictError):
        asyncio.run(
            h.service.handle_event(enrollment.id, chapters[0].id, AddTimeSpent(minutes=4))
        )
    assert _sample("progress_events_total", labels) - before == 1
    assert store.attempts == 3

    record = asyncio.run(h.records.get(enrollment.id, chapters[0].id))
    assert record is not None
    assert record.time_spent_minutes == 0


def test_max_retries_must_be_positive() -> None:
    with pytest.raises(ValueError):
        make_harness(max_retries=0)


class _SlowStore(InMemoryProgressRecordStore):
    async def compare_and_swap(self, record: ChapterProgress, expected_version: int) -> None:
        await asyncio.sleep(1)
        await super().compare_and_swap(record, expected_version)


def test_caller_timeout_raises_timeout_error() -> None:
    h = make_harness(records=_SlowStore())
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await h.service.handle_event(
            enrollment.id, chapters[0].id, MarkCompleted(), timeout=0.05
        )

    with pytest.raises(TimeoutError):
        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class _GatedStore(InMemoryProgressRecordStore):
    """Parks the next get_all() until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.hold_next_read = False
        self.parked = asyncio.Event()
        self.release = asyncio.Event()

    async def get_all(self, enrollment_id: uuid.UUID) -> list[ChapterProgress]:
        records = await super().get_all(enrollment_id)
        if self.hold_next_read:
            self.hold_next_read = False
            self.parked.set()
            await self.release.wait()
        return records


def test_read_racing_a_write_does_not_hide_the_write() -> None:
    store = _GatedStore()
    h = make_harness(records=store)
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)

        store.hold_next_read = True
        reader = asyncio.create_task(h.service.get_summary(enrollment.id))
        await store.parked.wait()

        written = await h.service.handle_event(enrollment.id, chapters[0].id, MarkCompleted())
        store.release.set()
        before_write = await reader
        after_write = await h.service.get_summary(enrollment.id)
        return written, before_write, after_write

    written, before_write, after_write = asyncio.run(scenario())
    assert written.enrollment.status == "completed"
    # The parked read saw the records from before the write
    assert before_write.summary.percentage == 0
    assert after_write.summary.percentage == 100
    assert after_write.enrollment.status == "completed"


def test_summary_follows_the_current_chapter_roster() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await h.service.handle_event(enrollment.id, chapters[0].id, MarkCompleted())
        first = await h.service.get_summary(enrollment.id)
        h.catalog.set_published(chapters[1].id, False)
        second = await h.service.get_summary(enrollment.id)
        return first, second

    first, second = asyncio.run(scenario())
    assert (first.summary.total_chapters, first.summary.percentage) == (2, 50)
    assert (second.summary.total_chapters, second.summary.percentage) == (1, 100)


class _SlowOnceEnrollments(InMemoryEnrollmentRepo):
    """Stalls the first status write long enough for a caller timeout."""

    def __init__(self) -> None:
        super().__init__()
        self.stalled = False

    async def update_if_version(self, enrollment, expected_version):
        if not self.stalled:
            self.stalled = True
            await asyncio.sleep(1)
        return await super().update_if_version(enrollment, expected_version)


def test_write_committed_before_timeout_is_visible_to_reads() -> None:
    h = make_harness(enrollments=_SlowOnceEnrollments())
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        with pytest.raises(TimeoutError):
            await h.service.handle_event(
                enrollment.id, chapters[0].id, MarkCompleted(), timeout=0.05
            )
        after_timeout = await h.service.get_summary(enrollment.id)
        # The next event's recompute catches the status up
        repaired = await h.service.handle_event(
            enrollment.id, chapters[0].id, AddTimeSpent(minutes=2)
        )
        return after_timeout, repaired

    after_timeout, repaired = asyncio.run(scenario())
    assert after_timeout.summary.completed_chapters == 1
    assert after_timeout.summary.percentage == 100
    assert after_timeout.enrollment.status == "not_started"
    assert repaired.enrollment.status == "completed"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_enroll_twice_is_a_conflict() -> None:
    h = make_harness()
    course_id, _ = h.add_course("video")

    async def scenario():
        await h.service.enroll("learner-1", course_id)
        await h.service.enroll("learner-1", course_id)

    with pytest.raises(ConflictError):
        asyncio.run(scenario())


def test_dropped_enrollment_rejects_events() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        dropped = await h.service.drop_enrollment(enrollment.id)
        assert dropped.enrollment.status == "dropped"
        with pytest.raises(PreconditionFailedError):
            await h.service.handle_event(enrollment.id, chapters[0].id, MarkCompleted())
        # Dropping again changes nothing
        again = await h.service.drop_enrollment(enrollment.id)
        assert again.enrollment.version == dropped.enrollment.version

    asyncio.run(scenario())


def test_completed_enrollment_cannot_be_dropped() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await h.service.handle_event(enrollment.id, chapters[0].id, MarkCompleted())
        await h.service.drop_enrollment(enrollment.id)

    with pytest.raises(PreconditionFailedError):
        asyncio.run(scenario())


def test_purge_requires_dropped_enrollment() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf")

    async def scenario():
        enrollment = await h.service.enroll("learner-1", course_id)
        await h.service.handle_event(enrollment.id, chapters[0].id, AddTimeSpent(minutes=3))
        await h.service.handle_event(enrollment.id, chapters[1].id, AddTimeSpent(minutes=3))
        with pytest.raises(PreconditionFailedError):
            await h.service.purge_enrollment(enrollment.id)

        await h.service.drop_enrollment(enrollment.id)
        removed = await h.service.purge_enrollment(enrollment.id)
        return removed, await h.records.get_all(enrollment.id)

    removed, left = asyncio.run(scenario())
    assert removed == 2
    assert left == []


# ---------------------------------------------------------------------------
# Course statistics
# ---------------------------------------------------------------------------


def test_course_stats() -> None:
    h = make_harness()
    course_id, chapters = h.add_course("video", "pdf")

    async def scenario():
        finished = await h.service.enroll("learner-1", course_id)
        halfway = await h.service.enroll("learner-2", course_id)
        await h.service.enroll("learner-3", course_id)
        for chapter in chapters:
            await h.service.handle_event(finished.id, chapter.id, MarkCompleted())
        await h.service.handle_event(halfway.id, chapters[0].id, MarkCompleted())
        return await h.service.course_stats(course_id)

    stats = asyncio.run(scenario())
    assert stats.total_enrollments == 3
    assert stats.completed_enrollments == 1
    assert stats.average_progress == 50
    assert [c.completed for c in stats.chapters] == [2, 1]
    assert [c.completion_rate for c in stats.chapters] == [100, 100]


def test_course_stats_unknown_course() -> None:
    h = make_harness()
    with pytest.raises(NotFoundError):
        asyncio.run(h.service.course_stats(uuid.uuid4()))
