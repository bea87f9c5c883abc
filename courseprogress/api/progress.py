"""Chapter progress endpoints.

Every mutating route goes through ProgressService, which commits the
chapter record with compare-and-swap, recomputes the enrollment summary,
and returns it together with the enrollment status, so clients never need
a second round trip to refresh their view.

  GET  /v1/progress/enrollments/{eid}                               summary
  PUT  /v1/progress/enrollments/{eid}/chapters/{cid}                generic update
  POST /v1/progress/enrollments/{eid}/chapters/{cid}/complete
  POST /v1/progress/enrollments/{eid}/chapters/{cid}/video-watched
  POST /v1/progress/enrollments/{eid}/chapters/{cid}/pdf-viewed
  POST /v1/progress/enrollments/{eid}/chapters/{cid}/resource-opened
  POST /v1/progress/enrollments/{eid}/chapters/{cid}/time-spent
  POST /v1/progress/enrollments/{eid}/drop
  GET  /v1/progress/courses/{course_id}/stats                       staff only

Clients may send X-Request-Timeout (seconds) to bound how long an update
may spend retrying under contention.
"""

from __future__ import annotations

import logging
from typing import Annotated, NoReturn
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from courseprogress.api.dependencies import ensure_owner, require_any_role, require_user
from courseprogress.core.config import SETTINGS
from courseprogress.core.errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PreconditionFailedError,
    ProgressError,
)
from courseprogress.db.engine import async_session_factory
from courseprogress.models.principal import Principal
from courseprogress.models.progress import (
    AddTimeSpent,
    ChapterProgress,
    MarkCompleted,
    MarkPdfViewed,
    MarkResourceOpened,
    MarkVideoWatched,
    ProgressEvent,
)
from courseprogress.repos.chapter_repo import ChapterCatalog, InMemoryChapterCatalog
from courseprogress.repos.enrollment_repo import EnrollmentRepo, InMemoryEnrollmentRepo
from courseprogress.repos.pg_chapter_repo import PgChapterCatalog
from courseprogress.repos.pg_enrollment_repo import PgEnrollmentRepo
from courseprogress.repos.pg_progress_repo import PgProgressRecordStore
from courseprogress.repos.progress_repo import (
    InMemoryProgressRecordStore,
    ProgressRecordStore,
)
from courseprogress.services.progress_service import ProgressResult, ProgressService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/progress", tags=["progress"])

# --- Module-level singletons: Postgres when configured, else in-memory ---

if async_session_factory is not None:
    progress_store: ProgressRecordStore = PgProgressRecordStore()
    enrollment_repo: EnrollmentRepo = PgEnrollmentRepo()
    chapter_catalog: ChapterCatalog = PgChapterCatalog()
else:
    progress_store = InMemoryProgressRecordStore()
    enrollment_repo = InMemoryEnrollmentRepo()
    chapter_catalog = InMemoryChapterCatalog()

progress_service = ProgressService(
    records=progress_store,
    enrollments=enrollment_repo,
    chapters=chapter_catalog,
    max_retries=SETTINGS.progress_max_retries,
)


# --- Pydantic schemas ---


class ChapterUpdateIn(BaseModel):
    video_watched: bool | None = None
    pdf_viewed: bool | None = None
    resource_opened: bool | None = None
    completed: bool | None = None
    time_spent_delta_minutes: int | None = None


class TimeSpentIn(BaseModel):
    minutes: int


class EnrollmentOut(BaseModel):
    id: str
    course_id: str
    status: str
    progress_percentage: int
    started_at: int | None
    completed_at: int | None
    last_accessed_at: int | None


class SummaryOut(BaseModel):
    total_chapters: int
    completed_chapters: int
    percentage: int
    total_time_spent_minutes: int


class ChapterDetailOut(BaseModel):
    chapter_id: str
    order: int
    content_type: str
    video_watched: bool
    pdf_viewed: bool
    resource_opened: bool
    completed: bool
    time_spent_minutes: int
    completed_at: int | None
    engagement_quantum: int


class ChapterRecordOut(BaseModel):
    chapter_id: str
    video_watched: bool
    pdf_viewed: bool
    resource_opened: bool
    completed: bool
    time_spent_minutes: int
    completed_at: int | None
    version: int


class ProgressOut(BaseModel):
    enrollment: EnrollmentOut
    summary: SummaryOut
    chapters: list[ChapterDetailOut]
    chapter: ChapterRecordOut | None = None


class ChapterStatsOut(BaseModel):
    chapter_id: str
    order: int
    engaged: int
    completed: int
    completion_rate: int


class CourseStatsOut(BaseModel):
    course_id: str
    total_enrollments: int
    completed_enrollments: int
    average_progress: int
    chapters: list[ChapterStatsOut]


# --- Helpers ---

_STATUS_FOR_ERROR: dict[type[ProgressError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidArgumentError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConflictError: status.HTTP_409_CONFLICT,
    PreconditionFailedError: status.HTTP_412_PRECONDITION_FAILED,
}


def _raise_http(exc: ProgressError) -> NoReturn:
    code = _STATUS_FOR_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    headers = {"Retry-After": "1"} if isinstance(exc, ConflictError) else None
    raise HTTPException(status_code=code, detail=exc.message, headers=headers) from exc


def _to_out(result: ProgressResult) -> ProgressOut:
    e = result.enrollment
    s = result.summary
    return ProgressOut(
        enrollment=EnrollmentOut(
            id=str(e.id),
            course_id=str(e.course_id),
            status=e.status,
            progress_percentage=e.progress_percentage,
            started_at=e.started_at,
            completed_at=e.completed_at,
            last_accessed_at=e.last_accessed_at,
        ),
        summary=SummaryOut(
            total_chapters=s.total_chapters,
            completed_chapters=s.completed_chapters,
            percentage=s.percentage,
            total_time_spent_minutes=s.total_time_spent_minutes,
        ),
        chapters=[
            ChapterDetailOut(
                chapter_id=str(c.chapter_id),
                order=c.order,
                content_type=c.content_type,
                video_watched=c.video_watched,
                pdf_viewed=c.pdf_viewed,
                resource_opened=c.resource_opened,
                completed=c.completed,
                time_spent_minutes=c.time_spent_minutes,
                completed_at=c.completed_at,
                engagement_quantum=c.engagement_quantum,
            )
            for c in s.chapters
        ],
        chapter=_record_out(result.record) if result.record is not None else None,
    )


def _record_out(record: ChapterProgress) -> ChapterRecordOut:
    return ChapterRecordOut(
        chapter_id=str(record.chapter_id),
        video_watched=record.video_watched,
        pdf_viewed=record.pdf_viewed,
        resource_opened=record.resource_opened,
        completed=record.completed,
        time_spent_minutes=record.time_spent_minutes,
        completed_at=record.completed_at,
        version=record.version,
    )


async def _authorize(principal: Principal, enrollment_id: UUID) -> None:
    try:
        enrollment = await progress_service.get_enrollment(enrollment_id)
    except ProgressError as exc:
        _raise_http(exc)
    ensure_owner(principal, enrollment)


async def _apply(
    principal: Principal,
    enrollment_id: UUID,
    chapter_id: UUID,
    events: list[ProgressEvent],
    *,
    strict: bool,
    timeout: float | None,
) -> ProgressOut:
    await _authorize(principal, enrollment_id)
    try:
        result = await progress_service.handle_events(
            enrollment_id, chapter_id, events, strict=strict, timeout=timeout
        )
    except ProgressError as exc:
        _raise_http(exc)
    except TimeoutError:
        logger.warning(
            "Progress update timed out after %ss",
            timeout,
            extra={"enrollment_id": str(enrollment_id), "chapter_id": str(chapter_id)},
        )
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="progress update timed out",
        ) from None
    return _to_out(result)


RequestTimeout = Annotated[float | None, Header(alias="X-Request-Timeout", gt=0)]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/enrollments/{enrollment_id}", response_model=ProgressOut)
async def get_enrollment_progress(
    enrollment_id: UUID,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    await _authorize(principal, enrollment_id)
    try:
        result = await progress_service.get_summary(enrollment_id)
    except ProgressError as exc:
        _raise_http(exc)
    return _to_out(result)


@router.get("/courses/{course_id}/stats", response_model=CourseStatsOut)
async def get_course_stats(
    course_id: UUID,
    _principal: Annotated[Principal, Depends(require_any_role({"admin", "instructor"}))],
) -> CourseStatsOut:
    try:
        stats = await progress_service.course_stats(course_id)
    except ProgressError as exc:
        _raise_http(exc)
    return CourseStatsOut(
        course_id=str(stats.course_id),
        total_enrollments=stats.total_enrollments,
        completed_enrollments=stats.completed_enrollments,
        average_progress=stats.average_progress,
        chapters=[
            ChapterStatsOut(
                chapter_id=str(c.chapter_id),
                order=c.order,
                engaged=c.engaged,
                completed=c.completed,
                completion_rate=c.completion_rate,
            )
            for c in stats.chapters
        ],
    )


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


@router.put(
    "/enrollments/{enrollment_id}/chapters/{chapter_id}", response_model=ProgressOut
)
async def update_chapter_progress(
    enrollment_id: UUID,
    chapter_id: UUID,
    body: ChapterUpdateIn,
    principal: Annotated[Principal, Depends(require_user)],
    timeout: RequestTimeout = None,
) -> ProgressOut:
    """Generic update: engagement flags first, then completion, then time.

    A false flag is ignored; nothing in this API un-watches or
    un-completes a chapter.
    """
    events: list[ProgressEvent] = []
    if body.video_watched:
        events.append(MarkVideoWatched())
    if body.pdf_viewed:
        events.append(MarkPdfViewed())
    if body.resource_opened:
        events.append(MarkResourceOpened())
    if body.completed:
        events.append(MarkCompleted())
    if body.time_spent_delta_minutes is not None:
        events.append(AddTimeSpent(minutes=body.time_spent_delta_minutes))

    if not events:
        # Nothing to change; answer with the current state.
        return await get_enrollment_progress(enrollment_id, principal)
    return await _apply(
        principal, enrollment_id, chapter_id, events, strict=False, timeout=timeout
    )


@router.post(
    "/enrollments/{enrollment_id}/chapters/{chapter_id}/complete",
    response_model=ProgressOut,
)
async def mark_chapter_completed(
    enrollment_id: UUID,
    chapter_id: UUID,
    principal: Annotated[Principal, Depends(require_user)],
    timeout: RequestTimeout = None,
) -> ProgressOut:
    return await _apply(
        principal, enrollment_id, chapter_id, [MarkCompleted()], strict=True, timeout=timeout
    )


@router.post(
    "/enrollments/{enrollment_id}/chapters/{chapter_id}/video-watched",
    response_model=ProgressOut,
)
async def mark_video_watched(
    enrollment_id: UUID,
    chapter_id: UUID,
    principal: Annotated[Principal, Depends(require_user)],
    timeout: RequestTimeout = None,
) -> ProgressOut:
    return await _apply(
        principal, enrollment_id, chapter_id, [MarkVideoWatched()], strict=True, timeout=timeout
    )


@router.post(
    "/enrollments/{enrollment_id}/chapters/{chapter_id}/pdf-viewed",
    response_model=ProgressOut,
)
async def mark_pdf_viewed(
    enrollment_id: UUID,
    chapter_id: UUID,
    principal: Annotated[Principal, Depends(require_user)],
    timeout: RequestTimeout = None,
) -> ProgressOut:
    return await _apply(
        principal, enrollment_id, chapter_id, [MarkPdfViewed()], strict=True, timeout=timeout
    )


@router.post(
    "/enrollments/{enrollment_id}/chapters/{chapter_id}/resource-opened",
    response_model=ProgressOut,
)
async def mark_resource_opened(
    enrollment_id: UUID,
    chapter_id: UUID,
    principal: Annotated[Principal, Depends(require_user)],
    timeout: RequestTimeout = None,
) -> ProgressOut:
    return await _apply(
        principal,
        enrollment_id,
        chapter_id,
        [MarkResourceOpened()],
        strict=True,
        timeout=timeout,
    )


@router.post(
    "/enrollments/{enrollment_id}/chapters/{chapter_id}/time-spent",
    response_model=ProgressOut,
)
async def add_time_spent(
    enrollment_id: UUID,
    chapter_id: UUID,
    body: TimeSpentIn,
    principal: Annotated[Principal, Depends(require_user)],
    timeout: RequestTimeout = None,
) -> ProgressOut:
    return await _apply(
        principal,
        enrollment_id,
        chapter_id,
        [AddTimeSpent(minutes=body.minutes)],
        strict=True,
        timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/enrollments/{enrollment_id}/drop", response_model=ProgressOut)
async def drop_enrollment(
    enrollment_id: UUID,
    principal: Annotated[Principal, Depends(require_user)],
) -> ProgressOut:
    await _authorize(principal, enrollment_id)
    try:
        result = await progress_service.drop_enrollment(enrollment_id)
    except ProgressError as exc:
        _raise_http(exc)
    return _to_out(result)
