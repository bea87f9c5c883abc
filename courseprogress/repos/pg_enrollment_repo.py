"""PostgreSQL implementation of EnrollmentRepo."""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseprogress.core.errors import VersionConflictError
from courseprogress.db.engine import session_scope
from courseprogress.db.tables import EnrollmentRow
from courseprogress.models.enrollment import Enrollment


class PgEnrollmentRepo:
    """Satisfies the EnrollmentRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory

    async def get(self, enrollment_id: UUID) -> Enrollment | None:
        stmt = select(EnrollmentRow).where(EnrollmentRow.id == enrollment_id)
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return None if row is None else _row_to_enrollment(row)

    async def add(self, enrollment: Enrollment) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(
                EnrollmentRow(
                    id=enrollment.id,
                    user_id=enrollment.user_id,
                    course_id=enrollment.course_id,
                    status=enrollment.status,
                    progress_percentage=enrollment.progress_percentage,
                    enrolled_at=enrollment.enrolled_at,
                    started_at=enrollment.started_at,
                    completed_at=enrollment.completed_at,
                    last_accessed_at=enrollment.last_accessed_at,
                    version=enrollment.version,
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                raise ValueError("user already enrolled in course") from exc

    async def list_by_course(self, course_id: UUID) -> list[Enrollment]:
        stmt = select(EnrollmentRow).where(EnrollmentRow.course_id == course_id)
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_enrollment(r) for r in rows]

    async def update_if_version(
        self, enrollment: Enrollment, expected_version: int
    ) -> Enrollment:
        stmt = (
            update(EnrollmentRow)
            .where(
                EnrollmentRow.id == enrollment.id,
                EnrollmentRow.version == expected_version,
            )
            .values(
                status=enrollment.status,
                progress_percentage=enrollment.progress_percentage,
                started_at=enrollment.started_at,
                completed_at=enrollment.completed_at,
                last_accessed_at=enrollment.last_accessed_at,
                version=expected_version + 1,
            )
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise VersionConflictError(
                    f"enrollment {enrollment.id} moved past version {expected_version}"
                )
        return replace(enrollment, version=expected_version + 1)


def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
    return Enrollment(
        id=row.id,
        user_id=row.user_id,
        course_id=row.course_id,
        enrolled_at=row.enrolled_at,
        status=row.status,  # type: ignore[arg-type]
        progress_percentage=row.progress_percentage,
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_accessed_at=row.last_accessed_at,
        version=row.version,
    )
