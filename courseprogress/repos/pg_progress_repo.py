"""PostgreSQL implementation of ProgressRecordStore.

The compare-and-swap is a single conditional UPDATE:

    UPDATE chapter_progress SET ..., version = :new
    WHERE enrollment_id = :e AND chapter_id = :c AND version = :expected

Postgres row locking serializes two such statements on the same row; the
second re-evaluates its WHERE against the committed row, matches zero
rows, and we report the conflict from rowcount.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseprogress.core.errors import VersionConflictError
from courseprogress.db.engine import session_scope
from courseprogress.db.tables import ChapterProgressRow
from courseprogress.models.progress import ChapterProgress


class PgProgressRecordStore:
    """Satisfies the ProgressRecordStore Protocol using PostgreSQL."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory

    async def get(self, enrollment_id: UUID, chapter_id: UUID) -> ChapterProgress | None:
        stmt = select(ChapterProgressRow).where(
            ChapterProgressRow.enrollment_id == enrollment_id,
            ChapterProgressRow.chapter_id == chapter_id,
        )
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return None if row is None else _row_to_progress(row)

    async def get_all(self, enrollment_id: UUID) -> list[ChapterProgress]:
        stmt = select(ChapterProgressRow).where(
            ChapterProgressRow.enrollment_id == enrollment_id
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_progress(r) for r in rows]

    async def create(self, enrollment_id: UUID, chapter_id: UUID) -> ChapterProgress:
        fresh = ChapterProgress.new(enrollment_id=enrollment_id, chapter_id=chapter_id)
        # ON CONFLICT DO NOTHING makes a lost creation race harmless; the
        # follow-up SELECT returns whichever row won.
        stmt = (
            insert(ChapterProgressRow)
            .values(**_progress_values(fresh))
            .on_conflict_do_nothing(index_elements=["enrollment_id", "chapter_id"])
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)
        record = await self.get(enrollment_id, chapter_id)
        if record is None:
            raise RuntimeError("chapter progress row vanished right after insert")
        return record

    async def compare_and_swap(self, record: ChapterProgress, expected_version: int) -> None:
        values = _progress_values(record)
        del values["enrollment_id"], values["chapter_id"]
        stmt = (
            update(ChapterProgressRow)
            .where(
                ChapterProgressRow.enrollment_id == record.enrollment_id,
                ChapterProgressRow.chapter_id == record.chapter_id,
                ChapterProgressRow.version == expected_version,
            )
            .values(**values)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise VersionConflictError(
                    f"chapter progress ({record.enrollment_id}, {record.chapter_id})"
                    f" moved past version {expected_version}"
                )

    async def delete_for_enrollment(self, enrollment_id: UUID) -> int:
        stmt = delete(ChapterProgressRow).where(
            ChapterProgressRow.enrollment_id == enrollment_id
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount or 0


def _progress_values(record: ChapterProgress) -> dict[str, object]:
    return {
        "enrollment_id": record.enrollment_id,
        "chapter_id": record.chapter_id,
        "video_watched": record.video_watched,
        "pdf_viewed": record.pdf_viewed,
        "resource_opened": record.resource_opened,
        "completed": record.completed,
        "time_spent_minutes": record.time_spent_minutes,
        "completed_at": record.completed_at,
        "version": record.version,
    }


def _row_to_progress(row: ChapterProgressRow) -> ChapterProgress:
    return ChapterProgress(
        enrollment_id=row.enrollment_id,
        chapter_id=row.chapter_id,
        video_watched=row.video_watched,
        pdf_viewed=row.pdf_viewed,
        resource_opened=row.resource_opened,
        completed=row.completed,
        time_spent_minutes=row.time_spent_minutes,
        completed_at=row.completed_at,
        version=row.version,
    )
