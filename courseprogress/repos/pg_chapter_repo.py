"""PostgreSQL implementation of ChapterCatalog (read-only)."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseprogress.db.engine import session_scope
from courseprogress.db.tables import ChapterRow
from courseprogress.models.chapter import Chapter


class PgChapterCatalog:
    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory

    async def get(self, chapter_id: UUID) -> Chapter | None:
        stmt = select(ChapterRow).where(ChapterRow.id == chapter_id)
        async with session_scope(self._session_factory) as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return None if row is None else _row_to_chapter(row)

    async def list_by_course(self, course_id: UUID) -> list[Chapter]:
        stmt = (
            select(ChapterRow)
            .where(ChapterRow.course_id == course_id)
            .order_by(ChapterRow.chapter_order)
        )
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_chapter(r) for r in rows]


def _row_to_chapter(row: ChapterRow) -> Chapter:
    return Chapter(
        id=row.id,
        course_id=row.course_id,
        order=row.chapter_order,
        content_type=row.content_type,  # type: ignore[arg-type]
        is_published=row.is_published,
    )
