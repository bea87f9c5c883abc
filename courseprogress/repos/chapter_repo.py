"""Read side of the course catalog.

The catalog itself (create, reorder, publish) belongs to another service;
the progress engine only looks chapters up.  `add` and `set_published`
exist on the in-memory version for seeding and tests.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Protocol
from uuid import UUID

from courseprogress.models.chapter import Chapter


class ChapterCatalog(Protocol):
    async def get(self, chapter_id: UUID) -> Chapter | None: ...
    async def list_by_course(self, course_id: UUID) -> list[Chapter]: ...


class InMemoryChapterCatalog:
    def __init__(self) -> None:
        self._by_id: dict[UUID, Chapter] = {}

    async def get(self, chapter_id: UUID) -> Chapter | None:
        return self._by_id.get(chapter_id)

    async def list_by_course(self, course_id: UUID) -> list[Chapter]:
        chapters = [c for c in self._by_id.values() if c.course_id == course_id]
        return sorted(chapters, key=lambda c: c.order)

    def add(self, chapter: Chapter) -> None:
        if any(
            c.course_id == chapter.course_id and c.order == chapter.order
            for c in self._by_id.values()
        ):
            raise ValueError("chapter order already used in course")
        self._by_id[chapter.id] = chapter

    def set_published(self, chapter_id: UUID, is_published: bool) -> Chapter:
        chapter = self._by_id.get(chapter_id)
        if chapter is None:
            raise KeyError("chapter not found")
        updated = replace(chapter, is_published=is_published)
        self._by_id[chapter_id] = updated
        return updated
