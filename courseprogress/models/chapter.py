from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from uuid import UUID, uuid4

ContentType = Literal["video", "pdf", "external_resource"]

CONTENT_TYPES: tuple[str, ...] = ("video", "pdf", "external_resource")


@dataclass(frozen=True, slots=True)
class Chapter:
    """Catalog entry for one content unit of a course.

    Owned by the catalog; the progress engine only reads it.
    """

    id: UUID
    course_id: UUID
    order: int  # unique within course
    content_type: ContentType
    is_published: bool = True

    @staticmethod
    def new(
        *,
        course_id: UUID,
        order: int,
        content_type: ContentType,
        is_published: bool = True,
    ) -> Chapter:
        if content_type not in CONTENT_TYPES:
            raise ValueError(f"unknown content_type {content_type!r}")
        return Chapter(
            id=uuid4(),
            course_id=course_id,
            order=order,
            content_type=content_type,
            is_published=is_published,
        )
