from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from uuid import UUID, uuid4

EnrollmentStatus = Literal["not_started", "in_progress", "completed", "dropped"]


@dataclass(frozen=True, slots=True)
class Enrollment:
    """A learner's enrollment in one course: the aggregate root.

    status, progress_percentage and the timestamps are written only by the
    enrollment status manager.  Timestamps are Unix seconds.
    """

    id: UUID
    user_id: str
    course_id: UUID
    enrolled_at: int
    status: EnrollmentStatus = "not_started"
    progress_percentage: int = 0
    started_at: int | None = None
    completed_at: int | None = None
    last_accessed_at: int | None = None
    # Optimistic-concurrency token for status writes
    version: int = 1

    @staticmethod
    def new(*, user_id: str, course_id: UUID, enrolled_at: int) -> Enrollment:
        return Enrollment(
            id=uuid4(),
            user_id=user_id,
            course_id=course_id,
            enrolled_at=enrolled_at,
        )
