from __future__ import annotations

import threading
from dataclasses import replace
from typing import Protocol
from uuid import UUID

from courseprogress.core.errors import VersionConflictError
from courseprogress.models.enrollment import Enrollment


class EnrollmentRepo(Protocol):
    async def get(self, enrollment_id: UUID) -> Enrollment | None: ...
    async def add(self, enrollment: Enrollment) -> None: ...
    async def list_by_course(self, course_id: UUID) -> list[Enrollment]: ...
    async def update_if_version(
        self, enrollment: Enrollment, expected_version: int
    ) -> Enrollment: ...


class InMemoryEnrollmentRepo:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[UUID, Enrollment] = {}

    async def get(self, enrollment_id: UUID) -> Enrollment | None:
        with self._lock:
            return self._by_id.get(enrollment_id)

    async def add(self, enrollment: Enrollment) -> None:
        with self._lock:
            if enrollment.id in self._by_id:
                raise ValueError("enrollment already exists")
            if any(
                e.user_id == enrollment.user_id and e.course_id == enrollment.course_id
                for e in self._by_id.values()
            ):
                raise ValueError("user already enrolled in course")
            self._by_id[enrollment.id] = enrollment

    async def list_by_course(self, course_id: UUID) -> list[Enrollment]:
        with self._lock:
            return [e for e in self._by_id.values() if e.course_id == course_id]

    async def update_if_version(
        self, enrollment: Enrollment, expected_version: int
    ) -> Enrollment:
        """Store `enrollment` as version expected_version + 1, or raise."""
        with self._lock:
            stored = self._by_id.get(enrollment.id)
            if stored is None or stored.version != expected_version:
                raise VersionConflictError(
                    f"enrollment {enrollment.id} moved past version {expected_version}"
                )
            updated = replace(enrollment, version=expected_version + 1)
            self._by_id[enrollment.id] = updated
            return updated
