"""Chapter progress record store.

compare_and_swap() is the only concurrency-control primitive the engine
relies on: for two concurrent swaps against the same key expecting the
same version, exactly one succeeds and the other raises
VersionConflictError.
"""

from __future__ import annotations

import threading
from typing import Protocol
from uuid import UUID

from courseprogress.core.errors import VersionConflictError
from courseprogress.models.progress import ChapterProgress


class ProgressRecordStore(Protocol):
    async def get(
        self, enrollment_id: UUID, chapter_id: UUID
    ) -> ChapterProgress | None: ...
    async def get_all(self, enrollment_id: UUID) -> list[ChapterProgress]: ...
    async def create(self, enrollment_id: UUID, chapter_id: UUID) -> ChapterProgress: ...
    async def compare_and_swap(
        self, record: ChapterProgress, expected_version: int
    ) -> None: ...
    async def delete_for_enrollment(self, enrollment_id: UUID) -> int: ...


class InMemoryProgressRecordStore:
    """Dict-backed store for tests and local dev.

    A threading.Lock guards every read-modify-write, so swaps stay atomic
    whether callers are asyncio tasks on one loop or worker threads each
    running their own loop.  No method awaits while holding the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[UUID, UUID], ChapterProgress] = {}

    async def get(self, enrollment_id: UUID, chapter_id: UUID) -> ChapterProgress | None:
        with self._lock:
            return self._records.get((enrollment_id, chapter_id))

    async def get_all(self, enrollment_id: UUID) -> list[ChapterProgress]:
        with self._lock:
            return [r for (eid, _), r in self._records.items() if eid == enrollment_id]

    async def create(self, enrollment_id: UUID, chapter_id: UUID) -> ChapterProgress:
        key = (enrollment_id, chapter_id)
        with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                # Lost a creation race: hand back the winner's record.
                return existing
            record = ChapterProgress.new(enrollment_id=enrollment_id, chapter_id=chapter_id)
            self._records[key] = record
            return record

    async def compare_and_swap(self, record: ChapterProgress, expected_version: int) -> None:
        key = (record.enrollment_id, record.chapter_id)
        with self._lock:
            stored = self._records.get(key)
            if stored is None or stored.version != expected_version:
                raise VersionConflictError(
                    f"chapter progress {key} moved past version {expected_version}"
                )
            self._records[key] = record

    async def delete_for_enrollment(self, enrollment_id: UUID) -> int:
        with self._lock:
            keys = [k for k in self._records if k[0] == enrollment_id]
            for k in keys:
                del self._records[k]
            return len(keys)
