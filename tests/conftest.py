from __future__ import annotations

import asyncio
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from courseprogress.api.progress import (
    chapter_catalog,
    enrollment_repo,
    progress_service,
    progress_store,
)
from courseprogress.main import app
from courseprogress.models.chapter import Chapter, ContentType
from courseprogress.models.enrollment import Enrollment
from courseprogress.services import token_service

# Ensure repo root is on sys.path so `import courseprogress` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_progress_state() -> None:
    """Clear the in-memory catalog, enrollments and records between tests."""
    chapter_catalog._by_id.clear()  # type: ignore[attr-defined]
    enrollment_repo._by_id.clear()  # type: ignore[attr-defined]
    progress_store._records.clear()  # type: ignore[attr-defined]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "learner-1",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(username: str = "learner-1", roles: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_token(username, roles)}"}


@pytest.fixture
def token() -> str:
    """Token for learner-1, the owner of seeded enrollments."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    return mint_token(username="test-admin", roles=["admin"])


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


@dataclass
class SeededCourse:
    course_id: uuid.UUID
    chapters: list[Chapter]
    enrollment: Enrollment


def seed_course(
    content_types: list[ContentType] | None = None,
    *,
    user_id: str = "learner-1",
) -> SeededCourse:
    """Create a course with one chapter per content type and enroll user_id.

    Defaults to the four-chapter course video, pdf, external_resource, video.
    """
    if content_types is None:
        content_types = ["video", "pdf", "external_resource", "video"]
    course_id = uuid.uuid4()
    chapters = []
    for order, content_type in enumerate(content_types, start=1):
        chapter = Chapter.new(course_id=course_id, order=order, content_type=content_type)
        chapter_catalog.add(chapter)  # type: ignore[attr-defined]
        chapters.append(chapter)
    enrollment = asyncio.run(progress_service.enroll(user_id, course_id))
    return SeededCourse(course_id=course_id, chapters=chapters, enrollment=enrollment)


@pytest.fixture
def course() -> SeededCourse:
    return seed_course()
