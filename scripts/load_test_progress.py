#!/usr/bin/env python3
"""Load test: concurrent time-spent events against one chapter.

RUN:  python scripts/load_test_progress.py [CONCURRENCY]

Runs the app in-process over httpx's ASGI transport with the in-memory
stores (leave DATABASE_URL unset), seeds one course and one
enrollment, then fires CONCURRENCY POST .../time-spent {"minutes": 1}
requests at the same chapter all at once.

Every accepted request must land exactly once: the final
total_time_spent_minutes has to equal the number of 200 responses.  409s
mean a request ran out of compare-and-swap retries (raise
PROGRESS_MAX_RETRIES to trade latency for fewer of them).
"""

from __future__ import annotations

import asyncio
import sys
import time
import uuid

import httpx

from courseprogress.api.progress import chapter_catalog, progress_service
from courseprogress.main import app
from courseprogress.models.chapter import Chapter
from courseprogress.services import token_service

DEFAULT_CONCURRENCY = 100


async def run(concurrency: int) -> int:
    course_id = uuid.uuid4()
    chapter = Chapter.new(course_id=course_id, order=1, content_type="video")
    chapter_catalog.add(chapter)  # type: ignore[attr-defined]
    enrollment = await progress_service.enroll("load-test-user", course_id)
    token = token_service.create_access_token(sub="load-test-user")

    url = f"/v1/progress/enrollments/{enrollment.id}/chapters/{chapter.id}/time-spent"
    headers = {"Authorization": f"Bearer {token}"}

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        print(f"Firing {concurrency} concurrent time-spent events...")
        start = time.monotonic()
        responses = await asyncio.gather(
            *(client.post(url, json={"minutes": 1}, headers=headers) for _ in range(concurrency))
        )
        elapsed = time.monotonic() - start

        results: dict[int, int] = {}
        for resp in responses:
            results[resp.status_code] = results.get(resp.status_code, 0) + 1

        final = await client.get(f"/v1/progress/enrollments/{enrollment.id}", headers=headers)
        total = final.json()["summary"]["total_time_spent_minutes"]

    print()
    print(f"Results ({elapsed:.2f}s):")
    print("─" * 40)
    for code in sorted(results):
        print(f"  {code}: {results[code]:>5}")
    print(f"  total_time_spent_minutes: {total}")
    print()

    accepted = results.get(200, 0)
    if total != accepted:
        print(f"LOST UPDATES: {accepted} accepted but {total} minutes recorded")
        return 1
    print("Every accepted event was applied exactly once.")
    return 0


def main() -> None:
    concurrency = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_CONCURRENCY
    sys.exit(asyncio.run(run(concurrency)))


if __name__ == "__main__":
    main()
