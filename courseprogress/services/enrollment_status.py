"""Enrollment lifecycle policy.

    not_started ──activity──▶ in_progress ──100%──▶ completed
         │                        │
         └────────drop()──────────┴──▶ dropped

  - Activity means a completed chapter or any positive time spent.
  - completed requires percentage == 100 over at least one published
    chapter, so an empty course never auto-completes.
  - completed is terminal: a later recompute (for instance after a
    chapter is unpublished) never moves it back, and it cannot be dropped.
  - dropped is only entered through drop(); recompute leaves it alone.

Both functions are pure and return a new Enrollment (or the same one when
nothing changed), so recompute() is idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from courseprogress.core.errors import PreconditionFailedError
from courseprogress.models.enrollment import Enrollment
from courseprogress.models.progress import EnrollmentProgressSummary

logger = logging.getLogger(__name__)


def recompute(
    enrollment: Enrollment,
    summary: EnrollmentProgressSummary,
    *,
    now: int,
    touched: bool = False,
) -> Enrollment:
    """Apply an aggregation result to the enrollment.

    `touched` marks a recompute triggered by a committed event, which
    refreshes last_accessed_at; a plain recompute never changes it.
    """
    if enrollment.status == "dropped":
        return enrollment
    if enrollment.status == "completed":
        # Status and percentage are frozen; only the access stamp moves.
        if touched and enrollment.last_accessed_at != now:
            return replace(enrollment, last_accessed_at=now)
        return enrollment

    status = enrollment.status
    started_at = enrollment.started_at
    completed_at = enrollment.completed_at

    if status == "not_started" and (summary.completed_chapters > 0 or summary.has_activity):
        status = "in_progress"
        started_at = started_at if started_at is not None else now

    if summary.total_chapters > 0 and summary.percentage == 100:
        status = "completed"
        started_at = started_at if started_at is not None else now
        completed_at = completed_at if completed_at is not None else now

    updated = replace(
        enrollment,
        status=status,
        progress_percentage=100 if status == "completed" else summary.percentage,
        started_at=started_at,
        completed_at=completed_at,
        last_accessed_at=now if touched else enrollment.last_accessed_at,
    )
    if updated.status != enrollment.status:
        logger.info(
            "Enrollment %s status %s -> %s (%d/%d chapters)",
            enrollment.id,
            enrollment.status,
            updated.status,
            summary.completed_chapters,
            summary.total_chapters,
            extra={"enrollment_id": str(enrollment.id)},
        )
    return updated


def drop(enrollment: Enrollment) -> Enrollment:
    """Move an active enrollment to dropped.

    Dropping twice is a no-op.  A completed enrollment is a historical
    fact and cannot be dropped.
    """
    if enrollment.status == "dropped":
        return enrollment
    if enrollment.status == "completed":
        raise PreconditionFailedError("a completed enrollment cannot be dropped")
    logger.info(
        "Enrollment %s dropped from %s",
        enrollment.id,
        enrollment.status,
        extra={"enrollment_id": str(enrollment.id)},
    )
    return replace(enrollment, status="dropped")
