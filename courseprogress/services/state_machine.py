"""Per-chapter progress state machine.

apply() takes the current record and one engagement event and returns the
next record.  It is pure: no I/O, no shared state, and no clock read when
`now` is passed in.  That is what lets ProgressService re-run it freely
after a compare-and-swap conflict.

Rules:
  - A flag event is a no-op when the chapter's content type does not carry
    that flag, or when the flag is already set.
  - MarkCompleted is accepted whatever the flags are; only the false→true
    transition stamps completed_at.  Completion never reverts.
  - AddTimeSpent rejects negative deltas; zero is a no-op.
  - Only a real change bumps `version`.  A no-op returns the very same
    object, which is what makes duplicate client submissions harmless.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import replace

from courseprogress.core.errors import InvalidArgumentError
from courseprogress.models.chapter import ContentType
from courseprogress.models.progress import (
    AddTimeSpent,
    ChapterProgress,
    MarkCompleted,
    MarkPdfViewed,
    MarkResourceOpened,
    MarkVideoWatched,
    ProgressEvent,
)

# Which engagement flag each content type may carry.
_FLAG_FOR_CONTENT: dict[str, str] = {
    "video": "video_watched",
    "pdf": "pdf_viewed",
    "external_resource": "resource_opened",
}

_FLAG_FOR_EVENT: dict[type, str] = {
    MarkVideoWatched: "video_watched",
    MarkPdfViewed: "pdf_viewed",
    MarkResourceOpened: "resource_opened",
}


def _now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


def event_matches_content(event: ProgressEvent, content_type: ContentType) -> bool:
    """True if the event is not a flag event, or its flag fits the content type."""
    flag = _FLAG_FOR_EVENT.get(type(event))
    return flag is None or _FLAG_FOR_CONTENT.get(content_type) == flag


def validate(event: ProgressEvent) -> None:
    """Reject events that can never be applied, before any I/O happens."""
    if isinstance(event, AddTimeSpent):
        if isinstance(event.minutes, bool) or not isinstance(event.minutes, int):
            raise InvalidArgumentError("time spent must be a whole number of minutes")
        if event.minutes < 0:
            raise InvalidArgumentError(
                f"time spent delta must be >= 0 (got {event.minutes})"
            )
    elif type(event) not in _FLAG_FOR_EVENT and not isinstance(event, MarkCompleted):
        raise InvalidArgumentError(f"unsupported event {event!r}")


def apply(
    current: ChapterProgress,
    event: ProgressEvent,
    *,
    content_type: ContentType,
    now: int | None = None,
) -> ChapterProgress:
    """Return the record that results from applying `event` to `current`."""
    validate(event)

    flag = _FLAG_FOR_EVENT.get(type(event))
    if flag is not None:
        if _FLAG_FOR_CONTENT.get(content_type) != flag:
            return current
        if getattr(current, flag):
            return current
        return replace(current, **{flag: True}, version=current.version + 1)

    if isinstance(event, MarkCompleted):
        if current.completed:
            return current
        return replace(
            current,
            completed=True,
            completed_at=now if now is not None else _now(),
            version=current.version + 1,
        )

    if isinstance(event, AddTimeSpent):
        if event.minutes == 0:
            return current
        return replace(
            current,
            time_spent_minutes=current.time_spent_minutes + event.minutes,
            version=current.version + 1,
        )

    # validate() rejects every other event type before we get here
    raise InvalidArgumentError(f"unsupported event {event!r}")


def apply_all(
    current: ChapterProgress,
    events: Iterable[ProgressEvent],
    *,
    content_type: ContentType,
    now: int | None = None,
) -> ChapterProgress:
    """Fold an ordered batch of events into one next state.

    Each state-changing event still bumps `version` once; the caller
    commits the result with a single compare-and-swap against the version
    it originally read.
    """
    events = list(events)
    for event in events:
        validate(event)

    stamp = now if now is not None else _now()
    record = current
    for event in events:
        record = apply(record, event, content_type=content_type, now=stamp)
    return record
