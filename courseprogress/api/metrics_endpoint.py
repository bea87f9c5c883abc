"""Prometheus scrape endpoint.

Returns the text exposition format, e.g.

  progress_events_total{event="time_spent",outcome="applied"} 812.0
  progress_cas_conflicts_total{record="chapter_progress"} 37.0

Left unauthenticated; restrict it at the ingress in production.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose all Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
