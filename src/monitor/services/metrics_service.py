from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple

from fastapi import Request

from src.monitor.schemas.common import to_datetime, to_epoch, utc_now
from src.monitor.schemas.metrics import MetricValue, QueryResponse, SeriesKeyOut, SeriesListResponse, SeriesOut
from src.monitor.services.metric_store import parse_matcher
from src.monitor.state import get_state


def _compute_range(start: Optional[datetime], end: Optional[datetime]) -> Tuple[datetime, datetime]:
    end = end or utc_now()
    start = start or (end - timedelta(hours=1))
    if start > end:
        start, end = end, start
    return start, end


# PUBLIC_INTERFACE
def query_range(request: Request, match: str, start: Optional[datetime], end: Optional[datetime]) -> QueryResponse:
    """Return every series matching `match` with its samples in [start, end] (raises InvalidMatcher)."""
    matcher = parse_matcher(match)
    start, end = _compute_range(start, end)
    store = get_state(request.app).store

    series = [
        SeriesOut(
            metric=key.name,
            labels=key.label_dict(),
            points=[MetricValue(ts=to_datetime(s.ts), value=s.value) for s in samples],
        )
        for key, samples in store.query(matcher, to_epoch(start), to_epoch(end))
    ]
    return QueryResponse(match=match, start=start, end=end, series=series, total=len(series))


# PUBLIC_INTERFACE
def list_series(request: Request, match: Optional[str] = None) -> SeriesListResponse:
    """List known series, optionally filtered by a selector (raises InvalidMatcher)."""
    matcher = parse_matcher(match) if match else None
    keys = get_state(request.app).store.series(matcher)
    items = [SeriesKeyOut(metric=k.name, labels=k.label_dict()) for k in keys]
    return SeriesListResponse(items=items, total=len(items))
