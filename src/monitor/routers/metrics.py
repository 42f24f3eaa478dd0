from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from src.monitor.schemas.common import ErrorResponse
from src.monitor.schemas.metrics import QueryResponse, SeriesListResponse
from src.monitor.services import metrics_service
from src.monitor.services.metric_store import InvalidMatcher

router = APIRouter(prefix="/api/metrics", tags=["Metrics"])


@router.get(
    "/query",
    response_model=QueryResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Range query",
    description=(
        "Return raw samples for every series matching a selector such as "
        "'cpu_usage{host=\"a\"}' within [start, end]. Defaults to the last hour."
    ),
    operation_id="query_range",
)
def query_range(
    request: Request,
    match: str = Query(..., description="Series selector, e.g. cpu_usage{job=\"node\"}."),
    start: Optional[datetime] = Query(default=None, description="ISO datetime start (inclusive)."),
    end: Optional[datetime] = Query(default=None, description="ISO datetime end (inclusive)."),
) -> QueryResponse:
    """Return samples for matching series."""
    try:
        return metrics_service.query_range(request, match, start, end)
    except InvalidMatcher as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get(
    "/series",
    response_model=SeriesListResponse,
    responses={400: {"model": ErrorResponse}},
    summary="List series",
    description="List known series, optionally filtered by a selector.",
    operation_id="list_series",
)
def list_series(
    request: Request,
    match: Optional[str] = Query(default=None, description="Optional series selector."),
) -> SeriesListResponse:
    """List series held in the store."""
    try:
        return metrics_service.list_series(request, match)
    except InvalidMatcher as e:
        raise HTTPException(status_code=400, detail=str(e))
