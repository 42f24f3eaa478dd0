from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Query, Request

from src.monitor.schemas.alerts import AlertEventListResponse, AlertInstanceListResponse, AlertRuleListResponse
from src.monitor.services import alerts_service

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.get(
    "/rules",
    response_model=AlertRuleListResponse,
    summary="List alert rules",
    description="List the alert rules loaded from the engine config file.",
    operation_id="list_alert_rules",
)
def list_rules(request: Request) -> AlertRuleListResponse:
    """List alert rules."""
    items = alerts_service.list_rules(request)
    return AlertRuleListResponse(items=items, total=len(items))


@router.get(
    "/active",
    response_model=AlertInstanceListResponse,
    summary="List active alerts",
    description="List pending and firing alert instances, optionally filtered by rule name.",
    operation_id="list_active_alerts",
)
def list_active(
    request: Request,
    rule: Optional[str] = Query(default=None, description="Optional rule name filter."),
) -> AlertInstanceListResponse:
    """List pending and firing alerts."""
    items = alerts_service.list_active(request, rule)
    return AlertInstanceListResponse(items=items, total=len(items))


@router.get(
    "/events",
    response_model=AlertEventListResponse,
    summary="List alert events feed",
    description="List dispatched notifications (firing/resolved) with delivery outcome, newest first.",
    operation_id="list_alert_events",
)
async def list_events(
    request: Request,
    rule: Optional[str] = Query(default=None, description="Filter by rule name."),
    status_filter: Optional[Literal["firing", "resolved"]] = Query(default=None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> AlertEventListResponse:
    """List alert events with filters and pagination."""
    items, total = await alerts_service.list_events(request, rule, status_filter, limit, offset)
    return AlertEventListResponse(items=items, total=total)
