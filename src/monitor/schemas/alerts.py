from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from src.monitor.schemas.common import Severity


AlertStatus = Literal["inactive", "pending", "firing"]
NotificationStatus = Literal["firing", "resolved"]


class NotificationPayload(BaseModel):
    """JSON body POSTed to the notification webhook."""

    alertname: str = Field(..., description="Name of the rule that produced the alert.")
    status: NotificationStatus = Field(..., description="firing or resolved.")
    severity: Severity = Field(..., description="Rule severity.")
    labels: Dict[str, str] = Field(..., description="Alert labels (instance labels + rule labels + alertname).")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Rendered rule annotations.")
    value: Optional[float] = Field(default=None, description="Expression value at the time of the event.")
    starts_at: datetime = Field(..., alias="startsAt", description="When the alert started firing.")
    ends_at: Optional[datetime] = Field(default=None, alias="endsAt", description="When it resolved (resolved only).")

    model_config = {"populate_by_name": True}


class AlertRuleOut(BaseModel):
    """Response model for a loaded alert rule."""

    name: str = Field(..., description="Rule name.")
    expr: str = Field(..., description="Alert expression.")
    for_sec: float = Field(..., ge=0, description="Seconds the expression must hold before firing.")
    severity: Severity = Field(..., description="Severity of the alert when firing.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Static labels added to alerts.")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Annotation templates.")


class AlertRuleListResponse(BaseModel):
    """Envelope for listing rules."""

    items: List[AlertRuleOut] = Field(..., description="List of alert rules.")
    total: int = Field(..., ge=0, description="Total count of rules returned.")


class AlertInstanceOut(BaseModel):
    """A pending or firing alert instance."""

    rule: str = Field(..., description="Rule name.")
    labels: Dict[str, str] = Field(..., description="Instance labels as produced by the expression.")
    status: AlertStatus = Field(..., description="pending or firing.")
    severity: Severity = Field(..., description="Rule severity.")
    since: datetime = Field(..., description="When the expression first became true.")
    fired_at: Optional[datetime] = Field(default=None, description="When the instance started firing.")
    value: Optional[float] = Field(default=None, description="Last evaluated value.")


class AlertInstanceListResponse(BaseModel):
    """Envelope for listing active alerts."""

    items: List[AlertInstanceOut] = Field(..., description="Pending and firing alert instances.")
    total: int = Field(..., ge=0, description="Total count returned.")


class AlertEventOut(BaseModel):
    """Response model for a dispatched notification."""

    id: str = Field(..., description="Event id.")
    rule: str = Field(..., description="Rule name.")
    labels: Dict[str, str] = Field(..., description="Alert labels.")
    status: NotificationStatus = Field(..., description="firing or resolved.")
    severity: Severity = Field(..., description="Rule severity at time of event.")
    value: Optional[float] = Field(default=None, description="Measured value (if available).")
    starts_at: datetime = Field(..., description="When the alert started firing.")
    ends_at: Optional[datetime] = Field(default=None, description="When the alert resolved.")
    delivered: bool = Field(..., description="Whether the sink accepted the notification.")
    attempts: int = Field(..., ge=0, description="Delivery attempts made.")
    error: Optional[str] = Field(default=None, description="Last delivery error, if any.")
    created_at: datetime = Field(..., description="UTC event creation timestamp.")


class AlertEventListResponse(BaseModel):
    """Envelope for listing alert events."""

    items: List[AlertEventOut] = Field(..., description="List of alert events, newest first.")
    total: int = Field(..., ge=0, description="Total count matching the filters.")
