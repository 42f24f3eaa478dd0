from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from src.monitor.schemas.common import HealthResponse, utc_now
from src.monitor.state import get_state

router = APIRouter(tags=["Health"])


def _sanitize_mongo_uri_for_response(uri: str) -> str:
    """Mask credentials in mongo URIs to avoid returning secrets to clients."""
    return re.sub(r"(mongodb(?:\+srv)?://)([^:@/]+):([^@/]+)@", r"\1\2:***@", uri)


class EngineDiagnosticsResponse(BaseModel):
    """Diagnostics describing the loaded configuration and store size."""

    targets: int = Field(..., ge=0, description="Configured scrape targets.")
    targets_down: int = Field(..., ge=0, description="Targets currently marked down.")
    rules: int = Field(..., ge=0, description="Loaded alert rules.")
    active_alerts: int = Field(..., ge=0, description="Pending or firing alert instances.")
    series: int = Field(..., ge=0, description="Series held in the metric store.")
    config_source: Optional[str] = Field(default=None, description="Path the definitions were loaded from.")
    config_generation: int = Field(..., ge=0, description="Incremented on every successful (re)load.")
    last_reload_error: Optional[str] = Field(default=None, description="Error from the last failed reload.")
    retention_sec: float = Field(..., description="Retention horizon (0 means unlimited).")
    rule_eval_interval_sec: float = Field(..., description="Rule evaluation interval.")
    webhook_configured: bool = Field(..., description="Whether a notification webhook URL is set.")
    history_backend: str = Field(..., description="'memory' or 'mongo'.")
    history_mongo_uri_sanitized: Optional[str] = Field(default=None, description="Mongo URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the diagnostics were produced (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/engine",
    response_model=EngineDiagnosticsResponse,
    summary="Engine diagnostics",
    description="Reports loaded targets/rules, store size and notification settings (no secrets).",
    operation_id="engine_diagnostics",
)
def engine_diagnostics(request: Request) -> EngineDiagnosticsResponse:
    """Return engine diagnostics."""
    state = get_state(request.app)
    cfg = state.config
    defs = state.holder.definitions
    health = state.coordinator.health()
    return EngineDiagnosticsResponse(
        targets=len(defs.targets),
        targets_down=sum(1 for h in health if h.status == "down"),
        rules=len(defs.rules),
        active_alerts=len(state.evaluator.active_alerts()),
        series=state.store.series_count(),
        config_source=defs.source,
        config_generation=state.holder.generation,
        last_reload_error=state.holder.last_error,
        retention_sec=cfg.retention_sec,
        rule_eval_interval_sec=cfg.rule_eval_interval_sec,
        webhook_configured=bool(cfg.notify_webhook_url),
        history_backend="mongo" if state.mongo is not None else "memory",
        history_mongo_uri_sanitized=(
            _sanitize_mongo_uri_for_response(cfg.alert_history_mongo_uri) if cfg.alert_history_mongo_uri else None
        ),
        timestamp=utc_now().isoformat(),
    )


@router.get(
    "/metrics",
    summary="Self metrics",
    description="Engine self-monitoring metrics in Prometheus text format.",
    operation_id="self_metrics",
    response_class=Response,
)
def self_metrics(request: Request) -> Response:
    """Expose the engine's own counters and gauges."""
    state = get_state(request.app)
    state.metrics.set_active_series(state.store.series_count())
    return Response(content=state.metrics.render(), media_type=CONTENT_TYPE_LATEST)
