from __future__ import annotations

from fastapi import APIRouter, HTTPException, Path, Request

from src.monitor.schemas.common import ErrorResponse, to_datetime
from src.monitor.schemas.metrics import TargetHealthOut, TargetListResponse
from src.monitor.services.scrape_coordinator import TargetHealth
from src.monitor.state import get_state

router = APIRouter(prefix="/api/targets", tags=["Targets"])


def _health_out(h: TargetHealth) -> TargetHealthOut:
    return TargetHealthOut(
        name=h.name,
        url=h.url,
        status=h.status,
        consecutive_failures=h.consecutive_failures,
        last_scrape=to_datetime(h.last_scrape),
        last_duration_sec=h.last_duration_sec,
        last_error=h.last_error,
        samples_last_scrape=h.samples_last_scrape,
    )


@router.get(
    "",
    response_model=TargetListResponse,
    summary="List targets",
    description="List configured scrape targets with their current health.",
    operation_id="list_targets",
)
def list_targets(request: Request) -> TargetListResponse:
    """List targets and scrape health."""
    items = [_health_out(h) for h in get_state(request.app).coordinator.health()]
    return TargetListResponse(items=items, total=len(items))


@router.post(
    "/{name}/scrape",
    response_model=TargetHealthOut,
    responses={404: {"model": ErrorResponse}},
    summary="Scrape target now",
    description="Run one scrape of the named target immediately and return its health.",
    operation_id="scrape_target",
)
async def scrape_target(request: Request, name: str = Path(..., description="Target name")) -> TargetHealthOut:
    """Trigger a single scrape."""
    state = get_state(request.app)
    if name not in state.holder.definitions.targets:
        raise HTTPException(status_code=404, detail="target not found")
    return _health_out(await state.coordinator.scrape_once(name))
