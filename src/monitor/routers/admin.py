from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from src.monitor.schemas.common import ErrorResponse
from src.monitor.state import get_state

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class ReloadResponse(BaseModel):
    """Outcome of a configuration reload."""

    ok: bool = Field(..., description="Whether the new definitions were applied.")
    generation: int = Field(..., ge=0, description="Config generation after the reload.")
    targets: int = Field(..., ge=0, description="Targets now configured.")
    rules: int = Field(..., ge=0, description="Rules now loaded.")


@router.post(
    "/reload",
    response_model=ReloadResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Reload configuration",
    description="Re-read the engine config file. On error the previous targets and rules stay active.",
    operation_id="reload_config",
)
async def reload_config(request: Request) -> ReloadResponse:
    """Reload targets and rules from disk."""
    state = get_state(request.app)
    if not state.reload():
        raise HTTPException(status_code=422, detail=state.holder.last_error or "reload failed")
    defs = state.holder.definitions
    return ReloadResponse(ok=True, generation=state.holder.generation, targets=len(defs.targets), rules=len(defs.rules))
