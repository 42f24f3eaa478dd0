from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

from fastapi import Request

from src.monitor.schemas.alerts import AlertEventOut, AlertInstanceOut, AlertRuleOut
from src.monitor.schemas.common import to_datetime
from src.monitor.services.event_history import AlertEvent
from src.monitor.state import get_state

logger = logging.getLogger(__name__)


def _event_out(e: AlertEvent) -> AlertEventOut:
    return AlertEventOut(
        id=e.id,
        rule=e.rule,
        labels=e.labels,
        status=e.status,
        severity=e.severity,
        value=e.value,
        starts_at=to_datetime(e.starts_at),
        ends_at=to_datetime(e.ends_at),
        delivered=e.delivered,
        attempts=e.attempts,
        error=e.error,
        created_at=to_datetime(e.created_at),
    )


# PUBLIC_INTERFACE
def list_rules(request: Request) -> List[AlertRuleOut]:
    """List loaded alert rules ordered by name."""
    rules = get_state(request.app).holder.definitions.rules
    return [
        AlertRuleOut(
            name=r.name,
            expr=r.expr_text,
            for_sec=r.for_sec,
            severity=r.severity,
            labels=dict(r.labels),
            annotations=dict(r.annotations),
        )
        for _, r in sorted(rules.items())
    ]


# PUBLIC_INTERFACE
def list_active(request: Request, rule: Optional[str] = None) -> List[AlertInstanceOut]:
    """Pending and firing alert instances, optionally for one rule."""
    states = get_state(request.app).evaluator.active_alerts()
    return [
        AlertInstanceOut(
            rule=s.rule,
            labels=dict(s.labels),
            status=s.status,
            severity=s.severity,
            since=to_datetime(s.since),
            fired_at=to_datetime(s.fired_at),
            value=s.value,
        )
        for s in states
        if rule is None or s.rule == rule
    ]


# PUBLIC_INTERFACE
async def list_events(
    request: Request, rule: Optional[str], status: Optional[str], limit: int, offset: int
) -> Tuple[List[AlertEventOut], int]:
    """List dispatched notifications, newest first. Returns (items, total_matching)."""
    history = get_state(request.app).dispatcher.history
    events, total = await asyncio.to_thread(history.list, rule, status, limit, offset)
    return [_event_out(e) for e in events], total
