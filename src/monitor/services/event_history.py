from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Tuple

from pymongo.collection import Collection

from src.monitor.schemas.common import to_datetime, to_epoch, utc_now

logger = logging.getLogger(__name__)


@dataclass
class AlertEvent:
    """A dispatched notification and its delivery outcome."""

    rule: str
    labels: Dict[str, str]
    status: str  # firing | resolved
    severity: str
    starts_at: float
    value: Optional[float] = None
    ends_at: Optional[float] = None
    delivered: bool = False
    attempts: int = 0
    error: Optional[str] = None
    created_at: float = field(default_factory=lambda: utc_now().timestamp())
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class InMemoryEventHistory:
    """Bounded ring buffer of alert events, newest last."""

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AlertEvent] = deque(maxlen=max(1, int(max_events)))
        self._lock = Lock()

    def record(self, event: AlertEvent) -> None:
        with self._lock:
            self._events.append(event)

    def list(
        self, rule: Optional[str] = None, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> Tuple[List[AlertEvent], int]:
        with self._lock:
            snapshot = list(self._events)
        matched = [
            e for e in reversed(snapshot) if (rule is None or e.rule == rule) and (status is None or e.status == status)
        ]
        return matched[offset : offset + limit], len(matched)

    def close(self) -> None:
        return None


def _event_to_doc(event: AlertEvent) -> Dict[str, Any]:
    doc = asdict(event)
    doc["startsAt"] = to_datetime(doc.pop("starts_at"))
    doc["endsAt"] = to_datetime(doc.pop("ends_at"))
    doc["createdAt"] = to_datetime(doc.pop("created_at"))
    return doc


def _doc_to_event(doc: Dict[str, Any]) -> AlertEvent:
    ends = doc.get("endsAt")
    return AlertEvent(
        id=doc["id"],
        rule=doc["rule"],
        labels=dict(doc.get("labels") or {}),
        status=doc["status"],
        severity=doc.get("severity", "warning"),
        value=doc.get("value"),
        starts_at=to_epoch(doc["startsAt"]),
        ends_at=to_epoch(ends) if ends is not None else None,
        delivered=bool(doc.get("delivered", False)),
        attempts=int(doc.get("attempts", 0)),
        error=doc.get("error"),
        created_at=to_epoch(doc["createdAt"]),
    )


class MongoEventHistory:
    """Alert events persisted to a MongoDB collection (blocking pymongo calls)."""

    def __init__(self, collection: Collection, on_close=None):
        self._col = collection
        self._on_close = on_close

    def record(self, event: AlertEvent) -> None:
        self._col.insert_one(_event_to_doc(event))

    def list(
        self, rule: Optional[str] = None, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> Tuple[List[AlertEvent], int]:
        query: Dict[str, Any] = {}
        if rule:
            query["rule"] = rule
        if status:
            query["status"] = status
        total = int(self._col.count_documents(query))
        cursor = self._col.find(query, projection={"_id": 0}).sort("createdAt", -1)
        docs = list(cursor.skip(int(offset)).limit(int(limit)))
        return [_doc_to_event(d) for d in docs], total

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close()
