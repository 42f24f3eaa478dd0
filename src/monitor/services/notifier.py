from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple, Union

import httpx
from tenacity import AsyncRetrying, before_sleep_log, stop_after_attempt, wait_exponential

from src.monitor.config import ConfigHolder
from src.monitor.schemas.alerts import NotificationPayload
from src.monitor.schemas.common import to_datetime
from src.monitor.services.event_history import AlertEvent, InMemoryEventHistory, MongoEventHistory
from src.monitor.services.self_metrics import SelfMetrics

logger = logging.getLogger(__name__)

FIRING = "firing"
RESOLVED = "resolved"

Labels = Tuple[Tuple[str, str], ...]
EventHistory = Union[InMemoryEventHistory, MongoEventHistory]


@dataclass(frozen=True)
class Notification:
    """A state change surfaced by the rule evaluator."""

    rule: str
    labels: Labels
    status: str
    severity: str
    starts_at: float
    annotations: Tuple[Tuple[str, str], ...] = ()
    value: Optional[float] = None
    ends_at: Optional[float] = None

    @property
    def key(self) -> Tuple[str, Labels]:
        return (self.rule, self.labels)

    def payload(self) -> dict:
        labels = dict(self.labels)
        labels.setdefault("alertname", self.rule)
        return NotificationPayload(
            alertname=self.rule,
            status=self.status,
            severity=self.severity,
            labels=labels,
            annotations=dict(self.annotations),
            value=self.value,
            startsAt=to_datetime(self.starts_at),
            endsAt=to_datetime(self.ends_at),
        ).model_dump(mode="json", by_alias=True)


class WebhookSink:
    """POSTs notification payloads as JSON; non-2xx responses raise."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def send(self, payload: dict) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient()
        resp = await self._client.post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class NullSink:
    """Used when no webhook is configured; logs notifications instead of sending them."""

    async def send(self, payload: dict) -> None:
        logger.info(
            "Notification (no webhook configured): %s %s %s",
            payload.get("status"),
            payload.get("alertname"),
            payload.get("labels"),
        )

    async def aclose(self) -> None:
        return None


@dataclass
class _Delivery:
    notification: Notification
    attempts: int = 0
    error: Optional[str] = None
    delivered: bool = False


class NotifierDispatcher:
    """
    Deduplicates alert state changes and delivers them to a sink in the background.

    - submit() never blocks the caller: it filters and enqueues.
    - Per (rule, labels) key, a firing notification is forwarded only if the last forwarded status was not
      firing, and a resolution only if it was firing.
    - A single worker delivers in submission order with bounded exponential backoff, then drops.
    """

    def __init__(
        self,
        holder: ConfigHolder,
        sink,
        history: Optional[EventHistory] = None,
        metrics: Optional[SelfMetrics] = None,
    ):
        cfg = holder.engine
        self.sink = sink
        self.history = history or InMemoryEventHistory(cfg.alert_history_max)
        self.metrics = metrics
        self.max_attempts = int(cfg.notify_max_attempts)
        self.backoff_base = float(cfg.notify_backoff_base_sec)
        self.backoff_max = float(cfg.notify_backoff_max_sec)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=int(cfg.notify_queue_size))
        self._last_forwarded: Dict[Tuple[str, Labels], str] = {}
        self._worker: Optional[asyncio.Task] = None

    # PUBLIC_INTERFACE
    def submit(self, notifications: Iterable[Notification]) -> int:
        """Dedup and enqueue notifications; returns how many were enqueued."""
        enqueued = 0
        for n in notifications:
            last = self._last_forwarded.get(n.key)
            if n.status == FIRING and last == FIRING:
                continue
            if n.status == RESOLVED and last != FIRING:
                continue
            try:
                self._queue.put_nowait(n)
            except asyncio.QueueFull:
                logger.error("Notification queue full; dropping %s for rule=%s labels=%s", n.status, n.rule, n.labels)
                if self.metrics:
                    self.metrics.record_notification("dropped_queue_full")
                if n.status == RESOLVED:
                    # Resolutions are never resent; forget the key so the next firing is forwarded.
                    self._last_forwarded.pop(n.key, None)
                continue
            if n.status == FIRING:
                self._last_forwarded[n.key] = FIRING
            else:
                self._last_forwarded.pop(n.key, None)
            enqueued += 1
        if self.metrics:
            self.metrics.set_queue_depth(self._queue.qsize())
        return enqueued

    async def _deliver(self, delivery: _Delivery) -> None:
        payload = delivery.notification.payload()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                delivery.attempts = attempt.retry_state.attempt_number
                await self.sink.send(payload)
        delivery.delivered = True

    async def _record(self, delivery: _Delivery) -> None:
        n = delivery.notification
        event = AlertEvent(
            rule=n.rule,
            labels=dict(n.labels),
            status=n.status,
            severity=n.severity,
            value=n.value,
            starts_at=n.starts_at,
            ends_at=n.ends_at,
            delivered=delivery.delivered,
            attempts=delivery.attempts,
            error=delivery.error,
        )
        try:
            await asyncio.to_thread(self.history.record, event)
        except Exception:
            logger.exception("Failed recording alert event for rule=%s", n.rule)

    async def _process(self, n: Notification) -> None:
        delivery = _Delivery(notification=n)
        try:
            await self._deliver(delivery)
            if self.metrics:
                self.metrics.record_notification("delivered")
        except Exception as e:
            delivery.error = f"{type(e).__name__}: {e}"
            logger.error(
                "Dropping %s notification for rule=%s labels=%s after %s attempt(s): %s",
                n.status,
                n.rule,
                dict(n.labels),
                delivery.attempts,
                delivery.error,
            )
            if self.metrics:
                self.metrics.record_notification("dropped")
        await self._record(delivery)

    async def _run(self) -> None:
        logger.info("Notifier dispatcher started (max_attempts=%s)", self.max_attempts)
        while True:
            n = await self._queue.get()
            try:
                await self._process(n)
            finally:
                self._queue.task_done()
                if self.metrics:
                    self.metrics.set_queue_depth(self._queue.qsize())

    # PUBLIC_INTERFACE
    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="notifier")

    async def drain(self) -> None:
        """Wait until every queued notification has been processed."""
        await self._queue.join()

    # PUBLIC_INTERFACE
    async def stop(self, grace: float = 5.0) -> None:
        """Give queued notifications up to `grace` seconds to deliver, then stop the worker."""
        if self._worker is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Notifier stopped with %s undelivered notification(s)", self._queue.qsize())
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        await self.sink.aclose()
