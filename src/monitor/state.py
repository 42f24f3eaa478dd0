from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from fastapi import FastAPI

from src.monitor.config import ConfigHolder, EngineConfig
from src.monitor.db.mongo import MongoManager
from src.monitor.services.event_history import InMemoryEventHistory, MongoEventHistory
from src.monitor.services.metric_store import MetricStore
from src.monitor.services.notifier import NotifierDispatcher, NullSink, WebhookSink
from src.monitor.services.rule_evaluator import RuleEvaluator
from src.monitor.services.scrape_coordinator import ScrapeCoordinator
from src.monitor.services.self_metrics import SelfMetrics


@dataclass
class AppState:
    """Typed app.state container for the engine components."""

    holder: ConfigHolder
    store: MetricStore
    metrics: SelfMetrics
    coordinator: ScrapeCoordinator
    dispatcher: NotifierDispatcher
    evaluator: RuleEvaluator
    mongo: Optional[MongoManager] = None
    evaluator_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles
    shutdown_event: Optional[object] = None  # asyncio.Event for the evaluator loop

    @property
    def config(self) -> EngineConfig:
        return self.holder.engine

    def reload(self) -> bool:
        """Reload targets/rules from disk and reconcile scrape tasks. Must run on the event loop."""
        ok = self.holder.reload()
        if ok:
            self.coordinator.sync()
        return ok


# PUBLIC_INTERFACE
def build_state(
    config: EngineConfig,
    *,
    scrape_client: Optional[httpx.AsyncClient] = None,
    sink=None,
    clock: Callable[[], float] = time.time,
) -> AppState:
    """Wire the store, scraper, evaluator and dispatcher around one ConfigHolder."""
    holder = ConfigHolder(config)
    metrics = SelfMetrics()
    store = MetricStore(retention_sec=config.retention_sec, on_evict=metrics.record_evicted)

    mongo: Optional[MongoManager] = None
    if config.alert_history_mongo_uri:
        mongo = MongoManager(config.alert_history_mongo_uri, config.alert_history_mongo_db)
        history = MongoEventHistory(mongo.alert_events(), on_close=mongo.close)
    else:
        history = InMemoryEventHistory(config.alert_history_max)

    if sink is None:
        if config.notify_webhook_url:
            sink = WebhookSink(config.notify_webhook_url, timeout=config.notify_timeout_sec)
        else:
            sink = NullSink()

    dispatcher = NotifierDispatcher(holder, sink, history=history, metrics=metrics)
    return AppState(
        holder=holder,
        store=store,
        metrics=metrics,
        coordinator=ScrapeCoordinator(holder, store, metrics=metrics, client=scrape_client, clock=clock),
        dispatcher=dispatcher,
        evaluator=RuleEvaluator(holder, store, dispatcher=dispatcher, metrics=metrics, clock=clock),
        mongo=mongo,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, state: AppState) -> None:
    """Attach AppState to a FastAPI app."""
    app.state.state = state


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
