from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from src.monitor.config import EngineConfig, load_config
from src.monitor.routers import admin, alerts, health, metrics, targets
from src.monitor.services.rule_evaluator import rule_evaluator_loop
from src.monitor.state import AppState, build_state, get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health, diagnostics and self metrics."},
    {"name": "Metrics", "description": "Range queries over the in-memory metric store."},
    {"name": "Targets", "description": "Scrape targets and their health."},
    {"name": "Alerts", "description": "Alert rules, active alerts and the notification feed."},
    {"name": "Admin", "description": "Configuration reload."},
]

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    """Configure root logging once for the process."""
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _install_reload_signal(state: AppState) -> None:
    if not state.config.reload_on_sighup or not hasattr(signal, "SIGHUP"):
        return
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, state.reload)
        logger.info("Config reload on SIGHUP enabled")
    except (NotImplementedError, RuntimeError, ValueError):
        logger.info("SIGHUP reload unavailable in this environment; use POST /api/admin/reload")


def _remove_reload_signal(state: AppState) -> None:
    if not state.config.reload_on_sighup or not hasattr(signal, "SIGHUP"):
        return
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
    except (NotImplementedError, RuntimeError, ValueError):
        pass


# PUBLIC_INTERFACE
async def start_engine(state: AppState) -> None:
    """Load definitions, verify optional Mongo history, and start scraping, evaluation and dispatch."""
    state.holder.load()

    if state.mongo is not None:
        if not state.mongo.ping():
            raise RuntimeError("Mongo connectivity check failed during startup. Verify ALERT_HISTORY_MONGO_URI.")
        state.mongo.init_indexes()

    await state.dispatcher.start()
    await state.coordinator.start()

    state.shutdown_event = asyncio.Event()
    state.evaluator_task = asyncio.create_task(rule_evaluator_loop(state.evaluator, state.shutdown_event))
    _install_reload_signal(state)


# PUBLIC_INTERFACE
async def stop_engine(state: AppState) -> None:
    """Stop new ticks, let in-flight work finish within one shared grace period, then release resources."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + float(state.config.shutdown_grace_sec)

    def remaining() -> float:
        return max(0.0, deadline - loop.time())

    _remove_reload_signal(state)

    if state.shutdown_event is not None:
        state.shutdown_event.set()
    if state.evaluator_task is not None:
        try:
            await asyncio.wait_for(state.evaluator_task, timeout=remaining())
        except Exception:
            logger.exception("Error stopping rule evaluator task")

    try:
        await state.coordinator.stop(remaining())
    except Exception:
        logger.exception("Error stopping scrape coordinator")

    try:
        await state.dispatcher.stop(remaining())
    except Exception:
        logger.exception("Error stopping notifier dispatcher")

    state.dispatcher.history.close()


# PUBLIC_INTERFACE
def create_app(config: Optional[EngineConfig] = None, **overrides) -> FastAPI:
    """
    Build the FastAPI app.

    `overrides` are passed to build_state (scrape_client, sink, clock) and let tests swap HTTP transports.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or load_config()
        setup_logging(cfg.log_level)
        state = build_state(cfg, **overrides)
        init_state(app, state)
        try:
            await start_engine(state)
        except Exception:
            logger.exception("Engine startup failed")
            state.dispatcher.history.close()
            raise
        try:
            yield
        finally:
            await stop_engine(get_state(app))

    app = FastAPI(
        title="Metrics Alert Engine API",
        description=(
            "Scrapes Prometheus-format targets into an in-memory metric store, evaluates alert rules on a fixed "
            "interval and forwards firing/resolved notifications to a webhook."
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(targets.router)
    app.include_router(alerts.router)
    app.include_router(admin.router)
    return app


app = create_app()
