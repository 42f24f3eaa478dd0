from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator, Callable
from typing import Dict, List, Optional

import httpx
import pytest
import yaml

from src.monitor.config import ConfigHolder, EngineConfig, build_definitions, load_config
from src.monitor.main import create_app
from src.monitor.services.metric_store import MetricStore

_ENV_VARS = [
    "ENGINE_CONFIG_PATH",
    "METRICS_RETENTION_SEC",
    "QUERY_LOOKBACK_SEC",
    "SCRAPE_DEFAULT_INTERVAL_SEC",
    "SCRAPE_DEFAULT_TIMEOUT_SEC",
    "SCRAPE_DOWN_THRESHOLD",
    "RULE_EVAL_INTERVAL_SEC",
    "NOTIFY_WEBHOOK_URL",
    "NOTIFY_MAX_ATTEMPTS",
    "NOTIFY_BACKOFF_BASE_SEC",
    "NOTIFY_BACKOFF_MAX_SEC",
    "NOTIFY_QUEUE_SIZE",
    "NOTIFY_TIMEOUT_SEC",
    "ALERT_HISTORY_MAX",
    "ALERT_HISTORY_MONGO_URI",
    "ALERT_HISTORY_MONGO_DB",
    "SHUTDOWN_GRACE_SEC",
    "RELOAD_ON_SIGHUP",
    "LOG_LEVEL",
]


@pytest.fixture
def anyio_backend() -> str:
    """The engine is built on asyncio tasks and queues."""
    return "asyncio"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host environment variables from leaking into EngineConfig."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RELOAD_ON_SIGHUP", "false")


@pytest.fixture
def make_config(tmp_path) -> Callable[..., EngineConfig]:
    """Build an EngineConfig from defaults with field overrides (no backoff waits by default)."""

    def _make(**overrides) -> EngineConfig:
        base = dataclasses.replace(
            load_config(),
            config_path=str(tmp_path / "engine.yaml"),
            notify_backoff_base_sec=0.0,
            notify_backoff_max_sec=0.0,
        )
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def make_holder(make_config) -> Callable[..., ConfigHolder]:
    """ConfigHolder with definitions compiled from an in-memory mapping."""

    def _make(raw: Optional[dict] = None, **overrides) -> ConfigHolder:
        cfg = make_config(**overrides)
        return ConfigHolder(cfg, build_definitions(raw or {}, cfg, source="test"))

    return _make


@pytest.fixture
def write_engine_yaml(tmp_path) -> Callable[[dict], str]:
    """Write the engine YAML file used by ENGINE_CONFIG_PATH-based tests."""

    def _write(raw: dict) -> str:
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump(raw), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def store() -> MetricStore:
    return MetricStore(retention_sec=0)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class RecordingSink:
    """Notification sink that records payloads and can fail the first N sends."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0
        self.payloads: List[dict] = []
        self.closed = False

    async def send(self, payload: dict) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise httpx.ConnectError("webhook unreachable")
        self.payloads.append(payload)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def exposition_transport() -> Callable[..., httpx.MockTransport]:
    """
    Build a MockTransport serving Prometheus text per URL.

    `bodies` maps URL to exposition text; URLs listed in `failing` (or not in `bodies`) answer 503.
    Both are read on every request, so tests can flip a target up or down between scrapes.
    """

    def _make(bodies: Dict[str, str], failing: Optional[set] = None) -> httpx.MockTransport:
        failing = failing if failing is not None else set()

        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            if url in failing or url not in bodies:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, text=bodies[url])

        return httpx.MockTransport(handler)

    return _make


@pytest.fixture
async def make_client() -> AsyncIterator[Callable[..., httpx.AsyncClient]]:
    """
    Build an httpx client bound to a fresh app.

    httpx.ASGITransport does not run lifespan events, so the app's lifespan context is entered explicitly
    and exited on teardown.
    """
    stack = []

    async def _make(config: EngineConfig, **overrides) -> httpx.AsyncClient:
        app = create_app(config, **overrides)
        lifespan = app.router.lifespan_context(app)
        await lifespan.__aenter__()
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        client.app = app  # type: ignore[attr-defined]
        stack.append((lifespan, client))
        return client

    yield _make

    for lifespan, client in reversed(stack):
        await client.aclose()
        await lifespan.__aexit__(None, None, None)
