from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx

from src.monitor.config import ConfigHolder, Target
from src.monitor.services.exposition import parse_exposition
from src.monitor.services.metric_store import InvalidSample, MetricStore, OutOfOrderSample, Sample, SeriesKey
from src.monitor.services.self_metrics import SelfMetrics

logger = logging.getLogger(__name__)

UP_METRIC = "up"


@dataclass
class TargetHealth:
    """Scrape health for one target, as reported by the API."""

    name: str
    url: str
    status: str = "unknown"  # unknown | up | down
    consecutive_failures: int = 0
    last_scrape: Optional[float] = None
    last_duration_sec: Optional[float] = None
    last_error: Optional[str] = None
    samples_last_scrape: int = 0


@dataclass
class _TargetRunner:
    target: Target
    health: TargetHealth
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    inflight: Optional[asyncio.Task] = None


class ScrapeCoordinator:
    """
    Pulls metrics from every configured target into the MetricStore.

    Each target runs as its own asyncio task on its own interval, so a slow target only delays itself.
    After `down_threshold` consecutive failures the target is marked down and every further failed
    scrape records a synthetic `up=0` sample.
    """

    def __init__(
        self,
        holder: ConfigHolder,
        store: MetricStore,
        metrics: Optional[SelfMetrics] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.holder = holder
        self.store = store
        self.metrics = metrics
        self.clock = clock
        self._client = client
        self._owns_client = client is None
        self._runners: Dict[str, _TargetRunner] = {}
        self._running = False

    @property
    def down_threshold(self) -> int:
        return int(self.holder.engine.scrape_down_threshold)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def _fetch(self, target: Target) -> str:
        resp = await self._http().get(
            target.url,
            timeout=target.timeout_sec,
            headers={"Accept": "text/plain;version=0.0.4"},
        )
        resp.raise_for_status()
        return resp.text

    def _append(self, key: SeriesKey, ts: float, value: float) -> bool:
        try:
            self.store.append(key, Sample(ts=ts, value=value))
            return True
        except OutOfOrderSample as e:
            logger.warning("Rejected sample: %s", e)
            if self.metrics:
                self.metrics.record_rejected("out_of_order")
        except InvalidSample as e:
            logger.warning("Rejected sample: %s", e)
            if self.metrics:
                self.metrics.record_rejected("invalid")
        return False

    def _ingest(self, target: Target, body: str, ts: float) -> int:
        parsed, errors = parse_exposition(body)
        for err in errors:
            logger.warning("Malformed sample from target=%s: %s", target.name, err)
        if self.metrics:
            self.metrics.record_rejected("malformed", len(errors))

        target_labels = target.label_dict()
        appended = 0
        for ps in parsed:
            labels = dict(ps.labels)
            labels.update(target_labels)
            if self._append(SeriesKey.of(ps.name, labels), ts, ps.value):
                appended += 1
        if self.metrics:
            self.metrics.record_appended(appended)
        return appended

    async def _scrape(self, runner: _TargetRunner) -> TargetHealth:
        target = runner.target
        health = runner.health
        started = time.monotonic()
        up_key = SeriesKey.of(UP_METRIC, target.label_dict())

        try:
            body = await asyncio.wait_for(self._fetch(target), timeout=target.timeout_sec)
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            duration = time.monotonic() - started
            ts = self.clock()
            health.consecutive_failures += 1
            health.last_scrape = ts
            health.last_duration_sec = duration
            health.last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            health.samples_last_scrape = 0
            if health.consecutive_failures >= self.down_threshold:
                if health.status != "down":
                    logger.warning(
                        "Target %s marked down after %s consecutive failures",
                        target.name,
                        health.consecutive_failures,
                    )
                health.status = "down"
                self._append(up_key, ts, 0.0)
            else:
                logger.info(
                    "Scrape failed for target=%s (%s/%s): %s",
                    target.name,
                    health.consecutive_failures,
                    self.down_threshold,
                    health.last_error,
                )
            if self.metrics:
                self.metrics.record_scrape(target.name, "failure", duration)
            return health

        ts = self.clock()
        appended = self._ingest(target, body, ts)
        self._append(up_key, ts, 1.0)
        duration = time.monotonic() - started

        if health.status == "down":
            logger.info("Target %s is back up", target.name)
        health.status = "up"
        health.consecutive_failures = 0
        health.last_scrape = ts
        health.last_duration_sec = duration
        health.last_error = None
        health.samples_last_scrape = appended
        if self.metrics:
            self.metrics.record_scrape(target.name, "success", duration)
            self.metrics.set_active_series(self.store.series_count())
        return health

    def _scrape_task(self, runner: _TargetRunner) -> asyncio.Task:
        """Start a scrape for the runner, or return the one already in flight."""
        if runner.inflight is None or runner.inflight.done():
            runner.inflight = asyncio.create_task(self._scrape(runner), name=f"scrape-tick:{runner.target.name}")
        return runner.inflight

    # PUBLIC_INTERFACE
    async def scrape_once(self, name: str) -> TargetHealth:
        """
        Scrape the named target now; raises KeyError for unknown targets.

        If the target's loop is mid-scrape, the result of that scrape is returned instead of starting a
        second one, so failures are only counted once per attempt.
        """
        runner = self._runners.get(name)
        if runner is None:
            target = self.holder.definitions.targets[name]
            runner = _TargetRunner(target=target, health=TargetHealth(name=target.name, url=target.url))
            self._runners[name] = runner
        return await asyncio.shield(self._scrape_task(runner))

    async def _target_loop(self, runner: _TargetRunner) -> None:
        target = runner.target
        logger.info("Scrape loop started for target=%s (interval=%ss)", target.name, target.interval_sec)
        while not runner.stop.is_set():
            tick_started = time.monotonic()
            try:
                await self._scrape_task(runner)
            except Exception:
                logger.exception("Scrape tick failed for target=%s", target.name)

            elapsed = time.monotonic() - tick_started
            sleep_for = max(0.05, target.interval_sec - elapsed)
            try:
                await asyncio.wait_for(runner.stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass
        logger.info("Scrape loop stopped for target=%s", target.name)

    def _start_runner(self, target: Target) -> None:
        runner = _TargetRunner(target=target, health=TargetHealth(name=target.name, url=target.url))
        runner.task = asyncio.create_task(self._target_loop(runner), name=f"scrape:{target.name}")
        self._runners[target.name] = runner

    # PUBLIC_INTERFACE
    def sync(self, targets: Optional[Dict[str, Target]] = None) -> None:
        """Reconcile running target tasks with the given (or current) target definitions."""
        if targets is None:
            targets = self.holder.definitions.targets

        for name in list(self._runners):
            runner = self._runners[name]
            wanted = targets.get(name)
            if wanted is not None and wanted == runner.target:
                if runner.task is None and self._running:
                    runner.task = asyncio.create_task(self._target_loop(runner), name=f"scrape:{name}")
                continue
            runner.stop.set()
            if runner.task is not None:
                runner.task.cancel()
            del self._runners[name]
            if wanted is None:
                logger.info("Target %s removed", name)

        if not self._running:
            return
        for name, target in targets.items():
            if name not in self._runners:
                self._start_runner(target)

    # PUBLIC_INTERFACE
    async def start(self) -> None:
        """Start one scrape task per configured target."""
        self._running = True
        self.sync()

    # PUBLIC_INTERFACE
    async def stop(self, grace: float = 5.0) -> None:
        """Stop scheduling new scrapes and wait up to `grace` seconds for in-flight ones."""
        self._running = False
        tasks = []
        for runner in self._runners.values():
            runner.stop.set()
            if runner.task is not None:
                tasks.append(runner.task)
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %s scrape task(s) after %ss grace period", len(pending), grace)
                await asyncio.gather(*pending, return_exceptions=True)
        stray = [r.inflight for r in self._runners.values() if r.inflight is not None and not r.inflight.done()]
        for task in stray:
            task.cancel()
        if stray:
            await asyncio.gather(*stray, return_exceptions=True)
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def health(self) -> List[TargetHealth]:
        """Per-target scrape health, ordered by target name."""
        out = []
        for name, target in sorted(self.holder.definitions.targets.items()):
            runner = self._runners.get(name)
            out.append(runner.health if runner else TargetHealth(name=name, url=target.url))
        return out
