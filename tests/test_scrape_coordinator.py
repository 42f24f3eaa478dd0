from __future__ import annotations

import asyncio

import httpx
import pytest

from src.monitor.config import build_definitions
from src.monitor.services.metric_store import MetricStore, parse_matcher
from src.monitor.services.scrape_coordinator import ScrapeCoordinator
from src.monitor.services.self_metrics import SelfMetrics

NODE_URL = "http://node-a:9100/metrics"

NODE_BODY = """\
# HELP node_cpu CPU busy ratio
# TYPE node_cpu gauge
node_cpu{cpu="0",job="scraped"} 0.25
node_load1 1.5
"""


def _values(store: MetricStore, selector: str):
    return [(s.ts, s.value) for _, samples in store.query(parse_matcher(selector)) for s in samples]


@pytest.mark.anyio
async def test_target_down_after_threshold_records_up_zero(make_holder, store, clock, exposition_transport):
    failing = {NODE_URL}
    holder = make_holder({"targets": {"node": {"url": NODE_URL}}}, scrape_down_threshold=2)
    metrics = SelfMetrics()
    async with httpx.AsyncClient(transport=exposition_transport({NODE_URL: NODE_BODY}, failing)) as client:
        coordinator = ScrapeCoordinator(holder, store, metrics=metrics, client=client, clock=clock)

        first = await coordinator.scrape_once("node")
        assert first.status == "unknown"
        assert first.consecutive_failures == 1
        assert "503" in first.last_error
        assert _values(store, 'up{job="node"}') == []

        for _ in range(2):
            clock.advance(15)
            health = await coordinator.scrape_once("node")

        assert health.status == "down"
        assert health.consecutive_failures == 3
        assert _values(store, 'up{job="node"}') == [(clock.now - 15, 0.0), (clock.now, 0.0)]

        # Recovery resets the failure count and records up=1.
        failing.clear()
        clock.advance(15)
        health = await coordinator.scrape_once("node")
        assert health.status == "up"
        assert health.consecutive_failures == 0
        assert health.last_error is None
        assert _values(store, 'up{job="node"}')[-1] == (clock.now, 1.0)

    assert metrics.registry.get_sample_value("alertengine_scrapes_total", {"target": "node", "result": "failure"}) == 3
    assert metrics.registry.get_sample_value("alertengine_scrapes_total", {"target": "node", "result": "success"}) == 1


@pytest.mark.anyio
async def test_ingest_applies_target_labels(make_holder, store, clock, exposition_transport):
    holder = make_holder({"targets": {"node": {"url": NODE_URL, "labels": {"env": "prod"}}}})
    async with httpx.AsyncClient(transport=exposition_transport({NODE_URL: NODE_BODY})) as client:
        coordinator = ScrapeCoordinator(holder, store, client=client, clock=clock)
        health = await coordinator.scrape_once("node")

    assert health.status == "up"
    assert health.samples_last_scrape == 2

    [key] = store.series(parse_matcher("node_cpu"))
    # Target labels win over labels exposed by the target.
    assert key.label_dict() == {"cpu": "0", "env": "prod", "instance": "node-a:9100", "job": "node"}
    assert _values(store, "node_cpu") == [(clock.now, 0.25)]
    assert _values(store, 'node_load1{job="node"}') == [(clock.now, 1.5)]
    assert _values(store, 'up{job="node",env="prod"}') == [(clock.now, 1.0)]


@pytest.mark.anyio
async def test_malformed_lines_are_skipped(make_holder, store, clock, exposition_transport):
    body = "good_metric 1\ncpu_temp abc\nother_metric 2\n"
    holder = make_holder({"targets": {"node": {"url": NODE_URL}}})
    metrics = SelfMetrics()
    async with httpx.AsyncClient(transport=exposition_transport({NODE_URL: body})) as client:
        coordinator = ScrapeCoordinator(holder, store, metrics=metrics, client=client, clock=clock)
        health = await coordinator.scrape_once("node")

    assert health.status == "up"
    assert health.samples_last_scrape == 2
    assert _values(store, "good_metric") == [(clock.now, 1.0)]
    assert _values(store, "other_metric") == [(clock.now, 2.0)]
    assert metrics.registry.get_sample_value("alertengine_samples_rejected_total", {"reason": "malformed"}) == 1


@pytest.mark.anyio
async def test_scrape_once_unknown_target(make_holder, store):
    coordinator = ScrapeCoordinator(make_holder(), store)
    with pytest.raises(KeyError):
        await coordinator.scrape_once("missing")
    await coordinator.stop(grace=0.1)


@pytest.mark.anyio
async def test_slow_target_does_not_delay_others(make_holder, store):
    fast_url = "http://fast:9100/metrics"
    slow_url = "http://slow:9100/metrics"

    async def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == slow_url:
            await asyncio.sleep(5)
        return httpx.Response(200, text="requests_total 1\n")

    raw = {
        "targets": {
            "fast": {"url": fast_url, "interval_sec": 0.1},
            "slow": {"url": slow_url, "interval_sec": 1, "timeout_sec": 0.2},
        }
    }
    holder = make_holder(raw)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        coordinator = ScrapeCoordinator(holder, store, client=client)
        await coordinator.start()
        await asyncio.sleep(0.6)
        await coordinator.stop(grace=1.0)

    health = {h.name: h for h in coordinator.health()}
    assert health["fast"].status == "up"
    assert health["slow"].status == "unknown"
    assert health["slow"].consecutive_failures == 1
    assert len(_values(store, 'up{job="fast"}')) >= 3
    assert _values(store, 'up{job="slow"}') == []


@pytest.mark.anyio
async def test_sync_adds_and_removes_targets(make_holder, store, clock, exposition_transport):
    urls = {name: f"http://{name}:9100/metrics" for name in ("a", "b", "c")}
    bodies = {url: "requests_total 1\n" for url in urls.values()}
    holder = make_holder(
        {"targets": {"a": {"url": urls["a"], "interval_sec": 60}, "b": {"url": urls["b"], "interval_sec": 60}}}
    )

    async with httpx.AsyncClient(transport=exposition_transport(bodies)) as client:
        coordinator = ScrapeCoordinator(holder, store, client=client, clock=clock)
        await coordinator.start()
        runner_a = coordinator._runners["a"]
        assert sorted(coordinator._runners) == ["a", "b"]

        new_raw = {
            "targets": {"a": {"url": urls["a"], "interval_sec": 60}, "c": {"url": urls["c"], "interval_sec": 60}}
        }
        holder.replace(build_definitions(new_raw, holder.engine))
        coordinator.sync()

        assert sorted(coordinator._runners) == ["a", "c"]
        # Unchanged targets keep their running task.
        assert coordinator._runners["a"] is runner_a
        assert [h.name for h in coordinator.health()] == ["a", "c"]

        await asyncio.sleep(0.05)
        await coordinator.stop(grace=1.0)

    assert all(r.task.done() for r in coordinator._runners.values())
    assert _values(store, 'up{job="c"}') == [(clock.now, 1.0)]


@pytest.mark.anyio
async def test_manual_scrape_joins_scrape_in_flight(make_holder, store, clock):
    url = "http://flaky:9100/metrics"
    requests = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        await asyncio.sleep(0.3)
        return httpx.Response(503, text="unavailable")

    holder = make_holder(
        {"targets": {"flaky": {"url": url, "interval_sec": 60, "timeout_sec": 5}}},
        scrape_down_threshold=2,
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        coordinator = ScrapeCoordinator(holder, store, client=client, clock=clock)
        await coordinator.start()
        await asyncio.sleep(0.05)

        health = await coordinator.scrape_once("flaky")
        await coordinator.stop(grace=1.0)

    assert requests == [url]
    assert health.consecutive_failures == 1
    assert health.status == "unknown"
    assert _values(store, 'up{job="flaky"}') == []
