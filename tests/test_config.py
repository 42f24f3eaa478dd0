from __future__ import annotations

import pytest

from src.monitor.config import ConfigError, ConfigHolder, build_definitions, load_config, load_definitions
from src.monitor.schemas.common import parse_duration

VALID = {
    "targets": {
        "node": {"url": "http://node-a:9100/metrics", "interval_sec": "30s", "timeout_sec": "1m"},
        "app": {"url": "https://app.internal/metrics", "labels": {"team": "payments", "job": "checkout"}},
    },
    "rules": {
        "HighCpu": {
            "expr": "cpu > 0.8",
            "for": "5m",
            "severity": "critical",
            "annotations": {"summary": "CPU high on {{ $labels.instance }}"},
        },
        "TargetDown": {"expr": "up == 0"},
    },
}


@pytest.mark.parametrize(
    "value,expected",
    [(15, 15.0), (2.5, 2.5), ("15", 15.0), ("30s", 30.0), ("5m", 300.0), ("1h30m", 5400.0), ("250ms", 0.25)],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "5x", "m5", "1h 30m", -1, True])
def test_parse_duration_rejects(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_load_definitions_from_yaml(make_config, write_engine_yaml):
    write_engine_yaml(VALID)
    defs = load_definitions(make_config(scrape_default_interval_sec=15, scrape_default_timeout_sec=10))

    node = defs.targets["node"]
    assert node.interval_sec == 30.0
    # Timeouts never exceed the scrape interval.
    assert node.timeout_sec == 30.0
    assert node.label_dict() == {"job": "node", "instance": "node-a:9100"}

    app = defs.targets["app"]
    assert app.interval_sec == 15.0
    assert app.timeout_sec == 10.0
    assert app.label_dict() == {"job": "checkout", "instance": "app.internal", "team": "payments"}

    cpu = defs.rules["HighCpu"]
    assert cpu.for_sec == 300.0
    assert cpu.severity == "critical"
    assert dict(cpu.annotations) == {"summary": "CPU high on {{ $labels.instance }}"}
    assert defs.rules["TargetDown"].for_sec == 0.0
    assert defs.rules["TargetDown"].severity == "warning"
    assert defs.source.endswith("engine.yaml")


def test_missing_file_yields_empty_definitions(make_config):
    defs = load_definitions(make_config())
    assert defs.targets == {} and defs.rules == {}
    assert defs.source is None


def test_empty_file_yields_empty_definitions(make_config, tmp_path):
    (tmp_path / "engine.yaml").write_text("", encoding="utf-8")
    defs = load_definitions(make_config())
    assert defs.targets == {} and defs.rules == {}


@pytest.mark.parametrize(
    "raw",
    [
        {"rules": {"Broken": {"expr": "cpu > > 1"}}},
        {"rules": {"Broken": {"expr": "cpu > 1", "for": "soon"}}},
        {"rules": {"Broken": {"expr": "cpu > 1", "severity": "page-everyone"}}},
        {"targets": {"node": {"url": "node-a:9100/metrics"}}},
        {"targets": {"node": {"url": "http://node-a/metrics", "interval_sec": 0}}},
        {"targets": {"node": {}}},
    ],
)
def test_invalid_definitions_raise_config_error(make_config, raw):
    with pytest.raises(ConfigError):
        build_definitions(raw, make_config())


@pytest.mark.parametrize("text", ["- a\n- b\n", "targets: [unclosed\n"])
def test_malformed_yaml_raises_config_error(make_config, tmp_path, text):
    (tmp_path / "engine.yaml").write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_definitions(make_config())


def test_failed_reload_keeps_previous_definitions(make_config, write_engine_yaml):
    write_engine_yaml(VALID)
    holder = ConfigHolder(make_config())
    holder.load()
    assert holder.generation == 1
    before = holder.definitions

    write_engine_yaml({"rules": {"Broken": {"expr": "cpu >"}}})
    assert holder.reload() is False
    assert holder.definitions is before
    assert holder.generation == 1
    assert "Broken" in holder.last_error

    write_engine_yaml({"rules": {"Fixed": {"expr": "cpu > 1"}}})
    assert holder.reload() is True
    assert list(holder.definitions.rules) == ["Fixed"]
    assert holder.definitions.targets == {}
    assert holder.generation == 2
    assert holder.last_error is None


def test_env_defaults():
    cfg = load_config()
    assert cfg.config_path == "engine.yaml"
    assert cfg.retention_sec == 6 * 3600
    assert cfg.scrape_down_threshold == 2
    assert cfg.notify_webhook_url is None
    assert cfg.alert_history_mongo_uri is None
    assert cfg.reload_on_sighup is False  # disabled by the test environment


def test_env_values_are_clamped(monkeypatch):
    monkeypatch.setenv("SCRAPE_DOWN_THRESHOLD", "0")
    monkeypatch.setenv("NOTIFY_MAX_ATTEMPTS", "100")
    monkeypatch.setenv("METRICS_RETENTION_SEC", "5")
    monkeypatch.setenv("NOTIFY_QUEUE_SIZE", "not-a-number")
    monkeypatch.setenv("NOTIFY_BACKOFF_BASE_SEC", "10")
    monkeypatch.setenv("NOTIFY_BACKOFF_MAX_SEC", "2")
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "   ")
    monkeypatch.setenv("RELOAD_ON_SIGHUP", "yes")

    cfg = load_config()
    assert cfg.scrape_down_threshold == 1
    assert cfg.notify_max_attempts == 20
    assert cfg.retention_sec == 60
    assert cfg.notify_queue_size == 1000
    assert cfg.notify_backoff_max_sec == 10
    assert cfg.notify_webhook_url is None
    assert cfg.reload_on_sighup is True


def test_zero_retention_disables_eviction(monkeypatch):
    monkeypatch.setenv("METRICS_RETENTION_SEC", "0")
    assert load_config().retention_sec == 0
