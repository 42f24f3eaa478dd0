from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import yaml
from pydantic import ValidationError

from src.monitor.schemas.config import EngineFileConfig
from src.monitor.services.rule_expr import ExpressionError, Node, parse_expr

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the engine configuration file cannot be loaded or validated."""


def _env_int(name: str, default: int) -> int:
    """Parse an int env var with a default."""
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    """Parse a float env var with a default."""
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool = False) -> bool:
    """Parse a bool env var (true/false/1/0/yes/no/on/off)."""
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    val = raw.strip().lower()
    if val in ("1", "true", "yes", "y", "on"):
        return True
    if val in ("0", "false", "no", "n", "off"):
        return False
    return bool(default)


def _clamp(v: float, lo: float, hi: float) -> float:
    """Clamp a number to [lo, hi]."""
    return max(lo, min(hi, v))


@dataclass(frozen=True)
class EngineConfig:
    """Runtime configuration loaded from env."""

    config_path: str

    # Metric store
    retention_sec: float
    query_lookback_sec: float

    # Scraping
    scrape_default_interval_sec: float
    scrape_default_timeout_sec: float
    scrape_down_threshold: int

    # Rule evaluation
    rule_eval_interval_sec: float

    # Notifications
    notify_webhook_url: Optional[str]
    notify_max_attempts: int
    notify_backoff_base_sec: float
    notify_backoff_max_sec: float
    notify_queue_size: int
    notify_timeout_sec: float

    # Alert event history
    alert_history_max: int
    alert_history_mongo_uri: Optional[str]
    alert_history_mongo_db: str

    shutdown_grace_sec: float
    reload_on_sighup: bool
    log_level: str


# PUBLIC_INTERFACE
def load_config() -> EngineConfig:
    """Load EngineConfig from env vars, clamping values to sane bounds."""
    retention = _env_float("METRICS_RETENTION_SEC", 6 * 3600)
    lookback = _env_float("QUERY_LOOKBACK_SEC", 300)

    scrape_interval = _env_float("SCRAPE_DEFAULT_INTERVAL_SEC", 15)
    scrape_timeout = _env_float("SCRAPE_DEFAULT_TIMEOUT_SEC", 10)
    down_threshold = _env_int("SCRAPE_DOWN_THRESHOLD", 2)

    eval_interval = _env_float("RULE_EVAL_INTERVAL_SEC", 15)

    webhook = (os.getenv("NOTIFY_WEBHOOK_URL") or "").strip() or None
    max_attempts = _env_int("NOTIFY_MAX_ATTEMPTS", 5)
    backoff_base = _env_float("NOTIFY_BACKOFF_BASE_SEC", 1)
    backoff_max = _env_float("NOTIFY_BACKOFF_MAX_SEC", 30)
    queue_size = _env_int("NOTIFY_QUEUE_SIZE", 1000)
    notify_timeout = _env_float("NOTIFY_TIMEOUT_SEC", 10)

    history_max = _env_int("ALERT_HISTORY_MAX", 1000)
    mongo_uri = (os.getenv("ALERT_HISTORY_MONGO_URI") or "").strip() or None

    # 0 disables retention; otherwise keep at least one minute of data.
    if retention != 0:
        retention = _clamp(retention, 60, 365 * 24 * 3600)
    lookback = _clamp(lookback, 1, 24 * 3600)

    scrape_interval = _clamp(scrape_interval, 0.1, 3600)
    scrape_timeout = _clamp(scrape_timeout, 0.05, 3600)
    down_threshold = max(1, down_threshold)

    eval_interval = _clamp(eval_interval, 0.1, 3600)

    max_attempts = int(_clamp(max_attempts, 1, 20))
    backoff_base = _clamp(backoff_base, 0, 300)
    backoff_max = max(backoff_base, _clamp(backoff_max, 0, 3600))
    queue_size = int(_clamp(queue_size, 1, 100000))
    notify_timeout = _clamp(notify_timeout, 0.1, 300)

    history_max = int(_clamp(history_max, 1, 1000000))

    return EngineConfig(
        config_path=os.getenv("ENGINE_CONFIG_PATH", "engine.yaml"),
        retention_sec=retention,
        query_lookback_sec=lookback,
        scrape_default_interval_sec=scrape_interval,
        scrape_default_timeout_sec=scrape_timeout,
        scrape_down_threshold=down_threshold,
        rule_eval_interval_sec=eval_interval,
        notify_webhook_url=webhook,
        notify_max_attempts=max_attempts,
        notify_backoff_base_sec=backoff_base,
        notify_backoff_max_sec=backoff_max,
        notify_queue_size=queue_size,
        notify_timeout_sec=notify_timeout,
        alert_history_max=history_max,
        alert_history_mongo_uri=mongo_uri,
        alert_history_mongo_db=os.getenv("ALERT_HISTORY_MONGO_DB", "alertengine"),
        shutdown_grace_sec=_clamp(_env_float("SHUTDOWN_GRACE_SEC", 5), 0, 600),
        reload_on_sighup=_env_bool("RELOAD_ON_SIGHUP", True),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@dataclass(frozen=True)
class Target:
    """A resolved scrape target."""

    name: str
    url: str
    interval_sec: float
    timeout_sec: float
    labels: Tuple[Tuple[str, str], ...] = ()

    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)


@dataclass(frozen=True)
class Rule:
    """A compiled alert rule."""

    name: str
    expr_text: str
    expr: Node = field(compare=False)
    for_sec: float
    severity: str
    labels: Tuple[Tuple[str, str], ...] = ()
    annotations: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Definitions:
    """Targets and rules loaded from the config file."""

    targets: Dict[str, Target] = field(default_factory=dict)
    rules: Dict[str, Rule] = field(default_factory=dict)
    source: Optional[str] = None


def _instance_label(url: str) -> str:
    parsed = urlparse(url)
    if parsed.port:
        return f"{parsed.hostname}:{parsed.port}"
    return parsed.hostname or url


# PUBLIC_INTERFACE
def build_definitions(raw: Dict[str, Any], cfg: EngineConfig, source: Optional[str] = None) -> Definitions:
    """Validate a raw config mapping and compile it into Definitions; raises ConfigError."""
    try:
        parsed = EngineFileConfig.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigError(f"invalid engine config: {e}") from e

    targets: Dict[str, Target] = {}
    for name, spec in parsed.targets.items():
        interval = spec.interval_sec or cfg.scrape_default_interval_sec
        timeout = min(spec.timeout_sec or cfg.scrape_default_timeout_sec, interval)
        labels = {"job": name, "instance": _instance_label(spec.url)}
        labels.update(spec.labels)
        targets[name] = Target(
            name=name,
            url=spec.url,
            interval_sec=interval,
            timeout_sec=timeout,
            labels=tuple(sorted(labels.items())),
        )

    rules: Dict[str, Rule] = {}
    for name, spec in parsed.rules.items():
        try:
            expr = parse_expr(spec.expr)
        except ExpressionError as e:
            raise ConfigError(f"rule {name!r}: {e}") from e
        rules[name] = Rule(
            name=name,
            expr_text=spec.expr,
            expr=expr,
            for_sec=spec.for_sec,
            severity=spec.severity.value,
            labels=tuple(sorted(spec.labels.items())),
            annotations=tuple(sorted(spec.annotations.items())),
        )

    return Definitions(targets=targets, rules=rules, source=source)


# PUBLIC_INTERFACE
def load_definitions(cfg: EngineConfig) -> Definitions:
    """Read the YAML config file named by cfg.config_path. A missing file yields empty definitions."""
    path = Path(cfg.config_path)
    if not path.exists():
        logger.warning("Engine config file %s not found; starting with no targets or rules", path)
        return Definitions(source=None)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed reading {path}: {e}") from e

    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return build_definitions(raw or {}, cfg, source=str(path))


class ConfigHolder:
    """
    Process-wide configuration with an explicit load/reload lifecycle.

    Components receive the holder by reference and read `definitions` when they need the current view.
    A failed reload keeps the previous definitions.
    """

    def __init__(self, engine: EngineConfig, definitions: Optional[Definitions] = None):
        self.engine = engine
        self._definitions = definitions or Definitions()
        self._lock = RLock()
        self.generation = 0
        self.last_error: Optional[str] = None

    @property
    def definitions(self) -> Definitions:
        return self._definitions

    def load(self) -> Definitions:
        """Load definitions from disk; raises ConfigError on failure."""
        defs = load_definitions(self.engine)
        self.replace(defs)
        return defs

    def reload(self) -> bool:
        """Reload definitions; returns False (and keeps the old ones) when the new file is invalid."""
        try:
            self.load()
        except ConfigError as e:
            self.last_error = str(e)
            logger.error("Config reload failed, keeping previous definitions: %s", e)
            return False
        return True

    def replace(self, defs: Definitions) -> None:
        with self._lock:
            self._definitions = defs
            self.generation += 1
            self.last_error = None
        logger.info(
            "Loaded engine definitions (generation=%s, targets=%s, rules=%s, source=%s)",
            self.generation,
            len(defs.targets),
            len(defs.rules),
            defs.source,
        )
