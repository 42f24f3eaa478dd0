"""Self-monitoring metrics for the engine, exposed at /metrics."""
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class SelfMetrics:
    """prometheus_client instruments on a private registry (one per app)."""

    def __init__(self, registry=None, prefix="alertengine_"):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.scrapes_total = Counter(
            f"{prefix}scrapes_total",
            "Scrape attempts by target and result",
            ["target", "result"],
            registry=registry,
        )

        self.scrape_duration_seconds = Histogram(
            f"{prefix}scrape_duration_seconds",
            "Duration of scrapes in seconds",
            ["target"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry,
        )

        self.samples_appended_total = Counter(
            f"{prefix}samples_appended_total",
            "Samples appended to the metric store",
            registry=registry,
        )

        self.samples_rejected_total = Counter(
            f"{prefix}samples_rejected_total",
            "Samples rejected during ingestion",
            ["reason"],
            registry=registry,
        )

        self.samples_evicted_total = Counter(
            f"{prefix}samples_evicted_total",
            "Samples dropped by retention",
            registry=registry,
        )

        self.active_series = Gauge(
            f"{prefix}active_series",
            "Number of series held in the metric store",
            registry=registry,
        )

        self.rule_eval_duration_seconds = Histogram(
            f"{prefix}rule_evaluation_duration_seconds",
            "Duration of a full rule evaluation tick",
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=registry,
        )

        self.rule_eval_failures_total = Counter(
            f"{prefix}rule_evaluation_failures_total",
            "Rule evaluations that raised an expression error",
            ["rule"],
            registry=registry,
        )

        self.notifications_total = Counter(
            f"{prefix}notifications_total",
            "Notifications by delivery result",
            ["result"],
            registry=registry,
        )

        self.notify_queue_depth = Gauge(
            f"{prefix}notification_queue_depth",
            "Notifications waiting for delivery",
            registry=registry,
        )

    def record_scrape(self, target: str, result: str, duration: float):
        self.scrapes_total.labels(target=target, result=result).inc()
        self.scrape_duration_seconds.labels(target=target).observe(duration)

    def record_appended(self, count: int):
        if count:
            self.samples_appended_total.inc(count)

    def record_rejected(self, reason: str, count: int = 1):
        if count:
            self.samples_rejected_total.labels(reason=reason).inc(count)

    def record_evicted(self, count: int):
        self.samples_evicted_total.inc(count)

    def set_active_series(self, count: int):
        self.active_series.set(count)

    def record_eval_duration(self, duration: float):
        self.rule_eval_duration_seconds.observe(duration)

    def record_eval_failure(self, rule: str):
        self.rule_eval_failures_total.labels(rule=rule).inc()

    def record_notification(self, result: str):
        self.notifications_total.labels(result=result).inc()

    def set_queue_depth(self, depth: int):
        self.notify_queue_depth.set(depth)

    def render(self) -> bytes:
        """Text exposition of every instrument."""
        return generate_latest(self.registry)
