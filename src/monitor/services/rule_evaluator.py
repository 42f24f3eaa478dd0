from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from src.monitor.config import ConfigHolder, Rule
from src.monitor.services.metric_store import MetricStore
from src.monitor.services.notifier import FIRING, RESOLVED, Notification, NotifierDispatcher
from src.monitor.services.rule_expr import ExpressionError, InstanceResult, evaluate
from src.monitor.services.self_metrics import SelfMetrics

logger = logging.getLogger(__name__)

INACTIVE = "inactive"
PENDING = "pending"

Labels = Tuple[Tuple[str, str], ...]

_LABEL_TMPL_RE = re.compile(r"\{\{\s*\$labels\.([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")
_VALUE_TMPL_RE = re.compile(r"\{\{\s*\$value\s*\}\}")


@dataclass
class AlertState:
    """Evaluation state of one rule instance (one label set produced by the rule's expression)."""

    rule: str
    labels: Labels
    severity: str
    status: str = INACTIVE
    since: Optional[float] = None
    fired_at: Optional[float] = None
    value: Optional[float] = None


def _alert_labels(rule: Rule, instance: Labels) -> Labels:
    labels = dict(instance)
    labels.update(dict(rule.labels))
    labels["alertname"] = rule.name
    return tuple(sorted(labels.items()))


def _render(template: str, labels: Dict[str, str], value: Optional[float]) -> str:
    out = _LABEL_TMPL_RE.sub(lambda m: labels.get(m.group(1), ""), template)
    return _VALUE_TMPL_RE.sub("" if value is None else f"{value:g}", out)


def _render_annotations(rule: Rule, labels: Labels, value: Optional[float]) -> Tuple[Tuple[str, str], ...]:
    label_map = dict(labels)
    return tuple((k, _render(v, label_map, value)) for k, v in rule.annotations)


class RuleEvaluator:
    """
    Evaluates every rule against the MetricStore and tracks per-instance alert state.

    Transitions per instance:
      inactive -> pending   when the expression becomes true (records `since`)
      pending  -> firing    once it has held for the rule's `for` duration
      any      -> inactive  as soon as it is false, absent or errored (firing instances emit a resolution)

    Firing instances are surfaced to the dispatcher on every tick; the dispatcher forwards only changes.
    """

    def __init__(
        self,
        holder: ConfigHolder,
        store: MetricStore,
        dispatcher: Optional[NotifierDispatcher] = None,
        metrics: Optional[SelfMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.holder = holder
        self.store = store
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.clock = clock
        self._states: Dict[str, Dict[Labels, AlertState]] = {}
        self._rules: Dict[str, Rule] = {}

    def _resolution(self, rule: Rule, state: AlertState, now: float) -> Notification:
        labels = _alert_labels(rule, state.labels)
        return Notification(
            rule=rule.name,
            labels=labels,
            status=RESOLVED,
            severity=rule.severity,
            starts_at=state.fired_at if state.fired_at is not None else now,
            ends_at=now,
            value=state.value,
            annotations=_render_annotations(rule, labels, state.value),
        )

    def _results_for(self, rule: Rule, now: float) -> List[InstanceResult]:
        try:
            results = evaluate(rule.expr, self.store, now, self.holder.engine.query_lookback_sec)
        except ExpressionError as e:
            logger.error("Rule %s evaluation failed, marking its instances inactive: %s", rule.name, e)
            if self.metrics:
                self.metrics.record_eval_failure(rule.name)
            return []
        for r in results:
            if r.error:
                logger.warning("Rule %s instance %s inactive this tick: %s", rule.name, dict(r.labels), r.error)
        return results

    def _evaluate_rule(self, rule: Rule, now: float) -> List[Notification]:
        out: List[Notification] = []
        states = self._states.setdefault(rule.name, {})
        active = {r.labels: r for r in self._results_for(rule, now) if r.active}

        for labels in [k for k in states if k not in active]:
            state = states.pop(labels)
            if state.status == FIRING:
                logger.info("Alert %s %s resolved", rule.name, dict(labels))
                out.append(self._resolution(rule, state, now))

        for labels, result in active.items():
            state = states.get(labels)
            if state is None:
                state = AlertState(rule=rule.name, labels=labels, severity=rule.severity, status=PENDING, since=now)
                states[labels] = state
                logger.info("Alert %s %s pending", rule.name, dict(labels))
            state.value = result.value
            state.severity = rule.severity

            if state.status == PENDING and now - state.since >= rule.for_sec:
                state.status = FIRING
                state.fired_at = now
                logger.info("Alert %s %s firing (value=%s)", rule.name, dict(labels), result.value)

            if state.status == FIRING:
                alert_labels = _alert_labels(rule, labels)
                out.append(
                    Notification(
                        rule=rule.name,
                        labels=alert_labels,
                        status=FIRING,
                        severity=rule.severity,
                        starts_at=state.fired_at,
                        value=result.value,
                        annotations=_render_annotations(rule, alert_labels, result.value),
                    )
                )
        return out

    def _drop_removed_rules(self, rules: Dict[str, Rule], now: float) -> List[Notification]:
        out: List[Notification] = []
        for name in [n for n in self._states if n not in rules]:
            old_rule = self._rules.get(name)
            for state in self._states.pop(name).values():
                if state.status == FIRING and old_rule is not None:
                    out.append(self._resolution(old_rule, state, now))
            logger.info("Rule %s removed; dropped its alert state", name)
        return out

    # PUBLIC_INTERFACE
    def evaluate_tick(self, now: Optional[float] = None) -> List[Notification]:
        """Run one evaluation of every rule; submits and returns the notifications produced."""
        now = self.clock() if now is None else now
        started = time.monotonic()
        rules = self.holder.definitions.rules

        notifications = self._drop_removed_rules(rules, now)
        self._rules = dict(rules)
        for rule in rules.values():
            try:
                notifications.extend(self._evaluate_rule(rule, now))
            except Exception:
                logger.exception("Rule evaluation failed for rule=%s", rule.name)

        if self.dispatcher is not None and notifications:
            self.dispatcher.submit(notifications)
        if self.metrics:
            self.metrics.record_eval_duration(time.monotonic() - started)
        return notifications

    def active_alerts(self) -> List[AlertState]:
        """Pending and firing instances, ordered by rule then labels."""
        out: List[AlertState] = []
        # Called from request threads while the loop mutates _states; iterate over copies.
        for _, instances in sorted(list(self._states.items()), key=lambda kv: kv[0]):
            out.extend(state for _, state in sorted(list(instances.items()), key=lambda kv: kv[0]))
        return out


# PUBLIC_INTERFACE
async def rule_evaluator_loop(evaluator: RuleEvaluator, shutdown_event: asyncio.Event) -> None:
    """
    Background loop running evaluation ticks on a fixed interval.

    Ticks run one after another on the event loop, so two evaluation cycles never overlap.
    """
    interval = max(0.1, float(evaluator.holder.engine.rule_eval_interval_sec))
    logger.info("Rule evaluator started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        tick_started = time.monotonic()
        try:
            evaluator.evaluate_tick()
        except Exception:
            logger.exception("Rule evaluator tick failed")

        elapsed = time.monotonic() - tick_started
        sleep_for = max(0.05, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Rule evaluator stopped")
