from __future__ import annotations

import logging
import math
import re
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

NAME_LABEL = "__name__"


class OutOfOrderSample(Exception):
    """Raised when a sample is not newer than the last stored sample of its series."""

    def __init__(self, key: "SeriesKey", ts: float, last_ts: float):
        super().__init__(f"out-of-order sample for {key}: ts={ts} <= last={last_ts}")
        self.key = key
        self.ts = ts
        self.last_ts = last_ts


class InvalidSample(ValueError):
    """Raised for samples that can never be stored (non-finite timestamp, bad value type)."""


class InvalidMatcher(ValueError):
    """Raised when a series selector cannot be parsed."""


@dataclass(frozen=True)
class SeriesKey:
    """Metric name plus sorted label pairs; uniquely identifies a series."""

    name: str
    labels: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def of(cls, name: str, labels: Optional[Mapping[str, str]] = None) -> "SeriesKey":
        items = {str(k): str(v) for k, v in (labels or {}).items() if k != NAME_LABEL}
        return cls(name=name, labels=tuple(sorted(items.items())))

    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)

    def all_labels(self) -> Dict[str, str]:
        """Labels including __name__, as matchers see them."""
        d = dict(self.labels)
        d[NAME_LABEL] = self.name
        return d

    def __str__(self) -> str:
        inner = ",".join(f'{k}="{v}"' for k, v in self.labels)
        return f"{self.name}{{{inner}}}"


@dataclass(frozen=True)
class Sample:
    ts: float
    value: float


@dataclass(frozen=True)
class LabelMatcher:
    """A single label constraint: '=', '!=', '=~' or '!~' (regexes are fully anchored)."""

    label: str
    op: str
    value: str

    def matches(self, labels: Mapping[str, str]) -> bool:
        actual = labels.get(self.label, "")
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        hit = re.fullmatch(self.value, actual) is not None
        return hit if self.op == "=~" else not hit


@dataclass(frozen=True)
class SeriesMatcher:
    """Selects series by metric name and label matchers."""

    matchers: Tuple[LabelMatcher, ...] = ()

    @property
    def metric(self) -> Optional[str]:
        for m in self.matchers:
            if m.label == NAME_LABEL and m.op == "=":
                return m.value
        return None

    def matches(self, key: SeriesKey) -> bool:
        labels = key.all_labels()
        return all(m.matches(labels) for m in self.matchers)

    def __str__(self) -> str:
        name = self.metric or ""
        rest = [m for m in self.matchers if not (m.label == NAME_LABEL and m.op == "=" and m.value == name)]
        inner = ",".join(f'{m.label}{m.op}"{m.value}"' for m in rest)
        return f"{name}{{{inner}}}" if inner or not name else name


_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_MATCHER_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*(=~|!~|!=|=)\s*"((?:[^"\\]|\\.)*)"\s*')


# PUBLIC_INTERFACE
def parse_matcher(text: str) -> SeriesMatcher:
    """
    Parse a selector such as 'cpu_usage{host="a",env=~"prod|stage"}' into a SeriesMatcher.

    Either the metric name or the braces may be omitted, but not both.
    """
    raw = (text or "").strip()
    if not raw:
        raise InvalidMatcher("empty selector")

    matchers: List[LabelMatcher] = []
    m = _NAME_RE.match(raw)
    pos = 0
    if m:
        matchers.append(LabelMatcher(NAME_LABEL, "=", m.group(0)))
        pos = m.end()

    rest = raw[pos:].strip()
    if rest:
        if not (rest.startswith("{") and rest.endswith("}")):
            raise InvalidMatcher(f"invalid selector: {text!r}")
        body = rest[1:-1]
        i = 0
        while i < len(body):
            lm = _LABEL_MATCHER_RE.match(body, i)
            if not lm:
                raise InvalidMatcher(f"invalid label matcher in {text!r}")
            value = lm.group(3).replace('\\"', '"').replace("\\\\", "\\")
            if lm.group(2) in ("=~", "!~"):
                try:
                    re.compile(value)
                except re.error as e:
                    raise InvalidMatcher(f"invalid regex {value!r}: {e}") from e
            matchers.append(LabelMatcher(lm.group(1), lm.group(2), value))
            i = lm.end()
            if i < len(body):
                if body[i] != ",":
                    raise InvalidMatcher(f"expected ',' in {text!r}")
                i += 1

    if not matchers:
        raise InvalidMatcher(f"selector matches everything: {text!r}")
    return SeriesMatcher(tuple(matchers))


@dataclass
class _Series:
    key: SeriesKey
    samples: List[Sample] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock)


class MetricStore:
    """
    In-memory append-only sample store.

    - One lock per series serializes appends (single writer per series).
    - Reads snapshot the sample list and never take the series lock.
    - Retention is lazy: on each write, samples older than the horizon
      (relative to the new sample) are dropped from that series.
    """

    def __init__(self, retention_sec: float = 6 * 3600, on_evict=None):
        self.retention_sec = float(retention_sec)
        self._series: Dict[SeriesKey, _Series] = {}
        self._index_lock = Lock()
        self._on_evict = on_evict

    def _get_or_create(self, key: SeriesKey) -> _Series:
        series = self._series.get(key)
        if series is not None:
            return series
        with self._index_lock:
            series = self._series.get(key)
            if series is None:
                series = _Series(key=key)
                self._series[key] = series
            return series

    # PUBLIC_INTERFACE
    def append(self, key: SeriesKey, sample: Sample) -> None:
        """Append a sample; raises OutOfOrderSample if ts <= last stored ts for the series."""
        ts = float(sample.ts)
        if not math.isfinite(ts):
            raise InvalidSample(f"non-finite timestamp for {key}: {sample.ts!r}")
        try:
            value = float(sample.value)
        except (TypeError, ValueError) as e:
            raise InvalidSample(f"non-numeric value for {key}: {sample.value!r}") from e

        series = self._get_or_create(key)
        with series.lock:
            samples = series.samples
            if samples and ts <= samples[-1].ts:
                raise OutOfOrderSample(key, ts, samples[-1].ts)

            if self.retention_sec > 0 and samples:
                cutoff = ts - self.retention_sec
                drop = bisect_left(samples, cutoff, key=lambda s: s.ts)
                if drop:
                    # Trim by rebinding; readers keep indexing the list they captured.
                    series.samples = samples = samples[drop:]
                    if self._on_evict is not None:
                        self._on_evict(drop)

            samples.append(Sample(ts=ts, value=value))

    def append_many(self, items: Iterable[Tuple[SeriesKey, Sample]]) -> Tuple[int, List[Exception]]:
        """Append each item independently; returns (appended_count, rejected_errors)."""
        ok = 0
        errors: List[Exception] = []
        for key, sample in items:
            try:
                self.append(key, sample)
                ok += 1
            except (OutOfOrderSample, InvalidSample) as e:
                logger.warning("Rejected sample: %s", e)
                errors.append(e)
        return ok, errors

    def _matching(self, matcher: Optional[SeriesMatcher]) -> List[_Series]:
        snapshot = list(self._series.values())
        if matcher is None:
            return snapshot
        metric = matcher.metric
        return [s for s in snapshot if (metric is None or s.key.name == metric) and matcher.matches(s.key)]

    # PUBLIC_INTERFACE
    def query(
        self, matcher: SeriesMatcher, start: Optional[float] = None, end: Optional[float] = None
    ) -> List[Tuple[SeriesKey, List[Sample]]]:
        """Return (key, samples) for every matching series; samples in [start, end], time-ordered."""
        out: List[Tuple[SeriesKey, List[Sample]]] = []
        for series in self._matching(matcher):
            samples = series.samples
            lo = 0 if start is None else bisect_left(samples, start, key=lambda s: s.ts)
            hi = len(samples) if end is None else bisect_right(samples, end, key=lambda s: s.ts)
            window = samples[lo:hi]
            if window:
                out.append((series.key, window))
        out.sort(key=lambda kv: (kv[0].name, kv[0].labels))
        return out

    # PUBLIC_INTERFACE
    def latest(self, matcher: SeriesMatcher, at: float, lookback: float) -> List[Tuple[SeriesKey, Sample]]:
        """Most recent sample per matching series within [at - lookback, at]."""
        out: List[Tuple[SeriesKey, Sample]] = []
        for series in self._matching(matcher):
            samples = series.samples
            idx = bisect_right(samples, at, key=lambda s: s.ts)
            if idx == 0:
                continue
            sample = samples[idx - 1]
            if sample.ts >= at - lookback:
                out.append((series.key, sample))
        return out

    def series(self, matcher: Optional[SeriesMatcher] = None) -> List[SeriesKey]:
        keys = [s.key for s in self._matching(matcher)]
        keys.sort(key=lambda k: (k.name, k.labels))
        return keys

    def series_count(self) -> int:
        return len(self._series)
