"""
Alert expression language.

A small PromQL-flavoured subset evaluated against the MetricStore at a single instant:

    cpu_usage{env="prod"} > 0.8
    avg_over_time(queue_depth[5m]) >= 100 and up == 1
    errors_total / requests_total > 0.05

Unlike PromQL, comparisons keep the false elements (as 0/1 truth values) so the evaluator can see
instances that stopped matching. Vector/vector operations match on identical label sets with the
metric name dropped.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

from src.monitor.schemas.common import parse_duration
from src.monitor.services.metric_store import InvalidMatcher, MetricStore, SeriesMatcher, parse_matcher

Labels = Tuple[Tuple[str, str], ...]


class ExpressionError(Exception):
    """Raised for expressions that cannot be parsed or evaluated as a whole."""


# ---- AST ----


@dataclass(frozen=True)
class NumberLiteral:
    value: float


@dataclass(frozen=True)
class Selector:
    matcher: SeriesMatcher


@dataclass(frozen=True)
class RangeFunction:
    func: str
    matcher: SeriesMatcher
    range_sec: float


@dataclass(frozen=True)
class Negate:
    expr: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


Node = Union[NumberLiteral, Selector, RangeFunction, Negate, BinaryOp]


def _avg(vals: List[float]) -> float:
    return sum(vals) / len(vals)


RANGE_FUNCTIONS: Dict[str, Callable[[List[float]], float]] = {
    "avg_over_time": _avg,
    "min_over_time": min,
    "max_over_time": max,
    "sum_over_time": sum,
    "count_over_time": lambda vals: float(len(vals)),
}

ARITHMETIC_OPS = ("+", "-", "*", "/")
COMPARISON_OPS = (">", "<", ">=", "<=", "==", "!=")
LOGICAL_OPS = ("and", "or")


# ---- tokenizer ----


@dataclass(frozen=True)
class _Token:
    kind: str  # num | sel | func | range | op | kw | lparen | rparen | comma
    text: str
    pos: int


_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_OPS = (">=", "<=", "==", "!=", ">", "<", "+", "-", "*", "/")


def _scan_braces(text: str, start: int) -> int:
    """Return the index just past the '}' matching text[start] == '{', honouring quoted strings."""
    i = start + 1
    in_str = False
    while i < len(text):
        ch = text[i]
        if in_str:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch == "}":
            return i + 1
        i += 1
    raise ExpressionError(f"unterminated '{{' at position {start}")


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "(":
            tokens.append(_Token("lparen", ch, i))
            i += 1
            continue
        if ch == ")":
            tokens.append(_Token("rparen", ch, i))
            i += 1
            continue
        if ch == ",":
            tokens.append(_Token("comma", ch, i))
            i += 1
            continue
        if ch == "[":
            end = text.find("]", i)
            if end < 0:
                raise ExpressionError(f"unterminated '[' at position {i}")
            tokens.append(_Token("range", text[i + 1 : end].strip(), i))
            i = end + 1
            continue
        if ch == "{":
            end = _scan_braces(text, i)
            tokens.append(_Token("sel", text[i:end], i))
            i = end
            continue
        m = _NUMBER_RE.match(text, i)
        if m and (ch.isdigit() or ch == "."):
            tokens.append(_Token("num", m.group(0), i))
            i = m.end()
            continue
        m = _IDENT_RE.match(text, i)
        if m:
            word = m.group(0)
            j = m.end()
            while j < n and text[j].isspace():
                j += 1
            if word in LOGICAL_OPS:
                tokens.append(_Token("kw", word, i))
                i = m.end()
            elif j < n and text[j] == "(":
                tokens.append(_Token("func", word, i))
                i = m.end()
            elif j < n and text[j] == "{":
                end = _scan_braces(text, j)
                tokens.append(_Token("sel", word + text[j:end], i))
                i = end
            else:
                tokens.append(_Token("sel", word, i))
                i = m.end()
            continue
        for op in _OPS:
            if text.startswith(op, i):
                tokens.append(_Token("op", op, i))
                i += len(op)
                break
        else:
            raise ExpressionError(f"unexpected character {ch!r} at position {i}")
    return tokens


# ---- parser ----


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[_Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> _Token:
        tok = self.peek()
        if tok is None:
            raise ExpressionError(f"unexpected end of expression: {self.text!r}")
        self.pos += 1
        return tok

    def expect(self, kind: str) -> _Token:
        tok = self.take()
        if tok.kind != kind:
            raise ExpressionError(f"expected {kind} at position {tok.pos}, got {tok.text!r}")
        return tok

    def parse(self) -> Node:
        node = self.parse_or()
        tok = self.peek()
        if tok is not None:
            raise ExpressionError(f"unexpected {tok.text!r} at position {tok.pos}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self._at("kw", "or"):
            self.take()
            node = BinaryOp("or", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_cmp()
        while self._at("kw", "and"):
            self.take()
            node = BinaryOp("and", node, self.parse_cmp())
        return node

    def parse_cmp(self) -> Node:
        node = self.parse_add()
        tok = self.peek()
        if tok is not None and tok.kind == "op" and tok.text in COMPARISON_OPS:
            self.take()
            node = BinaryOp(tok.text, node, self.parse_add())
        return node

    def parse_add(self) -> Node:
        node = self.parse_mul()
        while self._at("op", "+") or self._at("op", "-"):
            op = self.take().text
            node = BinaryOp(op, node, self.parse_mul())
        return node

    def parse_mul(self) -> Node:
        node = self.parse_unary()
        while self._at("op", "*") or self._at("op", "/"):
            op = self.take().text
            node = BinaryOp(op, node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        if self._at("op", "-"):
            self.take()
            return Negate(self.parse_unary())
        if self._at("op", "+"):
            self.take()
            return self.parse_unary()
        return self.parse_primary()

    def parse_primary(self) -> Node:
        tok = self.take()
        if tok.kind == "num":
            return NumberLiteral(float(tok.text))
        if tok.kind == "sel":
            return Selector(_matcher(tok))
        if tok.kind == "lparen":
            node = self.parse_or()
            self.expect("rparen")
            return node
        if tok.kind == "func":
            if tok.text not in RANGE_FUNCTIONS:
                raise ExpressionError(f"unknown function {tok.text!r}")
            self.expect("lparen")
            sel = self.expect("sel")
            rng = self.expect("range")
            self.expect("rparen")
            try:
                range_sec = parse_duration(rng.text)
            except ValueError as e:
                raise ExpressionError(str(e)) from e
            if range_sec <= 0:
                raise ExpressionError(f"range must be positive: [{rng.text}]")
            return RangeFunction(tok.text, _matcher(sel), range_sec)
        raise ExpressionError(f"unexpected {tok.text!r} at position {tok.pos}")

    def _at(self, kind: str, text: str) -> bool:
        tok = self.peek()
        return tok is not None and tok.kind == kind and tok.text == text


def _matcher(tok: _Token) -> SeriesMatcher:
    try:
        return parse_matcher(tok.text)
    except InvalidMatcher as e:
        raise ExpressionError(str(e)) from e


# PUBLIC_INTERFACE
def parse_expr(text: str) -> Node:
    """Parse an alert expression; raises ExpressionError on syntax errors."""
    if not (text or "").strip():
        raise ExpressionError("empty expression")
    return _Parser(text).parse()


# ---- evaluation ----


@dataclass
class Vector:
    """Instant vector keyed by label set. `truth` is set once a comparison or logical op produced it."""

    values: Dict[Labels, float] = field(default_factory=dict)
    truth: Optional[Dict[Labels, bool]] = None

    def truth_of(self, labels: Labels) -> bool:
        if self.truth is None:
            return labels in self.values
        return self.truth.get(labels, False)


@dataclass
class EvalContext:
    store: MetricStore
    at: float
    lookback: float
    errors: Dict[Labels, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InstanceResult:
    labels: Labels
    active: bool
    value: Optional[float]
    error: Optional[str] = None


def _compare(op: str, a: float, b: float) -> bool:
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    if op == "<=":
        return a <= b
    if op == "==":
        return a == b
    return a != b


def _arith(op: str, a: float, b: float) -> float:
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        raise ZeroDivisionError("division by zero")
    return a / b


def _unique(pairs, what: str) -> Vector:
    out = Vector()
    for key, value in pairs:
        if key.labels in out.values:
            raise ExpressionError(f"{what} matched several series with the same labels {dict(key.labels)}")
        out.values[key.labels] = value
    return out


def _eval(node: Node, ctx: EvalContext) -> Union[float, Vector]:
    if isinstance(node, NumberLiteral):
        return node.value

    if isinstance(node, Selector):
        return _unique(((k, s.value) for k, s in ctx.store.latest(node.matcher, ctx.at, ctx.lookback)), "selector")

    if isinstance(node, RangeFunction):
        agg = RANGE_FUNCTIONS[node.func]
        series = ctx.store.query(node.matcher, ctx.at - node.range_sec, ctx.at)
        return _unique(((key, float(agg([s.value for s in samples]))) for key, samples in series), node.func)

    if isinstance(node, Negate):
        inner = _eval(node.expr, ctx)
        if isinstance(inner, Vector):
            return Vector(values={k: -v for k, v in inner.values.items()})
        return -inner

    left = _eval(node.left, ctx)
    right = _eval(node.right, ctx)

    if node.op in LOGICAL_OPS:
        if not isinstance(left, Vector) or not isinstance(right, Vector):
            raise ExpressionError(f"operator {node.op!r} requires vectors on both sides")
        # Both operators report the union of label sets; a missing side is false.
        truth: Dict[Labels, bool] = {}
        values: Dict[Labels, float] = {}
        for k in set(left.values) | set(right.values):
            a, b = left.truth_of(k), right.truth_of(k)
            truth[k] = (a and b) if node.op == "and" else (a or b)
            values[k] = left.values[k] if k in left.values else right.values[k]
        return Vector(values=values, truth=truth)

    if not isinstance(left, Vector) and not isinstance(right, Vector):
        if node.op in COMPARISON_OPS:
            raise ExpressionError(f"comparison {node.op!r} between two scalars")
        try:
            return _arith(node.op, float(left), float(right))
        except ZeroDivisionError as e:
            raise ExpressionError(str(e)) from e

    pairs: List[Tuple[Labels, float, float]] = []
    if isinstance(left, Vector) and isinstance(right, Vector):
        for k, a in left.values.items():
            if k in right.values:
                pairs.append((k, a, right.values[k]))
    elif isinstance(left, Vector):
        pairs = [(k, a, float(right)) for k, a in left.values.items()]
    else:
        pairs = [(k, float(left), b) for k, b in right.values.items()]

    out = Vector()
    if node.op in COMPARISON_OPS:
        out.truth = {}
        for k, a, b in pairs:
            sample = a if isinstance(left, Vector) else b
            out.values[k] = sample
            out.truth[k] = k not in ctx.errors and not math.isnan(a) and not math.isnan(b) and _compare(node.op, a, b)
        return out

    for k, a, b in pairs:
        try:
            out.values[k] = _arith(node.op, a, b)
        except ZeroDivisionError:
            ctx.errors[k] = "division by zero"
            out.values[k] = math.nan
    return out


# PUBLIC_INTERFACE
def evaluate(node: Node, store: MetricStore, at: float, lookback: float = 300.0) -> List[InstanceResult]:
    """
    Evaluate an expression at instant `at`.

    Returns one InstanceResult per label set seen; `active` is the boolean outcome. Elements that hit a
    per-element error (division by zero) come back inactive with `error` set. Raises ExpressionError when
    the expression as a whole cannot produce a vector.
    """
    ctx = EvalContext(store=store, at=at, lookback=lookback)
    result = _eval(node, ctx)
    if not isinstance(result, Vector):
        raise ExpressionError("expression evaluated to a scalar, expected a vector")

    out: List[InstanceResult] = []
    for labels in sorted(result.values):
        value = result.values[labels]
        err = ctx.errors.get(labels)
        active = err is None and result.truth_of(labels)
        out.append(
            InstanceResult(
                labels=labels,
                active=active,
                value=None if math.isnan(value) else value,
                error=err,
            )
        )
    return out
