"""
Expression Evaluator

Safe evaluation of the small formula language used by stored
visualization blocks. Nothing here calls eval(); formulas are tokenized,
parsed into a tiny AST by recursive descent, then walked.

Grammar:
    expression := term (('+' | '-') term)*
    term       := factor (('*' | '/' | '%') factor)*
    factor     := '-' factor | NUMBER | '(' expression ')'
                | IDENT '(' args ')'            -- whitelisted function
                | IDENT '.' IDENT               -- metric path
                | IDENT                         -- context variable / opiScore
    args       := expression (',' expression)*

Context variables (current, previous, baseline, average, min, max) all
refer to one target metric supplied by the caller.

Public functions never raise: failures come back as
EvaluatedValue(success=False, error=...).
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from horus.core.metrics.registry import METRIC_REGISTRY
from horus.core.metrics.session import PATH_PREFIXES, SessionMetrics


class FormulaError(ValueError):
    """Raised internally for tokenize/parse/evaluate failures."""


# ── Metric paths ─────────────────────────────────────────────────────────────

SCORE_PATH = "opiScore"
_NON_NUMERIC_PATHS = ("opiGrade", "movementType")
_METRIC_PATH_RE = re.compile(r"\b(?:leftLeg|rightLeg|bilateral)\.\w+|\bopiScore\b")


def is_valid_metric_path(path: str) -> bool:
    """True for opiScore/opiGrade/movementType or prefix.metric with a registered metric."""
    if path in (SCORE_PATH,) + _NON_NUMERIC_PATHS:
        return True
    parts = path.split(".")
    if len(parts) != 2:
        return False
    prefix, metric = parts
    return prefix in PATH_PREFIXES and metric in METRIC_REGISTRY


def get_metric_unit(path: str) -> str:
    if path == SCORE_PATH:
        return "pts"
    parts = path.split(".")
    if len(parts) != 2:
        return ""
    definition = METRIC_REGISTRY.get(parts[1])
    return definition.unit if definition else ""


def resolve_metric_value(path: str, metrics: Optional[SessionMetrics]) -> Optional[float]:
    if metrics is None:
        return None
    value = metrics.get_path(path)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def extract_metric_paths(formula: str) -> List[str]:
    return _METRIC_PATH_RE.findall(formula)


def format_value(value: float, unit: str = "") -> str:
    """Format a number for display according to its unit."""
    if unit in ("%", "pts"):
        sign = "+" if value >= 0 else ""
        return f"{sign}{value:.1f}{unit}"
    if unit == "°":
        return f"{value:.1f}°"
    if unit in ("°/s", "°/s²", "°/s³", "ms"):
        return f"{value:.0f}{unit}"
    if not unit:
        return f"{value:.2f}"
    return f"{value:.1f}{unit}"


# ── Tokenizer ────────────────────────────────────────────────────────────────

NUMBER = "NUMBER"
IDENT = "IDENT"
OP = "OP"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
COMMA = "COMMA"
DOT = "DOT"

_SINGLE_CHAR = {"(": LPAREN, ")": RPAREN, ",": COMMA, ".": DOT}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    n = len(expression)
    while i < n:
        ch = expression[i]
        if ch.isspace():
            i += 1
            continue
        if ch.isdigit():
            start = i
            while i < n and (expression[i].isdigit() or expression[i] == "."):
                i += 1
            text = expression[start:i]
            if text.count(".") > 1:
                raise FormulaError(f"Malformed number '{text}' at position {start}")
            tokens.append(Token(NUMBER, text, start))
            continue
        if ch.isalpha() or ch == "_":
            start = i
            while i < n and (expression[i].isalnum() or expression[i] == "_"):
                i += 1
            tokens.append(Token(IDENT, expression[start:i], start))
            continue
        if ch in "+-*/%":
            tokens.append(Token(OP, ch, i))
            i += 1
            continue
        if ch in _SINGLE_CHAR:
            tokens.append(Token(_SINGLE_CHAR[ch], ch, i))
            i += 1
            continue
        raise FormulaError(f"Unexpected character '{ch}' at position {i}")
    return tokens


# ── Whitelisted functions ────────────────────────────────────────────────────

def _safe(fn: Callable[..., float]) -> Callable[..., float]:
    def wrapper(*args: float) -> float:
        try:
            return float(fn(*args))
        except (ValueError, OverflowError):
            return math.nan
    return wrapper


def _js_round(x: float) -> float:
    # half-up, matching the rounding the stored formulas were authored against
    return float(math.floor(x + 0.5))


# name -> (callable, min_args, max_args or None)
ALLOWED_FUNCTIONS: Dict[str, Tuple[Callable[..., float], int, Optional[int]]] = {
    "abs":   (_safe(abs), 1, 1),
    "min":   (_safe(lambda *a: min(a)), 1, None),
    "max":   (_safe(lambda *a: max(a)), 1, None),
    "round": (_safe(_js_round), 1, 1),
    "floor": (_safe(math.floor), 1, 1),
    "ceil":  (_safe(math.ceil), 1, 1),
    "sqrt":  (_safe(math.sqrt), 1, 1),
    "pow":   (_safe(math.pow), 2, 2),
}

CONTEXT_VARIABLES = ("current", "previous", "baseline", "average", "min", "max")


# ── AST ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Num:
    value: float


@dataclass(frozen=True)
class MetricRef:
    path: str


@dataclass(frozen=True)
class ContextVar:
    name: str


@dataclass(frozen=True)
class Neg:
    operand: object


@dataclass(frozen=True)
class BinOp:
    op: str
    left: object
    right: object


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[object, ...]


MAX_NESTING = 50


class _Parser:
    def __init__(self, tokens: Sequence[Token]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self) -> Optional[Token]:
        tok = self.peek()
        self.pos += 1
        return tok

    def expect(self, kind: str) -> Token:
        tok = self.next()
        if tok is None or tok.kind != kind:
            got = tok.kind if tok else "end of expression"
            raise FormulaError(f"Expected {kind}, got {got}")
        return tok

    def parse(self):
        if not self.tokens:
            raise FormulaError("Empty expression")
        node = self.expression()
        if self.peek() is not None:
            raise FormulaError(f"Unexpected token '{self.peek().value}' at position {self.peek().pos}")
        return node

    def expression(self):
        node = self.term()
        while self.peek() and self.peek().kind == OP and self.peek().value in "+-":
            op = self.next().value
            node = BinOp(op, node, self.term())
        return node

    def term(self):
        node = self.factor()
        while self.peek() and self.peek().kind == OP and self.peek().value in "*/%":
            op = self.next().value
            node = BinOp(op, node, self.factor())
        return node

    def factor(self):
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise FormulaError(f"Expression nested deeper than {MAX_NESTING} levels")
        try:
            return self._factor()
        finally:
            self.depth -= 1

    def _factor(self):
        tok = self.peek()
        if tok is None:
            raise FormulaError("Unexpected end of expression")
        if tok.kind == OP and tok.value == "-":
            self.next()
            return Neg(self.factor())
        if tok.kind == NUMBER:
            self.next()
            return Num(float(tok.value))
        if tok.kind == LPAREN:
            self.next()
            node = self.expression()
            self.expect(RPAREN)
            return node
        if tok.kind == IDENT:
            return self.identifier()
        raise FormulaError(f"Unexpected token '{tok.value}' at position {tok.pos}")

    def identifier(self):
        name = self.next().value
        following = self.peek()

        if following is not None and following.kind == LPAREN:
            return self.call(name)

        if following is not None and following.kind == DOT:
            self.next()
            metric = self.expect(IDENT).value
            path = f"{name}.{metric}"
            if not is_valid_metric_path(path):
                raise FormulaError(f"Invalid metric path: {path}")
            return MetricRef(path)

        if name == SCORE_PATH:
            return MetricRef(name)
        if name in CONTEXT_VARIABLES:
            return ContextVar(name)
        raise FormulaError(f"Unknown identifier: {name}")

    def call(self, name: str):
        signature = ALLOWED_FUNCTIONS.get(name.lower())
        if signature is None:
            raise FormulaError(f"Unknown function: {name}")
        self.expect(LPAREN)
        args = []
        if self.peek() is not None and self.peek().kind != RPAREN:
            args.append(self.expression())
            while self.peek() is not None and self.peek().kind == COMMA:
                self.next()
                args.append(self.expression())
        self.expect(RPAREN)

        _, lo, hi = signature
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise FormulaError(f"Function {name.lower()}() got {len(args)} argument(s)")
        return Call(name.lower(), tuple(args))


def parse_formula(formula: str):
    """Parse a formula into an AST; raises FormulaError on any syntax problem."""
    return _Parser(tokenize(formula)).parse()


def _uses_context(node) -> bool:
    if isinstance(node, ContextVar):
        return True
    if isinstance(node, Neg):
        return _uses_context(node.operand)
    if isinstance(node, BinOp):
        return _uses_context(node.left) or _uses_context(node.right)
    if isinstance(node, Call):
        return any(_uses_context(a) for a in node.args)
    return False


# ── Evaluation ───────────────────────────────────────────────────────────────

@dataclass
class EvaluationContext:
    """Metrics available to a formula: current snapshot plus optional history."""
    current: SessionMetrics
    previous: Optional[SessionMetrics] = None
    baseline: Optional[SessionMetrics] = None
    history: List[SessionMetrics] = field(default_factory=list)


@dataclass
class EvaluatedValue:
    value: float
    formatted: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"value": self.value, "formatted": self.formatted, "success": self.success}
        if self.error is not None:
            out["error"] = self.error
        return out


class _Evaluator:
    def __init__(self, context: EvaluationContext, target_metric: Optional[str]):
        self.context = context
        self.target = target_metric

    def visit(self, node) -> float:
        if isinstance(node, Num):
            return node.value
        if isinstance(node, Neg):
            return -self.visit(node.operand)
        if isinstance(node, MetricRef):
            value = resolve_metric_value(node.path, self.context.current)
            if value is None:
                raise FormulaError(f"No value for metric path: {node.path}")
            return value
        if isinstance(node, ContextVar):
            return self.context_value(node.name)
        if isinstance(node, Call):
            fn = ALLOWED_FUNCTIONS[node.name][0]
            return fn(*[self.visit(a) for a in node.args])
        if isinstance(node, BinOp):
            left = self.visit(node.left)
            right = self.visit(node.right)
            if node.op == "+":
                return left + right
            if node.op == "-":
                return left - right
            if node.op == "*":
                return left * right
            if node.op == "/":
                return left / right if right != 0 else 0.0
            return math.fmod(left, right) if right != 0 else 0.0
        raise FormulaError(f"Unsupported node: {node!r}")

    def context_value(self, name: str) -> float:
        if not self.target:
            raise FormulaError(f"Context variable '{name}' requires a target metric")

        current = resolve_metric_value(self.target, self.context.current)
        if name == "current":
            if current is None:
                raise FormulaError(f"Cannot resolve {self.target} for current session")
            return current
        if name == "previous":
            value = resolve_metric_value(self.target, self.context.previous)
            return value if value is not None else 0.0
        if name == "baseline":
            value = resolve_metric_value(self.target, self.context.baseline)
            return value if value is not None else 0.0

        # average / min / max over history
        if not self.context.history:
            return current if current is not None else 0.0
        values = [
            v for v in (resolve_metric_value(self.target, s) for s in self.context.history)
            if v is not None
        ]
        if not values:
            return 0.0
        if name == "average":
            return sum(values) / len(values)
        if name == "min":
            return min(values)
        return max(values)


def evaluate_metric(path: str, context: EvaluationContext) -> EvaluatedValue:
    """Resolve a flat metric path against the current session."""
    value = resolve_metric_value(path, context.current)
    if value is None:
        return EvaluatedValue(0.0, "N/A", False, f"Invalid metric path: {path}")
    return EvaluatedValue(value, format_value(value, get_metric_unit(path)), True)


def evaluate_formula(
    formula: str,
    context: EvaluationContext,
    target_metric: Optional[str] = None,
    unit: str = "",
) -> EvaluatedValue:
    """Evaluate a formula; division/modulo by zero yield 0, non-finite results fail."""
    try:
        tree = parse_formula(formula)
        value = _Evaluator(context, target_metric).visit(tree)
    except FormulaError as e:
        return EvaluatedValue(0.0, "Error", False, str(e))
    except RecursionError:
        return EvaluatedValue(0.0, "Error", False, "Expression is too complex")

    if not math.isfinite(value):
        return EvaluatedValue(0.0, "N/A", False, "Result is not a finite number")
    return EvaluatedValue(value, format_value(value, unit), True)


def validate_formula(formula: str, target_metric: Optional[str] = None) -> Dict[str, object]:
    """
    Pre-flight check for a stored formula.

    Returns {"valid": bool, "errors": [...]}. A formula that passes will
    evaluate without a parse or path error against any context that has
    values for the metrics it names.
    """
    errors: List[str] = []
    for path in extract_metric_paths(formula):
        if not is_valid_metric_path(path) and f"Invalid metric path: {path}" not in errors:
            errors.append(f"Invalid metric path: {path}")

    try:
        tree = parse_formula(formula)
        uses_context = _uses_context(tree)
    except FormulaError as e:
        if str(e) not in errors:
            errors.append(str(e))
    except RecursionError:
        errors.append("Expression is too complex")
    else:
        if uses_context and target_metric is not None and not is_valid_metric_path(target_metric):
            errors.append(f"Invalid target metric: {target_metric}")

    return {"valid": not errors, "errors": errors}
