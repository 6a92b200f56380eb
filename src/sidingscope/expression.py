"""
Restricted arithmetic for database-authored quantity formulas.

Formulas such as ``ceiling(facade_sqft * 1.15 / 1350)`` are written by
estimators, not engineers, and live in the rules table.  They are tokenized
and parsed into a tiny AST (numbers, variables, ``+ - * /``, unary sign,
parentheses and a whitelist of functions) and evaluated against a
measurement context.  Nothing here executes host code.

The legacy ``Math.ceil(...)`` spelling from older rule rows is accepted and
maps onto the same whitelist.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

LOGGER = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)"
    r"|(?P<op>[-+*/(),])"
    r")"
)


class FormulaError(ValueError):
    """Raised for malformed or non-evaluable formulas."""


def _js_round(value: float) -> float:
    return float(math.floor(value + 0.5))


# name -> (callable, min args, max args or None)
FUNCTIONS: Dict[str, Tuple[Callable[..., float], int, Optional[int]]] = {
    "ceiling": (lambda x: float(math.ceil(x)), 1, 1),
    "ceil": (lambda x: float(math.ceil(x)), 1, 1),
    "floor": (lambda x: float(math.floor(x)), 1, 1),
    "round": (_js_round, 1, 1),
    "abs": (abs, 1, 1),
    "min": (min, 1, None),
    "max": (max, 1, None),
}


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


Node = Union[Number, Variable, UnaryOp, BinaryOp, Call]


@dataclass(frozen=True)
class FormulaResult:
    quantity: float
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def tokenize(formula: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = formula.rstrip()
    while pos < len(text):
        match = TOKEN_PATTERN.match(text, pos)
        if not match or match.end() == pos:
            raise FormulaError(f"unexpected character {text[pos:].lstrip()[:1]!r} at position {pos}")
        kind = match.lastgroup
        if kind is None:
            raise FormulaError(f"unexpected character at position {pos}")
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: List[Tuple[str, str]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def take(self) -> Tuple[str, str]:
        token = self.peek()
        if token is None:
            raise FormulaError("unexpected end of formula")
        self.pos += 1
        return token

    def expect(self, value: str) -> None:
        kind, text = self.take()
        if kind != "op" or text != value:
            raise FormulaError(f"expected {value!r} but found {text!r}")

    def parse(self) -> Node:
        node = self.expression()
        if self.peek() is not None:
            raise FormulaError(f"unexpected token {self.peek()[1]!r}")
        return node

    def expression(self) -> Node:
        node = self.term()
        while self.peek() in (("op", "+"), ("op", "-")):
            _, op = self.take()
            node = BinaryOp(op, node, self.term())
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.peek() in (("op", "*"), ("op", "/")):
            _, op = self.take()
            node = BinaryOp(op, node, self.unary())
        return node

    def unary(self) -> Node:
        if self.peek() in (("op", "+"), ("op", "-")):
            _, op = self.take()
            return UnaryOp(op, self.unary())
        return self.primary()

    def primary(self) -> Node:
        kind, text = self.take()
        if kind == "number":
            return Number(float(text))
        if kind == "name":
            if self.peek() == ("op", "("):
                self.take()
                return Call(_function_name(text), self._arguments())
            if "." in text:
                raise FormulaError(f"unknown variable {text!r}")
            return Variable(text)
        if (kind, text) == ("op", "("):
            node = self.expression()
            self.expect(")")
            return node
        raise FormulaError(f"unexpected token {text!r}")

    def _arguments(self) -> Tuple[Node, ...]:
        args: List[Node] = []
        if self.peek() == ("op", ")"):
            self.take()
            return tuple(args)
        while True:
            args.append(self.expression())
            kind, text = self.take()
            if (kind, text) == ("op", ")"):
                return tuple(args)
            if (kind, text) != ("op", ","):
                raise FormulaError(f"expected ',' or ')' but found {text!r}")


def _function_name(text: str) -> str:
    name = text
    if text.startswith("Math."):
        name = text[len("Math."):]
    if "." in name or name not in FUNCTIONS:
        raise FormulaError(f"unknown function {text!r}")
    return name


@lru_cache(maxsize=512)
def compile_formula(formula: str) -> Node:
    """Parse ``formula`` into an AST; cached per formula string."""
    if not formula or not formula.strip():
        raise FormulaError("empty formula")
    return _Parser(tokenize(formula)).parse()


def _evaluate(node: Node, variables: Mapping[str, float]) -> float:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Variable):
        if node.name not in variables:
            raise FormulaError(f"unknown variable {node.name!r}")
        return float(variables[node.name])
    if isinstance(node, UnaryOp):
        value = _evaluate(node.operand, variables)
        return -value if node.op == "-" else value
    if isinstance(node, BinaryOp):
        left = _evaluate(node.left, variables)
        right = _evaluate(node.right, variables)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if right == 0:
            raise FormulaError("division by zero")
        return left / right
    if isinstance(node, Call):
        func, min_args, max_args = FUNCTIONS[node.name]
        if len(node.args) < min_args or (max_args is not None and len(node.args) > max_args):
            raise FormulaError(f"{node.name}() takes {min_args} argument(s), got {len(node.args)}")
        values = [_evaluate(arg, variables) for arg in node.args]
        for value in values:
            if not math.isfinite(value):
                raise FormulaError(f"{node.name}() received a non-finite value")
        return float(func(*values))
    raise FormulaError(f"unsupported node {node!r}")  # pragma: no cover


def evaluate_formula(formula: str, context: Mapping[str, float]) -> FormulaResult:
    """
    Evaluate a quantity formula against a measurement context.

    Never raises: malformed formulas, unknown names, division by zero and
    non-finite results produce ``FormulaResult(0.0, error)``.  Negative
    results are clamped to 0.
    """

    variables = context.variables() if hasattr(context, "variables") else dict(context)
    try:
        value = _evaluate(compile_formula(formula or ""), variables)
    except FormulaError as exc:
        LOGGER.warning("Formula %r could not be evaluated: %s", formula, exc)
        return FormulaResult(0.0, str(exc))
    except (ArithmeticError, RecursionError) as exc:
        LOGGER.warning("Formula %r failed: %s", formula, exc)
        return FormulaResult(0.0, f"{type(exc).__name__}: {exc}")

    if not math.isfinite(value):
        LOGGER.warning("Formula %r returned invalid result: %s", formula, value)
        return FormulaResult(0.0, f"non-finite result {value}")
    return FormulaResult(max(0.0, value))


__all__ = [
    "FUNCTIONS",
    "FormulaError",
    "FormulaResult",
    "compile_formula",
    "evaluate_formula",
    "tokenize",
]
