"""Safe expression evaluator for G-code template placeholders.

A closed recursive-descent grammar, no host ``eval``::

    expr        := or_expr
    or_expr     := and_expr (("||" | "or") and_expr)*
    and_expr    := comparison (("&&" | "and") comparison)*
    comparison  := additive (("==" | "!=" | "<" | ">" | "<=" | ">=") additive)?
    additive    := term (("+" | "-") term)*
    term        := unary (("*" | "/" | "%") unary)*
    unary       := ("-" | "+" | "!" | "not") unary | primary
    primary     := NUMBER | STRING | "(" expr ")"
                 | NAME "(" [expr ("," expr)*] ")"
                 | NAME "[" expr "]"
                 | NAME

Values are ``float`` or ``str``.  Booleans are ``1.0``/``0.0``; ``true``
and ``false`` are literals for them.  ``+`` concatenates when either
side is a string.  Variable lookups are delegated to a callback so the
caller owns indexing rules.

Example::

    >>> evaluate("max(a, 2) * 3", lambda name, idx: 5.0)
    15.0
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Union

Value = Union[float, str]
Lookup = Callable[[str, "int | None"], Value]
Function = Callable[[Sequence[Value]], Value]

MAX_PRECISION = 12
MAX_DIGITS = 64


class ExpressionError(Exception):
    """Raised when an expression cannot be parsed or evaluated."""

    pass


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def format_number(value: Value) -> str:
    """Render a value for substitution into G-code text.

    Integral floats print without a decimal point, others with up to six
    decimals and no trailing zeros.
    """
    if isinstance(value, str):
        return value
    if math.isfinite(value) and float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def coerce(raw: object) -> Value:
    """Turn an environment element into an expression value.

    Numeric strings become floats; ``true``/``false`` become 1/0.
    """
    if isinstance(raw, bool):
        return 1.0 if raw else 0.0
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    lowered = text.lower()
    if lowered == "true":
        return 1.0
    if lowered == "false":
        return 0.0
    try:
        return float(text)
    except ValueError:
        return str(raw)


def truthy(value: Value) -> bool:
    if isinstance(value, str):
        return value != ""
    return value != 0


def _number(value: Value, op: str) -> float:
    if isinstance(value, str):
        raise ExpressionError(f"Operator '{op}' needs a number, got string {value!r}")
    return value


# ---------------------------------------------------------------------------
# Built-in functions
# ---------------------------------------------------------------------------


def _numeric_args(name: str, args: Sequence[Value], min_count: int, max_count: int) -> list[float]:
    if not min_count <= len(args) <= max_count:
        raise ExpressionError(f"{name}() takes {min_count}-{max_count} arguments, got {len(args)}")
    return [_number(a, f"{name}()") for a in args]


def _fn_max(args: Sequence[Value]) -> Value:
    return max(_numeric_args("max", args, 1, 64))


def _fn_min(args: Sequence[Value]) -> Value:
    return min(_numeric_args("min", args, 1, 64))


def _fn_abs(args: Sequence[Value]) -> Value:
    return abs(_numeric_args("abs", args, 1, 1)[0])


def _finite(name: str, value: float) -> float:
    if not math.isfinite(value):
        raise ExpressionError(f"{name}() needs a finite number, got {value}")
    return value


def _bounded_int(name: str, value: float, low: int, high: int) -> int:
    value = _finite(name, value)
    if not low <= value <= high:
        raise ExpressionError(f"{name}() argument {format_number(value)} outside {low}..{high}")
    return int(value)


def _fn_int(args: Sequence[Value]) -> Value:
    return float(int(_finite("int", _numeric_args("int", args, 1, 1)[0])))


def _fn_round(args: Sequence[Value]) -> Value:
    nums = _numeric_args("round", args, 1, 2)
    digits = _bounded_int("round", nums[1], -MAX_PRECISION, MAX_PRECISION) if len(nums) == 2 else 0
    return float(round(nums[0], digits))


def _fn_digits(args: Sequence[Value]) -> Value:
    """``digits(value, min_digits, precision)``: fixed-point, zero-padded."""
    value, min_digits, precision = _numeric_args("digits", args, 3, 3)
    width = _bounded_int("digits", min_digits, 0, MAX_DIGITS)
    places = _bounded_int("digits", precision, 0, MAX_PRECISION)
    return f"{_finite('digits', value):.{places}f}".rjust(width, "0")


DEFAULT_FUNCTIONS: Mapping[str, Function] = {
    "max": _fn_max,
    "min": _fn_min,
    "abs": _fn_abs,
    "int": _fn_int,
    "round": _fn_round,
    "digits": _fn_digits,
}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<num>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
      | (?P<str>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<name>[A-Za-z_]\w*)
      | (?P<op>==|!=|<=|>=|&&|\|\||[-+*/%<>!()\[\],])
    )
    """,
    re.VERBOSE,
)

_HTML_ESCAPES = (("&lt;", "<"), ("&gt;", ">"), ("&amp;", "&"))


@dataclass(frozen=True, slots=True)
class Token:
    kind: str
    text: str


def tokenize(text: str) -> list[Token]:
    """Split *text* into tokens, ending with an ``end`` token."""
    for escaped, plain in _HTML_ESCAPES:
        text = text.replace(escaped, plain)

    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise ExpressionError(f"Unexpected character {text[pos:].lstrip()[:1]!r} in {text!r}")
        kind = match.lastgroup
        assert kind is not None
        tokens.append(Token(kind, match.group(kind)))
        pos = match.end()
    tokens.append(Token("end", ""))
    return tokens


def _unquote(literal: str) -> str:
    return re.sub(r"\\(.)", r"\1", literal[1:-1])


# ---------------------------------------------------------------------------
# Parser / evaluator
# ---------------------------------------------------------------------------


class _Parser:
    """Evaluates while parsing; one instance per expression."""

    def __init__(
        self,
        tokens: list[Token],
        lookup: Lookup,
        functions: Mapping[str, Function],
    ) -> None:
        self.tokens = tokens
        self.pos = 0
        self.lookup = lookup
        self.functions = functions

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def _accept(self, *texts: str) -> str | None:
        tok = self.current
        if tok.kind in ("op", "name") and tok.text in texts:
            self.pos += 1
            return tok.text
        return None

    def _expect(self, text: str) -> None:
        if self._accept(text) is None:
            raise ExpressionError(f"Expected '{text}', got {self.current.text or 'end of expression'!r}")

    def parse(self) -> Value:
        value = self._or()
        if self.current.kind != "end":
            raise ExpressionError(f"Unexpected token {self.current.text!r}")
        return value

    def _or(self) -> Value:
        left = self._and()
        while self._accept("||", "or"):
            right = self._and()
            left = 1.0 if truthy(left) or truthy(right) else 0.0
        return left

    def _and(self) -> Value:
        left = self._comparison()
        while self._accept("&&", "and"):
            right = self._comparison()
            left = 1.0 if truthy(left) and truthy(right) else 0.0
        return left

    def _comparison(self) -> Value:
        left = self._additive()
        op = self._accept("==", "!=", "<=", ">=", "<", ">")
        if op is None:
            return left
        right = self._additive()
        if isinstance(left, str) or isinstance(right, str):
            a: Value = format_number(left)
            b: Value = format_number(right)
        else:
            a, b = left, right
        result = {
            "==": lambda: a == b,
            "!=": lambda: a != b,
            "<": lambda: a < b,  # type: ignore[operator]
            ">": lambda: a > b,  # type: ignore[operator]
            "<=": lambda: a <= b,  # type: ignore[operator]
            ">=": lambda: a >= b,  # type: ignore[operator]
        }[op]()
        return 1.0 if result else 0.0

    def _additive(self) -> Value:
        left = self._term()
        while True:
            op = self._accept("+", "-")
            if op is None:
                return left
            right = self._term()
            if op == "+" and (isinstance(left, str) or isinstance(right, str)):
                left = format_number(left) + format_number(right)
            elif op == "+":
                left = _number(left, op) + _number(right, op)
            else:
                left = _number(left, op) - _number(right, op)

    def _term(self) -> Value:
        left = self._unary()
        while True:
            op = self._accept("*", "/", "%")
            if op is None:
                return left
            a = _number(left, op)
            b = _number(self._unary(), op)
            if op == "*":
                left = a * b
            elif b == 0:
                raise ExpressionError("Division by zero")
            elif op == "/":
                left = a / b
            elif not math.isfinite(a):
                raise ExpressionError(f"Modulo of non-finite value {a}")
            else:
                left = math.fmod(a, b)

    def _unary(self) -> Value:
        op = self._accept("-", "+", "!", "not")
        if op is None:
            return self._primary()
        operand = self._unary()
        if op in ("!", "not"):
            return 0.0 if truthy(operand) else 1.0
        value = _number(operand, op)
        return -value if op == "-" else value

    def _primary(self) -> Value:
        tok = self.current
        if tok.kind == "num":
            self.pos += 1
            return float(tok.text)
        if tok.kind == "str":
            self.pos += 1
            return _unquote(tok.text)
        if self._accept("("):
            value = self._or()
            self._expect(")")
            return value
        if tok.kind == "name":
            self.pos += 1
            return self._name(tok.text)
        raise ExpressionError(f"Unexpected token {tok.text or 'end of expression'!r}")

    def _name(self, name: str) -> Value:
        if self._accept("("):
            func = self.functions.get(name)
            if func is None:
                raise ExpressionError(f"Unknown function '{name}'")
            args: list[Value] = []
            if not self._accept(")"):
                args.append(self._or())
                while self._accept(","):
                    args.append(self._or())
                self._expect(")")
            return func(args)

        lowered = name.lower()
        if lowered == "true":
            return 1.0
        if lowered == "false":
            return 0.0

        if self._accept("["):
            index = _number(self._or(), "[]")
            self._expect("]")
            if index < 0 or not float(index).is_integer():
                raise ExpressionError(f"Invalid index {format_number(index)} for '{name}'")
            return self.lookup(name, int(index))
        return self.lookup(name, None)


def evaluate(
    text: str,
    lookup: Lookup,
    functions: Mapping[str, Function] | None = None,
) -> Value:
    """Evaluate *text* and return its value.

    Parameters
    ----------
    text : str
        Expression source.
    lookup : Callable[[str, int | None], Value]
        Resolves ``name`` (index ``None``) and ``name[k]``.  Should raise
        :class:`ExpressionError` for unknown names.
    functions : Mapping[str, Function] | None
        Callable table; :data:`DEFAULT_FUNCTIONS` when ``None``.

    Raises
    ------
    ExpressionError
        On syntax errors, type errors, unknown names, division by zero
        or arithmetic that leaves the float range.
    """
    if not text.strip():
        raise ExpressionError("Empty expression")
    parser = _Parser(tokenize(text), lookup, DEFAULT_FUNCTIONS if functions is None else functions)
    try:
        return parser.parse()
    except (ArithmeticError, ValueError) as exc:
        raise ExpressionError(f"Cannot evaluate {text!r}: {exc}") from exc
