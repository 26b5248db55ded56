"""
CardStream Expression Evaluator

Sandboxed evaluator for resolved formula text. Nothing is passed to
Python's eval(); the text is tokenized and parsed by a small recursive
descent parser over a fixed grammar:

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/') unary)*
    unary   := ('+' | '-') unary | primary
    primary := NUMBER | STRING | NAME '(' [expr (',' expr)*] ')' | '(' expr ')'

Functions: round(x[, n]), ceil, floor, abs, min, max, concat, uppercase,
lowercase, trim. '+' concatenates when either operand is a string.

INVARIANT: A successful numeric result is always finite.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import math

from cardstream.errors import (
    ErrorCode,
    EvaluationError,
    ExpressionSyntaxError,
    DivisionByZeroError,
    NonFiniteResultError,
    ExpressionTypeError,
)

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LENGTH = 10_000
MAX_NESTING_DEPTH = 64


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class EvaluationResult:
    """Outcome of evaluating one expression. Never raised, always returned."""
    success: bool
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    expression: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "value": self.value,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
        }


# =============================================================================
# TOKENIZER
# =============================================================================

NUMBER = "number"
STRING = "string"
NAME = "name"
OP = "op"
LPAREN = "("
RPAREN = ")"
COMMA = ","
END = "end"

Token = Tuple[str, Any, int]


def tokenize(expression: str) -> List[Token]:
    """Split an expression into (type, value, position) tokens."""
    tokens: List[Token] = []
    i = 0
    length = len(expression)

    while i < length:
        ch = expression[i]

        if ch.isspace():
            i += 1
            continue

        if ch.isdigit() or (ch == "." and i + 1 < length and expression[i + 1].isdigit()):
            start = i
            while i < length and expression[i].isdigit():
                i += 1
            if i < length and expression[i] == ".":
                i += 1
                while i < length and expression[i].isdigit():
                    i += 1
            number = float(expression[start:i])
            if not math.isfinite(number):
                raise NonFiniteResultError(f"Number literal too large at position {start}", source="evaluator")
            tokens.append((NUMBER, number, start))
            continue

        if ch in ("'", '"'):
            quote = ch
            start = i
            i += 1
            chars = []
            while i < length and expression[i] != quote:
                if expression[i] == "\\" and i + 1 < length:
                    i += 1
                chars.append(expression[i])
                i += 1
            if i >= length:
                raise ExpressionSyntaxError(f"Unterminated string at position {start}", source="evaluator")
            i += 1
            tokens.append((STRING, "".join(chars), start))
            continue

        if ch.isalpha() or ch == "_":
            start = i
            while i < length and (expression[i].isalnum() or expression[i] == "_"):
                i += 1
            tokens.append((NAME, expression[start:i], start))
            continue

        if ch in "+-*/":
            tokens.append((OP, ch, i))
            i += 1
            continue

        if ch in (LPAREN, RPAREN, COMMA):
            tokens.append((ch, ch, i))
            i += 1
            continue

        raise ExpressionSyntaxError(f"Unexpected character '{ch}' at position {i}", source="evaluator")

    tokens.append((END, None, length))
    return tokens


# =============================================================================
# VALUE HELPERS
# =============================================================================

def to_text(value: Any) -> str:
    """String form used by concatenation; integral floats lose the '.0'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _number(value: Any, context: str) -> float:
    if isinstance(value, str):
        raise ExpressionTypeError(f"{context} expects a number, got text '{value}'", source="evaluator")
    return value


def _check_finite(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        raise NonFiniteResultError("Result is not a finite number", source="evaluator")
    return value


def round_half_up(value: float, digits: int = 0) -> float:
    """Round away from zero on ties (2.5 -> 3, 0.125 -> 0.13)."""
    try:
        quantum = Decimal(1).scaleb(-digits)
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation as e:
        raise NonFiniteResultError(f"Cannot round {value}: {e}", source="evaluator")


def _fn_round(*args: Any) -> float:
    if len(args) not in (1, 2):
        raise ExpressionTypeError("round() takes 1 or 2 arguments", source="evaluator")
    value = _number(args[0], "round()")
    digits = 0
    if len(args) == 2:
        digits = _number(args[1], "round()")
        if float(digits) != int(digits):
            raise ExpressionTypeError("round() precision must be a whole number", source="evaluator")
        digits = int(digits)
    return round_half_up(value, digits)


def _unary(name: str, fn: Callable[[float], Any]) -> Callable[..., Any]:
    def wrapper(*args: Any) -> Any:
        if len(args) != 1:
            raise ExpressionTypeError(f"{name}() takes exactly 1 argument", source="evaluator")
        return fn(_number(args[0], f"{name}()"))
    return wrapper


def _variadic_numeric(name: str, fn: Callable[..., Any]) -> Callable[..., Any]:
    def wrapper(*args: Any) -> Any:
        if not args:
            raise ExpressionTypeError(f"{name}() needs at least 1 argument", source="evaluator")
        return fn(*[_number(a, f"{name}()") for a in args])
    return wrapper


def _text_fn(name: str, fn: Callable[[str], str]) -> Callable[..., str]:
    def wrapper(*args: Any) -> str:
        if len(args) != 1:
            raise ExpressionTypeError(f"{name}() takes exactly 1 argument", source="evaluator")
        return fn(to_text(args[0]))
    return wrapper


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "round": _fn_round,
    "ceil": _unary("ceil", lambda x: float(math.ceil(x))),
    "floor": _unary("floor", lambda x: float(math.floor(x))),
    "abs": _unary("abs", abs),
    "min": _variadic_numeric("min", min),
    "max": _variadic_numeric("max", max),
    "concat": lambda *args: "".join(to_text(a) for a in args),
    "uppercase": _text_fn("uppercase", str.upper),
    "lowercase": _text_fn("lowercase", str.lower),
    "trim": _text_fn("trim", str.strip),
}


# =============================================================================
# PARSER
# =============================================================================

class _Parser:
    """Builds a tuple AST from tokens."""

    def __init__(self, tokens: List[Token]):
        self._tokens = tokens
        self._pos = 0
        self._depth = 0

    def _peek(self) -> Token:
        return self._tokens[self._pos]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _expect(self, kind: str) -> Token:
        token = self._advance()
        if token[0] != kind:
            raise ExpressionSyntaxError(
                f"Expected '{kind}' at position {token[2]}, found {_describe(token)}",
                source="evaluator",
            )
        return token

    def parse(self) -> tuple:
        if self._peek()[0] == END:
            raise ExpressionSyntaxError("Empty expression", source="evaluator")
        node = self._expr()
        token = self._peek()
        if token[0] != END:
            raise ExpressionSyntaxError(
                f"Unexpected {_describe(token)} at position {token[2]}",
                source="evaluator",
            )
        return node

    def _expr(self) -> tuple:
        return self._chain(self._term, "+-")

    def _term(self) -> tuple:
        return self._chain(self._unary, "*/")

    def _chain(self, operand: Callable[[], tuple], ops: str) -> tuple:
        # Flat list of (op, operand) so long sums stay shallow
        first = operand()
        rest = []
        while self._peek()[0] == OP and self._peek()[1] in ops:
            op = self._advance()[1]
            rest.append((op, operand()))
        return ("chain", first, rest) if rest else first

    def _unary(self) -> tuple:
        self._depth += 1
        if self._depth > MAX_NESTING_DEPTH:
            raise ExpressionSyntaxError("Expression is nested too deeply", source="evaluator")
        try:
            token = self._peek()
            if token[0] == OP and token[1] in "+-":
                self._advance()
                operand = self._unary()
                return ("neg", operand) if token[1] == "-" else ("pos", operand)
            return self._primary()
        finally:
            self._depth -= 1

    def _primary(self) -> tuple:
        token = self._advance()
        kind = token[0]

        if kind == NUMBER:
            return ("num", token[1])
        if kind == STRING:
            return ("str", token[1])
        if kind == LPAREN:
            node = self._expr()
            self._expect(RPAREN)
            return node
        if kind == NAME:
            name = token[1].lower()
            if name not in FUNCTIONS:
                raise ExpressionSyntaxError(f"Unknown function '{token[1]}'", source="evaluator")
            self._expect(LPAREN)
            args = []
            if self._peek()[0] != RPAREN:
                args.append(self._expr())
                while self._peek()[0] == COMMA:
                    self._advance()
                    args.append(self._expr())
            self._expect(RPAREN)
            return ("call", name, args)

        raise ExpressionSyntaxError(
            f"Unexpected {_describe(token)} at position {token[2]}",
            source="evaluator",
        )


def _describe(token: Token) -> str:
    if token[0] == END:
        return "end of expression"
    return f"'{token[1]}'"


def parse(expression: str) -> tuple:
    """Parse expression text into an AST; raises ExpressionSyntaxError."""
    if expression is None or not str(expression).strip():
        raise ExpressionSyntaxError("Empty expression", source="evaluator")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionSyntaxError("Expression is too long", source="evaluator")
    try:
        return _Parser(tokenize(expression)).parse()
    except RecursionError:
        raise ExpressionSyntaxError("Expression is too complex", source="evaluator") from None


# =============================================================================
# EVALUATOR
# =============================================================================

class ExpressionEvaluator:
    """
    Evaluates resolved formula text.

    Usage:
        evaluator = ExpressionEvaluator()
        result = evaluator.evaluate("round(245 * 0.5, 1)")
        result.value  # 122.5
    """

    def evaluate(self, expression: str) -> EvaluationResult:
        """Evaluate, reporting failures in the result instead of raising."""
        try:
            value = self.compute(expression)
        except EvaluationError as e:
            logger.debug(f"Evaluation failed for '{expression}': {e.message}")
            return EvaluationResult(
                success=False,
                error=e.message,
                error_code=e.code,
                expression=expression,
            )
        return EvaluationResult(success=True, value=value, expression=expression)

    def compute(self, expression: str) -> Any:
        """
        Evaluate and return the value.

        Raises:
            ExpressionSyntaxError, DivisionByZeroError,
            NonFiniteResultError, ExpressionTypeError
        """
        tree = parse(expression)
        try:
            value = self._eval(tree)
        except RecursionError:
            raise ExpressionSyntaxError("Expression is too complex", source="evaluator") from None
        if isinstance(value, (int, float)):
            value = _check_finite(float(value))
        return value

    def validate(self, expression: str) -> List[str]:
        """Syntax errors only; the expression is not evaluated."""
        try:
            parse(expression)
        except ExpressionSyntaxError as e:
            return [e.message]
        return []

    @staticmethod
    def functions() -> List[str]:
        return sorted(FUNCTIONS)

    def _eval(self, node: tuple) -> Any:
        kind = node[0]

        if kind == "num" or kind == "str":
            return node[1]

        if kind == "neg":
            return -_number(self._eval(node[1]), "unary '-'")

        if kind == "pos":
            return _number(self._eval(node[1]), "unary '+'")

        if kind == "chain":
            value = self._eval(node[1])
            for op, operand in node[2]:
                value = self._binary(op, value, self._eval(operand))
            return value

        if kind == "call":
            args = [self._eval(arg) for arg in node[2]]
            return _check_finite(FUNCTIONS[node[1]](*args))

        raise ExpressionSyntaxError(f"Unknown node '{kind}'", source="evaluator")

    @staticmethod
    def _binary(op: str, left: Any, right: Any) -> Any:
        if op == "+":
            if isinstance(left, str) or isinstance(right, str):
                return to_text(left) + to_text(right)
            return _check_finite(left + right)
        left = _number(left, f"'{op}'")
        right = _number(right, f"'{op}'")
        if op == "-":
            return _check_finite(left - right)
        if op == "*":
            return _check_finite(left * right)
        if right == 0:
            raise DivisionByZeroError("Division by zero", source="evaluator")
        return _check_finite(left / right)
