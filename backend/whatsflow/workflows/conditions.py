# /whatsflow/workflows/conditions.py

"""
Condition evaluation for condition nodes.

Expressions are parsed with a small closed grammar and interpreted over the
run's variable bag; nothing is ever handed to the host language's dynamic
evaluation.

    expression  := or
    or          := and ( "||" and )*
    and         := comparison ( "&&" comparison )*
    comparison  := unary ( ("==" | "!=" | "===" | "!==" | "<" | ">" | "<=" | ">=") unary )?
    unary       := "!" unary | primary
    primary     := NUMBER | STRING | "true" | "false" | "null" | IDENTIFIER | "(" expression ")"

Bare identifiers are looked up in the variable bag. `{{name}}` placeholders
are substituted before parsing, so both `age >= 18` and `{{age}} >= 18` work.

Any tokenize, parse or evaluation failure makes `evaluate` return False and
report the error through `on_error`; it never raises.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

from whatsflow.workflows.template import substitute

logger = logging.getLogger(__name__)


class ConditionError(ValueError):
    """An expression could not be parsed or evaluated."""


# ---------------- Tokens ---------------- #

@dataclass(frozen=True)
class Token:
    type: str  # NUMBER, STRING, NAME, OP, LPAREN, RPAREN, EOF
    value: Any
    pos: int


_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_][A-Za-z0-9_.]*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||<|>|!)
  | (?P<lparen>\()
  | (?P<rparen>\))
    """,
    re.VERBOSE,
)

_COMPARISON_OPS = {"==", "!=", "===", "!==", "<", ">", "<=", ">="}
_KEYWORDS = {"true": True, "false": False, "null": None}


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_PATTERN.match(expression, pos)
        if not match:
            raise ConditionError(f"Unexpected character {expression[pos]!r} at position {pos}")
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "number":
            tokens.append(Token("NUMBER", float(text) if "." in text else int(text), pos))
        elif kind == "string":
            tokens.append(Token("STRING", _unquote(text), pos))
        elif kind == "name":
            tokens.append(Token("NAME", text, pos))
        elif kind == "op":
            tokens.append(Token("OP", text, pos))
        elif kind == "lparen":
            tokens.append(Token("LPAREN", text, pos))
        elif kind == "rparen":
            tokens.append(Token("RPAREN", text, pos))
        pos = match.end()
    tokens.append(Token("EOF", None, pos))
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


# ---------------- Syntax tree ---------------- #

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BinaryOp:
    left: Any
    op: str
    right: Any


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def match_op(self, *ops: str) -> Optional[Token]:
        token = self.peek()
        if token.type == "OP" and token.value in ops:
            return self.advance()
        return None

    def parse(self):
        expr = self.parse_or()
        token = self.peek()
        if token.type != "EOF":
            raise ConditionError(f"Unexpected token {token.value!r} at position {token.pos}")
        return expr

    def parse_or(self):
        expr = self.parse_and()
        while self.match_op("||"):
            expr = BinaryOp(expr, "||", self.parse_and())
        return expr

    def parse_and(self):
        expr = self.parse_comparison()
        while self.match_op("&&"):
            expr = BinaryOp(expr, "&&", self.parse_comparison())
        return expr

    def parse_comparison(self):
        expr = self.parse_unary()
        op = self.match_op(*_COMPARISON_OPS)
        if op:
            expr = BinaryOp(expr, op.value, self.parse_unary())
            if self.peek().type == "OP" and self.peek().value in _COMPARISON_OPS:
                raise ConditionError(f"Chained comparison at position {self.peek().pos}")
        return expr

    def parse_unary(self):
        if self.match_op("!"):
            return Not(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self):
        token = self.advance()
        if token.type in ("NUMBER", "STRING"):
            return Literal(token.value)
        if token.type == "NAME":
            if token.value in _KEYWORDS:
                return Literal(_KEYWORDS[token.value])
            return Variable(token.value)
        if token.type == "LPAREN":
            expr = self.parse_or()
            closing = self.advance()
            if closing.type != "RPAREN":
                raise ConditionError(f"Expected ')' at position {closing.pos}")
            return expr
        if token.type == "EOF":
            raise ConditionError("Unexpected end of expression")
        raise ConditionError(f"Unexpected token {token.value!r} at position {token.pos}")


def parse(expression: str):
    return _Parser(tokenize(expression)).parse()


# ---------------- Interpreter ---------------- #

def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _loose_equals(left: Any, right: Any) -> bool:
    """Equality that tolerates values arriving as strings from inbound messages."""
    if left is None or right is None:
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        if isinstance(left, bool) and isinstance(right, bool):
            return left == right
        other, flag = (right, left) if isinstance(left, bool) else (left, right)
        if isinstance(other, str):
            return other.strip().lower() == ("true" if flag else "false")
        return False
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return str(left) == str(right)


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    return type(left) is type(right) and left == right


def _compare(left: Any, op: str, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        a, b = left_num, right_num
    elif isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        raise ConditionError(f"Cannot compare {left!r} {op} {right!r}")
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    return a >= b


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)


def _interpret(node, variables: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Variable):
        if node.name not in variables:
            raise ConditionError(f"Unknown variable '{node.name}'")
        return variables[node.name]
    if isinstance(node, Not):
        return not _truthy(_interpret(node.operand, variables))
    if isinstance(node, BinaryOp):
        if node.op == "&&":
            return _truthy(_interpret(node.left, variables)) and _truthy(_interpret(node.right, variables))
        if node.op == "||":
            return _truthy(_interpret(node.left, variables)) or _truthy(_interpret(node.right, variables))
        left = _interpret(node.left, variables)
        right = _interpret(node.right, variables)
        if node.op == "==":
            return _loose_equals(left, right)
        if node.op == "!=":
            return not _loose_equals(left, right)
        if node.op == "===":
            return _strict_equals(left, right)
        if node.op == "!==":
            return not _strict_equals(left, right)
        return _compare(left, node.op, right)
    raise ConditionError(f"Unsupported expression node {node!r}")


def evaluate(
    expression: str,
    variables: Mapping[str, Any],
    on_error: Optional[Callable[[Exception], None]] = None,
) -> bool:
    """
    Evaluates a condition against the variable bag.

    Returns False on any failure and passes the error to `on_error`
    (or logs it at WARNING when no callback is given).
    """
    try:
        processed = substitute(expression or "", variables)
        if not processed.strip():
            raise ConditionError("Empty condition")
        return _truthy(_interpret(parse(processed), variables))
    except Exception as e:
        if on_error is not None:
            on_error(e)
        else:
            logger.warning(f"condition_evaluation_failed for {expression!r}: {e}")
        return False
