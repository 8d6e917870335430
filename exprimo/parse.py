"""
Infix parser for exprimo.

Turns arithmetic text into an expression tree:

    parse_expression("1+2*3**4+5")
    # (Op.ADD, 1, (Op.MUL, 2, (Op.POW, 3, 4)), 5)

Precedence, loosest first:

    =                 equation (at most one)
    + -               left-associative; runs of + collapse into one node
    * / @             left-associative; runs of * (and of @) collapse
    unary -           -x ** 2 reads as -(x ** 2)
    **                right-associative

Function calls use the unary operator names (sqrt, exp, log, sin, cos, tan,
asin, acos, atan, abs); matrix(A, rows, cols) declares a matrix operand.
"""

import re
from fractions import Fraction
from typing import List, Optional, Tuple

from .errors import ParseError
from .expression import ExprType, is_op
from .properties import OPERATORS, Op, as_operator, is_number

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<num>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
  | (?P<id>[A-Za-z_][A-Za-z_0-9]*)
  | (?P<op>\*\*|[-+*/@=(),])
""", re.VERBOSE)

Token = Tuple[str, str, int]  # (kind, text, position)

_FUNCTIONS = {op.value: op for op, info in OPERATORS.items() if info.arity == (1,)}


def tokenize(text: str) -> List[Token]:
    """Split infix text into (kind, text, position) tokens."""
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise ParseError(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup
        if kind != 'ws':
            tokens.append((kind, m.group(), pos))
        pos = m.end()
    tokens.append(('end', '', len(text)))
    return tokens


def _number(text: str):
    if re.fullmatch(r'\d+', text):
        return int(text)
    return float(text)


def _collapse(op: Op, left: ExprType, right: ExprType) -> ExprType:
    """Join left and right under op, extending left when it is already an op node."""
    if is_op(left, op):
        return left + (right,)
    return (op, left, right)


class _Parser:
    """Recursive descent over a token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, text: str) -> Token:
        token = self.advance()
        if token[1] != text:
            raise self.error(token, f"expected {text!r}")
        return token

    def error(self, token: Token, message: str) -> ParseError:
        found = repr(token[1]) if token[0] != 'end' else "end of input"
        return ParseError(f"{message}, found {found} at position {token[2]} in {self.text!r}")

    def parse(self) -> ExprType:
        expr = self.equation()
        token = self.peek()
        if token[0] != 'end':
            raise self.error(token, "unexpected token")
        return expr

    def equation(self) -> ExprType:
        lhs = self.sum()
        if self.peek()[1] == '=':
            self.advance()
            return (Op.EQ, lhs, self.sum())
        return lhs

    def sum(self) -> ExprType:
        expr = self.product()
        while self.peek()[1] in ('+', '-'):
            op = self.advance()[1]
            right = self.product()
            if op == '+':
                expr = _collapse(Op.ADD, expr, right)
            else:
                expr = (Op.SUB, expr, right)
        return expr

    def product(self) -> ExprType:
        expr = self.unary()
        while self.peek()[1] in ('*', '/', '@'):
            op = self.advance()[1]
            right = self.unary()
            if op == '*':
                expr = _collapse(Op.MUL, expr, right)
            elif op == '@':
                expr = _collapse(Op.MATMUL, expr, right)
            else:
                expr = (Op.DIV, expr, right)
        return expr

    def unary(self) -> ExprType:
        if self.peek()[1] == '-':
            self.advance()
            operand = self.unary()
            if is_number(operand):
                return -operand
            return (Op.SUB, operand)
        if self.peek()[1] == '+':
            self.advance()
            return self.unary()
        return self.power()

    def power(self) -> ExprType:
        base = self.primary()
        if self.peek()[1] == '**':
            self.advance()
            # Right-associative; the exponent may carry its own sign
            return (Op.POW, base, self.unary())
        return base

    def primary(self) -> ExprType:
        token = self.advance()
        kind, text, _ = token
        if kind == 'num':
            return _number(text)
        if kind == 'id':
            if self.peek()[1] == '(':
                return self.call(token)
            return text
        if text == '(':
            expr = self.equation()
            self.expect(')')
            return expr
        raise self.error(token, "expected a number, name or '('")

    def call(self, name_token: Token) -> ExprType:
        name = name_token[1]
        self.expect('(')
        args = [self.equation()] if self.peek()[1] != ')' else []
        while self.peek()[1] == ',':
            self.advance()
            args.append(self.equation())
        self.expect(')')

        if name == Op.MATRIX.value:
            if len(args) != 3 or not isinstance(args[0], str) \
                    or not all(isinstance(a, int) for a in args[1:]):
                raise self.error(name_token, "matrix takes a name and two integer dimensions")
            return (Op.MATRIX,) + tuple(args)

        op = _FUNCTIONS.get(name)
        if op is None:
            known = as_operator(name)
            reason = "not callable" if known is not None else "unknown function"
            raise self.error(name_token, f"{reason} {name!r}")
        if len(args) != 1:
            raise self.error(name_token, f"{name} takes exactly one argument")
        return (op, args[0])


def parse_expression(text: str) -> ExprType:
    """
    Parse infix text into an expression.

    Raises:
        ParseError: the text is not a well-formed expression
    """
    if not isinstance(text, str):
        raise TypeError(f"Expected text, got {type(text).__name__}")
    return _Parser(text).parse()


def parse_rational(text: str) -> Optional[Fraction]:
    """Read "p/q" or an integer as an exact number; None for anything else."""
    m = re.fullmatch(r'\s*(-?\d+)\s*(?:/\s*(\d+)\s*)?', text)
    if m is None or m.group(2) == '0':
        return None
    return Fraction(int(m.group(1)), int(m.group(2) or 1))
