"""
Operator property table for exprimo.

Every operator that may head a compound expression is a member of the
closed enumeration Op. Each member has exactly one OperatorInfo entry in
OPERATORS holding its arity class, algebraic properties, numeric
evaluation function and derivative rule. The table is checked for
exhaustiveness when this module is imported.

Numbers follow an exact-first discipline: int and Fraction arithmetic stays
exact (1/2 is Fraction(1, 2), never 0.5) and only falls back to float when
a float is involved or an exact result does not exist (2 ** (1/2)).
"""

import math
from enum import Enum
from fractions import Fraction
from functools import reduce
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy

from .errors import DomainError

NumericType = Any  # int, Fraction, float (or numpy arrays for matrices)

# Evaluation handler: receives list of argument values, returns the result,
# or None when the operator cannot take that many arguments.
FoldHandler = Callable[[List[NumericType]], Optional[NumericType]]

# Derivative rule: receives the children and their derivatives.
DerivativeRule = Callable[[Tuple, Tuple], Any]


class Op(str, Enum):
    """Closed set of operator tags."""

    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    POW = "**"
    SQRT = "sqrt"
    EXP = "exp"
    LOG = "log"
    SIN = "sin"
    COS = "cos"
    TAN = "tan"
    ASIN = "asin"
    ACOS = "acos"
    ATAN = "atan"
    ABS = "abs"
    EQ = "="
    MATMUL = "@"
    MATRIX = "matrix"
    LET = "let"

    def __str__(self) -> str:
        return self.value


# Values used when a symbol with one of these names is left unbound.
NAMED_CONSTANTS: Dict[str, float] = {
    "pi": math.pi,
    "e": math.e,
}


# ============================================================
# Numbers
# ============================================================

def is_number(value: Any) -> bool:
    """Check if a value is a numeric constant (bool excluded)."""
    return isinstance(value, (int, float, Fraction)) and not isinstance(value, bool)


def is_exact(value: Any) -> bool:
    """Check if a value is an exact number (int or Fraction)."""
    return isinstance(value, (int, Fraction)) and not isinstance(value, bool)


def normalize_number(value: NumericType) -> NumericType:
    """Collapse a Fraction with unit denominator to int."""
    if isinstance(value, Fraction) and value.denominator == 1:
        return int(value.numerator)
    return value


def _check_real(value: NumericType) -> NumericType:
    if isinstance(value, complex):
        raise DomainError("result is not a real number")
    return value


def _int_root(n: int, q: int) -> Optional[int]:
    """Return the exact q-th root of a non-negative integer, or None."""
    if n < 2:
        return n
    try:
        guess = int(round(n ** (1.0 / q)))
    except OverflowError:
        return None
    for candidate in (guess - 1, guess, guess + 1):
        if candidate >= 0 and candidate ** q == n:
            return candidate
    return None


def _exact_power(base: Fraction, exponent: Fraction) -> NumericType:
    if base == 0:
        if exponent < 0:
            raise DomainError("zero raised to a negative power")
        return 1 if exponent == 0 else 0

    p, q = exponent.numerator, exponent.denominator
    if q == 1:
        return normalize_number(base ** p)

    sign = 1
    if base < 0:
        if q % 2 == 0:
            raise DomainError(f"even root of negative number {base}")
        base = -base
        sign = -1 if p % 2 else 1

    num = _int_root(base.numerator, q)
    den = _int_root(base.denominator, q)
    if num is not None and den is not None:
        return normalize_number(sign * Fraction(num, den) ** p)
    return sign * float(base) ** float(exponent)


def power(base: NumericType, exponent: NumericType) -> NumericType:
    """Raise base to exponent, exactly when both are exact and a result exists."""
    if is_exact(base) and is_exact(exponent):
        return _exact_power(Fraction(base), Fraction(exponent))
    try:
        result = base ** exponent
    except (ZeroDivisionError, OverflowError) as e:
        raise DomainError(str(e)) from e
    return _check_real(result)


def divide(a: NumericType, b: NumericType) -> NumericType:
    """Divide, keeping exact operands exact."""
    if b == 0:
        raise DomainError("division by zero")
    if is_exact(a) and is_exact(b):
        return normalize_number(Fraction(a) / Fraction(b))
    return a / b


# ============================================================
# Evaluation Function Builders
# ============================================================

def nary_fold(
    identity: NumericType,
    binary_op: Callable[[NumericType, NumericType], NumericType],
) -> FoldHandler:
    """Create an n-ary folder with identity element.

    Examples:
        nary_fold(0, lambda a, b: a + b)  # (+) = 0, (+ x) = x, (+ x y z) = x+y+z
        nary_fold(1, lambda a, b: a * b)  # (*) = 1, (* x) = x, (* x y z) = x*y*z
    """
    def handler(args: List[NumericType]) -> NumericType:
        if len(args) == 0:
            return identity
        return normalize_number(reduce(binary_op, args))
    return handler


def unary_only(f: Callable[[NumericType], NumericType]) -> FoldHandler:
    """Create a unary-only folder (e.g., sin, cos, exp).

    Domain failures of f (ValueError, OverflowError) surface as DomainError.
    """
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) != 1:
            return None
        try:
            return _check_real(f(args[0]))
        except (ValueError, OverflowError, ZeroDivisionError) as e:
            raise DomainError(f"{f.__name__}({args[0]}): {e}") from e
    return handler


def binary_only(f: Callable[[NumericType, NumericType], NumericType]) -> FoldHandler:
    """Create a binary-only folder (e.g., **, =)."""
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) != 2:
            return None
        return f(args[0], args[1])
    return handler


def special_minus() -> FoldHandler:
    """Special handler for subtraction: (- x) = -x, (- x y) = x-y."""
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) == 1:
            return -args[0]
        if len(args) == 2:
            return normalize_number(args[0] - args[1])
        return None
    return handler


def special_divide() -> FoldHandler:
    """Special handler for division: (/ x) = 1/x, (/ x y) = x/y."""
    def handler(args: List[NumericType]) -> Optional[NumericType]:
        if len(args) == 1:
            return divide(1, args[0])
        if len(args) == 2:
            return divide(args[0], args[1])
        return None
    return handler


def _matmul(a, b):
    try:
        return numpy.matmul(a, b)
    except ValueError as e:
        raise DomainError(f"matrix product: {e}") from e


# ============================================================
# Derivative Rules
# ============================================================

def _d_add(args: Tuple, dargs: Tuple):
    return (Op.ADD,) + tuple(dargs)


def _d_sub(args: Tuple, dargs: Tuple):
    return (Op.SUB,) + tuple(dargs)


def _d_mul(args: Tuple, dargs: Tuple):
    terms = []
    for i, d in enumerate(dargs):
        terms.append((Op.MUL,) + tuple(args[:i]) + (d,) + tuple(args[i + 1:]))
    return (Op.ADD,) + tuple(terms)


def _d_div(args: Tuple, dargs: Tuple):
    if len(args) == 1:
        (w,), (dw,) = args, dargs
        return (Op.SUB, (Op.DIV, dw, (Op.POW, w, 2)))
    u, w = args
    du, dw = dargs
    return (Op.DIV,
            (Op.SUB, (Op.MUL, du, w), (Op.MUL, u, dw)),
            (Op.POW, w, 2))


def _d_pow(args: Tuple, dargs: Tuple):
    u, w = args
    du, dw = dargs
    if dw == 0:
        return (Op.MUL, w, (Op.POW, u, (Op.SUB, w, 1)), du)
    return (Op.MUL,
            (Op.POW, u, w),
            (Op.ADD,
             (Op.MUL, dw, (Op.LOG, u)),
             (Op.MUL, w, du, (Op.POW, u, -1))))


def _d_eq(args: Tuple, dargs: Tuple):
    return (Op.EQ,) + tuple(dargs)


def chain_rule(outer: Callable[[Any], Any]) -> DerivativeRule:
    """Build a unary derivative rule f'(u) * du from f'."""
    def rule(args: Tuple, dargs: Tuple):
        return (Op.MUL, outer(args[0]), dargs[0])
    return rule


_HALF = Fraction(1, 2)


# ============================================================
# Property Table
# ============================================================

class OperatorInfo:
    """Metadata for one operator."""

    __slots__ = ("op", "arity", "commutative", "associative", "identity",
                 "has_inverse", "function", "derivative", "python")

    def __init__(self, op: Op, arity: Optional[Tuple[int, ...]] = None,
                 commutative: bool = False, associative: bool = False,
                 identity: Optional[NumericType] = None, has_inverse: bool = False,
                 function: Optional[FoldHandler] = None,
                 derivative: Optional[DerivativeRule] = None,
                 python: Optional[str] = None):
        self.op = op
        self.arity = arity  # None means variadic
        self.commutative = commutative
        self.associative = associative
        self.identity = identity
        self.has_inverse = has_inverse
        self.function = function
        self.derivative = derivative
        self.python = python  # infix operator used by code generation

    def accepts(self, count: int) -> bool:
        """Check if the operator takes count arguments."""
        return self.arity is None or count in self.arity

    def __repr__(self) -> str:
        flags = [name for name in ("commutative", "associative") if getattr(self, name)]
        return f"OperatorInfo({self.op.value}{', ' if flags else ''}{', '.join(flags)})"


OPERATORS: Dict[Op, OperatorInfo] = {
    info.op: info for info in [
        OperatorInfo(Op.ADD, commutative=True, associative=True, identity=0,
                     has_inverse=True, function=nary_fold(0, lambda a, b: a + b),
                     derivative=_d_add, python="+"),
        OperatorInfo(Op.MUL, commutative=True, associative=True, identity=1,
                     has_inverse=True, function=nary_fold(1, lambda a, b: a * b),
                     derivative=_d_mul, python="*"),
        OperatorInfo(Op.SUB, arity=(1, 2), function=special_minus(),
                     derivative=_d_sub, python="-"),
        OperatorInfo(Op.DIV, arity=(1, 2), function=special_divide(),
                     derivative=_d_div),
        OperatorInfo(Op.POW, arity=(2,), function=binary_only(power),
                     derivative=_d_pow),
        OperatorInfo(Op.SQRT, arity=(1,),
                     function=unary_only(lambda x: power(x, _HALF)),
                     derivative=chain_rule(
                         lambda u: (Op.MUL, _HALF, (Op.POW, u, -_HALF)))),
        OperatorInfo(Op.EXP, arity=(1,), function=unary_only(math.exp),
                     derivative=chain_rule(lambda u: (Op.EXP, u))),
        OperatorInfo(Op.LOG, arity=(1,), function=unary_only(math.log),
                     derivative=chain_rule(lambda u: (Op.POW, u, -1))),
        OperatorInfo(Op.SIN, arity=(1,), function=unary_only(math.sin),
                     derivative=chain_rule(lambda u: (Op.COS, u))),
        OperatorInfo(Op.COS, arity=(1,), function=unary_only(math.cos),
                     derivative=chain_rule(lambda u: (Op.MUL, -1, (Op.SIN, u)))),
        OperatorInfo(Op.TAN, arity=(1,), function=unary_only(math.tan),
                     derivative=chain_rule(
                         lambda u: (Op.ADD, 1, (Op.POW, (Op.TAN, u), 2)))),
        OperatorInfo(Op.ASIN, arity=(1,), function=unary_only(math.asin),
                     derivative=chain_rule(
                         lambda u: (Op.POW, (Op.SUB, 1, (Op.POW, u, 2)), -_HALF))),
        OperatorInfo(Op.ACOS, arity=(1,), function=unary_only(math.acos),
                     derivative=chain_rule(
                         lambda u: (Op.MUL, -1,
                                    (Op.POW, (Op.SUB, 1, (Op.POW, u, 2)), -_HALF)))),
        OperatorInfo(Op.ATAN, arity=(1,), function=unary_only(math.atan),
                     derivative=chain_rule(
                         lambda u: (Op.POW, (Op.ADD, 1, (Op.POW, u, 2)), -1))),
        OperatorInfo(Op.ABS, arity=(1,), function=unary_only(abs),
                     derivative=chain_rule(
                         lambda u: (Op.MUL, u, (Op.POW, (Op.ABS, u), -1)))),
        OperatorInfo(Op.EQ, arity=(2,), function=binary_only(lambda a, b: a == b),
                     derivative=_d_eq, python="=="),
        OperatorInfo(Op.MATMUL, associative=True,
                     function=lambda args: reduce(_matmul, args) if args else None,
                     python="@"),
        # Evaluated by the expression walker: they need the bindings.
        OperatorInfo(Op.MATRIX, arity=(3,)),
        OperatorInfo(Op.LET),
    ]
}

_missing = set(Op) - set(OPERATORS)
if _missing:
    raise RuntimeError(f"Operators without a property entry: {sorted(o.value for o in _missing)}")


def operator_info(op: Op) -> OperatorInfo:
    """Look up the property entry for an operator."""
    return OPERATORS[op]


def as_operator(token: Any) -> Optional[Op]:
    """Return the Op for an operator tag, or None if it is not one."""
    if isinstance(token, Op):
        return token
    if isinstance(token, str):
        try:
            return Op(token)
        except ValueError:
            return None
    return None


def is_commutative(op: Any) -> bool:
    return isinstance(op, Op) and OPERATORS[op].commutative


def is_associative(op: Any) -> bool:
    return isinstance(op, Op) and OPERATORS[op].associative
