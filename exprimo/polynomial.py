"""
Canonical polynomials in one main variable.

A Polynomial maps non-negative integer exponents to coefficient
expressions that do not contain the main variable. Coefficients are kept
in the expanded canonical form (EXPANDING_RULES), and zero coefficients are
dropped, so two polynomials with the same value compare equal:

    p = to_polynomial("x", E("(* (+ x a) (+ x a))"))
    p.coefficient(2)   # => 1
    p.coefficient(1)   # => (* 2 a)
    p.coefficient(0)   # => (** a 2)
"""

from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .errors import NonPolynomialForm
from .expression import (
    ExprType, compound, constant, evaluate, free_in, is_zero, substitute,
)
from .properties import Op
from .rules import DEFAULT_RULES, EXPANDING_RULES
from .simplify import simplify


def _canonical(expr: ExprType) -> ExprType:
    return simplify(expr, rules=EXPANDING_RULES)


class Polynomial:
    """
    Immutable polynomial in a main variable.

    Supports +, -, *, ** (non-negative integer) with other polynomials in
    the same variable or with coefficient expressions.
    """

    __slots__ = ("var", "_terms", "_hash")

    def __init__(self, var: str, terms: Optional[Mapping[int, ExprType]] = None):
        cleaned: Dict[int, ExprType] = {}
        for exponent, coefficient in (terms or {}).items():
            if not isinstance(exponent, int) or exponent < 0:
                raise ValueError(f"Exponent must be a non-negative integer: {exponent!r}")
            if free_in(var, coefficient):
                raise ValueError(f"Coefficient contains the main variable {var}")
            coefficient = _canonical(coefficient)
            if not is_zero(coefficient):
                cleaned[exponent] = coefficient
        self.var = var
        self._terms = cleaned or {0: 0}
        self._hash = None

    @classmethod
    def scalar(cls, var: str, value: ExprType) -> 'Polynomial':
        return cls(var, {0: value})

    @classmethod
    def monomial(cls, var: str, exponent: int = 1, coefficient: ExprType = 1) -> 'Polynomial':
        return cls(var, {exponent: coefficient})

    # ============================================================
    # Inspection
    # ============================================================

    @property
    def terms(self) -> Tuple[Tuple[int, ExprType], ...]:
        """(exponent, coefficient) pairs, highest exponent first."""
        return tuple(sorted(self._terms.items(), reverse=True))

    def degree(self) -> int:
        """Highest exponent; the zero polynomial has degree 0."""
        return max(self._terms)

    def coefficient(self, exponent: int) -> ExprType:
        return self._terms.get(exponent, 0)

    def leading(self) -> ExprType:
        """Coefficient of the highest power."""
        return self._terms[self.degree()]

    def is_zero(self) -> bool:
        return self._terms == {0: 0}

    def is_constant(self) -> bool:
        return self.degree() == 0

    def exponents(self) -> Iterator[int]:
        return iter(sorted(self._terms))

    # ============================================================
    # Arithmetic
    # ============================================================

    def _coerce(self, other: Any) -> 'Polynomial':
        if isinstance(other, Polynomial):
            if other.var != self.var:
                raise ValueError(f"Polynomials in different variables: {self.var}, {other.var}")
            return other
        return Polynomial.scalar(self.var, other)

    def __add__(self, other: Any) -> 'Polynomial':
        other = self._coerce(other)
        terms = dict(self._terms)
        for exponent, coefficient in other._terms.items():
            if exponent in terms:
                terms[exponent] = (Op.ADD, terms[exponent], coefficient)
            else:
                terms[exponent] = coefficient
        return Polynomial(self.var, terms)

    __radd__ = __add__

    def __neg__(self) -> 'Polynomial':
        return Polynomial(self.var, {e: (Op.MUL, -1, c) for e, c in self._terms.items()})

    def __sub__(self, other: Any) -> 'Polynomial':
        return self + (-self._coerce(other))

    def __rsub__(self, other: Any) -> 'Polynomial':
        return self._coerce(other) - self

    def __mul__(self, other: Any) -> 'Polynomial':
        other = self._coerce(other)
        # Discrete convolution of the exponent maps
        products: Dict[int, list] = {}
        for e1, c1 in self._terms.items():
            for e2, c2 in other._terms.items():
                products.setdefault(e1 + e2, []).append((Op.MUL, c1, c2))
        return Polynomial(self.var, {e: (Op.ADD,) + tuple(cs) for e, cs in products.items()})

    __rmul__ = __mul__

    def __pow__(self, n: int) -> 'Polynomial':
        if not isinstance(n, int) or n < 0:
            raise ValueError(f"Polynomial power must be a non-negative integer: {n!r}")
        result = Polynomial.scalar(self.var, 1)
        base = self
        while n:
            if n & 1:
                result = result * base
            base = base * base
            n >>= 1
        return result

    def divmod(self, divisor: 'Polynomial') -> Tuple['Polynomial', 'Polynomial']:
        """
        Polynomial long division.

        The divisor's leading coefficient must be a non-zero constant.

        Returns:
            (quotient, remainder) with self == quotient * divisor + remainder
        """
        divisor = self._coerce(divisor)
        lead = divisor.leading()
        if divisor.is_zero() or not constant(lead):
            raise ValueError("Divisor must have a non-zero constant leading coefficient")

        quotient = Polynomial.scalar(self.var, 0)
        remainder = self
        d = divisor.degree()
        while not remainder.is_zero() and remainder.degree() >= d:
            shift = remainder.degree() - d
            factor = Polynomial.monomial(
                self.var, shift, (Op.MUL, remainder.leading(), (Op.POW, lead, -1)))
            quotient = quotient + factor
            remainder = remainder - factor * divisor
        return quotient, remainder

    def derivative(self) -> 'Polynomial':
        return Polynomial(self.var, {e - 1: (Op.MUL, e, c) for e, c in self._terms.items() if e > 0})

    # ============================================================
    # Conversion
    # ============================================================

    def to_expression(self, rules=None) -> ExprType:
        """Sum of coefficient * var ** exponent, simplified."""
        parts = tuple((Op.MUL, c, (Op.POW, self.var, e)) for e, c in self.terms)
        return simplify((Op.ADD,) + parts, rules=rules or DEFAULT_RULES)

    def evaluate(self, bindings: Mapping[str, Any]) -> Any:
        """Numeric value; bindings must cover the main variable and coefficient symbols."""
        x = evaluate(self.var, bindings)
        result = 0
        for exponent in range(self.degree(), -1, -1):
            result = result * x + evaluate(self.coefficient(exponent), bindings)
        return result

    def substitute(self, value: ExprType) -> ExprType:
        """Expression for the polynomial with the main variable replaced by value."""
        return simplify(substitute(self.to_expression(), {self.var: value}))

    # ============================================================
    # Protocol
    # ============================================================

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Polynomial):
            return NotImplemented
        return self.var == other.var and self._terms == other._terms

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash((self.var, frozenset(self._terms.items())))
        return self._hash

    def __repr__(self) -> str:
        return f"Polynomial({self.var!r}, {dict(self.terms)!r})"


def to_polynomial(var: str, expr: ExprType) -> Polynomial:
    """
    Convert an expression to a polynomial in var.

    Other symbols are opaque coefficients. Subexpressions free of var become
    constant polynomials whatever their operator.

    Raises:
        NonPolynomialForm: var occurs under an exponent that is not a
            non-negative integer, in a divisor, or under any other operator
    """
    if not free_in(var, expr):
        return Polynomial.scalar(var, expr)
    if expr == var:
        return Polynomial.monomial(var)
    if not compound(expr):
        raise NonPolynomialForm(f"Not a polynomial in {var}: {expr!r}")

    op, args = expr[0], expr[1:]
    if op is Op.ADD:
        result = Polynomial.scalar(var, 0)
        for arg in args:
            result = result + to_polynomial(var, arg)
        return result
    if op is Op.SUB:
        if len(args) == 1:
            return -to_polynomial(var, args[0])
        return to_polynomial(var, args[0]) - to_polynomial(var, args[1])
    if op is Op.MUL:
        result = Polynomial.scalar(var, 1)
        for arg in args:
            result = result * to_polynomial(var, arg)
        return result
    if op is Op.DIV and len(args) == 2 and not free_in(var, args[1]):
        return to_polynomial(var, args[0]) * (Op.POW, args[1], -1)
    if op is Op.POW:
        base, exponent = args
        if not free_in(var, exponent):
            n = simplify(exponent)
            if constant(n) and n == int(n) and n >= 0:
                return to_polynomial(var, base) ** int(n)
        raise NonPolynomialForm(
            f"Exponent of {var} is not a non-negative integer constant: {exponent!r}")

    raise NonPolynomialForm(f"Operator '{op.value}' applied to {var} is not polynomial")
