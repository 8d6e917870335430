"""
Equation solving.

Equations are (= lhs rhs) expressions; anything else is read as expr = 0.
Internally an equation is normalized to simplify(lhs - rhs) and compared
to zero.

solve() dispatches on the shape of the normalized equation:

    single occurrence      rearrange: apply inverses outward from the variable
    polynomial, degree<=2  closed-form roots
    polynomial, degree>2   factoring: zero roots, rational roots, u = v**k
    otherwise              injective functions on both sides, then
                           substitution of a repeated subterm

Every candidate root is substituted back and checked, structurally first
and then numerically at fixed sample points. solve_system() eliminates one
variable at a time, fanning out over multi-valued roots.
"""

import logging
import math
from fractions import Fraction
from functools import reduce
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .engine import E
from .errors import (
    EvaluationError, Inconsistent, MultipleOccurrences, NonPolynomialForm,
    NoStrategy, SolveError, Underdetermined, Unsolvable,
)
from .expression import (
    ExprType, compound, constant, evaluate, free_in, free_symbols, fresh_symbol, is_op,
    is_zero, node_count, occurrences, sort_key, subexpressions, substitute,
    to_expression,
)
from .polynomial import Polynomial, to_polynomial
from .properties import NAMED_CONSTANTS, Op, is_exact
from .rewriter import Bindings, match
from .rules import EXPANDING_RULES
from .simplify import RulesType, simplify

logger = logging.getLogger(__name__)

# Sample values assigned to free symbols when checking a residual numerically.
SAMPLE_POINTS = (0.3, 0.7, 1.3)
TOLERANCE = 1e-9

# Rational-root candidates are skipped when the leading or constant
# coefficient is larger than this.
MAX_ROOT_COEFFICIENT = 10 ** 12

# f(a) = f(b) implies a = b
_INJECTIVE_PATTERNS = [
    (op, E(f"(+ ({op.value} ?a) (* -1 ({op.value} ?b)))"))
    for op in (Op.EXP, Op.LOG, Op.ATAN)
]


# ============================================================
# Normalization and Verification
# ============================================================

def _normalize(equation: ExprType, rules: Optional[RulesType] = None) -> ExprType:
    """Reduce an equation to a single expression compared to zero."""
    equation = to_expression(equation)
    if is_op(equation, Op.EQ):
        lhs, rhs = equation[1], equation[2]
        return simplify((Op.ADD, lhs, (Op.MUL, -1, rhs)), rules=rules)
    return simplify(equation, rules=rules)


def _is_zero_value(value) -> bool:
    try:
        return abs(value) <= TOLERANCE
    except TypeError:
        return False


def _residual_vanishes(residual: ExprType) -> bool:
    """
    Decide whether a residual expression is zero.

    Structural zero passes, an exact non-zero constant fails. Otherwise the
    residual is evaluated at the sample points; any sample that evaluates to
    a non-zero value rejects it.
    """
    residual = simplify(residual, rules=EXPANDING_RULES)
    if is_zero(residual):
        return True
    if constant(residual):
        return not is_exact(residual) and _is_zero_value(residual)

    symbols = sorted(free_symbols(residual) - set(NAMED_CONSTANTS))
    evaluated = 0
    for i in range(len(SAMPLE_POINTS)):
        env = {s: SAMPLE_POINTS[(i + j) % len(SAMPLE_POINTS)] for j, s in enumerate(symbols)}
        try:
            value = evaluate(residual, env)
        except EvaluationError:
            continue
        evaluated += 1
        if not _is_zero_value(value):
            return False
        if not symbols:
            break

    if evaluated == 0:
        # Undefined at every sample: only trust it when it has parameters
        return bool(symbols)
    return True


def _verify(var: str, candidate: ExprType, normalized: ExprType) -> bool:
    return _residual_vanishes(substitute(normalized, {var: candidate}))


# ============================================================
# Rearrangement
# ============================================================

def _even_integer(x: ExprType) -> bool:
    return isinstance(x, int) and x != 0 and x % 2 == 0


def _negative_value(x: ExprType) -> bool:
    """True when x is closed and evaluates below zero."""
    if constant(x):
        return x < 0
    if free_symbols(x) - set(NAMED_CONSTANTS):
        return False
    try:
        return evaluate(x) < 0
    except (EvaluationError, TypeError):
        return False


def _inverse(op: Op, args: Tuple, index: int, rhs: ExprType) -> List[ExprType]:
    """Values of args[index] that make op(*args) equal rhs."""
    others = args[:index] + args[index + 1:]

    if op is Op.ADD:
        return [(Op.ADD, rhs) + tuple((Op.MUL, -1, o) for o in others)]
    if op is Op.MUL:
        return [(Op.MUL, rhs) + tuple((Op.POW, o, -1) for o in others)]
    if op is Op.SUB:
        if len(args) == 1:
            return [(Op.MUL, -1, rhs)]
        if index == 0:
            return [(Op.ADD, rhs, args[1])]
        return [(Op.ADD, args[0], (Op.MUL, -1, rhs))]
    if op is Op.DIV:
        if len(args) == 1:
            return [(Op.POW, rhs, -1)]
        if index == 0:
            return [(Op.MUL, rhs, args[1])]
        return [(Op.MUL, args[0], (Op.POW, rhs, -1))]
    if op is Op.POW:
        base, exponent = args
        if index == 1:
            return [(Op.MUL, (Op.LOG, rhs), (Op.POW, (Op.LOG, base), -1))]
        if _even_integer(exponent):
            if _negative_value(rhs):
                return []
            root = (Op.POW, rhs, Fraction(1, exponent))
            return [root, (Op.MUL, -1, root)]
        return [(Op.POW, rhs, (Op.POW, exponent, -1))]
    if op is Op.SQRT:
        if _negative_value(rhs):
            return []
        return [(Op.POW, rhs, 2)]
    if op is Op.EXP:
        return [(Op.LOG, rhs)]
    if op is Op.LOG:
        return [(Op.EXP, rhs)]
    if op is Op.SIN:
        return [(Op.ASIN, rhs), (Op.ADD, "pi", (Op.MUL, -1, (Op.ASIN, rhs)))]
    if op is Op.COS:
        return [(Op.ACOS, rhs), (Op.MUL, -1, (Op.ACOS, rhs))]
    if op is Op.TAN:
        return [(Op.ATAN, rhs)]
    if op is Op.ASIN:
        return [(Op.SIN, rhs)]
    if op is Op.ACOS:
        return [(Op.COS, rhs)]
    if op is Op.ATAN:
        return [(Op.TAN, rhs)]
    if op is Op.ABS:
        if _negative_value(rhs):
            return []
        return [rhs, (Op.MUL, -1, rhs)]

    raise NoStrategy(f"No inverse for '{op.value}'")


def _isolate(var: str, expr: ExprType, rules: Optional[RulesType] = None) -> List[ExprType]:
    """Solve expr = 0 for the single occurrence of var; one value per branch."""
    rhs_values: List[ExprType] = [0]
    while expr != var:
        if not compound(expr):
            raise Unsolvable(f"{var} does not occur in {expr!r}")
        op, args = expr[0], expr[1:]
        index = next(i for i, a in enumerate(args) if free_in(var, a))
        rhs_values = [simplify(value, rules=rules)
                      for rhs in rhs_values for value in _inverse(op, args, index, rhs)]
        expr = args[index]

    results: List[ExprType] = []
    for value in rhs_values:
        if value not in results:
            results.append(value)
    return results


def rearrange(var: str, equation: ExprType, rules: Optional[RulesType] = None) -> Set[ExprType]:
    """
    Rearrange an equation to isolate a variable occurring exactly once.

    Args:
        var: Variable to isolate
        equation: (= lhs rhs) or an expression compared to zero

    Returns:
        Set of equations (= var rhs); more than one when an inverse is
        multi-valued (even powers, abs, sin, cos)

    Raises:
        MultipleOccurrences: var occurs more than once
        Unsolvable: var does not occur
        NoStrategy: var sits under an operator without an inverse

    Examples:
        rearrange("x", E("(= (* 2 x) y)"))     # => {(= x (* 1/2 y))}
        rearrange("x", E("(= (** x 2) 4)"))    # => {(= x 2), (= x -2)}
    """
    expr = _normalize(equation, rules)
    count = occurrences(var, expr)
    if count == 0:
        raise Unsolvable(f"{var} does not occur in the equation")
    if count > 1:
        raise MultipleOccurrences(f"{var} occurs {count} times")
    return {(Op.EQ, var, value) for value in _isolate(var, expr, rules)}


# ============================================================
# Polynomial Strategies
# ============================================================

def _closed_form(poly: Polynomial, rules: Optional[RulesType]) -> List[ExprType]:
    """Real roots of a polynomial of degree 1 or 2."""
    if poly.degree() == 1:
        a, b = poly.coefficient(1), poly.coefficient(0)
        return [simplify((Op.MUL, -1, b, (Op.POW, a, -1)), rules=rules)]

    a, b, c = poly.coefficient(2), poly.coefficient(1), poly.coefficient(0)
    discriminant = simplify((Op.ADD, (Op.POW, b, 2), (Op.MUL, -4, a, c)), rules=EXPANDING_RULES)
    if constant(discriminant) and discriminant < 0:
        logger.debug("Negative discriminant %s, no real roots", discriminant)
        return []

    denominator = (Op.POW, (Op.MUL, 2, a), -1)
    if is_zero(discriminant):
        return [simplify((Op.MUL, -1, b, denominator), rules=rules)]

    root = (Op.POW, discriminant, Fraction(1, 2))
    return [
        simplify((Op.MUL, (Op.ADD, (Op.MUL, -1, b), root), denominator), rules=rules),
        simplify((Op.MUL, (Op.ADD, (Op.MUL, -1, b), (Op.MUL, -1, root)), denominator), rules=rules),
    ]


def _divisors(n: int) -> List[int]:
    n = abs(n)
    small = [d for d in range(1, math.isqrt(n) + 1) if n % d == 0]
    return sorted(set(small + [n // d for d in small]))


def _rational_roots(poly: Polynomial) -> List[Fraction]:
    """Candidate roots p/q from the rational-root theorem, smallest first."""
    coefficients = [poly.coefficient(e) for e in range(poly.degree() + 1)]
    if not all(is_exact(c) for c in coefficients):
        return []
    scale = reduce(lambda a, b: a * b // math.gcd(a, b),
                   (Fraction(c).denominator for c in coefficients), 1)
    integers = [int(c * scale) for c in coefficients]
    if integers[0] == 0:
        return []
    if max(abs(integers[0]), abs(integers[-1])) > MAX_ROOT_COEFFICIENT:
        logger.debug("Coefficients too large for rational-root search")
        return []

    candidates = set()
    for p in _divisors(integers[0]):
        for q in _divisors(integers[-1]):
            candidates.add(Fraction(p, q))
            candidates.add(Fraction(-p, q))
    return sorted(candidates)


def _polynomial_roots(poly: Polynomial, rules: Optional[RulesType]) -> List[ExprType]:
    """Candidate roots of a non-zero polynomial."""
    var = poly.var
    degree = poly.degree()
    if degree == 0:
        return []
    if degree <= 2:
        return _closed_form(poly, rules)

    # Zero roots
    lowest = min(poly.exponents())
    if lowest > 0:
        logger.debug("Factoring out %s**%d", var, lowest)
        reduced = Polynomial(var, {e - lowest: c for e, c in poly.terms})
        return [0] + _polynomial_roots(reduced, rules)

    # Rational roots with synthetic division
    for candidate in _rational_roots(poly):
        if poly.evaluate({var: candidate}) == 0:
            root = candidate.numerator if candidate.denominator == 1 else candidate
            logger.debug("Rational root %s of degree %d polynomial", root, degree)
            quotient, _ = poly.divmod(Polynomial(var, {1: 1, 0: -candidate}))
            return [root] + _polynomial_roots(quotient, rules)

    # u = var ** k
    k = reduce(math.gcd, poly.exponents())
    if k > 1:
        coefficient_symbols = set()
        for _, c in poly.terms:
            coefficient_symbols |= free_symbols(c)
        u = fresh_symbol("u", coefficient_symbols | {var})
        logger.debug("Substituting %s = %s**%d", u, var, k)
        inner = Polynomial(u, {e // k: c for e, c in poly.terms})
        roots: List[ExprType] = []
        for value in _polynomial_roots(inner, rules):
            if k % 2 == 0 and _negative_value(value):
                continue
            root = simplify((Op.POW, value, Fraction(1, k)), rules=rules)
            roots.append(root)
            if k % 2 == 0:
                roots.append(simplify((Op.MUL, -1, root), rules=rules))
        return roots

    raise NoStrategy(f"Cannot factor degree {degree} polynomial in {var}")


# ============================================================
# Transcendental Strategies
# ============================================================

def _transcendental(var: str, expr: ExprType, rules: Optional[RulesType]) -> List[ExprType]:
    for op, pattern in _INJECTIVE_PATTERNS:
        bindings = match(pattern, expr)
        if bindings:
            logger.debug("Injective '%s' on both sides", op.value)
            return list(solve(var, (Op.EQ, bindings["a"], bindings["b"]), rules=rules))

    subterms = sorted(
        {s for s in subexpressions(expr)
         if compound(s) and s != expr and s != var and free_in(var, s)},
        key=lambda s: (node_count(s), sort_key(s)))
    u = fresh_symbol("u", free_symbols(expr))
    for subterm in subterms:
        replaced = substitute(expr, {subterm: u})
        # A single occurrence of u leaves subterm = value as hard as expr
        if free_in(var, replaced) or occurrences(u, replaced) < 2:
            continue
        logger.debug("Substituting %s = %r", u, subterm)
        roots: List[ExprType] = []
        for value in solve(u, replaced, rules=rules):
            if value == u:
                continue
            for root in solve(var, (Op.EQ, subterm, value), rules=rules):
                if root not in roots:
                    roots.append(root)
        return roots

    raise NoStrategy(f"No strategy for {var} in {expr!r}")


# ============================================================
# Solve
# ============================================================

def solve(var: str, equation: ExprType, rules: Optional[RulesType] = None) -> Set[ExprType]:
    """
    Solve an equation for one variable.

    Args:
        var: Variable to solve for
        equation: (= lhs rhs) or an expression compared to zero
        rules: Rule configuration used for simplification

    Returns:
        Set of verified solutions. {var} when the equation holds for every
        value, the empty set when it holds for none.

    Raises:
        NoStrategy: no strategy applies to the equation
        Unsolvable: candidates were found but none verified

    Examples:
        solve("x", E("(= 2 (* 4 x))"))           # => {1/2}
        solve("x", E("(+ (** x 2) (* -5 x) 6)"))  # => {2, 3}
    """
    expr = _normalize(equation, rules)

    if not free_in(var, expr):
        residual = simplify(expr, rules=EXPANDING_RULES)
        if is_zero(residual):
            return {var}
        if constant(residual):
            return set()
        raise Unsolvable(f"{var} does not occur in the equation")

    if occurrences(var, expr) == 1:
        logger.debug("Rearranging single occurrence of %s", var)
        candidates = _isolate(var, expr, rules)
    else:
        try:
            poly = to_polynomial(var, expr)
        except NonPolynomialForm:
            poly = None
        if poly is not None:
            logger.debug("Polynomial of degree %d in %s", poly.degree(), var)
            if poly.is_zero():
                return {var}
            if poly.is_constant():
                if constant(poly.coefficient(0)):
                    return set()
                raise Unsolvable(f"Equation does not depend on {var}")
            candidates = _polynomial_roots(poly, rules)
        else:
            candidates = _transcendental(var, expr, rules)

    solutions = {c for c in candidates if _verify(var, c, expr)}
    if candidates and not solutions:
        raise Unsolvable(f"No candidate solution for {var} verified")
    dropped = len(set(candidates)) - len(solutions)
    if dropped:
        logger.debug("Dropped %d unverified candidate(s) for %s", dropped, var)
    return solutions


# ============================================================
# Systems
# ============================================================

def _is_trivial(expr: ExprType) -> bool:
    return is_zero(expr) or is_zero(simplify(expr, rules=EXPANDING_RULES))


def _eliminate(unknowns: List[str], equations: List[ExprType],
               rules: Optional[RulesType]) -> List[List[Tuple[str, ExprType]]]:
    """
    Solve equations for unknowns by elimination.

    Returns one list of (variable, value) pairs per branch, in solve order.
    Values may mention variables solved later in the same branch.
    """
    remaining = []
    for eq in equations:
        eq = simplify(eq, rules=rules)
        if _is_trivial(eq):
            continue
        if constant(eq):
            raise Inconsistent(f"Equation reduces to {eq} = 0")
        if any(free_in(v, eq) for v in unknowns):
            remaining.append(eq)

    if not unknowns:
        return [[]]
    if len(remaining) < len(unknowns):
        raise Underdetermined(
            f"{len(remaining)} equation(s) for {len(unknowns)} unknown(s): {', '.join(unknowns)}")

    def unknown_count(i: int) -> Tuple[int, int, int]:
        eq = remaining[i]
        return (sum(1 for v in unknowns if free_in(v, eq)), node_count(eq), i)

    chosen = min(range(len(remaining)), key=unknown_count)
    eq = remaining[chosen]
    rest = remaining[:chosen] + remaining[chosen + 1:]

    present = [v for v in unknowns if free_in(v, eq)]
    order = [v for v in present if occurrences(v, eq) == 1] + \
            [v for v in present if occurrences(v, eq) != 1]

    error: Optional[SolveError] = None
    for var in order:
        try:
            roots = solve(var, eq, rules=rules)
        except SolveError as e:
            logger.debug("Could not solve %r for %s: %s", eq, var, e)
            error = e
            continue

        logger.debug("Eliminating %s with %d root(s)", var, len(roots))
        if roots == {var}:
            return _eliminate(unknowns, rest, rules)

        others = [v for v in unknowns if v != var]
        branches = []
        for root in sorted(roots, key=sort_key):
            substituted = [substitute(e, {var: root}) for e in rest]
            try:
                tails = _eliminate(others, substituted, rules)
            except (Inconsistent, Unsolvable) as e:
                logger.debug("Dropping branch %s = %r: %s", var, root, e)
                continue
            branches.extend([(var, root)] + tail for tail in tails)
        if not branches:
            raise Inconsistent(f"No branch for {var} is consistent")
        return branches

    raise error


def solve_system(variables: Sequence[str], equations: Iterable[ExprType],
                 rules: Optional[RulesType] = None) -> Set[Bindings]:
    """
    Solve a system of equations.

    Args:
        variables: Unknowns, in preferred elimination order
        equations: Equations (= lhs rhs) or expressions compared to zero
        rules: Rule configuration used for simplification

    Returns:
        Set of Bindings, one complete assignment of the unknowns per branch

    Raises:
        Inconsistent: equations contradict each other, or no branch satisfies
            every original equation
        Underdetermined: fewer independent equations than unknowns

    Examples:
        solve_system(["x", "y"], [E("(= (+ x y) 3)"), E("(= (- x y) 1)")])
        # => {Bindings({'x': 2, 'y': 1})}
    """
    unknowns = list(dict.fromkeys(variables))
    normalized = [_normalize(eq, rules) for eq in equations]
    for eq in normalized:
        if constant(eq) and not is_zero(eq):
            raise Inconsistent(f"Equation reduces to {eq} = 0")

    results: Set[Bindings] = set()
    for branch in _eliminate(unknowns, normalized, rules):
        values: Dict[str, ExprType] = {}
        for var, value in reversed(branch):
            values[var] = simplify(substitute(value, values), rules=rules)
        if all(_residual_vanishes(substitute(eq, values)) for eq in normalized):
            results.add(Bindings({v: values[v] for v in unknowns}))
        else:
            logger.debug("Branch %r failed verification", values)

    if not results:
        raise Inconsistent("No solution branch satisfies every equation")
    return results
