"""
Built-in rule sets.

Simplification runs these phases in order, repeating the round until
nothing changes:

    normalize      (- a b), (/ a b), (sqrt a) into +, *, **
    flatten        nested + * @ into one variadic node
    canonicalize   arguments of + and * sorted by sort_key
    fold           closed subtrees and the constant part of + and *
    identities     identity elements, annihilators, power laws,
                   function/inverse pairs, like terms, like bases

DEFAULT_RULES is that configuration. EXPANDING_RULES adds an expand phase
that multiplies products out over sums and expands small integer powers of
sums; it gives a canonical form for polynomial arithmetic and zero tests.
"""

from typing import Dict, List, Optional, Tuple

from .engine import RuleEngine, SequencedEngine
from .expression import ExprType, constant, is_op, sort_key
from .properties import OPERATORS, Op, is_exact
from .rewriter import try_constant_fold

# Largest integer power of a sum that the expand phase multiplies out.
MAX_EXPAND_POWER = 8


NORMALIZE_DSL = """
[normalize]
@neg "Negation as a product": (- ?x) => (* -1 :x)
@sub "Difference as a sum": (- ?x ?y) => (+ :x (* -1 :y))
@recip "Reciprocal as a power": (/ ?x) => (** :x -1)
@div "Quotient as a product": (/ ?x ?y) => (* :x (** :y -1))
@sqrt "Square root as a power": (sqrt ?x) => (** :x 1/2)
"""

FLATTEN_DSL = """
[flatten]
@flatten-add: (+ (+ ?ys...) ?xs...) => (+ :ys... :xs...)
@flatten-mul: (* (* ?ys...) ?xs...) => (* :ys... :xs...)
@flatten-matmul: (@ ?xs... (@ ?ys...) ?zs...) => (@ :xs... :ys... :zs...)
"""

FOLD_DSL = """
[fold]
@fold-add "Add constant arguments": (+ ?a:const ?b:const ?rest...) => (+ (! + :a :b) :rest...)
@fold-mul "Multiply constant arguments": (* ?a:const ?b:const ?rest...) => (* (! * :a :b) :rest...)
"""

IDENTITIES_DSL = """
[identities]
@add-empty: (+) => 0
@add-single: (+ ?x) => :x
@add-zero "Additive identity": (+ 0 ?xs...) => (+ :xs...)
@mul-empty: (*) => 1
@mul-single: (* ?x) => :x
@mul-one "Multiplicative identity": (* 1 ?xs...) => (* :xs...)
@mul-zero "Annihilator": (* 0 ?xs...) => 0

[powers]
@pow-zero: (** ?x 0) => 1
@pow-one: (** ?x 1) => :x
@one-pow: (** 1 ?x) => 1
@zero-pow: (** 0 ?x:const) => 0 when (! positive? :x)
@pow-pow "Nested powers": (** (** ?x ?a) ?b) => (** :x (* :a :b)) when (! integer? :b)
@abs-even-pow: (** (abs ?x) ?n:const) => (** :x :n) when (! even? :n)

[functions]
@exp-log "Inverse pair": (exp (log ?x)) => :x
@log-exp "Inverse pair": (log (exp ?x)) => :x
@log-e: (log e) => 1
@exp-one: (exp 1) => e
@mul-exp "Product of exponentials": (* (exp ?a) (exp ?b) ?rest...) => (* (exp (+ :a :b)) :rest...)
@sin-asin: (sin (asin ?x)) => :x
@cos-acos: (cos (acos ?x)) => :x
@tan-atan: (tan (atan ?x)) => :x
@abs-abs: (abs (abs ?x)) => (abs :x)
@sin-pi: (sin pi) => 0
@cos-pi: (cos pi) => -1
@pythagoras "sin^2 + cos^2 = 1": (+ (** (sin ?x) 2) (** (cos ?x) 2) ?rest...) => (+ 1 :rest...)
"""


# ============================================================
# Procedure Rules
# ============================================================

def sort_arguments(expr: ExprType) -> Optional[ExprType]:
    """Order the arguments of a commutative operator by sort_key."""
    args = sorted(expr[1:], key=sort_key)
    if list(expr[1:]) == args:
        return None
    return (expr[0],) + tuple(args)


def fold_closed(expr: ExprType) -> Optional[ExprType]:
    """Replace a node whose arguments are all constants by its value."""
    result = try_constant_fold(expr)
    return None if result is expr else result


def _split_coefficient(term: ExprType) -> Tuple[ExprType, ExprType]:
    """Split term into (numeric coefficient, remaining factor)."""
    if is_op(term, Op.MUL) and len(term) > 2 and constant(term[1]):
        rest = term[2:]
        return term[1], rest[0] if len(rest) == 1 else (Op.MUL,) + rest
    return 1, term


def _scale(coefficient, term: ExprType) -> ExprType:
    if coefficient == 1:
        return term
    if is_op(term, Op.MUL):
        return (Op.MUL, coefficient) + term[1:]
    return (Op.MUL, coefficient, term)


def collect_like_terms(expr: ExprType) -> Optional[ExprType]:
    """Combine terms that differ only in their numeric coefficient: 2x + 3x = 5x."""
    constants: List[ExprType] = []
    coefficients: Dict[ExprType, List] = {}
    for arg in expr[1:]:
        if constant(arg):
            constants.append(arg)
            continue
        coefficient, term = _split_coefficient(arg)
        coefficients.setdefault(term, []).append(coefficient)

    if all(len(cs) == 1 for cs in coefficients.values()):
        return None

    add = OPERATORS[Op.ADD].function
    args = list(constants)
    for term, cs in coefficients.items():
        total = add(cs)
        if total != 0:
            args.append(_scale(total, term))
    return (Op.ADD,) + tuple(args)


def collect_like_bases(expr: ExprType) -> Optional[ExprType]:
    """Combine factors with a common base by adding exponents: x * x**2 = x**3."""
    constants: List[ExprType] = []
    exponents: Dict[ExprType, List[ExprType]] = {}
    for arg in expr[1:]:
        if constant(arg):
            constants.append(arg)
            continue
        base, exponent = (arg[1], arg[2]) if is_op(arg, Op.POW) else (arg, 1)
        exponents.setdefault(base, []).append(exponent)

    if all(len(es) == 1 for es in exponents.values()):
        return None

    args = list(constants)
    for base, es in exponents.items():
        if len(es) == 1:
            args.append(base if es[0] == 1 else (Op.POW, base, es[0]))
        else:
            args.append((Op.POW, base, (Op.ADD,) + tuple(es)))
    return (Op.MUL,) + tuple(args)


def _integer_constant(x: ExprType) -> bool:
    if not constant(x):
        return False
    return x.is_integer() if isinstance(x, float) else x == int(x)


def distribute_power(expr: ExprType) -> Optional[ExprType]:
    """Raise each factor of a product to an integer power: (x y)**2 = x**2 y**2."""
    base, exponent = expr[1], expr[2]
    if not is_op(base, Op.MUL) or not _integer_constant(exponent):
        return None
    return (Op.MUL,) + tuple((Op.POW, factor, exponent) for factor in base[1:])


def distribute_constant(expr: ExprType) -> Optional[ExprType]:
    """Multiply a numeric coefficient into the first sum factor: 2a(x + 1) = a(2x + 2)."""
    if len(expr) < 3 or not constant(expr[1]):
        return None
    c = expr[1]
    for i, arg in enumerate(expr[2:], 2):
        if is_op(arg, Op.ADD):
            spread = (Op.ADD,) + tuple((Op.MUL, c, term) for term in arg[1:])
            rest = expr[2:i] + (spread,) + expr[i + 1:]
            return rest[0] if len(rest) == 1 else (Op.MUL,) + rest
    return None


def distribute(expr: ExprType) -> Optional[ExprType]:
    """Multiply a product out over its first sum argument."""
    for i, arg in enumerate(expr[1:], 1):
        if is_op(arg, Op.ADD):
            others = expr[1:i] + expr[i + 1:]
            return (Op.ADD,) + tuple((Op.MUL,) + others + (term,) for term in arg[1:])
    return None


def expand_power(expr: ExprType) -> Optional[ExprType]:
    """Write a small positive integer power of a sum as a repeated product."""
    base, exponent = expr[1], expr[2]
    if not is_op(base, Op.ADD) or not is_exact(exponent) or not _integer_constant(exponent):
        return None
    n = int(exponent)
    if n < 2 or n > MAX_EXPAND_POWER:
        return None
    return (Op.MUL,) + (base,) * n


# ============================================================
# Rule Sets
# ============================================================

_FOLDABLE = tuple(op for op, info in OPERATORS.items() if info.function is not None)


def _normalize() -> RuleEngine:
    return RuleEngine.from_dsl(NORMALIZE_DSL)


def _flatten() -> RuleEngine:
    return RuleEngine.from_dsl(FLATTEN_DSL)


def _canonicalize() -> RuleEngine:
    return RuleEngine().add_procedure(
        sort_arguments, name="sort-arguments",
        description="Canonical argument order", ops=(Op.ADD, Op.MUL))


def _fold() -> RuleEngine:
    engine = RuleEngine.from_dsl(FOLD_DSL)
    engine.add_procedure(fold_closed, name="fold-closed",
                         description="Evaluate closed subtrees", ops=_FOLDABLE, priority=10)
    return engine


def _identities() -> RuleEngine:
    engine = RuleEngine.from_dsl(IDENTITIES_DSL)
    engine.add_procedure(collect_like_terms, name="like-terms",
                         description="Coefficient summation", ops=(Op.ADD,))
    engine.add_procedure(collect_like_bases, name="like-bases",
                         description="Exponent summation", ops=(Op.MUL,))
    engine.add_procedure(distribute_power, name="distribute-power", ops=(Op.POW,))
    engine.add_procedure(distribute_constant, name="distribute-constant", ops=(Op.MUL,))
    return engine


def _expand() -> RuleEngine:
    engine = RuleEngine()
    engine.add_procedure(distribute, name="distribute",
                         description="Products over sums", ops=(Op.MUL,))
    engine.add_procedure(expand_power, name="expand-power",
                         description="Integer powers of sums", ops=(Op.POW,))
    return engine


NORMALIZE = _normalize()
FLATTEN = _flatten()
CANONICALIZE = _canonicalize()
FOLD = _fold()
IDENTITIES = _identities()
EXPAND = _expand()

DEFAULT_RULES = SequencedEngine([NORMALIZE, FLATTEN, CANONICALIZE, FOLD, IDENTITIES])
EXPANDING_RULES = SequencedEngine([NORMALIZE, FLATTEN, CANONICALIZE, FOLD, IDENTITIES, EXPAND])
