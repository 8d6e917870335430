"""
Expression model for exprimo.

Expressions are plain immutable Python values:

    42, Fraction(1, 2), 2.5         - constants
    "x"                             - symbols
    (Op.ADD, "x", (Op.MUL, 2, "y")) - compounds: operator tag + children

Tuples make expressions hashable and value-equal, so structurally equal
trees compare equal and can be shared freely between results.

The `let` form binds local names for the optimizing compiler:

    (Op.LET, (Op.EQ, "local0", (Op.ADD, "a", "b")), body)

Names bound by a `let` are bound-in-scope; every other symbol is free.
"""

from fractions import Fraction
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .errors import DomainError, UnboundSymbol
from .properties import (
    NAMED_CONSTANTS, OPERATORS, Op, as_operator, is_number, normalize_number,
)

# Type aliases
ExprType = Union[int, float, Fraction, str, Tuple]
BindingsType = Mapping[Any, Any]

_OP_ORDER: Dict[Op, int] = {op: i for i, op in enumerate(Op)}
_MISSING = object()


# ============================================================
# Predicates
# ============================================================

def constant(exp: ExprType) -> bool:
    """Check if an expression is a numeric constant."""
    return is_number(exp)


def variable(exp: ExprType) -> bool:
    """Check if an expression is a symbol."""
    return isinstance(exp, str)


def compound(exp: ExprType) -> bool:
    """Check if an expression is an operator applied to children."""
    return isinstance(exp, tuple) and len(exp) > 0 and isinstance(exp[0], Op)


def atom(exp: ExprType) -> bool:
    """Check if an expression is atomic (constant or symbol)."""
    return constant(exp) or variable(exp)


def is_op(exp: ExprType, op: Op) -> bool:
    """Check if an expression is a compound headed by op."""
    return compound(exp) and exp[0] is op


def is_zero(exp: ExprType) -> bool:
    return constant(exp) and exp == 0


def make(op: Op, *args: ExprType) -> Tuple:
    """Build a compound expression."""
    return (op,) + args


def let_bindings(exp: Tuple) -> List[Tuple[str, ExprType]]:
    """Return the (name, definition) pairs of a let expression."""
    return [(binding[1], binding[2]) for binding in exp[1:-1]]


def to_expression(obj: Any) -> ExprType:
    """
    Normalize a value into an expression.

    Accepts nested lists or tuples whose first element is an operator tag
    (an Op or its string form), numbers and symbol strings.

    Examples:
        to_expression(["+", "x", 1])   -> (Op.ADD, "x", 1)
        to_expression(Fraction(4, 2))  -> 2
    """
    if isinstance(obj, bool):
        raise TypeError("booleans are not expressions")
    if is_number(obj):
        return normalize_number(obj)
    if isinstance(obj, str):
        return obj
    if isinstance(obj, (list, tuple)):
        if not obj:
            raise ValueError("empty compound expression")
        op = as_operator(obj[0])
        if op is None:
            raise ValueError(f"Unknown operator: {obj[0]!r}")
        return (op,) + tuple(to_expression(a) for a in obj[1:])
    raise TypeError(f"Cannot convert {type(obj).__name__} to an expression")


# ============================================================
# Traversal
# ============================================================

def subexpressions(exp: ExprType) -> Iterator[ExprType]:
    """Yield exp and all of its subexpressions, parents before children."""
    yield exp
    if compound(exp):
        for child in exp[1:]:
            yield from subexpressions(child)


def free_in(var: str, expr: ExprType) -> bool:
    """
    Check if a variable appears free in an expression.

    Args:
        var: Variable name to check for
        expr: Expression to search in

    Returns:
        True if var appears in expr outside the scope of a let binding it
    """
    if isinstance(expr, str):
        return expr == var
    if not compound(expr):
        return False
    if expr[0] is Op.LET:
        for name, definition in let_bindings(expr):
            if free_in(var, definition):
                return True
            if name == var:
                return False
        return free_in(var, expr[-1])
    return any(free_in(var, sub) for sub in expr[1:])


def free_symbols(expr: ExprType) -> Set[str]:
    """Return the names of all free symbols of an expression."""
    if isinstance(expr, str):
        return {expr}
    if not compound(expr):
        return set()
    if expr[0] is Op.LET:
        result: Set[str] = set()
        bound: Set[str] = set()
        for name, definition in let_bindings(expr):
            result |= free_symbols(definition) - bound
            bound.add(name)
        return result | (free_symbols(expr[-1]) - bound)
    result = set()
    for sub in expr[1:]:
        result |= free_symbols(sub)
    return result


def occurrences(var: str, expr: ExprType) -> int:
    """Count the occurrences of a symbol in an expression."""
    if isinstance(expr, str):
        return 1 if expr == var else 0
    if compound(expr):
        return sum(occurrences(var, sub) for sub in expr[1:])
    return 0


def fresh_symbol(base: str, taken) -> str:
    """Return base, or base followed by the smallest counter not in taken."""
    if base not in taken:
        return base
    k = 0
    while f"{base}{k}" in taken:
        k += 1
    return f"{base}{k}"


def node_count(expr: ExprType) -> int:
    """Number of atoms in the flattened expression, operator tags included."""
    if compound(expr):
        return 1 + sum(node_count(sub) for sub in expr[1:])
    return 1


def sort_key(expr: ExprType) -> Tuple:
    """
    Total order over expressions.

    Constants come first (by value), then symbols (alphabetically), then
    compounds (by operator, then children).
    """
    if constant(expr):
        return (0, expr, 0 if isinstance(expr, (int, Fraction)) else 1)
    if variable(expr):
        return (1, expr)
    if compound(expr):
        return (2, _OP_ORDER[expr[0]], tuple(sort_key(a) for a in expr[1:]))
    return (3, repr(expr))


# ============================================================
# Substitution
# ============================================================

def substitute(expr: ExprType, bindings: BindingsType) -> ExprType:
    """
    Replace every occurrence of a key of bindings by its value.

    Keys are usually symbol names but may be any subexpression. Symbols
    bound by an enclosing let are not replaced inside its scope. Always
    succeeds; returns expr unchanged if no key occurs.
    """
    if not bindings:
        return expr

    def loop(e: ExprType, shadowed: frozenset) -> ExprType:
        if not (isinstance(e, str) and e in shadowed):
            replacement = bindings.get(e, _MISSING)
            if replacement is not _MISSING:
                return replacement
        if not compound(e):
            return e
        if e[0] is Op.LET:
            parts = []
            for name, definition in let_bindings(e):
                parts.append((Op.EQ, name, loop(definition, shadowed)))
                shadowed = shadowed | {name}
            return (Op.LET,) + tuple(parts) + (loop(e[-1], shadowed),)
        if e[0] is Op.MATRIX:
            return e
        return (e[0],) + tuple(loop(sub, shadowed) for sub in e[1:])

    return loop(expr, frozenset())


# ============================================================
# Evaluation
# ============================================================

def evaluate(expr: ExprType, bindings: Optional[BindingsType] = None) -> Any:
    """
    Numerically evaluate an expression.

    Args:
        expr: Expression to evaluate
        bindings: Mapping from symbol names to values

    Returns:
        The value; exact (int or Fraction) when every input is exact

    Raises:
        UnboundSymbol: a free symbol has no binding and is not a named constant
        DomainError: an operator is undefined at its arguments
    """
    env = bindings if bindings is not None else {}

    if constant(expr):
        return expr

    if variable(expr):
        value = env.get(expr, _MISSING)
        if value is not _MISSING:
            return value
        if expr in NAMED_CONSTANTS:
            return NAMED_CONSTANTS[expr]
        raise UnboundSymbol(expr)

    if not compound(expr):
        raise TypeError(f"Not an expression: {expr!r}")

    op = expr[0]
    if op is Op.MATRIX:
        _, name, rows, cols = expr
        value = env.get(name, _MISSING)
        if value is _MISSING:
            raise UnboundSymbol(name)
        shape = getattr(value, "shape", None)
        if shape is not None and tuple(shape) != (rows, cols):
            raise DomainError(f"matrix {name} has shape {tuple(shape)}, expected ({rows}, {cols})")
        return value

    if op is Op.LET:
        scope = dict(env)
        for name, definition in let_bindings(expr):
            scope[name] = evaluate(definition, scope)
        return evaluate(expr[-1], scope)

    info = OPERATORS[op]
    values = [evaluate(sub, env) for sub in expr[1:]]
    result = info.function(values)
    if result is None:
        raise DomainError(f"'{op.value}' does not take {len(values)} argument(s)")
    return result
