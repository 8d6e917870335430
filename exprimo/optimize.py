"""
Optimizing compiler.

optimize() rewrites an expression into an equivalent, cheaper one:

    1. simplification, including constant folding of closed subtrees
    2. matrix-chain reordering: every (@ ...) chain of three or more operands
       with known shapes is re-parenthesized for the fewest scalar
       multiplications
    3. common-subexpression extraction into a let form:

           (let (= local0 (+ a b))
                (+ (sin local0) (cos local0)))

compile_expr() turns such an expression into a straight-line Python
function over a declared parameter list. Generated code calls the
operator table's evaluation functions, so a compiled procedure and
evaluate() agree on every input.
"""

import keyword
import logging
import math
from collections import Counter
from fractions import Fraction
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import CompileError, DomainError, UnboundParameter
from .expression import (
    ExprType, compound, constant, free_symbols, fresh_symbol, is_op,
    let_bindings, node_count, sort_key, substitute,
    to_expression,
)
from .properties import NAMED_CONSTANTS, OPERATORS, Op
from .simplify import RulesType, simplify

logger = logging.getLogger(__name__)

ShapeType = Tuple[int, int]

LOCAL_PREFIX = "local"


# ============================================================
# Matrix Chains
# ============================================================

def matrix_chain_order(dims: Sequence[int]) -> Tuple[int, List[List[int]]]:
    """
    Cheapest parenthesization of a matrix chain.

    Args:
        dims: n + 1 dimensions; matrix i has shape (dims[i], dims[i + 1])

    Returns:
        (cost, split) where cost is the minimal number of scalar
        multiplications and split[i][j] is the index k at which the
        product of matrices i..j is divided into (i..k)(k+1..j)
    """
    n = len(dims) - 1
    cost = [[0] * n for _ in range(n)]
    split = [[0] * n for _ in range(n)]
    for length in range(2, n + 1):
        for i in range(n - length + 1):
            j = i + length - 1
            best = None
            for k in range(i, j):
                c = cost[i][k] + cost[k + 1][j] + dims[i] * dims[k + 1] * dims[j + 1]
                if best is None or c < best:
                    best = c
                    split[i][j] = k
            cost[i][j] = best
    return (cost[0][n - 1] if n else 0), split


def _shape(expr: ExprType, shapes: Mapping[str, ShapeType]) -> Optional[ShapeType]:
    if is_op(expr, Op.MATRIX):
        return (expr[2], expr[3])
    if isinstance(expr, str) and expr in shapes:
        return tuple(shapes[expr])
    if is_op(expr, Op.MATMUL) and len(expr) > 1:
        dims = _chain_dims(expr[1:], shapes)
        if dims is not None:
            return (dims[0], dims[-1])
    return None


def _chain_dims(operands: Tuple, shapes: Mapping[str, ShapeType]) -> Optional[List[int]]:
    """Dimension list of a chain, or None if a shape is unknown or inconsistent."""
    dims: List[int] = []
    for operand in operands:
        shape = _shape(operand, shapes)
        if shape is None:
            return None
        if dims and dims[-1] != shape[0]:
            return None
        if not dims:
            dims.append(shape[0])
        dims.append(shape[1])
    return dims


def reorder_matrix_chains(expr: ExprType, shapes: Optional[Mapping[str, ShapeType]] = None) -> ExprType:
    """
    Re-parenthesize matrix product chains for the least multiplication cost.

    Operand shapes come from (matrix NAME ROWS COLS) tags or from shapes,
    which maps symbol names to (rows, cols). Chains with an operand of
    unknown shape are left alone.
    """
    shapes = shapes or {}
    if not compound(expr) or is_op(expr, Op.MATRIX):
        return expr

    expr = (expr[0],) + tuple(reorder_matrix_chains(a, shapes) for a in expr[1:])
    if not is_op(expr, Op.MATMUL) or len(expr) < 4:
        return expr

    operands = expr[1:]
    dims = _chain_dims(operands, shapes)
    if dims is None:
        return expr

    cost, split = matrix_chain_order(dims)
    logger.debug("Matrix chain of %d operands: cost %d", len(operands), cost)

    def build(i: int, j: int) -> ExprType:
        if i == j:
            return operands[i]
        k = split[i][j]
        return (Op.MATMUL, build(i, k), build(k + 1, j))

    return build(0, len(operands) - 1)


# ============================================================
# Common Subexpressions
# ============================================================

def _count_subtrees(expr: ExprType, counts: Counter, include_root: bool = True) -> None:
    if not compound(expr) or is_op(expr, Op.MATRIX):
        return
    if include_root:
        counts[expr] += 1
    for child in expr[1:]:
        _count_subtrees(child, counts)


def _dependency_order(definitions: List[Tuple[str, ExprType]]) -> List[Tuple[str, ExprType]]:
    """Order definitions so each one follows the definitions it references."""
    by_name = dict(definitions)
    ordered: List[Tuple[str, ExprType]] = []
    done = set()

    def visit(name: str) -> None:
        if name in done:
            return
        done.add(name)
        for dep in sorted(free_symbols(by_name[name]) & set(by_name)):
            visit(dep)
        ordered.append((name, by_name[name]))

    for name, _ in definitions:
        visit(name)
    return ordered


def extract_common_subexpressions(expr: ExprType) -> ExprType:
    """
    Bind repeated subtrees to generated locals.

    The largest repeated subtree is extracted first (ties broken by
    sort_key) and occurrences are re-counted after every extraction.
    Locals are named local0, local1, ... in definition order, skipping
    names that occur free in expr.

    Returns:
        (let (= local0 def0) ... body), or expr itself when nothing repeats
    """
    taken = set(free_symbols(expr))
    body = expr
    definitions: List[Tuple[str, ExprType]] = []

    while True:
        counts: Counter = Counter()
        _count_subtrees(body, counts)
        for _, definition in definitions:
            _count_subtrees(definition, counts, include_root=False)
        repeated = [s for s, n in counts.items() if n > 1]
        if not repeated:
            break

        target = min(repeated, key=lambda s: (-node_count(s), sort_key(s)))
        name = fresh_symbol("_cse", taken)
        taken.add(name)
        logger.debug("Extracting %d occurrences of %r", counts[target], target)
        body = substitute(body, {target: name})
        definitions = [(n, substitute(d, {target: name})) for n, d in definitions]
        definitions.append((name, target))

    if not definitions:
        return body

    definitions = _dependency_order(definitions)
    reserved = set(free_symbols(expr))
    renames: Dict[str, str] = {}
    counter = 0
    for name, _ in definitions:
        while f"{LOCAL_PREFIX}{counter}" in reserved:
            counter += 1
        renames[name] = f"{LOCAL_PREFIX}{counter}"
        counter += 1

    parts = tuple((Op.EQ, renames[n], substitute(d, renames)) for n, d in definitions)
    return (Op.LET,) + parts + (substitute(body, renames),)


def optimize(expr: ExprType, rules: Optional[RulesType] = None,
             shapes: Optional[Mapping[str, ShapeType]] = None) -> ExprType:
    """
    Optimize an expression for repeated evaluation.

    Args:
        expr: Expression to optimize
        rules: Rule configuration for the simplification step
        shapes: Optional mapping from symbol names to matrix shapes

    Returns:
        An equivalent expression, a let form when subexpressions repeat

    Example:
        optimize(E("(+ (sin (+ a b)) (cos (+ a b)))"))
        # => (let (= local0 (+ a b)) (+ (sin local0) (cos local0)))
    """
    expr = simplify(to_expression(expr), rules=rules)
    expr = reorder_matrix_chains(expr, shapes)
    return extract_common_subexpressions(expr)


# ============================================================
# Code Generation
# ============================================================

def _operator_wrapper(op: Op) -> Callable:
    function = OPERATORS[op].function

    def wrapper(*args):
        result = function(list(args))
        if result is None:
            raise DomainError(f"'{op.value}' does not take {len(args)} argument(s)")
        return result
    wrapper.__name__ = f"_{op.name.lower()}"
    return wrapper


def _check_matrix(value: Any, rows: int, cols: int, name: str) -> Any:
    shape = getattr(value, "shape", None)
    if shape is not None and tuple(shape) != (rows, cols):
        raise DomainError(f"matrix {name} has shape {tuple(shape)}, expected ({rows}, {cols})")
    return value


def _base_namespace() -> Dict[str, Any]:
    namespace: Dict[str, Any] = {"_matrix": _check_matrix}
    for op, info in OPERATORS.items():
        if info.function is not None:
            namespace[f"_{op.name.lower()}"] = _operator_wrapper(op)
    return namespace


_NAMESPACE = _base_namespace()


def _is_plain_identifier(name: str) -> bool:
    return (name.isidentifier() and not keyword.iskeyword(name)
            and not name.startswith("_"))


class _CodeWriter:
    """Emit Python source for expressions over a name mapping."""

    def __init__(self, names: Dict[str, str]):
        self.names = names
        self.constants: Dict[str, Any] = {}

    def hoist(self, value: Any) -> str:
        for name, existing in self.constants.items():
            if type(existing) is type(value) and existing == value:
                return name
        name = f"_c{len(self.constants)}"
        self.constants[name] = value
        return name

    def emit(self, expr: ExprType) -> str:
        if constant(expr):
            if isinstance(expr, Fraction) or (isinstance(expr, float) and not math.isfinite(expr)):
                return self.hoist(expr)
            return f"({expr!r})" if expr < 0 else repr(expr)

        if isinstance(expr, str):
            return self.names[expr]

        op, args = expr[0], expr[1:]
        if op is Op.LET:
            raise CompileError("let is only allowed at the top level of a compiled expression")
        if op is Op.MATRIX:
            _, name, rows, cols = expr
            return f"_matrix({self.names[name]}, {rows}, {cols}, {name!r})"

        info = OPERATORS[op]
        parts = [self.emit(a) for a in args]
        if op is Op.SUB and len(parts) == 1:
            return f"(-{parts[0]})"
        if info.python is not None and info.accepts(len(parts)) and len(parts) >= 2:
            return "(" + f" {info.python} ".join(parts) + ")"
        return f"_{op.name.lower()}({', '.join(parts)})"


class Procedure:
    """
    A compiled expression.

    Attributes:
        params: Parameter names, in call order
        bindings: ((name, expr), ...) local definitions in evaluation order
        result: Final expression over params and locals
        source: Generated Python source
        function: The generated Python function

    Calling a Procedure calls the generated function with positional
    arguments bound to params.
    """

    def __init__(self, params: Tuple[str, ...], bindings: Tuple[Tuple[str, ExprType], ...],
                 result: ExprType, source: str, function: Callable):
        self.params = params
        self.bindings = bindings
        self.result = result
        self.source = source
        self.function = function

    def __call__(self, *args):
        if len(args) != len(self.params):
            raise TypeError(f"Procedure takes {len(self.params)} argument(s), got {len(args)}")
        return self.function(*args)

    def to_expression(self) -> ExprType:
        """The procedure body as a let expression."""
        if not self.bindings:
            return self.result
        parts = tuple((Op.EQ, name, definition) for name, definition in self.bindings)
        return (Op.LET,) + parts + (self.result,)

    def __repr__(self) -> str:
        return f"Procedure(params={list(self.params)}, locals={len(self.bindings)})"


def compile_expr(params: Sequence[str], expr: ExprType) -> Procedure:
    """
    Compile an expression into a callable procedure.

    Args:
        params: Parameter names; the procedure takes their values positionally
        expr: Expression, optionally a top-level let form (see optimize)

    Returns:
        A Procedure

    Raises:
        UnboundParameter: expr has a free symbol that is neither a parameter
            nor a named constant
        CompileError: a let form appears below the top level

    Example:
        proc = compile_expr(["a", "b"], optimize(E("(+ (sqrt (+ a b)) (** (+ a b) 3))")))
        proc(1, 3)   # => 66
    """
    params = tuple(params)
    if len(set(params)) != len(params):
        raise CompileError(f"Duplicate parameter names: {list(params)}")
    expr = to_expression(expr)

    unbound = free_symbols(expr) - set(params) - set(NAMED_CONSTANTS)
    if unbound:
        raise UnboundParameter(unbound)

    if is_op(expr, Op.LET):
        definitions, body = let_bindings(expr), expr[-1]
    else:
        definitions, body = [], expr

    # Locals never shadow a parameter or an earlier local
    taken = set(params) | free_symbols(expr)
    renames: Dict[str, str] = {}
    bindings: List[Tuple[str, ExprType]] = []
    for name, definition in definitions:
        definition = substitute(definition, renames)
        if name in taken:
            fresh = fresh_symbol(name, taken)
            logger.debug("Renaming local %s to %s", name, fresh)
            renames[name] = fresh
            name = fresh
        taken.add(name)
        bindings.append((name, definition))
    body = substitute(body, renames)

    # Python identifiers for every name
    names: Dict[str, str] = {}
    used = set(_NAMESPACE)
    for name in list(params) + [n for n, _ in bindings]:
        ident = name if _is_plain_identifier(name) and name not in used else f"_v{len(names)}"
        names[name] = ident
        used.add(ident)

    namespace = dict(_NAMESPACE)
    for constant_name, value in NAMED_CONSTANTS.items():
        if constant_name not in names:
            names[constant_name] = constant_name
            namespace[constant_name] = value

    writer = _CodeWriter(names)
    lines = [f"def compiled({', '.join(names[p] for p in params)}):"]
    for name, definition in bindings:
        lines.append(f"    {names[name]} = {writer.emit(definition)}")
    lines.append(f"    return {writer.emit(body)}")
    source = "\n".join(lines) + "\n"
    namespace.update(writer.constants)

    logger.debug("Compiled procedure:\n%s", source)
    exec(compile(source, "<exprimo>", "exec"), namespace)
    return Procedure(params, tuple(bindings), body, source, namespace["compiled"])
