"""
Core rewriter module for symbolic expression transformation.

This module provides pattern matching, instantiation, guard predicates and
constant folding for rule-based expression rewriting.

Patterns live in their own space, separate from expressions:

    ("?", "x")            - match any expression, bind to x
    ("?c", "x")           - match constants only
    ("?v", "x")           - match symbols only
    ("?free", "x", "v")   - match expression not containing v
    ("?...", "xs")        - match remaining arguments (zero or more)
    ("?...", "xs", "const") - same, each must be a constant

Skeletons (rule right-hand sides):

    (":", "x")            - substitute bound value
    (":...", "xs")        - splice bound argument tuple into parent
    ("!", op, args...)    - compute op(args) immediately

Matching understands operator properties: against a commutative operator
the fixed sub-patterns are tried against every argument (backtracking) and
a single rest variable absorbs whatever is left over.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .errors import EvaluationError
from .expression import (
    ExprType, atom, compound, constant, free_in, variable,
)
from .properties import OPERATORS, Op, is_commutative, is_exact, is_number, normalize_number

PatternType = Any
RuleType = Tuple  # (pattern, skeleton)

# Upper bound on argument assignments tried while matching one pattern
# against commutative operators. Matches beyond the bound are not found.
MAX_MATCH_ATTEMPTS = 10000

PATTERN_MARKERS = ("?", "?c", "?v", "?free", "?...")


# ============================================================
# Bindings Class - Dict-like interface for match results
# ============================================================

class Bindings:
    """
    Immutable dict-like wrapper for match results and substitutions.

    Provides convenient access to bound values with a clean interface:

        if bindings := engine.match("(+ ?a ?b)", expr):
            print(bindings["a"], bindings["b"])
            print(bindings.get("c", default=0))

    Bindings objects are truthy when a match succeeded.
    Use NoMatch (which is falsy) to represent failed matches.
    Bindings are hashable, so sets of them model multi-branch solutions.

    Examples:
        bindings = Bindings({"x": 1, "y": 2})
        bindings["x"]      # => 1
        bindings.get("z")  # => None
        "x" in bindings    # => True
        len(bindings)      # => 2
        dict(bindings)     # => {"x": 1, "y": 2}
    """

    __slots__ = ('_dict', '_hash')

    def __init__(self, pairs=()):
        """Initialize from a mapping or an iterable of (name, value) pairs."""
        self._dict = dict(pairs)
        self._hash = None

    def __bool__(self) -> bool:
        """Bindings are always truthy (use NoMatch for failed matches)."""
        return True

    def __getitem__(self, key: str):
        """Get a bound value: bindings["x"]"""
        return self._dict[key]

    def get(self, key: str, default=None):
        """Get a bound value with optional default."""
        return self._dict.get(key, default)

    def __contains__(self, key: str) -> bool:
        """Check if a variable is bound: "x" in bindings"""
        return key in self._dict

    def keys(self):
        return self._dict.keys()

    def values(self):
        return self._dict.values()

    def items(self):
        return self._dict.items()

    def __iter__(self):
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"Bindings({self._dict})"

    def __eq__(self, other):
        if isinstance(other, Bindings):
            return self._dict == other._dict
        return False

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))
        return self._hash

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary."""
        return self._dict.copy()


class _NoMatch:
    """
    Singleton representing a failed pattern match.

    NoMatch is falsy, allowing natural use in conditionals:

        if bindings := engine.match(pattern, expr):
            # matched
        else:
            # NoMatch
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NoMatch"

    def __getitem__(self, key: str):
        raise KeyError(f"NoMatch has no binding for '{key}'")

    def get(self, key: str, default=None):
        return default

    def __contains__(self, key: str) -> bool:
        return False

    def __len__(self) -> int:
        return 0

    def __iter__(self):
        return iter([])


# Singleton instance
NoMatch = _NoMatch()


# ============================================================
# Guard Predicates
# ============================================================

PredicateHandler = Callable[[List[Any]], Any]


def _numeric_compare(f: Callable[[Any, Any], bool]) -> PredicateHandler:
    def handler(args):
        if len(args) != 2 or not all(is_number(a) for a in args):
            return False
        return f(args[0], args[1])
    return handler


def _unary_test(f: Callable[[Any], bool]) -> PredicateHandler:
    def handler(args):
        if len(args) != 1:
            return False
        return f(args[0])
    return handler


def _is_integer(x) -> bool:
    if isinstance(x, float):
        return x.is_integer()
    return x == int(x)


PREDICATES: Dict[str, PredicateHandler] = {
    # Comparison operators (false for non-numeric arguments)
    ">": _numeric_compare(lambda a, b: a > b),
    "<": _numeric_compare(lambda a, b: a < b),
    ">=": _numeric_compare(lambda a, b: a >= b),
    "<=": _numeric_compare(lambda a, b: a <= b),
    "=": lambda args: len(args) == 2 and args[0] == args[1],
    "!=": lambda args: len(args) == 2 and args[0] != args[1],
    # Type predicates
    "const?": _unary_test(constant),
    "var?": _unary_test(variable),
    "compound?": _unary_test(compound),
    "atom?": _unary_test(atom),
    "zero?": _unary_test(lambda x: is_number(x) and x == 0),
    "positive?": _unary_test(lambda x: is_number(x) and x > 0),
    "negative?": _unary_test(lambda x: is_number(x) and x < 0),
    "integer?": _unary_test(lambda x: is_number(x) and _is_integer(x)),
    "even?": _unary_test(lambda x: is_number(x) and _is_integer(x) and int(x) % 2 == 0),
    "odd?": _unary_test(lambda x: is_number(x) and _is_integer(x) and int(x) % 2 == 1),
    # (free? expr var): var does not occur in expr
    "free?": lambda args: len(args) == 2 and isinstance(args[1], str)
                          and not free_in(args[1], args[0]),
    # Logical operators
    "not": _unary_test(lambda x: not x),
    "and": lambda args: all(args),
    "or": lambda args: any(args),
}


# ============================================================
# Pattern Matching Helpers
# ============================================================

def _pattern_form(pat: PatternType, marker: str) -> bool:
    return isinstance(pat, tuple) and len(pat) >= 2 and pat[0] == marker \
        and not isinstance(pat[0], Op)


def arbitrary_constant(pat: PatternType) -> bool:
    """Check if pattern matches any constant (?x:const)."""
    return _pattern_form(pat, "?c")


def arbitrary_variable(pat: PatternType) -> bool:
    """Check if pattern matches any symbol (?x:var)."""
    return _pattern_form(pat, "?v")


def arbitrary_expression(pat: PatternType) -> bool:
    """Check if pattern matches any expression (?x)."""
    return _pattern_form(pat, "?")


def arbitrary_free(pat: PatternType) -> bool:
    """Check if pattern matches expression free of a variable (?x:free(v))."""
    return _pattern_form(pat, "?free") and len(pat) == 3


def arbitrary_rest(pat: PatternType) -> bool:
    """Check if pattern matches a run of arguments (?xs...)."""
    return _pattern_form(pat, "?...")


def is_pattern_variable(pat: PatternType) -> bool:
    return isinstance(pat, tuple) and len(pat) >= 2 and not isinstance(pat[0], Op) \
        and pat[0] in PATTERN_MARKERS


def rest_type_constraint(pat: Tuple) -> Optional[str]:
    """Get the type constraint for a rest pattern: "const", "var" or None."""
    if len(pat) >= 3:
        return pat[2]
    return None


def skeleton_evaluation(s: Any) -> bool:
    """Check if skeleton element should be substituted (:x)."""
    return _pattern_form(s, ":")


def skeleton_splice(s: Any) -> bool:
    """Check if skeleton element should be spliced (:xs...)."""
    return _pattern_form(s, ":...")


def skeleton_compute(s: Any) -> bool:
    """Check if skeleton element should be computed (! op args...)."""
    return _pattern_form(s, "!")


def variable_name(pat: Tuple) -> str:
    """Extract the binding name from a pattern element."""
    return pat[1]


def lookup(var: str, bindings: Dict[str, Any]) -> Any:
    """Look up a binding; unbound names stand for themselves."""
    return bindings.get(var, var)


def extend_bindings(name: str, dat: Any, bindings: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extend bindings with name -> dat.

    Returns:
        New bindings, the same bindings on a consistent rebinding, or None on
        conflict
    """
    if name in bindings:
        return bindings if bindings[name] == dat else None
    extended = dict(bindings)
    extended[name] = dat
    return extended


def _rest_ok(items: Tuple, constraint: Optional[str]) -> bool:
    if constraint == "const":
        return all(constant(item) for item in items)
    if constraint == "var":
        return all(variable(item) for item in items)
    return True


# ============================================================
# Pattern Matching
# ============================================================

class _Budget:
    __slots__ = ("left",)

    def __init__(self, left: int):
        self.left = left

    def spend(self) -> bool:
        self.left -= 1
        return self.left >= 0


def match_all(pat: PatternType, exp: ExprType, bindings: Optional[Dict[str, Any]] = None,
              _budget: Optional[_Budget] = None) -> Iterator[Dict[str, Any]]:
    """
    Yield every binding dict under which pat matches exp.

    Alternatives come in a deterministic order: pattern elements left to
    right, each tried against arguments left to right.
    """
    if bindings is None:
        bindings = {}
    if _budget is None:
        _budget = _Budget(MAX_MATCH_ATTEMPTS)

    if is_pattern_variable(pat):
        if arbitrary_rest(pat):
            return  # only meaningful inside a compound pattern
        if arbitrary_constant(pat) and not constant(exp):
            return
        if arbitrary_variable(pat) and not variable(exp):
            return
        if arbitrary_free(pat):
            actual_var = lookup(pat[2], bindings)
            if not isinstance(actual_var, str) or free_in(actual_var, exp):
                return
        extended = extend_bindings(variable_name(pat), exp, bindings)
        if extended is not None:
            yield extended
        return

    if not compound(pat):
        # Literal: numbers compare by value, symbols by name
        if atom(exp) and constant(pat) == constant(exp) and pat == exp:
            yield bindings
        return

    if not compound(exp) or exp[0] is not pat[0]:
        return

    if is_commutative(pat[0]):
        yield from _match_commutative(pat[1:], exp[1:], bindings, _budget)
    else:
        yield from _match_sequence(pat[1:], exp[1:], bindings, _budget)


def _match_sequence(pats: Tuple, exps: Tuple, bindings: Dict[str, Any],
                    budget: _Budget) -> Iterator[Dict[str, Any]]:
    """Match argument patterns in order; rest patterns take contiguous runs."""
    if not pats:
        if not exps:
            yield bindings
        return

    current = pats[0]
    if arbitrary_rest(current):
        constraint = rest_type_constraint(current)
        # A trailing rest takes everything; inner rests try shortest first
        lengths = [len(exps)] if len(pats) == 1 else range(len(exps) + 1)
        for k in lengths:
            if not budget.spend():
                return
            chunk = tuple(exps[:k])
            if not _rest_ok(chunk, constraint):
                continue
            extended = extend_bindings(variable_name(current), chunk, bindings)
            if extended is not None:
                yield from _match_sequence(pats[1:], exps[k:], extended, budget)
        return

    if not exps:
        return
    for sub in match_all(current, exps[0], bindings, budget):
        yield from _match_sequence(pats[1:], exps[1:], sub, budget)


def _match_commutative(pats: Tuple, exps: Tuple, bindings: Dict[str, Any],
                       budget: _Budget) -> Iterator[Dict[str, Any]]:
    """Match argument patterns in any order against a commutative operator."""
    rests = [p for p in pats if arbitrary_rest(p)]
    fixed = [p for p in pats if not arbitrary_rest(p)]
    if len(rests) > 1:
        raise ValueError("A commutative pattern may contain at most one rest pattern")
    if len(fixed) > len(exps) or (not rests and len(fixed) != len(exps)):
        return

    def assign(i: int, used: frozenset, b: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        if i == len(fixed):
            leftover = tuple(e for j, e in enumerate(exps) if j not in used)
            if not rests:
                yield b
                return
            if _rest_ok(leftover, rest_type_constraint(rests[0])):
                extended = extend_bindings(variable_name(rests[0]), leftover, b)
                if extended is not None:
                    yield extended
            return
        for j, e in enumerate(exps):
            if j in used:
                continue
            if not budget.spend():
                return
            for sub in match_all(fixed[i], e, b, budget):
                yield from assign(i + 1, used | {j}, sub)

    yield from assign(0, frozenset(), bindings)


def match(pat: PatternType, exp: ExprType,
          bindings: Optional[Dict[str, Any]] = None) -> Union[Bindings, _NoMatch]:
    """
    Match a pattern against an expression.

    Returns:
        Bindings for the first match found, or NoMatch
    """
    for result in match_all(pat, exp, bindings):
        return Bindings(result)
    return NoMatch


# ============================================================
# Constant Folding
# ============================================================

def accept_fold(args: List[Any], result: Any) -> Optional[Any]:
    """
    Decide whether a computed value may replace an expression.

    Exact inputs only fold to exact results, except integral floats of
    magnitude at most one (cos(0), log(1)), so 2 ** (1/2) stays symbolic.
    Returns the value to use or None to leave the expression alone.
    """
    if result is None or isinstance(result, bool) or not is_number(result):
        return None
    if isinstance(result, float):
        if all(is_exact(a) for a in args):
            if result.is_integer() and abs(result) <= 1:
                return int(result)
            return None
        # Preserve integer type when possible
        if result.is_integer() and abs(result) < 2 ** 53:
            return int(result)
        return result
    return normalize_number(result)


def compute(op: Any, args: List[Any]) -> Optional[Any]:
    """Apply an operator or predicate to argument values; None if not possible."""
    if isinstance(op, Op):
        function = OPERATORS[op].function
        if function is None or not all(is_number(a) for a in args):
            return None
        try:
            return accept_fold(args, function(list(args)))
        except EvaluationError:
            return None
    if op in PREDICATES:
        return PREDICATES[op](list(args))
    return None


def try_constant_fold(exp: ExprType) -> ExprType:
    """Fold a node whose arguments are all constants; otherwise return it unchanged."""
    if not compound(exp) or len(exp) == 1:
        return exp
    args = exp[1:]
    if not all(constant(arg) for arg in args):
        return exp
    result = compute(exp[0], list(args))
    return exp if result is None else result


def fold_constants(exp: ExprType) -> ExprType:
    """Fold every closed subtree, innermost first."""
    if not compound(exp) or exp[0] is Op.LET:
        return exp
    folded = (exp[0],) + tuple(fold_constants(e) for e in exp[1:])
    return try_constant_fold(folded)


# ============================================================
# Instantiation
# ============================================================

def instantiate(skeleton: Any, bindings: Dict[str, Any]) -> Any:
    """
    Instantiate a skeleton with bindings.

    Args:
        skeleton: The skeleton to instantiate
        bindings: Bindings from a successful match

    Returns:
        The instantiated expression
    """
    if skeleton_evaluation(skeleton) or skeleton_splice(skeleton):
        return lookup(skeleton[1], bindings)

    if skeleton_compute(skeleton):
        op = skeleton[1]
        args = _instantiate_args(skeleton[2:], bindings)
        result = compute(op, args)
        if result is not None:
            return result
        # If can't evaluate, return as regular expression
        return (op,) + tuple(args) if isinstance(op, Op) else ("!", op) + tuple(args)

    if isinstance(skeleton, tuple) and skeleton:
        return (skeleton[0],) + tuple(_instantiate_args(skeleton[1:], bindings))

    return skeleton


def _instantiate_args(items: Tuple, bindings: Dict[str, Any]) -> List[Any]:
    """Instantiate compound children, splicing :xs... tuples into place."""
    result = []
    for item in items:
        if skeleton_splice(item):
            spliced = lookup(item[1], bindings)
            if isinstance(spliced, tuple) and not compound(spliced):
                result.extend(spliced)
            else:
                result.append(spliced)
        else:
            result.append(instantiate(item, bindings))
    return result


def check_condition(condition: Any, bindings: Dict[str, Any]) -> bool:
    """
    Check if a rule's guard is satisfied under bindings.

    Numbers: 0 is falsy. Tuples: empty is falsy. Booleans as expected.
    """
    if condition is None:
        return True
    result = instantiate(condition, bindings)
    if isinstance(result, bool):
        return result
    if is_number(result):
        return result != 0
    if isinstance(result, tuple) and result and result[0] == "!":
        return False  # guard could not be computed
    if isinstance(result, (str, tuple)):
        return len(result) > 0
    return bool(result)
