"""
exprimo - symbolic algebra by rule rewriting

Expressions are immutable trees; they are simplified by rule-based
rewriting, converted to canonical polynomials, differentiated, solved and
compiled into optimized Python procedures.

Quick Start:
    from exprimo import E, simplify, solve, differentiate

    simplify(E("(+ x x)"))                      # => (* 2 x)
    solve("x", E.infix("2 = 4*x"))              # => {Fraction(1, 2)}
    differentiate(["x", "x"], E.infix("x**3 * 3*x"))  # => (* 36 (** x 2))

Compiling:
    from exprimo import optimize, compile_expr

    proc = compile_expr(["a", "b"], optimize(E.infix("sin(a+b) + cos(a+b)")))
    proc(0.5, 0.25)

Rule configurations:
    Every entry point that simplifies takes rules=, a RuleEngine or a
    SequencedEngine of phases. DEFAULT_RULES is the built-in configuration;
    EXPANDING_RULES also multiplies products out over sums.

    extra = RuleEngine.from_dsl('''
        @sin-neg "sin is odd": (sin (* -1 ?x)) => (* -1 (sin :x))
    ''')
    simplify(expr, rules=DEFAULT_RULES >> extra)

Pattern Syntax:
    ?x                - match any expression, bind to x
    ?x:const          - match constant only
    ?x:var            - match variable only
    ?x:free(v)        - match expression not containing v
    ?xs...            - match the remaining arguments
    :x                - substitute bound value
    :xs...            - splice bound arguments
    (! op :a :b)      - compute op(a, b) when the arguments are constants
"""

__version__ = "0.1.0"

from .errors import (
    ExprimoError,
    ParseError,
    EvaluationError,
    UnboundSymbol,
    DomainError,
    NonPolynomialForm,
    NoDerivativeRule,
    SolveError,
    MultipleOccurrences,
    NoStrategy,
    Unsolvable,
    Inconsistent,
    Underdetermined,
    CompileError,
    UnboundParameter,
)

# Expression model
from .properties import Op, OPERATORS, OperatorInfo, NAMED_CONSTANTS
from .expression import (
    ExprType,
    BindingsType,
    evaluate,
    substitute,
    free_in,
    free_symbols,
    node_count,
    sort_key,
    to_expression,
)

# Rewriting
from .rewriter import (
    Bindings,
    NoMatch,
    match,
    instantiate,
)
from .engine import (
    RuleEngine,
    SequencedEngine,
    RuleMetadata,
    RewriteStep,
    RewriteTrace,
    E,
    parse_sexpr,
    format_sexpr,
    load_rules_from_dsl,
    load_rules_from_file,
    load_rules_from_json,
)
from .parse import parse_expression
from .rules import DEFAULT_RULES, EXPANDING_RULES
from .simplify import simplify, expand

# Algebra
from .polynomial import Polynomial, to_polynomial
from .differentiate import differentiate
from .solve import rearrange, solve, solve_system

# Compiler
from .optimize import optimize, compile_expr, Procedure

# Public API
__all__ = [
    # Version
    "__version__",
    # Errors
    "ExprimoError",
    "ParseError",
    "EvaluationError",
    "UnboundSymbol",
    "DomainError",
    "NonPolynomialForm",
    "NoDerivativeRule",
    "SolveError",
    "MultipleOccurrences",
    "NoStrategy",
    "Unsolvable",
    "Inconsistent",
    "Underdetermined",
    "CompileError",
    "UnboundParameter",
    # Expression model
    "Op",
    "OPERATORS",
    "OperatorInfo",
    "NAMED_CONSTANTS",
    "ExprType",
    "BindingsType",
    "evaluate",
    "substitute",
    "free_in",
    "free_symbols",
    "node_count",
    "sort_key",
    "to_expression",
    # Rewriting
    "Bindings",
    "NoMatch",
    "match",
    "instantiate",
    "RuleEngine",
    "SequencedEngine",
    "RuleMetadata",
    "RewriteStep",
    "RewriteTrace",
    "E",
    "parse_sexpr",
    "format_sexpr",
    "load_rules_from_dsl",
    "load_rules_from_file",
    "load_rules_from_json",
    "parse_expression",
    "DEFAULT_RULES",
    "EXPANDING_RULES",
    "simplify",
    "expand",
    # Algebra
    "Polynomial",
    "to_polynomial",
    "differentiate",
    "rearrange",
    "solve",
    "solve_system",
    # Compiler
    "optimize",
    "compile_expr",
    "Procedure",
]
