"""
Error kinds raised by exprimo.

Every failure of the public operations is reported as a subclass of
ExprimoError so callers can catch the whole family or a single kind.
"""


class ExprimoError(Exception):
    """Base class for all exprimo errors."""


class ParseError(ExprimoError, ValueError):
    """Raised when infix text cannot be parsed into an expression."""


class IterationLimit(ExprimoError):
    """Raised by the rewrite engine when a rewrite exceeds its step budget.

    simplify() never lets this escape: it logs a warning and returns its
    input unchanged.
    """


# ============================================================
# Evaluation
# ============================================================

class EvaluationError(ExprimoError):
    """Base class for numeric evaluation failures."""


class UnboundSymbol(EvaluationError):
    """Raised when a free symbol has no binding and is not a named constant."""

    def __init__(self, name: str):
        super().__init__(f"Symbol '{name}' is not bound")
        self.name = name


class DomainError(EvaluationError):
    """Raised when an operator is undefined at the given arguments."""


# ============================================================
# Algebra
# ============================================================

class NonPolynomialForm(ExprimoError):
    """Raised when an expression is not a polynomial in the main variable."""


class NoDerivativeRule(ExprimoError):
    """Raised when an operator has no registered derivative rule."""


class SolveError(ExprimoError):
    """Base class for solver failures."""


class MultipleOccurrences(SolveError):
    """Raised by rearrange when the variable occurs more than once."""


class NoStrategy(SolveError):
    """Raised when no solving strategy applies to the equation."""


class Unsolvable(SolveError):
    """Raised when strategies applied but no candidate solution verified."""


class Inconsistent(SolveError):
    """Raised when a system of equations has contradictory equations."""


class Underdetermined(SolveError):
    """Raised when fewer independent equations than unknowns remain."""


# ============================================================
# Compilation
# ============================================================

class CompileError(ExprimoError):
    """Base class for compiler failures."""


class UnboundParameter(CompileError):
    """Raised when a compiled expression references an undeclared symbol."""

    def __init__(self, names):
        names = sorted(names)
        super().__init__(f"Free symbols not in parameter list: {', '.join(names)}")
        self.names = names
