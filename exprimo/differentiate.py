"""
Symbolic differentiation.

The single-variable rule is structural: constants go to 0, symbols to 1 or
0, and a compound uses the derivative rule registered for its operator in
the property table. The raw derivative is then simplified.
"""

from typing import Optional, Sequence, Union

from .errors import NoDerivativeRule
from .expression import ExprType, compound, constant, to_expression, variable
from .properties import OPERATORS
from .simplify import RulesType, simplify


def derivative(var: str, expr: ExprType) -> ExprType:
    """
    Unsimplified derivative of expr with respect to var.

    Raises:
        NoDerivativeRule: expr contains an operator without a derivative rule
    """
    if constant(expr):
        return 0
    if variable(expr):
        return 1 if expr == var else 0
    if not compound(expr):
        raise TypeError(f"Not an expression: {expr!r}")

    info = OPERATORS[expr[0]]
    if info.derivative is None:
        raise NoDerivativeRule(f"No derivative rule for '{expr[0].value}'")
    args = expr[1:]
    dargs = tuple(derivative(var, arg) for arg in args)
    return info.derivative(args, dargs)


def differentiate(variables: Union[str, Sequence[str]], expr: ExprType,
                  rules: Optional[RulesType] = None) -> ExprType:
    """
    Differentiate expr with respect to one or more variables.

    Args:
        variables: A symbol, or a sequence of symbols applied left to right
        expr: Expression to differentiate
        rules: Rule configuration used to simplify after each step

    Returns:
        The simplified derivative

    Examples:
        differentiate("x", E("(** x 3)"))               # => (* 3 (** x 2))
        differentiate(["x", "x"], E("(* (** x 3) 3 x)")) # => (* 36 (** x 2))
    """
    if isinstance(variables, str):
        variables = [variables]

    result = simplify(to_expression(expr), rules=rules)
    for var in variables:
        result = simplify(derivative(var, result), rules=rules)
    return result
