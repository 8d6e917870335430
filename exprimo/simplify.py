"""
Simplification driver.

simplify() rewrites an expression to the fixpoint of a rule configuration
(DEFAULT_RULES unless rules= is given). It never raises for a well-formed
expression: when rewriting does not settle within the step budget, a
warning is logged and the input comes back unchanged.
"""

import logging
from typing import Optional, Union

from .engine import MAX_ITERATIONS, RuleEngine, SequencedEngine
from .errors import IterationLimit
from .expression import ExprType, node_count, to_expression
from .rules import DEFAULT_RULES, EXPANDING_RULES

logger = logging.getLogger(__name__)

RulesType = Union[RuleEngine, SequencedEngine]


def simplify(expr: ExprType, rules: Optional[RulesType] = None,
             ratio: Optional[float] = None,
             max_iterations: int = MAX_ITERATIONS) -> ExprType:
    """
    Simplify an expression.

    Args:
        expr: Expression to simplify
        rules: Rule configuration (default: DEFAULT_RULES)
        ratio: If given, reject results whose node count exceeds ratio times
            the node count of expr, returning expr instead
        max_iterations: Step budget of each rewrite to normal form

    Returns:
        The simplified expression

    Examples:
        simplify(E("(+ x x)"))          # => (* 2 x)
        simplify(E("(* (** x 3) 3 x)")) # => (* 3 (** x 4))
    """
    expr = to_expression(expr)
    if rules is None:
        rules = DEFAULT_RULES

    try:
        result = rules.rewrite(expr, max_steps=max_iterations)
    except IterationLimit as e:
        logger.warning("simplify hit its iteration cap, returning input unchanged: %s", e)
        return expr

    if ratio is not None and node_count(result) > ratio * node_count(expr):
        logger.debug("Rejected simplification: %d nodes from %d exceeds ratio %s",
                     node_count(result), node_count(expr), ratio)
        return expr
    return result


def expand(expr: ExprType, max_iterations: int = MAX_ITERATIONS) -> ExprType:
    """Simplify with products multiplied out over sums."""
    return simplify(expr, rules=EXPANDING_RULES, max_iterations=max_iterations)
