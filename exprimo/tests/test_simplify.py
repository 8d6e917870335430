"""Tests for the simplifier and the built-in rule sets."""

from fractions import Fraction

import pytest

from exprimo import (
    DEFAULT_RULES, EXPANDING_RULES, E, Op, RuleEngine, SequencedEngine,
    evaluate, expand, simplify,
)
from exprimo.rules import MAX_EXPAND_POWER


SAMPLES = [
    "(+ x x)",
    "(* (** x 3) 3 x)",
    "(- (* 2 x) (* 3 x))",
    "(/ (* 4 x y) (* 2 y))",
    "(+ (sin x) 1 (sin x) 2)",
    "(* (exp x) (exp (* 2 x)))",
    "(- (** (+ x 1) 2) 1)",
    "(* 2 (+ x 1))",
    "(* 2 y (+ x 1))",
    "(sqrt (* 4 x))",
    "(+ (** (sin x) 2) (** (cos x) 2) x)",
]


class TestIdentities:
    """Identity elements, annihilators and like terms."""

    def test_add_zero(self):
        """x + 0 = x"""
        assert simplify(E("(+ x 0)")) == "x"

    def test_mul_one(self):
        """x * 1 = x"""
        assert simplify(E("(* x 1)")) == "x"

    def test_mul_zero(self):
        """x * 0 = 0"""
        assert simplify(E("(* x 0)")) == 0

    def test_like_terms(self):
        """x + x = 2x"""
        assert simplify(E("(+ x x)")) == (Op.MUL, 2, "x")

    def test_cancellation(self):
        """x - x = 0"""
        assert simplify(E("(- x x)")) == 0

    def test_like_bases(self):
        """Exponents of a common base are summed."""
        assert simplify(E("(* (** x 3) 3 x)")) == (Op.MUL, 3, (Op.POW, "x", 4))

    def test_quotient_of_equal_terms(self):
        """x / x = 1"""
        assert simplify(E("(/ x x)")) == 1

    def test_constant_part_folds(self):
        """Constant arguments of a sum are added."""
        assert simplify(E("(+ 1 2 x 3)")) == (Op.ADD, 6, "x")

    def test_distribute_constant(self):
        """A numeric coefficient is multiplied into a sum."""
        assert simplify(E("(* 2 (+ x 1))")) == (Op.ADD, 2, (Op.MUL, 2, "x"))

    def test_distribute_constant_with_other_factors(self):
        """Other factors do not stop the coefficient from distributing."""
        assert simplify(E("(* 2 a (+ 1 x))")) == \
            (Op.MUL, "a", (Op.ADD, 2, (Op.MUL, 2, "x")))

    def test_distribution_order_independent(self):
        """Grouping of the product does not change the result."""
        assert simplify(E("(* a (* 2 (+ 1 x)))")) == simplify(E("(* (* 2 a) (+ 1 x))"))

    def test_inverse_functions(self):
        """exp and log cancel."""
        assert simplify(E("(exp (log y))")) == "y"
        assert simplify(E("(log (exp y))")) == "y"

    def test_pythagoras(self):
        """sin^2 + cos^2 = 1"""
        assert simplify(E("(+ (** (sin y) 2) (** (cos y) 2))")) == 1

    def test_nested_powers(self):
        """Integer outer exponents multiply."""
        assert simplify(E("(** (** x 2) 3)")) == (Op.POW, "x", 6)


class TestConstantFolding:
    """Closed subtrees are evaluated exactly."""

    def test_exact_fraction(self):
        """Integer division gives a fraction."""
        assert simplify(E("(/ 1 3)")) == Fraction(1, 3)

    def test_exact_root(self):
        """Perfect squares fold."""
        assert simplify(E("(sqrt 4)")) == 2

    def test_inexact_root_stays_symbolic(self):
        """Irrational roots stay as powers."""
        assert simplify(E("(sqrt 2)")) == (Op.POW, 2, Fraction(1, 2))

    def test_folds_inside_symbolic_expression(self):
        """Closed subtrees fold below symbolic parents."""
        assert simplify(E("(* x (+ 1 2))")) == (Op.MUL, 3, "x")

    def test_float_folds(self):
        """Float arithmetic folds."""
        assert simplify(E("(* 0.5 4)")) == 2

    def test_cos_zero(self):
        """cos(0) folds to one."""
        assert simplify(E("(+ x (cos 0))")) == (Op.ADD, 1, "x")

    def test_domain_error_stays_symbolic(self):
        """log(0) is left unevaluated."""
        assert simplify(E("(log 0)")) == (Op.LOG, 0)

    def test_float_and_fraction_kept_apart(self):
        """An equal float and fraction simplify independently."""
        assert simplify(E("(+ x 1/2)")) == (Op.ADD, Fraction(1, 2), "x")
        result = simplify(E("(+ x 0.5)"))
        assert result == (Op.ADD, 0.5, "x")
        assert isinstance(result[1], float)


class TestCanonicalForm:
    """Argument order does not matter after simplification."""

    def test_argument_order(self):
        """Permuted sums simplify alike."""
        assert simplify(E("(+ y x 1)")) == simplify(E("(+ 1 x y)"))

    def test_nesting(self):
        """Nested sums flatten alike."""
        assert simplify(E("(+ a (+ b c))")) == simplify(E("(+ (+ a b) c)")) == \
            (Op.ADD, "a", "b", "c")

    def test_accepts_lists(self):
        """Nested lists are converted first."""
        assert simplify(["+", "x", "x"]) == (Op.MUL, 2, "x")


class TestProperties:
    """Idempotence and soundness over a sample of expressions."""

    @pytest.mark.parametrize("text", SAMPLES)
    def test_idempotent(self, text):
        """Simplifying twice changes nothing."""
        once = simplify(E(text))
        assert simplify(once) == once

    @pytest.mark.parametrize("text", SAMPLES)
    def test_sound(self, text):
        """Simplification preserves value."""
        expr = E(text)
        result = simplify(expr)
        for x, y in [(0.3, 0.7), (1.3, 2.1)]:
            env = {"x": x, "y": y}
            assert evaluate(result, env) == pytest.approx(evaluate(expr, env))

    @pytest.mark.parametrize("text", SAMPLES)
    def test_expand_sound(self, text):
        """Expansion preserves value."""
        expr = E(text)
        env = {"x": 0.3, "y": 0.7}
        assert evaluate(expand(expr), env) == pytest.approx(evaluate(expr, env))


class TestConfiguration:
    """Rule configurations passed to simplify."""

    def test_extra_rules(self):
        """A chained engine adds rules after the built-ins."""
        extra = RuleEngine.from_dsl("@sin-neg: (sin (* -1 ?x)) => (* -1 (sin :x))")
        expr = E("(+ (sin (* -1 y)) (sin y))")
        assert simplify(expr, rules=DEFAULT_RULES >> extra) == 0
        assert simplify(expr) != 0

    def test_default_rules_unchanged_by_chaining(self):
        """Chaining builds a new sequence."""
        phases = len(DEFAULT_RULES)
        DEFAULT_RULES >> RuleEngine()
        assert len(DEFAULT_RULES) == phases

    def test_single_engine(self):
        """A plain engine can stand in for the phases."""
        engine = RuleEngine.from_dsl("@add-zero: (+ ?x 0) => :x")
        assert simplify(E("(+ (* y 1) 0)"), rules=engine) == (Op.MUL, "y", 1)

    def test_expanding_rules_are_a_superset(self):
        """Expanding rules add one phase."""
        assert isinstance(EXPANDING_RULES, SequencedEngine)
        assert len(EXPANDING_RULES) == len(DEFAULT_RULES) + 1

    def test_ratio_rejects_growth(self):
        """A result larger than the ratio allows is rejected."""
        expr = E("(* 2 (+ x 1))")
        assert simplify(expr, ratio=0.5) == expr
        assert simplify(expr, ratio=2) == (Op.ADD, 2, (Op.MUL, 2, "x"))

    def test_iteration_cap_returns_input(self, caplog):
        """Hitting the cap logs a warning and returns the input."""
        expr = E("(+ w w)")
        assert simplify(expr, max_iterations=0) == expr
        assert "iteration cap" in caplog.text


class TestExpand:
    """Multiplying out products over sums."""

    def test_square_of_sum(self):
        """(x + 1)(x + 1) multiplied out."""
        assert expand(E("(* (+ x 1) (+ x 1))")) == \
            (Op.ADD, 1, (Op.MUL, 2, "x"), (Op.POW, "x", 2))

    def test_power_of_sum(self):
        """Integer powers of sums expand like products."""
        assert expand(E("(** (+ x 1) 2)")) == expand(E("(* (+ x 1) (+ x 1))"))

    def test_difference_of_squares(self):
        """Cross terms cancel."""
        assert expand(E("(* (+ x y) (- x y))")) == \
            (Op.ADD, (Op.MUL, -1, (Op.POW, "y", 2)), (Op.POW, "x", 2))

    def test_large_power_not_expanded(self):
        """Powers above the limit are left alone."""
        n = MAX_EXPAND_POWER + 1
        expr = (Op.POW, (Op.ADD, 1, "x"), n)
        assert expand(expr) == expr
