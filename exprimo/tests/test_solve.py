"""Tests for rearrangement, single-equation solving and systems."""

from fractions import Fraction

import pytest

from exprimo import (
    Bindings, E, Inconsistent, MultipleOccurrences, NoStrategy, Op,
    Underdetermined, Unsolvable, evaluate, rearrange, solve, solve_system,
)


class TestRearrange:
    """Isolating a single occurrence."""

    def test_linear(self):
        """Linear equation isolates the variable."""
        assert rearrange("x", E("(= (* 2 x) y)")) == \
            {(Op.EQ, "x", (Op.MUL, Fraction(1, 2), "y"))}

    def test_even_power_has_two_branches(self):
        """Even powers invert to both signs."""
        assert rearrange("x", E("(= (** x 2) 4)")) == \
            {(Op.EQ, "x", 2), (Op.EQ, "x", -2)}

    def test_nested_inverses(self):
        """Inverses are applied from the outside in."""
        assert rearrange("x", E("(= (exp (+ x 1)) y)")) == \
            {(Op.EQ, "x", (Op.ADD, -1, (Op.LOG, "y")))}

    def test_multiple_occurrences(self):
        """More than one occurrence is rejected."""
        with pytest.raises(MultipleOccurrences):
            rearrange("x", E.infix("x**2 + x = 1"))

    def test_variable_absent(self):
        """No occurrence is unsolvable."""
        with pytest.raises(Unsolvable):
            rearrange("x", E("(= y 1)"))

    def test_no_inverse(self):
        """Matrix product has no inverse."""
        with pytest.raises(NoStrategy):
            rearrange("A", E("(= (@ A B) C)"))


class TestSolve:
    """Single equations."""

    def test_linear(self):
        """2 = 4x has the single root 1/2."""
        assert solve("x", E.infix("2 = 4*x")) == {Fraction(1, 2)}

    def test_expression_compared_to_zero(self):
        """A bare expression is solved against zero."""
        assert solve("x", E("(+ (** x 2) (* -5 x) 6)")) == {2, 3}

    def test_no_real_roots(self):
        """Negative discriminant gives the empty set."""
        assert solve("x", E.infix("x**2 + x + 1")) == set()
        assert solve("x", E.infix("x**2 + 1")) == set()

    def test_negative_closed_rhs(self):
        """A square equal to a negative closed value has no root."""
        assert solve("x", E("(= (** x 2) (* -1 (sqrt 2)))")) == set()

    def test_symbolic_linear(self):
        """Roots may contain other symbols."""
        assert solve("x", E("(= (+ x a) b)")) == {(Op.ADD, "b", (Op.MUL, -1, "a"))}

    def test_identity(self):
        """An identity is satisfied by the variable itself."""
        assert solve("x", E("(= (+ x x) (* 2 x))")) == {"x"}

    def test_contradiction(self):
        """A contradiction has no solution."""
        assert solve("x", E("(= (+ x 1) x)")) == set()

    def test_variable_absent(self):
        """Solving for an absent variable fails."""
        with pytest.raises(Unsolvable):
            solve("x", E("(= y 1)"))

    def test_accepts_lists(self):
        """Nested lists are converted first."""
        assert solve("x", ["=", ["*", 3, "x"], 6]) == {2}


class TestPolynomialStrategies:
    """Factoring polynomials above degree two."""

    def test_rational_roots(self):
        """Cubic with three integer roots."""
        assert solve("x", E.infix("x**3 - 6*x**2 + 11*x - 6")) == {1, 2, 3}

    def test_zero_root(self):
        """Zero root is factored out first."""
        assert solve("x", E.infix("x**3 - 4*x")) == {0, 2, -2}

    def test_power_substitution(self):
        """x**4 - 2 is a quadratic in x**2."""
        root = (Op.POW, 2, Fraction(1, 4))
        assert solve("x", E.infix("x**4 - 2")) == {root, (Op.MUL, -1, root)}

    def test_rational_root_with_fraction(self):
        """Rational-root candidates include p/q."""
        assert solve("x", E.infix("2*x**3 - x**2 - 2*x + 1")) == \
            {1, -1, Fraction(1, 2)}

    def test_unfactorable(self):
        """No strategy for an irreducible quintic."""
        with pytest.raises(NoStrategy):
            solve("x", E.infix("x**5 + x + 1"))

    def test_large_coefficients_skip_rational_roots(self):
        """Huge coefficients fall through to the next strategy."""
        with pytest.raises(NoStrategy):
            solve("x", E.infix("x**3 + x + 1000000000000000000"))


class TestTranscendental:
    """Equations that are not polynomial in the variable."""

    def test_substitution(self):
        """A repeated exp(x) is replaced by a new unknown."""
        assert solve("x", E.infix("exp(x)**2 - 3*exp(x) + 2")) == {0, (Op.LOG, 2)}

    def test_injective_function(self):
        """exp(a) = exp(b) reduces to a = b."""
        assert solve("x", E.infix("exp(2*x) = exp(x + 1)")) == {1}

    def test_sine_has_two_branches(self):
        """sin fans out to two roots."""
        result = solve("x", E.infix("sin(x) = 1/2"))
        assert len(result) == 2
        assert (Op.ASIN, Fraction(1, 2)) in result
        for root in result:
            assert evaluate((Op.SIN, root)) == pytest.approx(0.5)

    def test_self_power(self):
        """x**x = 2 has no strategy."""
        with pytest.raises(NoStrategy):
            solve("x", E.infix("x**x = 2"))

    def test_product_with_exponential(self):
        """x*exp(x) = 1 has no strategy."""
        with pytest.raises(NoStrategy):
            solve("x", E.infix("x*exp(x) = 1"))


class TestVerification:
    """Every returned root satisfies its equation."""

    @pytest.mark.parametrize("text", [
        "x**2 - 5*x + 6",
        "x**3 - 4*x",
        "x**4 - 2",
        "3*x**2 - 2*x - 1",
        "exp(x)**2 - 3*exp(x) + 2",
        "sqrt(x) = 3",
    ])
    def test_roots_verify(self, text):
        """Each root makes both sides equal."""
        equation = E.infix(text)
        if equation[0] is not Op.EQ:
            equation = (Op.EQ, equation, 0)
        for root in solve("x", equation):
            env = {"x": evaluate(root)}
            assert evaluate(equation[1], env) == pytest.approx(evaluate(equation[2], env), abs=1e-9)


class TestSystems:
    """Systems solved by elimination."""

    def test_linear(self):
        """Two linear equations in two unknowns."""
        result = solve_system(["x", "y"], [E("(= (+ x y) 3)"), E("(= (- x y) 1)")])
        assert result == {Bindings({"x": 2, "y": 1})}

    def test_two_branches(self):
        """Circle and line meet in two binding sets."""
        equations = [E.infix("x**2 + y**2 = 1"), E.infix("x + y = a")]
        result = solve_system(["x", "y"], equations)
        assert len(result) == 2
        for bindings in result:
            env = {"a": 0.5}
            x = evaluate(bindings["x"], env)
            y = evaluate(bindings["y"], env)
            assert x + y == pytest.approx(0.5)
            assert x ** 2 + y ** 2 == pytest.approx(1)

    def test_branches_differ(self):
        """The two branches are distinct."""
        equations = [E.infix("x**2 + y**2 = 1"), E.infix("x + y = a")]
        xs = {evaluate(b["x"], {"a": 0.5}) for b in solve_system(["x", "y"], equations)}
        assert len(xs) == 2

    def test_three_unknowns(self):
        """Back-substitution through three equations."""
        equations = [E.infix("x + y + z = 6"), E.infix("x - y = 1"), E.infix("z = 2*x")]
        result = solve_system(["x", "y", "z"], equations)
        assert result == {Bindings({"x": Fraction(7, 4), "y": Fraction(3, 4), "z": Fraction(7, 2)})}

    def test_single_equation_underdetermined(self):
        """One equation cannot fix two unknowns."""
        with pytest.raises(Underdetermined):
            solve_system(["x", "y"], [E.infix("x + y = 1")])

    def test_dependent_equations(self):
        """A multiple of another equation adds nothing."""
        with pytest.raises(Underdetermined):
            solve_system(["x", "y"], [E.infix("x + y = 1"), E.infix("2*(x + y) = 2")])

    def test_inconsistent(self):
        """Parallel lines have no intersection."""
        with pytest.raises(Inconsistent):
            solve_system(["x", "y"], [E.infix("x + y = 1"), E.infix("x + y = 2")])

    def test_constant_contradiction(self):
        """A false constant equation is inconsistent."""
        with pytest.raises(Inconsistent):
            solve_system(["x"], [E("(= 1 2)"), E("(= x 1)")])
