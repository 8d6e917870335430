"""Tests for the optimizer and the compiler."""

import math
from fractions import Fraction

import numpy
import pytest

from exprimo import (
    CompileError, DomainError, E, Op, Procedure, UnboundParameter,
    compile_expr, evaluate, optimize,
)
from exprimo.optimize import (
    extract_common_subexpressions, matrix_chain_order, reorder_matrix_chains,
)


A = E.matrix("A", 10, 30)
B = E.matrix("B", 30, 5)
C = E.matrix("C", 5, 60)


class TestMatrixChainOrder:
    """Dynamic programming over parenthesizations."""

    def test_textbook_chain(self):
        """The classic three-matrix example."""
        cost, split = matrix_chain_order([10, 30, 5, 60])
        assert cost == 4500
        assert split[0][2] == 1

    def test_right_grouping(self):
        """Right grouping is cheaper for these shapes."""
        cost, split = matrix_chain_order([40, 20, 30, 10])
        assert cost == 14000
        assert split[0][2] == 0

    def test_single_matrix(self):
        """One matrix costs nothing."""
        assert matrix_chain_order([3, 4])[0] == 0


class TestReorder:
    """Re-parenthesizing matrix product chains."""

    def test_left_grouping(self):
        """(AB)C is chosen when it is cheaper."""
        assert reorder_matrix_chains((Op.MATMUL, A, B, C)) == \
            (Op.MATMUL, (Op.MATMUL, A, B), C)

    def test_right_grouping(self):
        """Right grouping is cheaper for these shapes."""
        x = E.matrix("X", 40, 20)
        y = E.matrix("Y", 20, 30)
        z = E.matrix("Z", 30, 10)
        assert reorder_matrix_chains((Op.MATMUL, x, y, z)) == \
            (Op.MATMUL, x, (Op.MATMUL, y, z))

    def test_shapes_mapping(self):
        """Shapes may come from a mapping."""
        shapes = {"X": (10, 30), "Y": (30, 5), "Z": (5, 60)}
        assert reorder_matrix_chains((Op.MATMUL, "X", "Y", "Z"), shapes) == \
            (Op.MATMUL, (Op.MATMUL, "X", "Y"), "Z")

    def test_unknown_shape_left_alone(self):
        """Chains with unknown shapes are unchanged."""
        expr = (Op.MATMUL, A, B, "Z")
        assert reorder_matrix_chains(expr) == expr

    def test_inconsistent_shapes_left_alone(self):
        """Mismatched shapes are unchanged."""
        expr = (Op.MATMUL, A, C, B)
        assert reorder_matrix_chains(expr) == expr

    def test_through_optimize(self):
        """optimize reorders chains."""
        assert optimize((Op.MATMUL, A, B, C)) == (Op.MATMUL, (Op.MATMUL, A, B), C)


class TestCommonSubexpressions:
    """Extracting repeated subtrees into let bindings."""

    def test_shared_sum(self):
        """A repeated sum becomes one local."""
        assert optimize(E("(+ (sin (+ a b)) (cos (+ a b)))")) == (
            Op.LET,
            (Op.EQ, "local0", (Op.ADD, "a", "b")),
            (Op.ADD, (Op.SIN, "local0"), (Op.COS, "local0")),
        )

    def test_nested_repeats(self):
        """Locals may refer to earlier locals."""
        expr = E("(+ (* (sin (+ a b)) (sin (+ a b))) (cos (+ a b)))")
        assert extract_common_subexpressions(expr) == (
            Op.LET,
            (Op.EQ, "local0", (Op.ADD, "a", "b")),
            (Op.EQ, "local1", (Op.SIN, "local0")),
            (Op.ADD, (Op.MUL, "local1", "local1"), (Op.COS, "local0")),
        )

    def test_generated_names_avoid_free_symbols(self):
        """Generated names skip symbols already in use."""
        expr = E("(+ (sin (+ local0 b)) (cos (+ local0 b)))")
        result = extract_common_subexpressions(expr)
        assert result[1] == (Op.EQ, "local1", (Op.ADD, "local0", "b"))

    def test_nothing_repeated(self):
        """Nothing to share leaves the expression alone."""
        expr = E("(+ (sin a) (cos b))")
        assert extract_common_subexpressions(expr) == expr

    def test_deterministic(self):
        """Names are the same on every call."""
        expr = E("(+ (sin (+ a b)) (cos (+ a b)))")
        assert optimize(expr) == optimize(expr)

    def test_constant_folding(self):
        """Closed subtrees fold."""
        assert optimize(E("(+ x (* 2 3))")) == (Op.ADD, 6, "x")

    def test_value_preserved(self):
        """Optimizing preserves value."""
        expr = E("(+ (* (sin (+ a b)) (sin (+ a b))) (cos (+ a b)) (exp (* a b)))")
        env = {"a": 0.3, "b": 1.1}
        assert evaluate(optimize(expr), env) == pytest.approx(evaluate(expr, env))


class TestCompile:
    """Generated procedures."""

    def test_let_form(self):
        """Let bindings become assignments."""
        proc = compile_expr(["a", "b"], optimize(E("(+ (sqrt (+ a b)) (** (+ a b) 3))")))
        assert proc(1, 3) == 66
        assert "local0 = (a + b)" in proc.source

    def test_agrees_with_evaluate(self):
        """Compiled and interpreted results agree."""
        expr = E("(+ (sin (+ a b)) (cos (+ a b)) (/ a 4))")
        proc = compile_expr(["a", "b"], optimize(expr))
        assert proc(0.5, 0.25) == pytest.approx(evaluate(expr, {"a": 0.5, "b": 0.25}))

    def test_exact_arithmetic(self):
        """Exact inputs give exact results."""
        assert compile_expr(["x"], E("(/ x 3)"))(1) == Fraction(1, 3)

    def test_fraction_constants_hoisted(self):
        """Fraction constants live in the namespace."""
        proc = compile_expr(["x"], (Op.MUL, Fraction(1, 3), "x"))
        assert "_c0" in proc.source
        assert proc(3) == 1

    def test_named_constant(self):
        """pi resolves to its value."""
        assert compile_expr(["x"], E("(* pi x)"))(2) == pytest.approx(2 * math.pi)

    def test_unbound_parameter(self):
        """Free symbols must be parameters."""
        with pytest.raises(UnboundParameter) as info:
            compile_expr(["a"], E("(+ a b)"))
        assert info.value.names == ["b"]

    def test_wrong_argument_count(self):
        """Calls check the argument count."""
        proc = compile_expr(["a", "b"], E("(+ a b)"))
        with pytest.raises(TypeError):
            proc(1)

    def test_duplicate_parameters(self):
        """Parameter names must be distinct."""
        with pytest.raises(CompileError):
            compile_expr(["a", "a"], "a")

    def test_nested_let(self):
        """Let is only allowed at the top."""
        expr = (Op.ADD, 1, (Op.LET, (Op.EQ, "t", "a"), "t"))
        with pytest.raises(CompileError):
            compile_expr(["a"], expr)

    def test_local_renamed_away_from_parameter(self):
        """A local named like a parameter is renamed."""
        expr = (Op.LET, (Op.EQ, "t", (Op.ADD, "a", "b")), (Op.MUL, "t", "t"))
        proc = compile_expr(["a", "b", "t"], expr)
        assert proc.bindings[0][0] == "t0"
        assert proc(1, 2, 100) == 9

    def test_keyword_parameter(self):
        """Python keywords are mangled."""
        proc = compile_expr(["lambda"], E("(+ lambda 1)"))
        assert "_v0" in proc.source
        assert proc(2) == 3

    def test_domain_error(self):
        """Domain errors surface from compiled code."""
        proc = compile_expr(["x"], E("(log x)"))
        with pytest.raises(DomainError):
            proc(0)

    def test_to_expression(self):
        """Procedures convert back to expressions."""
        optimized = optimize(E("(+ (sin (+ a b)) (cos (+ a b)))"))
        proc = compile_expr(["a", "b"], optimized)
        assert isinstance(proc, Procedure)
        assert proc.params == ("a", "b")
        assert proc.to_expression() == optimized

    def test_no_locals(self):
        """Plain expressions compile without bindings."""
        proc = compile_expr(["x"], E("(* 2 x)"))
        assert proc.bindings == ()
        assert proc.to_expression() == (Op.MUL, 2, "x")


class TestCompileMatrices:
    """Matrix operands compile to numpy products."""

    def test_matrix_product(self):
        """Matrix products use numpy."""
        proc = compile_expr(["A", "B"], (Op.MATMUL, E.matrix("A", 2, 3), E.matrix("B", 3, 4)))
        result = proc(numpy.ones((2, 3)), numpy.ones((3, 4)))
        assert result.shape == (2, 4)
        assert numpy.allclose(result, 3)

    def test_shape_mismatch(self):
        """Wrong shapes raise DomainError."""
        proc = compile_expr(["A", "B"], (Op.MATMUL, E.matrix("A", 2, 3), E.matrix("B", 3, 4)))
        with pytest.raises(DomainError):
            proc(numpy.ones((3, 3)), numpy.ones((3, 4)))

    def test_optimized_chain(self):
        """A reordered chain gives the same product."""
        expr = optimize((Op.MATMUL, A, B, C))
        proc = compile_expr(["A", "B", "C"], expr)
        a, b, c = numpy.ones((10, 30)), numpy.ones((30, 5)), numpy.ones((5, 60))
        assert numpy.allclose(proc(a, b, c), a @ b @ c)
