"""Tests for pattern matching, instantiation, guards and constant folding."""

from fractions import Fraction

import pytest

from exprimo import E, Op, Bindings, NoMatch, match, instantiate
from exprimo.rewriter import (
    check_condition, fold_constants, match_all, try_constant_fold,
)


class TestMatching:
    """Basic pattern matching."""

    def test_match_any(self):
        """?x matches any subtree."""
        bindings = match(E("(** ?x 2)"), E("(** y 2)"))
        assert bindings["x"] == "y"

    def test_literal_mismatch(self):
        """Literals must be equal."""
        assert match(E("(** ?x 2)"), E("(** y 3)")) is NoMatch

    def test_operator_mismatch(self):
        """Operators must be equal."""
        assert match(E("(sin ?x)"), E("(cos y)")) is NoMatch

    def test_nested(self):
        """Patterns match at depth."""
        bindings = match(E("(exp (log ?x))"), E("(exp (log (+ a 1)))"))
        assert bindings["x"] == (Op.ADD, "a", 1)

    def test_consistent_rebinding(self):
        """A repeated variable must bind the same value."""
        assert match(E("(** ?x ?x)"), E("(** y y)"))["x"] == "y"
        assert match(E("(** ?x ?x)"), E("(** y z)")) is NoMatch

    def test_const_constraint(self):
        """?n:const matches numbers only."""
        assert match(E("(sin ?n:const)"), E("(sin 3)"))["n"] == 3
        assert match(E("(sin ?n:const)"), E("(sin y)")) is NoMatch

    def test_var_constraint(self):
        """?v:var matches symbols only."""
        assert match(E("(sin ?v:var)"), E("(sin y)"))["v"] == "y"
        assert match(E("(sin ?v:var)"), E("(sin 3)")) is NoMatch

    def test_free_constraint(self):
        """?k:free(x) matches subtrees without x."""
        pattern = E("(* ?k:free(x) x)")
        assert match(pattern, E("(* 3 x)"))["k"] == 3
        assert match(pattern, E("(* (+ x 1) x)")) is NoMatch


class TestCommutativeMatching:
    """Matching against + and * ignores argument order."""

    def test_any_order(self):
        """Commutative arguments match in any order."""
        bindings = match(E("(* 2 ?x)"), E("(* y 2)"))
        assert bindings["x"] == "y"

    def test_first_assignment_left_to_right(self):
        """The first assignment is left to right."""
        bindings = match(E("(+ ?a ?b)"), E("(+ x 1)"))
        assert bindings["a"] == "x"
        assert bindings["b"] == 1

    def test_all_assignments(self):
        """match_all yields every assignment."""
        results = list(match_all(E("(+ ?a ?b)"), E("(+ x 1)")))
        assert [(r["a"], r["b"]) for r in results] == [("x", 1), (1, "x")]

    def test_rest_absorbs_leftovers(self):
        """A rest variable takes the other arguments."""
        bindings = match(E("(+ 0 ?xs...)"), E("(+ a 0 b)"))
        assert bindings["xs"] == ("a", "b")

    def test_rest_may_be_empty(self):
        """Rest variables may bind nothing."""
        bindings = match(E("(+ 0 ?xs...)"), E("(+ 0)"))
        assert bindings["xs"] == ()

    def test_argument_count_must_agree_without_rest(self):
        """Without a rest, counts must agree."""
        assert match(E("(+ ?a ?b)"), E("(+ x y z)")) is NoMatch

    def test_typed_rest(self):
        """Typed rests take only matching arguments."""
        assert match(E("(* ?x:var ?cs:const...)"), E("(* 2 y 3)"))["cs"] == (2, 3)
        assert match(E("(* ?x:var ?cs:const...)"), E("(* 2 y z)")) is NoMatch

    def test_two_rests_rejected(self):
        """Two rests under a commutative head are an error."""
        with pytest.raises(ValueError):
            match(E("(+ ?xs... ?ys...)"), E("(+ a b)"))


class TestSequenceMatching:
    """Rest patterns inside non-commutative operators take contiguous runs."""

    def test_inner_rest(self):
        """Rests may surround a nested pattern."""
        bindings = match(E("(@ ?xs... (@ ?ys...) ?zs...)"), E("(@ A (@ B C) D)"))
        assert bindings["xs"] == ("A",)
        assert bindings["ys"] == ("B", "C")
        assert bindings["zs"] == ("D",)

    def test_no_nested_chain(self):
        """No nested node means no match."""
        assert match(E("(@ ?xs... (@ ?ys...) ?zs...)"), E("(@ A B)")) is NoMatch


class TestBindings:
    """The Bindings result type."""

    def test_dict_interface(self):
        """Bindings behave like a read-only dict."""
        bindings = Bindings({"x": 1, "y": 2})
        assert bindings["x"] == 1
        assert bindings.get("z") is None
        assert bindings.get("z", 0) == 0
        assert "x" in bindings
        assert len(bindings) == 2
        assert dict(bindings.items()) == {"x": 1, "y": 2}

    def test_hashable_and_equal(self):
        """Equal bindings hash alike."""
        a = Bindings({"x": 1, "y": 2})
        b = Bindings([("y", 2), ("x", 1)])
        assert a == b
        assert len({a, b}) == 1

    def test_to_dict_is_a_copy(self):
        """to_dict returns a copy."""
        bindings = Bindings({"x": 1})
        d = bindings.to_dict()
        d["x"] = 5
        assert bindings["x"] == 1

    def test_no_match_is_falsy(self):
        """NoMatch is false."""
        assert not NoMatch
        assert NoMatch.get("x", 3) == 3
        assert "x" not in NoMatch
        with pytest.raises(KeyError):
            NoMatch["x"]

    def test_empty_bindings_are_truthy(self):
        """Empty bindings are still a match."""
        assert Bindings()


class TestInstantiate:
    """Building expressions from skeletons."""

    def test_substitution(self):
        """:x is replaced by its binding."""
        assert instantiate(E("(+ :x 1)"), {"x": "y"}) == (Op.ADD, "y", 1)

    def test_splice(self):
        """:xs... splices a sequence."""
        assert instantiate(E("(+ :xs... 1)"), {"xs": ("a", "b")}) == (Op.ADD, "a", "b", 1)

    def test_splice_empty(self):
        """An empty splice leaves no arguments."""
        assert instantiate(E("(* :xs...)"), {"xs": ()}) == (Op.MUL,)

    def test_compute(self):
        """(! op ...) is computed."""
        assert instantiate(E("(! + :a :b)"), {"a": 2, "b": 3}) == 5

    def test_compute_exact(self):
        """Computation stays exact."""
        assert instantiate(E("(! * :a :b)"), {"a": Fraction(1, 2), "b": 4}) == 2

    def test_compute_with_symbol_leaves_node(self):
        """Symbolic arguments leave the node."""
        assert instantiate(E("(! + :a :b)"), {"a": "x", "b": 1}) == (Op.ADD, "x", 1)

    def test_inexact_result_from_exact_input_not_folded(self):
        """Irrational results stay symbolic."""
        assert instantiate(E("(! ** 2 1/2)"), {}) == (Op.POW, 2, Fraction(1, 2))


class TestGuards:
    """Guard conditions on rules."""

    def test_numeric_guard(self):
        """Numeric comparisons."""
        assert check_condition(E("(! > :n 0)"), {"n": 3})
        assert not check_condition(E("(! > :n 0)"), {"n": -3})

    def test_comparison_with_symbol_is_false(self):
        """Comparisons with symbols fail."""
        assert not check_condition(E("(! > :n 0)"), {"n": "x"})

    def test_type_predicates(self):
        """integer?, even? and odd?."""
        assert check_condition(E("(! integer? :n)"), {"n": 4})
        assert not check_condition(E("(! integer? :n)"), {"n": Fraction(1, 2)})
        assert check_condition(E("(! even? :n)"), {"n": 4})
        assert check_condition(E("(! odd? :n)"), {"n": 3})

    def test_free_predicate(self):
        """free? checks for a symbol."""
        assert check_condition(E("(! free? :e x)"), {"e": E("(+ y 1)")})
        assert not check_condition(E("(! free? :e x)"), {"e": E("(+ x 1)")})

    def test_logical_combination(self):
        """and combines guards."""
        guard = E("(! and (! const? :a) (! positive? :a))")
        assert check_condition(guard, {"a": 2})
        assert not check_condition(guard, {"a": "y"})

    def test_unknown_predicate_fails(self):
        """Unknown predicates fail."""
        assert not check_condition(E("(! frob? :n)"), {"n": 1})

    def test_no_condition(self):
        """No guard always passes."""
        assert check_condition(None, {})


class TestConstantFolding:
    """Folding closed subtrees."""

    def test_fold_nested(self):
        """Closed subtrees fold innermost first."""
        assert fold_constants(E("(+ x (* 2 3))")) == (Op.ADD, "x", 6)

    def test_integral_float_of_small_magnitude(self):
        """sin(0) folds to zero."""
        assert try_constant_fold(E("(sin 0)")) == 0
        assert try_constant_fold(E("(cos 0)")) == 1

    def test_irrational_value_stays_symbolic(self):
        """sin(1) stays symbolic."""
        expr = E("(sin 1)")
        assert try_constant_fold(expr) == expr

    def test_float_arguments_fold(self):
        """Float arguments fold."""
        assert try_constant_fold(E("(+ 1.5 2)")) == 3.5

    def test_domain_error_leaves_node(self):
        """Undefined values are not folded."""
        expr = E("(log 0)")
        assert try_constant_fold(expr) == expr

    def test_let_is_not_folded(self):
        """Let forms are left alone."""
        expr = (Op.LET, (Op.EQ, "t", (Op.ADD, 1, 2)), "t")
        assert fold_constants(expr) == expr
