import math

import pytest

from geantcad.expression_evaluator import ExpressionEvaluator, create_configured_asteval


@pytest.fixture
def evaluator():
    return ExpressionEvaluator()


def test_units_follow_internal_convention(evaluator):
    assert evaluator.evaluate("5*cm") == (True, 50.0)
    ok, value = evaluator.evaluate("90*deg")
    assert ok and value == pytest.approx(math.pi / 2)
    ok, value = evaluator.evaluate("511*keV")
    assert ok and value == pytest.approx(0.511)


def test_numbers_pass_through(evaluator):
    assert evaluator.evaluate(3) == (True, 3.0)


def test_call_local_defines_do_not_leak(evaluator):
    assert evaluator.evaluate("width/2", {"width": 8}) == (True, 4.0)
    assert not evaluator.is_defined("width")
    ok, _ = evaluator.evaluate("width/2")
    assert not ok


def test_call_local_define_restores_shadowed_symbol(evaluator):
    evaluator.define("size", 10)
    assert evaluator.evaluate("size", {"size": 1}) == (True, 1.0)
    assert evaluator.evaluate("size") == (True, 10.0)


@pytest.mark.parametrize("expression", ["undefined_thing * 2", "1/0", "'text'", "3 >", "True"])
def test_bad_expressions_fail(evaluator, expression):
    ok, message = evaluator.evaluate(expression)
    assert not ok
    assert isinstance(message, str)


def test_configured_interpreter_has_math_and_units():
    aeval = create_configured_asteval()
    assert aeval.symtable["mm"] == 1.0
    assert aeval("sqrt(16) * cm") == pytest.approx(40.0)
