import pytest

from sheetengine.evaluator import Evaluator
from sheetengine.formula import ErrorValue, FormulaError, ValueTypeError, decode, parse_formula
from sheetengine.functions import FUNCTIONS, truthy


def _evaluate(formula, cells=None):
    """Evaluate *formula* against a dict of 'A1' -> value."""
    values = {decode(k): v for k, v in (cells or {}).items()}
    return Evaluator(values.get).evaluate(parse_formula(formula))


def _error(formula, cells=None):
    with pytest.raises(FormulaError) as exc:
        _evaluate(formula, cells)
    return exc.value.code


def test_sum_coerces_text_and_empty_to_zero():
    cells = {"A1": 5.0, "A2": "hello", "A4": "3"}
    assert _evaluate("=SUM(A1:A5)", cells) == 8.0
    assert _evaluate("=SUM()") == 0.0
    assert _evaluate("=SUM(1, 2, A1)", cells) == 8.0


def test_avg_counts_empty_operands():
    assert _evaluate("=AVG(A1:A4)", {"A1": 4.0, "A2": 4.0}) == 2.0
    assert _evaluate("=MEDIA(2, 4)") == 3.0
    assert _evaluate("=AVERAGE(A1:A2)", {"A1": 1.0, "A2": "x"}) == 0.5
    assert _evaluate("=AVG()") == 0.0


def test_min_max_exclude_non_numeric():
    cells = {"A1": 5.0, "A2": "hello", "A3": -2.0}
    assert _evaluate("=MIN(A1:A4)", cells) == -2.0
    assert _evaluate("=MAX(A1:A4)", cells) == 5.0
    assert _evaluate("=MAX(A2)", cells) == 0.0


def test_count():
    assert _evaluate("=COUNT(A1:A5)", {"A1": 1.0, "A3": "x"}) == 2.0


def test_if_takes_one_branch():
    assert _evaluate('=IF(A1>10, "High", "Low")', {"A1": 11.0}) == "High"
    assert _evaluate('=IF(A1>10, "High", "Low")', {"A1": 3.0}) == "Low"
    # the untaken branch is never evaluated
    assert _evaluate("=IF(1, 2, 1/0)") == 2.0
    assert _evaluate("=IF(A1, 1, 2)") == 2.0
    assert _evaluate('=IF("true", 1, 2)') == 1.0


def test_if_rejects_text_condition():
    assert _error('=IF("maybe", 1, 2)') is ErrorValue.VALUE


def test_concat():
    assert _evaluate('=CONCAT("Hello ", A1)', {"A1": "World"}) == "Hello World"
    assert _evaluate("=CONCAT(A1:A3)", {"A1": 1.0, "A3": 2.5}) == "12.5"


@pytest.mark.parametrize("formula", ["=IF(1, 2)", "=MIN()", "=CONCAT()", "=IF(1, 2, 3, 4)"])
def test_arity_errors(formula):
    assert _error(formula) is ErrorValue.VALUE


def test_arithmetic_and_coercion():
    assert _evaluate("=A1*2+1", {"A1": 3.0}) == 7.0
    assert _evaluate("=A1+1") == 1.0
    assert _evaluate('="4"/2') == 2.0
    assert _evaluate("=-(1+2)") == -3.0
    assert _evaluate("=A1") == 0.0
    assert _error("=A1/2", {"A1": "hello"}) is ErrorValue.VALUE
    assert _error("=A1:A2") is ErrorValue.VALUE
    assert _error("=A1:A2+1") is ErrorValue.VALUE


def test_division_and_overflow():
    assert _error("=10/0") is ErrorValue.DIV0
    assert _error("=A1/A2", {"A1": 10.0}) is ErrorValue.DIV0
    assert _error("=1e300*1e300") is ErrorValue.DIV0


def test_comparisons():
    assert _evaluate("=2>1") == 1.0
    assert _evaluate("=2<>2") == 0.0
    assert _evaluate('="abc"="ABC"') == 1.0
    assert _evaluate('="5"=5') == 1.0
    assert _evaluate('="a"=5') == 0.0
    assert _evaluate("=A1=0") == 1.0
    assert _error('="a">5') is ErrorValue.VALUE


def test_errors_in_operands_propagate_unchanged():
    cells = {"A1": ErrorValue.DIV0, "A2": 1.0}
    assert _error("=SUM(A1:A2)", cells) is ErrorValue.DIV0
    assert _error("=MIN(A1:A2)", cells) is ErrorValue.DIV0
    assert _error("=A1+1", cells) is ErrorValue.DIV0
    assert _error('=CONCAT("x", A1)', cells) is ErrorValue.DIV0


def test_truthy():
    assert truthy(1.0) and not truthy(0.0) and not truthy(None)
    assert not truthy("")
    with pytest.raises(ValueTypeError):
        truthy([1.0])


def test_suggestions():
    names = [s["name"] for s in FUNCTIONS.suggestions("=m")]
    assert names == ["MAX", "MEDIA", "MIN", "SUM"]
    assert {s["name"] for s in FUNCTIONS.suggestions()} >= {"SUM", "AVG", "IF", "CONCAT"}
    assert "sum" in FUNCTIONS
    assert FUNCTIONS.get("media") is FUNCTIONS.get("AVG")
